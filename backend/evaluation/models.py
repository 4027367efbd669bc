"""Value objects shared by the evaluation pipeline."""

import io
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

import numpy as np
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, model_validator


class Dimension(str, Enum):
    STRUCTURE = "structure"
    VISUAL = "visual"
    CONTENT = "content"
    TAG = "tag"


class EvaluationState(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    COMPARING = "comparing"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    FAILED = "failed"


class CodeBundle(BaseModel):
    """HTML/CSS/JS triple, either a candidate's code or a challenge's expected solution."""

    model_config = ConfigDict(frozen=True)

    html: str = ""
    css: str = ""
    js: str = ""

    def is_empty(self) -> bool:
        return not (self.html.strip() or self.css.strip() or self.js.strip())


class RenderError(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str  # parse, script, console, render, timeout, crash, persist
    message: str


class SerializedNode(BaseModel):
    """Normalized element in a DOM snapshot.

    Attributes compare as a mapping, so their order never matters. Text runs
    are the element's own whitespace-collapsed text nodes, empty runs dropped.
    """

    model_config = ConfigDict(frozen=True)

    tag: str
    attributes: dict[str, str] = Field(default_factory=dict)
    children: list["SerializedNode"] = Field(default_factory=list)
    text_runs: list[str] = Field(default_factory=list)

    def iter_nodes(self) -> Iterator["SerializedNode"]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def all_text(self) -> list[str]:
        return [run for node in self.iter_nodes() for run in node.text_runs]

    @property
    def classes(self) -> frozenset[str]:
        return frozenset(self.attributes.get("class", "").split())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SerializedNode":
        """Build a node from the raw dict produced by the in-page serializer."""
        return cls(
            tag=str(data.get("tag", "")).lower(),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
            children=[cls.from_dict(c) for c in data.get("children") or []],
            text_runs=[str(t) for t in data.get("text_runs") or [] if str(t)],
        )


@dataclass(frozen=True)
class PixelBuffer:
    """Fixed-resolution RGB screenshot as a (height, width, 3) uint8 array."""

    width: int
    height: int
    pixels: np.ndarray = field(repr=False, compare=False)

    def __post_init__(self):
        if self.pixels.shape != (self.height, self.width, 3):
            raise ValueError(
                f"Pixel array shape {self.pixels.shape} does not match {self.width}x{self.height}"
            )
        self.pixels.setflags(write=False)

    @property
    def total_pixels(self) -> int:
        return self.width * self.height

    @classmethod
    def from_png(cls, data: bytes) -> "PixelBuffer":
        with Image.open(io.BytesIO(data)) as img:
            arr = np.asarray(img.convert("RGB"), dtype=np.uint8).copy()
        return cls(width=arr.shape[1], height=arr.shape[0], pixels=arr)

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        arr = np.asarray(img.convert("RGB"), dtype=np.uint8).copy()
        return cls(width=arr.shape[1], height=arr.shape[0], pixels=arr)

    @classmethod
    def blank(cls, width: int, height: int, color: tuple[int, int, int] = (255, 255, 255)) -> "PixelBuffer":
        arr = np.empty((height, width, 3), dtype=np.uint8)
        arr[:, :] = color
        return cls(width=width, height=height, pixels=arr)

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.array(self.pixels))

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return (
            self.width == other.width
            and self.height == other.height
            and np.array_equal(self.pixels, other.pixels)
        )


@dataclass(frozen=True)
class RenderArtifact:
    """Everything extracted from one render of one CodeBundle."""

    dom_tree: SerializedNode
    screenshot: PixelBuffer | None
    text_content: list[str]
    render_errors: list[RenderError] = field(default_factory=list)
    screenshot_png: bytes | None = field(default=None, repr=False)

    @classmethod
    def empty(cls, width: int, height: int, errors: list[RenderError] | None = None) -> "RenderArtifact":
        """Zero-valued artifact: an empty body and a blank white screenshot."""
        return cls(
            dom_tree=SerializedNode(tag="body"),
            screenshot=PixelBuffer.blank(width, height),
            text_content=[],
            render_errors=list(errors or []),
        )


class Finding(BaseModel):
    """Structured diagnostic entry attached to a DimensionScore."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    path: str | None = None
    expected: Any = None
    actual: Any = None
    score: float | None = None  # local score (0-100) of the thing this finding describes


class DimensionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Dimension
    score: float = Field(ge=0, le=100)
    weight: float = Field(ge=0, le=100)
    passed: bool
    details: list[Finding] = Field(default_factory=list)


class FeedbackItem(BaseModel):
    """Single feedback shape used for encouragement, improvements and content checks."""

    model_config = ConfigDict(frozen=True)

    type: str  # encouragement, improvement, content
    description: str
    dimension: Dimension | None = None
    details: list[str] = Field(default_factory=list)
    score: float | None = None
    weight: float | None = None
    passed: bool | None = None


class Feedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    encouragement: list[FeedbackItem]
    improvements: list[FeedbackItem]
    content_validation: str = ""
    content_details: list[FeedbackItem] = Field(default_factory=list)


class ScreenshotRefs(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: str | None = None
    expected: str | None = None
    diff: str | None = None


class Thresholds(BaseModel):
    """Per-dimension minimums and the overall minimum for a pass verdict."""

    model_config = ConfigDict(frozen=True)

    per_dimension: dict[Dimension, float] = Field(default_factory=dict)
    overall_min_score: float = 75.0

    @classmethod
    def from_passing_threshold(
        cls,
        raw: dict[str, Any] | None,
        defaults: dict[str, float] | None = None,
    ) -> "Thresholds":
        """Build thresholds from the loose ``{structure, visual, content, tag, overall}`` shape.

        Keys missing from ``raw`` fall back to ``defaults``; unknown keys and
        non-numeric values are ignored.
        """
        merged: dict[str, Any] = dict(defaults or {})
        merged.update({k: v for k, v in (raw or {}).items() if v is not None})

        per_dimension: dict[Dimension, float] = {}
        for dim in Dimension:
            value = _as_float(merged.get(dim.value))
            if value is not None:
                per_dimension[dim] = max(0.0, min(100.0, value))

        overall = _as_float(merged.get("overall"))
        if overall is None:
            overall = _as_float(merged.get("overall_min_score"))
        return cls(
            per_dimension=per_dimension,
            overall_min_score=max(0.0, min(100.0, overall if overall is not None else 75.0)),
        )

    def minimum_for(self, dimension: Dimension) -> float | None:
        return self.per_dimension.get(dimension)


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class EvaluationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    submission_id: str | None = None
    challenge_id: str | None = None
    status: EvaluationState = EvaluationState.COMPLETE
    final_score: float = Field(ge=0, le=100)
    passed: bool
    dimension_scores: list[DimensionScore]
    feedback: Feedback
    diff_screenshot_ref: str | None = None
    screenshots: ScreenshotRefs = Field(default_factory=ScreenshotRefs)
    render_errors: dict[str, list[RenderError]] = Field(default_factory=dict)
    evaluated_at: float = Field(default_factory=time.time)
    duration_ms: int = 0

    def dimension(self, name: Dimension) -> DimensionScore | None:
        for ds in self.dimension_scores:
            if ds.name == name:
                return ds
        return None

    def _score_of(self, name: Dimension) -> float:
        ds = self.dimension(name)
        return ds.score if ds else 0.0

    @property
    def structure_score(self) -> float:
        return self._score_of(Dimension.STRUCTURE)

    @property
    def visual_score(self) -> float:
        return self._score_of(Dimension.VISUAL)

    @property
    def content_score(self) -> float:
        return self._score_of(Dimension.CONTENT)


class TagRule(BaseModel):
    """Challenge-supplied requirement on the candidate's markup."""

    model_config = ConfigDict(frozen=True)

    tag: str
    min_count: int = 1
    max_count: int | None = None
    attributes: dict[str, str] | None = None  # every listed attribute must match; "" means present with any value
    text: str | None = None  # case-insensitive substring of the element's text

    def describe(self) -> str:
        parts = [f"<{self.tag}>"]
        if self.attributes:
            parts.append(" with " + ", ".join(f"{k}={v!r}" if v else k for k, v in sorted(self.attributes.items())))
        if self.text:
            parts.append(f" containing {self.text!r}")
        count = f"at least {self.min_count}"
        if self.max_count is not None:
            count = f"{self.min_count}-{self.max_count}"
        return f"{''.join(parts)} ({count})"


# Keys used by the course/challenge admin tooling for the same fields.
_CHALLENGE_ALIASES = {
    "passingThreshold": "passing_threshold",
    "expectedSolution": "expected_solution",
    "tagRules": "tag_rules",
    "requiredPhrases": "required_phrases",
    "strictStructure": "strict_structure",
    "courseId": "course_id",
}


class Challenge(BaseModel):
    """A coding challenge: expected solution plus grading configuration."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    instructions: str = ""
    difficulty: str = "Medium"
    tags: list[str] = Field(default_factory=list)
    expected_solution: CodeBundle = Field(default_factory=CodeBundle)
    passing_threshold: dict[str, float] = Field(default_factory=dict)  # structure, visual, content, tag, overall
    weights: dict[str, float] | None = None  # per-dimension weight overrides
    tag_rules: list[TagRule] = Field(default_factory=list)
    required_phrases: list[str] = Field(default_factory=list)
    strict_structure: bool = False
    course_id: str | None = None
    level: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_admin_shape(cls, data: Any) -> Any:
        """Accept camelCase keys and flat expectedHtml/expectedCss/expectedJs fields."""
        if not isinstance(data, dict):
            return data
        data = {_CHALLENGE_ALIASES.get(k, k): v for k, v in data.items()}
        if not data.get("expected_solution"):
            flat = {
                "html": data.pop("expectedHtml", None) or data.pop("expected_html", None) or "",
                "css": data.pop("expectedCss", None) or data.pop("expected_css", None) or "",
                "js": data.pop("expectedJs", None) or data.pop("expected_js", None) or "",
            }
            data["expected_solution"] = flat
        # Database rows store these columns as JSON text.
        for key in ("passing_threshold", "weights", "tags", "tag_rules", "required_phrases"):
            if isinstance(data.get(key), str):
                try:
                    data[key] = json.loads(data[key]) if data[key].strip() else None
                except ValueError:
                    data[key] = None
            if data.get(key) is None and key != "weights":
                data.pop(key, None)
        if isinstance(data.get("passing_threshold"), dict):
            data["passing_threshold"] = {
                k: v for k, v in data["passing_threshold"].items() if _as_float(v) is not None
            }
        return data


class Submission(BaseModel):
    """A learner's submitted code for one challenge."""

    id: str
    challenge_id: str
    code: CodeBundle = Field(default_factory=CodeBundle)
    candidate_name: str = "Anonymous"
    submitted_at: float = Field(default_factory=time.time)
    evaluated_at: float | None = None
    result: EvaluationResult | None = None
