"""Evaluation pipeline for challenge submissions.

One evaluation walks pending → rendering → comparing → aggregating →
complete. Render and comparator failures are contained and turn into
degraded scores. EvaluationFailed (no artifact at all, no render slot, or
an unexpected error wrapped as UnexpectedEvaluationError) ends the run in
the failed state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from config import settings

from .content_comparison import compare_content
from .document import parse_artifact
from .dom_comparison import compare_dom, evaluate_tag_rules
from .errors import (
    ComparatorFailure,
    EvaluationFailed,
    NoArtifactAvailable,
    RenderCrash,
    RenderTimeout,
    UnexpectedEvaluationError,
)
from .feedback import generate_feedback
from .models import (
    Challenge,
    CodeBundle,
    Dimension,
    DimensionScore,
    EvaluationResult,
    EvaluationState,
    Finding,
    RenderArtifact,
    RenderError,
    ScreenshotRefs,
    TagRule,
    Thresholds,
)
from .render_service import RenderService, Renderer
from .repositories import (
    ChallengeNotFound,
    ChallengeRepository,
    SubmissionNotFound,
    SubmissionRepository,
)
from .scoring import aggregate, resolve_thresholds, resolve_weights
from .screenshot_store import ScreenshotStore
from .visual_comparison import VisualComparator

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    EvaluationState.PENDING: {EvaluationState.RENDERING},
    EvaluationState.RENDERING: {EvaluationState.COMPARING},
    EvaluationState.COMPARING: {EvaluationState.AGGREGATING},
    EvaluationState.AGGREGATING: {EvaluationState.COMPLETE},
    EvaluationState.COMPLETE: set(),
    EvaluationState.FAILED: set(),
}


@dataclass
class EvaluationRun:
    """State of a single evaluation, with every transition recorded."""
    submission_id: str | None = None
    challenge_id: str | None = None
    state: EvaluationState = EvaluationState.PENDING
    history: list[tuple[EvaluationState, float]] = field(default_factory=list)
    error: BaseException | None = None

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, time.time()))

    @property
    def terminal(self) -> bool:
        return self.state in (EvaluationState.COMPLETE, EvaluationState.FAILED)

    def advance(self, state: EvaluationState):
        if state == EvaluationState.FAILED:
            allowed = not self.terminal
        else:
            allowed = state in _TRANSITIONS[self.state]
        if not allowed:
            raise ValueError(f"Illegal evaluation transition {self.state.value} -> {state.value}")
        logger.info(
            f"[Evaluate] submission={self.submission_id} challenge={self.challenge_id}: "
            f"{self.state.value} -> {state.value}"
        )
        self.state = state
        self.history.append((state, time.time()))

    def fail(self, error: BaseException):
        self.error = error
        self.advance(EvaluationState.FAILED)

    @property
    def states(self) -> list[EvaluationState]:
        return [state for state, _ in self.history]


def _consume_exception(task: asyncio.Task):
    # Renders keep running after a caller disconnects; their errors must not go unretrieved.
    if not task.cancelled():
        task.exception()


def _excluded(dimension: Dimension, reason: str) -> Finding:
    return Finding(kind="excluded", message=f"{dimension.value} not scored: {reason}")


class ChallengeEvaluator:
    """Grades candidate code against an expected solution."""

    def __init__(
        self,
        renderer: Renderer | None = None,
        screenshot_store: ScreenshotStore | None = None,
        *,
        challenges: ChallengeRepository | None = None,
        submissions: SubmissionRepository | None = None,
        visual_comparator: VisualComparator | None = None,
        persist_screenshots: bool | None = None,
        render_timeout_ms: int | None = None,
    ):
        self.renderer = renderer or RenderService()
        self.visual_comparator = visual_comparator or VisualComparator()
        self.persist_screenshots = settings.persist_screenshots if persist_screenshots is None else persist_screenshots
        if self.persist_screenshots:
            self.screenshot_store = screenshot_store or ScreenshotStore()
        else:
            self.screenshot_store = None
        self.challenges = challenges
        self.submissions = submissions
        self.render_timeout_ms = render_timeout_ms or settings.render_timeout_ms

    async def close(self):
        close = getattr(self.renderer, "close", None)
        if close is not None:
            await close()

    async def evaluate(
        self,
        candidate: CodeBundle,
        expected: CodeBundle,
        thresholds: Thresholds | Mapping[str, Any] | None = None,
        *,
        weights: Mapping[Any, float] | None = None,
        tag_rules: list[TagRule] | None = None,
        required_phrases: list[str] | None = None,
        strict_structure: bool = False,
        submission_id: str | None = None,
        challenge_id: str | None = None,
        run: EvaluationRun | None = None,
    ) -> EvaluationResult:
        """
        Evaluate candidate code against the expected solution.

        Args:
            candidate: The learner's code
            expected: The challenge's reference solution
            thresholds: Passing thresholds; missing values use settings.default_thresholds
            weights: Per-dimension weight overrides
            tag_rules: Required-element rules; without rules the tag dimension is excluded
            required_phrases: Phrases the rendered text must contain
            strict_structure: Compare DOM children by position only
            submission_id: Used for logging and screenshot paths
            challenge_id: Used for logging and screenshot paths
            run: Optional state holder; its history records every transition

        Returns:
            EvaluationResult in the complete state

        Raises:
            NoArtifactAvailable: neither side could be rendered
            PoolExhausted: no render slot became available in time
            UnexpectedEvaluationError: any other error; the run still ends failed
        """
        started = time.monotonic()
        run = run or EvaluationRun(submission_id=submission_id, challenge_id=challenge_id)
        run.submission_id = run.submission_id or submission_id
        run.challenge_id = run.challenge_id or challenge_id
        resolved = resolve_thresholds(thresholds)

        try:
            run.advance(EvaluationState.RENDERING)
            candidate_artifact, expected_artifact = await self._render_both(candidate, expected)

            run.advance(EvaluationState.COMPARING)
            scores, diff_image = await self._compare(
                candidate_artifact,
                expected_artifact,
                resolved,
                weights=weights,
                tag_rules=tag_rules or [],
                required_phrases=required_phrases or [],
                strict_structure=strict_structure,
            )

            run.advance(EvaluationState.AGGREGATING)
            verdict = aggregate(scores, resolved)
            feedback = generate_feedback(scores, candidate_artifact.render_errors, resolved)

            screenshots = await self._persist(
                challenge_id, submission_id, candidate_artifact, expected_artifact, diff_image
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            result = EvaluationResult(
                submission_id=submission_id,
                challenge_id=challenge_id,
                status=EvaluationState.COMPLETE,
                final_score=verdict.final_score,
                passed=verdict.passed,
                dimension_scores=scores,
                feedback=feedback,
                diff_screenshot_ref=screenshots.diff,
                screenshots=screenshots,
                render_errors={
                    "candidate": candidate_artifact.render_errors,
                    "expected": expected_artifact.render_errors,
                },
                duration_ms=duration_ms,
            )
        except EvaluationFailed as e:
            logger.error(f"[Evaluate] submission={submission_id} failed: {e}")
            run.fail(e)
            raise
        except asyncio.CancelledError as e:
            run.fail(e)
            raise
        except Exception as e:
            logger.error(
                f"[Evaluate] submission={submission_id} failed in state {run.state.value}: {e}",
                exc_info=e,
            )
            failure = UnexpectedEvaluationError(f"Evaluation failed while {run.state.value}: {type(e).__name__}: {e}")
            if not run.terminal:
                run.fail(failure)
            raise failure from e

        run.advance(EvaluationState.COMPLETE)
        logger.info(
            f"[Evaluate] submission={submission_id} final={verdict.final_score} "
            f"passed={verdict.passed} in {duration_ms} ms "
            f"({', '.join(f'{ds.name.value}={ds.score:.1f}@{ds.weight:g}' for ds in scores)})"
        )
        return result

    async def evaluate_challenge(
        self,
        challenge: Challenge,
        code: CodeBundle,
        submission_id: str | None = None,
        run: EvaluationRun | None = None,
    ) -> EvaluationResult:
        """Evaluate code against a challenge's expected solution and grading settings."""
        return await self.evaluate(
            code,
            challenge.expected_solution,
            challenge.passing_threshold,
            weights=challenge.weights,
            tag_rules=challenge.tag_rules,
            required_phrases=challenge.required_phrases,
            strict_structure=challenge.strict_structure,
            submission_id=submission_id,
            challenge_id=challenge.id,
            run=run,
        )

    async def evaluate_submission(self, submission_id: str) -> EvaluationResult:
        """
        Evaluate a stored submission and save the result.

        Always recomputes from the stored code, so re-running is safe.

        Raises:
            SubmissionNotFound / ChallengeNotFound: unknown ids
            EvaluationFailed: the evaluation could not produce a result
        """
        if self.challenges is None or self.submissions is None:
            raise RuntimeError("ChallengeEvaluator was created without repositories")

        submission = await self.submissions.get_submission(submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        challenge = await self.challenges.get_challenge(submission.challenge_id)
        if challenge is None:
            raise ChallengeNotFound(submission.challenge_id)

        result = await self.evaluate_challenge(challenge, submission.code, submission_id=submission.id)
        await self.submissions.save_result(submission.id, result)
        return result

    async def _render_both(
        self, candidate: CodeBundle, expected: CodeBundle
    ) -> tuple[RenderArtifact, RenderArtifact]:
        tasks = [
            asyncio.ensure_future(self.renderer.render(bundle, timeout_ms=self.render_timeout_ms, label=label))
            for bundle, label in ((candidate, "candidate"), (expected, "expected"))
        ]
        for task in tasks:
            task.add_done_callback(_consume_exception)

        # Shielded: a cancelled evaluation lets in-flight renders finish and drops their results.
        outcomes = await asyncio.gather(*(asyncio.shield(t) for t in tasks), return_exceptions=True)

        for outcome in outcomes:
            if isinstance(outcome, EvaluationFailed):
                raise outcome
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        candidate_outcome, expected_outcome = outcomes
        if isinstance(candidate_outcome, Exception) and isinstance(expected_outcome, Exception):
            raise NoArtifactAvailable(
                f"Both renders failed: candidate ({candidate_outcome}), expected ({expected_outcome})"
            )

        if isinstance(candidate_outcome, Exception):
            candidate_outcome = self._substitute(candidate, candidate_outcome, "candidate", expected_outcome)
        if isinstance(expected_outcome, Exception):
            expected_outcome = self._substitute(expected, expected_outcome, "expected", candidate_outcome)
        return candidate_outcome, expected_outcome

    def _substitute(
        self,
        bundle: CodeBundle,
        error: Exception,
        label: str,
        other: RenderArtifact,
    ) -> RenderArtifact:
        """Stand-in artifact for a side whose render failed, sized like the other side."""
        if other.screenshot is not None:
            width, height = other.screenshot.width, other.screenshot.height
        else:
            width, height = settings.viewport_width, settings.viewport_height

        if isinstance(error, RenderTimeout):
            logger.warning(f"[Evaluate] {label} render timed out, scoring against an empty page")
            return RenderArtifact.empty(width, height, [RenderError(stage="timeout", message=str(error))])

        stage = "crash" if isinstance(error, RenderCrash) else "render"
        if isinstance(error, RenderCrash):
            logger.warning(f"[Evaluate] {label} render crashed, falling back to parsed markup: {error}")
        else:
            logger.error(f"[Evaluate] {label} render failed unexpectedly: {error}", exc_info=error)
        errors = [RenderError(stage=stage, message=str(error))]
        try:
            return parse_artifact(bundle, width, height, errors)
        except Exception as e:
            logger.warning(f"[Evaluate] Could not parse {label} markup: {e}")
            errors.append(RenderError(stage="parse", message=str(e)))
            return RenderArtifact.empty(width, height, errors)

    async def _guarded(
        self,
        dimension: Dimension,
        fallback_weight: float,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run a comparator off the event loop; an exception becomes a 0-score dimension."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except Exception as e:
            failure = ComparatorFailure(dimension.value, e)
            logger.error(f"[Evaluate] {failure}")
            return DimensionScore(
                name=dimension,
                score=0.0,
                weight=fallback_weight,
                passed=False,
                details=[Finding(kind="comparator_failure", message=str(failure))],
            )

    async def _compare(
        self,
        candidate: RenderArtifact,
        expected: RenderArtifact,
        thresholds: Thresholds,
        *,
        weights: Mapping[Any, float] | None,
        tag_rules: list[TagRule],
        required_phrases: list[str],
        strict_structure: bool,
    ):
        active = [Dimension.STRUCTURE, Dimension.VISUAL, Dimension.CONTENT]
        if tag_rules:
            active.append(Dimension.TAG)
        resolved = resolve_weights(weights, active)

        def _visual():
            if candidate.screenshot is None or expected.screenshot is None:
                raise ValueError("screenshot missing")
            return self.visual_comparator.compare(
                candidate.screenshot,
                expected.screenshot,
                weight=resolved[Dimension.VISUAL],
                min_score=thresholds.minimum_for(Dimension.VISUAL),
            )

        structure, visual, content = await asyncio.gather(
            self._guarded(
                Dimension.STRUCTURE,
                resolved[Dimension.STRUCTURE],
                compare_dom,
                candidate.dom_tree,
                expected.dom_tree,
                strict=strict_structure,
                weight=resolved[Dimension.STRUCTURE],
                min_score=thresholds.minimum_for(Dimension.STRUCTURE),
            ),
            self._guarded(Dimension.VISUAL, resolved[Dimension.VISUAL], _visual),
            self._guarded(
                Dimension.CONTENT,
                resolved[Dimension.CONTENT],
                compare_content,
                candidate.text_content,
                expected.text_content,
                required_phrases=required_phrases,
                weight=resolved[Dimension.CONTENT],
                min_score=thresholds.minimum_for(Dimension.CONTENT),
            ),
        )

        diff_image = None
        if not isinstance(visual, DimensionScore):
            diff_image = visual.diff_image
            visual = visual.dimension_score

        if tag_rules:
            tag = await self._guarded(
                Dimension.TAG,
                resolved[Dimension.TAG],
                evaluate_tag_rules,
                candidate.dom_tree,
                tag_rules,
                weight=resolved[Dimension.TAG],
                min_score=thresholds.minimum_for(Dimension.TAG),
            )
        else:
            tag = DimensionScore(
                name=Dimension.TAG,
                score=100.0,
                weight=0.0,
                passed=True,
                details=[_excluded(Dimension.TAG, "no tag rules configured for this challenge")],
            )

        render_findings = [
            Finding(kind="render_failure", message=f"{label} render failed: {e.message}", path=label)
            for label, artifact in (("candidate", candidate), ("expected", expected))
            for e in artifact.render_errors
            if e.stage in ("timeout", "crash", "render")
        ]

        scores = []
        for ds in (structure, visual, content, tag):
            extra = list(render_findings) if ds.name != Dimension.TAG else []
            if ds.weight == 0 and not any(f.kind == "excluded" for f in ds.details):
                extra.append(_excluded(ds.name, "weight is 0"))
            if extra:
                ds = ds.model_copy(update={"details": list(ds.details) + extra})
            scores.append(ds)
        return scores, diff_image

    async def _persist(
        self,
        challenge_id: str | None,
        submission_id: str | None,
        candidate: RenderArtifact,
        expected: RenderArtifact,
        diff_image,
    ) -> ScreenshotRefs:
        if self.screenshot_store is None:
            return ScreenshotRefs()
        try:
            return await asyncio.to_thread(
                self.screenshot_store.save,
                challenge_id,
                submission_id,
                candidate_png=candidate.screenshot_png,
                expected_png=expected.screenshot_png,
                diff_image=diff_image,
            )
        except Exception as e:
            logger.warning(f"[Evaluate] Screenshot persistence failed: {e}")
            return ScreenshotRefs()
