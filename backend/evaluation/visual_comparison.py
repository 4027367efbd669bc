"""Pixel-level comparison of rendered screenshots.

Two pixels mismatch when any RGB channel differs by more than the tolerance.
A mismatch is forgiven as anti-aliasing when each image's pixel has a
within-tolerance counterpart somewhere in the other image's 3x3
neighbourhood, which absorbs sub-pixel glyph and edge shifts between runs.
The check is symmetric, so compare(A, B) and compare(B, A) score the same.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image

from config import settings

from .errors import DimensionMismatch
from .models import Dimension, DimensionScore, Finding, PixelBuffer

logger = logging.getLogger(__name__)

_DIFF_COLOR = np.array([255, 0, 0], dtype=np.uint8)
_DIFF_FADE = 0.25  # how much of the expected image shows through the overlay


@dataclass
class VisualComparisonResult:
    """Result of comparing two screenshots."""
    dimension_score: DimensionScore
    mismatched_pixels: int
    total_pixels: int
    diff_image: Optional[Image.Image] = None  # mismatched pixels highlighted; None if generation failed


def _matches_neighbour(source: np.ndarray, other: np.ndarray, tolerance: int) -> np.ndarray:
    """True where ``source`` has a within-tolerance pixel in ``other``'s 3x3 neighbourhood."""
    h, w, _ = source.shape
    padded = np.pad(other, ((1, 1), (1, 1), (0, 0)), mode="edge")
    found = np.zeros((h, w), dtype=bool)
    for dy in range(3):
        for dx in range(3):
            shifted = padded[dy:dy + h, dx:dx + w]
            found |= np.abs(source - shifted).max(axis=2) <= tolerance
    return found


def mismatch_mask(candidate: np.ndarray, expected: np.ndarray, tolerance: int) -> np.ndarray:
    """Boolean (height, width) mask of pixels that count as mismatched."""
    a = candidate.astype(np.int16)
    b = expected.astype(np.int16)
    direct = np.abs(a - b).max(axis=2) > tolerance
    if not direct.any():
        return direct
    antialiased = _matches_neighbour(a, b, tolerance) & _matches_neighbour(b, a, tolerance)
    return direct & ~antialiased


def render_diff(expected: PixelBuffer, mask: np.ndarray) -> Image.Image:
    """Expected image faded towards white with mismatched pixels painted red."""
    gray = np.asarray(expected.to_image().convert("L"), dtype=np.float32)
    faded = (255 - (255 - gray) * _DIFF_FADE).astype(np.uint8)
    overlay = np.repeat(faded[:, :, None], 3, axis=2)
    overlay[mask] = _DIFF_COLOR
    return Image.fromarray(overlay)


def _bounding_box(mask: np.ndarray) -> dict[str, int] | None:
    coords = np.argwhere(mask)
    if coords.size == 0:
        return None
    (top, left), (bottom, right) = coords.min(axis=0), coords.max(axis=0)
    return {"x": int(left), "y": int(top), "width": int(right - left + 1), "height": int(bottom - top + 1)}


class VisualComparator:
    """Compares screenshots pixel by pixel with a perceptual tolerance."""

    def __init__(self, tolerance: int | None = None, generate_diff: bool = True):
        self.tolerance = settings.pixel_tolerance if tolerance is None else tolerance
        self.generate_diff = generate_diff

    def compare(
        self,
        candidate: PixelBuffer,
        expected: PixelBuffer,
        *,
        weight: float = 0.0,
        min_score: float | None = None,
    ) -> VisualComparisonResult:
        """
        Compare a candidate screenshot against the expected one.

        Args:
            candidate: Screenshot of the learner's render
            expected: Screenshot of the reference render
            weight: Weight to attach to the resulting dimension score
            min_score: Per-dimension minimum used for the passed flag

        Returns:
            VisualComparisonResult with the visual dimension score and an optional diff image

        Raises:
            DimensionMismatch: the screenshots differ in resolution
        """
        if (candidate.width, candidate.height) != (expected.width, expected.height):
            raise DimensionMismatch(
                (candidate.width, candidate.height),
                (expected.width, expected.height),
            )

        mask = mismatch_mask(candidate.pixels, expected.pixels, self.tolerance)
        mismatched = int(mask.sum())
        total = expected.total_pixels
        score = round(max(0.0, 100.0 * (1 - mismatched / total)), 2) if total else 100.0

        details: list[Finding] = []
        if mismatched:
            details.append(Finding(
                kind="pixel_mismatch",
                message=f"{mismatched:,} of {total:,} pixels differ from the expected render",
                expected=total,
                actual=_bounding_box(mask),
                score=score,
            ))

        diff_image = None
        if self.generate_diff:
            try:
                diff_image = render_diff(expected, mask)
            except (ValueError, TypeError, MemoryError) as e:
                logger.warning(f"[Visual] Diff overlay generation failed: {e}")

        logger.info(f"[Visual] visual score {score:.2f} ({mismatched}/{total} mismatched)")
        return VisualComparisonResult(
            dimension_score=DimensionScore(
                name=Dimension.VISUAL,
                score=score,
                weight=weight,
                passed=min_score is None or score >= min_score,
                details=details,
            ),
            mismatched_pixels=mismatched,
            total_pixels=total,
            diff_image=diff_image,
        )


def compare_visual(
    candidate: PixelBuffer,
    expected: PixelBuffer,
    *,
    tolerance: int | None = None,
    weight: float = 0.0,
    min_score: float | None = None,
) -> VisualComparisonResult:
    """Convenience wrapper around VisualComparator.compare."""
    return VisualComparator(tolerance=tolerance).compare(
        candidate, expected, weight=weight, min_score=min_score
    )
