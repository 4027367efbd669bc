"""Tests for pixel comparison."""

import numpy as np
import pytest

from evaluation.errors import DimensionMismatch
from evaluation.models import Dimension, PixelBuffer
from evaluation.visual_comparison import VisualComparator, compare_visual, mismatch_mask


def _buffer(pixels: np.ndarray) -> PixelBuffer:
    return PixelBuffer(width=pixels.shape[1], height=pixels.shape[0], pixels=pixels)


def _with_square(size=20, top=5, left=5, side=6, color=(0, 0, 0)) -> PixelBuffer:
    pixels = np.full((size, size, 3), 255, dtype=np.uint8)
    pixels[top:top + side, left:left + side] = color
    return _buffer(pixels)


def test_identical_screenshots_score_100():
    image = _with_square()
    result = compare_visual(image, image)
    assert result.dimension_score.name == Dimension.VISUAL
    assert result.dimension_score.score == 100
    assert result.mismatched_pixels == 0
    assert result.dimension_score.details == []


def test_small_color_drift_within_tolerance():
    a = _with_square(color=(100, 100, 100))
    b = _with_square(color=(110, 95, 104))
    assert compare_visual(a, b, tolerance=16).dimension_score.score == 100
    assert compare_visual(a, b, tolerance=4).dimension_score.score < 100


def test_missing_block_counts_every_pixel():
    blank = PixelBuffer.blank(20, 20)
    result = compare_visual(blank, _with_square(side=6))
    assert result.mismatched_pixels == 36
    assert result.total_pixels == 400
    assert result.dimension_score.score == pytest.approx(91.0)
    finding = result.dimension_score.details[0]
    assert finding.kind == "pixel_mismatch"
    assert finding.actual == {"x": 5, "y": 5, "width": 6, "height": 6}


def test_comparison_is_symmetric():
    rng = np.random.default_rng(7)
    a = _buffer(rng.integers(0, 256, size=(16, 16, 3), dtype=np.uint8))
    b = _buffer(rng.integers(0, 256, size=(16, 16, 3), dtype=np.uint8))
    comparator = VisualComparator(tolerance=16, generate_diff=False)
    assert comparator.compare(a, b).dimension_score.score == comparator.compare(b, a).dimension_score.score


def test_one_pixel_edge_shift_is_forgiven():
    expected = np.full((10, 10, 3), 255, dtype=np.uint8)
    expected[:, 5:] = 0
    candidate = expected.copy()
    # Edge lands one pixel to the right, as sub-pixel glyph placement does.
    candidate[:, 5] = 255
    mask = mismatch_mask(candidate, expected, tolerance=16)
    assert not mask.any()


def test_different_sizes_raise():
    with pytest.raises(DimensionMismatch):
        compare_visual(PixelBuffer.blank(10, 10), PixelBuffer.blank(10, 12))


def test_diff_image_highlights_mismatches():
    result = compare_visual(PixelBuffer.blank(20, 20), _with_square())
    diff = np.asarray(result.diff_image)
    assert diff.shape == (20, 20, 3)
    assert tuple(diff[7, 7]) == (255, 0, 0)
    assert tuple(diff[0, 0]) != (255, 0, 0)


def test_pixel_buffer_png_round_trip():
    image = _with_square(color=(12, 34, 56))
    assert PixelBuffer.from_png(image.to_png()) == image
