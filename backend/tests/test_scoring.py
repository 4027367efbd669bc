"""Tests for weight resolution and score aggregation."""

import pytest

from evaluation.models import Dimension, DimensionScore, Thresholds
from evaluation.scoring import aggregate, resolve_thresholds, resolve_weights


def _score(name: Dimension, score: float, weight: float) -> DimensionScore:
    return DimensionScore(name=name, score=score, weight=weight, passed=True)


def test_default_weights_are_equal():
    weights = resolve_weights()
    assert weights == {dim: 25.0 for dim in Dimension}


def test_inactive_dimension_is_redistributed():
    weights = resolve_weights(active=[Dimension.STRUCTURE, Dimension.VISUAL, Dimension.CONTENT])
    assert weights[Dimension.TAG] == 0
    assert sum(weights.values()) == pytest.approx(100)
    assert weights[Dimension.STRUCTURE] == pytest.approx(100 / 3, abs=1e-3)


def test_overrides_are_rescaled():
    weights = resolve_weights({"structure": 2, "visual": 3, "content": 0, "tag": 0})
    assert weights[Dimension.STRUCTURE] == 40
    assert weights[Dimension.VISUAL] == 60
    assert weights[Dimension.CONTENT] == 0


def test_all_zero_weights_split_evenly():
    weights = resolve_weights({"structure": 0, "visual": 0}, active=[Dimension.STRUCTURE, Dimension.VISUAL])
    assert weights[Dimension.STRUCTURE] == 50
    assert weights[Dimension.VISUAL] == 50


def test_weighted_final_score():
    scores = [
        _score(Dimension.STRUCTURE, 100, 25),
        _score(Dimension.VISUAL, 60, 25),
        _score(Dimension.CONTENT, 100, 25),
        _score(Dimension.TAG, 100, 25),
    ]
    verdict = aggregate(scores, Thresholds(overall_min_score=75))
    assert verdict.final_score == 90
    assert verdict.passed is True


def test_dimension_below_minimum_fails_despite_high_final():
    scores = [
        _score(Dimension.STRUCTURE, 100, 25),
        _score(Dimension.VISUAL, 60, 25),
        _score(Dimension.CONTENT, 100, 25),
        _score(Dimension.TAG, 100, 25),
    ]
    thresholds = Thresholds(per_dimension={Dimension.VISUAL: 80}, overall_min_score=75)
    verdict = aggregate(scores, thresholds)
    assert verdict.final_score == 90
    assert verdict.passed is False
    assert verdict.failed_dimensions == [Dimension.VISUAL]


def test_zero_weight_dimension_does_not_fail_verdict():
    scores = [
        _score(Dimension.STRUCTURE, 100, 100),
        _score(Dimension.TAG, 0, 0),
    ]
    thresholds = Thresholds(per_dimension={Dimension.TAG: 50})
    assert aggregate(scores, thresholds).passed is True


def test_final_score_is_clamped_and_rounded():
    assert aggregate([_score(Dimension.STRUCTURE, 0, 100)], Thresholds()).final_score == 0
    assert aggregate([_score(Dimension.STRUCTURE, 100, 100)], Thresholds()).final_score == 100
    assert aggregate([_score(Dimension.STRUCTURE, 74.6, 100)], Thresholds()).final_score == 75


def test_threshold_defaults():
    thresholds = resolve_thresholds({"visual": "85"})
    assert thresholds.minimum_for(Dimension.STRUCTURE) == 70
    assert thresholds.minimum_for(Dimension.VISUAL) == 85
    assert thresholds.minimum_for(Dimension.CONTENT) is None
    assert thresholds.overall_min_score == 75


def test_thresholds_ignore_junk():
    thresholds = Thresholds.from_passing_threshold({"visual": "n/a", "bogus": 3, "overall": 150})
    assert thresholds.minimum_for(Dimension.VISUAL) is None
    assert thresholds.overall_min_score == 100


def test_half_points_round_up_at_the_pass_boundary():
    verdict = aggregate([_score(Dimension.STRUCTURE, 74.5, 100)], Thresholds(overall_min_score=75))
    assert verdict.final_score == 75
    assert verdict.passed is True

    assert aggregate([_score(Dimension.STRUCTURE, 82.5, 100)], Thresholds()).final_score == 83
    assert aggregate([_score(Dimension.STRUCTURE, 74.49, 100)], Thresholds()).final_score == 74
