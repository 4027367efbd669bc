"""Weighted scoring for challenge evaluations.

Final = round( Σ score_i * weight_i / 100 ), halves rounded up, clamped to 0-100

Scores are 0-100 per dimension; weights are percentages over the active
dimensions and always sum to 100. A dimension with weight 0 does not count
towards the final score or the pass verdict.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from config import settings

from .models import Dimension, DimensionScore, Thresholds


@dataclass(frozen=True)
class AggregateVerdict:
    final_score: float
    passed: bool
    failed_dimensions: list[Dimension] = field(default_factory=list)


def _coerce_dimension(key: Any) -> Dimension | None:
    try:
        return key if isinstance(key, Dimension) else Dimension(str(key).lower())
    except ValueError:
        return None


def resolve_weights(
    overrides: Mapping[Any, float] | None = None,
    active: Iterable[Dimension] | None = None,
) -> dict[Dimension, float]:
    """
    Resolve the weight of every dimension.

    Parameters:
    - overrides: per-challenge weights; missing dimensions use settings.default_weights
    - active: dimensions that can be scored for this evaluation (all when None)

    Inactive dimensions get weight 0. Active weights are rescaled so they sum
    to exactly 100; the largest weight absorbs the rounding remainder. If
    every active weight is 0, the active dimensions share 100 evenly.
    """
    active_set = set(Dimension) if active is None else set(active)

    raw: dict[Dimension, float] = {}
    for source in (settings.default_weights, overrides or {}):
        for key, value in source.items():
            dim = _coerce_dimension(key)
            if dim is not None and value is not None:
                raw[dim] = max(0.0, float(value))

    weights = {dim: (raw.get(dim, 0.0) if dim in active_set else 0.0) for dim in Dimension}
    total = sum(weights.values())
    if not active_set:
        return weights
    if total <= 0:
        weights = {dim: (1.0 if dim in active_set else 0.0) for dim in Dimension}
        total = float(len(active_set))

    scaled = {dim: round(w * 100.0 / total, 4) for dim, w in weights.items()}
    remainder = round(100.0 - sum(scaled.values()), 4)
    if remainder:
        # Deterministic: largest weight first, then enum order.
        top = max(Dimension, key=lambda d: (scaled[d], -list(Dimension).index(d)))
        scaled[top] = round(scaled[top] + remainder, 4)
    return scaled


def resolve_thresholds(
    passing_threshold: Thresholds | Mapping[str, Any] | None = None,
) -> Thresholds:
    """Apply settings.default_thresholds to a challenge's (possibly partial) thresholds."""
    if isinstance(passing_threshold, Thresholds):
        return passing_threshold
    return Thresholds.from_passing_threshold(
        dict(passing_threshold or {}),
        defaults=settings.default_thresholds,
    )


def aggregate(scores: list[DimensionScore], thresholds: Thresholds) -> AggregateVerdict:
    """
    Combine dimension scores into a final score and verdict.

    Pure function: no I/O, no randomness.
    """
    weighted = sum(ds.score * ds.weight for ds in scores if ds.weight > 0) / 100.0
    final_score = float(max(0, min(100, math.floor(weighted + 0.5))))

    failed = [
        ds.name
        for ds in scores
        if ds.weight > 0
        and thresholds.minimum_for(ds.name) is not None
        and ds.score < thresholds.minimum_for(ds.name)
    ]
    passed = final_score >= thresholds.overall_min_score and not failed
    return AggregateVerdict(final_score=final_score, passed=passed, failed_dimensions=failed)
