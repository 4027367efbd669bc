"""Rule-based feedback from dimension scores.

Strong dimensions become encouragement, weak ones become improvements that
point at the findings which cost the most. Both lists are always non-empty.
"""

from config import settings

from .content_comparison import content_validation_summary
from .models import (
    Dimension,
    DimensionScore,
    Feedback,
    FeedbackItem,
    Finding,
    RenderError,
    Thresholds,
)

_LABELS = {
    Dimension.STRUCTURE: "HTML structure",
    Dimension.VISUAL: "Visual appearance",
    Dimension.CONTENT: "Text content",
    Dimension.TAG: "Required elements",
}

_PRAISE = {
    Dimension.STRUCTURE: "Your HTML structure closely matches the expected layout.",
    Dimension.VISUAL: "Your page looks almost identical to the expected result.",
    Dimension.CONTENT: "Your text content matches the expected copy.",
    Dimension.TAG: "You used all of the required elements.",
}

_ADVICE = {
    Dimension.STRUCTURE: "Check your HTML elements and their nesting against the expected layout.",
    Dimension.VISUAL: "Compare colors, spacing and sizes with the expected result.",
    Dimension.CONTENT: "Some text is missing or different from the expected copy.",
    Dimension.TAG: "Some required elements are missing or used the wrong number of times.",
}

# Findings that describe the dimension rather than a defect.
_NEUTRAL_KINDS = frozenset({"excluded"})


def _costliest(findings: list[Finding], limit: int) -> list[str]:
    ranked = sorted(
        (
            (f.score if f.score is not None else 100.0, index, f)
            for index, f in enumerate(findings)
            if f.kind not in _NEUTRAL_KINDS
            and not (f.kind in ("content_check", "tag_rule") and (f.score or 0) >= 100)
        ),
        key=lambda t: (t[0], t[1]),
    )
    return [f.message for _, _, f in ranked[:limit]]


def _threshold_for(ds: DimensionScore, thresholds: Thresholds) -> float:
    minimum = thresholds.minimum_for(ds.name)
    return minimum if minimum is not None else thresholds.overall_min_score


def generate_feedback(
    scores: list[DimensionScore],
    render_errors: list[RenderError],
    thresholds: Thresholds | None = None,
    *,
    high_water_mark: float | None = None,
    top_n: int | None = None,
) -> Feedback:
    """
    Turn dimension scores into encouragement and improvement items.

    Args:
        scores: Dimension scores from the comparators
        render_errors: Errors raised while rendering the candidate's code
        thresholds: Minimums used to decide which dimensions need work
        high_water_mark: Score at or above which a dimension earns encouragement
        top_n: Number of findings quoted per improvement item

    Returns:
        Feedback with at least one encouragement and one improvement item
    """
    thresholds = thresholds or Thresholds()
    high_water_mark = settings.feedback_high_water_mark if high_water_mark is None else high_water_mark
    top_n = settings.feedback_top_n if top_n is None else top_n

    active = [ds for ds in scores if ds.weight > 0]
    encouragement: list[FeedbackItem] = []
    improvements: list[FeedbackItem] = []

    for ds in active:
        label = _LABELS[ds.name]
        if ds.score >= high_water_mark:
            encouragement.append(FeedbackItem(
                type="encouragement",
                dimension=ds.name,
                description=_PRAISE[ds.name],
                details=[f"{label}: {round(ds.score)}%"],
                score=ds.score,
                weight=ds.weight,
                passed=ds.passed,
            ))
        if ds.score < _threshold_for(ds, thresholds):
            improvements.append(FeedbackItem(
                type="improvement",
                dimension=ds.name,
                description=_ADVICE[ds.name],
                details=_costliest(ds.details, top_n),
                score=ds.score,
                weight=ds.weight,
                passed=ds.passed,
            ))

    script_errors = [e for e in render_errors if e.stage in ("script", "console")]
    if script_errors:
        improvements.append(FeedbackItem(
            type="improvement",
            description="Your JavaScript reported errors while the page was loading.",
            details=[e.message for e in script_errors[:top_n]],
            passed=False,
        ))
    failures = [e for e in render_errors if e.stage not in ("script", "console")]
    if failures:
        improvements.append(FeedbackItem(
            type="improvement",
            description="Your page could not be fully rendered, so some scores are based on your markup alone.",
            details=[e.message for e in failures[:top_n]],
            passed=False,
        ))

    if not encouragement:
        best = max(active, key=lambda ds: ds.score, default=None)
        if best is not None and best.score > 0:
            encouragement.append(FeedbackItem(
                type="encouragement",
                dimension=best.name,
                description=f"Your strongest area is {_LABELS[best.name].lower()}. Keep building on it!",
                details=[f"{_LABELS[best.name]}: {round(best.score)}%"],
                score=best.score,
                weight=best.weight,
                passed=best.passed,
            ))
        else:
            encouragement.append(FeedbackItem(
                type="encouragement",
                description="Thanks for submitting! Every attempt gets you closer to the expected result.",
            ))

    if not improvements:
        weakest = min(active, key=lambda ds: ds.score, default=None)
        if weakest is not None and weakest.score < 100:
            improvements.append(FeedbackItem(
                type="improvement",
                dimension=weakest.name,
                description=f"To reach a perfect score, polish your {_LABELS[weakest.name].lower()}.",
                details=_costliest(weakest.details, top_n),
                score=weakest.score,
                weight=weakest.weight,
                passed=weakest.passed,
            ))
        else:
            improvements.append(FeedbackItem(
                type="improvement",
                description="Perfect match! Try a harder challenge or refactor your code for readability.",
            ))

    content = next((ds for ds in scores if ds.name == Dimension.CONTENT), None)
    content_validation = ""
    content_details: list[FeedbackItem] = []
    if content is not None and content.weight > 0:
        content_validation = content_validation_summary(content)
        for finding in content.details:
            if finding.kind != "content_check":
                continue
            meta = finding.actual if isinstance(finding.actual, dict) else {}
            content_details.append(FeedbackItem(
                type="content",
                dimension=Dimension.CONTENT,
                description=finding.message,
                score=finding.score,
                weight=meta.get("weight"),
                passed=meta.get("passed"),
            ))

    return Feedback(
        encouragement=encouragement,
        improvements=improvements,
        content_validation=content_validation,
        content_details=content_details,
    )
