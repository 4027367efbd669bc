"""Rendered text comparison.

The content dimension is a composite of weighted sub-checks, each reported
as its own ``content_check`` finding:

- coverage: share of the expected words present in the candidate (multiset)
- order: longest-common-subsequence ratio over the word sequences
- required phrases: one check per phrase supplied by the challenge
"""

import logging
import re
from collections import Counter
from typing import Iterable

from rapidfuzz.distance import LCSseq

from .models import Dimension, DimensionScore, Finding

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+", re.UNICODE)
_MAX_LINE_FINDINGS = 5


def normalize_lines(lines: Iterable[str]) -> list[str]:
    """Collapse whitespace, lower-case and drop empty lines."""
    normalized = (" ".join(line.split()).lower() for line in lines)
    return [line for line in normalized if line]


def tokenize(lines: Iterable[str]) -> list[str]:
    return [token for line in lines for token in _WORD.findall(line)]


def coverage_ratio(candidate_tokens: list[str], expected_tokens: list[str]) -> float:
    if not expected_tokens:
        return 1.0
    overlap = Counter(candidate_tokens) & Counter(expected_tokens)
    return sum(overlap.values()) / len(expected_tokens)


def order_ratio(candidate_tokens: list[str], expected_tokens: list[str]) -> float:
    total = len(candidate_tokens) + len(expected_tokens)
    if total == 0:
        return 1.0
    return 2 * LCSseq.similarity(candidate_tokens, expected_tokens) / total


def _check(name: str, ratio: float, weight: float, message: str) -> Finding:
    return Finding(
        kind="content_check",
        message=message,
        expected=name,
        actual={"weight": round(weight, 2), "passed": ratio >= 0.999},
        score=round(100 * ratio, 2),
    )


def compare_content(
    candidate_text: list[str],
    expected_text: list[str],
    *,
    required_phrases: Iterable[str] = (),
    weight: float = 0.0,
    min_score: float | None = None,
) -> DimensionScore:
    """
    Compare the rendered text of the candidate against the expected text.

    Args:
        candidate_text: Text lines of the learner's render
        expected_text: Text lines of the reference render
        required_phrases: Phrases that must appear in the candidate's text
        weight: Weight to attach to the resulting dimension score
        min_score: Per-dimension minimum used for the passed flag

    Returns:
        DimensionScore for the content dimension; ``details`` holds one
        ``content_check`` per sub-check followed by missing/extra line findings
    """
    cand_lines = normalize_lines(candidate_text)
    exp_lines = normalize_lines(expected_text)
    cand_tokens = tokenize(cand_lines)
    exp_tokens = tokenize(exp_lines)
    cand_joined = " ".join(cand_lines)

    phrases = [" ".join(p.split()).lower() for p in required_phrases if p and p.strip()]
    if phrases:
        coverage_weight, order_weight = 40.0, 40.0
        phrase_weight = 20.0 / len(phrases)
    else:
        coverage_weight, order_weight, phrase_weight = 50.0, 50.0, 0.0

    coverage = coverage_ratio(cand_tokens, exp_tokens)
    order = order_ratio(cand_tokens, exp_tokens)
    checks: list[tuple[Finding, float, float]] = [
        (
            _check("coverage", coverage, coverage_weight,
                   f"{round(coverage * 100)}% of the expected words are present"),
            coverage,
            coverage_weight,
        ),
        (
            _check("order", order, order_weight,
                   f"Text order matches the expected copy at {round(order * 100)}%"),
            order,
            order_weight,
        ),
    ]
    for phrase in phrases:
        found = 1.0 if phrase in cand_joined else 0.0
        message = f"Required text {phrase!r} is {'present' if found else 'missing'}"
        checks.append((_check(f"phrase:{phrase}", found, phrase_weight, message), found, phrase_weight))

    score = 100.0 * sum(ratio * w for _, ratio, w in checks) / sum(w for _, _, w in checks)
    score = round(max(0.0, min(100.0, score)), 2)

    details = [finding for finding, _, _ in checks]

    cand_line_set = set(cand_lines)
    missing = [line for line in exp_lines if line not in cand_line_set and line not in cand_joined]
    for line in missing[:_MAX_LINE_FINDINGS]:
        details.append(Finding(kind="missing_text", message=f"Missing text: {line!r}", expected=line, score=0.0))
    exp_line_set = set(exp_lines)
    exp_joined = " ".join(exp_lines)
    extra = [line for line in cand_lines if line not in exp_line_set and line not in exp_joined]
    for line in extra[:_MAX_LINE_FINDINGS]:
        details.append(Finding(kind="extra_text", message=f"Unexpected text: {line!r}", actual=line, score=50.0))

    logger.info(
        f"[Content] content score {score:.2f} (coverage={coverage:.3f}, order={order:.3f}, "
        f"phrases={len(phrases)}, missing_lines={len(missing)})"
    )
    return DimensionScore(
        name=Dimension.CONTENT,
        score=score,
        weight=weight,
        passed=min_score is None or score >= min_score,
        details=details,
    )


def content_validation_summary(content: DimensionScore) -> str:
    """One-paragraph summary of the content sub-checks for feedback."""
    checks = [d for d in content.details if d.kind == "content_check"]
    passed = sum(1 for d in checks if isinstance(d.actual, dict) and d.actual.get("passed"))
    missing = sum(1 for d in content.details if d.kind == "missing_text")
    summary = f"Content score {round(content.score)}%: {passed} of {len(checks)} content checks passed."
    if missing:
        summary += f" {missing} expected line{'s' if missing != 1 else ''} not found in your page."
    return summary
