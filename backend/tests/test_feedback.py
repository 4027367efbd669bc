"""Tests for rule-based feedback."""

from evaluation.content_comparison import compare_content
from evaluation.feedback import generate_feedback
from evaluation.models import Dimension, DimensionScore, Finding, RenderError, Thresholds

THRESHOLDS = Thresholds(per_dimension={Dimension.STRUCTURE: 70, Dimension.VISUAL: 80}, overall_min_score=75)


def _scores(structure: float, visual: float, content: float) -> list[DimensionScore]:
    return [
        DimensionScore(name=Dimension.STRUCTURE, score=structure, weight=100 / 3, passed=True),
        DimensionScore(name=Dimension.VISUAL, score=visual, weight=100 / 3, passed=True),
        DimensionScore(name=Dimension.CONTENT, score=content, weight=100 / 3, passed=True),
        DimensionScore(
            name=Dimension.TAG,
            score=100,
            weight=0,
            passed=True,
            details=[Finding(kind="excluded", message="tag not scored")],
        ),
    ]


def test_perfect_score_still_has_improvement():
    feedback = generate_feedback(_scores(100, 100, 100), [], THRESHOLDS)
    assert len(feedback.encouragement) == 3
    assert len(feedback.improvements) == 1
    assert feedback.improvements[0].type == "improvement"


def test_zero_score_still_has_encouragement():
    feedback = generate_feedback(_scores(0, 0, 0), [], THRESHOLDS)
    assert len(feedback.encouragement) == 1
    assert feedback.encouragement[0].dimension is None
    assert {item.dimension for item in feedback.improvements} == {
        Dimension.STRUCTURE,
        Dimension.VISUAL,
        Dimension.CONTENT,
    }


def test_excluded_dimension_gets_no_feedback():
    feedback = generate_feedback(_scores(95, 40, 95), [], THRESHOLDS)
    mentioned = {item.dimension for item in feedback.encouragement + feedback.improvements}
    assert Dimension.TAG not in mentioned


def test_improvement_quotes_costliest_findings():
    structure = DimensionScore(
        name=Dimension.STRUCTURE,
        score=40,
        weight=100,
        passed=False,
        details=[
            Finding(kind="text_mismatch", message="Text differs on body > h1", score=80),
            Finding(kind="missing_element", message="Missing <nav> element at body > nav", score=0),
            Finding(kind="attribute_mismatch", message="Attributes differ on body > a", score=60),
            Finding(kind="extra_element", message="Unexpected <span> element at body > span", score=0),
        ],
    )
    feedback = generate_feedback([structure], [], THRESHOLDS, top_n=3)
    assert feedback.improvements[0].details == [
        "Missing <nav> element at body > nav",
        "Unexpected <span> element at body > span",
        "Attributes differ on body > a",
    ]


def test_script_errors_become_an_improvement():
    errors = [RenderError(stage="script", message="ReferenceError: foo is not defined")]
    feedback = generate_feedback(_scores(100, 100, 100), errors, THRESHOLDS)
    assert any("JavaScript" in item.description for item in feedback.improvements)
    assert any("ReferenceError" in d for item in feedback.improvements for d in item.details)


def test_content_details_are_filled():
    content = compare_content(["Hello"], ["Hello world"], weight=100)
    feedback = generate_feedback([content], [], THRESHOLDS)
    assert feedback.content_validation.startswith("Content score")
    assert [item.type for item in feedback.content_details] == ["content", "content"]
    assert feedback.content_details[0].passed is False
