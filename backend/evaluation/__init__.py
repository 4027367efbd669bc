"""Evaluation engine for HTML/CSS/JS challenges.

This package contains all evaluation-related functionality:
- Sandboxed rendering
- DOM, visual and content comparison
- Scoring and feedback
"""

from .evaluator import ChallengeEvaluator, EvaluationRun
from .errors import (
    ComparatorFailure,
    DimensionMismatch,
    EvaluationError,
    EvaluationFailed,
    NoArtifactAvailable,
    PoolExhausted,
    RenderCrash,
    RenderTimeout,
    UnexpectedEvaluationError,
)
from .models import (
    Challenge,
    CodeBundle,
    Dimension,
    DimensionScore,
    EvaluationResult,
    EvaluationState,
    Feedback,
    FeedbackItem,
    Submission,
    TagRule,
    Thresholds,
)
from .render_service import RenderContextPool, RenderOptions, RenderService
from .repositories import ChallengeNotFound, SubmissionNotFound

__all__ = [
    "ChallengeEvaluator",
    "EvaluationRun",
    "ComparatorFailure",
    "DimensionMismatch",
    "EvaluationError",
    "EvaluationFailed",
    "NoArtifactAvailable",
    "PoolExhausted",
    "RenderCrash",
    "RenderTimeout",
    "UnexpectedEvaluationError",
    "Challenge",
    "CodeBundle",
    "Dimension",
    "DimensionScore",
    "EvaluationResult",
    "EvaluationState",
    "Feedback",
    "FeedbackItem",
    "Submission",
    "TagRule",
    "Thresholds",
    "RenderContextPool",
    "RenderOptions",
    "RenderService",
    "ChallengeNotFound",
    "SubmissionNotFound",
]
