"""Exception taxonomy for the evaluation engine.

Per-bundle and per-dimension failures (RenderTimeout, RenderCrash,
DimensionMismatch, ComparatorFailure) are contained by the evaluator and
turned into degraded scores. Only EvaluationFailed subclasses reach callers.
"""


class EvaluationError(Exception):
    """Base class for every error raised by the evaluation engine."""


class RenderTimeout(EvaluationError):
    def __init__(self, timeout_ms: int, label: str = "bundle"):
        super().__init__(f"Rendering {label} exceeded {timeout_ms} ms")
        self.timeout_ms = timeout_ms
        self.label = label


class RenderCrash(EvaluationError):
    """Sandbox failure unrelated to the candidate's code (browser died, launch failed)."""


class DimensionMismatch(EvaluationError):
    def __init__(self, candidate: tuple[int, int], expected: tuple[int, int]):
        super().__init__(
            f"Screenshot sizes differ: candidate {candidate[0]}x{candidate[1]}, "
            f"expected {expected[0]}x{expected[1]}"
        )
        self.candidate = candidate
        self.expected = expected


class ComparatorFailure(EvaluationError):
    def __init__(self, dimension: str, cause: BaseException):
        super().__init__(f"{dimension} comparator failed: {type(cause).__name__}: {cause}")
        self.dimension = dimension
        self.cause = cause


class EvaluationFailed(EvaluationError):
    """Terminal failure: the evaluation produced no result and may be retried."""

    retryable = True


class NoArtifactAvailable(EvaluationFailed):
    """Neither the candidate nor the expected bundle could be rendered."""


class PoolExhausted(EvaluationFailed):
    """No render context became available before the acquire timeout."""


class UnexpectedEvaluationError(EvaluationFailed):
    """An error outside the taxonomy stopped the evaluation; the original is chained as ``__cause__``."""
