"""Storage interfaces the evaluator depends on.

The evaluator never persists anything itself; the application passes in
objects satisfying these protocols (JSON files, Supabase, or in-memory
fakes in tests).
"""

from typing import Protocol, runtime_checkable

from .models import Challenge, EvaluationResult, Submission


class ChallengeNotFound(LookupError):
    def __init__(self, challenge_id: str):
        super().__init__(f"Challenge not found: {challenge_id}")
        self.challenge_id = challenge_id


class SubmissionNotFound(LookupError):
    def __init__(self, submission_id: str):
        super().__init__(f"Submission not found: {submission_id}")
        self.submission_id = submission_id


@runtime_checkable
class ChallengeRepository(Protocol):
    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        ...


@runtime_checkable
class SubmissionRepository(Protocol):
    async def get_submission(self, submission_id: str) -> Submission | None:
        ...

    async def save_result(self, submission_id: str, result: EvaluationResult) -> None:
        ...
