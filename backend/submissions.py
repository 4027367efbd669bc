"""Submission store: in memory, optionally mirrored to a JSON file."""

import asyncio
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from evaluation.models import CodeBundle, EvaluationResult, Submission

logger = logging.getLogger(__name__)


def flatten_result(result: EvaluationResult) -> dict[str, Any]:
    """Score columns stored next to a submission (total_score, structure_score, ...)."""
    return {
        "total_score": result.final_score,
        "structure_score": result.structure_score,
        "visual_score": result.visual_score,
        "content_score": result.content_score,
        "passed": result.passed,
        "feedback": result.feedback.model_dump(mode="json"),
        "screenshots": result.screenshots.model_dump(mode="json"),
        "evaluated_at": result.evaluated_at,
    }


class JSONSubmissionRepository:
    """
    Keeps submissions in a dict keyed by id.

    When ``path`` is given, every change is written to that file and the file
    is loaded on startup, so stored submissions survive a restart.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._submissions: dict[str, Submission] = {}
        self._lock = asyncio.Lock()
        if path is not None:
            self._load()

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load submissions from {self.path}: {e}")
            return
        for item in data.values():
            submission = Submission.model_validate(item["submission"])
            self._submissions[submission.id] = submission
        logger.info(f"Loaded {len(self._submissions)} submissions from {self.path}")

    def _dump(self) -> dict[str, Any]:
        out = {}
        for sid, submission in self._submissions.items():
            entry: dict[str, Any] = {"submission": submission.model_dump(mode="json")}
            if submission.result is not None:
                entry.update(flatten_result(submission.result))
            out[sid] = entry
        return out

    def _write(self, data: dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)

    async def _persist(self):
        if self.path is None:
            return
        await asyncio.to_thread(self._write, self._dump())

    async def create_submission(
        self,
        challenge_id: str,
        code: CodeBundle,
        candidate_name: str = "Anonymous",
    ) -> Submission:
        submission = Submission(
            id=str(uuid.uuid4()),
            challenge_id=challenge_id,
            code=code,
            candidate_name=candidate_name,
            submitted_at=time.time(),
        )
        async with self._lock:
            self._submissions[submission.id] = submission
            await self._persist()
        return submission

    async def get_submission(self, submission_id: str) -> Submission | None:
        return self._submissions.get(submission_id)

    async def save_result(self, submission_id: str, result: EvaluationResult) -> None:
        async with self._lock:
            submission = self._submissions.get(submission_id)
            if submission is None:
                logger.warning(f"save_result for unknown submission {submission_id}")
                return
            self._submissions[submission_id] = submission.model_copy(
                update={"result": result, "evaluated_at": result.evaluated_at}
            )
            await self._persist()
