"""JSON-file challenge store."""

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from config import settings
from evaluation.models import Challenge

logger = logging.getLogger(__name__)


def data_path(name: str) -> Path:
    """Resolve a file inside settings.data_dir (relative paths are relative to this directory)."""
    root = Path(settings.data_dir)
    if not root.is_absolute():
        root = Path(__file__).parent / root
    return root / name


# ---------------------------------------------------------------------------
# Challenge Loader
# ---------------------------------------------------------------------------

def load_challenges_from_json(path: Path | None = None) -> list[Challenge]:
    """Load challenges from a local JSON file (a list of challenge objects)."""
    json_path = path or data_path("challenges.json")
    if not json_path.exists():
        logger.error(f"challenges.json not found at {json_path}")
        return []

    try:
        with open(json_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load challenges: {e}")
        return []

    challenges = []
    for item in data:
        try:
            challenges.append(Challenge.model_validate(item))
        except ValidationError as e:
            logger.error(f"Skipping invalid challenge {item.get('id', '?')}: {e}")
    logger.info(f"Loaded {len(challenges)} challenges from {json_path}")
    return challenges


class JSONChallengeRepository:
    """Read-only challenge repository backed by a JSON file, loaded once."""

    def __init__(self, path: Path | None = None, challenges: list[Challenge] | None = None):
        if challenges is None:
            challenges = load_challenges_from_json(path)
        self._challenges = {c.id: c for c in challenges}

    def all(self) -> list[Challenge]:
        return list(self._challenges.values())

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        return self._challenges.get(challenge_id)
