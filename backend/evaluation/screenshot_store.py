"""Best-effort persistence of evaluation screenshots.

Files land in ``{screenshot_dir}/{challenge_id}/{submission_id}/`` as
candidate.png, expected.png and diff.png; the returned references are the
matching URLs under ``screenshot_base_url`` so the UI can show the images
side by side. A failed write is logged and skipped, never raised.
"""

import io
import logging
import re
import uuid
from pathlib import Path
from typing import Optional

from PIL import Image

from config import settings

from .models import ScreenshotRefs

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe(part: str) -> str:
    cleaned = _UNSAFE.sub("-", part).strip(".-")
    return cleaned or "unknown"


class ScreenshotStore:
    """Writes screenshots addressed by challenge and submission id."""

    def __init__(self, root: str | Path | None = None, base_url: str | None = None):
        self.root = Path(root if root is not None else settings.screenshot_dir)
        self.base_url = (base_url if base_url is not None else settings.screenshot_base_url).rstrip("/")

    def _write(self, relative: Path, data: bytes) -> Optional[str]:
        path = self.root / relative
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.warning(f"[Screenshot] Failed to save {path}: {e}")
            return None
        logger.info(f"[Screenshot] Saved {path}")
        return f"{self.base_url}/{relative.as_posix()}"

    def save(
        self,
        challenge_id: str | None,
        submission_id: str | None,
        *,
        candidate_png: bytes | None = None,
        expected_png: bytes | None = None,
        diff_image: Image.Image | None = None,
    ) -> ScreenshotRefs:
        """Save whichever screenshots are available and return their references."""
        folder = Path(_safe(challenge_id or "adhoc")) / _safe(submission_id or uuid.uuid4().hex)

        candidate_ref = self._write(folder / "candidate.png", candidate_png) if candidate_png else None
        expected_ref = self._write(folder / "expected.png", expected_png) if expected_png else None

        diff_ref = None
        if diff_image is not None:
            try:
                buf = io.BytesIO()
                diff_image.save(buf, format="PNG")
                diff_ref = self._write(folder / "diff.png", buf.getvalue())
            except (OSError, ValueError) as e:
                logger.warning(f"[Screenshot] Failed to encode diff overlay: {e}")

        return ScreenshotRefs(candidate=candidate_ref, expected=expected_ref, diff=diff_ref)
