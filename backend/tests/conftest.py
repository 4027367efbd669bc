"""Shared fixtures for backend tests."""

import asyncio
import zlib

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from challenges import JSONChallengeRepository
from config import limiter
from evaluation import ChallengeEvaluator
from evaluation.document import parse_dom, parse_text
from evaluation.models import Challenge, CodeBundle, PixelBuffer, RenderArtifact, TagRule
from main import app, get_challenge_repository, get_evaluator, get_submission_repository
from submissions import JSONSubmissionRepository

SCREEN = 48

PROFILE_HTML = (
    '<div class="card" data-testid="card">'
    "<h1>Ada Lovelace</h1>"
    '<p class="role">Analyst and Programmer</p>'
    "<button>Contact</button>"
    "</div>"
)
PROFILE_CSS = ".card { padding: 24px; } h1 { color: #111827; }"


class FakeRenderer:
    """
    Browser-free renderer.

    DOM and text come from the parse-time snapshot; the screenshot is a
    deterministic picture of the bundle (one band per element, coloured
    from the CSS), so identical bundles render identical pixels.
    """

    def __init__(self, failures: dict | None = None, delay: float = 0.0):
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self.closed = False

    async def render(self, bundle: CodeBundle, timeout_ms=None, label: str = "bundle") -> RenderArtifact:
        self.calls.append(label)
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(label)
        if failure is not None:
            raise failure

        tree = parse_dom(bundle.html)
        pixels = np.full((SCREEN, SCREEN, 3), 255, dtype=np.uint8)
        checksum = zlib.crc32(bundle.css.encode())
        color = [(checksum >> shift) & 0xFF for shift in (0, 8, 16)]
        for index, node in enumerate(list(tree.iter_nodes())[1:]):
            top = (index * 4) % SCREEN
            pixels[top:top + 3, : 8 + (zlib.crc32(node.tag.encode()) % 40)] = color
        screenshot = PixelBuffer(width=SCREEN, height=SCREEN, pixels=pixels)
        return RenderArtifact(
            dom_tree=tree,
            screenshot=screenshot,
            text_content=parse_text(bundle.html),
            render_errors=[],
            screenshot_png=screenshot.to_png(),
        )

    async def close(self):
        self.closed = True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_state():
    """Reset rate-limiter storage and dependency overrides between tests."""
    fresh = MemoryStorage()
    limiter._storage = fresh
    limiter._limiter = FixedWindowRateLimiter(fresh)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def profile_challenge() -> Challenge:
    return Challenge(
        id="profile-card",
        title="Profile Card",
        expected_solution=CodeBundle(html=PROFILE_HTML, css=PROFILE_CSS),
        passing_threshold={"structure": 70, "visual": 80, "overall": 75},
        tag_rules=[TagRule(tag="h1", max_count=1), TagRule(tag="button", text="Contact")],
    )


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def challenge_repo(profile_challenge) -> JSONChallengeRepository:
    return JSONChallengeRepository(challenges=[profile_challenge])


@pytest.fixture
def submission_repo() -> JSONSubmissionRepository:
    return JSONSubmissionRepository()


@pytest.fixture
def evaluator(fake_renderer, challenge_repo, submission_repo) -> ChallengeEvaluator:
    return ChallengeEvaluator(
        fake_renderer,
        challenges=challenge_repo,
        submissions=submission_repo,
        persist_screenshots=False,
    )


@pytest_asyncio.fixture
async def client(evaluator, challenge_repo, submission_repo):
    """Async HTTP client against the FastAPI app, wired to the fake renderer."""
    app.dependency_overrides[get_evaluator] = lambda: evaluator
    app.dependency_overrides[get_challenge_repository] = lambda: challenge_repo
    app.dependency_overrides[get_submission_repository] = lambda: submission_repo
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
