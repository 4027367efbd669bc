"""HTTP surface tests (httpx against the ASGI app, fake renderer behind it)."""

import pytest
from httpx import AsyncClient

from evaluation.errors import RenderCrash
from main import app, get_evaluator

from conftest import PROFILE_CSS, PROFILE_HTML, FakeRenderer


async def _submit(client: AsyncClient, html: str, css: str = "") -> str:
    resp = await client.post(
        "/api/submissions",
        json={"challengeId": "profile-card", "candidateName": "Ada", "code": {"html": html, "css": css}},
    )
    assert resp.status_code == 200
    return resp.json()["submission_id"]


@pytest.mark.anyio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_submit_and_evaluate(client: AsyncClient):
    submission_id = await _submit(client, PROFILE_HTML, PROFILE_CSS)

    resp = await client.post("/api/evaluate", json={"submissionId": submission_id})

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["submission_id"] == submission_id
    assert result["challenge_id"] == "profile-card"
    assert result["status"] == "complete"
    assert result["final_score"] == 100
    assert result["passed"] is True
    assert result["feedback"]["encouragement"]
    assert result["feedback"]["improvements"]

    stored = await client.get(f"/api/submissions/{submission_id}/result")
    assert stored.status_code == 200
    assert stored.json()["result"]["final_score"] == 100


@pytest.mark.anyio
async def test_evaluate_is_idempotent(client: AsyncClient):
    submission_id = await _submit(client, "<div class='card'><h1>Ada</h1></div>")

    first = await client.post("/api/evaluate", json={"submission_id": submission_id})
    second = await client.post("/api/evaluate", json={"submission_id": submission_id})

    assert first.json()["result"]["final_score"] == second.json()["result"]["final_score"]
    assert first.json()["result"]["dimension_scores"] == second.json()["result"]["dimension_scores"]


@pytest.mark.anyio
async def test_evaluate_unknown_submission(client: AsyncClient):
    resp = await client.post("/api/evaluate", json={"submission_id": "nope"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Submission not found"


@pytest.mark.anyio
async def test_submission_for_unknown_challenge(client: AsyncClient):
    resp = await client.post(
        "/api/submissions",
        json={"challenge_id": "nope", "code": {"html": "<p>x</p>"}},
    )
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_result_before_evaluation(client: AsyncClient):
    submission_id = await _submit(client, "<p>x</p>")
    resp = await client.get(f"/api/submissions/{submission_id}/result")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_failed_evaluation_is_retryable_503(client: AsyncClient, challenge_repo, submission_repo):
    from evaluation import ChallengeEvaluator

    broken = ChallengeEvaluator(
        FakeRenderer(failures={"candidate": RenderCrash("down"), "expected": RenderCrash("down")}),
        challenges=challenge_repo,
        submissions=submission_repo,
        persist_screenshots=False,
    )
    app.dependency_overrides[get_evaluator] = lambda: broken
    submission_id = await _submit(client, PROFILE_HTML)

    resp = await client.post("/api/evaluate", json={"submission_id": submission_id})

    assert resp.status_code == 503
    assert resp.json()["retryable"] is True
    assert "result" not in resp.json()


@pytest.mark.anyio
async def test_unexpected_failure_is_retryable_503(client: AsyncClient, monkeypatch):
    import evaluation.evaluator as evaluator_module

    def _broken(*args, **kwargs):
        raise ZeroDivisionError("weights")

    monkeypatch.setattr(evaluator_module, "aggregate", _broken)

    resp = await client.post(
        "/api/evaluate-code",
        json={"challenge_id": "profile-card", "code": {"html": PROFILE_HTML}},
    )

    assert resp.status_code == 503
    assert resp.json()["retryable"] is True


@pytest.mark.anyio
async def test_evaluate_code_preview(client: AsyncClient):
    resp = await client.post(
        "/api/evaluate-code",
        json={"challenge_id": "profile-card", "code": {"html": ""}},
    )
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["passed"] is False
    assert result["submission_id"] is None


@pytest.mark.anyio
async def test_evaluate_rate_limit(client: AsyncClient):
    """/api/evaluate-code is limited to 10/minute."""
    payload = {"challenge_id": "missing", "code": {"html": "<p>x</p>"}}
    for i in range(10):
        resp = await client.post("/api/evaluate-code", json=payload)
        assert resp.status_code != 429, f"Request {i + 1}/10 was unexpectedly rate-limited"

    final = await client.post("/api/evaluate-code", json=payload)
    assert final.status_code == 429
