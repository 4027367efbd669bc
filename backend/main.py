"""Challenge grader backend: FastAPI application."""

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import AliasChoices, BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import limiter, settings

logger = logging.getLogger(__name__)

# Ensure application loggers output to console
_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
for _name in (__name__, "evaluation", "challenges", "submissions", "database"):
    _log = logging.getLogger(_name)
    if not _log.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(settings.log_level.upper())
        console_handler.setFormatter(_formatter)
        _log.addHandler(console_handler)
        _log.setLevel(settings.log_level.upper())

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sample_rate=0.1,
        environment=settings.environment,
    )

from database import get_repositories
from evaluation import (
    ChallengeEvaluator,
    ChallengeNotFound,
    CodeBundle,
    EvaluationFailed,
    EvaluationResult,
    SubmissionNotFound,
)
from evaluation.repositories import ChallengeRepository

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(title="Challenge Grader", version="0.1.0")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    settings.screenshot_base_url,
    StaticFiles(directory=settings.screenshot_dir, check_dir=False),
    name="screenshots",
)

challenge_repository, submission_repository = get_repositories()
evaluator = ChallengeEvaluator(
    challenges=challenge_repository,
    submissions=submission_repository,
)


@app.on_event("shutdown")
async def _close_render_pool():
    """Close the shared browser so no Chromium process outlives the server."""
    await evaluator.close()


@app.exception_handler(EvaluationFailed)
async def _evaluation_failed_handler(request: Request, exc: EvaluationFailed):
    # A failed evaluation is retryable and must never look like a low score.
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc) or "Evaluation failed", "retryable": exc.retryable},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_evaluator() -> ChallengeEvaluator:
    return evaluator


def get_challenge_repository() -> ChallengeRepository:
    return challenge_repository


def get_submission_repository():
    return submission_repository


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class EvaluateRequest(BaseModel):
    submission_id: str = Field(validation_alias=AliasChoices("submission_id", "submissionId"))


class EvaluateCodeRequest(BaseModel):
    challenge_id: str = Field(validation_alias=AliasChoices("challenge_id", "challengeId"))
    code: CodeBundle


class CreateSubmissionRequest(BaseModel):
    challenge_id: str = Field(validation_alias=AliasChoices("challenge_id", "challengeId"))
    code: CodeBundle
    candidate_name: str = Field(
        default="Anonymous",
        validation_alias=AliasChoices("candidate_name", "candidateName"),
    )


class CreateSubmissionResponse(BaseModel):
    submission_id: str


class EvaluateResponse(BaseModel):
    result: EvaluationResult


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.post("/api/submissions", response_model=CreateSubmissionResponse)
async def create_submission(
    req: CreateSubmissionRequest,
    challenges: ChallengeRepository = Depends(get_challenge_repository),
    submissions=Depends(get_submission_repository),
):
    challenge = await challenges.get_challenge(req.challenge_id)
    if challenge is None:
        raise HTTPException(status_code=404, detail="Challenge not found")
    submission = await submissions.create_submission(req.challenge_id, req.code, req.candidate_name)
    logger.info(f"Stored submission {submission.id} for challenge {req.challenge_id}")
    return CreateSubmissionResponse(submission_id=submission.id)


@app.get("/api/submissions/{submission_id}/result", response_model=EvaluateResponse)
async def get_submission_result(submission_id: str, submissions=Depends(get_submission_repository)):
    submission = await submissions.get_submission(submission_id)
    if submission is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    if submission.result is None:
        raise HTTPException(status_code=404, detail="Submission has not been evaluated yet")
    return EvaluateResponse(result=submission.result)


@app.post("/api/evaluate", response_model=EvaluateResponse)
@limiter.limit(settings.evaluate_rate_limit)
async def evaluate_submission(
    request: Request,
    req: EvaluateRequest,
    evaluator: ChallengeEvaluator = Depends(get_evaluator),
):
    """Evaluate a stored submission. Always recomputes from the stored code."""
    try:
        result = await evaluator.evaluate_submission(req.submission_id)
    except SubmissionNotFound:
        raise HTTPException(status_code=404, detail="Submission not found")
    except ChallengeNotFound:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return EvaluateResponse(result=result)


@app.post("/api/evaluate-code", response_model=EvaluateResponse)
@limiter.limit(settings.evaluate_rate_limit)
async def evaluate_code(
    request: Request,
    req: EvaluateCodeRequest,
    evaluator: ChallengeEvaluator = Depends(get_evaluator),
    challenges: ChallengeRepository = Depends(get_challenge_repository),
):
    """Grade code against a challenge without storing a submission (preview grading)."""
    challenge = await challenges.get_challenge(req.challenge_id)
    if challenge is None:
        raise HTTPException(status_code=404, detail="Challenge not found")
    result = await evaluator.evaluate_challenge(challenge, req.code)
    return EvaluateResponse(result=result)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=True)
