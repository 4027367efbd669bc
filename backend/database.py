from supabase import create_client, Client
from config import settings
from challenges import JSONChallengeRepository, data_path
from evaluation.models import Challenge, CodeBundle, EvaluationResult, Submission
from evaluation.repositories import ChallengeRepository, SubmissionRepository
from submissions import JSONSubmissionRepository, flatten_result
import logging
import time
import uuid

logger = logging.getLogger(__name__)

_supabase: Client | None = None

CHALLENGES_TABLE = "challenges"
SUBMISSIONS_TABLE = "submissions"


def get_supabase_client() -> Client | None:
    """
    Get or initialize the Supabase client.
    Returns None if credentials are missing.
    """
    global _supabase
    if _supabase is None:
        if not settings.supabase_url or not settings.supabase_service_key:
            logger.warning("Supabase credentials not found. Using JSON file storage.")
            return None
        try:
            _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            return None
    return _supabase


def _submission_from_row(row: dict) -> Submission:
    result = row.get("result")
    return Submission(
        id=str(row["id"]),
        challenge_id=str(row["challenge_id"]),
        code=CodeBundle(
            html=row.get("html_code") or "",
            css=row.get("css_code") or "",
            js=row.get("js_code") or "",
        ),
        candidate_name=row.get("candidate_name") or "Anonymous",
        submitted_at=row.get("submitted_at") or time.time(),
        evaluated_at=row.get("evaluated_at"),
        result=EvaluationResult.model_validate(result) if result else None,
    )


class SupabaseChallengeRepository:
    """Challenges from the ``challenges`` table (expected_html/css/js columns)."""

    def __init__(self, client: Client):
        self.client = client

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        try:
            response = (
                self.client.table(CHALLENGES_TABLE)
                .select("*")
                .eq("id", challenge_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error loading challenge {challenge_id} from Supabase: {e}")
            raise
        if not response.data:
            return None
        return Challenge.model_validate(response.data[0])


class SupabaseSubmissionRepository:
    """Submissions in the ``submissions`` table; results stored as flat score columns plus JSON."""

    def __init__(self, client: Client):
        self.client = client

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
        row = {
            "id": submission.id,
            "challenge_id": challenge_id,
            "candidate_name": candidate_name,
            "html_code": code.html,
            "css_code": code.css,
            "js_code": code.js,
            "submitted_at": submission.submitted_at,
        }
        try:
            self.client.table(SUBMISSIONS_TABLE).insert(row).execute()
        except Exception as e:
            logger.error(f"Error saving submission to Supabase: {e}")
            raise
        return submission

    async def get_submission(self, submission_id: str) -> Submission | None:
        try:
            response = (
                self.client.table(SUBMISSIONS_TABLE)
                .select("*")
                .eq("id", submission_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error loading submission {submission_id} from Supabase: {e}")
            raise
        if not response.data:
            return None
        return _submission_from_row(response.data[0])

    async def save_result(self, submission_id: str, result: EvaluationResult) -> None:
        update = flatten_result(result)
        update["result"] = result.model_dump(mode="json")
        try:
            (
                self.client.table(SUBMISSIONS_TABLE)
                .update(update)
                .eq("id", submission_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error saving result for {submission_id} to Supabase: {e}")
            raise


def get_repositories() -> tuple[ChallengeRepository, SubmissionRepository]:
    """Supabase repositories when credentials are configured, JSON files otherwise."""
    client = get_supabase_client()
    if client is not None:
        logger.info("Using Supabase challenge and submission storage")
        return SupabaseChallengeRepository(client), SupabaseSubmissionRepository(client)
    return (
        JSONChallengeRepository(),
        JSONSubmissionRepository(data_path("submissions.json")),
    )
