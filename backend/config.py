from pydantic import field_validator
from pydantic_settings import BaseSettings
from slowapi import Limiter
from slowapi.util import get_remote_address


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors(cls, v: object) -> list[str]:
        """Accept both a JSON list and a comma-separated string for CORS_ORIGINS."""
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v  # type: ignore[return-value]

    log_level: str = "INFO"
    evaluate_rate_limit: str = "10/minute"

    # Observability
    sentry_dsn: str = ""
    environment: str = "development"

    # Rendering (960x960 = 921,600 pixel comparison basis)
    viewport_width: int = 960
    viewport_height: int = 960
    render_timeout_ms: int = 10000
    settle_delay_ms: int = 250  # wait after load so late DOM mutations land in the snapshot
    max_concurrent_renders: int = 4
    pool_acquire_timeout_sec: float = 30.0
    block_external_requests: bool = True  # renders stay offline and deterministic

    # Comparison
    pixel_tolerance: int = 16  # max per-channel delta (0-255) before two pixels mismatch

    # Scoring defaults. Overridable per challenge.
    default_weights: dict[str, float] = {
        "structure": 25.0,
        "visual": 25.0,
        "content": 25.0,
        "tag": 25.0,
    }
    default_thresholds: dict[str, float] = {
        "structure": 70.0,
        "visual": 80.0,
        "overall": 75.0,
    }

    # Feedback
    feedback_high_water_mark: float = 90.0
    feedback_top_n: int = 3

    # Screenshot artifacts
    persist_screenshots: bool = True
    screenshot_dir: str = "screenshots"
    screenshot_base_url: str = "/screenshots"

    # Flat-file stores (used when Supabase is not configured)
    data_dir: str = "data"

    # Supabase (database)
    supabase_url: str = ""
    supabase_service_key: str = ""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


settings = Settings()

limiter = Limiter(key_func=get_remote_address)
