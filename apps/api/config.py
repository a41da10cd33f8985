"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

from services.scoring import MERGE_ADDITIVE, PRODUCT_MERGE_EMA_70_30


SELECTION_UNCOLLECTED = "uncollected"
SELECTION_RECENT = "recent"
SELECTION_MODES = (SELECTION_UNCOLLECTED, SELECTION_RECENT)
PRODUCT_MERGE_POLICIES = (PRODUCT_MERGE_EMA_70_30, MERGE_ADDITIVE)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/feedback.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    LOG_LEVEL: str = "INFO"
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Meta Graph API (Instagram media metrics)
    META_GRAPH_HOST: str = "graph.facebook.com"
    META_GRAPH_VERSION: str = "v24.0"
    META_ACCESS_TOKEN: str = ""  # Empty selects stub metrics
    META_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Feedback loop
    FEEDBACK_BATCH_LIMIT: int = 50
    FEEDBACK_LOOKBACK_DAYS: int = 7
    FEEDBACK_SELECTION_MODE: str = SELECTION_UNCOLLECTED
    FEEDBACK_THROTTLE_MS: int = 200
    FEEDBACK_PRODUCT_MERGE_POLICY: str = PRODUCT_MERGE_EMA_70_30
    FEEDBACK_BATCH_DEADLINE_SECONDS: int = 600
    FEEDBACK_MERGE_MAX_ATTEMPTS: int = 5
    FEEDBACK_DEFAULT_CHANNEL: str = "IG"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def metrics_mode() -> str:
    """Return "graph" when a Meta credential is configured, otherwise "stub"."""
    return "graph" if (settings.META_ACCESS_TOKEN or "").strip() else "stub"


def validate_feedback_settings() -> None:
    """Fail fast when the feedback loop is configured with unusable values."""
    if int(settings.FEEDBACK_BATCH_LIMIT) <= 0:
        raise ValueError("FEEDBACK_BATCH_LIMIT must be a positive integer.")
    if int(settings.FEEDBACK_LOOKBACK_DAYS) <= 0:
        raise ValueError("FEEDBACK_LOOKBACK_DAYS must be a positive integer.")
    if settings.FEEDBACK_SELECTION_MODE not in SELECTION_MODES:
        raise ValueError(
            f"FEEDBACK_SELECTION_MODE must be one of {', '.join(SELECTION_MODES)}; "
            f"got {settings.FEEDBACK_SELECTION_MODE!r}."
        )
    if settings.FEEDBACK_PRODUCT_MERGE_POLICY not in PRODUCT_MERGE_POLICIES:
        raise ValueError(
            f"FEEDBACK_PRODUCT_MERGE_POLICY must be one of {', '.join(PRODUCT_MERGE_POLICIES)}; "
            f"got {settings.FEEDBACK_PRODUCT_MERGE_POLICY!r}."
        )
    if int(settings.FEEDBACK_MERGE_MAX_ATTEMPTS) <= 0:
        raise ValueError("FEEDBACK_MERGE_MAX_ATTEMPTS must be a positive integer.")
    if not (settings.META_GRAPH_VERSION or "").strip():
        raise ValueError("META_GRAPH_VERSION is not configured.")
