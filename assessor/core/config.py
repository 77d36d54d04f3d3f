from __future__ import annotations

import os
from functools import lru_cache
from dotenv import load_dotenv, find_dotenv

_env_path = find_dotenv(".env") or ".env"
load_dotenv(_env_path, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings:
    """Central configuration (env driven)."""

    def __init__(self) -> None:
        # Persistence
        self.database_url: str = os.getenv("DATABASE_URL", "")
        self.redis_url: str = os.getenv("REDIS_URL", "")
        # Embedding service (optional)
        raw_embedding_url = os.getenv("EMBEDDING_API_URL", "")
        self.embedding_api_url: str = raw_embedding_url.rstrip("/")
        self.embedding_api_key: str = os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY", "")
        self.embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
        self.embedding_timeout_s: float = _env_float("EMBEDDING_TIMEOUT_S", 10.0)
        # Assessment rules
        self.max_assessment_attempts: int = _env_int("MAX_ASSESSMENT_ATTEMPTS", 3)
        self.default_passing_score: float = _env_float("DEFAULT_PASSING_SCORE", 70.0)
        self.auto_grade_confidence: float = _env_float("AUTO_GRADE_CONFIDENCE", 85.0)
        # Security gate
        self.csrf_token_ttl_seconds: int = _env_int("CSRF_TOKEN_TTL_SECONDS", 30 * 60)
        self.rate_limit_per_hour: int = _env_int("RATE_LIMIT_PER_HOUR", 5)
        self.rate_limit_per_day: int = _env_int("RATE_LIMIT_PER_DAY", 20)
        self.submission_max_age_seconds: int = _env_int("SUBMISSION_MAX_AGE_SECONDS", 60 * 60)
        # App meta
        self.app_name: str = "Assessor Backend"
        self.debug: bool = os.getenv("DEBUG", "False").lower() == "true"
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.allow_origins: str = os.getenv("ALLOW_ORIGINS", "http://localhost:3000,http://localhost:5173")

    @property
    def embeddings_enabled(self) -> bool:
        return bool(self.embedding_api_url and self.embedding_api_key)

    def get_database_url(self) -> str:
        return self.database_url


@lru_cache()
def get_settings() -> Settings:
    return Settings()
