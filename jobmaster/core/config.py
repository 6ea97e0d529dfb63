from functools import lru_cache

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "JobMaster"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "jobs.db"
    REDIS_URL: str = "redis://localhost:6379/0" # Default local Redis

    # ─── Queue ───────────────────────────────────────────────────────────
    QUEUE_BACKEND: str = "celery"  # "celery" (Redis broker) or "memory" (in-process, dev only)
    ESTIMATION_TOPIC: str = "estimate"
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_DELAY: float = 2.0  # seconds, doubled per attempt
    QUEUE_BACKOFF_TYPE: str = "exponential"  # "exponential" or "fixed"

    # ─── Upstream APIs ───────────────────────────────────────────────────
    MAIN_API_URL: str = "http://localhost:3000"
    AUTH_URL: str = "http://localhost:3000/oauth/token"
    AUTH_CLIENT_ID: str = ""
    AUTH_CLIENT_SECRET: str = ""
    AUTH_AUDIENCE: str = ""
    UPSTREAM_TIMEOUT: float = 10.0
    CALLBACK_TIMEOUT: float = 5.0

    # ─── Estimation ──────────────────────────────────────────────────────
    HISTORY_DAYS: int = 30
    PROJECTION_DAYS: float = 30.0
    INTERPOLATION_POINTS: int = 100

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    RATE_LIMIT_JOB_CREATE: str = "30/minute"
    RATE_LIMIT_STATUS: str = "120/minute"

    # ⚠ In production, override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
