# backend/omniverify/config.py
from pydantic_settings import BaseSettings
import os


class Settings(BaseSettings):
    APP_NAME: str = "omniverify"

    POSTGRES_USER: str = os.environ.get("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.environ.get("POSTGRES_PASSWORD", "postgres")
    POSTGRES_DB: str = os.environ.get("POSTGRES_DB", "omniverify")
    POSTGRES_HOST: str = os.environ.get("POSTGRES_HOST", "db")
    POSTGRES_PORT: str = os.environ.get("POSTGRES_PORT", "5432")

    DATABASE_URL: str = os.environ.get(
        "DATABASE_URL",
        f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
    )

    # Redis & queue
    REDIS_URL: str = os.environ.get("REDIS_URL", "redis://redis:6379/0")
    QUEUE_PREFIX: str = os.environ.get("QUEUE_PREFIX", "omniverify")
    QUEUE_POLL_INTERVAL: float = float(os.environ.get("QUEUE_POLL_INTERVAL", 1.0))
    SCHEDULER_TICK_SECONDS: float = float(os.environ.get("SCHEDULER_TICK_SECONDS", 15.0))
    # a job held longer than this by a worker is handed out again
    JOB_LEASE_SECONDS: float = float(os.environ.get("JOB_LEASE_SECONDS", 600.0))
    # comma-separated queue names this process consumes; empty means all
    WORKER_QUEUES: str = os.environ.get("WORKER_QUEUES", "")

    # Verification provider
    BOUNCER_API_KEY: str = os.environ.get("BOUNCER_API_KEY", "")
    BOUNCER_API_BASE_URL: str = os.environ.get("BOUNCER_API_BASE_URL", "https://api.usebouncer.com/v1.1")
    BOUNCER_TIMEOUT_SECONDS: float = float(os.environ.get("BOUNCER_TIMEOUT_SECONDS", 30.0))
    BOUNCER_MAX_RETRIES: int = int(os.environ.get("BOUNCER_MAX_RETRIES", 3))
    BOUNCER_BACKOFF_BASE: float = float(os.environ.get("BOUNCER_BACKOFF_BASE", 1.0))

    # Global rate limit (provider allows 200/min, keep a margin)
    RATE_LIMIT_MAX_REQUESTS: int = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", 180))
    RATE_LIMIT_WINDOW_SECONDS: int = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", 60))
    RATE_LIMIT_RETENTION_SECONDS: int = int(os.environ.get("RATE_LIMIT_RETENTION_SECONDS", 3600))

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = int(os.environ.get("CIRCUIT_FAILURE_THRESHOLD", 5))
    CIRCUIT_RECOVERY_TIMEOUT: float = float(os.environ.get("CIRCUIT_RECOVERY_TIMEOUT", 60.0))

    # Batching
    BATCH_SIZE: int = int(os.environ.get("BATCH_SIZE", 10000))
    BATCH_STRATEGY: str = os.environ.get("BATCH_STRATEGY", "round_robin")
    MAX_CONCURRENT_BATCHES: int = int(os.environ.get("MAX_CONCURRENT_BATCHES", 15))
    BATCH_TIMEOUT_SECONDS: int = int(os.environ.get("BATCH_TIMEOUT_SECONDS", 30 * 60))
    SUBMIT_STAGGER_SECONDS: float = float(os.environ.get("SUBMIT_STAGGER_SECONDS", 1.0))
    SECONDS_PER_QUEUED_BATCH: int = int(os.environ.get("SECONDS_PER_QUEUED_BATCH", 60))

    # Deferral / polling
    ADMISSION_DEFER_SECONDS: float = float(os.environ.get("ADMISSION_DEFER_SECONDS", 60.0))
    MIN_DEFER_SECONDS: float = float(os.environ.get("MIN_DEFER_SECONDS", 1.0))
    STATUS_CHECK_INITIAL_DELAY: float = float(os.environ.get("STATUS_CHECK_INITIAL_DELAY", 30.0))
    STATUS_CHECK_INTERVAL: float = float(os.environ.get("STATUS_CHECK_INTERVAL", 30.0))
    STATUS_UNKNOWN_INTERVAL: float = float(os.environ.get("STATUS_UNKNOWN_INTERVAL", 60.0))

    # Per-queue worker concurrency and job rate ceilings (jobs / minute)
    VERIFICATION_CONCURRENCY: int = int(os.environ.get("VERIFICATION_CONCURRENCY", 5))
    VERIFICATION_RATE_PER_MIN: int = int(os.environ.get("VERIFICATION_RATE_PER_MIN", 10))
    STATUS_CHECK_CONCURRENCY: int = int(os.environ.get("STATUS_CHECK_CONCURRENCY", 10))
    STATUS_CHECK_RATE_PER_MIN: int = int(os.environ.get("STATUS_CHECK_RATE_PER_MIN", 50))
    DOWNLOAD_CONCURRENCY: int = int(os.environ.get("DOWNLOAD_CONCURRENCY", 3))
    DOWNLOAD_RATE_PER_MIN: int = int(os.environ.get("DOWNLOAD_RATE_PER_MIN", 20))
    CLEANUP_CONCURRENCY: int = int(os.environ.get("CLEANUP_CONCURRENCY", 1))
    CLEANUP_RATE_PER_MIN: int = int(os.environ.get("CLEANUP_RATE_PER_MIN", 5))

    # Periodic jobs
    CLEANUP_EVERY_SECONDS: int = int(os.environ.get("CLEANUP_EVERY_SECONDS", 4 * 60 * 60))
    HEALTH_CHECK_EVERY_SECONDS: int = int(os.environ.get("HEALTH_CHECK_EVERY_SECONDS", 5 * 60))
    HEALTH_PING_TIMEOUT: float = float(os.environ.get("HEALTH_PING_TIMEOUT", 5.0))

    # Retention
    HEALTH_METRICS_RETENTION_DAYS: int = int(os.environ.get("HEALTH_METRICS_RETENTION_DAYS", 7))
    COMPLETED_BATCH_RETENTION_DAYS: int = int(os.environ.get("COMPLETED_BATCH_RETENTION_DAYS", 30))
    DEAD_LETTER_RETENTION_DAYS: int = int(os.environ.get("DEAD_LETTER_RETENTION_DAYS", 90))

    # Dead letters
    DEAD_LETTER_MAX_RETRY_COUNT: int = int(os.environ.get("DEAD_LETTER_MAX_RETRY_COUNT", 10))

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    DEBUG: bool = os.environ.get("DEBUG", "False").lower() in ("1", "true", "yes")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
