from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "SubOCR API"
    DATABASE_URL: str = "" # Logic: If set, use Postgres. Else, use SQLite.
    SQLITE_PATH: str = "subocr.db"
    REDIS_URL: str = "redis://localhost:6379/0" # Default local Redis
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000,http://localhost:8080"

    # ─── Storage ─────────────────────────────────────────────────────────
    STORAGE_TYPE: str = "local" # "local" or "s3"
    LOCAL_STORAGE_DIR: str = "storage"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "auto"
    AWS_BUCKET_NAME: str = "subocr-jobs"
    S3_ENDPOINT_URL: str | None = None  # R2 / MinIO style endpoints
    SIGNED_URL_TTL_SECONDS: int = 172800  # must outlive the batch completion window

    # Local scratch space for per-job files (downloaded ZIP, manifests, docs)
    WORKSPACE_DIR: str = "mnt/jobs"

    # ─── Batch Completion Service ────────────────────────────────────────
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    OCR_MODEL: str = "gpt-4o-mini"
    OCR_MAX_TOKENS: int = 96
    OCR_COMPLETION_WINDOW: str = "24h"
    BATCH_POLL_INTERVAL_SECONDS: int = 20
    # Per-job worker lease; kept below the broker visibility timeout so a
    # redelivered message finds the lease of a dead worker already expired
    JOB_LEASE_SECONDS: int = 540

    # ─── Frame Pipeline ──────────────────────────────────────────────────
    PREPROCESS_BATCH_SIZE: int = 50
    TARGET_WIDTH: int = 1280
    TARGET_HEIGHT: int = 720
    ASPECT_TOLERANCE: float = 0.01
    SUBTITLE_BAND_RATIO: float = 0.32  # bottom share of the frame holding subtitles
    THUMBNAIL_SIZE: int = 200
    THUMBNAIL_QUALITY: int = 85

    class Config:
        env_file = ".env"

settings = Settings()
