import uuid

from pydantic import AnyUrl, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    BACKEND_CORS_ORIGINS: list[str] | str = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(
        cls, v: str | list[str], info: ValidationInfo
    ) -> list[str] | str:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: AnyUrl
    DATABASE_WORKER_URL: AnyUrl | None = None  # Separate URL for Celery workers
    DATABASE_COMMAND_TIMEOUT_SECONDS: float = 5.0
    REDIS_URL: AnyUrl | None = None
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Token signing. VERIFICATION_ROOT_SECRET is only a fallback source for a
    # derived key; pin VERIFICATION_TOKEN_SECRET in production.
    VERIFICATION_TOKEN_SECRET: str | None = None
    VERIFICATION_ROOT_SECRET: str | None = None
    VERIFICATION_TOKEN_TTL_SECONDS: int = 3600
    VERIFICATION_MAX_ATTEMPTS: int = 3

    # "redis" (shared across instances) or "memory" (per process)
    RATE_LIMIT_BACKEND: str = "redis"
    RATE_LIMIT_RESEND_MAX: int = 3
    RATE_LIMIT_RESEND_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_IP_MAX: int = 30
    RATE_LIMIT_IP_WINDOW_SECONDS: int = 60

    # Read only by verify_service.dev, never by the production entry point.
    DEV_AUTH_BYPASS: bool = False
    DEV_BYPASS_SUBJECT_ID: uuid.UUID = uuid.UUID("00000000-0000-4000-8000-000000000001")
    DEV_BYPASS_EMAIL: str = "dev@localhost"

    EMAIL_VERIFY_BASE_URL: str = "http://localhost:8000/verification/redeem?token="
    VERIFY_SUCCESS_URL: str = "http://localhost:3000/verify?status=success"
    VERIFY_FAILURE_URL: str = "http://localhost:3000/verify?status=error"

    IDENTITY_PROVIDER_URL: AnyUrl | None = None
    IDENTITY_PROVIDER_API_KEY: str | None = None
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 5.0
    AUDIT_WRITE_TIMEOUT_SECONDS: float = 2.0

    MAIL_FROM: str = "no-reply@example.com"
    AWS_REGION: str | None = "ap-southeast-2"

    CELERY_BROKER_URL: str | None = None
    CELERY_RESULT_BACKEND: str | None = None
    CELERY_TASK_DEFAULT_QUEUE: str = "default"
    CELERY_TIMEZONE: str = "UTC"
    TOKEN_SWEEP_INTERVAL_SECONDS: int = 3600
    ALEMBIC_DATABASE_URL: str | None = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() in {"production", "prod"}


settings = Settings()
