from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Annotated, Any, ClassVar
import json
from pathlib import Path
import os


def _split_list(v: Any) -> Any:
    """Parse comma-separated or JSON list values from the environment."""
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        return [s.strip() for s in v.split(",") if s.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=True,
    )

    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Booking Chat API"

    # JWT configuration (provide a fallback for local development)
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Use an absolute path so running the app from different directories
    # always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'booking_chat.db'}"

    # Redis is only needed when the cross-instance realtime bus is enabled
    REDIS_URL: str = "redis://localhost:6379/0"
    WS_BUS_ENABLED: bool = False

    CORS_ORIGINS: Annotated[list[str], NoDecode] = ["http://localhost:3000", "http://localhost:5173"]
    CORS_ALLOW_ALL: bool = False

    LOG_LEVEL: str = "INFO"
    ENABLE_CONSOLE_TRACING: bool = False
    OTEL_EXCLUDE_WS: bool = True

    # Booking statuses during which the chat is interactive
    CHAT_ENGAGED_STATUSES: Annotated[list[str], NoDecode] = ["accepted", "in_progress"]

    # Attachments
    ATTACHMENT_MAX_BYTES: int = 5 * 1024 * 1024
    ATTACHMENT_UPLOAD_TIMEOUT: float = 30.0
    ATTACHMENTS_DIR: str = str(BASE_DIR / "static" / "attachments")
    ATTACHMENTS_PUBLIC_BASE_URL: str = "/attachments"

    # R2 / S3-compatible storage; used for attachments when fully configured
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET: str = ""
    R2_S3_ENDPOINT: str = ""
    R2_PUBLIC_BASE_URL: str = ""

    # Client session tuning
    TYPING_DECAY_SECONDS: float = 3.0
    POLL_INTERVAL_SECONDS: float = 5.0
    UNREAD_RETRY_SECONDS: float = 2.0

    @field_validator("CORS_ORIGINS", "CHAT_ENGAGED_STATUSES", mode="before")
    def split_lists(cls, v: Any) -> list[str]:
        return _split_list(v)

    @field_validator("CHAT_ENGAGED_STATUSES", mode="after")
    def lower_statuses(cls, v: list[str]) -> list[str]:
        return [s.strip().lower() for s in v if s and s.strip()]

    @field_validator("ATTACHMENTS_PUBLIC_BASE_URL", "R2_PUBLIC_BASE_URL", mode="before")
    def strip_trailing_slash(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @model_validator(mode="after")
    def allow_all_if_requested(cls, values: "Settings") -> "Settings":
        if values.CORS_ALLOW_ALL:
            values.CORS_ORIGINS = ["*"]
        return values

    @property
    def r2_configured(self) -> bool:
        return bool(
            self.R2_BUCKET
            and (self.R2_S3_ENDPOINT or self.R2_ACCOUNT_ID)
            and self.R2_ACCESS_KEY_ID
            and self.R2_SECRET_ACCESS_KEY
        )


def load_settings() -> "Settings":
    return Settings(_env_file=os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env")))


settings = load_settings()


def _redis_url() -> str:
    env_url = os.getenv("REDIS_URL")
    if env_url:
        return env_url
    return getattr(settings, "REDIS_URL", "redis://localhost:6379/0")


REDIS_URL = _redis_url()
