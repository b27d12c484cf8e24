import logging

from fastapi import Request

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Client IP, honoring X-Forwarded-For / X-Real-IP from the load balancer."""
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return (request.client.host if request.client else "") or "unknown"


class CoreSettings(BaseSettings):
    ENV: str = Field(default="development", validation_alias="APP_ENV")
    LOG_LEVEL: str = "INFO"

    APP_NAME: str = "loadvoice-api"
    APP_BASE_URL: str = "http://localhost:8000"
    SESSION_SECRET_KEY: str = "change-this-session-secret"
    SESSION_COOKIE_DOMAIN: str = ""
    CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_TOKEN: str = ""
    CRON_SECRET: str = ""
    ADMIN_NOTIFICATION_EMAIL: str = ""

    # Usage metering
    OVERAGE_RATE: float = 0.20
    OVERAGE_CAP: float = 20.00
    MAX_OVERAGE_MINUTES: int = 100
    DEFAULT_MINUTES_LIMIT: int = 60
    PROCESSING_LOCK_TTL_MINUTES: int = 30
    STUCK_CALL_THRESHOLD_MINUTES: int = 60

    # Uploads
    UPLOAD_RATE_LIMIT: int = 5
    UPLOAD_RATE_WINDOW_SECONDS: int = 60
    MAX_UPLOAD_BYTES: int = 500 * 1024 * 1024  # 500MB
    RECORDING_STORAGE_ROOT: str = "/srv/loadvoice-data/recordings"
    DOCUMENT_STORAGE_ROOT: str = "/srv/loadvoice-data/documents"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PLAN_PRICE_IDS: str = ""  # solo:price_x,starter:price_y

    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TRANSCRIPTION_MODEL: str = "whisper-1"

    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_SKIP_SIGNATURE_VALIDATION: bool = False

    ENCRYPTION_KEY: str = ""

    MAGIC_LINK_TOKEN_TTL_MINUTES: int = 30
    MAGIC_LINK_SEND_WINDOW_MINUTES: int = 15
    MAGIC_LINK_SEND_EMAIL_LIMIT: int = 5
    MAGIC_LINK_SEND_IP_LIMIT: int = 20

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return (self.ENV or "").strip().lower() in {"production", "prod"}

    @property
    def is_development(self) -> bool:
        return (self.ENV or "").strip().lower() in {"local", "dev", "development"}

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = CoreSettings()
