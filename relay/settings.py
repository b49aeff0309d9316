# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for the Feishu relay.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading and validation for all relay components.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== DEVELOPMENT PLACEHOLDERS ==== #

DEV_APP_ID = "cli_dev_placeholder"
DEV_APP_SECRET = "dev-secret-placeholder"
DEV_OPEN_CHAT_ID = "oc_dev_placeholder"

PRODUCTION_ENVIRONMENTS = {"prod", "production"}


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Relay settings loaded from environment variables.

    Feishu credentials fall back to development placeholders outside
    production; production deployments must provide them explicitly.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "feishu-relay"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = "logs"
    HOST: str = "0.0.0.0"
    PORT: int = 5000

    # --► FEISHU CREDENTIALS
    APP_ID: str | None = None
    APP_SECRET: str | None = None
    OPEN_CHAT_ID: str | None = None

    # --► FEISHU API CONFIGURATION
    FEISHU_BASE_URL: str = "https://open.feishu.cn/open-apis"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    TOKEN_SAFETY_MARGIN_SECONDS: int = 30

    # --► ADMISSION CONTROL
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_MAX_REQUESTS: int = 30

    # --► DISPATCH QUEUE
    DISPATCH_BATCH_SIZE: int = 5
    DISPATCH_PACING_MS: int = 200
    DISPATCH_TASK_TIMEOUT_SECONDS: float = 30.0
    DISPATCH_SHUTDOWN_TIMEOUT_SECONDS: float = 30.0

    # --► UPLOADS AND JANITOR
    UPLOAD_DIR: str = "uploads"
    UPLOAD_TTL_MS: int = 3_600_000
    JANITOR_INTERVAL_MS: int | None = None
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024
    ALLOWED_IMAGE_EXTENSIONS: list[str] = [
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"
    ]

    # --► SECURITY LIMITS
    MAX_REQUEST_BODY_BYTES: int = 1_048_576
    CORS_ORIGINS: list[str] = ["*"]

    @property
    def is_production(self) -> bool:
        """Whether the relay runs in a production deployment."""
        return self.APP_ENV.lower() in PRODUCTION_ENVIRONMENTS

    @property
    def janitor_interval_seconds(self) -> float:
        """Janitor sweep interval, defaulting to the upload TTL."""
        interval_ms = self.JANITOR_INTERVAL_MS or self.UPLOAD_TTL_MS
        return interval_ms / 1000

    @model_validator(mode="after")
    def apply_credential_defaults(self) -> "Settings":
        """
        Require Feishu credentials in production, use placeholders elsewhere.

        Raises:
            ValueError: If a production deployment lacks any credential
        """
        required = {
            "APP_ID": DEV_APP_ID,
            "APP_SECRET": DEV_APP_SECRET,
            "OPEN_CHAT_ID": DEV_OPEN_CHAT_ID,
        }
        missing = [name for name in required if not getattr(self, name)]

        if missing and self.is_production:
            raise ValueError(
                f"Missing required settings for production: {', '.join(missing)}"
            )

        for name in missing:
            setattr(self, name, required[name])

        return self


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
