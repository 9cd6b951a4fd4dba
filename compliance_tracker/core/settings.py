from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database configuration
    DATABASE_URL: str | None = None

    # Application URLs
    APP_BASE_URL: str = "http://localhost:5000"  # Default for development
    FRONTEND_URL: str | None = None

    # Signs the OAuth state cookie
    JWT_SECRET: str | None = None

    # QuickBooks OAuth configuration (fallbacks for stored system settings)
    QB_CLIENT_ID: str | None = None
    QB_CLIENT_SECRET: str | None = None
    QB_REDIRECT_URI: str | None = None
    QB_ENVIRONMENT: str | None = None
    QB_HTTP_TIMEOUT_SECONDS: float = 30.0
    QB_STATE_TTL_MINUTES: int = 30

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
