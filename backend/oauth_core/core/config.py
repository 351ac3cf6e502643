"""
Application configuration with environment-based settings.

This module uses Pydantic Settings for automatic environment variable loading
and validation. Secrets (encryption key, provider client credentials) come
from the environment or a local .env file; nothing secret has a default.
"""

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import PostgresDsn, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_app_version_from_pyproject() -> str:
    """Load application version from pyproject.toml"""
    try:
        pyproject_path = Path(__file__).parents[3] / "pyproject.toml"

        if not pyproject_path.exists():
            # Fallback for when running from an installed wheel
            return "0.0.0"

        with open(pyproject_path, "rb") as f:
            config = tomllib.load(f)
            version = config.get("project", {}).get("version")

            if not version:
                return "0.0.0"

            return version

    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"


class Settings(BaseSettings):
    """
    Application settings with validation.

    All non-secret settings have defaults for local development. The token
    encryption key and provider credentials must be supplied explicitly;
    a missing encryption key is reported when the token vault is built.
    """

    model_config = SettingsConfigDict(
        # Disable .env loading when TESTING=1 (set by conftest.py)
        # This ensures tests use only explicitly set env vars
        env_file=None if os.getenv("TESTING") else ".env",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=True,
    )

    # API Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "OAuth Token Lifecycle"
    APP_VERSION: str = _load_app_version_from_pyproject()
    PORT: int = 8000

    # Environment
    ENVIRONMENT: Literal["local", "development", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Public base URL of this backend; provider callbacks are registered against it
    BACKEND_URL: str = "http://localhost:8000"

    # Frontend settings page that OAuth callbacks redirect to
    FRONTEND_HOST: str = "http://localhost:8080"

    # Database Configuration (PostgreSQL)
    # DATABASE_URL overrides the POSTGRES_* parts when set (e.g. sqlite for the CLI)
    DATABASE_URL: str | None = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "app"
    POSTGRES_PASSWORD: str = "changethis"
    POSTGRES_DB: str = "app"

    # Token encryption key (Fernet). Required, never generated.
    #   python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    TOKEN_ENCRYPTION_KEY: str | None = None

    # Provider client credentials
    # A provider is registered only when both its id and secret are set.
    GITHUB_CLIENT_ID: str | None = None
    GITHUB_CLIENT_SECRET: str | None = None
    # One Atlassian app covers both Jira and Confluence
    ATLASSIAN_CLIENT_ID: str | None = None
    ATLASSIAN_CLIENT_SECRET: str | None = None
    # One Microsoft app covers both Outlook and Teams
    MICROSOFT_CLIENT_ID: str | None = None
    MICROSOFT_CLIENT_SECRET: str | None = None
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    SLACK_CLIENT_ID: str | None = None
    SLACK_CLIENT_SECRET: str | None = None
    FIGMA_CLIENT_ID: str | None = None
    FIGMA_CLIENT_SECRET: str | None = None
    ZOOM_CLIENT_ID: str | None = None
    ZOOM_CLIENT_SECRET: str | None = None

    # Token refresh
    REFRESH_MARGIN_MINUTES: int = 5
    REFRESH_MAX_ATTEMPTS: int = 3
    REFRESH_BACKOFF_BASE_SECONDS: float = 1.0
    # Multiplier > 3 keeps jittered delays (0.5x-1.5x) strictly increasing
    REFRESH_BACKOFF_MULTIPLIER: float = 4.0
    RETRY_AFTER_MAX_SECONDS: float = 60.0
    PROVIDER_MAX_CONCURRENT_REFRESHES: int = 10
    VALIDATE_ALL_CONCURRENCY: int = 3
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Cross-process refresh coordination
    # "local": in-process leases only (single replica)
    # "postgres": session-scoped advisory locks (multi-replica)
    REFRESH_LOCK_BACKEND: Literal["local", "postgres"] = "local"
    LOCK_CONTENTION_WAIT_SECONDS: float = 2.0
    LOCK_CONTENTION_MAX_REREADS: int = 1

    # OAuth state / PKCE verifier lifetime
    STATE_EXPIRATION_MINUTES: int = 10
    STATE_CLEANUP_INTERVAL_SECONDS: int = 300

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """Build the database connection string"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            PostgresDsn.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def oauth_redirect_uri(self) -> str:
        """Callback URL registered with every provider"""
        return f"{self.BACKEND_URL.rstrip('/')}{self.API_V1_STR}/integrations/oauth/callback"


# Create settings instance
settings = Settings()
