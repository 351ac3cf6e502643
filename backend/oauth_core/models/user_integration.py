"""
UserIntegration model for storing OAuth tokens for external providers.

This module contains:
- UserIntegration database model (stores encrypted OAuth tokens)
- UserIntegrationPublic: Output schema (never exposes tokens)
"""

from datetime import datetime, timedelta

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel, UniqueConstraint

from oauth_core.models.base import as_utc, utcnow


class UserIntegration(SQLModel, table=True):
    """
    Stores OAuth tokens for one user's connection to one provider.

    Each user has at most one row per provider. Disconnecting flips
    ``is_active`` to False and keeps the row as an audit trail;
    reconnecting reactivates and overwrites the same row.
    Tokens are encrypted at rest using Fernet encryption.

    Attributes:
        user_id: Identifier of the user who owns this integration.
        service_name: Provider identifier (e.g., "github", "jira").
        access_token_encrypted: Fernet-encrypted OAuth access token.
        refresh_token_encrypted: Fernet-encrypted refresh token (None for
            providers that issue non-refreshable tokens).
        expires_at: When the access token expires (UTC), None if it never does.
        scopes: Space-separated list of OAuth scopes granted.
        token_type: Token type, typically "Bearer".
        is_active: False once the user disconnected the provider.
        connected_at: When the current grant was obtained.
        last_refreshed_at: When the access token was last refreshed.
    """

    __tablename__ = "user_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "service_name", name="uq_user_integration_service"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    service_name: str = Field(max_length=50, index=True)

    # Encrypted token storage (bytes)
    access_token_encrypted: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    refresh_token_encrypted: bytes | None = Field(
        default=None, sa_column=Column(LargeBinary, nullable=True)
    )

    # Token metadata
    expires_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    scopes: str | None = Field(default=None, max_length=1000)
    token_type: str = Field(default="Bearer", max_length=50)

    # Lifecycle
    is_active: bool = Field(default=True, index=True)
    connected_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
    )
    last_refreshed_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    # Timestamps
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
    )

    def is_expired(self) -> bool:
        """
        Check if the access token has expired.

        Returns:
            True if token is expired, False if valid or no expiry set.
        """
        if self.expires_at is None:
            return False
        return utcnow() >= as_utc(self.expires_at)

    def is_expiring_soon(self, minutes: int = 5) -> bool:
        """
        Check if the access token expires within the given minutes.

        Args:
            minutes: Number of minutes to check ahead.

        Returns:
            True if token expires within the time window.
        """
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) - timedelta(minutes=minutes) <= utcnow()

    def expires_in_seconds(self) -> int | None:
        """Seconds until expiry (negative once expired), None without expiry."""
        if self.expires_at is None:
            return None
        return int((as_utc(self.expires_at) - utcnow()).total_seconds())


class UserIntegrationPublic(SQLModel):
    """
    Public schema for UserIntegration - NEVER exposes tokens.

    Used for API responses and the CLI to show integration status without
    revealing sensitive token data.
    """

    id: int
    service_name: str
    is_active: bool
    expires_at: datetime | None
    expires_in_seconds: int | None
    scopes: str | None
    has_refresh_token: bool
    is_expired: bool
    connected_at: datetime
    last_refreshed_at: datetime | None
    updated_at: datetime

    @classmethod
    def from_integration(cls, integration: UserIntegration) -> "UserIntegrationPublic":
        return cls(
            id=integration.id,
            service_name=integration.service_name,
            is_active=integration.is_active,
            expires_at=integration.expires_at,
            expires_in_seconds=integration.expires_in_seconds(),
            scopes=integration.scopes,
            has_refresh_token=integration.refresh_token_encrypted is not None,
            is_expired=integration.is_expired(),
            connected_at=integration.connected_at,
            last_refreshed_at=integration.last_refreshed_at,
            updated_at=integration.updated_at,
        )
