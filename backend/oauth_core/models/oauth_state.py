"""
OAuthState model for storing OAuth flow state in the database.

Storing state in the database lets any replica handle the OAuth callback.
"""

from datetime import datetime, timedelta

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from oauth_core.core.config import settings
from oauth_core.models.base import as_utc, utcnow


# OAuth state expiration time (10 minutes by default)
STATE_EXPIRATION_MINUTES = settings.STATE_EXPIRATION_MINUTES


class OAuthState(SQLModel, table=True):
    """
    Stores a single-use anti-forgery nonce issued with an authorization URL.

    Attributes:
        state: Cryptographically secure random nonce (primary key)
        user_id: ID of the user who initiated the OAuth flow
        target: Provider id, or group id when ``is_group`` is set
        is_group: Whether one grant provisions every provider in a group
        redirect_uri: The redirect URI used in the authorization request
        created_at: When this state was issued (for expiration check)
    """

    __tablename__ = "oauth_states"

    state: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(max_length=255, index=True)
    target: str = Field(max_length=50)
    is_group: bool = Field(default=False)
    redirect_uri: str = Field(max_length=500)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        index=True,
    )

    def is_expired(self, minutes: int = STATE_EXPIRATION_MINUTES) -> bool:
        """
        Check if this OAuth state has expired.

        Returns:
            True if state is older than the expiration window.
        """
        return utcnow() - as_utc(self.created_at) > timedelta(minutes=minutes)
