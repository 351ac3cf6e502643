"""
PKCEVerifier model: server-side storage of PKCE code verifiers.

The verifier never leaves the server. Only its S256 challenge is placed in
the authorization URL; the verifier is sent to the token endpoint once and
then deleted.
"""

from datetime import datetime, timedelta

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from oauth_core.models.base import as_utc, utcnow
from oauth_core.models.oauth_state import STATE_EXPIRATION_MINUTES


class PKCEVerifier(SQLModel, table=True):
    """
    Maps an authorization state nonce to its PKCE code verifier.

    Attributes:
        state: The state nonce the verifier belongs to (primary key)
        code_verifier: RFC 7636 code verifier (43-128 chars)
        created_at: When the verifier was generated (for expiration check)
    """

    __tablename__ = "pkce_verifiers"

    state: str = Field(primary_key=True, max_length=64)
    code_verifier: str = Field(max_length=128)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        index=True,
    )

    def is_expired(self, minutes: int = STATE_EXPIRATION_MINUTES) -> bool:
        return utcnow() - as_utc(self.created_at) > timedelta(minutes=minutes)
