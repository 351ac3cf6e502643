"""
IntegrationAuditLog model: append-only history of integration lifecycle events.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from oauth_core.models.base import utcnow


class IntegrationAction(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_FAILED = "refresh_failed"
    REVOKE = "revoke"


class IntegrationAuditLog(SQLModel, table=True):
    """
    One lifecycle event for a (user, provider) integration.

    ``detail`` holds a short machine-readable reason (e.g. "invalid_grant",
    "revocation_unsupported") and never token material.
    """

    __tablename__ = "integration_audit_logs"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    service_name: str = Field(max_length=50)
    action: str = Field(max_length=30)
    success: bool = Field(default=True)
    detail: str | None = Field(default=None, max_length=500)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
    )
