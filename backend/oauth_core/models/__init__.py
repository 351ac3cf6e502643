"""
Models package for database models and schemas.

This package contains SQLModel database models and Pydantic schemas:
- UserIntegration models and schemas
- OAuthState (authorization state nonces)
- PKCEVerifier (server-side PKCE code verifiers)
- IntegrationAuditLog (lifecycle history)

Import from this module for convenience:

    from oauth_core.models import UserIntegration, OAuthState, PKCEVerifier

Or import from specific modules for clarity:

    from oauth_core.models.user_integration import UserIntegration
    from oauth_core.models.oauth_state import OAuthState
"""

# Re-export SQLModel for Alembic migrations
from sqlmodel import SQLModel

# Integration models
from oauth_core.models.user_integration import (
    UserIntegration,
    UserIntegrationPublic,
)

# OAuth state model
from oauth_core.models.oauth_state import (
    OAuthState,
    STATE_EXPIRATION_MINUTES,
)

# PKCE verifier model
from oauth_core.models.pkce_verifier import PKCEVerifier

# Audit log model
from oauth_core.models.audit_log import (
    IntegrationAction,
    IntegrationAuditLog,
)

__all__ = [
    # SQLModel for migrations
    "SQLModel",
    # Integration
    "UserIntegration",
    "UserIntegrationPublic",
    # OAuth State
    "OAuthState",
    "STATE_EXPIRATION_MINUTES",
    # PKCE
    "PKCEVerifier",
    # Audit
    "IntegrationAction",
    "IntegrationAuditLog",
]
