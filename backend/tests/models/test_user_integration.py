"""
Tests for UserIntegration model.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from oauth_core.models import UserIntegration, UserIntegrationPublic


def _integration(**kwargs) -> UserIntegration:
    values = {
        "user_id": "alice",
        "service_name": "github",
        "access_token_encrypted": b"encrypted-access",
    }
    values.update(kwargs)
    return UserIntegration(**values)


class TestUserIntegrationModel:
    """Tests for UserIntegration database model."""

    def test_create_integration(self, session: Session):
        """Integration rows get lifecycle defaults."""
        integration = _integration(refresh_token_encrypted=b"encrypted-refresh")
        session.add(integration)
        session.commit()
        session.refresh(integration)

        assert integration.id is not None
        assert integration.is_active is True
        assert integration.token_type == "Bearer"
        assert integration.connected_at is not None
        assert integration.last_refreshed_at is None

    def test_one_row_per_user_and_provider(self, session: Session):
        """A user cannot hold two rows for the same provider."""
        session.add(_integration())
        session.commit()

        session.add(_integration())
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_same_provider_for_different_users(self, session: Session):
        """Different users may connect the same provider."""
        session.add(_integration(user_id="alice"))
        session.add(_integration(user_id="bob"))
        session.commit()


class TestTokenExpiry:
    """Tests for expiry helpers."""

    def test_no_expiry_never_expires(self):
        """Tokens without expires_at never expire and never need refresh."""
        integration = _integration(expires_at=None)

        assert integration.is_expired() is False
        assert integration.is_expiring_soon(minutes=60) is False
        assert integration.expires_in_seconds() is None

    def test_expired(self):
        integration = _integration(
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
        )

        assert integration.is_expired() is True
        assert integration.expires_in_seconds() < 0

    def test_expiring_within_margin(self):
        """A token expiring in 4 minutes is inside a 5 minute margin."""
        integration = _integration(
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=4)
        )

        assert integration.is_expired() is False
        assert integration.is_expiring_soon(minutes=5) is True
        assert integration.is_expiring_soon(minutes=3) is False

    def test_naive_datetime_treated_as_utc(self):
        """SQLite returns naive datetimes; they are read as UTC."""
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        integration = _integration(expires_at=naive)

        assert integration.is_expired() is False
        assert 3500 < integration.expires_in_seconds() <= 3600


class TestUserIntegrationPublic:
    """Tests for the public schema."""

    def test_never_exposes_tokens(self, session: Session):
        integration = _integration(
            refresh_token_encrypted=b"encrypted-refresh",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes="repo read:user",
        )
        session.add(integration)
        session.commit()
        session.refresh(integration)

        public = UserIntegrationPublic.from_integration(integration)
        data = public.model_dump()

        assert data["service_name"] == "github"
        assert data["has_refresh_token"] is True
        assert data["is_expired"] is False
        assert data["scopes"] == "repo read:user"
        assert not any("token_encrypted" in key for key in data)
        assert "access_token" not in data
