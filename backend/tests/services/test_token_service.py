"""
Tests for the TokenService facade: construction and introspection.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, create_engine

from oauth_core.core.config import settings
from oauth_core.core.exceptions import ConfigurationError, IntegrationNotFoundError
from oauth_core.crud.integration import create_or_update_integration, deactivate_integration
from oauth_core.models import OAuthState
from oauth_core.services.refresh_locks import LocalRefreshLock
from oauth_core.services.token_service import TokenService


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_builds_service(self, session_factory):
        service = TokenService.from_settings(
            settings, session_factory=session_factory, engine=create_engine("sqlite://")
        )

        assert "github" in service.registry
        assert isinstance(service.coordinator._lock_backend, LocalRefreshLock)
        assert service.coordinator.margin_minutes == settings.REFRESH_MARGIN_MINUTES

        await service.aclose()
        assert service.http_client.is_closed

    def test_half_configured_provider_fails_fast(self, session_factory):
        broken = settings.model_copy(update={"FIGMA_CLIENT_ID": "figma-id"})

        with pytest.raises(ConfigurationError):
            TokenService.from_settings(
                broken, session_factory=session_factory, engine=create_engine("sqlite://")
            )

    def test_postgres_locks_on_sqlite_fail_fast(self, session_factory):
        broken = settings.model_copy(update={"REFRESH_LOCK_BACKEND": "postgres"})

        with pytest.raises(ConfigurationError):
            TokenService.from_settings(
                broken, session_factory=session_factory, engine=create_engine("sqlite://")
            )

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self, token_service):
        await token_service.aclose()

        assert not token_service.http_client.is_closed


class TestIntrospection:
    def test_list_integrations_for_user(self, session: Session, token_service):
        create_or_update_integration(
            session=session, user_id="alice", service_name="github", access_token="t"
        )
        create_or_update_integration(
            session=session, user_id="bob", service_name="github", access_token="t"
        )

        assert [i.user_id for i in token_service.list_integrations("alice")] == ["alice"]
        assert len(token_service.list_integrations()) == 2

    def test_list_integrations_include_inactive(self, session: Session, token_service):
        integration = create_or_update_integration(
            session=session, user_id="alice", service_name="github", access_token="t"
        )
        deactivate_integration(session=session, integration=integration)

        assert token_service.list_integrations("alice") == []
        assert len(token_service.list_integrations("alice", include_inactive=True)) == 1

    def test_integration_status_uses_configured_providers(self, session: Session, token_service):
        create_or_update_integration(
            session=session, user_id="alice", service_name="github", access_token="t"
        )

        status = token_service.integration_status("alice")

        assert status["connected"] == ["github"]
        assert "google" in status["missing"]
        assert "figma" not in status["missing"]

    def test_inspect_reports_metadata_only(self, session: Session, token_service):
        integration = create_or_update_integration(
            session=session,
            user_id="alice",
            service_name="google",
            access_token="ya29.secret",
            refresh_token="1//secret",
            expires_in=3600,
            scopes="calendar.readonly",
        )
        integration.expires_at = datetime.now(timezone.utc) + timedelta(minutes=3)
        session.add(integration)
        session.commit()

        info = token_service.inspect("alice", "google")

        assert info["provider"] == "google"
        assert info["display_name"] == "Google"
        assert info["configured"] is True
        assert info["is_active"] is True
        assert info["has_refresh_token"] is True
        assert info["needs_refresh"] is True
        assert 0 < info["expires_in_seconds"] <= 180
        assert info["token_age_seconds"] >= 0
        assert info["last_refreshed_at"] is None
        assert info["supports_pkce"] is True
        assert info["supports_revocation"] is True
        assert "secret" not in repr(info)

    def test_inspect_unconfigured_provider(self, session: Session, token_service):
        create_or_update_integration(
            session=session, user_id="alice", service_name="figma", access_token="t"
        )

        info = token_service.inspect("alice", "figma")

        assert info["configured"] is False
        assert info["supports_pkce"] is None
        assert info["expires_at"] is None
        assert info["needs_refresh"] is False

    def test_inspect_missing(self, token_service):
        with pytest.raises(IntegrationNotFoundError):
            token_service.inspect("alice", "google")

    def test_sweep_expired_states(self, session: Session, token_service):
        session.add(
            OAuthState(
                state="abandoned",
                user_id="alice",
                target="github",
                redirect_uri="http://localhost:8000/callback",
                created_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )
        )
        session.commit()

        assert token_service.sweep_expired_states() == {"states": 1, "verifiers": 0}
