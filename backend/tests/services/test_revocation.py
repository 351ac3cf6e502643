"""
Tests for token revocation and disconnect.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest
from sqlmodel import Session

from oauth_core.core.exceptions import IntegrationNotFoundError
from oauth_core.crud.audit_log import get_audit_logs
from oauth_core.crud.integration import create_or_update_integration, get_user_integration
from oauth_core.services.revocation import RevocationStatus

GITHUB_REVOKE_URL = "https://api.github.com/applications/test-github-client-id/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
SLACK_REVOKE_URL = "https://slack.com/api/auth.revoke"


def _connect(session: Session, provider: str, user_id: str = "alice"):
    return create_or_update_integration(
        session=session,
        user_id=user_id,
        service_name=provider,
        access_token=f"{provider}-access",
        refresh_token=f"{provider}-refresh",
        expires_in=3600,
    )


def _stored(session: Session, provider: str, user_id: str = "alice"):
    return get_user_integration(
        session=session, user_id=user_id, service_name=provider, include_inactive=True
    )


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_revokes_and_deactivates(self, session: Session, token_service, provider):
        _connect(session, "google")
        provider.queue(GOOGLE_REVOKE_URL, 200)

        result = await token_service.disconnect("alice", "google")

        assert result.deactivated is True
        assert result.revocation.status is RevocationStatus.REVOKED
        request = provider.calls_to(GOOGLE_REVOKE_URL)[0]
        assert request.method == "POST"
        assert parse_qs(request.content.decode())["token"] == ["google-access"]

        stored = _stored(session, "google")
        assert stored is not None
        assert stored.is_active is False

        logs = get_audit_logs(session=session, user_id="alice", service_name="google")
        assert [(log.action, log.success) for log in logs] == [
            ("disconnect", True),
            ("revoke", True),
        ]

    @pytest.mark.asyncio
    async def test_github_revocation_request(self, session: Session, token_service, provider):
        """GitHub revokes via DELETE with app credentials and a JSON body."""
        _connect(session, "github")
        provider.queue(GITHUB_REVOKE_URL, 204)

        result = await token_service.disconnect("alice", "github")

        assert result.revocation.revoked
        request = provider.calls_to(GITHUB_REVOKE_URL)[0]
        assert request.method == "DELETE"
        assert request.headers["Authorization"].startswith("Basic ")
        assert json.loads(request.content) == {"access_token": "github-access"}

    @pytest.mark.asyncio
    async def test_provider_rejection_still_deactivates(
        self, session: Session, token_service, provider
    ):
        """A 404 from the revocation endpoint is reported but the row is still deactivated."""
        _connect(session, "google")
        provider.queue(GOOGLE_REVOKE_URL, 404, {"error": "invalid_token"})

        result = await token_service.disconnect("alice", "google")

        assert result.deactivated is True
        assert result.revocation.status is RevocationStatus.FAILED
        assert result.revocation.detail == "http_404"
        assert len(provider.calls_to(GOOGLE_REVOKE_URL)) == 1
        assert _stored(session, "google").is_active is False
        logs = get_audit_logs(session=session, user_id="alice", service_name="google")
        assert logs[1].action == "revoke"
        assert logs[1].success is False

    @pytest.mark.asyncio
    async def test_network_failure_still_deactivates(
        self, session: Session, make_service, sleeps
    ):
        _connect(session, "google")

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await make_service(handler).disconnect("alice", "google")

        assert result.revocation.status is RevocationStatus.FAILED
        assert result.revocation.detail == "network_error:ConnectError"
        assert len(sleeps) == 2
        assert _stored(session, "google").is_active is False

    @pytest.mark.asyncio
    async def test_unavailable_endpoint_retried(
        self, session: Session, token_service, provider, sleeps
    ):
        """503 then 200: the second attempt revokes the token."""
        _connect(session, "google")
        provider.queue(GOOGLE_REVOKE_URL, 503)
        provider.queue(GOOGLE_REVOKE_URL, 200)

        result = await token_service.disconnect("alice", "google")

        assert result.revocation.status is RevocationStatus.REVOKED
        assert len(provider.calls_to(GOOGLE_REVOKE_URL)) == 2
        assert len(sleeps) == 1
        logs = get_audit_logs(session=session, user_id="alice", service_name="google")
        assert logs[1].action == "revoke"
        assert logs[1].success is True

    @pytest.mark.asyncio
    async def test_retries_exhausted_still_deactivates(
        self, session: Session, token_service, provider, sleeps
    ):
        _connect(session, "google")
        provider.queue(GOOGLE_REVOKE_URL, 503)

        result = await token_service.disconnect("alice", "google")

        assert result.revocation.status is RevocationStatus.FAILED
        assert result.revocation.detail == "http_503"
        assert len(provider.calls_to(GOOGLE_REVOKE_URL)) == 3
        assert len(sleeps) == 2
        assert _stored(session, "google").is_active is False

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(
        self, session: Session, token_service, provider, sleeps
    ):
        _connect(session, "google")
        provider.queue(GOOGLE_REVOKE_URL, 429, headers={"Retry-After": "7"})
        provider.queue(GOOGLE_REVOKE_URL, 200)

        result = await token_service.disconnect("alice", "google")

        assert result.revocation.revoked
        assert sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_slack_ok_flag(self, session: Session, token_service, provider):
        """Slack answers 200 with ok=false when revocation fails."""
        _connect(session, "slack")
        provider.queue(SLACK_REVOKE_URL, 200, {"ok": False, "error": "invalid_auth"})

        result = await token_service.disconnect("alice", "slack")

        assert result.revocation.status is RevocationStatus.FAILED
        assert result.revocation.detail == "invalid_auth"
        request = provider.calls_to(SLACK_REVOKE_URL)[0]
        assert request.headers["Authorization"] == "Bearer slack-access"

    @pytest.mark.asyncio
    async def test_slack_revoked(self, session: Session, token_service, provider):
        _connect(session, "slack")
        provider.queue(SLACK_REVOKE_URL, 200, {"ok": True, "revoked": True})

        result = await token_service.disconnect("alice", "slack")

        assert result.revocation.revoked

    @pytest.mark.asyncio
    async def test_provider_without_revocation(self, session: Session, token_service, provider):
        _connect(session, "jira")

        result = await token_service.disconnect("alice", "jira")

        assert result.revocation.status is RevocationStatus.UNSUPPORTED
        assert provider.requests == []
        assert _stored(session, "jira").is_active is False
        logs = get_audit_logs(session=session, user_id="alice", service_name="jira")
        assert [log.action for log in logs] == ["disconnect"]

    @pytest.mark.asyncio
    async def test_unconfigured_provider_can_be_disconnected(
        self, session: Session, token_service, provider
    ):
        _connect(session, "figma")

        result = await token_service.disconnect("alice", "figma")

        assert result.revocation.status is RevocationStatus.UNSUPPORTED
        assert _stored(session, "figma").is_active is False

    @pytest.mark.asyncio
    async def test_undecryptable_token_still_deactivates(
        self, session: Session, token_service, provider
    ):
        integration = _connect(session, "google")
        integration.access_token_encrypted = b"not-a-fernet-token"
        session.add(integration)
        session.commit()

        result = await token_service.disconnect("alice", "google")

        assert result.revocation.detail == "undecryptable_token"
        assert provider.requests == []
        assert _stored(session, "google").is_active is False

    @pytest.mark.asyncio
    async def test_missing_integration(self, token_service):
        with pytest.raises(IntegrationNotFoundError):
            await token_service.disconnect("alice", "google")

    @pytest.mark.asyncio
    async def test_disconnect_twice(self, session: Session, token_service, provider):
        _connect(session, "jira")
        await token_service.disconnect("alice", "jira")

        with pytest.raises(IntegrationNotFoundError):
            await token_service.disconnect("alice", "jira")

    @pytest.mark.asyncio
    async def test_tokens_unavailable_after_disconnect(
        self, session: Session, token_service, provider
    ):
        _connect(session, "jira")
        await token_service.disconnect("alice", "jira")

        with pytest.raises(IntegrationNotFoundError):
            await token_service.get_access_token("alice", "jira")

    @pytest.mark.asyncio
    async def test_other_users_unaffected(self, session: Session, token_service, provider):
        _connect(session, "jira", user_id="alice")
        _connect(session, "jira", user_id="bob")

        await token_service.disconnect("alice", "jira")

        assert _stored(session, "jira", user_id="bob").is_active is True
