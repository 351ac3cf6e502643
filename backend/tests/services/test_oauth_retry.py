"""
Tests for OAuth 401 retry logic.

Validates automatic token refresh and retry on 401 responses from external services.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from oauth_core.core.exceptions import ReauthorizationRequired, TransientFailure
from oauth_core.services.oauth_retry import make_authorized_request, with_oauth_retry


def _service(token: str = "valid-token", refreshed: str = "refreshed-token"):
    service = MagicMock()
    service.settings.HTTP_TIMEOUT_SECONDS = 30.0
    service.get_access_token = AsyncMock(return_value=token)
    service.force_refresh = AsyncMock(return_value=refreshed)
    return service


def _response(status_code: int):
    response = MagicMock()
    response.status_code = status_code
    return response


class TestWithOAuthRetry:
    """Tests for the with_oauth_retry utility."""

    @pytest.mark.asyncio
    async def test_returns_response_on_success(self):
        """Returns response directly when request succeeds."""
        service = _service()
        mock_request = AsyncMock(return_value=_response(200))

        result = await with_oauth_retry(
            service=service, user_id="alice", provider="github", request_func=mock_request
        )

        assert result.status_code == 200
        mock_request.assert_called_once_with("valid-token")
        service.force_refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_on_401_after_token_refresh(self):
        """Refreshes token and retries request on 401 response."""
        service = _service()
        mock_request = AsyncMock(side_effect=[_response(401), _response(200)])

        result = await with_oauth_retry(
            service=service, user_id="alice", provider="github", request_func=mock_request
        )

        assert result.status_code == 200
        assert [c.args[0] for c in mock_request.call_args_list] == [
            "valid-token",
            "refreshed-token",
        ]
        service.force_refresh.assert_awaited_once_with("alice", "github")

    @pytest.mark.asyncio
    async def test_only_retries_once(self):
        """A second 401 is returned to the caller, not retried again."""
        service = _service()
        mock_request = AsyncMock(return_value=_response(401))

        result = await with_oauth_retry(
            service=service, user_id="alice", provider="github", request_func=mock_request
        )

        assert result.status_code == 401
        assert mock_request.call_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ReauthorizationRequired("revoked", provider="github"),
            TransientFailure("down", provider="github"),
        ],
    )
    async def test_returns_401_when_refresh_fails(self, error):
        """Returns the original 401 response when token refresh fails."""
        service = _service()
        service.force_refresh.side_effect = error
        mock_request = AsyncMock(return_value=_response(401))

        result = await with_oauth_retry(
            service=service, user_id="alice", provider="github", request_func=mock_request
        )

        assert result.status_code == 401
        mock_request.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_token_raises(self):
        """Without a usable token no request is made."""
        service = _service()
        service.get_access_token.side_effect = ReauthorizationRequired("gone", provider="github")
        mock_request = AsyncMock()

        with pytest.raises(ReauthorizationRequired):
            await with_oauth_retry(
                service=service, user_id="alice", provider="github", request_func=mock_request
            )
        mock_request.assert_not_called()


class TestMakeAuthorizedRequest:
    @pytest.mark.asyncio
    async def test_adds_bearer_header(self):
        service = _service()

        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = AsyncMock()
            mock_instance.request.return_value = _response(200)
            mock_instance.__aenter__.return_value = mock_instance
            mock_instance.__aexit__.return_value = None
            mock_client.return_value = mock_instance

            result = await make_authorized_request(
                service=service,
                user_id="alice",
                provider="github",
                method="GET",
                url="https://api.github.com/user",
                headers={"Accept": "application/vnd.github+json"},
            )

        assert result.status_code == 200
        kwargs = mock_instance.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "https://api.github.com/user"
        assert kwargs["headers"] == {
            "Accept": "application/vnd.github+json",
            "Authorization": "Bearer valid-token",
        }
