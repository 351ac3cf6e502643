"""
OAuth token exchange and refresh service.

Handles exchanging authorization codes for tokens and refreshing expired tokens.
Each call makes exactly one HTTP request; retry policy belongs to the caller.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from oauth_core.services.providers import ProviderConfig

DEFAULT_TIMEOUT_SECONDS = 30.0


class OAuthTokenError(Exception):
    """
    Error during OAuth token exchange or refresh.

    Attributes:
        error: OAuth error code (e.g. "invalid_grant")
        description: Provider supplied description, for logs only
        status_code: HTTP status of the token endpoint response, None for
            transport failures
        retry_after: Seconds the provider asked us to wait, if it said so
    """

    def __init__(
        self,
        error: str,
        description: str | None = None,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.error = error
        self.description = description
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"{error}: {description}" if description else error)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a Retry-After header.

    Accepts both forms allowed by RFC 9110: delay in seconds or an HTTP date.

    Returns:
        Non-negative delay in seconds, or None if absent or unparseable
    """
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _parse_token_response(response: httpx.Response) -> dict:
    retry_after = parse_retry_after(response.headers.get("Retry-After"))

    try:
        result = response.json()
    except ValueError:
        result = None

    if not isinstance(result, dict):
        raise OAuthTokenError(
            "invalid_response",
            "Token endpoint did not return a JSON object",
            # Malformed success bodies are treated like a server fault
            status_code=response.status_code if response.status_code != 200 else 502,
            retry_after=retry_after,
        )

    if response.status_code != 200:
        raise OAuthTokenError(
            str(result.get("error", "unknown_error")),
            result.get("error_description"),
            status_code=response.status_code,
            retry_after=retry_after,
        )

    # Some providers (GitHub, Slack) report rejections with a 200 status
    if "error" in result or result.get("ok") is False:
        raise OAuthTokenError(
            str(result.get("error", "unknown_error")),
            result.get("error_description"),
            status_code=400,
        )

    # Slack user-token grants nest the user's token under authed_user
    authed_user = result.get("authed_user")
    if "access_token" not in result and isinstance(authed_user, dict):
        result = {**result, **authed_user}

    if not result.get("access_token"):
        raise OAuthTokenError(
            "invalid_response",
            "Token endpoint response has no access_token",
            status_code=502,
        )

    return result


async def _post_token_request(
    config: ProviderConfig,
    data: dict,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict:
    """
    Make a POST request to an OAuth token endpoint.

    Args:
        config: Provider whose token endpoint and credentials to use
        data: Form data to send with the request
        client: Shared HTTP client; a short-lived one is created if omitted
        timeout: Request timeout in seconds for a short-lived client

    Returns:
        Parsed JSON response from the token endpoint

    Raises:
        OAuthTokenError: If the provider rejects the request
        httpx.HTTPError: On network failures and timeouts
    """
    data = dict(data)
    auth = None
    if config.token_auth == "basic":
        auth = httpx.BasicAuth(config.client_id or "", config.client_secret or "")
    else:
        data["client_id"] = config.client_id
        data["client_secret"] = config.client_secret

    headers = {
        "Accept": "application/json",
        "Content-Type": "application/x-www-form-urlencoded",
    }

    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as short_lived:
            response = await short_lived.post(
                config.token_url, data=data, headers=headers, auth=auth
            )
    else:
        response = await client.post(
            config.token_url, data=data, headers=headers, auth=auth
        )

    return _parse_token_response(response)


def _normalize(result: dict) -> dict:
    expires_in = result.get("expires_in")
    return {
        "access_token": result["access_token"],
        "refresh_token": result.get("refresh_token"),
        "expires_in": int(expires_in) if expires_in not in (None, "") else None,
        "token_type": result.get("token_type") or "Bearer",
        "scope": result.get("scope"),
    }


async def exchange_code_for_tokens(
    config: ProviderConfig,
    code: str,
    redirect_uri: str,
    code_verifier: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict:
    """
    Exchange an authorization code for access and refresh tokens.

    Args:
        config: Provider (or group) configuration the code was issued for
        code: Authorization code from OAuth callback
        redirect_uri: The redirect URI used in the authorization request
        code_verifier: PKCE code verifier (required for PKCE flows)
        client: Optional shared HTTP client
        timeout: Request timeout in seconds

    Returns:
        Dictionary with access_token, refresh_token, expires_in, token_type, scope

    Raises:
        OAuthTokenError: If token exchange fails
        httpx.HTTPError: On network failures
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    }

    if code_verifier:
        data["code_verifier"] = code_verifier

    result = await _post_token_request(config, data, client=client, timeout=timeout)
    return _normalize(result)


async def refresh_access_token(
    config: ProviderConfig,
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict:
    """
    Refresh an expired access token using the refresh token.

    Args:
        config: Provider configuration
        refresh_token: The refresh token to use
        client: Optional shared HTTP client
        timeout: Request timeout in seconds

    Returns:
        Dictionary with new access_token, expires_in, and refresh_token

    Raises:
        OAuthTokenError: If the provider rejects the refresh
        httpx.HTTPError: On network failures
    """
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }

    result = await _post_token_request(config, data, client=client, timeout=timeout)
    tokens = _normalize(result)
    # Some providers don't return a new refresh token on refresh
    # In that case, preserve the original
    if not tokens["refresh_token"]:
        tokens["refresh_token"] = refresh_token
    return tokens
