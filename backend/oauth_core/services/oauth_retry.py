"""
OAuth retry service for automatic token refresh on 401 responses.

Provides utilities for making authenticated requests to external services
with automatic retry when the token is rejected (401 response), for
tokens revoked or rotated before their advertised expiry.
"""

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from oauth_core.core.exceptions import ReauthorizationRequired, TransientFailure

if TYPE_CHECKING:
    from oauth_core.services.token_service import TokenService

logger = logging.getLogger(__name__)


async def with_oauth_retry(
    *,
    service: "TokenService",
    user_id: str,
    provider: str,
    request_func: Callable[[str], Awaitable[Any]],
) -> Any:
    """
    Execute a request with automatic token refresh on 401 response.

    This utility:
    1. Gets the current access token for the provider (refreshing if stale)
    2. Calls the request function with the token
    3. If 401 is returned, force-refreshes the token and retries once
    4. Returns the response (either original or from retry)

    Args:
        service: Token service
        user_id: User ID
        provider: Provider identifier
        request_func: Async function that takes a token and returns a response.
                     The response must have a `status_code` attribute.

    Returns:
        Response from the request function

    Raises:
        ReauthorizationRequired: If no usable token exists before the first request
        TransientFailure: If the initial token could not be refreshed

    Example:
        async def list_repos(token: str) -> httpx.Response:
            async with httpx.AsyncClient() as client:
                return await client.get(
                    "https://api.github.com/user/repos",
                    headers={"Authorization": f"Bearer {token}"}
                )

        response = await with_oauth_retry(
            service=token_service,
            user_id="alice",
            provider="github",
            request_func=list_repos,
        )
    """
    access_token = await service.get_access_token(user_id, provider)

    # Make the initial request
    response = await request_func(access_token)

    # If not 401, return the response as-is
    if response.status_code != 401:
        return response

    logger.info(
        "Received 401 from %s, attempting token refresh for user %s",
        provider,
        user_id,
    )

    try:
        new_access_token = await service.force_refresh(user_id, provider)
    except (ReauthorizationRequired, TransientFailure) as e:
        logger.warning(
            "Token refresh failed for %s user %s, returning 401 (%s)",
            provider,
            user_id,
            type(e).__name__,
        )
        return response

    logger.info(
        "Token refreshed for %s user %s, retrying request",
        provider,
        user_id,
    )

    # Retry with new token (only once)
    return await request_func(new_access_token)


async def make_authorized_request(
    *,
    service: "TokenService",
    user_id: str,
    provider: str,
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make an authenticated HTTP request with automatic retry on 401.

    This is a convenience wrapper around with_oauth_retry that handles
    the httpx request creation.

    Args:
        service: Token service
        user_id: User ID
        provider: Provider identifier
        method: HTTP method (GET, POST, etc.)
        url: URL to request
        headers: Additional headers (Authorization will be added)
        **kwargs: Additional arguments passed to httpx.request()

    Returns:
        httpx.Response

    Example:
        response = await make_authorized_request(
            service=token_service,
            user_id="alice",
            provider="github",
            method="GET",
            url="https://api.github.com/user",
        )
    """

    async def request_with_token(token: str) -> httpx.Response:
        request_headers = headers.copy() if headers else {}
        request_headers["Authorization"] = f"Bearer {token}"

        async with httpx.AsyncClient(timeout=service.settings.HTTP_TIMEOUT_SECONDS) as client:
            return await client.request(
                method=method,
                url=url,
                headers=request_headers,
                **kwargs,
            )

    return await with_oauth_retry(
        service=service,
        user_id=user_id,
        provider=provider,
        request_func=request_with_token,
    )
