"""
Token revocation and integration disconnect.

Revocation is best effort: the provider is asked to invalidate the access
token when it offers an endpoint, but the local integration is deactivated
no matter what the provider answers.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import httpx
from cryptography.fernet import InvalidToken

from oauth_core.core.encryption import get_vault
from oauth_core.core.exceptions import IntegrationNotFoundError
from oauth_core.crud.audit_log import record_audit_event
from oauth_core.crud.integration import (
    deactivate_integration,
    get_user_integration,
)
from oauth_core.models import IntegrationAction
from oauth_core.services.oauth_token import DEFAULT_TIMEOUT_SECONDS, parse_retry_after
from oauth_core.services.providers import ProviderConfig, ProviderRegistry
from oauth_core.services.state_store import SessionFactory

logger = logging.getLogger(__name__)


class RevocationStatus(str, Enum):
    REVOKED = "revoked"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


@dataclass(frozen=True)
class RevocationOutcome:
    status: RevocationStatus
    detail: str | None = None

    @property
    def revoked(self) -> bool:
        return self.status is RevocationStatus.REVOKED


@dataclass(frozen=True)
class DisconnectResult:
    provider: str
    deactivated: bool
    revocation: RevocationOutcome


def _default_backoff(attempt: int, retry_after: float | None = None) -> float:
    if retry_after is not None:
        return retry_after
    return float(2 ** (attempt - 1))


async def revoke_token(
    config: ProviderConfig,
    access_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_attempts: int = 1,
    backoff: Callable[[int, float | None], float] = _default_backoff,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RevocationOutcome:
    """
    Ask the provider to revoke an access token.

    Rate limits, 5xx answers and network errors are retried up to
    ``max_attempts`` times. Never raises for provider or network failures;
    they are reported in the returned outcome.

    Args:
        config: Provider configuration with its revocation descriptor
        access_token: Decrypted access token to revoke
        client: Optional shared HTTP client
        timeout: Request timeout in seconds
        max_attempts: Total attempts for retryable failures
        backoff: Delay before retry ``attempt`` given an optional Retry-After
        sleep: Awaitable sleep between attempts

    Returns:
        RevocationOutcome
    """
    revocation = config.revocation
    if revocation is None:
        return RevocationOutcome(RevocationStatus.UNSUPPORTED, "no_revocation_endpoint")

    url = revocation.url.format(client_id=config.client_id)
    headers = {"Accept": "application/json"}
    auth = None
    kwargs: dict = {}

    if revocation.client_auth == "basic":
        auth = httpx.BasicAuth(config.client_id or "", config.client_secret or "")
    elif revocation.client_auth == "bearer":
        headers["Authorization"] = f"Bearer {access_token}"

    if revocation.token_location == "form":
        kwargs["data"] = {revocation.token_param: access_token}
    elif revocation.token_location == "json":
        kwargs["json"] = {revocation.token_param: access_token}

    async def send(http: httpx.AsyncClient) -> RevocationOutcome:
        for attempt in range(1, max_attempts + 1):
            retry_after = None
            try:
                response = await http.request(
                    revocation.method, url, headers=headers, auth=auth, **kwargs
                )
            except httpx.HTTPError as e:
                failure = RevocationOutcome(
                    RevocationStatus.FAILED, f"network_error:{type(e).__name__}"
                )
            else:
                if response.is_success:
                    return _check_response(config, response)
                failure = RevocationOutcome(
                    RevocationStatus.FAILED, f"http_{response.status_code}"
                )
                if response.status_code != 429 and response.status_code < 500:
                    logger.warning(
                        "Revocation at %s returned HTTP %d",
                        config.name,
                        response.status_code,
                    )
                    return failure
                retry_after = parse_retry_after(response.headers.get("Retry-After"))

            if attempt == max_attempts:
                logger.warning(
                    "Revocation at %s failed after %d attempts (%s)",
                    config.name,
                    attempt,
                    failure.detail,
                )
                return failure

            delay = backoff(attempt, retry_after)
            logger.info(
                "Revocation at %s failed (%s), attempt %d/%d, retrying in %.2fs",
                config.name,
                failure.detail,
                attempt,
                max_attempts,
                delay,
            )
            await sleep(delay)
        return RevocationOutcome(RevocationStatus.FAILED, "no_attempts")

    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as short_lived:
            return await send(short_lived)
    return await send(client)


def _check_response(config: ProviderConfig, response: httpx.Response) -> RevocationOutcome:
    if config.revocation.ok_flag:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or body.get("ok") is not True:
            error = body.get("error") if isinstance(body, dict) else None
            logger.warning("Revocation at %s reported failure: %s", config.name, error)
            return RevocationOutcome(RevocationStatus.FAILED, str(error or "not_ok"))

    return RevocationOutcome(RevocationStatus.REVOKED)


class RevocationManager:
    """
    Disconnects integrations: revoke at the provider, then deactivate locally.

    Args:
        registry: Configured providers
        session_factory: Callable returning a database session context manager
        http_client: Shared HTTP client; short-lived clients are used if None
        timeout: HTTP timeout in seconds
        max_attempts: Total revocation attempts for retryable failures
        backoff: Delay before retry ``attempt`` given an optional Retry-After
        sleep: Awaitable sleep between attempts
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        session_factory: SessionFactory,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = 1,
        backoff: Callable[[int, float | None], float] = _default_backoff,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._session_factory = session_factory
        self._http_client = http_client
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._backoff = backoff
        self._sleep = sleep

    async def disconnect(self, user_id: str, provider: str) -> DisconnectResult:
        """
        Disconnect a user's integration.

        Args:
            user_id: Owner of the integration
            provider: Provider identifier

        Returns:
            DisconnectResult with the revocation outcome

        Raises:
            IntegrationNotFoundError: If there is no active integration
        """
        with self._session_factory() as session:
            integration = get_user_integration(
                session=session, user_id=user_id, service_name=provider
            )
            if integration is None:
                raise IntegrationNotFoundError(user_id, provider)
            ciphertext = integration.access_token_encrypted

        # A provider removed from configuration can still be disconnected
        config = self._registry.get(provider) if provider in self._registry else None

        outcome = RevocationOutcome(RevocationStatus.FAILED, "revocation_interrupted")
        try:
            outcome = await self._revoke(config, ciphertext, user_id)
        finally:
            with self._session_factory() as session:
                current = get_user_integration(
                    session=session, user_id=user_id, service_name=provider
                )
                if current is not None:
                    deactivate_integration(session=session, integration=current)
                if config is not None and config.revocation is not None:
                    record_audit_event(
                        session=session,
                        user_id=user_id,
                        service_name=provider,
                        action=IntegrationAction.REVOKE,
                        success=outcome.revoked,
                        detail=outcome.detail,
                    )
                record_audit_event(
                    session=session,
                    user_id=user_id,
                    service_name=provider,
                    action=IntegrationAction.DISCONNECT,
                    detail=outcome.status.value,
                )

        logger.info(
            "Disconnected %s for user %s (revocation: %s)",
            provider,
            user_id,
            outcome.status.value,
        )
        return DisconnectResult(provider=provider, deactivated=True, revocation=outcome)

    async def _revoke(
        self, config: ProviderConfig | None, ciphertext: bytes, user_id: str
    ) -> RevocationOutcome:
        if config is None or config.revocation is None:
            return RevocationOutcome(RevocationStatus.UNSUPPORTED, "no_revocation_endpoint")
        try:
            access_token = get_vault().decrypt(ciphertext)
        except InvalidToken:
            logger.warning(
                "Cannot decrypt %s token of user %s, skipping revocation",
                config.name,
                user_id,
            )
            return RevocationOutcome(RevocationStatus.FAILED, "undecryptable_token")
        return await revoke_token(
            config,
            access_token,
            client=self._http_client,
            timeout=self.timeout,
            max_attempts=self.max_attempts,
            backoff=self._backoff,
            sleep=self._sleep,
        )
