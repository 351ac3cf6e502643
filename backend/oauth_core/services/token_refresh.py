"""
Token refresh service for maintaining valid OAuth tokens.

Hands out access tokens and refreshes them proactively shortly before they
expire, so callers never see an expired token.

Includes protection against:
- Duplicate refreshes in one process: concurrent callers for the same
  (user, provider) share one in-flight refresh task
- Duplicate refreshes across processes: a pluggable lock backend
  (see refresh_locks.py) guards the provider call
- Provider overload: refreshes are throttled per token endpoint host and
  transient failures are retried with jittered exponential backoff
"""

import asyncio
import logging
import random
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from cryptography.fernet import InvalidToken

from oauth_core.core.exceptions import (
    IntegrationNotFoundError,
    LockContentionError,
    ReauthorizationRequired,
    TransientFailure,
    UnknownProviderError,
)
from oauth_core.crud.audit_log import record_audit_event
from oauth_core.crud.integration import (
    get_decrypted_tokens,
    get_user_integration,
    get_user_integrations,
    update_refreshed_tokens,
)
from oauth_core.models import IntegrationAction, UserIntegration
from oauth_core.services.oauth_token import OAuthTokenError, refresh_access_token
from oauth_core.services.protocols import RefreshLockBackend
from oauth_core.services.providers import ProviderConfig, ProviderRegistry
from oauth_core.services.state_store import SessionFactory

logger = logging.getLogger(__name__)

# Default refresh threshold (5 minutes before expiry)
DEFAULT_REFRESH_MARGIN_MINUTES = 5

# Statuses whose refresh rejection means the grant is gone for good
PERMANENT_STATUSES = frozenset({400, 401})


class ValidationStatus:
    VALID = "valid"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class IntegrationValidation:
    """Result of checking one integration in validate_all."""

    provider: str
    status: str
    message: str | None = None


def _is_retryable(status_code: int | None) -> bool:
    return status_code is None or status_code == 429 or status_code >= 500


class RefreshCoordinator:
    """
    Single-flight token refresh for many users and providers.

    Args:
        registry: Configured providers
        session_factory: Callable returning a database session context manager
        lock_backend: Cross-process lock (LocalRefreshLock or PostgresAdvisoryLock)
        http_client: Shared HTTP client; short-lived clients are used if None
        margin_minutes: Refresh tokens expiring within this many minutes
        max_attempts: Provider calls per refresh before giving up on transient errors
        backoff_base: First retry delay in seconds (before jitter)
        backoff_multiplier: Growth factor of the retry delay
        retry_after_max: Upper bound applied to provider Retry-After values
        max_concurrent_per_host: In-flight refresh calls per token endpoint host
        validate_concurrency: Integrations checked at once by validate_all
        timeout: HTTP timeout in seconds
        contention_wait: Seconds to wait before re-reading when another
            process holds the lock
        contention_max_rereads: How many times to re-read before giving up
        sleep: Awaitable sleep, replaceable in tests
        rng: Random source for jitter
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        session_factory: SessionFactory,
        lock_backend: RefreshLockBackend,
        http_client: httpx.AsyncClient | None = None,
        margin_minutes: int = DEFAULT_REFRESH_MARGIN_MINUTES,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_multiplier: float = 4.0,
        retry_after_max: float = 60.0,
        max_concurrent_per_host: int = 10,
        validate_concurrency: int = 3,
        timeout: float = 30.0,
        contention_wait: float = 2.0,
        contention_max_rereads: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._registry = registry
        self._session_factory = session_factory
        self._lock_backend = lock_backend
        self._http_client = http_client
        self.margin_minutes = margin_minutes
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self.retry_after_max = retry_after_max
        self.max_concurrent_per_host = max_concurrent_per_host
        self.validate_concurrency = validate_concurrency
        self.timeout = timeout
        self.contention_wait = contention_wait
        self.contention_max_rereads = contention_max_rereads
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._leases: dict[tuple[str, str], asyncio.Task] = {}
        self._throttles: dict[str, asyncio.Semaphore] = {}
        self._grant_locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_access_token(self, user_id: str, provider: str) -> str:
        """
        Get a valid access token, refreshing it first if it is about to expire.

        Args:
            user_id: Owner of the integration
            provider: Provider identifier

        Returns:
            Decrypted access token

        Raises:
            UnknownProviderError: Provider not configured
            IntegrationNotFoundError: No active integration
            ReauthorizationRequired: Grant revoked/expired or token undecryptable
            TransientFailure: Provider unavailable after retries
        """
        self._registry.get(provider)

        with self._session_factory() as session:
            integration = self._load(session, user_id, provider)
            if not self.needs_refresh(integration):
                return self._decrypt_access_token(integration)
            if integration.refresh_token_encrypted is None:
                raise ReauthorizationRequired(
                    f"{provider} token expired and no refresh token is stored",
                    provider=provider,
                )

        return await self._refresh_single_flight(user_id, provider, force=False)

    async def force_refresh(self, user_id: str, provider: str) -> str:
        """
        Refresh the token now regardless of its expiry.

        Shares the single-flight lease and lock with get_access_token.
        """
        self._registry.get(provider)
        with self._session_factory() as session:
            self._load(session, user_id, provider)
        return await self._refresh_single_flight(user_id, provider, force=True)

    async def validate_all(self, user_id: str) -> list[IntegrationValidation]:
        """
        Check every active integration of a user, refreshing where needed.

        At most ``validate_concurrency`` integrations are checked at once.

        Returns:
            One IntegrationValidation per active integration, ordered by provider
        """
        with self._session_factory() as session:
            providers = [
                i.service_name for i in get_user_integrations(session=session, user_id=user_id)
            ]

        semaphore = asyncio.Semaphore(self.validate_concurrency)

        async def check(provider: str) -> IntegrationValidation:
            async with semaphore:
                try:
                    await self.get_access_token(user_id, provider)
                except (ReauthorizationRequired, UnknownProviderError) as e:
                    return IntegrationValidation(
                        provider, ValidationStatus.REAUTHORIZATION_REQUIRED, e.user_message
                    )
                except TransientFailure as e:
                    return IntegrationValidation(
                        provider, ValidationStatus.TRANSIENT_FAILURE, e.user_message
                    )
                return IntegrationValidation(provider, ValidationStatus.VALID)

        return list(await asyncio.gather(*(check(p) for p in providers)))

    def needs_refresh(self, integration: UserIntegration) -> bool:
        """Tokens without an expiry never need a refresh."""
        return integration.is_expiring_soon(minutes=self.margin_minutes)

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """
        Delay before retry number ``attempt`` (1-based).

        A provider supplied Retry-After wins over the computed backoff.
        """
        if retry_after is not None:
            return min(retry_after, self.retry_after_max)
        base = self.backoff_base * self.backoff_multiplier ** (attempt - 1)
        return base * self._rng.uniform(0.5, 1.5)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, session, user_id: str, provider: str) -> UserIntegration:
        integration = get_user_integration(
            session=session, user_id=user_id, service_name=provider
        )
        if integration is None:
            raise IntegrationNotFoundError(user_id, provider)
        return integration

    def _decrypt_access_token(self, integration: UserIntegration) -> str:
        try:
            return get_decrypted_tokens(integration)["access_token"]
        except InvalidToken as e:
            logger.error(
                "Failed to decrypt token for %s user %s (encryption key mismatch)",
                integration.service_name,
                integration.user_id,
            )
            raise ReauthorizationRequired(
                f"Cannot decrypt stored {integration.service_name} token",
                provider=integration.service_name,
                error_code="undecryptable_token",
            ) from e

    async def _refresh_single_flight(self, user_id: str, provider: str, *, force: bool) -> str:
        key = (user_id, provider)
        task = self._leases.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh_with_lock(user_id, provider, force=force))
            self._leases[key] = task
            task.add_done_callback(lambda done, key=key: self._release_lease(key, done))
        else:
            logger.debug("Joining in-flight refresh for %s user %s", provider, user_id)
        # A cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def _release_lease(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._leases.get(key) is task:
            del self._leases[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves
            task.exception()

    def _throttle(self, host: str) -> asyncio.Semaphore:
        throttle = self._throttles.get(host)
        if throttle is None:
            throttle = asyncio.Semaphore(self.max_concurrent_per_host)
            self._throttles[host] = throttle
        return throttle

    def _grant_lock(self, user_id: str, grant: str) -> asyncio.Lock:
        """In-process lock shared by every member of a group grant."""
        key = (user_id, grant)
        lock = self._grant_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._grant_locks[key] = lock
        return lock

    async def _refresh_with_lock(self, user_id: str, provider: str, *, force: bool) -> str:
        config = self._registry.get(provider)
        grant = config.group or provider

        # Lock order: host throttle, grant, cross-process
        async with self._throttle(config.token_host), self._grant_lock(
            user_id, grant
        ), self._lock_backend.hold(user_id, grant) as acquired:
            if not acquired:
                return await self._await_peer_refresh(user_id, provider)

            with self._session_factory() as session:
                integration = self._load(session, user_id, provider)
                if not force and not self.needs_refresh(integration):
                    logger.info(
                        "Token for %s user %s was refreshed by another process",
                        provider,
                        user_id,
                    )
                    return self._decrypt_access_token(integration)
                refresh_token = self._decrypt_refresh_token(integration)

            try:
                tokens = await self._call_with_retry(config, refresh_token)
            except ReauthorizationRequired as e:
                with self._session_factory() as session:
                    record_audit_event(
                        session=session,
                        user_id=user_id,
                        service_name=provider,
                        action=IntegrationAction.REFRESH_FAILED,
                        success=False,
                        detail=e.error_code,
                    )
                raise

            with self._session_factory() as session:
                integration = self._load(session, user_id, provider)
                update_refreshed_tokens(
                    session=session,
                    integration=integration,
                    access_token=tokens["access_token"],
                    refresh_token=tokens.get("refresh_token"),
                    expires_in=tokens.get("expires_in"),
                    scopes=tokens.get("scope"),
                    token_type=tokens.get("token_type"),
                )
                for sibling in self._grant_siblings(session, integration, config, refresh_token):
                    update_refreshed_tokens(
                        session=session,
                        integration=sibling,
                        access_token=tokens["access_token"],
                        refresh_token=tokens.get("refresh_token"),
                        expires_in=tokens.get("expires_in"),
                        token_type=tokens.get("token_type"),
                    )
                    record_audit_event(
                        session=session,
                        user_id=user_id,
                        service_name=sibling.service_name,
                        action=IntegrationAction.TOKEN_REFRESHED,
                        detail=f"shared grant refreshed via {provider}",
                    )
                record_audit_event(
                    session=session,
                    user_id=user_id,
                    service_name=provider,
                    action=IntegrationAction.TOKEN_REFRESHED,
                )

            logger.info("Successfully refreshed token for %s user %s", provider, user_id)
            return tokens["access_token"]

    def _grant_siblings(
        self,
        session,
        integration: UserIntegration,
        config: ProviderConfig,
        refresh_token: str,
    ) -> list[UserIntegration]:
        """
        Other active group members connected with the same grant.

        A group consent stores one refresh token on every member. Providers
        that rotate refresh tokens invalidate it on use, so the members still
        holding the token that was just spent must receive the new tokens.
        """
        if config.group is None:
            return []
        members = {m.name for m in self._registry.members(config.group)} - {config.name}
        siblings = []
        for candidate in get_user_integrations(session=session, user_id=integration.user_id):
            if candidate.service_name not in members or candidate.refresh_token_encrypted is None:
                continue
            try:
                shared = get_decrypted_tokens(candidate)["refresh_token"] == refresh_token
            except InvalidToken:
                continue
            if shared:
                siblings.append(candidate)
        return siblings

    def _decrypt_refresh_token(self, integration: UserIntegration) -> str:
        if integration.refresh_token_encrypted is None:
            raise ReauthorizationRequired(
                f"No refresh token stored for {integration.service_name}",
                provider=integration.service_name,
                error_code="missing_refresh_token",
            )
        try:
            refresh_token = get_decrypted_tokens(integration)["refresh_token"]
        except InvalidToken as e:
            logger.error(
                "Failed to decrypt refresh token for %s user %s",
                integration.service_name,
                integration.user_id,
            )
            raise ReauthorizationRequired(
                f"Cannot decrypt stored {integration.service_name} refresh token",
                provider=integration.service_name,
                error_code="undecryptable_token",
            ) from e
        return refresh_token

    async def _await_peer_refresh(self, user_id: str, provider: str) -> str:
        for _ in range(self.contention_max_rereads):
            logger.info(
                "Refresh lock for %s user %s held elsewhere, re-reading in %.1fs",
                provider,
                user_id,
                self.contention_wait,
            )
            await self._sleep(self.contention_wait)
            with self._session_factory() as session:
                integration = self._load(session, user_id, provider)
                if not self.needs_refresh(integration):
                    return self._decrypt_access_token(integration)

        raise LockContentionError(
            f"Refresh of {provider} for user {user_id} is in progress elsewhere",
            provider=provider,
        )

    async def _call_with_retry(self, config: ProviderConfig, refresh_token: str) -> dict:
        for attempt in range(1, self.max_attempts + 1):
            retry_after = None
            try:
                return await refresh_access_token(
                    config,
                    refresh_token,
                    client=self._http_client,
                    timeout=self.timeout,
                )
            except OAuthTokenError as e:
                if e.status_code in PERMANENT_STATUSES:
                    logger.warning(
                        "Refresh for %s permanently rejected (%s): %s",
                        config.name,
                        e.status_code,
                        e.error,
                    )
                    raise ReauthorizationRequired(
                        f"{config.name} rejected the refresh token: {e.error}",
                        provider=config.name,
                        error_code=e.error,
                    ) from e
                if not _is_retryable(e.status_code):
                    raise TransientFailure(
                        f"{config.name} token endpoint returned {e.status_code}",
                        provider=config.name,
                        attempts=attempt,
                    ) from e
                retry_after = e.retry_after
                failure = f"HTTP {e.status_code}"
            except httpx.HTTPError as e:
                failure = type(e).__name__

            if attempt == self.max_attempts:
                logger.error(
                    "Refresh for %s failed after %d attempts (%s)",
                    config.name,
                    attempt,
                    failure,
                )
                break

            delay = self.backoff_delay(attempt, retry_after)
            logger.warning(
                "Refresh for %s failed (%s), attempt %d/%d, retrying in %.2fs",
                config.name,
                failure,
                attempt,
                self.max_attempts,
                delay,
            )
            await self._sleep(delay)

        raise TransientFailure(
            f"{config.name} token endpoint unavailable",
            provider=config.name,
            attempts=self.max_attempts,
        )
