"""
Token service: the single entry point to the OAuth token lifecycle.

Constructed once per process (FastAPI lifespan or CLI run) and injected
wherever tokens are needed. Construction validates configuration, so a
missing encryption key or half-configured provider fails at startup
rather than on the first user request.

Usage:
    service = TokenService.from_settings()
    request = service.build_authorization_url("alice", "github")
    ...
    token = await service.get_access_token("alice", "github")
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy import Engine

from oauth_core.core.config import Settings, settings as default_settings
from oauth_core.core.encryption import TokenVault, get_vault
from oauth_core.core.exceptions import IntegrationNotFoundError
from oauth_core.crud.integration import (
    get_integration_status,
    get_user_integration,
    get_user_integrations,
    list_integrations,
)
from oauth_core.models import UserIntegration
from oauth_core.models.base import as_utc, utcnow
from oauth_core.services.oauth_flow import AuthorizationFlowManager, AuthorizationRequest
from oauth_core.services.protocols import RefreshLockBackend
from oauth_core.services.providers import ProviderRegistry, build_provider_registry
from oauth_core.services.refresh_locks import build_lock_backend
from oauth_core.services.revocation import DisconnectResult, RevocationManager
from oauth_core.services.state_store import SessionFactory, StateStore
from oauth_core.services.token_refresh import IntegrationValidation, RefreshCoordinator

logger = logging.getLogger(__name__)


class TokenService:
    """
    Facade over provider registry, flow manager, refresh coordinator,
    revocation manager and state store.

    Args:
        settings: Application settings (tunables and redirect URI)
        registry: Configured providers
        session_factory: Callable returning a database session context manager
        lock_backend: Cross-process refresh lock
        vault: Token vault; only used to fail fast on a bad key here, the
            CRUD layer encrypts with the process-wide vault
        http_client: Shared HTTP client for all provider calls. One is
            created (and closed by aclose) when omitted.
        sleep: Awaitable sleep for retry backoff, replaceable in tests
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        *,
        settings: Settings,
        registry: ProviderRegistry,
        session_factory: SessionFactory,
        lock_backend: RefreshLockBackend,
        vault: TokenVault,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.vault = vault
        self.session_factory = session_factory

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS
        )

        self.state_store = StateStore(
            session_factory, ttl_minutes=settings.STATE_EXPIRATION_MINUTES
        )
        self.flow = AuthorizationFlowManager(
            registry=registry,
            state_store=self.state_store,
            session_factory=session_factory,
            redirect_uri=settings.oauth_redirect_uri,
            http_client=self.http_client,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        self.coordinator = RefreshCoordinator(
            registry=registry,
            session_factory=session_factory,
            lock_backend=lock_backend,
            http_client=self.http_client,
            margin_minutes=settings.REFRESH_MARGIN_MINUTES,
            max_attempts=settings.REFRESH_MAX_ATTEMPTS,
            backoff_base=settings.REFRESH_BACKOFF_BASE_SECONDS,
            backoff_multiplier=settings.REFRESH_BACKOFF_MULTIPLIER,
            retry_after_max=settings.RETRY_AFTER_MAX_SECONDS,
            max_concurrent_per_host=settings.PROVIDER_MAX_CONCURRENT_REFRESHES,
            validate_concurrency=settings.VALIDATE_ALL_CONCURRENCY,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            contention_wait=settings.LOCK_CONTENTION_WAIT_SECONDS,
            contention_max_rereads=settings.LOCK_CONTENTION_MAX_REREADS,
            sleep=sleep,
            rng=rng,
        )
        self.revocation = RevocationManager(
            registry=registry,
            session_factory=session_factory,
            http_client=self.http_client,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            max_attempts=settings.REFRESH_MAX_ATTEMPTS,
            backoff=self.coordinator.backoff_delay,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        app_settings: Settings | None = None,
        *,
        session_factory: SessionFactory | None = None,
        engine: Engine | None = None,
        **kwargs: Any,
    ) -> "TokenService":
        """
        Build the service from configuration.

        Raises:
            ConfigurationError: Missing/invalid encryption key, half-configured
                provider, or postgres locking on a non-PostgreSQL database
        """
        app_settings = app_settings or default_settings

        if session_factory is None or engine is None:
            from oauth_core.core import db

            session_factory = session_factory or db.get_session
            engine = engine or db.engine

        vault = get_vault()
        registry = build_provider_registry(app_settings)
        lock_backend = build_lock_backend(app_settings, engine)
        logger.info(
            "Token service ready (%d providers, %s refresh locks)",
            len(registry.names()),
            app_settings.REFRESH_LOCK_BACKEND,
        )
        return cls(
            settings=app_settings,
            registry=registry,
            session_factory=session_factory,
            lock_backend=lock_backend,
            vault=vault,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    # Authorization

    def build_authorization_url(self, user_id: str, provider: str) -> AuthorizationRequest:
        return self.flow.build_authorization_url(user_id, provider)

    def build_group_authorization_url(self, user_id: str, group: str) -> AuthorizationRequest:
        return self.flow.build_group_authorization_url(user_id, group)

    async def handle_callback(self, code: str, state: str) -> list[UserIntegration]:
        return await self.flow.handle_callback(code, state)

    # Tokens

    async def get_access_token(self, user_id: str, provider: str) -> str:
        return await self.coordinator.get_access_token(user_id, provider)

    async def force_refresh(self, user_id: str, provider: str) -> str:
        return await self.coordinator.force_refresh(user_id, provider)

    async def validate_all(self, user_id: str) -> list[IntegrationValidation]:
        return await self.coordinator.validate_all(user_id)

    # Lifecycle

    async def disconnect(self, user_id: str, provider: str) -> DisconnectResult:
        return await self.revocation.disconnect(user_id, provider)

    def sweep_expired_states(self) -> dict[str, int]:
        return self.state_store.sweep()

    # Introspection (never returns token material)

    def list_integrations(
        self,
        user_id: str | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[UserIntegration]:
        """
        List integrations of one user, or of every user when user_id is None.

        Listing every user always includes inactive rows.
        """
        with self.session_factory() as session:
            if user_id is None:
                return list_integrations(session=session)
            return get_user_integrations(
                session=session, user_id=user_id, include_inactive=include_inactive
            )

    def integration_status(self, user_id: str) -> dict[str, list[str]]:
        with self.session_factory() as session:
            return get_integration_status(
                session=session,
                user_id=user_id,
                available_services=self.registry.names(),
            )

    def inspect(self, user_id: str, provider: str) -> dict[str, Any]:
        """
        Describe one integration: lifecycle timestamps and token metadata.

        Raises:
            IntegrationNotFoundError: If the user never connected the provider
        """
        with self.session_factory() as session:
            integration = get_user_integration(
                session=session,
                user_id=user_id,
                service_name=provider,
                include_inactive=True,
            )
            if integration is None:
                raise IntegrationNotFoundError(user_id, provider)

            issued_at = integration.last_refreshed_at or integration.connected_at
            config = self.registry.get(provider) if provider in self.registry else None

            return {
                "user_id": integration.user_id,
                "provider": integration.service_name,
                "display_name": config.display_name if config else provider,
                "configured": config is not None,
                "is_active": integration.is_active,
                "connected_at": as_utc(integration.connected_at).isoformat(),
                "last_refreshed_at": (
                    as_utc(integration.last_refreshed_at).isoformat()
                    if integration.last_refreshed_at
                    else None
                ),
                "token_age_seconds": int((utcnow() - as_utc(issued_at)).total_seconds()),
                "expires_at": (
                    as_utc(integration.expires_at).isoformat() if integration.expires_at else None
                ),
                "expires_in_seconds": integration.expires_in_seconds(),
                "needs_refresh": self.coordinator.needs_refresh(integration),
                "has_refresh_token": integration.refresh_token_encrypted is not None,
                "token_type": integration.token_type,
                "scopes": integration.scopes,
                "supports_pkce": config.use_pkce if config else None,
                "supports_revocation": config.revocation is not None if config else None,
            }
