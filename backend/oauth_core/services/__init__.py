"""
Services package for the OAuth token lifecycle.

Usage:
    from oauth_core.services import TokenService

    service = TokenService.from_settings()
    token = await service.get_access_token(user_id, "github")

Available services:
    - providers: provider registry built from settings
    - oauth_flow: authorization URLs and callback handling
    - token_refresh: single-flight refresh coordinator
    - revocation: best-effort revocation and disconnect
    - state_store / oauth_state_cleanup: nonce and PKCE verifier lifecycle
"""

from .oauth_token import OAuthTokenError
from .protocols import RefreshLockBackend
from .providers import ProviderConfig, ProviderRegistry, build_provider_registry
from .token_refresh import IntegrationValidation, RefreshCoordinator, ValidationStatus
from .revocation import DisconnectResult, RevocationOutcome, RevocationStatus
from .token_service import TokenService

__all__ = [
    # Protocols
    "RefreshLockBackend",
    # Providers
    "ProviderConfig",
    "ProviderRegistry",
    "build_provider_registry",
    # Token lifecycle
    "OAuthTokenError",
    "IntegrationValidation",
    "RefreshCoordinator",
    "ValidationStatus",
    "DisconnectResult",
    "RevocationOutcome",
    "RevocationStatus",
    "TokenService",
]
