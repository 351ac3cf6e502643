"""
Integration API routes for managing OAuth connections to external services.

Provides endpoints for:
- Listing user's integrations and configured providers
- Starting OAuth flows (single provider or provider group)
- Handling OAuth callbacks
- Validating and disconnecting integrations
"""

import logging
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from oauth_core.api.deps import CurrentUserId, TokenServiceDep
from oauth_core.core.config import settings
from oauth_core.core.exceptions import OAuthCoreError
from oauth_core.models import UserIntegrationPublic
from oauth_core.services.oauth_token import OAuthTokenError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


# Response models
class IntegrationsListResponse(BaseModel):
    """Response for listing integrations."""

    integrations: list[UserIntegrationPublic]
    count: int


class IntegrationStatusResponse(BaseModel):
    """Response for integration status check."""

    connected_services: list[str]
    expired_services: list[str]
    missing_services: list[str]


class ProviderInfo(BaseModel):
    name: str
    display_name: str
    group: str | None
    supports_pkce: bool
    supports_revocation: bool


class ProviderGroupInfo(BaseModel):
    name: str
    display_name: str
    members: list[str]


class ProvidersResponse(BaseModel):
    """Configured providers and groups."""

    providers: list[ProviderInfo]
    groups: list[ProviderGroupInfo]


class OAuthStartResponse(BaseModel):
    """Response for OAuth start endpoints."""

    authorization_url: str
    target: str


class ValidationResult(BaseModel):
    provider: str
    status: str
    message: str | None = None


class ValidateResponse(BaseModel):
    results: list[ValidationResult]


class DisconnectResponse(BaseModel):
    provider: str
    deactivated: bool
    revocation_status: str
    revocation_detail: str | None = None


@router.get("/", response_model=IntegrationsListResponse)
async def list_integrations(
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> IntegrationsListResponse:
    """
    List all active integrations for the current user.

    Returns a list of connected providers without exposing tokens.
    """
    integrations = service.list_integrations(user_id)
    public_integrations = [UserIntegrationPublic.from_integration(i) for i in integrations]

    return IntegrationsListResponse(
        integrations=public_integrations,
        count=len(public_integrations),
    )


@router.get("/status", response_model=IntegrationStatusResponse)
async def get_status(
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> IntegrationStatusResponse:
    """
    Get integration status for the current user.

    Returns lists of connected, expired, and missing providers.
    """
    result = service.integration_status(user_id)

    return IntegrationStatusResponse(
        connected_services=result["connected"],
        expired_services=result["expired"],
        missing_services=result["missing"],
    )


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers(
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> ProvidersResponse:
    """
    List configured OAuth providers and provider groups.
    """
    return ProvidersResponse(
        providers=[
            ProviderInfo(
                name=p.name,
                display_name=p.display_name,
                group=p.group,
                supports_pkce=p.use_pkce,
                supports_revocation=p.revocation is not None,
            )
            for p in service.registry.providers()
        ],
        groups=[
            ProviderGroupInfo(name=g.name, display_name=g.display_name, members=list(g.members))
            for g in service.registry.groups()
        ],
    )


@router.post("/oauth/start/group/{group}", response_model=OAuthStartResponse)
async def start_group_oauth_flow(
    group: str,
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> OAuthStartResponse:
    """
    Start one OAuth flow connecting every provider of a group.
    """
    auth_request = service.build_group_authorization_url(user_id, group)
    return OAuthStartResponse(authorization_url=auth_request.url, target=group)


@router.post("/oauth/start/{provider}", response_model=OAuthStartResponse)
async def start_oauth_flow(
    provider: str,
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> OAuthStartResponse:
    """
    Start OAuth flow for a provider.

    Returns the authorization URL to redirect the user to.
    State is stored in the database for multi-replica support.
    """
    auth_request = service.build_authorization_url(user_id, provider)
    return OAuthStartResponse(authorization_url=auth_request.url, target=provider)


def _build_settings_redirect(
    connected: list[str] | None = None,
    error_message: str | None = None,
) -> RedirectResponse:
    """Build redirect URL to frontend settings page with status."""
    base_url = settings.FRONTEND_HOST.rstrip("/")
    redirect_url = f"{base_url}/settings/integrations"

    params = {}
    if connected:
        params["connected"] = ",".join(connected)
    if error_message:
        params["error"] = error_message

    if params:
        redirect_url += "?" + urlencode(params)

    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/callback")
async def oauth_callback(
    service: TokenServiceDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """
    Handle OAuth callback from provider.

    This endpoint is called by the OAuth provider after user authorization.
    It does NOT require user authentication because:
    1. The request comes from a provider redirect, not the authenticated user
    2. The user is identified via the state nonce stored during oauth/start
    3. The nonce is cryptographically secure, single use and short lived

    Exchanges the authorization code for tokens and redirects to the settings page.
    Provider error details are logged, never shown to the user.
    """
    if error:
        logger.info("OAuth provider returned error: %s", error)
        return _build_settings_redirect(
            error_message="Authorization was cancelled or denied. Please reconnect this tool."
        )

    if not code or not state:
        return _build_settings_redirect(
            error_message="Missing authorization code or state. Please reconnect this tool."
        )

    try:
        integrations = await service.handle_callback(code, state)
    except OAuthCoreError as e:
        logger.warning("OAuth callback rejected: %s", e)
        return _build_settings_redirect(error_message=e.user_message)
    except OAuthTokenError as e:
        logger.warning("Token exchange failed: %s (status %s)", e.error, e.status_code)
        return _build_settings_redirect(
            error_message="The provider rejected the connection. Please reconnect this tool."
        )
    except httpx.HTTPError as e:
        logger.warning("Token exchange request failed: %s", type(e).__name__)
        return _build_settings_redirect(
            error_message="The tool is temporarily unavailable. Please try again later."
        )

    return _build_settings_redirect(connected=[i.service_name for i in integrations])


@router.post("/validate", response_model=ValidateResponse)
async def validate_integrations(
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> ValidateResponse:
    """
    Check every active integration, refreshing tokens where needed.
    """
    results = await service.validate_all(user_id)
    return ValidateResponse(
        results=[
            ValidationResult(provider=r.provider, status=r.status, message=r.message)
            for r in results
        ]
    )


@router.delete("/{provider}", response_model=DisconnectResponse)
async def disconnect_integration(
    provider: str,
    user_id: CurrentUserId,
    service: TokenServiceDep,
) -> DisconnectResponse:
    """
    Disconnect an integration.

    Revokes the token at the provider where supported, then deactivates the
    integration. Revocation failures do not prevent the disconnect.
    """
    result = await service.disconnect(user_id, provider)
    return DisconnectResponse(
        provider=result.provider,
        deactivated=result.deactivated,
        revocation_status=result.revocation.status.value,
        revocation_detail=result.revocation.detail,
    )
