"""
OAuth authorization code flow.

Builds provider authorization URLs (with PKCE where supported) and turns
the provider's callback into stored, encrypted integrations. State nonces
and PKCE verifiers are kept server-side in the database so that any
replica can complete a flow started on another.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from oauth_core.core.exceptions import InvalidStateError
from oauth_core.crud.audit_log import record_audit_event
from oauth_core.crud.integration import create_or_update_integration
from oauth_core.models import IntegrationAction, UserIntegration
from oauth_core.services.oauth_token import DEFAULT_TIMEOUT_SECONDS, exchange_code_for_tokens
from oauth_core.services.providers import ProviderConfig, ProviderRegistry
from oauth_core.services.state_store import (
    SessionFactory,
    StateStore,
    decode_state,
    encode_state,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Where to send the user, and the state value that URL carries."""

    url: str
    state: str


def generate_oauth_state() -> str:
    """
    Generate a cryptographically secure OAuth state nonce.

    Returns:
        URL-safe random string with sufficient entropy
    """
    return secrets.token_urlsafe(32)


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate PKCE code verifier and challenge pair.

    Following RFC 7636:
    - Code verifier: 43-128 character random string
    - Code challenge: Base64url(SHA256(code_verifier))

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    # Generate code verifier (43-128 chars, we use 64)
    code_verifier = secrets.token_urlsafe(48)  # 64 chars

    # Generate code challenge using S256
    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

    return code_verifier, code_challenge


class AuthorizationFlowManager:
    """
    Starts and completes OAuth authorization code flows.

    Args:
        registry: Configured providers and groups
        state_store: Nonce and PKCE verifier storage
        session_factory: Callable returning a database session context manager
        redirect_uri: Callback URL registered with every provider
        http_client: Shared HTTP client; short-lived clients are used if None
        timeout: HTTP timeout in seconds
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        state_store: StateStore,
        session_factory: SessionFactory,
        redirect_uri: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._registry = registry
        self._states = state_store
        self._session_factory = session_factory
        self.redirect_uri = redirect_uri
        self._http_client = http_client
        self.timeout = timeout

    def build_authorization_url(self, user_id: str, provider: str) -> AuthorizationRequest:
        """
        Build the authorization URL for a single provider.

        Args:
            user_id: User starting the flow
            provider: Provider identifier

        Returns:
            AuthorizationRequest with the URL and the encoded state

        Raises:
            UnknownProviderError: If the provider is unknown or not configured
        """
        config = self._registry.get(provider)
        return self._start(user_id, config, is_group=False)

    def build_group_authorization_url(self, user_id: str, group: str) -> AuthorizationRequest:
        """
        Build one authorization URL covering every provider of a group.

        Raises:
            UnknownProviderError: If the group is unknown or has no configured member
        """
        config = self._registry.group_config(group)
        return self._start(user_id, config, is_group=True)

    def _start(self, user_id: str, config: ProviderConfig, *, is_group: bool) -> AuthorizationRequest:
        nonce = generate_oauth_state()
        state = encode_state(nonce, config.name, is_group)

        params = {
            "client_id": config.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            config.scope_param: config.scope_string,
            "state": state,
        }

        code_verifier = None
        if config.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        # Provider specific parameters (offline access, consent prompt, ...)
        params.update(config.extra_params)

        self._states.issue_state(
            nonce=nonce,
            user_id=user_id,
            target=config.name,
            redirect_uri=self.redirect_uri,
            is_group=is_group,
        )
        if code_verifier is not None:
            self._states.store_verifier(nonce, code_verifier)

        logger.info(
            "Started OAuth flow for %s%s (user %s, pkce=%s)",
            "group " if is_group else "",
            config.name,
            user_id,
            config.use_pkce,
        )
        return AuthorizationRequest(
            url=f"{config.authorization_url}?{urlencode(params)}",
            state=state,
        )

    async def handle_callback(self, code: str, state: str) -> list[UserIntegration]:
        """
        Complete a flow: validate state, exchange the code, store the tokens.

        Args:
            code: Authorization code from the provider redirect
            state: The ``state`` query parameter from the provider redirect

        Returns:
            The stored integrations: one for a provider, one per member for a group

        Raises:
            InvalidStateError: If the state is undecodable, unknown, expired or reused
            UnknownProviderError: If the target is no longer configured
            OAuthTokenError: If the provider rejects the code
            httpx.HTTPError: On network failures (the code is not retried)
        """
        envelope = decode_state(state)
        issued = self._states.consume_state(envelope.nonce)

        if issued.target != envelope.target or issued.is_group != envelope.is_group:
            raise InvalidStateError("Authorization state does not match the issued request")

        code_verifier = self._states.consume_verifier(issued.nonce)

        if issued.is_group:
            config = self._registry.group_config(issued.target)
            members = self._registry.members(issued.target)
        else:
            config = self._registry.get(issued.target)
            members = [config]

        if config.use_pkce and code_verifier is None:
            raise InvalidStateError(f"PKCE verifier for {config.name} is missing or expired")

        tokens = await exchange_code_for_tokens(
            config,
            code,
            issued.redirect_uri,
            code_verifier,
            client=self._http_client,
            timeout=self.timeout,
        )

        integrations: list[UserIntegration] = []
        with self._session_factory() as session:
            for member in members:
                integration = create_or_update_integration(
                    session=session,
                    user_id=issued.user_id,
                    service_name=member.name,
                    access_token=tokens["access_token"],
                    refresh_token=tokens.get("refresh_token"),
                    expires_in=tokens.get("expires_in"),
                    scopes=tokens.get("scope") or member.scope_string,
                    token_type=tokens.get("token_type") or "Bearer",
                )
                record_audit_event(
                    session=session,
                    user_id=issued.user_id,
                    service_name=member.name,
                    action=IntegrationAction.CONNECT,
                )
                integrations.append(integration)
            # Later commits expire earlier rows; reload before the session closes
            for integration in integrations:
                session.refresh(integration)

        logger.info(
            "Connected %s for user %s",
            ", ".join(m.name for m in members),
            issued.user_id,
        )
        return integrations
