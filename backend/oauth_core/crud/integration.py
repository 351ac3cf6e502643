"""
CRUD operations for UserIntegration model.

Handles creation, retrieval, refresh updates and soft-deactivation of OAuth
integrations. There is deliberately no delete operation: disconnected
integrations stay in the table with ``is_active = False``.
"""

from datetime import timedelta

from sqlmodel import Session, select

from oauth_core.core.encryption import get_vault
from oauth_core.models import UserIntegration
from oauth_core.models.base import utcnow


def get_user_integration(
    *,
    session: Session,
    user_id: str,
    service_name: str,
    include_inactive: bool = False,
) -> UserIntegration | None:
    """
    Get a user's integration for a specific provider.

    Args:
        session: Database session
        user_id: User ID
        service_name: Provider identifier (e.g., "github", "jira")
        include_inactive: Also return a disconnected integration

    Returns:
        UserIntegration if found, None otherwise
    """
    statement = select(UserIntegration).where(
        UserIntegration.user_id == user_id,
        UserIntegration.service_name == service_name,
    )
    if not include_inactive:
        statement = statement.where(UserIntegration.is_active == True)  # noqa: E712
    return session.exec(statement).first()


def get_user_integrations(
    *,
    session: Session,
    user_id: str,
    include_inactive: bool = False,
) -> list[UserIntegration]:
    """
    Get all integrations for a user, ordered by provider.

    Args:
        session: Database session
        user_id: User ID
        include_inactive: Also return disconnected integrations

    Returns:
        List of UserIntegration objects
    """
    statement = select(UserIntegration).where(UserIntegration.user_id == user_id)
    if not include_inactive:
        statement = statement.where(UserIntegration.is_active == True)  # noqa: E712
    statement = statement.order_by(UserIntegration.service_name)
    return list(session.exec(statement).all())


def list_integrations(*, session: Session) -> list[UserIntegration]:
    """Get every integration row (active and inactive), ordered by user and provider."""
    statement = select(UserIntegration).order_by(
        UserIntegration.user_id, UserIntegration.service_name
    )
    return list(session.exec(statement).all())


def create_or_update_integration(
    *,
    session: Session,
    user_id: str,
    service_name: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_in: int | None = None,
    scopes: str | None = None,
    token_type: str = "Bearer",
) -> UserIntegration:
    """
    Store the tokens of a newly granted authorization.

    If a row already exists for this user+provider (active or previously
    disconnected) it is overwritten and reactivated; otherwise a new row is
    created. The stored refresh token is replaced even when the new grant
    carries none, since it belonged to the previous grant.

    Args:
        session: Database session
        user_id: User ID
        service_name: Provider identifier
        access_token: OAuth access token (will be encrypted)
        refresh_token: OAuth refresh token (will be encrypted, optional)
        expires_in: Token lifetime in seconds (optional)
        scopes: Space-separated OAuth scopes (optional)
        token_type: Token type, typically "Bearer"

    Returns:
        Created or updated UserIntegration
    """
    vault = get_vault()
    now = utcnow()

    expires_at = None
    if expires_in is not None:
        expires_at = now + timedelta(seconds=int(expires_in))

    existing = get_user_integration(
        session=session,
        user_id=user_id,
        service_name=service_name,
        include_inactive=True,
    )

    if existing:
        existing.access_token_encrypted = vault.encrypt(access_token)
        existing.refresh_token_encrypted = (
            vault.encrypt(refresh_token) if refresh_token else None
        )
        existing.expires_at = expires_at
        existing.scopes = scopes
        existing.token_type = token_type
        existing.is_active = True
        existing.connected_at = now
        existing.last_refreshed_at = None
        existing.updated_at = now
        session.add(existing)
        session.commit()
        session.refresh(existing)
        return existing

    integration = UserIntegration(
        user_id=user_id,
        service_name=service_name,
        access_token_encrypted=vault.encrypt(access_token),
        refresh_token_encrypted=(
            vault.encrypt(refresh_token) if refresh_token else None
        ),
        expires_at=expires_at,
        scopes=scopes,
        token_type=token_type,
        connected_at=now,
    )
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return integration


def update_refreshed_tokens(
    *,
    session: Session,
    integration: UserIntegration,
    access_token: str,
    refresh_token: str | None = None,
    expires_in: int | None = None,
    scopes: str | None = None,
    token_type: str | None = None,
) -> UserIntegration:
    """
    Replace tokens in place after a successful refresh.

    Providers that do not rotate refresh tokens return none on refresh;
    the stored one is kept in that case. Scopes are only replaced when the
    provider reports them.

    Args:
        session: Database session
        integration: The integration being refreshed
        access_token: New access token (will be encrypted)
        refresh_token: New refresh token, if the provider rotated it
        expires_in: New token lifetime in seconds
        scopes: Granted scopes reported by the provider
        token_type: Token type reported by the provider

    Returns:
        Updated UserIntegration
    """
    vault = get_vault()
    now = utcnow()

    integration.access_token_encrypted = vault.encrypt(access_token)
    if refresh_token:
        integration.refresh_token_encrypted = vault.encrypt(refresh_token)
    integration.expires_at = (
        now + timedelta(seconds=int(expires_in)) if expires_in is not None else None
    )
    if scopes:
        integration.scopes = scopes
    if token_type:
        integration.token_type = token_type
    integration.last_refreshed_at = now
    integration.updated_at = now
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return integration


def set_refresh_token_ciphertext(
    *,
    session: Session,
    integration: UserIntegration,
    ciphertext: bytes | None,
) -> UserIntegration:
    """
    Overwrite the stored (already encrypted) refresh token.

    Used by the fault-injection command to corrupt and later restore a
    refresh token byte-for-byte.
    """
    integration.refresh_token_encrypted = ciphertext
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return integration


def deactivate_integration(
    *, session: Session, integration: UserIntegration
) -> UserIntegration:
    """
    Soft-delete an integration.

    The row and its encrypted tokens are kept so that the history of the
    connection stays inspectable; only ``is_active`` changes.

    Args:
        session: Database session
        integration: The integration to deactivate

    Returns:
        The deactivated UserIntegration
    """
    integration.is_active = False
    integration.updated_at = utcnow()
    session.add(integration)
    session.commit()
    session.refresh(integration)
    return integration


def get_decrypted_tokens(integration: UserIntegration) -> dict[str, str | None]:
    """
    Get decrypted tokens from an integration.

    Args:
        integration: UserIntegration object

    Returns:
        Dictionary with "access_token" and "refresh_token" keys

    Raises:
        cryptography.fernet.InvalidToken: If the stored ciphertext cannot be decrypted
    """
    vault = get_vault()

    access_token = vault.decrypt(integration.access_token_encrypted)
    refresh_token = None
    if integration.refresh_token_encrypted is not None:
        refresh_token = vault.decrypt(integration.refresh_token_encrypted)

    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": integration.token_type,
        "expires_at": integration.expires_at.isoformat() if integration.expires_at else None,
        "scopes": integration.scopes,
    }


def get_integration_status(
    *,
    session: Session,
    user_id: str,
    available_services: list[str],
) -> dict[str, list[str]]:
    """
    Get the status of all integrations for a user.

    Categorizes providers into connected, expired, and missing. An expired
    integration that still holds a refresh token counts as connected, since
    the next token request will refresh it.

    Args:
        session: Database session
        user_id: User ID
        available_services: List of all configured provider ids

    Returns:
        Dictionary with keys: "connected", "expired", "missing"
    """
    integrations = get_user_integrations(session=session, user_id=user_id)

    integration_map = {i.service_name: i for i in integrations}

    connected: list[str] = []
    expired: list[str] = []
    missing: list[str] = []

    for service in available_services:
        integration = integration_map.get(service)
        if integration is None:
            missing.append(service)
        elif integration.is_expired() and integration.refresh_token_encrypted is None:
            expired.append(service)
        else:
            connected.append(service)

    return {
        "connected": connected,
        "expired": expired,
        "missing": missing,
    }
