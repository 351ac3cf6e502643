"""
CRUD operations for OAuthState model.

Handles creation, consumption, and cleanup of OAuth states
stored in the database for multi-replica support.
"""

from datetime import timedelta

from sqlalchemy import delete
from sqlmodel import Session, select

from oauth_core.models import OAuthState, STATE_EXPIRATION_MINUTES
from oauth_core.models.base import utcnow


def store_oauth_state_db(
    *,
    session: Session,
    state: str,
    user_id: str,
    target: str,
    redirect_uri: str,
    is_group: bool = False,
) -> OAuthState:
    """
    Store OAuth state in the database.

    Args:
        session: Database session
        state: Cryptographically secure state nonce
        user_id: ID of the user initiating the OAuth flow
        target: Provider or group identifier
        redirect_uri: The redirect URI for the OAuth callback
        is_group: Whether ``target`` names a provider group

    Returns:
        Created OAuthState object
    """
    oauth_state = OAuthState(
        state=state,
        user_id=user_id,
        target=target,
        is_group=is_group,
        redirect_uri=redirect_uri,
    )
    session.add(oauth_state)
    session.commit()
    session.refresh(oauth_state)
    return oauth_state


def consume_oauth_state_db(
    *,
    session: Session,
    state: str,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
) -> OAuthState | None:
    """
    Retrieve and remove OAuth state from the database.

    The row is deleted whether or not it is still valid, so a state can
    never be consumed twice. The DELETE is conditional on the row still
    existing: when two callbacks race for the same state, only the one
    whose DELETE removed the row gets it back.

    Args:
        session: Database session
        state: The state nonce to look up
        ttl_minutes: Maximum accepted age of the state

    Returns:
        OAuthState if valid, None if not found, expired or consumed concurrently
    """
    oauth_state = session.get(OAuthState, state, populate_existing=True)
    if oauth_state is None:
        return None

    expired = oauth_state.is_expired(minutes=ttl_minutes)
    session.expunge(oauth_state)

    result = session.exec(delete(OAuthState).where(OAuthState.state == state))
    session.commit()

    if result.rowcount != 1 or expired:
        return None
    return oauth_state


def cleanup_expired_states_db(
    *,
    session: Session,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
) -> int:
    """
    Remove all expired OAuth states from the database.

    Call this periodically to prevent database bloat from abandoned OAuth flows.

    Args:
        session: Database session
        ttl_minutes: Age after which a state is expired

    Returns:
        Number of expired states removed
    """
    expiration_threshold = utcnow() - timedelta(minutes=ttl_minutes)

    statement = select(OAuthState).where(OAuthState.created_at < expiration_threshold)
    expired_states = session.exec(statement).all()

    count = len(expired_states)
    for oauth_state in expired_states:
        session.delete(oauth_state)

    if count > 0:
        session.commit()

    return count
