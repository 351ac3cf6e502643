"""
CRUD operations for PKCEVerifier model.
"""

from datetime import timedelta

from sqlalchemy import delete
from sqlmodel import Session, select

from oauth_core.models import PKCEVerifier, STATE_EXPIRATION_MINUTES
from oauth_core.models.base import utcnow


def store_pkce_verifier_db(
    *,
    session: Session,
    state: str,
    code_verifier: str,
) -> PKCEVerifier:
    """
    Store a PKCE code verifier keyed by its authorization state nonce.

    Args:
        session: Database session
        state: State nonce of the authorization request
        code_verifier: The secret verifier

    Returns:
        Created PKCEVerifier
    """
    verifier = PKCEVerifier(state=state, code_verifier=code_verifier)
    session.add(verifier)
    session.commit()
    session.refresh(verifier)
    return verifier


def consume_pkce_verifier_db(
    *,
    session: Session,
    state: str,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
) -> str | None:
    """
    Retrieve and delete the verifier for a state nonce.

    Like state consumption, only the caller whose DELETE removed the row
    receives the verifier.

    Args:
        session: Database session
        state: State nonce of the authorization request
        ttl_minutes: Maximum accepted age of the verifier

    Returns:
        The code verifier, or None if missing, expired or consumed concurrently
    """
    verifier = session.get(PKCEVerifier, state, populate_existing=True)
    if verifier is None:
        return None

    expired = verifier.is_expired(minutes=ttl_minutes)
    code_verifier = verifier.code_verifier
    session.expunge(verifier)

    result = session.exec(delete(PKCEVerifier).where(PKCEVerifier.state == state))
    session.commit()

    if result.rowcount != 1 or expired:
        return None
    return code_verifier


def cleanup_expired_verifiers_db(
    *,
    session: Session,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
) -> int:
    """Remove verifiers of abandoned authorizations. Returns the number removed."""
    expiration_threshold = utcnow() - timedelta(minutes=ttl_minutes)

    statement = select(PKCEVerifier).where(
        PKCEVerifier.created_at < expiration_threshold
    )
    expired = session.exec(statement).all()

    for verifier in expired:
        session.delete(verifier)

    if expired:
        session.commit()

    return len(expired)
