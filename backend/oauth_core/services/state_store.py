"""
Authorization state and PKCE verifier storage.

Nonces and verifiers live in the database so that any replica can handle a
callback. The value placed in the provider's ``state`` parameter is an
opaque base64url-encoded JSON envelope carrying the nonce and the target;
only the nonce is trusted, everything else is re-read from the stored row.
"""

import base64
import binascii
import json
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable

from sqlmodel import Session

from oauth_core.core.exceptions import InvalidStateError
from oauth_core.crud.oauth_state import (
    cleanup_expired_states_db,
    consume_oauth_state_db,
    store_oauth_state_db,
)
from oauth_core.crud.pkce_verifier import (
    cleanup_expired_verifiers_db,
    consume_pkce_verifier_db,
    store_pkce_verifier_db,
)
from oauth_core.models import STATE_EXPIRATION_MINUTES

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass(frozen=True)
class StateEnvelope:
    """Decoded content of the ``state`` query parameter."""

    nonce: str
    target: str
    is_group: bool = False


@dataclass(frozen=True)
class IssuedState:
    """A consumed authorization state, as stored when it was issued."""

    nonce: str
    user_id: str
    target: str
    is_group: bool
    redirect_uri: str


def encode_state(nonce: str, target: str, is_group: bool = False) -> str:
    """Encode the state parameter sent to the provider."""
    payload = json.dumps({"n": nonce, "t": target, "g": is_group}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode()).rstrip(b"=").decode()


def decode_state(value: str) -> StateEnvelope:
    """
    Decode the state parameter returned by the provider.

    Raises:
        InvalidStateError: If the value is not a state this service issued
    """
    if not value:
        raise InvalidStateError("Missing state parameter")

    try:
        padded = value + "=" * (-len(value) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise InvalidStateError("Undecodable state parameter") from e

    if (
        not isinstance(payload, dict)
        or not isinstance(payload.get("n"), str)
        or not isinstance(payload.get("t"), str)
    ):
        raise InvalidStateError("Malformed state parameter")

    return StateEnvelope(
        nonce=payload["n"],
        target=payload["t"],
        is_group=bool(payload.get("g", False)),
    )


class StateStore:
    """
    Single-use authorization nonces and PKCE verifiers with a TTL.

    Args:
        session_factory: Callable returning a database session context manager
        ttl_minutes: Lifetime of nonces and verifiers
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ttl_minutes: int = STATE_EXPIRATION_MINUTES,
    ):
        self._session_factory = session_factory
        self.ttl_minutes = ttl_minutes

    def issue_state(
        self,
        *,
        nonce: str,
        user_id: str,
        target: str,
        redirect_uri: str,
        is_group: bool = False,
    ) -> None:
        with self._session_factory() as session:
            store_oauth_state_db(
                session=session,
                state=nonce,
                user_id=user_id,
                target=target,
                redirect_uri=redirect_uri,
                is_group=is_group,
            )

    def consume_state(self, nonce: str) -> IssuedState:
        """
        Consume a nonce exactly once.

        Raises:
            InvalidStateError: If the nonce is unknown, expired or already used
        """
        with self._session_factory() as session:
            oauth_state = consume_oauth_state_db(
                session=session, state=nonce, ttl_minutes=self.ttl_minutes
            )
            if oauth_state is None:
                raise InvalidStateError("Authorization state is unknown, expired or already used")
            return IssuedState(
                nonce=oauth_state.state,
                user_id=oauth_state.user_id,
                target=oauth_state.target,
                is_group=oauth_state.is_group,
                redirect_uri=oauth_state.redirect_uri,
            )

    def store_verifier(self, nonce: str, code_verifier: str) -> None:
        with self._session_factory() as session:
            store_pkce_verifier_db(session=session, state=nonce, code_verifier=code_verifier)

    def consume_verifier(self, nonce: str) -> str | None:
        """Take the verifier of a nonce, or None when the flow had no PKCE."""
        with self._session_factory() as session:
            return consume_pkce_verifier_db(
                session=session, state=nonce, ttl_minutes=self.ttl_minutes
            )

    def sweep(self) -> dict[str, int]:
        """
        Remove expired nonces and verifiers.

        Returns:
            Number of removed rows per kind
        """
        with self._session_factory() as session:
            states = cleanup_expired_states_db(session=session, ttl_minutes=self.ttl_minutes)
            verifiers = cleanup_expired_verifiers_db(
                session=session, ttl_minutes=self.ttl_minutes
            )
        if states or verifiers:
            logger.info(
                "Swept %d expired OAuth states and %d PKCE verifiers", states, verifiers
            )
        return {"states": states, "verifiers": verifiers}
