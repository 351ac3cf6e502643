"""
OAuth state cleanup service for removing abandoned authorization flows.

Provides both a synchronous sweep and an async background task that is
scheduled during application lifespan.
"""

import asyncio
import logging

from sqlmodel import Session

from oauth_core.crud.oauth_state import cleanup_expired_states_db
from oauth_core.crud.pkce_verifier import cleanup_expired_verifiers_db
from oauth_core.models import STATE_EXPIRATION_MINUTES
from oauth_core.services.state_store import SessionFactory

logger = logging.getLogger(__name__)

# Default cleanup interval in seconds (5 minutes)
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300


def sweep_expired_oauth_records(
    *,
    session: Session,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
) -> int:
    """
    Remove expired OAuth states and PKCE verifiers.

    Args:
        session: Database session
        ttl_minutes: Age after which states and verifiers expire

    Returns:
        Number of rows removed
    """
    states = cleanup_expired_states_db(session=session, ttl_minutes=ttl_minutes)
    verifiers = cleanup_expired_verifiers_db(session=session, ttl_minutes=ttl_minutes)
    return states + verifiers


async def run_cleanup_task(
    *,
    get_session: SessionFactory,
    interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ttl_minutes: int = STATE_EXPIRATION_MINUTES,
    stop_event: asyncio.Event | None = None,
) -> None:
    """
    Background task that periodically cleans up expired OAuth states.

    This task runs indefinitely until cancelled or stop_event is set.

    Args:
        get_session: Callable that returns a database session context manager
        interval_seconds: Time between cleanup runs
        ttl_minutes: Age after which states and verifiers expire
        stop_event: Optional event to signal task shutdown
    """
    logger.info(
        "OAuth state cleanup task started (interval: %d seconds)",
        interval_seconds,
    )

    while True:
        try:
            if stop_event is not None and stop_event.is_set():
                logger.info("OAuth state cleanup task stopping (stop event set)")
                break

            # Wait for the interval (or until stop_event is set)
            if stop_event is not None:
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=interval_seconds,
                    )
                    logger.info("OAuth state cleanup task stopping (stop event set)")
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(interval_seconds)

            with get_session() as session:
                count = sweep_expired_oauth_records(session=session, ttl_minutes=ttl_minutes)
                if count > 0:
                    logger.info("Cleaned up %d expired OAuth states and verifiers", count)
                else:
                    logger.debug("No expired OAuth states to clean up")

        except asyncio.CancelledError:
            logger.info("OAuth state cleanup task cancelled")
            raise
        except Exception:
            logger.exception("Error in OAuth state cleanup task")
            # Continue running despite errors
            await asyncio.sleep(interval_seconds)

    logger.info("OAuth state cleanup task stopped")
