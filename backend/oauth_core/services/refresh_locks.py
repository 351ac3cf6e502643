"""
Refresh lock backends.

The in-process lease in the refresh coordinator already guarantees a single
refresh per (user, provider) inside one process. These backends extend that
guarantee across processes.
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import Connection, Engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as SATimeoutError

from oauth_core.core.config import Settings
from oauth_core.core.exceptions import ConfigurationError, LockContentionError
from oauth_core.services.protocols import RefreshLockBackend

logger = logging.getLogger(__name__)


def lock_key(user_id: str, provider: str) -> int:
    """
    Derive the advisory lock key for a (user, provider) pair.

    First 8 bytes of SHA-256("user:provider") as a signed 64-bit integer,
    the argument type of pg_try_advisory_lock(bigint).
    """
    digest = hashlib.sha256(f"{user_id}:{provider}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class LocalRefreshLock:
    """Single-replica backend: the in-process lease is the only lock needed."""

    @asynccontextmanager
    async def hold(self, user_id: str, provider: str) -> AsyncIterator[bool]:
        yield True


class PostgresAdvisoryLock:
    """
    Multi-replica backend using PostgreSQL session-scoped advisory locks.

    The lock is taken with pg_try_advisory_lock on a dedicated pooled
    connection and released with pg_advisory_unlock on that same connection.
    If the process dies, PostgreSQL releases the lock with the session.

    Checking out the connection and running the lock statements happen in a
    worker thread, so an exhausted pool never blocks the event loop. Pool
    timeouts and connection errors surface as LockContentionError.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def _acquire(self, key: int) -> tuple[Connection, bool]:
        connection = self._engine.connect()
        try:
            acquired = bool(
                connection.execute(
                    text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
                ).scalar()
            )
        except Exception:
            connection.close()
            raise
        return connection, acquired

    def _release(self, connection: Connection, key: int, acquired: bool) -> None:
        try:
            if acquired:
                connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                connection.commit()
        finally:
            connection.close()

    @asynccontextmanager
    async def hold(self, user_id: str, provider: str) -> AsyncIterator[bool]:
        key = lock_key(user_id, provider)
        try:
            connection, acquired = await asyncio.to_thread(self._acquire, key)
        except (SATimeoutError, OperationalError) as e:
            logger.warning(
                "No database connection for refresh lock of %s/%s: %s",
                user_id,
                provider,
                type(e).__name__,
            )
            raise LockContentionError(
                f"Refresh lock for {provider} user {user_id} unavailable",
                provider=provider,
            ) from e

        if not acquired:
            logger.debug("Advisory lock %d for %s/%s is held elsewhere", key, user_id, provider)
        try:
            yield acquired
        finally:
            await asyncio.to_thread(self._release, connection, key, acquired)


def build_lock_backend(settings: Settings, engine: Engine) -> RefreshLockBackend:
    """
    Select the lock backend from REFRESH_LOCK_BACKEND.

    Raises:
        ConfigurationError: If postgres locking is requested on another database
    """
    if settings.REFRESH_LOCK_BACKEND == "postgres":
        if engine.dialect.name != "postgresql":
            raise ConfigurationError(
                "REFRESH_LOCK_BACKEND=postgres requires a PostgreSQL database, "
                f"got {engine.dialect.name}"
            )
        return PostgresAdvisoryLock(engine)
    return LocalRefreshLock()
