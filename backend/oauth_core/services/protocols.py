"""
Protocol definitions for pluggable refresh coordination.

This module defines Protocol classes (PEP 544) for the parts of token refresh
that vary by deployment, enabling type-safe dependency injection and easy
substitution in tests.
"""

from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable


@runtime_checkable
class RefreshLockBackend(Protocol):
    """
    Cross-process mutual exclusion for refreshing one (user, provider) pair.

    Both LocalRefreshLock (single replica) and PostgresAdvisoryLock
    (multi-replica) implement this protocol, selected by configuration.

    Example:
        async with backend.hold(user_id, "github") as acquired:
            if not acquired:
                ...  # another process is refreshing; re-read instead
    """

    def hold(self, user_id: str, provider: str) -> AbstractAsyncContextManager[bool]:
        """
        Try to take the lock without blocking.

        Args:
            user_id: Owner of the integration
            provider: Provider identifier

        Returns:
            Async context manager yielding True if the lock was acquired.
            The lock is released when the context exits, on every path.
        """
        ...
