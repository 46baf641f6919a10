"""Concurrency control utilities for user balance operations.

Provides per-user locking so the inbox cycle and the deposit cycle never
interleave balance changes for the same user inside one process. Row locks
taken by the repository cover the multi-process case.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from tipbot.errors import LockTimeoutError

logger = logging.getLogger(__name__)

# Global lock registry: username key -> asyncio.Lock
_user_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


def _key(username: str) -> str:
    return username.lower()


async def get_user_lock(username: str) -> asyncio.Lock:
    """Get or create the lock for a user (case-insensitive)."""
    async with _registry_lock:
        key = _key(username)
        if key not in _user_locks:
            _user_locks[key] = asyncio.Lock()
        return _user_locks[key]


class UserBalanceLock:
    """Context manager for exclusive access to one or more users' balances.

    Locks are always taken in sorted username order so two operations on
    the same pair of users cannot deadlock.

    Example:
        async with UserBalanceLock(["alice", "bob"], operation="tip"):
            ...
    """

    def __init__(
        self,
        usernames: Iterable[str] | str,
        timeout: Optional[float] = 30.0,
        operation: str = "balance_operation",
    ):
        if isinstance(usernames, str):
            usernames = [usernames]
        self.usernames = sorted({_key(name) for name in usernames})
        self.timeout = timeout
        self.operation = operation
        self._held: list[asyncio.Lock] = []

    async def __aenter__(self) -> "UserBalanceLock":
        """Acquire every lock or none."""
        try:
            for username in self.usernames:
                lock = await get_user_lock(username)
                if self.timeout:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                else:
                    await lock.acquire()
                self._held.append(lock)
        except asyncio.TimeoutError:
            self._release()
            logger.warning(
                f"Lock timeout for {self.usernames} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for {', '.join(self.usernames)} within {self.timeout}s"
            )

        logger.debug(f"Lock acquired for {self.usernames}: {self.operation}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release the locks."""
        self._release()
        logger.debug(f"Lock released for {self.usernames}: {self.operation}")
        return False

    def _release(self) -> None:
        while self._held:
            self._held.pop().release()


@asynccontextmanager
async def user_balance_lock(
    *usernames: str,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
) -> AsyncIterator[None]:
    """Functional form of UserBalanceLock.

    Example:
        async with user_balance_lock("alice", operation="withdraw"):
            ...
    """
    async with UserBalanceLock(usernames, timeout=timeout, operation=operation):
        yield


def clear_user_locks() -> None:
    """Clear all user locks (useful for testing)."""
    _user_locks.clear()
