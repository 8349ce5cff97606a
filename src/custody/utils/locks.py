"""Keyed asyncio locks.

Provides per-key locking (hot wallet id, deposit tx) to serialise nonce use
and confirmation updates inside one process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

from custody.errors import CustodyError, ErrorKind

logger = logging.getLogger(__name__)


class LockTimeoutError(CustodyError):
    """Raised when a lock cannot be acquired within the timeout period.

    The resource is busy, not broken: callers may retry later.
    """

    kind = ErrorKind.NETWORK
    retryable = True


class KeyedLocks:
    """Registry of asyncio.Lock objects keyed by an arbitrary hashable.

    A key's lock lives only while some task holds or waits for it, so the
    registry stays as small as the number of keys in use.

    Example:
        locks = KeyedLocks("hot_wallet")
        async with locks.hold(wallet.id, operation="withdrawal"):
            # read sequence, sign, broadcast
            ...
    """

    def __init__(self, name: str, timeout: Optional[float] = 30.0):
        self.name = name
        self.timeout = timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: Hashable) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: Hashable, operation: str = "operation") -> AsyncIterator[None]:
        """Acquire the lock for ``key``, waiting at most ``timeout`` seconds.

        Raises:
            LockTimeoutError: if the lock is not acquired in time
        """
        lock = self._checkout(key)
        try:
            if self.timeout:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            self._checkin(key)
            logger.warning(f"Lock timeout for {self.name} {key} after {self.timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire {self.name} lock for {key} within {self.timeout}s"
            )
        except BaseException:
            self._checkin(key)
            raise

        logger.debug(f"Lock acquired for {self.name} {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)
            logger.debug(f"Lock released for {self.name} {key}: {operation}")
