"""
Per-key mutual exclusion for transaction and inventory updates.

Two layers cooperate:

- ``KeyedLocks`` serializes coroutines inside one process with an
  ``asyncio.Lock`` per business key (e.g. ``"transaction:<uuid>"``), waiting at
  most ``timeout`` seconds.
- ``advisory_xact_lock`` takes a PostgreSQL transaction-scoped advisory lock on
  the same key, so workers in other processes sharing the database are
  serialized too. The lock is released by PostgreSQL on commit or rollback.
  On other dialects it is a no-op.
"""
import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import LockTimeout

logger = logging.getLogger(__name__)


def key_to_int64(key: str) -> int:
    """
    Convert a string key into a stable signed 64-bit integer.

    PostgreSQL advisory locks take a BIGINT. BLAKE2b with an 8-byte digest
    gives a value that is stable across processes and Python versions; it is
    then shifted into the signed range.
    """
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, byteorder="big", signed=False)
    if value >= 2**63:
        value -= 2**64
    return value


def transaction_key(transaction_id) -> str:
    return f"transaction:{transaction_id}"


class KeyedLocks:
    """In-process registry of asyncio locks keyed by string."""

    def __init__(self, timeout: Optional[float] = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeout: if the lock is not acquired within ``timeout`` seconds
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Lock contention on {key} (timeout={self.timeout}s)")
                raise LockTimeout(
                    f"Failed to acquire lock for key='{key}' within timeout={self.timeout}s",
                    key=key,
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            # Drop the entry once nobody holds or waits on it
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Take a transaction-scoped advisory lock on PostgreSQL."""
    bind = session.bind
    if bind is None or bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:lock_id)"),
        {"lock_id": key_to_int64(key)},
    )
