"""
Concurrency guards for the billing lifecycle.

Mutations of one billing account are serialized through a per-account
``asyncio.Lock`` inside the process and, when a lease store is supplied, a
lease row in the database across processes (the API host and the renewal
worker). The renewal tick is single-flight.
"""
import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from billing_engine.core.clock import Clock, system_clock
from billing_engine.core.errors import AccountBusyError

logger = logging.getLogger(__name__)

MAX_POLL_SECONDS = 1.0


class LeaseStore(Protocol):
    def acquire_lock(self, lock_key: str, owner: str, now_ms: int, ttl_ms: int) -> bool: ...

    def release_lock(self, lock_key: str, owner: str) -> None: ...


class AccountLocks:
    """Registry of per-account locks. Idle in-process locks are dropped automatically."""

    def __init__(
        self,
        lease_store: Optional[LeaseStore] = None,
        *,
        clock: Clock = system_clock,
        ttl_ms: int = 120_000,
        wait_seconds: float = 30.0,
        poll_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._lease_store = lease_store
        self._clock = clock
        self._ttl_ms = ttl_ms
        self._wait_seconds = wait_seconds
        self._poll_seconds = poll_seconds
        self._sleep = sleep
        self.owner = uuid.uuid4().hex

    def lock_for(self, billing_id: str) -> asyncio.Lock:
        lock = self._locks.get(billing_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[billing_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, billing_id: str) -> AsyncIterator[None]:
        lock = self.lock_for(billing_id)
        async with lock:
            if self._lease_store is None:
                yield
                return
            await self._acquire_lease(billing_id)
            try:
                yield
            finally:
                self._release_lease(billing_id)

    async def _acquire_lease(self, key: str) -> None:
        waited = 0.0
        delay = self._poll_seconds
        while not self._lease_store.acquire_lock(key, self.owner, self._clock(), self._ttl_ms):
            if waited >= self._wait_seconds:
                logger.warning("[billing] account lease wait timed out", extra={"lock_key": key, "waited": waited})
                raise AccountBusyError(f"{key} is locked by another worker")
            await self._sleep(delay)
            waited += delay
            delay = min(delay * 2, MAX_POLL_SECONDS)

    def _release_lease(self, key: str) -> None:
        try:
            self._lease_store.release_lock(key, self.owner)
        except Exception:
            # The lease lapses at its expiry
            logger.warning("[billing] account lease release failed", exc_info=True, extra={"lock_key": key})

    def __len__(self) -> int:
        return len(self._locks)


class SingleFlight:
    """Skip, rather than queue, a run that overlaps one already in progress."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[bool]:
        """Yield True when this caller owns the run, False when it should skip."""
        if self._lock.locked():
            yield False
            return
        async with self._lock:
            yield True
