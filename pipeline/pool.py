"""
Bounded pool of warehouse client handles.

The pool is constructed explicitly and passed to whoever needs a client
(extractors, aggregation jobs, the orchestrator for shutdown). Ownership of
a handle moves to the caller between acquire() and release(); the pool only
keeps bookkeeping consistent, so no per-client locking is needed.

Lifecycle:
    pool = ConnectionPool(client_factory, min_clients=2, max_clients=10)
    await pool.start()          # optional, acquire() starts lazily
    rows = await pool.with_client(lambda c: c.query(sql, params))
    await pool.close()

or simply ``async with ConnectionPool(...) as pool:``.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, TypeVar

from core.config import settings
from core.exceptions import ClientCreationError, ConnectionTimeoutError, PoolClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WarehouseClient(Protocol):
    """Boundary of the columnar warehouse client consumed by the pool"""

    async def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> list: ...

    async def test_connection(self) -> bool: ...

    async def estimate_query_cost(self, sql: str) -> Dict[str, Any]: ...

    async def close(self) -> None: ...


@dataclass
class PooledClient:
    """Pool entry. Only the pool mutates it."""
    handle: Any
    id: str = field(default_factory=lambda: f"client-{uuid.uuid4().hex[:12]}")
    in_use: bool = False
    last_used_at: float = field(default_factory=time.monotonic)
    fresh: bool = True  # minted and never handed out, skip the health check


class ConnectionPool:
    """
    Bounded set of warehouse clients with health checks and idle eviction.

    Acquirers that find no free slot wait on a condition that is notified on
    every release, eviction and close, and give up with
    ConnectionTimeoutError after acquire_timeout_ms.
    """

    def __init__(
        self,
        client_factory: Callable[[], WarehouseClient],
        min_clients: Optional[int] = None,
        max_clients: Optional[int] = None,
        idle_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
        cleanup_interval_ms: Optional[int] = None,
    ):
        self.client_factory = client_factory
        self.min_clients = settings.POOL_MIN_CLIENTS if min_clients is None else min_clients
        self.max_clients = settings.POOL_MAX_CLIENTS if max_clients is None else max_clients
        self.idle_timeout_ms = settings.POOL_IDLE_TIMEOUT_MS if idle_timeout_ms is None else idle_timeout_ms
        self.acquire_timeout_ms = (
            settings.POOL_ACQUIRE_TIMEOUT_MS if acquire_timeout_ms is None else acquire_timeout_ms
        )
        self.cleanup_interval_ms = (
            settings.POOL_CLEANUP_INTERVAL_MS if cleanup_interval_ms is None else cleanup_interval_ms
        )

        if self.max_clients < 1:
            raise ValueError("max_clients must be at least 1")
        if not 0 <= self.min_clients <= self.max_clients:
            raise ValueError("min_clients must be between 0 and max_clients")

        self._entries: Dict[str, PooledClient] = {}
        self._by_handle: Dict[int, str] = {}
        self._condition = asyncio.Condition()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "ConnectionPool":
        """Pre-warm min_clients and start the idle sweep"""
        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        if self._started:
            return self

        self._started = True
        async with self._condition:
            while len(self._entries) < self.min_clients:
                self._mint()

        if self.cleanup_interval_ms > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        logger.info(
            f"Connection pool started (min={self.min_clients}, max={self.max_clients})"
        )
        return self

    async def close(self) -> None:
        """Close every client, drain the pool and fail all waiters"""
        if self._closed:
            return
        self._closed = True

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        async with self._condition:
            entries = list(self._entries.values())
            self._entries.clear()
            self._by_handle.clear()
            self._condition.notify_all()

        for entry in entries:
            await self._close_handle(entry)

        logger.info(f"Connection pool closed ({len(entries)} clients released)")

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ConnectionPool":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> Any:
        """
        Check out a healthy client.

        Raises:
            PoolClosedError: The pool is (or becomes) closed
            ConnectionTimeoutError: No slot freed up within acquire_timeout_ms
        """
        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        if not self._started:
            await self.start()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout_ms / 1000

        while True:
            entry = await self._checkout(deadline)

            if entry.fresh:
                entry.fresh = False
                return entry.handle

            if await self._is_healthy(entry):
                return entry.handle

            # Bad client: drop it and loop, which mints a replacement
            logger.warning(f"Evicting unhealthy warehouse client {entry.id}")
            await self._discard(entry)

    def release(self, client: Any) -> None:
        """
        Return a client to the pool. Unknown clients are ignored.

        A waiting acquirer is woken by a task scheduled on the running loop.
        Async callers can use release_and_notify() to wake it directly.
        """
        if not self._mark_idle(client):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop, so no acquirer can be waiting
            return
        task = loop.create_task(self._notify())
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def release_and_notify(self, client: Any) -> None:
        """Return a client and wake one waiting acquirer before returning"""
        if self._mark_idle(client):
            await self._notify()

    async def with_client(self, operation: Callable[[Any], Awaitable[T]]) -> T:
        """Run operation with a pooled client, releasing it on every exit path"""
        client = await self.acquire()
        try:
            return await operation(client)
        finally:
            await self.release_and_notify(client)

    @asynccontextmanager
    async def client(self):
        """``async with pool.client() as client:`` form of with_client"""
        handle = await self.acquire()
        try:
            yield handle
        finally:
            await self.release_and_notify(handle)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def evict_idle(self) -> int:
        """Close idle-too-long clients down to min_clients. In-use clients are never touched."""
        if self._closed:
            return 0

        now = time.monotonic()
        idle_timeout = self.idle_timeout_ms / 1000
        evicted = []

        async with self._condition:
            for entry in sorted(self._entries.values(), key=lambda e: e.last_used_at):
                if len(self._entries) <= self.min_clients:
                    break
                if entry.in_use or now - entry.last_used_at <= idle_timeout:
                    continue
                self._remove(entry)
                evicted.append(entry)
            if evicted:
                self._condition.notify_all()

        for entry in evicted:
            await self._close_handle(entry)

        if evicted:
            logger.debug(f"Evicted {len(evicted)} idle warehouse clients")
        return len(evicted)

    def get_pool_stats(self) -> Dict[str, int]:
        in_use = sum(1 for e in self._entries.values() if e.in_use)
        return {
            "total": len(self._entries),
            "in_use": in_use,
            "idle": len(self._entries) - in_use,
            "max_clients": self.max_clients,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _checkout(self, deadline: float) -> PooledClient:
        """Mark an idle or newly minted entry in-use, waiting for a slot if needed"""
        loop = asyncio.get_running_loop()

        async with self._condition:
            while True:
                if self._closed:
                    raise PoolClosedError("Connection pool is closed")

                for entry in self._entries.values():
                    if not entry.in_use:
                        entry.in_use = True
                        entry.last_used_at = time.monotonic()
                        return entry

                if len(self._entries) < self.max_clients:
                    entry = self._mint()
                    entry.in_use = True
                    return entry

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._timeout_error()
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise self._timeout_error()

    def _mint(self) -> PooledClient:
        # Caller holds the condition lock
        try:
            handle = self.client_factory()
        except Exception as e:
            raise ClientCreationError(
                f"Failed to create warehouse client: {e}",
                context={"pool_size": len(self._entries), "max_clients": self.max_clients},
                original_exception=e,
            )
        entry = PooledClient(handle=handle)
        self._entries[entry.id] = entry
        self._by_handle[id(entry.handle)] = entry.id
        logger.debug(f"Created warehouse client {entry.id} (pool size {len(self._entries)})")
        return entry

    def _mark_idle(self, client: Any) -> bool:
        entry_id = self._by_handle.get(id(client))
        entry = self._entries.get(entry_id) if entry_id else None
        if entry is None:
            logger.debug("Release of a client the pool does not own; ignoring")
            return False
        entry.in_use = False
        entry.last_used_at = time.monotonic()
        return True

    def _remove(self, entry: PooledClient) -> None:
        self._entries.pop(entry.id, None)
        self._by_handle.pop(id(entry.handle), None)

    async def _discard(self, entry: PooledClient) -> None:
        async with self._condition:
            self._remove(entry)
            self._condition.notify_all()
        await self._close_handle(entry)

    async def _is_healthy(self, entry: PooledClient) -> bool:
        try:
            return bool(await entry.handle.test_connection())
        except Exception as e:
            logger.warning(f"Health check failed for {entry.id}: {e}")
            return False

    async def _close_handle(self, entry: PooledClient) -> None:
        try:
            await entry.handle.close()
        except Exception as e:
            logger.warning(f"Error closing warehouse client {entry.id}: {e}")

    async def _notify(self) -> None:
        async with self._condition:
            self._condition.notify()

    async def _cleanup_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.cleanup_interval_ms / 1000)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("Idle client sweep failed")

    def _timeout_error(self) -> ConnectionTimeoutError:
        return ConnectionTimeoutError(
            f"Failed to acquire connection within {self.acquire_timeout_ms}ms timeout",
            context={
                "acquire_timeout_ms": self.acquire_timeout_ms,
                "pool_size": len(self._entries),
            },
        )
