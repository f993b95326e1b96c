"""
Base LanceDB connection manager.

A bounded pool of LanceDB connections shared by every store. LanceDB calls
are blocking, so the pool runs them in worker threads and enforces a
deadline on each one.

Pool sizing comes from a deployment profile:
    production:  min 10 / max 50
    development: min 2  / max 20

Connection failures discard the connection and reconnect with exponential
backoff. When the reconnect budget is exhausted the pool reports itself
unhealthy instead of crashing the process.

Note: a query that times out is abandoned, not interrupted; its worker thread
runs to completion in the background. Its connection keeps its pool slot until
then and is discarded afterwards.
"""
from collections import deque
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
import asyncio
import itertools
import logging
import os
import time

import lancedb
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import PoolTimeoutError, QueryTimeoutError, StoreUnavailableError
import config


logger = logging.getLogger(__name__)

# Errors that mean the connection itself is unusable
CONNECTION_ERRORS = (OSError, ConnectionError)


def connect_lancedb(db_path: str, storage_options: Optional[Dict[str, Any]] = None) -> lancedb.DBConnection:
    """Open one LanceDB connection with read-your-writes consistency across connections."""
    is_cloud_storage = db_path.startswith(("gs://", "s3://", "az://"))

    if is_cloud_storage:
        return lancedb.connect(
            db_path,
            storage_options=storage_options,
            read_consistency_interval=timedelta(0)
        )

    os.makedirs(db_path, exist_ok=True)
    return lancedb.connect(db_path, read_consistency_interval=timedelta(0))


class PooledConnection:
    """A LanceDB connection checked out from the pool."""

    def __init__(self, db: Any, conn_id: int, clock: Callable[[], float]):
        self.db = db
        self.id = conn_id
        self.created_at = clock()
        self.last_used = self.created_at
        self._tables: Dict[str, Any] = {}

    def table_names(self) -> List[str]:
        names, token = [], None
        while True:
            listing = self.db.list_tables(page_token=token)
            names.extend(listing.tables)
            token = listing.page_token
            if not token:
                return names

    def has_table(self, name: str) -> bool:
        return name in self._tables or name in self.table_names()

    def table(self, name: str):
        """Open (and memoise) a table on this connection."""
        table = self._tables.get(name)
        if table is None:
            table = self._tables[name] = self.db.open_table(name)
        return table

    def create_table(self, name: str, schema):
        table = self._tables[name] = self.db.create_table(name, schema=schema)
        return table

    def ensure_table(self, name: str, schema):
        if self.has_table(name):
            return self.table(name)
        return self.create_table(name, schema)


class LanceDBPool:
    """Bounded, health-checked pool of LanceDB connections."""

    def __init__(
        self,
        db_path: str = None,
        profile: str = None,
        min_size: int = None,
        max_size: int = None,
        idle_timeout: float = None,
        acquire_timeout: float = None,
        query_timeout: float = None,
        slow_query_ms: float = None,
        max_reconnect_attempts: int = None,
        reconnect_initial_delay: float = None,
        storage_options: Optional[Dict[str, Any]] = None,
        connect_fn: Callable[..., Any] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.db_path = db_path or config.LANCEDB_PATH
        self.profile = profile or getattr(config, 'APP_ENV', 'development')

        profiles = getattr(config, 'POOL_PROFILES', {})
        sizing = profiles.get(self.profile, profiles.get("development", {"min_size": 2, "max_size": 20}))
        self.min_size = sizing["min_size"] if min_size is None else min_size
        self.max_size = sizing["max_size"] if max_size is None else max_size
        if self.min_size > self.max_size:
            raise ValueError(f"min_size ({self.min_size}) exceeds max_size ({self.max_size})")

        self.idle_timeout = idle_timeout if idle_timeout is not None else config.POOL_IDLE_TIMEOUT
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else config.POOL_ACQUIRE_TIMEOUT
        self.query_timeout = query_timeout if query_timeout is not None else config.QUERY_TIMEOUT
        self.slow_query_ms = slow_query_ms if slow_query_ms is not None else config.SLOW_QUERY_MS
        self.max_reconnect_attempts = max_reconnect_attempts or config.MAX_RECONNECT_ATTEMPTS
        self.reconnect_initial_delay = (
            reconnect_initial_delay if reconnect_initial_delay is not None else config.RECONNECT_INITIAL_DELAY
        )
        self.reconnect_max_delay = getattr(config, 'RECONNECT_MAX_DELAY', 30.0)
        self.storage_options = storage_options
        self._connect_fn = connect_fn or connect_lancedb
        self._clock = clock

        self._idle: List[PooledConnection] = []
        self._total = 0
        self._active = 0
        self._waiting = 0
        self._ids = itertools.count(1)
        self._cond = asyncio.Condition()
        self._closed = False
        self._healthy = True
        # conn id -> worker still running a timed-out query
        self._stranded: Dict[int, asyncio.Future] = {}
        self._reapers = set()

        self._query_times = deque(maxlen=getattr(config, 'QUERY_TIME_WINDOW', 1000))
        self._total_queries = 0
        self._query_errors = 0
        self._slow_queries = 0
        self._reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Open the minimum number of connections. Never raises."""
        opened = []
        for _ in range(self.min_size):
            try:
                opened.append(await self.acquire())
            except StoreUnavailableError as e:
                logger.error("[Pool] Warm-up failed: %s", e)
                break
        for conn in opened:
            await self.release(conn)
        logger.info(
            "[Pool] Started (%s profile): %d/%d connections to %s",
            self.profile, self._total, self.max_size, self.db_path
        )

    async def close(self):
        async with self._cond:
            self._closed = True
            self._total -= len(self._idle)
            self._idle.clear()
            self._cond.notify_all()
        logger.info("[Pool] Closed")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _before_reconnect(self, retry_state):
        self._reconnect_attempts += 1
        logger.warning(
            "[Pool] Connect attempt %d/%d failed: %r",
            retry_state.attempt_number,
            self.max_reconnect_attempts,
            retry_state.outcome.exception() if retry_state.outcome else None
        )

    async def _open_connection(self) -> PooledConnection:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_reconnect_attempts),
                wait=wait_exponential(multiplier=self.reconnect_initial_delay, max=self.reconnect_max_delay),
                retry=retry_if_exception_type(CONNECTION_ERRORS + (RuntimeError,)),
                before_sleep=self._before_reconnect,
                reraise=True,
            ):
                with attempt:
                    db = await asyncio.to_thread(self._connect_fn, self.db_path, self.storage_options)
        except CONNECTION_ERRORS + (RuntimeError,) as e:
            self._healthy = False
            logger.error("[Pool] Giving up after %d connect attempts: %r", self.max_reconnect_attempts, e)
            raise StoreUnavailableError(f"Cannot connect to LanceDB at {self.db_path}") from e

        self._healthy = True
        return PooledConnection(db, next(self._ids), self._clock)

    def _reap_idle_locked(self):
        now = self._clock()
        keep = []
        for conn in self._idle:
            if self._total > self.min_size and now - conn.last_used > self.idle_timeout:
                self._total -= 1
                logger.debug("[Pool] Reaped idle connection #%d", conn.id)
            else:
                keep.append(conn)
        self._idle = keep

    async def reap_idle(self):
        """Drop connections idle past idle_timeout, never below min_size."""
        async with self._cond:
            self._reap_idle_locked()

    async def acquire(self) -> PooledConnection:
        """Check out a connection, waiting at most acquire_timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout

        async with self._cond:
            self._waiting += 1
            try:
                while True:
                    if self._closed:
                        raise StoreUnavailableError("Connection pool is closed")
                    self._reap_idle_locked()
                    if self._idle:
                        conn = self._idle.pop()
                        self._active += 1
                        return conn
                    if self._total < self.max_size:
                        # Reserve a slot; connect outside the lock
                        self._total += 1
                        break
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise PoolTimeoutError(
                            f"No connection available within {self.acquire_timeout}s "
                            f"({self._total}/{self.max_size} in use)"
                        )
                    try:
                        await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        continue
            finally:
                self._waiting -= 1

        try:
            conn = await self._open_connection()
        except StoreUnavailableError:
            async with self._cond:
                self._total -= 1
                self._cond.notify()
            raise

        async with self._cond:
            self._active += 1
        return conn

    async def release(self, conn: PooledConnection, discard: bool = False):
        async with self._cond:
            self._active -= 1
            if discard or self._closed:
                self._total -= 1
                if discard:
                    logger.warning("[Pool] Discarded connection #%d", conn.id)
            else:
                conn.last_used = self._clock()
                self._idle.append(conn)
            self._cond.notify()

    async def _release_after(self, conn: PooledConnection, worker: asyncio.Future):
        """Hold the slot of a timed-out connection until its worker thread returns."""
        try:
            await asyncio.wait([worker])
            if not worker.cancelled() and worker.exception() is not None:
                logger.debug("[Pool] Abandoned query on #%d failed: %r", conn.id, worker.exception())
        finally:
            self._stranded.pop(conn.id, None)
            await self.release(conn, discard=True)

    @asynccontextmanager
    async def connection(self):
        conn = await self.acquire()
        discard = False
        try:
            yield conn
        except (StoreUnavailableError, QueryTimeoutError):
            discard = True
            raise
        finally:
            worker = self._stranded.get(conn.id)
            if worker is not None and not worker.done():
                self._reapers.add(asyncio.ensure_future(self._release_after(conn, worker)))
                self._reapers = {task for task in self._reapers if not task.done()}
            else:
                self._stranded.pop(conn.id, None)
                await self.release(conn, discard=discard)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _record(self, label: str, elapsed_ms: float):
        self._total_queries += 1
        self._query_times.append(elapsed_ms)
        if elapsed_ms > self.slow_query_ms:
            self._slow_queries += 1
            logger.warning("[Pool] Slow query '%s': %.0fms", label, elapsed_ms)

    async def _execute(self, conn: PooledConnection, fn, args, kwargs, label: str, timeout: Optional[float]):
        timeout = self.query_timeout if timeout is None else timeout
        start = time.perf_counter()
        worker = asyncio.ensure_future(asyncio.to_thread(fn, conn, *args, **kwargs))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        except asyncio.TimeoutError as e:
            self._query_errors += 1
            # The thread keeps the connection busy until it returns
            self._stranded[conn.id] = worker
            raise QueryTimeoutError(f"Query '{label}' exceeded {timeout}s") from e
        except asyncio.CancelledError:
            self._stranded[conn.id] = worker
            raise
        except CONNECTION_ERRORS as e:
            self._query_errors += 1
            raise StoreUnavailableError(f"Connection lost during '{label}': {e}") from e
        except Exception:
            self._query_errors += 1
            raise
        finally:
            self._record(label, (time.perf_counter() - start) * 1000)

    async def run(
        self,
        fn: Callable[..., Any],
        *args,
        conn: Optional[PooledConnection] = None,
        label: str = "query",
        timeout: Optional[float] = None,
        **kwargs
    ) -> Any:
        """
        Run a blocking LanceDB function `fn(conn, *args, **kwargs)` in a worker thread.

        Args:
            conn: reuse an already checked-out connection (inside a transaction)
            label: name used in slow-query logs
            timeout: seconds; defaults to the pool's query timeout
        """
        if conn is not None:
            return await self._execute(conn, fn, args, kwargs, label, timeout)

        async with self.connection() as pooled:
            return await self._execute(pooled, fn, args, kwargs, label, timeout)

    @asynccontextmanager
    async def transaction(self, *table_names: str):
        """
        Hold one connection for a unit of work.

        LanceDB has no multi-statement transactions; on error every listed
        table that existed at the start is restored to its starting version.
        """
        async with self.connection() as conn:
            def _snapshot(c: PooledConnection) -> Dict[str, int]:
                return {name: c.table(name).version for name in table_names if c.has_table(name)}

            versions = await self.run(_snapshot, conn=conn, label="transaction.begin")
            try:
                yield conn
            except Exception:
                if conn.id in self._stranded:
                    logger.error("[Pool] Rollback skipped, a timed-out query still holds #%d", conn.id)
                    raise

                def _restore(c: PooledConnection):
                    for name, version in versions.items():
                        table = c.table(name)
                        if table.version != version:
                            table.restore(version)

                try:
                    await self.run(_restore, conn=conn, label="transaction.rollback")
                    logger.warning("[Pool] Rolled back tables %s", list(versions))
                except Exception as rollback_error:
                    logger.error("[Pool] Rollback failed: %r", rollback_error)
                raise

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        times = self._query_times
        return {
            "total": self._total,
            "active": self._active,
            "idle": len(self._idle),
            "waiting": self._waiting,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "total_queries": self._total_queries,
            "query_errors": self._query_errors,
            "slow_queries": self._slow_queries,
            "avg_query_ms": (sum(times) / len(times)) if times else 0.0,
            "reconnect_attempts": self._reconnect_attempts,
            "healthy": self._healthy,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip one cheap query. Returns {healthy, latency_ms, metrics}."""
        start = time.perf_counter()
        healthy = False
        if not self._closed:
            try:
                await self.run(lambda c: c.table_names(), label="health_check",
                               timeout=min(5.0, self.query_timeout))
                healthy = True
            except (StoreUnavailableError, QueryTimeoutError, PoolTimeoutError) as e:
                logger.warning("[Pool] Health check failed: %s", e)
        return {
            "healthy": healthy and self._healthy,
            "latency_ms": (time.perf_counter() - start) * 1000,
            "metrics": self.get_metrics(),
        }
