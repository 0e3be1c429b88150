"""
Compute-if-absent cache with single-flight de-duplication.

Lookup order for get_or_compute(key, producer, ttl):
1. Fresh entry in the store: return it, producer untouched
2. Computation for key already in flight: join it
3. Otherwise start the computation; joiners share its outcome
4. Store down: call the producer directly, no coordination, no write

Failed computations are never written to the store.
"""

import asyncio
import inspect
import json
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from .cache_store import CacheStore, key_fits
from .exceptions import ComputationTimeout, ProducerFailure, StoreUnavailable
from .fanout_logger import FanoutLogger
from .log_record import Severity
from .metrics import MetricsCollector
from .outage import OutageLatch

logger = structlog.get_logger(__name__)

Producer = Callable[[], Any]


@dataclass
class CacheStats:
    """Counters for how lookups were served."""
    hits: int = 0
    misses: int = 0
    joins: int = 0
    failures: int = 0
    bypasses: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def encode_value(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def decode_value(payload: bytes) -> Any:
    return json.loads(payload.decode("utf-8"))


async def invoke_producer(producer: Producer) -> Any:
    """Run a coroutine function on the loop, anything else in a worker thread."""
    if inspect.iscoroutinefunction(producer):
        return await producer()
    result = await asyncio.to_thread(producer)
    if inspect.isawaitable(result):
        result = await result
    return result


class ComputationCache:
    """
    Wraps a CacheStore with compute-if-absent semantics.

    At most one producer invocation is in flight per key. The registry lock
    only guards registry lookups and inserts; producers and store I/O run
    outside it, so unrelated keys never contend.
    """

    def __init__(
        self,
        store: CacheStore,
        logger: Optional[FanoutLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        default_ttl: float = 300.0,
        join_timeout: Optional[float] = 30.0,
    ) -> None:
        self.store = store
        self.logger = logger or FanoutLogger()
        self.metrics = metrics
        self.default_ttl = default_ttl
        self.join_timeout = join_timeout
        self.stats = CacheStats()
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}
        self._registry_lock = asyncio.Lock()
        self._outage = OutageLatch("cache", self.logger, metrics)

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def _count(self, result: str) -> None:
        setattr(self.stats, result, getattr(self.stats, result) + 1)
        if self.metrics:
            self.metrics.record_cache_lookup(result)

    async def get_or_compute(
        self,
        key: str,
        producer: Producer,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value for key, computing it with producer on a miss.

        Args:
            key: Deterministic cache key (see build_cache_key)
            producer: Zero-argument callable, sync or async, returning a
                JSON-serializable value
            ttl: Seconds to keep the value; None uses the default, <= 0
                disables caching but keeps de-duplication
            timeout: Seconds this caller waits; None uses join_timeout

        Raises:
            ValueError: key is longer than the stores accept
            ProducerFailure: the computation failed
            ComputationTimeout: this caller's wait elapsed
        """
        if not key_fits(key):
            raise ValueError(f"Cache key too long: {len(key.encode('utf-8'))} bytes")
        ttl = self.default_ttl if ttl is None else ttl
        timeout = self.join_timeout if timeout is None else timeout
        cacheable = ttl > 0

        if cacheable:
            try:
                entry = await self.store.get(key)
            except StoreUnavailable as e:
                self._outage.failed(e)
                return await self._bypass(key, producer)
            self._outage.succeeded()
            if entry is not None:
                self._count("hits")
                return decode_value(entry.payload)

        async with self._registry_lock:
            task = self._inflight.get(key)
            joined = task is not None
            if task is None:
                task = asyncio.create_task(self._compute(key, producer, ttl, cacheable))
                self._inflight[key] = task
                task.add_done_callback(lambda t, key=key: self._forget(key, t))
                if self.metrics:
                    self.metrics.computations_in_flight.inc()

        self._count("joins" if joined else "misses")
        return await self._wait(key, task, timeout)

    async def _wait(self, key: str, task: "asyncio.Task[Any]", timeout: Optional[float]) -> Any:
        # shield: a caller giving up must not cancel the shared computation
        try:
            if timeout is None or timeout <= 0:
                return await asyncio.shield(task)
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.debug("Caller stopped waiting for computation", key=key, timeout=timeout)
            raise ComputationTimeout(key, timeout) from None

    def _forget(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if self.metrics:
            self.metrics.computations_in_flight.dec()
        # Mark the outcome retrieved even if every waiter timed out
        if not task.cancelled():
            task.exception()

    async def _compute(self, key: str, producer: Producer, ttl: float, cacheable: bool) -> Any:
        if cacheable:
            # A previous leader may have stored the value after our lookup
            try:
                entry = await self.store.get(key)
            except StoreUnavailable as e:
                self._outage.failed(e)
                entry = None
            if entry is not None:
                return decode_value(entry.payload)

        payload = await self._produce(key, producer)

        if cacheable:
            try:
                await self.store.put(key, payload, ttl)
                self._outage.succeeded()
            except StoreUnavailable as e:
                self._outage.failed(e)
        return decode_value(payload)

    async def _produce(self, key: str, producer: Producer) -> bytes:
        try:
            return encode_value(await invoke_producer(producer))
        except Exception as e:
            self.stats.failures += 1
            if self.metrics:
                self.metrics.record_producer_failure()
            self.logger.emit(
                Severity.ERROR,
                "Producer failed",
                {"key": key, "error": str(e), "error_type": type(e).__name__},
            )
            raise ProducerFailure(key) from e

    async def _bypass(self, key: str, producer: Producer) -> Any:
        self._count("bypasses")
        return decode_value(await self._produce(key, producer))

    async def invalidate(self, key: str) -> bool:
        """Drop key from the store. An in-flight computation is not affected."""
        if not key_fits(key):
            return False
        removed = await self.store.invalidate(key)
        self.logger.emit(Severity.INFO, "Cache entry invalidated", {"key": key, "removed": removed})
        return removed

    async def clear(self) -> int:
        removed = await self.store.clear()
        self.logger.emit(Severity.INFO, "Cache cleared", {"removed": removed})
        return removed

    async def purge_expired(self) -> int:
        """Reclaim store space held by entries that can no longer be served."""
        removed = await self.store.purge_expired()
        if removed:
            logger.debug("Purged expired cache entries", removed=removed)
        return removed
