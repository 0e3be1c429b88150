"""
Fixed-window rate limiting.

Each identity gets a window of window_length seconds holding a counter. A
request is admitted when the counter is below capacity; the check and the
increment happen as one atomic step in the window store, so concurrent
requests can never push the counter past capacity.

A request that arrives as a window ends is counted in whichever window is
current when it is evaluated. There is no smoothing across windows.
"""

import asyncio
import math
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

import structlog
from sqlalchemy import and_, delete, exists, literal, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import Clock, MonotonicClock
from .database import rate_windows
from .exceptions import StoreUnavailable
from .fanout_logger import FanoutLogger
from .log_record import Severity
from .metrics import MetricsCollector
from .outage import OutageLatch

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    """Request count for one identity in the current window."""
    identity: str
    window_start: float
    count: int
    capacity: int
    window_length: float

    @property
    def window_end(self) -> float:
        return self.window_start + self.window_length

    def is_expired(self, now: float) -> bool:
        return now >= self.window_end

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, math.ceil(self.window_end - now))


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of one admission check."""
    allowed: bool
    identity: str
    count: int
    capacity: int
    retry_after: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.count)


@runtime_checkable
class RateWindowStore(Protocol):
    """Protocol for rate window backends."""

    async def hit(self, identity: str, capacity: int, window_length: float, now: float) -> Tuple[bool, RateWindow]:
        """
        Reset the window if it has expired, then increment the counter if it
        is below capacity. Both happen atomically.

        Returns (admitted, window after the attempt).
        """
        ...

    async def reset(self, identity: str) -> bool:
        ...

    async def purge_expired(self, now: float) -> int:
        ...

    async def ping(self) -> None:
        ...


class MemoryRateWindowStore:
    """
    In-process window store.

    The lock is held across read, reset and increment; nothing in between
    awaits, so the sequence is atomic for both threads and tasks.

    Expired windows are swept from inside hit at most once per window
    length, so identities that never return do not accumulate.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._next_sweep: Optional[float] = None

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if w.is_expired(now)]
        for identity in expired:
            del self._windows[identity]
        return len(expired)

    async def hit(self, identity: str, capacity: int, window_length: float, now: float) -> Tuple[bool, RateWindow]:
        with self._lock:
            if self._next_sweep is None:
                self._next_sweep = now + window_length
            elif now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + window_length
            window = self._windows.get(identity)
            if window is None or window.is_expired(now):
                window = RateWindow(
                    identity=identity,
                    window_start=now,
                    count=0,
                    capacity=capacity,
                    window_length=window_length,
                )
            admitted = window.count < capacity
            if admitted:
                window = replace(window, count=window.count + 1)
            self._windows[identity] = window
            return admitted, window

    async def reset(self, identity: str) -> bool:
        with self._lock:
            return self._windows.pop(identity, None) is not None

    async def purge_expired(self, now: float) -> int:
        with self._lock:
            return self._sweep(now)

    async def ping(self) -> None:
        return None


class SqlRateWindowStore:
    """
    Window store on the rate_windows table.

    The admission gate is one conditional UPDATE
    (count = count + 1 WHERE count < capacity); the database serializes
    concurrent updates of the row, so the counter cannot overshoot.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _ensure_row(self, identity: str, capacity: int, window_length: float, now: float) -> None:
        row_missing = ~exists().where(rate_windows.c.identity == identity)
        stmt = rate_windows.insert().from_select(
            ["identity", "window_start", "count", "capacity", "window_length"],
            select(
                literal(identity),
                literal(now),
                literal(0),
                literal(capacity),
                literal(window_length),
            ).where(row_missing),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except IntegrityError:
            # Another request created the row first
            pass

    def _hit(self, identity: str, capacity: int, window_length: float, now: float) -> Tuple[bool, RateWindow]:
        self._ensure_row(identity, capacity, window_length, now)
        with self.engine.begin() as conn:
            conn.execute(
                update(rate_windows)
                .where(and_(
                    rate_windows.c.identity == identity,
                    rate_windows.c.window_start + rate_windows.c.window_length <= now,
                ))
                .values(window_start=now, count=0, capacity=capacity, window_length=window_length)
            )
            admitted = conn.execute(
                update(rate_windows)
                .where(and_(
                    rate_windows.c.identity == identity,
                    rate_windows.c["count"] < capacity,
                ))
                .values(count=rate_windows.c["count"] + 1)
            ).rowcount == 1
            row = conn.execute(
                select(rate_windows).where(rate_windows.c.identity == identity)
            ).mappings().one()
        return admitted, RateWindow(
            identity=row["identity"],
            window_start=row["window_start"],
            count=row["count"],
            capacity=capacity,
            window_length=row["window_length"],
        )

    def _reset(self, identity: str) -> bool:
        with self.engine.begin() as conn:
            return conn.execute(
                delete(rate_windows).where(rate_windows.c.identity == identity)
            ).rowcount > 0

    def _purge_expired(self, now: float) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                delete(rate_windows).where(rate_windows.c.window_start + rate_windows.c.window_length <= now)
            ).rowcount

    def _ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            raise StoreUnavailable("sql", f"Rate window database error: {type(e).__name__}") from e

    async def hit(self, identity: str, capacity: int, window_length: float, now: float) -> Tuple[bool, RateWindow]:
        return await self._run(self._hit, identity, capacity, window_length, now)

    async def reset(self, identity: str) -> bool:
        return await self._run(self._reset, identity)

    async def purge_expired(self, now: float) -> int:
        return await self._run(self._purge_expired, now)

    async def ping(self) -> None:
        await self._run(self._ping)


class RateLimiter:
    """
    Per-identity fixed-window rate limiter.

    When the window store is down the limiter fails closed (rejects) unless
    fail_open is set. The outage is logged once, not per request.
    """

    def __init__(
        self,
        store: RateWindowStore,
        capacity: int,
        window_seconds: float,
        enabled: bool = True,
        fail_open: bool = False,
        logger: Optional[FanoutLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.enabled = enabled
        self.fail_open = fail_open
        self.logger = logger or FanoutLogger()
        self.metrics = metrics
        self.clock = clock or MonotonicClock()
        self._outage = OutageLatch("rate_limit", self.logger, metrics)

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.record_admission(result)

    async def check(self, identity: str) -> AdmissionDecision:
        """Count a request for identity and decide whether to admit it."""
        if not self.enabled:
            return AdmissionDecision(allowed=True, identity=identity, count=0, capacity=self.capacity)

        now = self.clock.now()
        try:
            admitted, window = await self.store.hit(identity, self.capacity, self.window_seconds, now)
        except StoreUnavailable as e:
            self._outage.failed(e)
            self._record("failed_open" if self.fail_open else "failed_closed")
            return AdmissionDecision(
                allowed=self.fail_open,
                identity=identity,
                count=0,
                capacity=self.capacity,
                retry_after=0 if self.fail_open else max(1, math.ceil(self.window_seconds)),
            )
        self._outage.succeeded()

        if admitted:
            self._record("allowed")
            return AdmissionDecision(
                allowed=True,
                identity=identity,
                count=window.count,
                capacity=self.capacity,
            )

        self._record("rejected")
        retry_after = window.retry_after(now)
        self.logger.emit(
            Severity.WARNING,
            "Rate limit exceeded",
            {"identity": identity, "count": window.count, "capacity": self.capacity, "retry_after": retry_after},
        )
        return AdmissionDecision(
            allowed=False,
            identity=identity,
            count=window.count,
            capacity=self.capacity,
            retry_after=retry_after,
        )

    async def admit(self, identity: str) -> bool:
        """True if the request from identity may proceed."""
        return (await self.check(identity)).allowed

    async def reset(self, identity: str) -> bool:
        """Forget the window for identity."""
        removed = await self.store.reset(identity)
        self.logger.emit(Severity.INFO, "Rate limit window reset", {"identity": identity, "removed": removed})
        return removed

    async def purge_expired(self) -> int:
        """Drop windows that have ended, using the limiter's clock."""
        removed = await self.store.purge_expired(self.clock.now())
        if removed:
            logger.debug("Purged expired rate windows", removed=removed)
        return removed
