"""
Tests for the fixed-window RateLimiter and its window stores.
"""

import asyncio
from pathlib import Path
from typing import Tuple

import pytest
from prometheus_client import CollectorRegistry

from conftest import ManualClock, RecordingSink
from gatekeeper.core.database import create_db_engine, init_db
from gatekeeper.core.exceptions import StoreUnavailable
from gatekeeper.core.fanout_logger import FanoutLogger
from gatekeeper.core.metrics import MetricsCollector
from gatekeeper.core.rate_limiter import (
    MemoryRateWindowStore,
    RateLimiter,
    RateWindow,
    SqlRateWindowStore,
)


class DownWindowStore:
    """Window store that is always unreachable."""

    async def hit(self, identity: str, capacity: int, window_length: float, now: float) -> Tuple[bool, RateWindow]:
        raise StoreUnavailable("test", "window store down")

    async def reset(self, identity: str) -> bool:
        raise StoreUnavailable("test", "window store down")

    async def purge_expired(self, now: float) -> int:
        raise StoreUnavailable("test", "window store down")

    async def ping(self) -> None:
        raise StoreUnavailable("test", "window store down")


@pytest.fixture
def sql_engine(tmp_path: Path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'windows.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


class TestRateWindow:

    def test_retry_after_rounds_up(self) -> None:
        window = RateWindow(identity="ip:1", window_start=100.0, count=5, capacity=5, window_length=60.0)
        assert window.retry_after(100.0) == 60
        assert window.retry_after(159.2) == 1
        assert window.retry_after(130.5) == 30

    def test_expiry_is_inclusive_of_window_end(self) -> None:
        window = RateWindow(identity="ip:1", window_start=100.0, count=1, capacity=5, window_length=60.0)
        assert not window.is_expired(159.999)
        assert window.is_expired(160.0)


class TestAdmissionBoundary:
    """capacity=5, window=60s."""

    @pytest.mark.asyncio
    async def test_sixth_request_rejected_until_window_passes(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=5, window_seconds=60, clock=clock)

        for _ in range(5):
            assert await limiter.admit("ip:203.0.113.7") is True
        assert await limiter.admit("ip:203.0.113.7") is False

        clock.advance(59)
        assert await limiter.admit("ip:203.0.113.7") is False

        clock.advance(1)
        assert await limiter.admit("ip:203.0.113.7") is True

    @pytest.mark.asyncio
    async def test_rejection_carries_retry_after(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=60, clock=clock)

        await limiter.check("ip:1")
        clock.advance(15.5)
        decision = await limiter.check("ip:1")

        assert decision.allowed is False
        assert decision.retry_after == 45
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_rejections_do_not_extend_the_window(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=10, clock=clock)

        await limiter.admit("ip:1")
        for _ in range(5):
            clock.advance(1)
            assert await limiter.admit("ip:1") is False

        clock.advance(5)
        assert await limiter.admit("ip:1") is True

    @pytest.mark.asyncio
    async def test_identities_are_isolated(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=60, clock=clock)

        assert await limiter.admit("ip:1") is True
        assert await limiter.admit("ip:2") is True
        assert await limiter.admit("ip:1") is False

    @pytest.mark.asyncio
    async def test_zero_capacity_rejects_everything(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=0, window_seconds=60, clock=clock)
        assert await limiter.admit("ip:1") is False

    @pytest.mark.asyncio
    async def test_disabled_limiter_admits_everything(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()
        limiter = RateLimiter(store, capacity=1, window_seconds=60, enabled=False, clock=clock)

        for _ in range(10):
            assert await limiter.admit("ip:1") is True
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_reset_clears_window(self, clock: ManualClock) -> None:
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=60, clock=clock)

        await limiter.admit("ip:1")
        assert await limiter.admit("ip:1") is False
        assert await limiter.reset("ip:1") is True
        assert await limiter.admit("ip:1") is True

    def test_window_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=0)


class TestConcurrency:
    """The counter never passes capacity."""

    @pytest.mark.asyncio
    async def test_no_over_admission_under_concurrency(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()
        limiter = RateLimiter(store, capacity=100, window_seconds=60, clock=clock)

        results = await asyncio.gather(*[limiter.admit("ip:1") for _ in range(1000)])

        assert sum(results) == 100
        admitted, window = await store.hit("ip:1", 100, 60.0, clock.now())
        assert admitted is False
        assert window.count == 100

    @pytest.mark.asyncio
    async def test_no_over_admission_across_threads(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()

        def hit() -> bool:
            admitted, _ = asyncio.run(store.hit("ip:1", 50, 60.0, clock.now()))
            return admitted

        results = await asyncio.gather(*[asyncio.to_thread(hit) for _ in range(200)])

        assert sum(results) == 50


class TestStoreOutage:
    """Outage behaviour: closed by default, open when configured, logged once."""

    @pytest.mark.asyncio
    async def test_fails_closed_by_default(self, clock: ManualClock) -> None:
        sink = RecordingSink()
        fanout = FanoutLogger([sink])
        limiter = RateLimiter(DownWindowStore(), capacity=5, window_seconds=60, logger=fanout, clock=clock)

        decisions = [await limiter.check("ip:1") for _ in range(3)]
        await fanout.drain()

        assert all(not d.allowed for d in decisions)
        assert decisions[0].retry_after == 60
        assert sink.messages.count("rate_limit store unavailable") == 1

    @pytest.mark.asyncio
    async def test_fails_open_when_configured(self, clock: ManualClock) -> None:
        sink = RecordingSink()
        fanout = FanoutLogger([sink])
        limiter = RateLimiter(
            DownWindowStore(), capacity=5, window_seconds=60, fail_open=True, logger=fanout, clock=clock
        )

        assert all([await limiter.admit("ip:1") for _ in range(3)])
        await fanout.drain()
        assert sink.messages.count("rate_limit store unavailable") == 1

    @pytest.mark.asyncio
    async def test_recovery_is_logged_once(self, clock: ManualClock) -> None:
        sink = RecordingSink()
        fanout = FanoutLogger([sink])
        limiter = RateLimiter(DownWindowStore(), capacity=5, window_seconds=60, logger=fanout, clock=clock)

        await limiter.admit("ip:1")
        limiter.store = MemoryRateWindowStore()
        assert await limiter.admit("ip:1") is True
        assert await limiter.admit("ip:1") is True
        await fanout.drain()

        assert sink.messages.count("rate_limit store recovered") == 1

    @pytest.mark.asyncio
    async def test_decisions_are_counted(self, clock: ManualClock) -> None:
        registry = CollectorRegistry()
        metrics = MetricsCollector(registry)
        limiter = RateLimiter(MemoryRateWindowStore(), capacity=1, window_seconds=60, metrics=metrics, clock=clock)

        await limiter.admit("ip:1")
        await limiter.admit("ip:1")

        assert registry.get_sample_value("admission_decisions_total", {"result": "allowed"}) == 1
        assert registry.get_sample_value("admission_decisions_total", {"result": "rejected"}) == 1


class TestExpiredWindows:
    """Windows of identities that never return are reclaimed."""

    @pytest.mark.asyncio
    async def test_hit_sweeps_ended_windows(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()
        limiter = RateLimiter(store, capacity=5, window_seconds=1, clock=clock)

        for i in range(5000):
            await limiter.admit(f"ip:10.0.{i // 256}.{i % 256}")
        assert len(store) == 5000

        clock.advance(3600)
        assert await limiter.admit("ip:192.0.2.1") is True

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_live_windows(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()
        limiter = RateLimiter(store, capacity=5, window_seconds=60, clock=clock)

        await limiter.admit("ip:old")
        clock.advance(30)
        await limiter.admit("ip:recent")
        clock.advance(30)
        await limiter.admit("ip:new")

        assert len(store) == 2
        decision = await limiter.check("ip:recent")
        assert decision.count == 2

    @pytest.mark.asyncio
    async def test_purge_uses_limiter_clock(self, clock: ManualClock) -> None:
        store = MemoryRateWindowStore()
        limiter = RateLimiter(store, capacity=5, window_seconds=60, clock=clock)
        await limiter.admit("ip:1")
        await limiter.admit("ip:2")

        assert await limiter.purge_expired() == 0
        clock.advance(60)
        assert await limiter.purge_expired() == 2
        assert len(store) == 0


class TestSqlRateWindowStore:
    """Windows kept in the rate_windows table."""

    @pytest.mark.asyncio
    async def test_boundary_matches_memory_store(self, sql_engine, clock: ManualClock) -> None:
        limiter = RateLimiter(SqlRateWindowStore(sql_engine), capacity=5, window_seconds=60, clock=clock)

        for _ in range(5):
            assert await limiter.admit("ip:1") is True
        assert await limiter.admit("ip:1") is False

        clock.advance(60)
        assert await limiter.admit("ip:1") is True

    @pytest.mark.asyncio
    async def test_window_survives_new_store_instance(self, sql_engine, clock: ManualClock) -> None:
        first = RateLimiter(SqlRateWindowStore(sql_engine), capacity=2, window_seconds=60, clock=clock)
        await first.admit("key:abc")
        await first.admit("key:abc")

        second = RateLimiter(SqlRateWindowStore(sql_engine), capacity=2, window_seconds=60, clock=clock)
        decision = await second.check("key:abc")

        assert decision.allowed is False
        assert decision.count == 2

    @pytest.mark.asyncio
    async def test_reset_and_purge(self, sql_engine, clock: ManualClock) -> None:
        store = SqlRateWindowStore(sql_engine)
        await store.hit("ip:1", 5, 60.0, clock.now())
        await store.hit("ip:2", 5, 10.0, clock.now())

        assert await store.reset("ip:1") is True
        assert await store.reset("ip:1") is False
        assert await store.purge_expired(clock.now() + 10) == 1

    @pytest.mark.asyncio
    async def test_database_error_raises_store_unavailable(self, sql_engine, clock: ManualClock) -> None:
        store = SqlRateWindowStore(sql_engine)
        with sql_engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE rate_windows")

        with pytest.raises(StoreUnavailable):
            await store.hit("ip:1", 5, 60.0, clock.now())
