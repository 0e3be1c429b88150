"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from gatekeeper.config import (
    CacheSettings,
    DatabaseSettings,
    LoggingSettings,
    RateLimitSettings,
    SecuritySettings,
    Settings,
)
from gatekeeper.core.exceptions import SinkError
from gatekeeper.core.log_record import LogRecord, Severity
from gatekeeper.core.log_sinks import LogSink
from gatekeeper.core.metrics import MetricsCollector
from gatekeeper.main import create_app

ADMIN_TOKEN = "test_admin_token_123456789abc"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class RecordingSink(LogSink):
    """Sink that keeps every record it is given."""

    def __init__(self, name: str = "recording", min_severity: Severity = Severity.DEBUG) -> None:
        self.name = name
        self.min_severity = min_severity
        self.records: List[LogRecord] = []

    async def write(self, record: LogRecord) -> None:
        self.records.append(record)

    @property
    def messages(self) -> List[str]:
        return [r.message for r in self.records]


class FailingSink(LogSink):
    """Sink whose every write fails."""

    def __init__(self, name: str = "failing", silent: bool = False) -> None:
        self.name = name
        self.silent_failures = silent
        self.attempts = 0

    async def write(self, record: LogRecord) -> None:
        self.attempts += 1
        raise SinkError(self.name, "destination unreachable")


class FakeUpstream:
    """Stands in for UpstreamClient; counts calls per resource."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: Dict[str, int] = {}
        self.fail = False
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def _respond(self, resource: str, payload: Any) -> Any:
        self.calls[resource] = self.calls.get(resource, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("upstream down")
        return payload

    async def trending(self) -> Any:
        return await self._respond("trending", {"coins": [{"item": {"id": "bitcoin"}}]})

    async def coin(self, coin_id: str) -> Any:
        return await self._respond(f"coin:{coin_id}", {"id": coin_id, "market_data": {"current_price": {"usd": 1}}})

    async def news(self, coin: Optional[str] = None) -> Any:
        return await self._respond(f"news:{coin}", {"Data": [{"title": f"News about {coin or 'crypto'}"}]})


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Private Prometheus registry so collectors never clash between tests."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    return MetricsCollector(registry)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temporary directory."""
    return Settings(
        log_level="DEBUG",
        cache=CacheSettings(directory=tmp_path / "cache"),
        rate_limit=RateLimitSettings(capacity=5, window_seconds=60),
        logging=LoggingSettings(min_severity="debug", directory=tmp_path / "logs"),
        database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'gatekeeper.db'}"),
        security=SecuritySettings(admin_token=ADMIN_TOKEN),
    )


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def test_app(test_settings: Settings, fake_upstream: FakeUpstream, registry: CollectorRegistry, clock: ManualClock) -> Any:
    return create_app(test_settings, upstream=fake_upstream, metrics_registry=registry, clock=clock)


@pytest.fixture
def test_client(test_app: Any) -> Generator[TestClient, None, None]:
    """FastAPI test client with test configuration."""
    with TestClient(test_app) as client:
        yield client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
