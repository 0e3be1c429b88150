"""
Integration tests for admin, health and metrics endpoints.
"""

from typing import Dict

from fastapi.testclient import TestClient

from conftest import FakeUpstream, ManualClock
from gatekeeper.core.cache_store import build_cache_key


class TestAdminAuthentication:

    def test_missing_token_is_rejected(self, test_client: TestClient) -> None:
        response = test_client.delete("/v1/admin/cache")

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_error"

    def test_wrong_token_is_rejected(self, test_client: TestClient) -> None:
        response = test_client.delete("/v1/admin/cache", headers={"X-Admin-Token": "guess"})
        assert response.status_code == 401


class TestCacheAdministration:

    def test_invalidate_forces_upstream_refresh(
        self, test_client: TestClient, fake_upstream: FakeUpstream, admin_headers: Dict[str, str]
    ) -> None:
        test_client.get("/v1/market/trending")
        key = build_cache_key("market", "trending")

        response = test_client.delete(f"/v1/admin/cache/{key}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"key": key, "removed": True}

        test_client.get("/v1/market/trending")
        assert fake_upstream.calls == {"trending": 2}

    def test_invalidate_unknown_key(self, test_client: TestClient, admin_headers: Dict[str, str]) -> None:
        response = test_client.delete("/v1/admin/cache/market:trending:nope", headers=admin_headers)
        assert response.json()["removed"] is False

    def test_clear_cache(
        self, test_client: TestClient, fake_upstream: FakeUpstream, admin_headers: Dict[str, str]
    ) -> None:
        test_client.get("/v1/market/trending")
        test_client.get("/v1/news")

        response = test_client.delete("/v1/admin/cache", headers=admin_headers)

        assert response.json() == {"removed": 2}


class TestCacheStatistics:

    def test_stats_count_lookups(
        self, test_client: TestClient, admin_headers: Dict[str, str]
    ) -> None:
        test_client.get("/v1/market/trending")
        test_client.get("/v1/market/trending")

        response = test_client.get("/v1/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["hits"] == 1
        assert body["misses"] == 1
        assert body["failures"] == 0
        assert body["in_flight"] == 0

    def test_stats_require_token(self, test_client: TestClient) -> None:
        assert test_client.get("/v1/admin/stats").status_code == 401


class TestExpiryPurge:

    def test_purge_removes_ended_windows_and_entries(
        self, test_app, test_client: TestClient, clock: ManualClock, admin_headers: Dict[str, str]
    ) -> None:
        test_client.get("/v1/market/trending")
        clock.advance(3600)

        response = test_client.delete("/v1/admin/expired", headers=admin_headers)

        assert response.status_code == 200
        # The purge request itself opened a fresh window after the old one ended
        assert response.json() == {"cache_entries": 1, "rate_windows": 0}
        assert len(test_app.state.rate_limiter.store) == 1

    def test_purger_runs_with_the_app(self, test_app, test_client: TestClient) -> None:
        assert test_app.state.purger.running is True


class TestRateLimitAdministration:

    def test_reset_identity_window(self, test_client: TestClient, admin_headers: Dict[str, str]) -> None:
        for _ in range(4):
            test_client.get("/v1/news")

        # The admin call itself is the fifth admitted request
        response = test_client.delete("/v1/admin/rate-limits/ip:testclient", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"identity": "ip:testclient", "removed": True}

        for _ in range(5):
            assert test_client.get("/v1/news").status_code == 200


class TestHealth:

    def test_liveness(self, test_client: TestClient) -> None:
        response = test_client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness(self, test_client: TestClient) -> None:
        response = test_client.get("/readyz")

        assert response.status_code == 200
        assert response.json()["checks"] == {"cache_store": "ok", "rate_window_store": "ok"}

    def test_readiness_reports_failed_store(self, test_app, test_client: TestClient) -> None:
        class DownStore:
            async def ping(self) -> None:
                from gatekeeper.core.exceptions import StoreUnavailable
                raise StoreUnavailable("file", "disk gone")

        test_app.state.computation_cache.store = DownStore()

        response = test_client.get("/readyz")

        assert response.status_code == 503
        assert response.json()["failed_checks"] == ["cache_store"]


class TestMetricsEndpoint:

    def test_exposes_cache_and_request_metrics(self, test_client: TestClient) -> None:
        test_client.get("/v1/market/trending")
        test_client.get("/v1/market/trending")

        body = test_client.get("/metrics").text

        assert 'computation_cache_lookups_total{result="misses"} 1.0' in body
        assert 'computation_cache_lookups_total{result="hits"} 1.0' in body
        assert 'endpoint="/v1/market/trending"' in body


class TestFileLogging:

    def test_service_start_is_written_to_log_file(self, test_settings, test_client: TestClient) -> None:
        log_files = list(test_settings.logging.directory.glob("*.log"))

        assert len(log_files) == 1
        assert "Service started" in log_files[0].read_text()
