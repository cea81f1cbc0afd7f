"""
Tests for the pure scoring logic of HealthMonitor and the sync-side trend helper.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.merged_server import MergedServer
from app.services.health_monitor import HealthMonitor
from app.services.pulsemcp_sync import compute_health_trend
from app.utils.time_helpers import utc_now


def make_server(**overrides) -> MergedServer:
    values = dict(
        server_key="github:acme/weather-server",
        name="weather-server",
        verified=False,
        github_stars=0,
        confidence=40,
        last_updated=None,
        github_analyzed_at=None,
        pulsemcp_synced_at=None,
        pulsemcp_server_id=None,
    )
    values.update(overrides)
    return MergedServer(**values)


class TestHealthStatus:
    def setup_method(self):
        self.monitor = HealthMonitor(MagicMock(), client=MagicMock(), critical_threshold=30, warning_threshold=60)

    def test_determine_status_bands(self):
        assert self.monitor.determine_status(75) == "healthy"
        assert self.monitor.determine_status(60) == "healthy"
        assert self.monitor.determine_status(45) == "warning"
        assert self.monitor.determine_status(30) == "warning"
        assert self.monitor.determine_status(10) == "critical"

    def test_estimate_health_for_strong_server(self):
        server = make_server(
            verified=True,
            github_stars=200,
            confidence=80,
            last_updated=utc_now() - timedelta(days=1),
        )

        health = self.monitor.estimate_health(server)

        assert health["health_score"] == 100
        assert health["status"] == "healthy"
        assert health["source"] == "estimated"
        assert health["factors"] == ["verified", "popular", "recently_updated", "high_confidence"]

    def test_estimate_health_for_outdated_server(self):
        server = make_server(last_updated=utc_now() - timedelta(days=400))

        health = self.monitor.estimate_health(server)

        assert health["health_score"] == 30
        assert health["status"] == "warning"
        assert health["factors"] == ["outdated"]

    def test_estimate_health_falls_back_to_analysis_time(self):
        server = make_server(github_analyzed_at=utc_now() - timedelta(days=2))

        health = self.monitor.estimate_health(server)

        assert health["health_score"] == 60
        assert "recently_updated" in health["factors"]

    def test_estimate_health_falls_back_to_sync_time(self):
        server = make_server(pulsemcp_synced_at=utc_now() - timedelta(days=200))

        health = self.monitor.estimate_health(server)

        assert health["health_score"] == 30
        assert health["factors"] == ["outdated"]

    def test_last_updated_wins_over_fallbacks(self):
        server = make_server(
            last_updated=utc_now() - timedelta(days=300),
            github_analyzed_at=utc_now() - timedelta(days=1),
        )

        assert "outdated" in self.monitor.estimate_health(server)["factors"]

    def test_estimate_health_without_timestamps(self):
        health = self.monitor.estimate_health(make_server())

        assert health["health_score"] == 50
        assert health["factors"] == []

    def test_star_bonus_is_capped(self):
        health = self.monitor.estimate_health(make_server(github_stars=10000))

        assert health["health_score"] == 65

    @pytest.mark.asyncio
    async def test_pulsemcp_health_is_used_when_listed(self):
        self.monitor.client.get_server_details = AsyncMock(return_value={"healthScore": 42})

        health = await self.monitor.fetch_health(make_server(pulsemcp_server_id="pulsemcp-1"))

        assert health["health_score"] == 42
        assert health["status"] == "warning"
        assert health["source"] == "pulsemcp"

    @pytest.mark.asyncio
    async def test_unlisted_server_is_estimated(self):
        self.monitor.client.get_server_details = AsyncMock(return_value=None)

        health = await self.monitor.fetch_health(make_server(pulsemcp_server_id="pulsemcp-404"))

        assert health["source"] == "estimated"
        self.monitor.client.get_server_details.assert_awaited_once_with("pulsemcp-404")


class TestSmoothedTrend:
    def setup_method(self):
        self.monitor = HealthMonitor(MagicMock(), client=MagicMock(), min_data_points=5, smoothing_factor=0.3)

    def test_too_few_points_is_stable(self):
        assert self.monitor.smoothed_trend([10, 50, 90, 100]) == "stable"

    def test_rising_series_is_improving(self):
        assert self.monitor.smoothed_trend([40, 50, 60, 70, 80]) == "improving"

    def test_falling_series_is_declining(self):
        assert self.monitor.smoothed_trend([80, 70, 60, 50, 40]) == "declining"

    def test_small_change_is_stable(self):
        assert self.monitor.smoothed_trend([80, 81, 80, 82, 81]) == "stable"

    def test_zero_start(self):
        assert self.monitor.smoothed_trend([0, 0, 0, 0, 0]) == "stable"
        assert self.monitor.smoothed_trend([0, 0, 0, 10, 20]) == "improving"


class TestComputeHealthTrend:
    def test_single_value_is_stable(self):
        assert compute_health_trend([]) == "stable"
        assert compute_health_trend([70]) == "stable"

    def test_newer_half_higher(self):
        assert compute_health_trend([50, 60, 70, 80]) == "improving"

    def test_newer_half_lower(self):
        assert compute_health_trend([90, 80, 60]) == "declining"

    def test_equal_halves(self):
        assert compute_health_trend([70, 70, 70, 70]) == "stable"
