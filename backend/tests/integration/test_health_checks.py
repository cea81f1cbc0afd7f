"""
Integration tests for health checks over the merged catalog.
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.health import HealthAlert, HealthMeasurement
from app.models.merged_server import MergedServer
from app.services.health_monitor import HealthMonitor
from app.services.pulsemcp_client import PulseMCPClient
from app.utils.time_helpers import utc_now


async def seed_catalog(session: AsyncSession):
    session.add_all([
        MergedServer(
            server_key="pulsemcp:pulsemcp-1",
            pulsemcp_server_id="pulsemcp-1",
            name="MCP Server 1",
            data_sources="pulsemcp",
            verified=True,
            confidence=80,
        ),
        # Estimated: 50 base, minus 20 for a stale repository
        MergedServer(
            server_key="github:old/server",
            name="old-server",
            data_sources="github",
            confidence=20,
            last_updated=datetime(2020, 1, 1),
        ),
        # Estimated: 50 base with nothing to adjust it
        MergedServer(
            server_key="github:plain/server",
            name="plain-server",
            data_sources="github",
            confidence=20,
        ),
    ])
    await session.commit()


async def count(session: AsyncSession, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def servers_by_key(session: AsyncSession):
    return {row.server_key: row for row in (await session.scalars(select(MergedServer))).all()}


class TestRunHealthCheck:
    @pytest.mark.asyncio
    async def test_scores_every_server(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        directory_score = mock_pulsemcp.mock_servers[0]["healthScore"]

        result = await HealthMonitor(db_session, client=mock_pulsemcp).run_health_check()

        stats = result["stats"]
        assert stats["servers"] == {"total": 3, "healthy": 1, "warning": 1, "critical": 1, "unavailable": 0}
        assert stats["alerts"] == {"generated": 2, "critical": 1, "warnings": 1}
        assert stats["processing"]["last_check"].endswith("Z")

        servers = await servers_by_key(db_session)
        listed = servers["pulsemcp:pulsemcp-1"]
        assert listed.health_score == directory_score
        assert listed.health_status == "healthy"
        assert listed.reliability_score == directory_score
        assert listed.health_updated_at is not None

        assert servers["github:old/server"].health_score == 30
        assert servers["github:old/server"].health_status == "critical"
        assert servers["github:plain/server"].health_status == "warning"

        measurements = (await db_session.scalars(
            select(HealthMeasurement).where(HealthMeasurement.server_key == "github:old/server")
        )).all()
        assert [(m.source, m.factors) for m in measurements] == [("estimated", ["outdated"])]

        alerts = {alert.server_key: alert for alert in (await db_session.scalars(select(HealthAlert))).all()}
        assert alerts["github:old/server"].severity == "critical"
        assert alerts["github:old/server"].message == "Server health is critical (30%)"
        assert alerts["github:plain/server"].severity == "warning"

    @pytest.mark.asyncio
    async def test_repeat_alerts_are_suppressed(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        monitor = HealthMonitor(db_session, client=mock_pulsemcp)
        await monitor.run_health_check()

        result = await monitor.run_health_check()

        assert result["stats"]["alerts"]["generated"] == 0
        assert await count(db_session, HealthAlert) == 2
        assert await count(db_session, HealthMeasurement) == 6

    @pytest.mark.asyncio
    async def test_failed_lookup_is_unavailable(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        monitor = HealthMonitor(db_session, client=mock_pulsemcp)

        with patch.object(monitor, "get_health_from_pulsemcp", AsyncMock(side_effect=RuntimeError("directory down"))):
            result = await monitor.run_health_check()

        assert result["stats"]["servers"]["unavailable"] == 1
        assert result["stats"]["servers"]["healthy"] == 0

        measurement = await db_session.scalar(
            select(HealthMeasurement).where(HealthMeasurement.server_key == "pulsemcp:pulsemcp-1")
        )
        assert measurement.status == "unavailable"
        assert measurement.health_score == 0
        assert measurement.error_message == "directory down"

        servers = await servers_by_key(db_session)
        assert servers["pulsemcp:pulsemcp-1"].health_status == "unknown"

    @pytest.mark.asyncio
    async def test_declining_history_sets_trend(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        now = utc_now()
        for i, score in enumerate([95, 90, 85, 80, 75]):
            db_session.add(HealthMeasurement(
                server_key="github:plain/server",
                health_score=score,
                status="healthy",
                source="estimated",
                measured_at=now - timedelta(days=5 - i),
            ))
        await db_session.commit()

        result = await HealthMonitor(db_session, client=mock_pulsemcp).run_health_check()

        assert result["stats"]["trends"]["declining"] == 1
        plain = (await servers_by_key(db_session))["github:plain/server"]
        assert plain.health_trend == "declining"
        assert plain.reliability_score < 80
        # The degraded-health warning already covers this server today
        alerts = (await db_session.scalars(
            select(HealthAlert).where(HealthAlert.server_key == "github:plain/server")
        )).all()
        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_empty_catalog_is_skipped(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        result = await HealthMonitor(db_session, client=mock_pulsemcp).run_health_check()

        assert result == {"servers": 0, "skipped": True}


class TestReportsAndAlerts:
    @pytest.mark.asyncio
    async def test_health_report(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        monitor = HealthMonitor(db_session, client=mock_pulsemcp)
        await monitor.run_health_check()

        report = await monitor.generate_health_report(period_days=7)

        overview = report["overview"]
        assert overview["total_servers"] == 3
        assert overview["health_distribution"] == {"healthy": 1, "warning": 1, "critical": 1}
        assert report["top_performers"][0]["name"] == "MCP Server 1"
        assert [s["name"] for s in report["problematic_servers"]] == ["old-server", "plain-server"]
        assert report["alerts"]["total"] == 2
        assert report["alerts"]["critical"] == 1
        assert report["alerts"]["warnings"] == 1

        without_alerts = await monitor.generate_health_report(include_alerts=False)
        assert "alerts" not in without_alerts

    @pytest.mark.asyncio
    async def test_acknowledge_alert(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await seed_catalog(db_session)
        monitor = HealthMonitor(db_session, client=mock_pulsemcp)
        await monitor.run_health_check()
        alert_id = await db_session.scalar(select(HealthAlert.id).where(HealthAlert.severity == "critical"))

        acknowledged = await monitor.acknowledge_alert(alert_id)

        assert acknowledged["acknowledged"] is True
        assert acknowledged["acknowledged_at"].endswith("Z")
        assert await monitor.acknowledge_alert(9999) is None
