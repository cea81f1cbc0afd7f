import asyncio
import logging
import math
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import AsyncSessionLocal
from app.models.health import HealthAlert, HealthMeasurement
from app.models.merged_server import MergedServer
from app.services.pulsemcp_client import PulseMCPClient, get_pulsemcp_client
from app.utils.periodic import PeriodicTask
from app.utils.run_helpers import create_batches, format_duration
from app.utils.serialization import model_to_dict
from app.utils.time_helpers import age_in_days, to_iso, utc_now

logger = logging.getLogger(__name__)

CHECK_BATCH_SIZE = 10
BATCH_PAUSE_SECONDS = 1.0
RELIABILITY_WINDOW = 100
ALERT_COOLDOWN = timedelta(hours=24)
STABLE_CHANGE_RATIO = 0.1
HIGH_CONFIDENCE = 70


class HealthMonitor:
    """
    Scores the health of every catalog entry and tracks reliability, trends
    and alerts over time.

    Health comes from the PulseMCP directory when the entry is listed there
    and is otherwise estimated from the entry's own metadata.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: Optional[PulseMCPClient] = None,
        critical_threshold: Optional[int] = None,
        warning_threshold: Optional[int] = None,
        reliability_threshold: Optional[int] = None,
        min_data_points: int = 5,
        smoothing_factor: float = 0.3,
        trend_period_days: Optional[int] = None,
    ):
        self.session = session
        self.client = client or get_pulsemcp_client()
        self.critical_threshold = critical_threshold or settings.HEALTH_CRITICAL_THRESHOLD
        self.warning_threshold = warning_threshold or settings.HEALTH_WARNING_THRESHOLD
        self.reliability_threshold = reliability_threshold or settings.HEALTH_RELIABILITY_THRESHOLD
        self.min_data_points = min_data_points
        self.smoothing_factor = smoothing_factor
        self.trend_period_days = trend_period_days or settings.HEALTH_TREND_PERIOD_DAYS
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "servers": {"total": 0, "healthy": 0, "warning": 0, "critical": 0, "unavailable": 0},
            "trends": {"improving": 0, "stable": 0, "declining": 0},
            "alerts": {"generated": 0, "critical": 0, "warnings": 0},
            "processing": {"last_check": None, "errors": [], "warnings": []},
        }

    def determine_status(self, score: float) -> str:
        if score >= self.warning_threshold:
            return "healthy"
        if score >= self.critical_threshold:
            return "warning"
        return "critical"

    async def run_health_check(self) -> Dict[str, Any]:
        """
        Check every merged server, then refresh trends and alerts.

        Returns {"stats", "duration"}, or {"servers": 0, "skipped": True}
        when the catalog is empty.
        """
        self.stats = self._empty_stats()
        started = time.monotonic()

        servers = await self.get_servers_to_monitor()
        self.stats["servers"]["total"] = len(servers)
        if not servers:
            logger.warning("No servers to monitor")
            return {"servers": 0, "skipped": True}

        batches = create_batches(servers, CHECK_BATCH_SIZE)
        logger.info(f"Checking health of {len(servers)} servers in {len(batches)} batches")

        try:
            for i, batch in enumerate(batches):
                logger.debug(f"Health batch {i + 1}/{len(batches)}: {len(batch)} servers")
                results = await asyncio.gather(
                    *(self.fetch_health(server) for server in batch), return_exceptions=True
                )
                for server, result in zip(batch, results):
                    await self.record_result(server, result)
                await self.session.commit()

                if i < len(batches) - 1:
                    await asyncio.sleep(BATCH_PAUSE_SECONDS)

            await self.analyze_trends()
            await self.generate_alerts()
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            self.stats["processing"]["errors"].append(
                {"type": "health_check", "error": str(e), "timestamp": to_iso(utc_now())}
            )
            logger.error(f"Health check failed: {e}")
            raise

        self.stats["processing"]["last_check"] = to_iso(utc_now())
        duration = time.monotonic() - started
        servers_stats = self.stats["servers"]
        logger.info(
            f"Health check completed in {format_duration(duration)}: {servers_stats['healthy']} healthy, "
            f"{servers_stats['warning']} warning, {servers_stats['critical']} critical, "
            f"{servers_stats['unavailable']} unavailable, {self.stats['alerts']['generated']} alerts"
        )
        return {"stats": self.stats, "duration": format_duration(duration)}

    async def get_servers_to_monitor(self) -> List[MergedServer]:
        result = await self.session.execute(
            select(MergedServer).order_by(
                MergedServer.verified.desc().nulls_last(),
                MergedServer.confidence.desc().nulls_last(),
                MergedServer.github_stars.desc().nulls_last(),
            )
        )
        return list(result.scalars())

    async def fetch_health(self, server: MergedServer) -> Dict[str, Any]:
        health = None
        if server.pulsemcp_server_id:
            health = await self.get_health_from_pulsemcp(server.pulsemcp_server_id)
        if health is None:
            health = self.estimate_health(server)
        return health

    async def get_health_from_pulsemcp(self, server_id: str) -> Optional[Dict[str, Any]]:
        details = await self.client.get_server_details(server_id)
        if not details:
            logger.debug(f"No PulseMCP health for {server_id}, estimating instead")
            return None
        score = details.get("healthScore") or 0
        return {
            "health_score": score,
            "status": self.determine_status(score),
            "source": "pulsemcp",
            "factors": [],
            "response_time": None,
        }

    def estimate_health(self, server: MergedServer) -> Dict[str, Any]:
        """Score a server from its catalog metadata when no live health is available."""
        score = 50.0
        factors = []

        if server.verified:
            score += 20
            factors.append("verified")

        stars = server.github_stars or 0
        if stars > 10:
            score += min(stars / 10, 15)
            factors.append("popular")

        last_update = server.last_updated or server.github_analyzed_at or server.pulsemcp_synced_at
        if last_update:
            days = age_in_days(last_update)
            if days < 30:
                score += 10
                factors.append("recently_updated")
            elif days > 180:
                score -= 20
                factors.append("outdated")

        if (server.confidence or 0) >= HIGH_CONFIDENCE:
            score += 10
            factors.append("high_confidence")

        score = round(min(score, 100))
        return {
            "health_score": score,
            "status": self.determine_status(score),
            "source": "estimated",
            "factors": factors,
            "response_time": None,
        }

    async def record_result(self, server: MergedServer, result: Any) -> None:
        if isinstance(result, Exception):
            logger.warning(f"Failed to check health for {server.name}: {result}")
            self.stats["processing"]["warnings"].append(f"Failed to check health for {server.name}: {result}")
            self.stats["servers"]["unavailable"] += 1
            self.session.add(HealthMeasurement(
                server_key=server.server_key,
                health_score=0,
                status="unavailable",
                source="pulsemcp" if server.pulsemcp_server_id else "estimated",
                factors=[],
                error_message=str(result),
            ))
            await self.session.flush()
            return

        self.session.add(HealthMeasurement(
            server_key=server.server_key,
            health_score=result["health_score"],
            status=result["status"],
            response_time=result.get("response_time"),
            source=result["source"],
            factors=result.get("factors") or [],
        ))
        await self.session.flush()

        server.health_score = result["health_score"]
        server.health_status = result["status"]
        server.reliability_score = await self.calculate_reliability(server.server_key)
        server.health_updated_at = utc_now()
        self.stats["servers"][result["status"]] += 1

    async def calculate_reliability(self, server_key: str) -> int:
        """
        Weighted average of recent scores, newest first with weight 1/sqrt(i+1).

        Unavailable measurements count as zero.
        """
        result = await self.session.execute(
            select(HealthMeasurement.health_score, HealthMeasurement.status)
            .where(HealthMeasurement.server_key == server_key)
            .order_by(HealthMeasurement.measured_at.desc(), HealthMeasurement.id.desc())
            .limit(RELIABILITY_WINDOW)
        )
        rows = result.all()
        if not rows:
            return 0

        weighted = 0.0
        total_weight = 0.0
        for i, (score, status) in enumerate(rows):
            weight = 1 / math.sqrt(i + 1)
            weighted += (0 if status == "unavailable" else score) * weight
            total_weight += weight
        return round(weighted / total_weight)

    def smoothed_trend(self, scores: List[int]) -> str:
        """Exponentially smooth a chronological series and compare its ends."""
        if len(scores) < self.min_data_points:
            return "stable"

        current = float(scores[0])
        smoothed = []
        for score in scores:
            current = self.smoothing_factor * score + (1 - self.smoothing_factor) * current
            smoothed.append(current)

        start, end = smoothed[0], smoothed[-1]
        change = end - start
        if start == 0:
            return "stable" if change == 0 else "improving"
        if abs(change) / start < STABLE_CHANGE_RATIO:
            return "stable"
        return "improving" if change > 0 else "declining"

    async def analyze_trends(self) -> None:
        cutoff = utc_now() - timedelta(days=self.trend_period_days)
        result = await self.session.execute(
            select(HealthMeasurement.server_key, HealthMeasurement.health_score)
            .where(HealthMeasurement.measured_at >= cutoff)
            .order_by(HealthMeasurement.measured_at, HealthMeasurement.id)
        )
        history: Dict[str, List[int]] = {}
        for server_key, score in result.all():
            history.setdefault(server_key, []).append(score)

        eligible = {key: scores for key, scores in history.items() if len(scores) >= self.min_data_points}
        if not eligible:
            return

        servers = await self.session.execute(
            select(MergedServer).where(MergedServer.server_key.in_(list(eligible)))
        )
        for server in servers.scalars():
            trend = self.smoothed_trend(eligible[server.server_key])
            server.health_trend = trend
            self.stats["trends"][trend] += 1
        await self.session.flush()

    async def generate_alerts(self) -> None:
        critical = await self.session.execute(
            select(MergedServer).where(
                MergedServer.health_score < self.critical_threshold,
                MergedServer.health_status == "critical",
            )
        )
        for server in critical.scalars():
            if await self.create_alert(server, "critical", f"Server health is critical ({server.health_score}%)"):
                self.stats["alerts"]["critical"] += 1

        warning = await self.session.execute(
            select(MergedServer).where(
                MergedServer.health_score.between(self.critical_threshold, self.warning_threshold),
                MergedServer.health_status == "warning",
            )
        )
        for server in warning.scalars():
            if await self.create_alert(server, "warning", f"Server health is degraded ({server.health_score}%)"):
                self.stats["alerts"]["warnings"] += 1

        declining = await self.session.execute(
            select(MergedServer).where(
                MergedServer.health_trend == "declining",
                MergedServer.reliability_score < self.reliability_threshold,
            )
        )
        for server in declining.scalars():
            if await self.create_alert(server, "warning", "Server showing declining health trend"):
                self.stats["alerts"]["warnings"] += 1

        self.stats["alerts"]["generated"] = self.stats["alerts"]["critical"] + self.stats["alerts"]["warnings"]

    async def create_alert(self, server: MergedServer, severity: str, message: str) -> bool:
        """Insert an alert unless the same server and severity fired within the cooldown."""
        recent = await self.session.scalar(
            select(HealthAlert.id).where(
                HealthAlert.server_key == server.server_key,
                HealthAlert.severity == severity,
                HealthAlert.created_at > utc_now() - ALERT_COOLDOWN,
            ).limit(1)
        )
        if recent is not None:
            return False

        self.session.add(HealthAlert(
            server_key=server.server_key,
            server_name=server.name,
            severity=severity,
            message=message,
            health_score=server.health_score,
            reliability_score=server.reliability_score,
        ))
        await self.session.flush()
        logger.info(f"{severity.upper()} alert: {server.name} - {message}")
        return True

    async def acknowledge_alert(self, alert_id: int) -> Optional[Dict[str, Any]]:
        alert = await self.session.get(HealthAlert, alert_id)
        if alert is None:
            return None
        alert.acknowledged = True
        alert.acknowledged_at = utc_now()
        await self.session.flush()
        return model_to_dict(alert)

    async def generate_health_report(self, period_days: int = 7, include_alerts: bool = True) -> Dict[str, Any]:
        cutoff = utc_now() - timedelta(days=period_days)
        in_period = MergedServer.health_updated_at >= cutoff

        overview = (await self.session.execute(
            select(
                func.count(),
                func.avg(MergedServer.health_score),
                func.avg(MergedServer.reliability_score),
                func.sum(case((MergedServer.health_status == "healthy", 1), else_=0)),
                func.sum(case((MergedServer.health_status == "warning", 1), else_=0)),
                func.sum(case((MergedServer.health_status == "critical", 1), else_=0)),
            ).where(in_period)
        )).one()
        total, avg_health, avg_reliability, healthy, warning, critical = overview

        trends = await self.session.execute(
            select(MergedServer.health_trend, func.count()).where(in_period).group_by(MergedServer.health_trend)
        )

        top = await self.session.execute(
            select(MergedServer)
            .where(in_period)
            .order_by(MergedServer.reliability_score.desc().nulls_last(), MergedServer.health_score.desc().nulls_last())
            .limit(10)
        )
        problematic = await self.session.execute(
            select(MergedServer)
            .where(
                in_period,
                (MergedServer.health_status.in_(["warning", "critical"]))
                | (MergedServer.health_trend == "declining"),
            )
            .order_by(MergedServer.health_score.asc(), MergedServer.reliability_score.asc())
            .limit(10)
        )

        report = {
            "period": period_days,
            "generated_at": to_iso(utc_now()),
            "overview": {
                "total_servers": total or 0,
                "average_health": round(avg_health or 0),
                "average_reliability": round(avg_reliability or 0),
                "health_distribution": {
                    "healthy": healthy or 0,
                    "warning": warning or 0,
                    "critical": critical or 0,
                },
            },
            "trends": {trend or "unknown": count for trend, count in trends.all()},
            "top_performers": [
                {
                    "name": server.name,
                    "health_score": server.health_score,
                    "reliability_score": server.reliability_score,
                    "health_trend": server.health_trend,
                }
                for server in top.scalars()
            ],
            "problematic_servers": [
                {
                    "name": server.name,
                    "health_score": server.health_score,
                    "reliability_score": server.reliability_score,
                    "health_status": server.health_status,
                    "health_trend": server.health_trend,
                }
                for server in problematic.scalars()
            ],
        }

        if include_alerts:
            alerts = await self.session.execute(
                select(HealthAlert)
                .where(HealthAlert.created_at >= cutoff)
                .order_by(HealthAlert.created_at.desc(), HealthAlert.id.desc())
                .limit(50)
            )
            recent = [model_to_dict(alert) for alert in alerts.scalars()]
            report["alerts"] = {
                "total": len(recent),
                "critical": sum(1 for alert in recent if alert["severity"] == "critical"),
                "warnings": sum(1 for alert in recent if alert["severity"] == "warning"),
                "recent": recent[:10],
            }

        return report


_monitoring_task: Optional[PeriodicTask] = None


def start_monitoring(interval_seconds: Optional[int] = None) -> PeriodicTask:
    """Run a health check now and then every `interval_seconds` on the running loop."""
    global _monitoring_task
    interval = interval_seconds or settings.HEALTH_CHECK_INTERVAL_SECONDS

    async def job():
        async with AsyncSessionLocal() as session:
            await HealthMonitor(session).run_health_check()

    stop_monitoring()
    _monitoring_task = PeriodicTask("health check", interval, job, run_immediately=True)
    _monitoring_task.start()
    return _monitoring_task


def stop_monitoring() -> None:
    global _monitoring_task
    if _monitoring_task is not None:
        _monitoring_task.stop()
        _monitoring_task = None


def is_monitoring() -> bool:
    return bool(_monitoring_task and _monitoring_task.running)
