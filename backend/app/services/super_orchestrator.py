import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.merged_server import MergedServer
from app.schemas.discovery import SuperDiscoveryOptions
from app.services.data_merger import DataMerger
from app.services.discovery_orchestrator import DiscoveryOrchestrator
from app.services.github_service import GitHubService
from app.services.health_monitor import HealthMonitor
from app.services.pulsemcp_client import PulseMCPClient
from app.services.pulsemcp_sync import PulseMCPSync
from app.services.storage import StorageService
from app.utils.run_helpers import format_duration, generate_run_id
from app.utils.time_helpers import to_iso, utc_now

logger = logging.getLogger(__name__)

TOTAL_PHASES = 5


class SuperOrchestrator:
    """
    End-to-end catalog build: GitHub discovery, PulseMCP sync, merge and
    health check, followed by a combined report.

    Only the GitHub phase is fatal. Later phases record their failure and
    the run continues with whatever data is available.
    """

    def __init__(
        self,
        session: AsyncSession,
        options: Optional[SuperDiscoveryOptions] = None,
        github: Optional[GitHubService] = None,
        pulsemcp_client: Optional[PulseMCPClient] = None,
    ):
        self.session = session
        self.options = options or SuperDiscoveryOptions()
        self.storage = StorageService(session)
        self.discovery = DiscoveryOrchestrator(session, self.options, github=github)
        self.pulsemcp_client = pulsemcp_client or PulseMCPClient(mock_mode=self.options.mock_pulsemcp)
        self.sync = PulseMCPSync(session, client=self.pulsemcp_client)
        self.merger = DataMerger(session)
        self.health_monitor = HealthMonitor(session, client=self.pulsemcp_client)

        self.run_id: Optional[str] = None
        self._started_at: Optional[float] = None
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "github": {
                "repositories": {"discovered": 0, "analyzed": 0, "stored": 0},
                "mcp_servers": {"detected": 0, "high_confidence": 0, "medium_confidence": 0, "low_confidence": 0},
            },
            "pulsemcp": {"servers": {"total": 0, "synced": 0, "verified": 0}, "categories": {"synced": 0}},
            "merged": {"total": 0, "github_only": 0, "pulsemcp_only": 0, "matched": 0},
            "health": {"monitored": 0, "healthy": 0, "warning": 0, "critical": 0},
            "processing": {"errors": [], "warnings": []},
        }

    def _record_error(self, phase: str, error: Exception) -> None:
        self.stats["processing"]["errors"].append(
            {"phase": phase, "error": str(error), "timestamp": to_iso(utc_now())}
        )

    async def run_super_discovery(self) -> Dict[str, Any]:
        """
        Run all five phases and return {"run_id", "stats", "report"}.

        Raises whatever the GitHub phase raises, after marking the run failed.
        """
        self.run_id = generate_run_id("super-discovery")
        self.stats = self._empty_stats()
        self._started_at = time.monotonic()

        logger.info(
            f"Super discovery {self.run_id}: max_repositories={self.options.max_repositories} "
            f"pulsemcp={self.options.include_pulsemcp} health={self.options.enable_health_monitoring} "
            f"mock_pulsemcp={self.options.mock_pulsemcp}"
        )

        await self.storage.ensure_schema_version()
        await self.storage.start_discovery_run(self.run_id, {
            "type": "super_discovery",
            "github_max_repositories": self.options.max_repositories,
            "github_min_stars": self.options.min_stars,
            "pulsemcp_enabled": self.options.include_pulsemcp,
            "health_monitoring_enabled": self.options.enable_health_monitoring,
            "strict_mode": self.options.strict_mode,
            "version": "3.0",
        })
        await self.session.commit()

        try:
            if self.options.include_pulsemcp:
                status = await self.pulsemcp_client.test_connection()
                logger.info(f"PulseMCP connection: {status.get('status')} (mock={status.get('mock', False)})")

            logger.info("Phase 1: GitHub discovery")
            await self.run_github_discovery()
        except Exception as e:
            logger.error(f"Super discovery {self.run_id} failed: {e}")
            await self.session.rollback()
            await self.storage.update_discovery_run(self.run_id, status="failed", error=str(e), completed=True)
            await self.session.commit()
            raise

        if self.options.include_pulsemcp:
            logger.info("Phase 2: PulseMCP sync")
            await self.run_pulsemcp_sync()
        else:
            logger.info("Phase 2: PulseMCP sync disabled")

        logger.info("Phase 3: data merge")
        await self.run_data_merge()

        if self.options.enable_health_monitoring:
            logger.info("Phase 4: health check")
            await self.run_health_check()
        else:
            logger.info("Phase 4: health check disabled")

        logger.info("Phase 5: super report")
        report = await self.generate_super_report()
        await self.complete_run()

        logger.info(
            f"Super discovery complete: {self.stats['merged']['total']} catalog entries, "
            f"{len(self.stats['processing']['errors'])} errors"
        )
        return {"run_id": self.run_id, "stats": self.stats, "report": report}

    async def run_github_discovery(self) -> None:
        self.discovery.run_id = self.run_id
        repositories = await self.discovery.discover_repositories()
        analyses = await self.discovery.analyze_repositories(repositories)
        detections = await self.discovery.detect_mcp_servers(analyses)
        await self.discovery.store_results(detections)

        discovery_stats = self.discovery.stats
        self.stats["github"]["repositories"] = dict(discovery_stats["repositories"])
        self.stats["github"]["mcp_servers"] = dict(discovery_stats["mcp_servers"])
        self.stats["processing"]["errors"].extend(discovery_stats["processing"]["errors"])
        self.stats["processing"]["warnings"].extend(discovery_stats["processing"]["warnings"])

    async def run_pulsemcp_sync(self) -> None:
        try:
            result = await self.sync.run_sync(force=self.options.force)
            if result.get("skipped"):
                logger.info(f"PulseMCP sync skipped, next sync in {result['next_sync_in_hours']} hours")
            else:
                servers = result["stats"]["servers"]
                self.stats["pulsemcp"]["servers"]["total"] = servers["total"]
                self.stats["pulsemcp"]["servers"]["synced"] = servers["new"] + servers["updated"]
                self.stats["pulsemcp"]["categories"]["synced"] = result["stats"]["categories"]["processed"]

            sync_stats = await self.sync.get_sync_stats()
            self.stats["pulsemcp"]["servers"]["verified"] = sync_stats["servers"]["verified"]
        except Exception as e:
            await self.session.rollback()
            self._record_error("pulsemcp_sync", e)
            logger.warning(f"PulseMCP sync failed, continuing with GitHub data only: {e}")

    async def run_data_merge(self) -> None:
        try:
            result = await self.merger.run_merge()
            if result.get("skipped"):
                logger.info("Data merge skipped, no source data")
                return
            stats = result["stats"]
            self.stats["merged"]["total"] = stats["merged"]["created"]
            self.stats["merged"]["github_only"] = stats["github"]["unmatched"]
            self.stats["merged"]["pulsemcp_only"] = stats["pulsemcp"]["unmatched"]
            self.stats["merged"]["matched"] = stats["github"]["matched"]
        except Exception as e:
            await self.session.rollback()
            self._record_error("data_merge", e)
            logger.warning(f"Data merge failed, results may be incomplete: {e}")

    async def run_health_check(self) -> None:
        try:
            result = await self.health_monitor.run_health_check()
            if result.get("skipped"):
                logger.info("Health check skipped, no servers to monitor")
                return
            servers = result["stats"]["servers"]
            health = self.stats["health"]
            health["monitored"] = servers["total"]
            health["healthy"] = servers["healthy"]
            health["warning"] = servers["warning"]
            health["critical"] = servers["critical"]
        except Exception as e:
            await self.session.rollback()
            self._record_error("health_monitoring", e)
            logger.warning(f"Health check failed: {e}")

    def calculate_data_quality_score(self) -> int:
        """Average of the match, verification and analysis factors that apply."""
        github = self.stats["github"]
        pulsemcp = self.stats["pulsemcp"]["servers"]
        matched = self.stats["merged"]["matched"]
        score = 0.0
        factors = 0

        if matched > 0:
            sources = github["mcp_servers"]["detected"] + pulsemcp["total"]
            score += (matched / sources if sources else 0) * 40
            factors += 1

        if pulsemcp["verified"] > 0 and pulsemcp["total"] > 0:
            score += pulsemcp["verified"] / pulsemcp["total"] * 30
            factors += 1

        repositories = github["repositories"]
        if repositories["analyzed"] > 0 and repositories["discovered"] > 0:
            score += repositories["analyzed"] / repositories["discovered"] * 30
            factors += 1

        return round(score / factors) if factors else 0

    def calculate_overall_health_score(self) -> int:
        health = self.stats["health"]
        monitored = health["monitored"]
        if monitored == 0:
            return 0
        return round((health["healthy"] + 0.6 * health["warning"] + 0.2 * health["critical"]) / monitored * 100)

    async def generate_super_report(self) -> Dict[str, Any]:
        duration = time.monotonic() - self._started_at if self._started_at else 0
        github = self.stats["github"]
        repositories = github["repositories"]
        pulsemcp = self.stats["pulsemcp"]
        merged = self.stats["merged"]
        health = self.stats["health"]

        try:
            db_stats = await self.storage.get_discovery_stats()
            merged_stats = await self.merger.get_merged_stats()
            health_details = await self.health_monitor.generate_health_report(period_days=1)
        except Exception as e:
            logger.warning(f"Failed to generate super report: {e}")
            return {"run_id": self.run_id, "timestamp": to_iso(utc_now()), "error": str(e)}

        return {
            "run_id": self.run_id,
            "timestamp": to_iso(utc_now()),
            "processing": {
                "duration": round(duration, 3),
                "duration_formatted": format_duration(duration),
                "errors": len(self.stats["processing"]["errors"]),
                "warnings": len(self.stats["processing"]["warnings"]),
                "total_phases": TOTAL_PHASES,
            },
            "github": {
                "repositories_discovered": repositories["discovered"],
                "repositories_analyzed": repositories["analyzed"],
                "repositories_stored": repositories["stored"],
                "mcp_servers_detected": github["mcp_servers"]["detected"],
                "analysis_success_rate": (
                    round(repositories["analyzed"] / repositories["discovered"] * 100)
                    if repositories["discovered"] else 0
                ),
            },
            "pulsemcp": {
                "total_servers": pulsemcp["servers"]["total"],
                "synced_servers": pulsemcp["servers"]["synced"],
                "verified_servers": pulsemcp["servers"]["verified"],
                "categories_synced": pulsemcp["categories"]["synced"],
                "enabled": self.options.include_pulsemcp,
            },
            "integration": {
                "total_merged_records": merged["total"],
                "github_only_records": merged["github_only"],
                "pulsemcp_only_records": merged["pulsemcp_only"],
                "matched_pairs": merged["matched"],
                "data_quality_score": self.calculate_data_quality_score(),
            },
            "health": {
                "monitoring_enabled": self.options.enable_health_monitoring,
                "servers_monitored": health["monitored"],
                "healthy_servers": health["healthy"],
                "warning_servers": health["warning"],
                "critical_servers": health["critical"],
                "overall_health_score": self.calculate_overall_health_score(),
            },
            "database": db_stats,
            "merged": merged_stats,
            "health_details": health_details,
        }

    async def complete_run(self) -> None:
        github = self.stats["github"]
        await self.storage.update_discovery_run(
            self.run_id,
            status="completed",
            completed=True,
            repositories_found=github["repositories"]["discovered"] + self.stats["pulsemcp"]["servers"]["total"],
            repositories_analyzed=github["repositories"]["analyzed"],
            mcp_servers_detected=github["mcp_servers"]["detected"] + self.stats["merged"]["total"],
        )
        await self.session.commit()

    async def get_top_mcp_servers(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await get_top_mcp_servers(self.session, limit)

    async def export_super_results(self) -> Dict[str, Any]:
        return {
            "exported_at": to_iso(utc_now()),
            "run_id": self.run_id,
            "github": await self.storage.export_data(),
            "merged": await self.merger.get_merged_stats(),
            "health": await self.health_monitor.generate_health_report(period_days=7),
            "stats": self.stats,
        }

    async def close(self):
        await self.pulsemcp_client.close()


async def get_top_mcp_servers(session: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    """Catalog entries ordered by confidence, then health, then combined stars."""
    result = await session.execute(
        select(MergedServer)
        .order_by(
            MergedServer.confidence.desc().nulls_last(),
            MergedServer.health_score.desc().nulls_last(),
            MergedServer.combined_stars.desc().nulls_last(),
        )
        .limit(limit)
    )
    return [
        {
            "name": server.name,
            "repository_url": server.repository_url,
            "confidence": server.confidence,
            "health_score": server.health_score,
            "verified": server.verified,
            "combined_stars": server.combined_stars,
            "capabilities": server.capabilities or [],
            "category": server.category,
            "data_sources": server.data_sources,
            "installation_command": server.installation_command,
        }
        for server in result.scalars()
    ]
