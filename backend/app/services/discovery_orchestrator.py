import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.analysis import RepositoryAnalysis
from app.schemas.detection import DetectedRepository
from app.schemas.discovery import DiscoveryOptions
from app.services.github_service import GitHubService, get_github_service
from app.services.mcp_detector import MCPDetector
from app.services.repo_analyzer import RepositoryAnalyzer
from app.services.storage import StorageService
from app.utils.run_helpers import create_batches, format_duration, generate_run_id
from app.utils.time_helpers import to_iso, utc_now

logger = logging.getLogger(__name__)

MIN_SEARCH_QUOTA = 10
STORAGE_BATCH_SIZE = 25
BATCH_PAUSE_SECONDS = 1.0
HIGH_CONFIDENCE = 70
MEDIUM_CONFIDENCE = 50


class DiscoveryError(Exception):
    """Raised when a discovery run cannot proceed."""


class DiscoveryOrchestrator:
    """
    Runs the GitHub discovery pipeline: discover, analyze, detect, store, report.

    The run row is committed at phase boundaries so progress is visible to
    other sessions while the run is in flight.
    """

    def __init__(
        self,
        session: AsyncSession,
        options: Optional[DiscoveryOptions] = None,
        github: Optional[GitHubService] = None,
    ):
        self.session = session
        self.options = options or DiscoveryOptions()
        self.github = github or get_github_service()
        self.analyzer = RepositoryAnalyzer()
        self.detector = MCPDetector(strict_mode=self.options.strict_mode)
        self.storage = StorageService(session)

        self.run_id: Optional[str] = None
        # GitHub payloads keyed by full_name, needed again at storage time
        self._payloads: Dict[str, Dict[str, Any]] = {}
        self._started_at: Optional[float] = None
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "repositories": {"discovered": 0, "analyzed": 0, "stored": 0},
            "mcp_servers": {"detected": 0, "high_confidence": 0, "medium_confidence": 0, "low_confidence": 0},
            "processing": {"errors": [], "warnings": []},
        }

    def _record_error(self, phase: str, error: Exception, repository: Optional[str] = None) -> None:
        entry = {"phase": phase, "error": str(error), "timestamp": to_iso(utc_now())}
        if repository:
            entry["repository"] = repository
        self.stats["processing"]["errors"].append(entry)

    async def run_discovery(self, run_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Execute every phase and return {"run_id", "repositories", "stats", "report"}.

        Raises:
            DiscoveryError: if the search quota is too low to start
            Exception: any phase failure, after the run has been marked failed
        """
        self.run_id = run_id or generate_run_id("discovery")
        self.stats = self._empty_stats()
        self._started_at = time.monotonic()

        logger.info(
            f"Discovery run {self.run_id}: max_repositories={self.options.max_repositories} "
            f"min_stars={self.options.min_stars} concurrency={self.options.concurrency} "
            f"strict_mode={self.options.strict_mode} dry_run={self.options.dry_run}"
        )

        await self.storage.ensure_schema_version()
        await self.storage.start_discovery_run(self.run_id, {
            "max_repositories": self.options.max_repositories,
            "min_stars": self.options.min_stars,
            "strict_mode": self.options.strict_mode,
            "version": "3.0",
        })
        await self.session.commit()

        try:
            logger.info("Phase 1: repository discovery")
            repositories = await self.discover_repositories()

            logger.info("Phase 2: repository analysis")
            analyses = await self.analyze_repositories(repositories)

            logger.info("Phase 3: MCP detection")
            detections = await self.detect_mcp_servers(analyses)

            logger.info("Phase 4: data storage")
            await self.store_results(detections)

            logger.info("Phase 5: report generation")
            report = await self.generate_report()

            await self.storage.update_discovery_run(self.run_id, status="completed", completed=True)
            await self.session.commit()

        except Exception as e:
            logger.error(f"Discovery run {self.run_id} failed: {e}")
            await self.session.rollback()
            await self.storage.update_discovery_run(self.run_id, status="failed", error=str(e), completed=True)
            await self.session.commit()
            raise

        logger.info(
            f"Discovery complete in {report['processing']['duration_formatted']}: "
            f"{report['discovery']['repositories_analyzed']} analyzed, "
            f"{report['mcp_detection']['total_mcp_servers']} MCP servers"
        )
        return {"run_id": self.run_id, "repositories": detections, "stats": self.stats, "report": report}

    async def discover_repositories(self) -> List[Dict[str, Any]]:
        try:
            rate_limits = await self.github.get_rate_limit_status()
            search = (rate_limits or {}).get("search") or {}
            remaining = search.get("remaining")
            if remaining is not None and remaining < MIN_SEARCH_QUOTA:
                raise DiscoveryError(
                    f"Insufficient GitHub API rate limit. Remaining: {remaining}/{search.get('limit')}"
                )

            results = await self.github.search_mcp_repositories(
                max_results=self.options.max_repositories,
                min_stars=self.options.min_stars,
                include_archived=False,
            )
        except Exception as e:
            self._record_error("discovery", e)
            raise

        repositories = results["repositories"]
        self.stats["repositories"]["discovered"] = len(repositories)
        logger.info(
            f"Discovered {len(repositories)} repositories "
            f"(patterns: {results['stats']['patterns_searched']}, "
            f"duplicates filtered: {results['stats']['duplicates_filtered']})"
        )

        await self.storage.update_discovery_run(self.run_id, repositories_found=len(repositories))
        await self.session.commit()
        return repositories

    async def _analyze_one(self, repo: Dict[str, Any], index: int) -> Optional[RepositoryAnalysis]:
        full_name = repo.get("full_name", "")
        owner, _, name = full_name.partition("/")
        try:
            details = await self.github.get_repository_details(owner, name)
            if not details:
                self.stats["processing"]["warnings"].append(f"Failed to get details for {full_name}")
                return None

            payload = dict(details["repository"])
            payload.setdefault("topics", details.get("topics") or [])
            payload["search_pattern"] = repo.get("search_pattern")
            payload["discovered_at"] = repo.get("discovered_at")
            self._payloads[payload.get("full_name", full_name)] = payload

            return self.analyzer.analyze_repository(payload, details.get("contents"))
        except Exception as e:
            self._record_error("analysis", e, full_name)
            return None

    async def analyze_repositories(self, repositories: List[Dict[str, Any]]) -> List[RepositoryAnalysis]:
        analyses: List[RepositoryAnalysis] = []
        batches = create_batches(repositories, self.options.batch_size)
        logger.info(f"Processing {len(repositories)} repositories in {len(batches)} batches")

        try:
            for i, batch in enumerate(batches):
                logger.info(f"Batch {i + 1}/{len(batches)} ({len(batch)} repositories)")
                batch_results = await self.github.process_repositories(
                    batch,
                    self._analyze_one,
                    concurrency=self.options.concurrency,
                    delay=self.options.delay_between_requests,
                )
                analyses.extend(batch_results)
                self.stats["repositories"]["analyzed"] += len(batch_results)

                logger.info(
                    f"Analyzed {len(batch_results)}/{len(batch)} in batch, "
                    f"{len(analyses)}/{len(repositories)} total"
                )
                await self.storage.update_discovery_run(
                    self.run_id, repositories_analyzed=self.stats["repositories"]["analyzed"]
                )
                await self.session.commit()

                if i < len(batches) - 1:
                    await asyncio.sleep(BATCH_PAUSE_SECONDS)
        except Exception as e:
            self._record_error("analysis", e)
            raise

        logger.info(
            f"Repository analysis complete: {len(analyses)}/{len(repositories)} analyzed, "
            f"{len(repositories) - len(analyses)} failed"
        )
        return analyses

    async def detect_mcp_servers(self, analyses: List[RepositoryAnalysis]) -> List[DetectedRepository]:
        try:
            detections = self.detector.detect_mcp_repositories(analyses)
        except Exception as e:
            self._record_error("detection", e)
            raise

        counts = self.stats["mcp_servers"]
        for result in detections:
            detection = result.mcp_detection
            if not detection.is_mcp:
                continue
            counts["detected"] += 1
            if detection.confidence >= HIGH_CONFIDENCE:
                counts["high_confidence"] += 1
            elif detection.confidence >= MEDIUM_CONFIDENCE:
                counts["medium_confidence"] += 1
            else:
                counts["low_confidence"] += 1

        logger.info(
            f"MCP servers detected: {counts['detected']} (high {counts['high_confidence']}, "
            f"medium {counts['medium_confidence']}, low {counts['low_confidence']})"
        )
        await self.storage.update_discovery_run(self.run_id, mcp_servers_detected=counts["detected"])
        await self.session.commit()
        return detections

    async def store_results(self, detections: List[DetectedRepository]) -> None:
        if self.options.dry_run:
            logger.info("Dry run mode - skipping database storage")
            return

        stored = 0
        batches = create_batches(detections, STORAGE_BATCH_SIZE)
        logger.info(f"Storing {len(detections)} results in database")

        for i, batch in enumerate(batches):
            for result in batch:
                full_name = result.analysis.repository.full_name
                try:
                    payload = self._payloads.get(full_name) or {"full_name": full_name}
                    repository_id = await self.storage.store_repository(payload)
                    await self.storage.store_analysis(repository_id, result.analysis)
                    await self.storage.store_detection(repository_id, result.mcp_detection)
                    await self.session.commit()
                    stored += 1
                except Exception as e:
                    await self.session.rollback()
                    logger.warning(f"Failed to store {full_name}: {e}")
                    self._record_error("storage", e, full_name)

            if (i + 1) % 10 == 0 or i == len(batches) - 1:
                logger.info(f"Stored {stored}/{len(detections)} results")

        self.stats["repositories"]["stored"] = stored
        logger.info(f"Data storage complete: {stored}/{len(detections)} stored")

    async def generate_report(self) -> Dict[str, Any]:
        db_stats = await self.storage.get_discovery_stats()
        duration = time.monotonic() - self._started_at if self._started_at else 0
        repositories = self.stats["repositories"]
        mcp = self.stats["mcp_servers"]

        return {
            "run_id": self.run_id,
            "timestamp": to_iso(utc_now()),
            "processing": {
                "duration": round(duration, 3),
                "duration_formatted": format_duration(duration),
                "errors": len(self.stats["processing"]["errors"]),
                "warnings": len(self.stats["processing"]["warnings"]),
            },
            "discovery": {
                "repositories_discovered": repositories["discovered"],
                "repositories_analyzed": repositories["analyzed"],
                "repositories_stored": repositories["stored"],
                "analysis_success_rate": (
                    round(repositories["analyzed"] / repositories["discovered"] * 100)
                    if repositories["discovered"] else 0
                ),
            },
            "mcp_detection": {
                "total_mcp_servers": mcp["detected"],
                "high_confidence": mcp["high_confidence"],
                "medium_confidence": mcp["medium_confidence"],
                "low_confidence": mcp["low_confidence"],
                "detection_rate": (
                    round(mcp["detected"] / repositories["analyzed"] * 100) if repositories["analyzed"] else 0
                ),
            },
            "database": db_stats,
        }

    async def get_high_confidence_mcps(self, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.storage.get_mcp_repositories(min_confidence=HIGH_CONFIDENCE, limit=limit)

    async def export_results(self) -> Dict[str, Any]:
        return await self.storage.export_data()

    @staticmethod
    def format_duration(seconds: float) -> str:
        return format_duration(seconds)

