import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.discovery_run import DiscoveryRun, MetadataEntry
from app.models.repository import McpAnalysis, McpDetection, PackageInfo, Repository, RepositoryFile
from app.schemas.analysis import RepositoryAnalysis
from app.schemas.detection import MCPDetection
from app.utils.serialization import model_to_dict
from app.utils.time_helpers import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "3.0"
ANALYSIS_VERSION = "3.0"
MCP_CONFIDENCE_THRESHOLD = 30
HIGH_CONFIDENCE = 70

# Columns of mcp_analysis that results may be ordered by
ORDERABLE_COLUMNS = {
    "confidence": McpAnalysis.confidence,
    "confidence_level": McpAnalysis.confidence_level,
    "server_type": McpAnalysis.server_type,
    "analyzed_at": McpAnalysis.analyzed_at,
}


def confidence_level(confidence: float) -> str:
    if confidence >= 70:
        return "high"
    if confidence >= 50:
        return "medium"
    if confidence >= 30:
        return "low"
    return "minimal"


class StorageService:
    """
    Persistence for GitHub discoveries, their analyses and discovery runs.

    Note:
        Methods flush but never commit. Transaction management belongs to
        the caller (route handler, orchestrator or CLI command).
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def store_repository(self, repo: Dict[str, Any]) -> int:
        """Insert or refresh a repository row from a GitHub payload. Returns its id."""
        full_name = repo["full_name"]
        owner = repo.get("owner")
        license_info = repo.get("license")

        values = {
            "name": repo.get("name") or full_name.split("/")[-1],
            "owner": owner.get("login") if isinstance(owner, dict) else (owner or full_name.split("/")[0]),
            "description": repo.get("description"),
            "url": repo.get("html_url") or f"https://github.com/{full_name}",
            "clone_url": repo.get("clone_url"),
            "ssh_url": repo.get("ssh_url"),
            "language": repo.get("language"),
            "stars": repo.get("stargazers_count") or 0,
            "forks": repo.get("forks_count") or 0,
            "watchers": repo.get("watchers_count") or 0,
            "size": repo.get("size") or 0,
            "topics": repo.get("topics") or [],
            "license": license_info.get("name") if isinstance(license_info, dict) else None,
            "created_at": parse_timestamp(repo.get("created_at")),
            "updated_at": parse_timestamp(repo.get("updated_at")),
            "pushed_at": parse_timestamp(repo.get("pushed_at")),
            "archived": bool(repo.get("archived")),
            "fork": bool(repo.get("fork")),
            "discovered_at": parse_timestamp(repo.get("discovered_at")) or utc_now(),
            "search_pattern": repo.get("search_pattern"),
        }

        result = await self.session.execute(select(Repository).where(Repository.full_name == full_name))
        row = result.scalar_one_or_none()
        if row:
            for key, value in values.items():
                setattr(row, key, value)
            logger.debug(f"Updated repository {full_name}")
        else:
            row = Repository(full_name=full_name, **values)
            self.session.add(row)
            logger.debug(f"Stored new repository {full_name}")

        await self.session.flush()
        return row.id

    async def store_analysis(self, repository_id: int, analysis: RepositoryAnalysis) -> None:
        """Replace the analysis (plus package and file rows) for a repository."""
        confidence = analysis.mcp.confidence or 0
        analyzed_at = parse_timestamp(analysis.analyzed_at) or utc_now()

        await self.session.execute(delete(McpAnalysis).where(McpAnalysis.repository_id == repository_id))
        self.session.add(McpAnalysis(
            repository_id=repository_id,
            confidence=confidence,
            confidence_level=confidence_level(confidence),
            is_mcp=confidence > MCP_CONFIDENCE_THRESHOLD,
            server_type=analysis.mcp.server_type,
            capabilities=list(analysis.mcp.capabilities),
            indicators=list(analysis.mcp.indicators),
            analysis_version=ANALYSIS_VERSION,
            analyzed_at=analyzed_at,
        ))

        repository = await self.session.get(Repository, repository_id)
        if repository is not None:
            repository.last_analyzed_at = analyzed_at

        if analysis.mcp.package_info:
            await self._store_package_info(repository_id, analysis)
        if analysis.files.analyzed:
            await self._store_file_info(repository_id, analysis)

        await self.session.flush()

    async def _store_package_info(self, repository_id: int, analysis: RepositoryAnalysis) -> None:
        package = analysis.mcp.package_info
        await self.session.execute(delete(PackageInfo).where(PackageInfo.repository_id == repository_id))
        self.session.add(PackageInfo(
            repository_id=repository_id,
            package_name=package.name,
            version=package.version,
            main_file=package.main,
            installation_method=analysis.analysis.installation_method,
            dependencies=analysis.analysis.dependencies or {},
            dev_dependencies=package.dev_dependencies or {},
            scripts=package.scripts or {},
            bin=package.bin,
        ))

    async def _store_file_info(self, repository_id: int, analysis: RepositoryAnalysis) -> None:
        mcp_relevant = set(analysis.files.mcp_relevant)
        await self.session.execute(delete(RepositoryFile).where(RepositoryFile.repository_id == repository_id))
        # The same name can be recorded twice (e.g. README analyzed and listed)
        for filename in dict.fromkeys(analysis.files.analyzed):
            self.session.add(RepositoryFile(
                repository_id=repository_id,
                filename=filename,
                analyzed=True,
                mcp_relevant=filename.lower() in mcp_relevant,
            ))

    async def store_detection(self, repository_id: int, detection: MCPDetection) -> None:
        """Replace the detection row for a repository."""
        await self.session.execute(delete(McpDetection).where(McpDetection.repository_id == repository_id))
        self.session.add(McpDetection(
            repository_id=repository_id,
            detection_confidence=detection.confidence or 0,
            detection_level=detection.confidence_level or "none",
            classification=detection.classification or "unknown",
            positive_indicators=[i.model_dump() for i in detection.indicators.positive],
            negative_indicators=[i.model_dump() for i in detection.indicators.negative],
            edge_cases=list(detection.edge_cases),
            reasons=list(detection.reasons),
            detection_version=ANALYSIS_VERSION,
        ))
        await self.session.flush()

    async def start_discovery_run(self, run_id: str, configuration: Optional[Dict[str, Any]] = None) -> str:
        self.session.add(DiscoveryRun(run_id=run_id, status="running", configuration=configuration or {}))
        await self.session.flush()
        logger.info(f"Started discovery run {run_id}")
        return run_id

    async def update_discovery_run(
        self,
        run_id: str,
        status: Optional[str] = None,
        repositories_found: Optional[int] = None,
        repositories_analyzed: Optional[int] = None,
        mcp_servers_detected: Optional[int] = None,
        completed: bool = False,
        error: Optional[str] = None,
    ) -> None:
        result = await self.session.execute(select(DiscoveryRun).where(DiscoveryRun.run_id == run_id))
        run = result.scalar_one_or_none()
        if run is None:
            logger.warning(f"Discovery run {run_id} not found")
            return

        if status:
            run.status = status
        if repositories_found is not None:
            run.repositories_found = repositories_found
        if repositories_analyzed is not None:
            run.repositories_analyzed = repositories_analyzed
        if mcp_servers_detected is not None:
            run.mcp_servers_detected = mcp_servers_detected
        if completed:
            run.completed_at = utc_now()
        if error:
            run.error_message = error

        await self.session.flush()

    async def get_discovery_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        result = await self.session.execute(select(DiscoveryRun).where(DiscoveryRun.run_id == run_id))
        run = result.scalar_one_or_none()
        return model_to_dict(run) if run else None

    async def get_repository(self, full_name: str) -> Optional[Dict[str, Any]]:
        """Repository row with its analysis and detection, if any."""
        result = await self.session.execute(select(Repository).where(Repository.full_name == full_name))
        repository = result.scalar_one_or_none()
        if repository is None:
            return None

        data = model_to_dict(repository)
        analysis = await self.session.scalar(
            select(McpAnalysis).where(McpAnalysis.repository_id == repository.id)
        )
        detection = await self.session.scalar(
            select(McpDetection).where(McpDetection.repository_id == repository.id)
        )
        package = await self.session.scalar(
            select(PackageInfo).where(PackageInfo.repository_id == repository.id)
        )
        data["analysis"] = model_to_dict(analysis, exclude=("id", "repository_id")) if analysis else None
        data["detection"] = model_to_dict(detection, exclude=("id", "repository_id")) if detection else None
        data["package_info"] = model_to_dict(package, exclude=("id", "repository_id")) if package else None
        return data

    async def get_mcp_repositories(
        self,
        min_confidence: float = MCP_CONFIDENCE_THRESHOLD,
        limit: int = 1000,
        offset: int = 0,
        order_by: str = "confidence",
        descending: bool = True,
        server_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Analyzed repositories at or above min_confidence.

        Raises:
            ValueError: if order_by is not an orderable column
        """
        if order_by not in ORDERABLE_COLUMNS:
            raise ValueError(f"Cannot order by '{order_by}'. Choose from: {', '.join(sorted(ORDERABLE_COLUMNS))}")
        column = ORDERABLE_COLUMNS[order_by]

        stmt = (
            select(Repository, McpAnalysis, PackageInfo)
            .join(McpAnalysis, McpAnalysis.repository_id == Repository.id)
            .outerjoin(PackageInfo, PackageInfo.repository_id == Repository.id)
            .where(McpAnalysis.confidence >= min_confidence)
        )
        if server_type:
            stmt = stmt.where(McpAnalysis.server_type == server_type)
        stmt = stmt.order_by(column.desc().nulls_last() if descending else column.asc(), Repository.id).limit(limit).offset(offset)

        result = await self.session.execute(stmt)
        rows = []
        for repository, analysis, package in result.all():
            row = model_to_dict(repository)
            row.update({
                "confidence": analysis.confidence,
                "confidence_level": analysis.confidence_level,
                "is_mcp": analysis.is_mcp,
                "server_type": analysis.server_type,
                "capabilities": analysis.capabilities or [],
                "indicators": analysis.indicators or [],
                "package_name": package.package_name if package else None,
                "version": package.version if package else None,
                "installation_method": package.installation_method if package else None,
            })
            rows.append(row)
        return rows

    async def get_discovery_stats(self) -> Dict[str, Any]:
        total = await self.session.scalar(select(func.count()).select_from(Repository))
        analyzed = await self.session.scalar(select(func.count()).select_from(McpAnalysis))
        mcp_servers = await self.session.scalar(
            select(func.count()).select_from(McpAnalysis).where(McpAnalysis.is_mcp.is_(True))
        )
        high_confidence = await self.session.scalar(
            select(func.count()).select_from(McpAnalysis).where(McpAnalysis.confidence >= HIGH_CONFIDENCE)
        )

        languages = await self.session.execute(
            select(Repository.language, func.count())
            .join(McpAnalysis, McpAnalysis.repository_id == Repository.id)
            .where(McpAnalysis.is_mcp.is_(True), Repository.language.is_not(None))
            .group_by(Repository.language)
            .order_by(func.count().desc())
        )
        server_types = await self.session.execute(
            select(McpAnalysis.server_type, func.count())
            .where(McpAnalysis.is_mcp.is_(True), McpAnalysis.server_type.is_not(None))
            .group_by(McpAnalysis.server_type)
            .order_by(func.count().desc())
        )
        last_run = await self.session.scalar(
            select(DiscoveryRun)
            .where(DiscoveryRun.status == "completed")
            .order_by(DiscoveryRun.completed_at.desc())
            .limit(1)
        )

        return {
            "total_repositories": total or 0,
            "analyzed_repositories": analyzed or 0,
            "mcp_servers": mcp_servers or 0,
            "high_confidence_mcps": high_confidence or 0,
            "language_distribution": {language: count for language, count in languages.all()},
            "server_type_distribution": {server_type: count for server_type, count in server_types.all()},
            "last_discovery_run": model_to_dict(last_run) if last_run else None,
        }

    async def set_metadata(self, key: str, value: Optional[str]) -> None:
        entry = await self.session.get(MetadataEntry, key)
        if entry:
            entry.value = value
            entry.updated_at = utc_now()
        else:
            self.session.add(MetadataEntry(key=key, value=value))
        await self.session.flush()

    async def get_metadata(self, key: str) -> Optional[str]:
        entry = await self.session.get(MetadataEntry, key)
        return entry.value if entry else None

    async def ensure_schema_version(self) -> None:
        current = await self.get_metadata("schema_version")
        if current != SCHEMA_VERSION:
            logger.info(f"Recording schema version {SCHEMA_VERSION} (was {current})")
            await self.set_metadata("schema_version", SCHEMA_VERSION)

    async def clear_old_cache(self, ttl_hours: Optional[int] = None) -> Dict[str, int]:
        """Delete analysis and detection rows older than the TTL."""
        ttl = ttl_hours if ttl_hours is not None else settings.DISCOVERY_CACHE_TTL_HOURS
        cutoff = utc_now() - timedelta(hours=ttl)

        analysis_result = await self.session.execute(delete(McpAnalysis).where(McpAnalysis.analyzed_at < cutoff))
        detection_result = await self.session.execute(delete(McpDetection).where(McpDetection.detected_at < cutoff))
        await self.session.flush()

        cleared = {"analysis": analysis_result.rowcount or 0, "detection": detection_result.rowcount or 0}
        logger.info(f"Cleared old cache entries: {cleared}")
        return cleared

    async def export_data(self, include_analysis: bool = True, include_detection: bool = True) -> Dict[str, Any]:
        repositories = (await self.session.scalars(select(Repository).order_by(Repository.id))).all()
        data: Dict[str, Any] = {
            "repositories": [model_to_dict(repository) for repository in repositories],
            "exported_at": to_iso(utc_now()),
            "total_count": len(repositories),
        }

        if include_analysis:
            result = await self.session.execute(
                select(McpAnalysis, Repository.full_name).join(Repository, McpAnalysis.repository_id == Repository.id)
            )
            data["analysis"] = [
                {**model_to_dict(analysis), "full_name": full_name} for analysis, full_name in result.all()
            ]

        if include_detection:
            result = await self.session.execute(
                select(McpDetection, Repository.full_name).join(Repository, McpDetection.repository_id == Repository.id)
            )
            data["detection"] = [
                {**model_to_dict(detection), "full_name": full_name} for detection, full_name in result.all()
            ]

        return data
