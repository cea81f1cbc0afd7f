import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.merged_server import MergedServer
from app.models.pulsemcp import PulseMcpServer
from app.models.repository import McpAnalysis, PackageInfo, Repository
from app.services.storage import MCP_CONFIDENCE_THRESHOLD, StorageService
from app.utils.run_helpers import format_duration
from app.utils.time_helpers import to_iso, utc_now
from app.utils.url_helpers import normalize_repo_url

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 70

# Weights of the match score components
REPOSITORY_WEIGHT = 0.4
NAME_WEIGHT = 0.3
DESCRIPTION_WEIGHT = 0.2
CAPABILITIES_WEIGHT = 0.1

CATEGORY_SERVER_TYPES = {
    "development": "development-tools",
    "productivity": "productivity",
    "data": "data-analysis",
    "communication": "communication",
    "ai-ml": "ai-integration",
    "automation": "automation",
    "content": "content-management",
    "integration": "api-integration",
}

_NON_WORD = re.compile(r"\W+")


def _words(text: str) -> FrozenSet[str]:
    return frozenset(word for word in _NON_WORD.split(text.lower()) if len(word) > 2)


def string_similarity(a: str, b: str) -> float:
    """
    Jaccard similarity of the word sets (words longer than two characters).

    Examples:
        >>> string_similarity("weather server", "weather server")
        1.0
        >>> string_similarity("mcp weather server", "weather tool")
        0.25
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return _jaccard(_words(a), _words(b))


def _jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def capability_overlap(github_caps: List[str], pulsemcp_caps: List[str]) -> float:
    if not github_caps or not pulsemcp_caps:
        return 0.0
    shared = [
        cap for cap in github_caps
        if any(string_similarity(cap.lower(), other.lower()) > 0.8 for other in pulsemcp_caps)
    ]
    return len(shared) / len(set(github_caps) | set(pulsemcp_caps))


def infer_server_type(category: Optional[str]) -> str:
    return CATEGORY_SERVER_TYPES.get(category or "", "general")


def merge_capabilities(*groups: List[str]) -> List[str]:
    merged: List[str] = []
    for group in groups:
        for capability in group or []:
            capability = capability.lower()
            if capability not in merged:
                merged.append(capability)
    return merged


@dataclass
class GitHubEntry:
    id: int
    full_name: str
    name: str
    owner: Optional[str]
    description: Optional[str]
    url: Optional[str]
    clone_url: Optional[str]
    language: Optional[str]
    stars: int
    forks: int
    topics: List[str]
    confidence: float
    server_type: Optional[str]
    capabilities: List[str]
    package_name: Optional[str]
    version: Optional[str]
    installation_method: Optional[str]
    discovered_at: Optional[datetime]
    last_analyzed: Optional[datetime]
    last_activity: Optional[datetime]
    repo_key: str = field(init=False)
    name_words: FrozenSet[str] = field(init=False)
    description_words: FrozenSet[str] = field(init=False)
    name_lower: str = field(init=False)
    description_lower: str = field(init=False)

    def __post_init__(self):
        self.repo_key = normalize_repo_url(self.clone_url or "")
        self.name_lower = (self.name or "").lower()
        self.description_lower = (self.description or "").lower()
        self.name_words = _words(self.name_lower)
        self.description_words = _words(self.description_lower)


@dataclass
class PulseEntry:
    id: int
    server_id: str
    name: str
    description: Optional[str]
    category: Optional[str]
    language: Optional[str]
    capabilities: List[str]
    version: Optional[str]
    repository: Optional[str]
    verified: bool
    health_score: Optional[int]
    health_trend: Optional[str]
    downloads: int
    stars: int
    installation_method: Optional[str]
    installation_command: Optional[str]
    last_updated_upstream: Optional[datetime]
    synced_at: Optional[datetime]
    repo_key: str = field(init=False)
    name_words: FrozenSet[str] = field(init=False)
    description_words: FrozenSet[str] = field(init=False)
    name_lower: str = field(init=False)
    description_lower: str = field(init=False)

    def __post_init__(self):
        self.repo_key = normalize_repo_url(self.repository or "")
        self.name_lower = (self.name or "").lower()
        self.description_lower = (self.description or "").lower()
        self.name_words = _words(self.name_lower)
        self.description_words = _words(self.description_lower)


@dataclass
class Match:
    github: GitHubEntry
    pulsemcp: PulseEntry
    score: float
    reasons: List[str]


class DataMerger:
    """
    Builds the unified catalog in merged_servers from GitHub discoveries and
    the synced PulseMCP directory.
    """

    def __init__(
        self,
        session: AsyncSession,
        prefer_pulsemcp: bool = True,
        confidence_boost: int = 15,
        min_match_score: float = 0.7,
    ):
        self.session = session
        self.storage = StorageService(session)
        self.prefer_pulsemcp = prefer_pulsemcp
        self.confidence_boost = confidence_boost
        self.min_match_score = min_match_score
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "github": {"total": 0, "matched": 0, "unmatched": 0},
            "pulsemcp": {"total": 0, "matched": 0, "unmatched": 0},
            "merged": {"created": 0},
            "processing": {"duration": 0.0, "errors": [], "warnings": []},
        }

    async def run_merge(self) -> Dict[str, Any]:
        """
        Rebuild merged_servers. Returns {"stats", "duration"}, or
        {"merged": 0, "skipped": True} when neither source has data.
        """
        self.stats = self._empty_stats()
        started = time.monotonic()
        logger.info("Starting data merge")

        github = await self.load_github_data()
        pulsemcp = await self.load_pulsemcp_data()
        self.stats["github"]["total"] = len(github)
        self.stats["pulsemcp"]["total"] = len(pulsemcp)
        logger.info(f"Loaded {len(github)} GitHub repositories and {len(pulsemcp)} PulseMCP servers")

        if not github and not pulsemcp:
            logger.warning("No data to merge")
            return {"merged": 0, "skipped": True}

        matches, unmatched_github, unmatched_pulsemcp = self.find_matches(github, pulsemcp)
        logger.info(
            f"Matched pairs: {len(matches)}, unmatched GitHub: {len(unmatched_github)}, "
            f"unmatched PulseMCP: {len(unmatched_pulsemcp)}"
        )

        try:
            await self.session.execute(delete(MergedServer))
            now = utc_now()
            records = (
                [self.build_matched_record(match, now) for match in matches]
                + [self.build_github_record(entry, now) for entry in unmatched_github]
                + [self.build_pulsemcp_record(entry, now) for entry in unmatched_pulsemcp]
            )
            self.session.add_all(records)
            await self.session.flush()
            self.stats["merged"]["created"] = len(records)

            self.stats["processing"]["duration"] = round(time.monotonic() - started, 3)
            await self.update_provenance()
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Data merge failed: {e}")
            raise

        logger.info(
            f"Data merge completed: {self.stats['merged']['created']} records, "
            f"GitHub matched {self.stats['github']['matched']}/{self.stats['github']['total']}, "
            f"PulseMCP matched {self.stats['pulsemcp']['matched']}/{self.stats['pulsemcp']['total']}"
        )
        return {"stats": self.stats, "duration": format_duration(self.stats["processing"]["duration"])}

    async def load_github_data(self) -> List[GitHubEntry]:
        result = await self.session.execute(
            select(Repository, McpAnalysis, PackageInfo)
            .join(McpAnalysis, McpAnalysis.repository_id == Repository.id)
            .outerjoin(PackageInfo, PackageInfo.repository_id == Repository.id)
            .where(or_(McpAnalysis.is_mcp.is_(True), McpAnalysis.confidence >= MCP_CONFIDENCE_THRESHOLD))
            .order_by(McpAnalysis.confidence.desc())
        )

        entries = []
        for repo, analysis, package in result.all():
            entries.append(GitHubEntry(
                id=repo.id,
                full_name=repo.full_name,
                name=repo.name,
                owner=repo.owner,
                description=repo.description,
                url=repo.url,
                clone_url=repo.clone_url,
                language=repo.language,
                stars=repo.stars or 0,
                forks=repo.forks or 0,
                topics=list(repo.topics or []),
                confidence=analysis.confidence or 0,
                server_type=analysis.server_type,
                capabilities=list(analysis.capabilities or []),
                package_name=package.package_name if package else None,
                version=package.version if package else None,
                installation_method=package.installation_method if package else None,
                discovered_at=repo.discovered_at,
                last_analyzed=repo.last_analyzed_at,
                last_activity=repo.pushed_at or repo.updated_at,
            ))
        return entries

    async def load_pulsemcp_data(self) -> List[PulseEntry]:
        result = await self.session.execute(
            select(PulseMcpServer)
            .where(PulseMcpServer.active.is_(True))
            .order_by(PulseMcpServer.health_score.desc().nulls_last(), PulseMcpServer.stars.desc().nulls_last())
        )
        return [
            PulseEntry(
                id=server.id,
                server_id=server.server_id,
                name=server.name,
                description=server.description,
                category=server.category,
                language=server.language,
                capabilities=list(server.capabilities or []),
                version=server.version,
                repository=server.repository,
                verified=bool(server.verified),
                health_score=server.health_score,
                health_trend=server.health_trend,
                downloads=server.downloads or 0,
                stars=server.stars or 0,
                installation_method=server.installation_method,
                installation_command=server.installation_command,
                last_updated_upstream=server.last_updated_upstream,
                synced_at=server.synced_at,
            )
            for server in result.scalars()
        ]

    @staticmethod
    def repository_score(github: GitHubEntry, pulsemcp: PulseEntry) -> float:
        if not github.repo_key or not pulsemcp.repo_key:
            return 0.0
        return 1.0 if github.repo_key == pulsemcp.repo_key else 0.0

    @staticmethod
    def name_score(github: GitHubEntry, pulsemcp: PulseEntry) -> float:
        if not github.name_lower or not pulsemcp.name_lower:
            return 0.0
        if github.name_lower == pulsemcp.name_lower:
            return 1.0
        return _jaccard(github.name_words, pulsemcp.name_words)

    @staticmethod
    def description_score(github: GitHubEntry, pulsemcp: PulseEntry) -> float:
        if not github.description_lower or not pulsemcp.description_lower:
            return 0.0
        if github.description_lower == pulsemcp.description_lower:
            return 1.0
        return _jaccard(github.description_words, pulsemcp.description_words)

    @staticmethod
    def capabilities_score(github: GitHubEntry, pulsemcp: PulseEntry) -> float:
        return capability_overlap(github.capabilities, pulsemcp.capabilities)

    def match_score(self, github: GitHubEntry, pulsemcp: PulseEntry) -> Tuple[float, Dict[str, float]]:
        parts = {
            "repository": self.repository_score(github, pulsemcp),
            "name": self.name_score(github, pulsemcp),
            "description": self.description_score(github, pulsemcp),
            "capabilities": self.capabilities_score(github, pulsemcp),
        }
        score = (
            parts["repository"] * REPOSITORY_WEIGHT
            + parts["name"] * NAME_WEIGHT
            + parts["description"] * DESCRIPTION_WEIGHT
            + parts["capabilities"] * CAPABILITIES_WEIGHT
        )
        return score, parts

    @staticmethod
    def match_reasons(parts: Dict[str, float]) -> List[str]:
        reasons = []
        if parts["repository"] > 0.9:
            reasons.append("repository_url")
        if parts["name"] > 0.8:
            reasons.append("name_similarity")
        if parts["description"] > 0.7:
            reasons.append("description_similarity")
        if parts["capabilities"] > 0.5:
            reasons.append("capabilities_overlap")
        return reasons

    def find_matches(
        self,
        github: List[GitHubEntry],
        pulsemcp: List[PulseEntry],
    ) -> Tuple[List[Match], List[GitHubEntry], List[PulseEntry]]:
        """
        Pair each GitHub entry with its best-scoring PulseMCP entry.

        A PulseMCP entry may be the best match for more than one GitHub
        entry; it then appears in each merged row.
        """
        matches: List[Match] = []
        unmatched_github: List[GitHubEntry] = []
        matched_pulsemcp_ids = set()

        for entry in github:
            best: Optional[PulseEntry] = None
            best_score = 0.0
            best_parts: Dict[str, float] = {}
            for candidate in pulsemcp:
                score, parts = self.match_score(entry, candidate)
                if score > best_score and score >= self.min_match_score:
                    best, best_score, best_parts = candidate, score, parts

            if best is None:
                unmatched_github.append(entry)
                continue

            matches.append(Match(entry, best, round(best_score, 4), self.match_reasons(best_parts)))
            matched_pulsemcp_ids.add(best.id)

        unmatched_pulsemcp = [entry for entry in pulsemcp if entry.id not in matched_pulsemcp_ids]

        self.stats["github"]["matched"] = len(matches)
        self.stats["github"]["unmatched"] = len(unmatched_github)
        self.stats["pulsemcp"]["matched"] = len(matched_pulsemcp_ids)
        self.stats["pulsemcp"]["unmatched"] = len(unmatched_pulsemcp)
        return matches, unmatched_github, unmatched_pulsemcp

    def merged_confidence(self, github: GitHubEntry, pulsemcp: PulseEntry) -> int:
        confidence = github.confidence or 0
        if pulsemcp.verified:
            confidence += self.confidence_boost
        if pulsemcp.health_score:
            confidence += pulsemcp.health_score // 10
        return int(round(min(confidence, 100)))

    @staticmethod
    def pulsemcp_confidence(pulsemcp: PulseEntry) -> int:
        confidence = 50
        if pulsemcp.verified:
            confidence += 30
        if (pulsemcp.health_score or 0) > 80:
            confidence += 15
        if pulsemcp.downloads > 1000:
            confidence += 10
        if pulsemcp.stars > 50:
            confidence += 5
        return min(confidence, 100)

    def build_matched_record(self, match: Match, now: datetime) -> MergedServer:
        github, pulsemcp = match.github, match.pulsemcp
        prefer_pulsemcp = self.prefer_pulsemcp and pulsemcp.verified
        preferred_description = pulsemcp.description if prefer_pulsemcp else github.description
        activity = [value for value in (github.last_activity, pulsemcp.last_updated_upstream) if value]

        return MergedServer(
            server_key=f"github:{github.full_name}",
            github_id=github.id,
            pulsemcp_id=pulsemcp.id,
            pulsemcp_server_id=pulsemcp.server_id,
            name=pulsemcp.name if prefer_pulsemcp else github.name,
            description=preferred_description or github.description or pulsemcp.description,
            repository_url=github.url,
            clone_url=github.clone_url,
            full_name=github.full_name,
            owner=github.owner,
            language=pulsemcp.language or github.language,
            version=pulsemcp.version or github.version,
            capabilities=merge_capabilities(github.capabilities, pulsemcp.capabilities),
            server_type=github.server_type or infer_server_type(pulsemcp.category),
            category=pulsemcp.category,
            confidence=self.merged_confidence(github, pulsemcp),
            verified=pulsemcp.verified,
            health_score=pulsemcp.health_score,
            health_trend=pulsemcp.health_trend,
            github_stars=github.stars,
            pulsemcp_stars=pulsemcp.stars,
            combined_stars=github.stars + pulsemcp.stars,
            downloads=pulsemcp.downloads,
            forks=github.forks,
            installation_method=pulsemcp.installation_method or github.installation_method,
            installation_command=pulsemcp.installation_command,
            package_name=github.package_name or pulsemcp.name,
            topics=github.topics,
            match_score=match.score,
            match_reasons=match.reasons,
            data_sources="github,pulsemcp",
            github_discovered_at=github.discovered_at,
            github_analyzed_at=github.last_analyzed,
            pulsemcp_synced_at=pulsemcp.synced_at,
            last_updated=max(activity) if activity else None,
            merged_at=now,
        )

    @staticmethod
    def build_github_record(github: GitHubEntry, now: datetime) -> MergedServer:
        return MergedServer(
            server_key=f"github:{github.full_name}",
            github_id=github.id,
            name=github.name,
            description=github.description,
            repository_url=github.url,
            clone_url=github.clone_url,
            full_name=github.full_name,
            owner=github.owner,
            language=github.language,
            version=github.version,
            capabilities=list(github.capabilities),
            server_type=github.server_type,
            confidence=int(round(github.confidence)),
            verified=False,
            github_stars=github.stars,
            combined_stars=github.stars,
            forks=github.forks,
            installation_method=github.installation_method,
            package_name=github.package_name,
            topics=github.topics,
            match_reasons=[],
            data_sources="github",
            github_discovered_at=github.discovered_at,
            github_analyzed_at=github.last_analyzed,
            last_updated=github.last_activity,
            merged_at=now,
        )

    def build_pulsemcp_record(self, pulsemcp: PulseEntry, now: datetime) -> MergedServer:
        return MergedServer(
            server_key=f"pulsemcp:{pulsemcp.server_id}",
            pulsemcp_id=pulsemcp.id,
            pulsemcp_server_id=pulsemcp.server_id,
            name=pulsemcp.name,
            description=pulsemcp.description,
            repository_url=pulsemcp.repository,
            language=pulsemcp.language,
            version=pulsemcp.version,
            capabilities=list(pulsemcp.capabilities),
            server_type=infer_server_type(pulsemcp.category),
            category=pulsemcp.category,
            confidence=self.pulsemcp_confidence(pulsemcp),
            verified=pulsemcp.verified,
            health_score=pulsemcp.health_score,
            health_trend=pulsemcp.health_trend,
            pulsemcp_stars=pulsemcp.stars,
            combined_stars=pulsemcp.stars,
            downloads=pulsemcp.downloads,
            installation_method=pulsemcp.installation_method,
            installation_command=pulsemcp.installation_command,
            package_name=pulsemcp.name,
            topics=[],
            match_reasons=[],
            data_sources="pulsemcp",
            pulsemcp_synced_at=pulsemcp.synced_at,
            last_updated=pulsemcp.last_updated_upstream,
            merged_at=now,
        )

    async def _source_counts(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(MergedServer.data_sources, func.count()).group_by(MergedServer.data_sources)
        )
        return {sources: count for sources, count in result.all()}

    async def update_provenance(self) -> None:
        await self.storage.set_metadata("last_merge_time", to_iso(utc_now()))
        await self.storage.set_metadata("merge_stats", json.dumps(self.stats))
        for sources, count in (await self._source_counts()).items():
            await self.storage.set_metadata(f"merged_servers_{sources}", str(count))

    async def get_merged_stats(self) -> Dict[str, Any]:
        total = await self.session.scalar(select(func.count()).select_from(MergedServer))
        verified = await self.session.scalar(
            select(func.count()).select_from(MergedServer).where(MergedServer.verified.is_(True))
        )
        high_confidence = await self.session.scalar(
            select(func.count()).select_from(MergedServer).where(MergedServer.confidence >= HIGH_CONFIDENCE)
        )
        return {
            "total": total or 0,
            "verified": verified or 0,
            "high_confidence": high_confidence or 0,
            "sources": await self._source_counts(),
            "last_merge": await self.storage.get_metadata("last_merge_time"),
        }
