import logging
import time
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import AsyncSessionLocal
from app.models.pulsemcp import PulseMcpCategory, PulseMcpHealthHistory, PulseMcpServer, PulseMcpSyncHistory
from app.services.pulsemcp_client import PulseMCPClient, get_pulsemcp_client
from app.services.storage import StorageService
from app.utils.periodic import PeriodicTask
from app.utils.run_helpers import create_batches, format_duration, generate_run_id
from app.utils.serialization import model_to_dict
from app.utils.time_helpers import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "pulsemcp_last_sync"
LAST_SYNC_ID_KEY = "pulsemcp_last_sync_id"
PROGRESS_EVERY_BATCHES = 10


def compute_health_trend(scores: List[int]) -> str:
    """
    Compare the newer half of a chronological score series with the older half.

    Fewer than two observations is always "stable".
    """
    if len(scores) < 2:
        return "stable"
    middle = len(scores) // 2
    older = scores[:middle]
    newer = scores[middle:]
    older_avg = sum(older) / len(older)
    newer_avg = sum(newer) / len(newer)
    if newer_avg > older_avg:
        return "improving"
    if newer_avg < older_avg:
        return "declining"
    return "stable"


class PulseMCPSync:
    """Mirrors the PulseMCP directory into the local database."""

    def __init__(
        self,
        session: AsyncSession,
        client: Optional[PulseMCPClient] = None,
        sync_interval_hours: Optional[int] = None,
        batch_size: int = 100,
        min_health_score: Optional[int] = None,
        include_inactive: bool = False,
        verified_only: bool = False,
    ):
        self.session = session
        self.client = client or get_pulsemcp_client()
        self.storage = StorageService(session)
        self.sync_interval_hours = sync_interval_hours or settings.PULSEMCP_SYNC_INTERVAL_HOURS
        self.batch_size = batch_size
        self.min_health_score = (
            settings.PULSEMCP_MIN_HEALTH_SCORE if min_health_score is None else min_health_score
        )
        self.include_inactive = include_inactive
        self.verified_only = verified_only

        self.sync_id: Optional[str] = None
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "servers": {"total": 0, "new": 0, "updated": 0, "skipped": 0},
            "categories": {"processed": 0},
            "processing": {"started_at": None, "duration": 0.0, "errors": [], "warnings": []},
        }

    async def get_last_sync_time(self):
        return parse_timestamp(await self.storage.get_metadata(LAST_SYNC_KEY))

    async def run_sync(self, force: bool = False) -> Dict[str, Any]:
        """
        Synchronize categories, servers and health trends.

        Returns {"skipped": True, "next_sync_in_hours"} when the last sync is
        recent enough, else {"sync_id", "stats", "duration"}.
        """
        last_sync = await self.get_last_sync_time()
        if last_sync and not force:
            elapsed = utc_now() - last_sync
            interval = timedelta(hours=self.sync_interval_hours)
            if elapsed < interval:
                remaining_hours = round((interval - elapsed).total_seconds() / 3600)
                logger.info(
                    f"Last PulseMCP sync was {round(elapsed.total_seconds() / 3600)} hours ago, "
                    f"next scheduled sync in {remaining_hours} hours"
                )
                return {"skipped": True, "next_sync_in_hours": remaining_hours}

        self.sync_id = generate_run_id("pulsemcp-sync")
        self.stats = self._empty_stats()
        started = time.monotonic()
        started_at = utc_now()
        self.stats["processing"]["started_at"] = to_iso(started_at)
        logger.info(f"Starting PulseMCP directory sync {self.sync_id}")

        remote_stats = await self.client.get_stats()
        logger.info(
            f"PulseMCP reports {remote_stats.get('totalServers')} servers "
            f"({remote_stats.get('activeServers')} active, {remote_stats.get('verifiedServers')} verified)"
        )

        await self.sync_categories()
        await self.sync_servers()
        await self.update_health_trends()

        self.stats["processing"]["duration"] = round(time.monotonic() - started, 3)
        await self.record_sync_completion(started_at)
        await self.session.commit()

        logger.info(
            f"PulseMCP sync completed in {format_duration(self.stats['processing']['duration'])}: "
            f"{self.stats['servers']['new']} new, {self.stats['servers']['updated']} updated, "
            f"{self.stats['servers']['skipped']} skipped"
        )
        return {
            "sync_id": self.sync_id,
            "stats": self.stats,
            "duration": format_duration(self.stats["processing"]["duration"]),
        }

    async def sync_categories(self) -> None:
        try:
            data = await self.client.get_categories()
            categories = data.get("categories")
            if not categories:
                logger.warning("No categories data received")
                return

            for category in categories:
                row = await self.session.get(PulseMcpCategory, category["id"])
                if row is None:
                    row = PulseMcpCategory(id=category["id"])
                    self.session.add(row)
                row.name = category.get("name") or category["id"]
                row.server_count = category.get("count") or 0
                row.last_updated = utc_now()
                self.stats["categories"]["processed"] += 1

            await self.session.commit()
            logger.info(f"Synced {len(categories)} categories")
        except Exception as e:
            await self.session.rollback()
            logger.warning(f"Failed to sync categories: {e}")
            self.stats["processing"]["warnings"].append(f"Failed to sync categories: {e}")

    async def sync_servers(self) -> None:
        try:
            data = await self.client.get_all_servers(
                active=None if self.include_inactive else True,
                verified=True if self.verified_only else None,
            )
        except Exception as e:
            self.stats["processing"]["errors"].append(
                {"phase": "servers", "error": str(e), "timestamp": to_iso(utc_now())}
            )
            raise

        servers = data.get("servers") or []
        if not servers:
            logger.warning("No servers data received")
            return

        servers = self._dedupe(servers)
        self.stats["servers"]["total"] = len(servers)
        batches = create_batches(servers, self.batch_size)
        logger.info(f"Processing {len(servers)} servers in {len(batches)} batches")

        for i, batch in enumerate(batches):
            try:
                ids = [server.get("id") for server in batch]
                result = await self.session.execute(
                    select(PulseMcpServer).where(PulseMcpServer.server_id.in_(ids))
                )
                existing = {row.server_id: row for row in result.scalars()}

                scores: List[tuple] = []
                for server in batch:
                    health_score = self.sync_server(server, existing.get(server.get("id")))
                    if health_score:
                        scores.append((server["id"], health_score))

                # History rows reference the server rows, so those are flushed first
                await self.session.flush()
                for server_id, health_score in scores:
                    self.session.add(PulseMcpHealthHistory(server_id=server_id, health_score=health_score))

                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.warning(f"Failed to store batch {i + 1}/{len(batches)}: {e}")
                self.stats["processing"]["warnings"].append(f"Failed to store batch {i + 1}: {e}")
                continue

            logger.debug(f"Batch {i + 1}/{len(batches)}: {len(batch)} servers")
            if (i + 1) % PROGRESS_EVERY_BATCHES == 0:
                logger.info(f"Sync progress: {round((i + 1) / len(batches) * 100)}%")

    def _dedupe(self, servers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Keep the last listing of each server id; entries without an id pass through."""
        unique: Dict[Any, Dict[str, Any]] = {}
        anonymous: List[Dict[str, Any]] = []
        for server in servers:
            server_id = server.get("id")
            if not server_id:
                anonymous.append(server)
                continue
            if server_id in unique:
                logger.warning(f"Server {server_id} listed more than once, keeping the last entry")
                self.stats["processing"]["warnings"].append(f"Duplicate server id {server_id}")
            unique[server_id] = server
        return list(unique.values()) + anonymous

    def sync_server(self, server: Dict[str, Any], existing: Optional[PulseMcpServer] = None) -> Optional[int]:
        """
        Stage one directory entry for insert or update.

        Returns the health score to record, or None when the server was
        skipped, rejected, or has no score.
        """
        server_id = server.get("id")
        try:
            if not server_id:
                raise ValueError("missing server id")
            raw_score = server.get("healthScore")
            health_score = int(raw_score) if raw_score else None
            if health_score and health_score < self.min_health_score:
                self.stats["servers"]["skipped"] += 1
                return None

            installation = server.get("installation") or {}
            values = {
                "name": server.get("name") or str(server_id),
                "description": server.get("description"),
                "category": server.get("category"),
                "language": server.get("language"),
                "capabilities": list(server.get("capabilities") or []),
                "version": server.get("version"),
                "author": server.get("author"),
                "repository": server.get("repository"),
                "verified": bool(server.get("verified")),
                "active": bool(server.get("active")),
                "health_score": int(health_score) if health_score else None,
                "downloads": int(server.get("downloads") or 0),
                "stars": int(server.get("stars") or 0),
                "installation_method": installation.get("method"),
                "installation_command": installation.get("command"),
                "last_updated_upstream": parse_timestamp(server.get("lastUpdated")),
                "synced_at": utc_now(),
            }
        except (TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Failed to sync server {server_id}: {e}")
            self.stats["processing"]["warnings"].append(f"Failed to sync server {server_id}: {e}")
            return None

        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            self.stats["servers"]["updated"] += 1
        else:
            self.session.add(PulseMcpServer(server_id=server_id, **values))
            self.stats["servers"]["new"] += 1

        return values["health_score"]

    async def update_health_trends(self) -> None:
        try:
            result = await self.session.execute(
                select(PulseMcpHealthHistory.server_id, PulseMcpHealthHistory.health_score)
                .order_by(PulseMcpHealthHistory.recorded_at, PulseMcpHealthHistory.id)
            )
            history: Dict[str, List[int]] = defaultdict(list)
            for server_id, score in result.all():
                history[server_id].append(score)

            servers = await self.session.execute(select(PulseMcpServer))
            for server in servers.scalars():
                server.health_trend = compute_health_trend(history.get(server.server_id, []))

            await self.session.commit()
            logger.info("Health trend data updated")
        except Exception as e:
            await self.session.rollback()
            logger.warning(f"Failed to update health data: {e}")
            self.stats["processing"]["warnings"].append(f"Failed to update health data: {e}")

    async def record_sync_completion(self, started_at) -> None:
        servers = self.stats["servers"]
        self.session.add(PulseMcpSyncHistory(
            sync_id=self.sync_id,
            started_at=started_at,
            completed_at=utc_now(),
            servers_total=servers["total"],
            servers_new=servers["new"],
            servers_updated=servers["updated"],
            servers_skipped=servers["skipped"],
            categories_processed=self.stats["categories"]["processed"],
            errors=self.stats["processing"]["errors"],
            warnings=self.stats["processing"]["warnings"],
        ))
        await self.storage.set_metadata(LAST_SYNC_KEY, to_iso(utc_now()))
        await self.storage.set_metadata(LAST_SYNC_ID_KEY, self.sync_id)

    @staticmethod
    def _serialize(server: PulseMcpServer) -> Dict[str, Any]:
        return model_to_dict(server)

    async def get_servers_by_category(
        self,
        category: str,
        limit: int = 50,
        offset: int = 0,
        verified: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        query = select(PulseMcpServer).where(
            PulseMcpServer.category == category,
            PulseMcpServer.active.is_(True),
        )
        if verified is not None:
            query = query.where(PulseMcpServer.verified.is_(verified))
        query = query.order_by(
            PulseMcpServer.health_score.desc().nulls_last(), PulseMcpServer.stars.desc().nulls_last()
        ).limit(limit).offset(offset)

        result = await self.session.execute(query)
        return [self._serialize(server) for server in result.scalars()]

    async def search_servers(self, query: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Case-insensitive search over active servers' name, description and capabilities."""
        term = f"%{query.lower()}%"
        statement = (
            select(PulseMcpServer)
            .where(
                or_(
                    func.lower(PulseMcpServer.name).like(term),
                    func.lower(PulseMcpServer.description).like(term),
                    func.lower(cast(PulseMcpServer.capabilities, String)).like(term),
                ),
                PulseMcpServer.active.is_(True),
            )
            .order_by(PulseMcpServer.health_score.desc().nulls_last(), PulseMcpServer.stars.desc().nulls_last())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(statement)
        return [self._serialize(server) for server in result.scalars()]

    async def get_sync_stats(self) -> Dict[str, Any]:
        total = await self.session.scalar(select(func.count()).select_from(PulseMcpServer))
        active = await self.session.scalar(
            select(func.count()).select_from(PulseMcpServer).where(PulseMcpServer.active.is_(True))
        )
        verified = await self.session.scalar(
            select(func.count()).select_from(PulseMcpServer).where(PulseMcpServer.verified.is_(True))
        )
        result = await self.session.execute(
            select(PulseMcpServer.category, func.count())
            .where(PulseMcpServer.active.is_(True))
            .group_by(PulseMcpServer.category)
            .order_by(func.count().desc())
        )

        return {
            "servers": {"total": total or 0, "active": active or 0, "verified": verified or 0},
            "categories": {category: count for category, count in result.all()},
            "last_sync": await self.storage.get_metadata(LAST_SYNC_KEY),
            "last_sync_id": await self.storage.get_metadata(LAST_SYNC_ID_KEY),
            "auto_sync_enabled": bool(_auto_sync_task and _auto_sync_task.running),
        }


_auto_sync_task: Optional[PeriodicTask] = None


def start_auto_sync(interval_hours: Optional[int] = None) -> PeriodicTask:
    """Schedule a directory sync every `interval_hours` on the running loop."""
    global _auto_sync_task

    hours = interval_hours or settings.PULSEMCP_SYNC_INTERVAL_HOURS

    async def job():
        async with AsyncSessionLocal() as session:
            await PulseMCPSync(session, sync_interval_hours=hours).run_sync()

    stop_auto_sync()
    _auto_sync_task = PeriodicTask("PulseMCP sync", hours * 3600, job, run_immediately=True)
    _auto_sync_task.start()
    return _auto_sync_task


def stop_auto_sync() -> None:
    global _auto_sync_task
    if _auto_sync_task is not None:
        _auto_sync_task.stop()
        _auto_sync_task = None
