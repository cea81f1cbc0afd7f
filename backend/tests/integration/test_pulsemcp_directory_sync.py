"""
Integration tests for mirroring the PulseMCP directory into the database.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.pulsemcp import PulseMcpCategory, PulseMcpHealthHistory, PulseMcpServer, PulseMcpSyncHistory
from app.services.pulsemcp_client import MOCK_CATEGORIES, PulseMCPClient
from app.services.pulsemcp_sync import LAST_SYNC_ID_KEY, LAST_SYNC_KEY, PulseMCPSync
from app.services.storage import StorageService


def active_servers(client: PulseMCPClient):
    return [server for server in client.mock_servers if server["active"]]


async def count(session: AsyncSession, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


class TestRunSync:
    @pytest.mark.asyncio
    async def test_first_sync_inserts_active_servers(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = active_servers(mock_pulsemcp)
        sync = PulseMCPSync(db_session, client=mock_pulsemcp)

        result = await sync.run_sync()

        stats = result["stats"]
        assert result["sync_id"].startswith("pulsemcp-sync-")
        assert stats["servers"] == {"total": len(active), "new": len(active), "updated": 0, "skipped": 0}
        assert stats["categories"]["processed"] == len(MOCK_CATEGORIES)
        assert stats["processing"]["errors"] == []

        assert await count(db_session, PulseMcpServer) == len(active)
        assert await count(db_session, PulseMcpCategory) == len(MOCK_CATEGORIES)
        assert await count(db_session, PulseMcpHealthHistory) == len(active)

        history = await db_session.scalar(select(PulseMcpSyncHistory))
        assert history.sync_id == result["sync_id"]
        assert history.servers_new == len(active)

        storage = StorageService(db_session)
        assert await storage.get_metadata(LAST_SYNC_ID_KEY) == result["sync_id"]
        assert (await storage.get_metadata(LAST_SYNC_KEY)).endswith("Z")

        first = active[0]
        row = await db_session.scalar(select(PulseMcpServer).where(PulseMcpServer.server_id == first["id"]))
        assert row.name == first["name"]
        assert row.health_score == first["healthScore"]
        assert row.installation_command == first["installation"]["command"]
        assert row.health_trend == "stable"

    @pytest.mark.asyncio
    async def test_recent_sync_is_skipped(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        await PulseMCPSync(db_session, client=mock_pulsemcp).run_sync()

        result = await PulseMCPSync(db_session, client=mock_pulsemcp, sync_interval_hours=24).run_sync()

        assert result["skipped"] is True
        assert result["next_sync_in_hours"] == 24
        assert await count(db_session, PulseMcpSyncHistory) == 1

    @pytest.mark.asyncio
    async def test_forced_sync_updates_and_tracks_trend(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = active_servers(mock_pulsemcp)
        await PulseMCPSync(db_session, client=mock_pulsemcp).run_sync()

        # Directory reports a lower score on the next pass
        active[0]["healthScore"] = 65
        result = await PulseMCPSync(db_session, client=mock_pulsemcp).run_sync(force=True)

        assert result["stats"]["servers"]["new"] == 0
        assert result["stats"]["servers"]["updated"] == len(active)
        assert await count(db_session, PulseMcpServer) == len(active)
        assert await count(db_session, PulseMcpHealthHistory) == 2 * len(active)

        trends = dict((await db_session.execute(
            select(PulseMcpServer.server_id, PulseMcpServer.health_trend)
        )).all())
        assert trends[active[0]["id"]] == "declining"
        assert trends[active[1]["id"]] == "stable"

    @pytest.mark.asyncio
    async def test_low_health_servers_are_skipped(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = active_servers(mock_pulsemcp)
        healthy = [server for server in active if server["healthScore"] >= 90]

        result = await PulseMCPSync(db_session, client=mock_pulsemcp, min_health_score=90).run_sync()

        assert result["stats"]["servers"]["skipped"] == len(active) - len(healthy)
        assert result["stats"]["servers"]["new"] == len(healthy)
        assert await count(db_session, PulseMcpServer) == len(healthy)

    @pytest.mark.asyncio
    async def test_include_inactive(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        result = await PulseMCPSync(db_session, client=mock_pulsemcp, include_inactive=True).run_sync()

        assert result["stats"]["servers"]["total"] == len(mock_pulsemcp.mock_servers)

    @pytest.mark.asyncio
    async def test_bad_directory_entries_become_warnings(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = [dict(server) for server in active_servers(mock_pulsemcp)]
        relisted = dict(active[0], healthScore=80)
        unscored = dict(active[1], id="pulsemcp-unscored", healthScore="n/a")
        listing = {"servers": active + [relisted, unscored]}

        with patch.object(mock_pulsemcp, "get_all_servers", AsyncMock(return_value=listing)):
            result = await PulseMCPSync(db_session, client=mock_pulsemcp).run_sync()

        stats = result["stats"]
        assert stats["servers"]["total"] == len(active) + 1
        assert stats["servers"]["new"] == len(active)
        warnings = stats["processing"]["warnings"]
        assert f"Duplicate server id {active[0]['id']}" in warnings
        assert any(w.startswith("Failed to sync server pulsemcp-unscored") for w in warnings)

        assert await count(db_session, PulseMcpServer) == len(active)
        row = await db_session.scalar(select(PulseMcpServer).where(PulseMcpServer.server_id == active[0]["id"]))
        assert row.health_score == 80


class TestQueries:
    @pytest.mark.asyncio
    async def test_search_and_category_listing(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = active_servers(mock_pulsemcp)
        sync = PulseMCPSync(db_session, client=mock_pulsemcp)
        await sync.run_sync()

        # Single-digit ids so the name is not a prefix of another
        target = next(server for server in active if 3 <= int(server["id"].split("-")[1]) <= 9)
        found = await sync.search_servers(target["name"].upper())
        assert [server["server_id"] for server in found] == [target["id"]]

        by_capability = await sync.search_servers(target["capabilities"][0])
        assert target["id"] in {server["server_id"] for server in by_capability}

        in_category = await sync.get_servers_by_category(target["category"])
        expected = {server["id"] for server in active if server["category"] == target["category"]}
        assert {server["server_id"] for server in in_category} == expected
        scores = [server["health_score"] for server in in_category]
        assert scores == sorted(scores, reverse=True)

        verified = await sync.get_servers_by_category(target["category"], verified=True)
        assert all(server["verified"] for server in verified)

        assert await sync.search_servers("no-such-server-anywhere") == []

    @pytest.mark.asyncio
    async def test_sync_stats(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        active = active_servers(mock_pulsemcp)
        sync = PulseMCPSync(db_session, client=mock_pulsemcp)
        result = await sync.run_sync()

        stats = await sync.get_sync_stats()

        assert stats["servers"]["total"] == len(active)
        assert stats["servers"]["active"] == len(active)
        assert stats["servers"]["verified"] == len([server for server in active if server["verified"]])
        assert sum(stats["categories"].values()) == len(active)
        assert stats["last_sync_id"] == result["sync_id"]
        assert stats["auto_sync_enabled"] is False
