"""
Integration tests for the end-to-end catalog build.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.merged_server import MergedServer
from app.schemas.discovery import SuperDiscoveryOptions
from app.services.discovery_orchestrator import DiscoveryError
from app.services.pulsemcp_client import PulseMCPClient
from app.services.storage import StorageService
from app.services.super_orchestrator import SuperOrchestrator, get_top_mcp_servers

from sample_data import FakeGitHubService, sample_github_details


def make_options(**overrides) -> SuperDiscoveryOptions:
    values = dict(
        max_repositories=10, min_stars=0, batch_size=10, concurrency=2,
        delay_between_requests=0, force=True, mock_pulsemcp=True,
    )
    values.update(overrides)
    return SuperDiscoveryOptions(**values)


def active_count(client: PulseMCPClient) -> int:
    return len([server for server in client.mock_servers if server["active"]])


class TestSuperDiscovery:
    @pytest.mark.asyncio
    async def test_full_run(self, db_session: AsyncSession, fake_github: FakeGitHubService, mock_pulsemcp: PulseMCPClient):
        active = active_count(mock_pulsemcp)
        orchestrator = SuperOrchestrator(db_session, make_options(), github=fake_github, pulsemcp_client=mock_pulsemcp)

        with patch("app.services.health_monitor.BATCH_PAUSE_SECONDS", 0):
            result = await orchestrator.run_super_discovery()

        report = result["report"]
        assert result["run_id"].startswith("super-discovery-")
        assert report["github"]["repositories_discovered"] == 2
        assert report["github"]["mcp_servers_detected"] == 1
        assert report["pulsemcp"]["enabled"] is True
        assert report["pulsemcp"]["total_servers"] == active
        assert report["pulsemcp"]["synced_servers"] == active

        # The canned GitHub server is not listed in the directory
        assert report["integration"]["matched_pairs"] == 0
        assert report["integration"]["github_only_records"] == 1
        assert report["integration"]["total_merged_records"] == active + 1
        assert 0 < report["integration"]["data_quality_score"] <= 100

        health = report["health"]
        assert health["servers_monitored"] == active + 1
        assert health["healthy_servers"] == active
        assert health["critical_servers"] == 1
        assert 0 < health["overall_health_score"] < 100
        assert report["processing"]["errors"] == 0
        assert report["merged"]["total"] == active + 1

        run = await StorageService(db_session).get_discovery_run(result["run_id"])
        assert run["status"] == "completed"
        assert run["configuration"]["type"] == "super_discovery"
        assert run["repositories_found"] == 2 + active

        top = await get_top_mcp_servers(db_session, limit=5)
        assert len(top) == 5
        confidences = [server["confidence"] for server in top]
        assert confidences == sorted(confidences, reverse=True)

    @pytest.mark.asyncio
    async def test_optional_phases_disabled(self, db_session: AsyncSession, fake_github: FakeGitHubService, mock_pulsemcp: PulseMCPClient):
        options = make_options(include_pulsemcp=False, enable_health_monitoring=False)
        orchestrator = SuperOrchestrator(db_session, options, github=fake_github, pulsemcp_client=mock_pulsemcp)

        result = await orchestrator.run_super_discovery()

        report = result["report"]
        assert report["pulsemcp"]["enabled"] is False
        assert report["pulsemcp"]["total_servers"] == 0
        assert report["integration"]["total_merged_records"] == 1
        assert report["health"]["monitoring_enabled"] is False
        assert report["health"]["servers_monitored"] == 0
        assert report["health"]["overall_health_score"] == 0

    @pytest.mark.asyncio
    async def test_directory_failure_is_recorded(self, db_session: AsyncSession, fake_github: FakeGitHubService, mock_pulsemcp: PulseMCPClient):
        options = make_options(enable_health_monitoring=False)
        orchestrator = SuperOrchestrator(db_session, options, github=fake_github, pulsemcp_client=mock_pulsemcp)

        with patch.object(mock_pulsemcp, "get_all_servers", AsyncMock(side_effect=RuntimeError("directory offline"))):
            result = await orchestrator.run_super_discovery()

        errors = result["stats"]["processing"]["errors"]
        assert [error["phase"] for error in errors] == ["pulsemcp_sync"]
        assert errors[0]["error"] == "directory offline"
        assert result["report"]["integration"]["total_merged_records"] == 1

        run = await StorageService(db_session).get_discovery_run(result["run_id"])
        assert run["status"] == "completed"

    @pytest.mark.asyncio
    async def test_github_failure_fails_run(self, db_session: AsyncSession, mock_pulsemcp: PulseMCPClient):
        github = FakeGitHubService(sample_github_details(), search_remaining=0)
        orchestrator = SuperOrchestrator(db_session, make_options(), github=github, pulsemcp_client=mock_pulsemcp)

        with pytest.raises(DiscoveryError):
            await orchestrator.run_super_discovery()

        run = await StorageService(db_session).get_discovery_run(orchestrator.run_id)
        assert run["status"] == "failed"
        assert "Insufficient GitHub API rate limit" in run["error_message"]


class TestTopServers:
    @pytest.mark.asyncio
    async def test_unscored_entries_sort_last(self, db_session: AsyncSession):
        db_session.add_all([
            MergedServer(server_key="github:a/unscored", name="unscored", data_sources="github", confidence=80),
            MergedServer(
                server_key="github:b/scored", name="scored", data_sources="github",
                confidence=80, health_score=90, combined_stars=3,
            ),
        ])
        await db_session.commit()

        top = await get_top_mcp_servers(db_session, limit=5)

        assert [server["name"] for server in top] == ["scored", "unscored"]

    @pytest.mark.asyncio
    async def test_postgres_order_keeps_nulls_last(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=MagicMock())

        await get_top_mcp_servers(session, limit=5)

        statement = session.execute.await_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert sql.count("DESC NULLS LAST") == 3
