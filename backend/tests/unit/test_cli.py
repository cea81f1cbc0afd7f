"""
Tests for argument parsing and dispatch in the mcp7-discovery command.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app import cli


class TestParser:
    def setup_method(self):
        self.parser = cli.build_parser()

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            self.parser.parse_args([])

    def test_discover_flags(self):
        args = self.parser.parse_args(["discover", "--max-repos", "50", "--min-stars", "3", "--strict", "--dry-run"])

        assert cli.discovery_overrides(args) == {
            "max_repositories": 50,
            "min_stars": 3,
            "dry_run": True,
            "strict_mode": True,
        }

    def test_quick_preset(self):
        args = self.parser.parse_args(["discover", "--quick"])

        assert cli.discovery_overrides(args) == cli.QUICK_PRESET

    def test_test_preset(self):
        args = self.parser.parse_args(["super", "--test"])

        assert cli.discovery_overrides(args) == {"max_repositories": 100, "min_stars": 10, "dry_run": True}

    def test_explicit_flags_override_presets(self):
        args = self.parser.parse_args(["discover", "--quick", "--max-repos", "20"])

        assert cli.discovery_overrides(args) == {"max_repositories": 20, "min_stars": 5}

    def test_add_server_arguments(self):
        args = self.parser.parse_args([
            "add-server", "github", "--package", "@acme/github",
            "--env", "GITHUB_TOKEN=abc", "--arg=--readonly", "--no-validate",
        ])

        assert args.name == "github"
        assert args.package == "@acme/github"
        assert args.env == ["GITHUB_TOKEN=abc"]
        assert args.arg == ["--readonly"]
        assert args.no_validate is True

    def test_health_defaults(self):
        args = self.parser.parse_args(["health"])

        assert args.report is False
        assert args.period == 7
        assert args.interval is None


class TestParseEnv:
    def test_pairs(self):
        assert cli._parse_env(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}

    def test_none(self):
        assert cli._parse_env(None) == {}

    def test_invalid_pair(self):
        with pytest.raises(ValueError, match="expected KEY=VALUE"):
            cli._parse_env(["JUSTAKEY"])


class TestMain:
    def test_dispatches_to_command(self):
        command = AsyncMock(return_value=0)

        with patch.dict(cli.COMMANDS, {"merge": command}), \
                patch("app.cli.init_db", AsyncMock()), \
                patch("app.cli.get_github_service") as github:
            github.return_value.close = AsyncMock()
            assert cli.main(["merge"]) == 0

        command.assert_awaited_once()
        github.return_value.close.assert_awaited_once()

    def test_value_error_exits_with_one(self):
        command = AsyncMock(side_effect=ValueError("bad value"))

        with patch.dict(cli.COMMANDS, {"merge": command}), \
                patch("app.cli.init_db", AsyncMock()), \
                patch("app.cli.get_github_service") as github:
            github.return_value.close = AsyncMock()
            assert cli.main(["merge"]) == 1

    def test_validate_config_reports_issues(self, tmp_path, capsys):
        path = tmp_path / "claude_desktop_config.json"
        path.write_text(json.dumps({"mcpServers": {"gh": {"command": "npx", "env": {"GITHUB_TOKEN": ""}}}}))

        with patch("app.cli.init_db", AsyncMock()), patch("app.cli.get_github_service") as github:
            github.return_value.close = AsyncMock()
            code = cli.main(["validate-config", "--config", str(path)])

        out = capsys.readouterr().out
        assert code == 1
        assert "(old format)" in out
        assert "gh: GITHUB_TOKEN needs configuration" in out

    def test_add_server_writes_config(self, tmp_path):
        path = tmp_path / "config.json"

        with patch("app.cli.init_db", AsyncMock()), patch("app.cli.get_github_service") as github:
            github.return_value.close = AsyncMock()
            code = cli.main([
                "add-server", "weather", "--package", "@acme/weather",
                "--env", "API_KEY=secret", "--no-validate", "--config", str(path),
            ])

        assert code == 0
        server = json.loads(path.read_text())["mcp"]["servers"]["weather"]
        assert server == {"command": "npx", "args": ["-y", "@acme/weather"], "env": {"API_KEY": "secret"}}


class TestCommands:
    @pytest.mark.asyncio
    async def test_sync_prints_formatted_duration(self, capsys):
        args = cli.build_parser().parse_args(["sync", "--mock"])
        result = {
            "sync_id": "pulsemcp-sync-1",
            "duration": "5s",
            "stats": {"servers": {"new": 3, "updated": 1, "skipped": 0}},
        }
        session_factory = MagicMock()
        session_factory.return_value.__aenter__ = AsyncMock(return_value=MagicMock())
        session_factory.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("app.cli.AsyncSessionLocal", session_factory), patch("app.cli.PulseMCPSync") as sync:
            sync.return_value.run_sync = AsyncMock(return_value=result)
            assert await cli.cmd_sync(args) == 0

        out = capsys.readouterr().out
        assert "Sync pulsemcp-sync-1 finished in 5s: 3 new, 1 updated, 0 skipped" in out
        sync.return_value.run_sync.assert_awaited_once_with(force=False)
