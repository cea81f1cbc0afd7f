"""
Tests for Claude Desktop config discovery, validation and server registration.
"""
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services.claude_config import (
    ClaudeConfigError,
    add_server,
    backup_config,
    build_npx_server_config,
    detect_config_path,
    find_unconfigured_secrets,
    list_servers,
    load_config,
    validate_config,
)


class TestDetectConfigPath:
    def test_macos_path(self, tmp_path):
        path, fmt = detect_config_path(system="Darwin", home=tmp_path)

        assert path == tmp_path / "Library" / "Application Support" / "Claude" / "config.json"
        assert fmt == "new"

    def test_linux_prefers_existing_old_format(self, tmp_path):
        directory = tmp_path / ".config" / "Claude"
        directory.mkdir(parents=True)
        (directory / "claude_desktop_config.json").write_text("{}")

        path, fmt = detect_config_path(system="Linux", home=tmp_path)

        assert path.name == "claude_desktop_config.json"
        assert fmt == "old"

    def test_new_format_wins_when_both_exist(self, tmp_path):
        directory = tmp_path / ".config" / "Claude"
        directory.mkdir(parents=True)
        (directory / "claude_desktop_config.json").write_text("{}")
        (directory / "config.json").write_text("{}")

        path, fmt = detect_config_path(system="Linux", home=tmp_path)

        assert path.name == "config.json"
        assert fmt == "new"

    def test_windows_uses_appdata(self, tmp_path):
        path, _ = detect_config_path(system="Windows", home=tmp_path, appdata=str(tmp_path / "Roaming"))

        assert path == tmp_path / "Roaming" / "Claude" / "config.json"

    def test_unsupported_system(self, tmp_path):
        with pytest.raises(ValueError, match="Unsupported operating system"):
            detect_config_path(system="Plan9", home=tmp_path)


class TestConfigContents:
    def test_load_missing_file_is_empty(self, tmp_path):
        assert load_config(tmp_path / "missing.json") == {}

    def test_load_invalid_json_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ClaudeConfigError, match="Invalid JSON"):
            load_config(path)

    def test_load_non_object_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[]")

        with pytest.raises(ClaudeConfigError, match="must be a JSON object"):
            load_config(path)

    def test_list_servers_reads_both_layouts(self):
        assert list_servers({"mcp": {"servers": {"a": {}}}}) == {"a": {}}
        assert list_servers({"mcpServers": {"b": {}}}) == {"b": {}}
        assert list_servers({}) == {}
        assert list_servers({"mcp": [], "mcpServers": {"c": {}}}) == {"c": {}}

    def test_find_unconfigured_secrets(self):
        servers = {
            "github": {"env": {"GITHUB_TOKEN": "REPLACE_WITH_YOUR_TOKEN", "LOG_LEVEL": ""}},
            "search": {"env": {"BRAVE_API_KEY": ""}},
            "ok": {"env": {"API_KEY": "abc"}},
        }

        assert find_unconfigured_secrets(servers) == [
            {"server": "github", "variable": "GITHUB_TOKEN"},
            {"server": "search", "variable": "BRAVE_API_KEY"},
        ]


class TestValidateConfig:
    def test_missing_file_is_created(self, tmp_path):
        path = tmp_path / "Claude" / "config.json"

        report = validate_config(path)

        assert path.exists()
        assert json.loads(path.read_text()) == {"mcpServers": {}}
        assert report["exists"] is False
        assert report["valid"] is False
        assert len(report["issues"]) == 1

    def test_valid_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcpServers": {"fs": {"command": "npx", "args": []}}}))

        report = validate_config(path)

        assert report["valid"] is True
        assert report["servers"] == [{"name": "fs", "command": "npx"}]

    def test_invalid_json_is_an_issue(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")

        report = validate_config(path)

        assert report["valid_json"] is False
        assert report["valid"] is False

    def test_top_level_array_is_an_issue(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[]")

        report = validate_config(path)

        assert report["valid"] is False
        assert report["servers"] == []
        assert any("must be a JSON object" in issue for issue in report["issues"])

    def test_placeholder_tokens_are_reported(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcpServers": {"gh": {"command": "npx", "env": {"GITHUB_TOKEN": ""}}}}))

        report = validate_config(path)

        assert report["valid"] is False
        assert report["unconfigured_env"] == [{"server": "gh", "variable": "GITHUB_TOKEN"}]


class TestAddServer:
    def setup_method(self):
        self.validator = MagicMock()
        self.validator.validate_npm_package = AsyncMock(
            return_value={"valid": True, "error": None, "version": "1.0.0"}
        )

    def test_build_npx_server_config(self):
        assert build_npx_server_config("@acme/server", ["--port", "3000"], {"TOKEN": "x"}) == {
            "command": "npx",
            "args": ["-y", "@acme/server", "--port", "3000"],
            "env": {"TOKEN": "x"},
        }
        assert "env" not in build_npx_server_config("pkg")

    def test_backup_of_missing_file(self, tmp_path):
        assert backup_config(tmp_path / "config.json") is None

    @pytest.mark.asyncio
    async def test_add_to_new_format(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcp": {"servers": {"existing": {"command": "node"}}}}))

        result = await add_server(
            path, "weather", build_npx_server_config("@acme/weather"), "new", validator=self.validator
        )

        config = json.loads(path.read_text())
        assert set(config["mcp"]["servers"]) == {"existing", "weather"}
        assert result["package"]["version"] == "1.0.0"
        assert result["backup"] is not None
        assert Path(result["backup"]).exists()
        self.validator.validate_npm_package.assert_awaited_once_with("@acme/weather")

    @pytest.mark.asyncio
    async def test_add_to_old_format_creates_file(self, tmp_path):
        path = tmp_path / "Claude" / "claude_desktop_config.json"

        result = await add_server(
            path, "weather", build_npx_server_config("@acme/weather"), "old", validate_package=False
        )

        assert json.loads(path.read_text())["mcpServers"]["weather"]["args"] == ["-y", "@acme/weather"]
        assert result["backup"] is None
        assert result["package"] is None

    @pytest.mark.asyncio
    async def test_unknown_package_is_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        self.validator.validate_npm_package = AsyncMock(
            return_value={"valid": False, "error": "Package 'nope' not found in npm registry", "version": None}
        )

        with pytest.raises(ClaudeConfigError, match="not found"):
            await add_server(path, "nope", build_npx_server_config("nope"), "new", validator=self.validator)

        assert not path.exists()
