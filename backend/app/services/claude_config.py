"""
Claude Desktop configuration management.

Claude Desktop reads MCP servers from one of two files in its config
directory: ``config.json`` (servers under ``mcp.servers``) or the older
``claude_desktop_config.json`` (servers under ``mcpServers``).
"""
import json
import logging
import os
import platform
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from app.services.package_validator import PackageValidator

logger = logging.getLogger(__name__)

NEW_CONFIG_NAME = "config.json"
OLD_CONFIG_NAME = "claude_desktop_config.json"
PLACEHOLDER_TOKEN = "REPLACE_WITH_YOUR_TOKEN"
SECRET_MARKERS = ("TOKEN", "KEY")


class ClaudeConfigError(Exception):
    """Raised when a Claude Desktop config cannot be read or updated."""


def _config_dir(system: str, home: Path, appdata: Optional[str]) -> Path:
    if system == "Darwin":
        return home / "Library" / "Application Support" / "Claude"
    if system == "Linux":
        return home / ".config" / "Claude"
    if system == "Windows":
        if not appdata:
            raise ValueError("APPDATA is not set")
        return Path(appdata) / "Claude"
    raise ValueError(f"Unsupported operating system: {system}")


def detect_config_path(
    system: Optional[str] = None,
    home: Optional[Path] = None,
    appdata: Optional[str] = None,
) -> Tuple[Path, str]:
    """
    Locate the Claude Desktop config file for this machine.

    Returns (path, format) where format is "new" for config.json and "old"
    for claude_desktop_config.json. When neither exists, a new-format path
    is returned.

    Raises:
        ValueError: for an unsupported operating system
    """
    system = system or platform.system()
    home = home or Path.home()
    if appdata is None:
        appdata = os.environ.get("APPDATA")

    directory = _config_dir(system, home, appdata)
    new_path = directory / NEW_CONFIG_NAME
    old_path = directory / OLD_CONFIG_NAME

    if new_path.exists():
        return new_path, "new"
    if old_path.exists():
        return old_path, "old"
    return new_path, "new"


def load_config(path: Path) -> Dict[str, Any]:
    """Read a config file. A missing file is an empty config."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ClaudeConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(config, dict):
        raise ClaudeConfigError(f"Config in {path} must be a JSON object, got {type(config).__name__}")
    return config


def list_servers(config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    section = config.get("mcp")
    servers = (section.get("servers") if isinstance(section, dict) else None) or {}
    if not servers:
        servers = config.get("mcpServers") or {}
    return servers


def find_unconfigured_secrets(servers: Dict[str, Dict[str, Any]]) -> List[Dict[str, str]]:
    """Env vars that look like credentials but are empty or still the placeholder."""
    missing = []
    for name, details in servers.items():
        for var_name, value in (details.get("env") or {}).items():
            if not any(marker in var_name for marker in SECRET_MARKERS):
                continue
            if not value or value == PLACEHOLDER_TOKEN:
                missing.append({"server": name, "variable": var_name})
    return missing


def validate_config(path: Path) -> Dict[str, Any]:
    """
    Check a config file and report problems.

    A missing file is created with an empty ``mcpServers`` section and
    counted as an issue.
    """
    path = Path(path)
    issues: List[str] = []
    report: Dict[str, Any] = {"path": str(path), "exists": path.exists(), "valid_json": False, "servers": []}

    if not path.exists():
        issues.append(f"Config file not found at {path}, created a default one")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"mcpServers": {}}), encoding="utf-8")
        logger.warning(f"Created default Claude config at {path}")

    try:
        config = load_config(path)
        report["valid_json"] = True
    except ClaudeConfigError as e:
        issues.append(str(e))
        config = {}

    servers = list_servers(config)
    report["servers"] = [
        {"name": name, "command": details.get("command", "unknown")}
        for name, details in servers.items()
    ]

    missing = find_unconfigured_secrets(servers)
    for entry in missing:
        issues.append(f"{entry['server']}: {entry['variable']} needs configuration")
    report["unconfigured_env"] = missing

    report["issues"] = issues
    report["valid"] = not issues
    return report


def backup_config(path: Path) -> Optional[Path]:
    """Copy the config aside as ``<path>.backup.YYYYmmdd_HHMMSS``."""
    path = Path(path)
    if not path.exists():
        logger.info("No existing config to back up")
        return None
    backup_path = path.with_name(f"{path.name}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    shutil.copy2(path, backup_path)
    logger.info(f"Backed up Claude config to {backup_path}")
    return backup_path


def build_npx_server_config(
    package: str,
    args: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    config: Dict[str, Any] = {"command": "npx", "args": ["-y", package, *(args or [])]}
    if env:
        config["env"] = dict(env)
    return config


async def add_server(
    path: Path,
    name: str,
    server_config: Dict[str, Any],
    config_format: str,
    validate_package: bool = True,
    validator: Optional[PackageValidator] = None,
) -> Dict[str, Any]:
    """
    Add or replace one server entry, backing the file up first.

    When ``validate_package`` is set, the npm package named in the server's
    npx arguments must exist in the registry.

    Raises:
        ClaudeConfigError: if the package does not validate or the file is not valid JSON
    """
    path = Path(path)
    package_check = None

    if validate_package:
        package = next((arg for arg in server_config.get("args", []) if not arg.startswith("-")), None)
        if package:
            package_check = await (validator or PackageValidator()).validate_npm_package(package)
            if not package_check["valid"]:
                raise ClaudeConfigError(package_check["error"])

    config = load_config(path)
    backup_path = backup_config(path)

    if config_format == "new":
        config.setdefault("mcp", {}).setdefault("servers", {})[name] = server_config
    else:
        config.setdefault("mcpServers", {})[name] = server_config

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)

    logger.info(f"Added {name} to {path}")
    return {
        "name": name,
        "path": str(path),
        "format": config_format,
        "backup": str(backup_path) if backup_path else None,
        "package": package_check,
    }
