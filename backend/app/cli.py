"""
Command line entry point: ``mcp7-discovery <command>``.

Every command opens its own database session, creating tables on first use.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from app.db.session import AsyncSessionLocal, init_db
from app.schemas.discovery import DiscoveryOptions, SuperDiscoveryOptions
from app.services.advisor import AdvisorService
from app.services.claude_config import (
    ClaudeConfigError,
    add_server,
    build_npx_server_config,
    detect_config_path,
    validate_config,
)
from app.services.data_merger import DataMerger
from app.services.discovery_orchestrator import DiscoveryOrchestrator
from app.services.github_service import get_github_service
from app.services.health_monitor import HealthMonitor, start_monitoring
from app.services.pulsemcp_client import PulseMCPClient
from app.services.pulsemcp_sync import PulseMCPSync
from app.services.storage import StorageService
from app.services.super_orchestrator import SuperOrchestrator

logger = logging.getLogger("mcp7_discovery")

QUICK_PRESET = {"max_repositories": 1000, "min_stars": 5}
TEST_PRESET = {"max_repositories": 100, "min_stars": 10, "dry_run": True}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _write_json(path: str, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Results exported to {target}")


def discovery_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Discovery option values from presets and explicit flags; flags win."""
    overrides: Dict[str, Any] = {}
    if getattr(args, "quick", False):
        overrides.update(QUICK_PRESET)
    if getattr(args, "test", False):
        overrides.update(TEST_PRESET)

    flag_fields = {
        "max_repos": "max_repositories",
        "min_stars": "min_stars",
        "concurrency": "concurrency",
        "batch_size": "batch_size",
    }
    for flag, field in flag_fields.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field] = value
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    if getattr(args, "strict", False):
        overrides["strict_mode"] = True
    return overrides


def print_discovery_summary(report: Dict[str, Any]) -> None:
    discovery = report["discovery"]
    detection = report["mcp_detection"]
    print(f"Discovery run {report['run_id']} finished in {report['processing']['duration_formatted']}")
    print(f"  Repositories: {discovery['repositories_discovered']} discovered, "
          f"{discovery['repositories_analyzed']} analyzed, {discovery['repositories_stored']} stored")
    print(f"  MCP servers:  {detection['total_mcp_servers']} detected "
          f"({detection['high_confidence']} high, {detection['medium_confidence']} medium, "
          f"{detection['low_confidence']} low confidence)")
    print(f"  Errors: {report['processing']['errors']}")


def print_super_summary(report: Dict[str, Any]) -> None:
    if "error" in report:
        print(f"Run {report['run_id']} finished but the report failed: {report['error']}")
        return
    github = report["github"]
    pulsemcp = report["pulsemcp"]
    integration = report["integration"]
    health = report["health"]
    print(f"Super discovery {report['run_id']} finished in {report['processing']['duration_formatted']}")
    print(f"  GitHub:   {github['repositories_discovered']} discovered, "
          f"{github['mcp_servers_detected']} MCP servers")
    print(f"  PulseMCP: {pulsemcp['synced_servers']} synced of {pulsemcp['total_servers']}")
    print(f"  Catalog:  {integration['total_merged_records']} records, {integration['matched_pairs']} matched, "
          f"data quality {integration['data_quality_score']}")
    print(f"  Health:   {health['servers_monitored']} monitored, overall score {health['overall_health_score']}")
    print(f"  Errors: {report['processing']['errors']}")


async def cmd_discover(args: argparse.Namespace) -> int:
    options = DiscoveryOptions(**discovery_overrides(args))
    async with AsyncSessionLocal() as session:
        orchestrator = DiscoveryOrchestrator(session, options)
        result = await orchestrator.run_discovery()
        print_discovery_summary(result["report"])
        if args.export:
            _write_json(args.export, await orchestrator.export_results())
    return 0


async def cmd_super(args: argparse.Namespace) -> int:
    options = SuperDiscoveryOptions(
        include_pulsemcp=not args.github_only,
        enable_health_monitoring=not args.no_health,
        force=args.force,
        **({"mock_pulsemcp": True} if args.mock_pulsemcp else {}),
        **discovery_overrides(args),
    )
    async with AsyncSessionLocal() as session:
        orchestrator = SuperOrchestrator(session, options)
        try:
            result = await orchestrator.run_super_discovery()
            print_super_summary(result["report"])
            if args.export:
                _write_json(args.export, await orchestrator.export_super_results())
        finally:
            await orchestrator.close()
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    client = PulseMCPClient(mock_mode=True if args.mock else None)
    try:
        async with AsyncSessionLocal() as session:
            result = await PulseMCPSync(session, client=client).run_sync(force=args.force)
    finally:
        await client.close()

    if result.get("skipped"):
        print(f"Sync skipped, next sync due in {result['next_sync_in_hours']} hours (use --force)")
        return 0
    servers = result["stats"]["servers"]
    print(f"Sync {result['sync_id']} finished in {result['duration']}: "
          f"{servers['new']} new, {servers['updated']} updated, {servers['skipped']} skipped")
    return 0


async def cmd_merge(args: argparse.Namespace) -> int:
    async with AsyncSessionLocal() as session:
        stats = await DataMerger(session).run_merge()
    _print_json(stats)
    return 0


async def cmd_health(args: argparse.Namespace) -> int:
    if args.continuous:
        task = start_monitoring(args.interval)
        print(f"Health monitoring every {task.interval_seconds}s, press Ctrl+C to stop")
        await task.wait()
        return 0

    async with AsyncSessionLocal() as session:
        monitor = HealthMonitor(session)
        if args.report:
            _print_json(await monitor.generate_health_report(period_days=args.period))
        else:
            _print_json(await monitor.run_health_check())
    return 0


async def cmd_stats(args: argparse.Namespace) -> int:
    async with AsyncSessionLocal() as session:
        _print_json({
            "github": await StorageService(session).get_discovery_stats(),
            "pulsemcp": await PulseMCPSync(session).get_sync_stats(),
            "catalog": await DataMerger(session).get_merged_stats(),
        })
    return 0


async def cmd_clean(args: argparse.Namespace) -> int:
    async with AsyncSessionLocal() as session:
        cleared = await StorageService(session).clear_old_cache(ttl_hours=args.ttl_hours)
        await session.commit()
    print(f"Cleared {cleared['analysis']} analysis and {cleared['detection']} detection entries")
    return 0


def _resolve_config_path(args: argparse.Namespace):
    if args.config:
        path = Path(args.config)
        return path, "old" if path.name == "claude_desktop_config.json" else "new"
    return detect_config_path()


async def cmd_validate_config(args: argparse.Namespace) -> int:
    path, config_format = _resolve_config_path(args)
    report = validate_config(path)
    print(f"Claude config: {report['path']} ({config_format} format)")
    for server in report["servers"]:
        print(f"  {server['name']}: {server['command']}")
    for issue in report["issues"]:
        print(f"  ! {issue}")
    return 0 if report["valid"] else 1


def _parse_env(pairs) -> Dict[str, str]:
    env = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --env value '{pair}', expected KEY=VALUE")
        env[key] = value
    return env


async def cmd_add_server(args: argparse.Namespace) -> int:
    path, config_format = _resolve_config_path(args)
    server_config = build_npx_server_config(args.package, args.arg, _parse_env(args.env))
    result = await add_server(
        path,
        args.name,
        server_config,
        config_format,
        validate_package=not args.no_validate,
    )
    print(f"Added {result['name']} to {result['path']}")
    if result["backup"]:
        print(f"Previous config backed up to {result['backup']}")
    print("Restart Claude Desktop to load the new server")
    return 0


async def cmd_recommend(args: argparse.Namespace) -> int:
    async with AsyncSessionLocal() as session:
        result = await AdvisorService(session=session).recommend(args.description, limit=args.limit)
    _print_json(result)
    return 1 if "error" in result else 0


COMMANDS = {
    "discover": cmd_discover,
    "super": cmd_super,
    "sync": cmd_sync,
    "merge": cmd_merge,
    "health": cmd_health,
    "stats": cmd_stats,
    "clean": cmd_clean,
    "validate-config": cmd_validate_config,
    "add-server": cmd_add_server,
    "recommend": cmd_recommend,
}


def _add_discovery_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-repos", type=int, help="Maximum repositories to process")
    parser.add_argument("--min-stars", type=int, help="Minimum star count")
    parser.add_argument("--concurrency", type=int, help="Concurrent repository analyses")
    parser.add_argument("--batch-size", type=int, help="Repositories per analysis batch")
    parser.add_argument("--dry-run", action="store_true", help="Analyze without writing to the database")
    parser.add_argument("--strict", action="store_true", help="Use strict MCP detection")
    parser.add_argument("--export", metavar="FILE", help="Write the results to a JSON file")
    parser.add_argument("--quick", action="store_true", help="Preset: 1000 repositories, 5+ stars")
    parser.add_argument("--test", action="store_true", help="Preset: 100 repositories, 10+ stars, dry run")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcp7-discovery", description="MCP server discovery and catalog tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    discover = subparsers.add_parser("discover", help="Discover MCP servers on GitHub")
    _add_discovery_arguments(discover)

    super_parser = subparsers.add_parser("super", help="GitHub discovery, PulseMCP sync, merge and health check")
    _add_discovery_arguments(super_parser)
    super_parser.add_argument("--github-only", action="store_true", help="Skip the PulseMCP sync")
    super_parser.add_argument("--no-health", action="store_true", help="Skip the health check")
    super_parser.add_argument("--mock-pulsemcp", action="store_true", help="Use generated PulseMCP data")
    super_parser.add_argument("--force", action="store_true", help="Sync PulseMCP even if recently synced")

    sync = subparsers.add_parser("sync", help="Mirror the PulseMCP directory")
    sync.add_argument("--force", action="store_true", help="Sync even if recently synced")
    sync.add_argument("--mock", action="store_true", help="Use generated PulseMCP data")

    subparsers.add_parser("merge", help="Rebuild the merged catalog")

    health = subparsers.add_parser("health", help="Run a health check or print a health report")
    health.add_argument("--report", action="store_true", help="Print a report instead of checking")
    health.add_argument("--period", type=int, default=7, help="Report period in days")
    health.add_argument("--continuous", action="store_true", help="Keep checking on a schedule")
    health.add_argument("--interval", type=int, help="Seconds between checks with --continuous")

    subparsers.add_parser("stats", help="Print database statistics")

    clean = subparsers.add_parser("clean", help="Delete stale analysis and detection entries")
    clean.add_argument("--ttl-hours", type=int, help="Entries older than this are removed")

    validate = subparsers.add_parser("validate-config", help="Check the Claude Desktop config")
    validate.add_argument("--config", help="Config file path (detected when omitted)")

    add = subparsers.add_parser("add-server", help="Add an npx MCP server to the Claude Desktop config")
    add.add_argument("name", help="Server name in the config")
    add.add_argument("--package", required=True, help="npm package to run with npx")
    add.add_argument("--arg", action="append", help="Extra argument (repeatable)")
    add.add_argument("--env", action="append", metavar="KEY=VALUE", help="Environment variable (repeatable)")
    add.add_argument("--no-validate", action="store_true", help="Skip the npm registry check")
    add.add_argument("--config", help="Config file path (detected when omitted)")

    recommend = subparsers.add_parser("recommend", help="Ask MCP-7 for MCP server recommendations")
    recommend.add_argument("description", help="Free-text project description")
    recommend.add_argument("--limit", type=int, default=10, help="Maximum recommendations")

    return parser


async def run_command(args: argparse.Namespace) -> int:
    await init_db()
    try:
        return await COMMANDS[args.command](args)
    finally:
        await get_github_service().close()


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        print("Interrupted")
        return 1
    except (ClaudeConfigError, ValueError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        if args.verbose:
            logger.exception("Traceback")
        return 1


if __name__ == "__main__":
    sys.exit(main())
