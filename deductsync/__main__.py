"""CLI entry point for deductsync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import load_config
from .context import AppContext, build_context
from .errors import AssetFetchError, DeductSyncError


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging for the CLI.

    Args:
        verbose: Debug output unless ``log_level`` is given.
        log_level: One of ``LOG_LEVELS``; takes precedence over ``verbose``.
        json_output: Emit JSON lines instead of plain text.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s")
    )
    logging.basicConfig(level=level, handlers=[handler])
    # Request lines from httpx are too chatty at info level
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


async def _open_manager(args: argparse.Namespace) -> AppContext | None:
    """Build a context and load the remote collection, or report failure."""
    config = load_config(args.config)
    ctx = build_context(config)
    try:
        await ctx.manager.initialize()
    except DeductSyncError as e:
        print(f"Error: could not load deductions: {e}", file=sys.stderr)
        await ctx.close()
        return None
    return ctx


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the sync service and HTTP API."""
    config = load_config(args.config)

    import uvicorn

    from .api import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    print(f"Starting deductsync node: {config.node.name}")
    print(f"Remote: {config.remote.backend} {config.remote.url}".rstrip())
    print(f"Deductions path: {config.remote.deductions_path}")
    if config.mqtt.enabled:
        print(f"MQTT: {config.mqtt.broker}:{config.mqtt.port}")
    print(f"URL: http://{host}:{port}")

    ctx = build_context(config)
    try:
        await ctx.start()
        app = create_app(config, manager=ctx.manager, worker=ctx.worker)

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    except KeyboardInterrupt:
        print("\nShutting down...")
    except DeductSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await ctx.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Report remote, local slot and asset cache status."""
    config = load_config(args.config)
    ctx = build_context(config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"name": config.node.name},
    }

    remote_status = {
        "backend": config.remote.backend,
        "url": config.remote.url,
        "deductions_path": config.remote.deductions_path,
        "reachable": False,
    }
    try:
        await ctx.manager.initialize()
        remote_status["reachable"] = True
        remote_status["deductions"] = ctx.manager.cache_size
    except DeductSyncError as e:
        remote_status["error"] = str(e)
    status_data["remote"] = remote_status

    status_data["local"] = ctx.slot.get_stats()
    status_data["mqtt"] = {
        "enabled": config.mqtt.enabled,
        "broker": config.mqtt.broker,
        "port": config.mqtt.port,
        "topic_prefix": config.mqtt.topic_prefix,
    }
    status_data["assets"] = {
        "enabled": config.assets.enabled,
        "strategy": config.assets.strategy,
        "caches": ctx.cache_storage.get_stats() if ctx.cache_storage else {},
    }

    await ctx.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("deductsync Status Check")
    print("=======================")
    print(f"Node: {config.node.name}")
    print()

    print(f"Remote ({remote_status['backend']}):")
    if remote_status["reachable"]:
        print("  Status: Reachable")
        print(f"  Deductions: {remote_status['deductions']}")
    else:
        print("  Status: Not reachable")
        print(f"  Error: {remote_status.get('error', 'unknown')}")
    print()

    print("Local slot:")
    print(f"  Database: {status_data['local']['db_path']}")
    print(f"  Slots: {status_data['local']['slot_count']}")
    print()

    print("MQTT:")
    print(f"  Enabled: {'Yes' if config.mqtt.enabled else 'No'}")
    if config.mqtt.enabled:
        print(f"  Broker: {config.mqtt.broker}:{config.mqtt.port}")
    print()

    print("Asset cache:")
    if config.assets.enabled:
        print(f"  Strategy: {config.assets.strategy}")
        for name, entries in status_data["assets"]["caches"].items():
            print(f"    - {name}: {entries} entries")
    else:
        print("  Disabled")

    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    """List cached deductions."""
    ctx = await _open_manager(args)
    if ctx is None:
        return 1

    try:
        if args.case:
            records = ctx.manager.get_case_deductions(args.case)
        else:
            records = ctx.manager.get_all_deductions()
    finally:
        await ctx.close()

    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return 0

    if not records:
        print("No deductions found.")
        return 0

    for record in records:
        name = record.defendant_name or record.plaintiff_name
        print(f"{record.id}  {record.case_number}  {record.date}  {record.amount:>12}  {name}")
    print(f"\nTotal: {len(records)} deduction(s)")
    return 0


async def cmd_reconcile(args: argparse.Namespace) -> int:
    """Push local snapshot records that the remote store is missing."""
    ctx = await _open_manager(args)
    if ctx is None:
        return 1

    try:
        added = await ctx.manager.sync_local_to_remote()
        await ctx.manager.drain()
    finally:
        await ctx.close()

    print(f"Reconciled: {added} deduction(s) pushed to remote store")
    return 0


def _asset_context(args: argparse.Namespace) -> AppContext | None:
    config = load_config(args.config)
    if not config.assets.enabled:
        print("Asset cache is disabled in configuration", file=sys.stderr)
        return None
    return build_context(config)


async def cmd_cache_install(args: argparse.Namespace) -> int:
    """Install the asset worker: pre-populate caches."""
    ctx = _asset_context(args)
    if ctx is None:
        return 1

    try:
        await ctx.worker.install()
        print(f"Installed: worker state is {ctx.worker.state.value}")
        for name, entries in ctx.cache_storage.get_stats().items():
            print(f"  - {name}: {entries} entries")
    except AssetFetchError as e:
        print(f"Install failed: {e}", file=sys.stderr)
        return 1
    finally:
        await ctx.close()

    return 0


async def cmd_cache_activate(args: argparse.Namespace) -> int:
    """Activate the asset worker: delete stale caches."""
    ctx = _asset_context(args)
    if ctx is None:
        return 1

    try:
        deleted = await ctx.worker.activate()
    finally:
        await ctx.close()

    if deleted:
        print(f"Deleted {len(deleted)} old cache(s): {', '.join(deleted)}")
    else:
        print("No old caches to delete")
    return 0


def cmd_cache_list(args: argparse.Namespace) -> int:
    """List cache generations and their entry counts."""
    ctx = _asset_context(args)
    if ctx is None:
        return 1

    try:
        stats = ctx.cache_storage.get_stats()
    finally:
        ctx.cache_storage.close()
        ctx.slot.close()

    if not stats:
        print("No caches found.")
        return 0

    current = {ctx.config.assets.static_cache_name, ctx.config.assets.dynamic_cache_name}
    for name, entries in stats.items():
        marker = "" if name in current else " (stale)"
        print(f"{name}: {entries} entries{marker}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="deductsync",
        description="Realtime sync of legal-case deduction records",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=sorted(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Start the sync service and HTTP API")
    run_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    run_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    run_parser.set_defaults(func=cmd_run)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check remote and cache status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # List command
    list_parser = subparsers.add_parser("list", help="List deductions")
    list_parser.add_argument(
        "--case",
        type=str,
        default=None,
        help="Only list deductions for this case number",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output deductions as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    # Reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Push local snapshot records missing remotely"
    )
    reconcile_parser.set_defaults(func=cmd_reconcile)

    # Cache commands
    cache_parser = subparsers.add_parser("cache", help="Manage the offline asset cache")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", help="Cache commands")

    cache_install = cache_subparsers.add_parser("install", help="Pre-populate asset caches")
    cache_install.set_defaults(func=cmd_cache_install)

    cache_activate = cache_subparsers.add_parser("activate", help="Delete stale asset caches")
    cache_activate.set_defaults(func=cmd_cache_activate)

    cache_list = cache_subparsers.add_parser("list", help="List asset caches")
    cache_list.set_defaults(func=cmd_cache_list)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "cache" and not args.cache_command:
        cache_parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
