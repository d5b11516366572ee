"""CLI entry point for the sync server."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import SyncError
from .sync import SyncEngine


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open_engine(config: Config) -> SyncEngine:
    engine = SyncEngine(
        db_path=config.storage.db_path,
        recover_on_startup=config.sync.recover_on_startup,
    )
    engine.connect()
    return engine


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    import uvicorn

    from .server import create_app

    try:
        engine = _open_engine(config)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Starting sync server")
    print(f"Database: {engine.db_path}")
    print(f"URL: http://{config.server.host}:{config.server.port}")

    app = create_app(config, engine)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        engine.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show log horizon and store contents."""
    config = load_config(args.config)

    # Report the store as it is on disk, without repairing it first
    engine = SyncEngine(config.storage.db_path, recover_on_startup=False)
    try:
        engine.connect()
        stats = engine.get_stats()
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "database": str(engine.db_path),
        **stats,
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print(f"Sync Engine Status")
    print(f"==================")
    print(f"Database: {status_data['database']}")
    print(f"Horizon: {stats['horizon']}")
    print(f"Batches: {stats['total_batches']}")
    print(f"Materialized up to: {stats['materialized_position']}")
    if stats["pending_batches"]:
        print(f"  {stats['pending_batches']} batches pending (run 'syncengine recover')")
    print(f"Records: {stats['total_records']}")
    for entity_type, count in sorted(stats["records_by_type"].items()):
        print(f"  - {entity_type}: {count}")

    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    """Replay logged batches missing from the store."""
    config = load_config(args.config)

    engine = SyncEngine(config.storage.db_path, recover_on_startup=False)
    try:
        engine.connect()
        replayed = engine.recover()
    except SyncError as e:
        print(f"Recovery failed: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(f"Replayed {replayed} batches")
    return 0


def cmd_rebuild(args: argparse.Namespace) -> int:
    """Rebuild the store from the full transaction log."""
    config = load_config(args.config)

    engine = SyncEngine(config.storage.db_path, recover_on_startup=False)
    try:
        engine.connect()
        replayed = engine.rebuild()
    except SyncError as e:
        print(f"Rebuild failed: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(f"Rebuilt store from {replayed} batches")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="syncengine",
        description="Transaction log sync server for offline-first clients",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 8080)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show log and store status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Recover command
    recover_parser = subparsers.add_parser(
        "recover", help="Replay logged batches missing from the store"
    )
    recover_parser.set_defaults(func=cmd_recover)

    # Rebuild command
    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Rebuild the store from the full transaction log"
    )
    rebuild_parser.set_defaults(func=cmd_rebuild)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    else:
        return func(args)


if __name__ == "__main__":
    sys.exit(main())
