"""
agrestore - Main entry point.

Commands:
- restore: Restore a database from a full backup, optionally preserving its
  permissions and rejoining its availability group
- permissions capture: Export the principal graph of a database as JSON
- permissions order: Show the replay order of a database's principals

Usage:
    agrestore restore --backup-file B:\\Backup\\SalesDB.bak --database SalesDB \\
        --availability-group AG1 --shared-folder \\\\fs01\\seed --preserve-permissions
    agrestore permissions capture --database SalesDB

Connection and logging are configured via environment variables.
See config.py for all available settings.

Invariants:
    - Exit code 0 on success or when yielding to the primary replica, 1 on failure
    - Configuration errors are reported before connecting

How to change safely:
    - Add new flags with defaults that keep the current behavior
    - Keep option names aligned with RestoreOptions fields
"""

from __future__ import annotations

import argparse
import logging
import sys

import json_log_formatter
from pydantic import ValidationError

from .backends import create_backend
from .config import RestoreToolConfig
from .errors import RestoreToolError
from .options import RestoreOptions
from .security import ReplayOrder
from .tools import PermissionsCLI, RestoreTool

logger = logging.getLogger(__name__)


def setup_logging(config: RestoreToolConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Tool configuration
        verbose: Force DEBUG level
    """
    level = logging.DEBUG if verbose else getattr(
        logging, config.observability.log_level.upper(), logging.INFO
    )

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("pyodbc").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agrestore", description="SQL Server restore with permission and availability group handling"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    restore_parser = subparsers.add_parser("restore", help="Restore a database from a full backup")
    restore_parser.add_argument("--backup-file", required=True, help="Full backup file")
    restore_parser.add_argument("--database", required=True, help="Target database")
    restore_parser.add_argument("--availability-group", help="Availability group to rejoin")
    restore_parser.add_argument("--shared-folder", help="Folder reachable by every replica")
    restore_parser.add_argument(
        "--check-model", action="store_true", help="Copy file autogrowth from the model database"
    )
    restore_parser.add_argument(
        "--preserve-permissions", action="store_true", help="Keep users, roles and permissions"
    )
    restore_parser.add_argument("--log-to-table", action="store_true", help="Log commands to CommandLog")
    restore_parser.add_argument(
        "--replay-order",
        choices=[order.value for order in ReplayOrder],
        default=ReplayOrder.ROLES_FIRST.value,
        help="Principal replay order",
    )
    restore_parser.add_argument("--dry-run", action="store_true", help="Log commands without running them")
    restore_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    permissions_parser = subparsers.add_parser("permissions", help="Permission diagnostics")
    permissions_sub = permissions_parser.add_subparsers(dest="action", required=True)

    capture_parser = permissions_sub.add_parser("capture", help="Export the principal graph as JSON")
    capture_parser.add_argument("--database", required=True, help="Database to inspect")

    order_parser = permissions_sub.add_parser("order", help="Show the principal replay order")
    order_parser.add_argument("--database", required=True, help="Database to inspect")
    order_parser.add_argument(
        "--replay-order",
        choices=[order.value for order in ReplayOrder],
        default=ReplayOrder.ROLES_FIRST.value,
        help="Principal replay order",
    )

    return parser


def _restore(tool: RestoreTool, args: argparse.Namespace) -> int:
    try:
        options = RestoreOptions(
            check_model_autogrowth=args.check_model,
            availability_group=args.availability_group,
            shared_folder=args.shared_folder,
            preserve_permissions=args.preserve_permissions,
            log_to_table=args.log_to_table,
            replay_order=ReplayOrder(args.replay_order),
            execute=not args.dry_run,
        )
    except ValidationError as e:
        print(f"Invalid options: {e}", file=sys.stderr)
        return 1

    result = tool.restore(args.backup_file, args.database, options)
    if result.yielded:
        print(f"Not the primary replica of {args.availability_group}, nothing to do")
        return 0

    print("Restore completed successfully")
    print(f"  Database: {result.database}")
    if result.replay is not None:
        print(f"  Principals replayed: {len(result.replay.processed)}")
        print(f"  Replay anomalies: {len(result.replay.anomalies)}")
        for anomaly in result.replay.anomalies:
            print(f"    - {anomaly}")
    if result.joined_replicas:
        print(f"  Secondary replicas joined: {', '.join(result.joined_replicas)}")
    print(f"  Duration: {result.duration_ms}ms")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = RestoreToolConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config, verbose=args.verbose)
    config.log_config()

    backend = create_backend(config)
    try:
        if args.command == "restore":
            return _restore(RestoreTool(backend, config), args)

        backend.connect()
        cli = PermissionsCLI(backend)
        if args.action == "capture":
            print(cli.capture(args.database))
        else:
            print(cli.order(args.database, ReplayOrder(args.replay_order)))
        return 0

    except RestoreToolError as e:
        print(f"Failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        backend.close()


if __name__ == "__main__":
    sys.exit(main())
