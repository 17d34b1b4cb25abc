#!/usr/bin/env python3
"""
CLI for snapshot management.

Usage:
    snapvault list
    snapvault show    NAME [--json]
    snapvault history NAME [--kind glamourer|customize]
    snapvault migrate [--json]
    snapvault import  FILE.mcdf
    snapvault export  NAME [--node ID] [--select PATH ...] [--out FILE.pmp]
    snapvault import-pcp FILE.pcp
    snapvault export-pcp NAME [--out FILE.pcp] [--glamourer-index N] [--customize-index N]
                         [--player-name NAME] [--home-world ID]
    snapvault capture --from capture.json [--actor NAME]
    snapvault rename  OLD NEW

Global options: -v/--verbose, --config FILE, --working-dir DIR, --structured-logs
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from .config import SnapVaultConfig
from .core.exceptions import BackupFailed, ConfigError, NotASnapshot, SnapVaultError
from .core.logging import configure_logging
from .core.notify import NotificationChannel
from .core.tasks import TaskResult, TaskRunner
from .exchange import McdfImporter, PcpExporter, PcpImporter, PmpExporter
from .snapshot import (
    CaptureService,
    JsonCaptureProvider,
    MigrationEngine,
    SnapshotLibrary,
    SnapshotState,
)


logger = logging.getLogger("snapvault.cli")


def setup_logging(config: SnapVaultConfig, verbose: bool = False, structured: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else config.log_level
    configure_logging(level=level, structured=structured or config.structured_logs)


def run_task(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> TaskResult:
    """Run one operation on a worker thread and wait for its result."""
    with TaskRunner(max_workers=1) as runner:
        return runner.submit(name, fn, *args, **kwargs).wait()


def _snapshot_dir(config: SnapVaultConfig, name: str) -> Path:
    return config.require_working_directory() / name


def cmd_list(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """List snapshots in the working directory."""
    library = SnapshotLibrary(config.require_working_directory(), notifications)
    snapshots = library.list_snapshots()
    if not snapshots:
        print("No snapshots found.")
        return 0

    for summary in snapshots:
        print(
            f"{summary.name:<32} actor={summary.source_actor:<24} "
            f"maps={summary.file_map_count:<4} files={summary.replacement_count:<5} "
            f"updated={summary.last_update}"
        )
    return 0


def cmd_show(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Show a snapshot's metadata and file map chain."""
    state = SnapshotState.load(_snapshot_dir(config, args.name))

    if args.json:
        print(json.dumps(state.to_dict(), indent=2))
        return 0

    print(f"Snapshot:        {args.name}")
    print(f"Source actor:    {state.source_actor}")
    print(f"World id:        {state.source_world_id}")
    print(f"Format version:  {state.format_version}")
    print(f"Last update:     {state.last_update.isoformat()}")
    print(f"Replacements:    {len(state.file_replacements)}")
    print(f"File maps:       {len(state.chain)}")
    for node in state.chain:
        marker = "*" if node.id == state.current_file_map_id else " "
        print(f"  {marker} {node.id}  parent={node.parent_id or '-':<32}  "
              f"changes={len(node.changes):<5} {node.created_at}")
    return 0


def cmd_history(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Show appearance histories."""
    state = SnapshotState.load(_snapshot_dir(config, args.name))
    kinds = [args.kind] if args.kind else ["glamourer", "customize"]

    for kind in kinds:
        history = getattr(state.histories, kind)
        print(f"{kind.capitalize()} history ({len(history)} entries)")
        for entry in history:
            print(f"  {entry.preview()}  [file map {entry.file_map_id or '-'}]")
    return 0


def cmd_migrate(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Run the migration pass."""
    engine = MigrationEngine.from_config(config, notifications)
    result = run_task("migrate", engine.run, manual=True)
    if not result.ok:
        if isinstance(result.error, BackupFailed):
            logger.error(f"Migration aborted: {result.error}")
        else:
            logger.error(f"Migration failed: {result.error_message}")
        return 1

    report = result.value
    print(report.summary())
    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))
    return 0 if report.success else 1


def cmd_import(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Import an MCDF container as a new snapshot."""
    container = Path(args.file)
    if not container.exists():
        logger.error(f"File not found: {container}")
        return 1

    importer = McdfImporter(config.require_working_directory(), notifications)
    result = run_task("import", importer.import_file, container)
    if not result.ok:
        return 1

    imported = result.value
    print(f"Imported into {imported.snapshot_path} ({imported.blob_count} blobs, {imported.path_count} paths)")
    for truncated in imported.truncated:
        print(f"  truncated: {truncated.entry} (expected {truncated.expected}, got {truncated.actual})")
    return 0


def cmd_export(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Export a snapshot as a mod pack."""
    exporter = PmpExporter(config.require_working_directory(), notifications, author=config.export_author)
    result = run_task(
        "export",
        exporter.export,
        _snapshot_dir(config, args.name),
        node_id=args.node,
        output_path=Path(args.out) if args.out else None,
        selection=args.select,
    )
    if not result.ok:
        return 1

    exported = result.value
    print(f"Exported {exported.file_count} files ({exported.path_count} paths) to {exported.archive_path}")
    return 0


def cmd_import_pcp(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Import a character pack as a new snapshot."""
    pack = Path(args.file)
    if not pack.exists():
        logger.error(f"File not found: {pack}")
        return 1

    importer = PcpImporter(config.require_working_directory(), notifications)
    result = run_task("import-pcp", importer.import_file, pack)
    if not result.ok:
        return 1

    imported = result.value
    print(f"Imported into {imported.snapshot_path} ({imported.blob_count} blobs, {imported.path_count} paths)")
    return 0


def cmd_export_pcp(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Export a snapshot as a character pack."""
    exporter = PcpExporter(config.require_working_directory(), notifications, author=config.export_author)
    result = run_task(
        "export-pcp",
        exporter.export,
        _snapshot_dir(config, args.name),
        output_path=Path(args.out) if args.out else None,
        glamourer_index=args.glamourer_index,
        customize_index=args.customize_index,
        player_name=args.player_name,
        home_world_id=args.home_world,
    )
    if not result.ok:
        return 1

    exported = result.value
    print(f"Exported {exported.file_count} files ({exported.path_count} paths) to {exported.archive_path}")
    return 0


def cmd_capture(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Record a capture description into its snapshot."""
    provider = JsonCaptureProvider(Path(args.source))
    actor = args.actor or provider.actor
    if not actor:
        logger.error("No actor given and the capture description has no 'Actor'")
        return 1

    service = CaptureService(config.require_working_directory(), notifications)
    snapshot_path = service.capture(actor, provider)
    if snapshot_path is None:
        return 1
    print(f"Captured {actor} into {snapshot_path}")
    return 0


def cmd_rename(args, config: SnapVaultConfig, notifications: NotificationChannel) -> int:
    """Rename a snapshot directory."""
    library = SnapshotLibrary(config.require_working_directory(), notifications)
    return 0 if library.rename(args.old, args.new) is not None else 1


COMMANDS = {
    "list": cmd_list,
    "show": cmd_show,
    "history": cmd_history,
    "migrate": cmd_migrate,
    "import": cmd_import,
    "export": cmd_export,
    "import-pcp": cmd_import_pcp,
    "export-pcp": cmd_export_pcp,
    "capture": cmd_capture,
    "rename": cmd_rename,
}


def parse_args(argv: Optional[list] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="snapvault",
        description="SnapVault snapshot storage CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--working-dir", help="Working directory (overrides config)")
    parser.add_argument("--structured-logs", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("list", help="List snapshots")

    show_parser = subparsers.add_parser("show", help="Show snapshot metadata and file maps")
    show_parser.add_argument("name", help="Snapshot directory name")
    show_parser.add_argument("--json", action="store_true", help="Print snapshot.json content")

    history_parser = subparsers.add_parser("history", help="Show appearance histories")
    history_parser.add_argument("name", help="Snapshot directory name")
    history_parser.add_argument("--kind", choices=["glamourer", "customize"], help="Only one history")

    migrate_parser = subparsers.add_parser("migrate", help="Migrate old snapshots to the current format")
    migrate_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    import_parser = subparsers.add_parser("import", help="Import an MCDF file as a new snapshot")
    import_parser.add_argument("file", help="Path to .mcdf file")

    export_parser = subparsers.add_parser("export", help="Export a snapshot as a .pmp mod pack")
    export_parser.add_argument("name", help="Snapshot directory name")
    export_parser.add_argument("--node", help="File map id to export (default: current)")
    export_parser.add_argument("--select", action="append", help="Export only this logical path (repeatable)")
    export_parser.add_argument("--out", help="Output archive path")

    import_pcp_parser = subparsers.add_parser("import-pcp", help="Import a .pcp character pack as a new snapshot")
    import_pcp_parser.add_argument("file", help="Path to .pcp file")

    export_pcp_parser = subparsers.add_parser("export-pcp", help="Export a snapshot as a .pcp character pack")
    export_pcp_parser.add_argument("name", help="Snapshot directory name")
    export_pcp_parser.add_argument("--out", help="Output archive path")
    export_pcp_parser.add_argument("--glamourer-index", type=int, help="Glamourer history entry (default: latest)")
    export_pcp_parser.add_argument("--customize-index", type=int, help="Customize history entry (default: latest)")
    export_pcp_parser.add_argument("--player-name", help="Actor name written to the pack")
    export_pcp_parser.add_argument("--home-world", type=int, help="Home world id written to the pack")

    capture_parser = subparsers.add_parser("capture", help="Record a capture description into a snapshot")
    capture_parser.add_argument("--from", dest="source", required=True, help="Capture description JSON")
    capture_parser.add_argument("--actor", help="Actor name (default: from the description)")

    rename_parser = subparsers.add_parser("rename", help="Rename a snapshot")
    rename_parser.add_argument("old", help="Current snapshot name")
    rename_parser.add_argument("new", help="New snapshot name")

    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    try:
        config = SnapVaultConfig(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    if args.working_dir:
        config.working_directory = Path(args.working_dir)

    setup_logging(config, verbose=args.verbose, structured=args.structured_logs)

    handler = COMMANDS.get(args.command)
    if handler is None:
        print("No command specified. Use --help for usage.", file=sys.stderr)
        return 1

    notifications = NotificationChannel()
    try:
        return handler(args, config, notifications)
    except (ConfigError, NotASnapshot) as e:
        logger.error(str(e))
        return 1
    except SnapVaultError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
