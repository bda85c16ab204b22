#!/usr/bin/env python
"""Command line entry point for notevault."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import anyio

from notevault import __version__
from notevault.config import StorageBackendKind, config
from notevault.exceptions import RepositoryError, SyncError
from notevault.models.schema import ResolutionStrategy
from notevault.observability import configure_logging, metrics
from notevault.repository.document_repository import DocumentRepository
from notevault.repository.factory import RepositoryFactory
from notevault.services.sync_service import ExportFileReplica, SyncService
from notevault.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="notevault", description="Offline-first note store")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--backend",
        help="Storage backend",
        choices=[kind.value for kind in StorageBackendKind],
        default=None,
    )
    parser.add_argument(
        "--data-dir",
        help="Directory of the file store",
        type=str,
        default=os.environ.get("NOTEVAULT_DATA_DIR"),
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEVAULT_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEVAULT_LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--no-file-log", action="store_true", help="Log to the console only"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Export notes and notebooks as JSON")
    export.add_argument("-o", "--output", help="Output file (default: stdout)")

    import_ = commands.add_parser("import", help="Import an export file")
    import_.add_argument("file", help="JSON file written by 'export'")

    sync = commands.add_parser("sync", help="Sync against a remote export file")
    sync.add_argument("--remote", required=True, help="Remote replica export file")
    sync.add_argument(
        "--strategy",
        choices=[s.value for s in ResolutionStrategy],
        default=None,
        help="Conflict resolution strategy (default from configuration)",
    )

    commands.add_parser("status", help="Show store and resilience status")
    return parser.parse_args(argv)


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.backend:
        config.storage_backend = StorageBackendKind(args.backend)
    if args.data_dir:
        config.data_dir = Path(args.data_dir)
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit() -> None:
    """Save metrics to disk on shutdown."""
    try:
        if metrics.save_metrics():
            logger.debug("Metrics saved to disk on shutdown")
    except OSError as e:
        logger.warning(f"Failed to save metrics on shutdown: {e}")


async def cmd_export(repository: DocumentRepository, args: argparse.Namespace) -> int:
    data = await repository.export_all()
    if args.output:
        await anyio.Path(args.output).write_text(data, encoding="utf-8")
        print(f"Exported to {args.output}")
    else:
        print(data)
    return 0


async def cmd_import(repository: DocumentRepository, args: argparse.Namespace) -> int:
    data = await anyio.Path(args.file).read_text(encoding="utf-8")
    summary = await repository.import_all(data)
    print(
        f"Imported {summary.notes} notes and {summary.notebooks} notebooks"
        f" ({summary.failed} failed)"
    )
    return 0 if summary.failed == 0 else 1


async def cmd_sync(repository: DocumentRepository, args: argparse.Namespace) -> int:
    engine = SyncEngine(default_strategy=config.default_sync_strategy)
    service = SyncService(repository, engine, ExportFileReplica(args.remote))
    report = await service.sync_once(args.strategy)
    print(
        f"Sync complete: {len(report.result.notes)} notes, "
        f"{len(report.result.notebooks)} notebooks, "
        f"{report.conflicts_resolved} conflicts resolved, "
        f"{len(report.saved_notes) + len(report.saved_notebooks)} entities written"
    )
    return 0


async def cmd_status(repository: DocumentRepository, args: argparse.Namespace) -> int:
    notes = await repository.get_notes()
    notebooks = await repository.get_notebooks()
    breaker = repository.get_circuit_breaker_state()
    status = {
        "version": __version__,
        "backend": repository.backend.name,
        "notes": len(notes),
        "trashed_notes": sum(1 for n in notes if n.is_trashed),
        "notebooks": len(notebooks),
        "circuit_breaker": breaker.model_dump(mode="json") if breaker else None,
        "cache": repository.get_cache_stats(),
        "metrics": metrics.get_summary(),
    }
    print(json.dumps(status, indent=2))
    return 0


COMMANDS = {
    "export": cmd_export,
    "import": cmd_import,
    "sync": cmd_sync,
    "status": cmd_status,
}


async def run(args: argparse.Namespace) -> int:
    factory = RepositoryFactory(config)
    repository = factory.create_repository()
    try:
        await repository.initialize()
        return await COMMANDS[args.command](repository, args)
    finally:
        await factory.close_all()


def main(argv: Optional[List[str]] = None) -> int:
    """Run the notevault command line."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    if args.no_file_log:
        logging.basicConfig(level=log_level, stream=sys.stderr)
    else:
        try:
            log_dir = configure_logging(log_dir=config.log_dir, level=log_level, console=True)
            logger.debug(f"Persistent logging enabled: {log_dir}")
        except OSError as e:
            # Fall back to basic console logging if file logging fails
            logging.basicConfig(level=log_level, stream=sys.stderr)
            logger.warning(f"Failed to configure file logging: {e}")

    atexit.register(_save_metrics_on_exit)

    try:
        return anyio.run(run, args)
    except (RepositoryError, SyncError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
