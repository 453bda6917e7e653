#!/usr/bin/env python3
"""
US Topo CLI Interface
=====================
Maintains an offline mirror of the USGS US Topo map catalog.

Features:
- Sync from the CSV catalog or the ScienceBase API
- Optional config file (key = value), overridden by command-line flags
- Download limits, dry runs and pruning of orphaned files
- Index status without touching the network
"""

import argparse
import os
import sys
import signal
from pathlib import Path
from typing import Dict, List, Optional

from ustopo_core import (
    ActivityLog, SyncConfig, SyncStats, USTopoError,
    DEFAULT_MAPNAME, DEFAULT_RETRY_COUNT, DEFAULT_RETRY_DELAY, DEFAULT_SERIES, INDEX_FILENAME,
)
from ustopo_index import LocalIndex
from ustopo_sync import USTopoSync

CONFIG_KEYS = (
    "catalog", "collection", "datadir", "agent", "retry_count", "retry_delay",
    "mapname", "download", "prune", "series", "logfile",
)

TRUE_VALUES = ("1", "true", "yes", "on")


def load_config_file(path: str) -> Dict[str, str]:
    """
    Load settings from a config file.
    Expects lines like:
        datadir = maps
        retry_count = 3
    Blank lines and lines starting with '#' are ignored, as are keys this
    tool does not use (e.g. logging sections). Returns a dict of raw values.

    Raises:
        USTopoError: the file can not be read
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise USTopoError(f"Unable to read config file {path}: {e}") from e

    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" in line:
            key, _, val = line.partition("=")
            key = key.strip().lower()
            if key in CONFIG_KEYS:
                values[key] = val.strip()
    return values


def build_config(args: argparse.Namespace, file_values: Optional[Dict[str, str]] = None) -> SyncConfig:
    """Merge config file values with command-line flags (flags win)."""
    values = dict(file_values or {})

    def pick(arg_name: str, key: str, default=None):
        value = getattr(args, arg_name, None)
        if value is not None:
            return value
        return values.get(key, default)

    prune = getattr(args, "prune", None)
    if prune is None:
        prune = values.get("prune", "").lower() in TRUE_VALUES

    catalog = pick("catalog", "catalog")
    collection = pick("collection", "collection")
    # an explicit flag for one source overrides the other source from the file
    if getattr(args, "catalog", None):
        collection = None
    elif getattr(args, "collection", None):
        catalog = None

    try:
        return SyncConfig(
            data_dir=pick("datadir", "datadir"),
            catalog=catalog,
            collection_id=collection,
            mapname=pick("mapname", "mapname", DEFAULT_MAPNAME),
            retry_count=int(pick("retry", "retry_count", DEFAULT_RETRY_COUNT)),
            retry_delay=float(pick("retry_delay", "retry_delay", DEFAULT_RETRY_DELAY)),
            agent=pick("agent", "agent"),
            download_limit=int(pick("download", "download", 0)),
            prune=bool(prune),
            dry_run=bool(getattr(args, "dryrun", False)),
            series=pick("series", "series", DEFAULT_SERIES),
            log_file=pick("logfile", "logfile"),
        )
    except ValueError as e:
        raise USTopoError(f"Invalid configuration value: {e}") from e


def validate_config(config: SyncConfig):
    """Check the settings the engine can not fix for itself."""
    if not config.data_dir:
        raise USTopoError("Data directory is required")
    if not os.path.isdir(config.data_dir):
        raise USTopoError(f"Directory not found: {config.data_dir}")
    if not config.catalog and not config.collection_id:
        raise USTopoError("Catalog is required (--catalog or --collection)")
    if config.catalog and not os.path.isfile(config.catalog):
        raise USTopoError(f"File not found: {config.catalog}")
    if config.retry_count < 1:
        raise USTopoError("Retry count must be at least 1")
    if config.retry_delay < 0:
        raise USTopoError("Retry delay can not be negative")


class USTopoCLI:
    """Command-line interface for ustopo."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.engine = None

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self._print("\n🛑 Shutdown signal received, stopping...")
        # the open item transaction rolls back as this unwinds; sync() closes the engine
        sys.exit(130)

    def _print(self, message: str = ""):
        print(message, file=self.out)

    def _print_header(self):
        self._print("=" * 70)
        self._print("🗺  ustopo - US Topo Map Mirror")
        self._print("=" * 70)
        self._print()

    def _print_stats(self, stats: SyncStats, pruned: bool):
        self._print("\n" + "=" * 70)
        self._print("✅ SYNC COMPLETE" if not stats.items_failed else "⚠  SYNC COMPLETE WITH FAILURES")
        self._print("=" * 70)
        self._print(f"Items in catalog: {stats.items_seen}")
        self._print(f"Catalog size: {stats.catalog_bytes / (1024**3):.2f} GB")
        self._print(f"Current: {stats.items_current}")
        self._print(f"Downloaded: {stats.items_downloaded} "
                    f"({stats.bytes_downloaded / (1024**2):.1f} MB)")
        self._print(f"Failed: {stats.items_failed}")
        self._print(f"Skipped: {stats.items_skipped}")
        if stats.invalid_items:
            self._print(f"Invalid records: {stats.invalid_items}")
        if pruned:
            self._print(f"Pruned files: {stats.files_pruned}")
        self._print("=" * 70)

    def _make_log(self, args, config: SyncConfig) -> ActivityLog:
        if args.silent:
            level = "error"
        elif args.verbose:
            level = "debug"
        else:
            level = "info"
        return ActivityLog(log_file=config.log_file, level=level, echo=self._print)

    def sync(self, args) -> int:
        """Run one sync pass."""
        file_values = load_config_file(args.config) if args.config else {}
        config = build_config(args, file_values)
        validate_config(config)

        log = self._make_log(args, config)
        if not args.silent:
            self._print_header()

        self.engine = USTopoSync(config, log=log)
        try:
            stats = self.engine.run()
        finally:
            self.engine.close()
            self.engine = None

        if not args.silent:
            self._print_stats(stats, pruned=config.prune)
        return 1 if stats.items_failed else 0

    def status(self, args) -> int:
        """Show what the local index knows, without contacting the catalog."""
        file_values = load_config_file(args.config) if args.config else {}
        data_dir = args.datadir or file_values.get("datadir")
        if not data_dir:
            raise USTopoError("Data directory is required")

        db_path = Path(data_dir) / INDEX_FILENAME
        if not db_path.exists():
            raise USTopoError(f"No index found in {data_dir}")

        with LocalIndex(db_path) as index:
            index.migrate()
            summary = index.summary()
            version = index.schema_version

        self._print_header()
        self._print(f"📊 Index: {db_path} (schema version {version})")
        self._print("=" * 70)
        self._print(f"Items known: {summary['items']}")
        self._print(f"Items on disk: {summary['items_local']}")
        self._print(f"Catalog size: {summary['catalog_bytes'] / (1024**3):.2f} GB")
        self._print(f"Local size: {summary['local_bytes'] / (1024**3):.2f} GB")
        self._print("=" * 70)
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ustopo",
        description="ustopo - maintains an offline mirror of US Topo maps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync from the CSV catalog
  ustopo sync --catalog topomaps_all.csv --datadir ./maps

  # Sync from ScienceBase, removing files no longer in the catalog
  ustopo sync --collection 4f554236e4b018de15819c85 --datadir ./maps --prune

  # Download at most 10 maps this session
  ustopo sync --config ustopo.cfg --download 10

  # Show index statistics
  ustopo status --datadir ./maps
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # SYNC command
    sync_parser = subparsers.add_parser("sync", help="Synchronize the data directory with the catalog")
    sync_parser.add_argument("--config", help="Path to a config file (key = value)")
    sync_parser.add_argument("--catalog", "-C", help="CSV catalog file from the USGS")
    sync_parser.add_argument("--collection", help="ScienceBase collection id to read instead of a CSV")
    sync_parser.add_argument("--datadir", "-D", help="Directory to save maps")
    sync_parser.add_argument("--mapname", help=f"Filename format (default: {DEFAULT_MAPNAME})")
    sync_parser.add_argument("--series", help=f"Catalog series (default: {DEFAULT_SERIES})")
    sync_parser.add_argument("--retry", type=int, help=f"Download attempts per map (default: {DEFAULT_RETRY_COUNT})")
    sync_parser.add_argument("--retry-delay", type=float, dest="retry_delay",
                             help=f"Seconds between attempts (default: {DEFAULT_RETRY_DELAY})")
    sync_parser.add_argument("--agent", help="User Agent string for the download client")
    sync_parser.add_argument("--download", type=int,
                             help="Max maps to download (0 = no limit, -1 = disable downloads)")
    sync_parser.add_argument("--prune", action="store_true", default=None,
                             help="Remove files that are not in the catalog")
    sync_parser.add_argument("--no-prune", action="store_false", dest="prune",
                             help="Keep files that are not in the catalog")
    sync_parser.add_argument("--logfile", help="Append log output to this file")
    sync_parser.add_argument("--dryrun", "-N", action="store_true",
                             help="Don't download, extract, move or delete anything")
    sync_parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed logs")
    sync_parser.add_argument("--silent", "-s", action="store_true",
                             help="Only show errors (overrides --verbose)")

    # STATUS command
    status_parser = subparsers.add_parser("status", help="Show local index statistics")
    status_parser.add_argument("--config", help="Path to a config file (key = value)")
    status_parser.add_argument("--datadir", "-D", help="Data directory with an index")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cli = USTopoCLI()
    cli.install_signal_handlers()

    try:
        if args.command == "sync":
            return cli.sync(args)
        if args.command == "status":
            return cli.status(args)
    except USTopoError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 2

    return 1


if __name__ == "__main__":
    sys.exit(main())
