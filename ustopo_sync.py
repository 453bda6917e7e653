# ustopo_sync.py
# US TOPO SYNC ENGINE

"""
US TOPO SYNC ENGINE
===================
Drives one full pass over a catalog:

1. migrate the local index (fatal on failure)
2. for every catalog item: check currency, relocate or download as needed,
   record the outcome in the index
3. clear index paths that no longer hold a current file
4. prune files that were not confirmed during this pass (optional)
5. report aggregate statistics

Items are processed strictly one at a time; each item's download and index
update share one index transaction.
"""

import os
import time
from pathlib import Path
from typing import Optional, Set, Callable

from ustopo_core import (
    ActivityLog, CatalogItem, SyncConfig, SyncStats, TransportClient, DownloadManager,
    check_currency, resolve_local_path, validate_template, prune_data_dir, index_files,
)
from ustopo_catalog import CatalogSource, open_catalog
from ustopo_index import LocalIndex, IndexRecord


class USTopoSync:
    """
    The central orchestrator for a sync pass.

    Args:
        config: Resolved run configuration
        transport: HTTP client (built from ``config.agent`` if omitted)
        index: Local index (``<data_dir>/index.db`` if omitted)
        log: Activity log shared with every component
        sleep: Delay function used between download attempts
    """

    def __init__(self, config: SyncConfig, transport: Optional[TransportClient] = None,
                 index: Optional[LocalIndex] = None, log: Optional[ActivityLog] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.data_dir = Path(os.path.abspath(config.data_dir))
        self.log = log if log is not None else ActivityLog(log_file=config.log_file)
        self.transport = transport if transport is not None else TransportClient(agent=config.agent)
        self.index = index if index is not None else LocalIndex.for_data_dir(self.data_dir)
        self.downloader = DownloadManager(
            self.transport,
            max_attempts=config.retry_count,
            retry_delay=config.retry_delay,
            log=self.log,
            sleep=sleep,
        )
        self.stats = SyncStats()
        self.referenced: Set[Path] = set()

    # ----- pass -----

    def run(self, source: Optional[CatalogSource] = None) -> SyncStats:
        """
        Run one sync pass and return its statistics.

        Raises:
            CatalogUnavailable: the catalog can not be read
            SchemaMigrationError: the index can not be migrated
            TemplateError: the filename template names an unknown field
        """
        if source is None:
            source = open_catalog(self.config, self.transport, log=self.log)

        self.stats = SyncStats()
        self.referenced = set()

        self.log(f"Saving to directory: {self.data_dir}", "info")
        self.log(f"Loading catalog: {source.description}", "info")
        self.log(f"Filename format: {self.config.mapname}", "debug")
        self.log(f"User Agent: {self.transport.agent}", "debug")

        source.check()
        validate_template(self.config.mapname, source.field_names())
        self.index.migrate(self.log)

        for item in source:
            self.process_item(item)

        self.stats.invalid_items = source.invalid_count

        if not self.config.dry_run:
            self.stats.records_cleared = self.reconcile_index()

        if self.config.prune:
            if source.complete:
                self.prune()
            else:
                self.log("Catalog was only partially read; skipping prune", "warning")

        self._report()
        return self.stats

    def process_item(self, item: CatalogItem):
        self.stats.items_seen += 1
        self.stats.catalog_bytes += item.size
        self.log(f"Processing map: {item.label}", "info")

        dest = resolve_local_path(self.config.mapname, item.fields(), self.data_dir)
        self.log(f"Checking for local file: {dest}", "debug")

        current = check_currency(item, dest)
        if current is None:
            record = self.index.get(item.item_id)
            if record and record.local_path and Path(record.local_path) != dest:
                current = self._relocate(item, record, dest)

        if current is not None:
            self.log(f"Map is current: {current}", "debug")
            self.stats.items_current += 1
            item.local_path = current
            self.referenced.add(current)
            self._record(item)
            return

        if not self._download_allowed():
            self.log(f"Download skipped <{item.item_id}>", "info")
            self.stats.items_skipped += 1
            item.local_path = None
            self._record(item)
            return

        self.log(f"Download required <{item.item_id}>", "debug")
        with self.index.transaction():
            result = self.downloader.download(item, dest)

            if result.ok:
                self.stats.items_downloaded += 1
                self.stats.bytes_downloaded += result.size
                item.local_path = result.path
                self.referenced.add(result.path)
            else:
                self.stats.items_failed += 1
                self.log(f"Download failed for <{item.item_id}> after {result.attempts} "
                         f"attempt(s)", "error")
                self._discard_stale(dest)
                item.local_path = None

            self._record(item)

    # ----- helpers -----

    def _download_allowed(self) -> bool:
        if not self.config.downloads_enabled:
            return False
        limit = self.config.download_limit
        attempted = self.stats.items_downloaded + self.stats.items_failed
        return limit == 0 or attempted < limit

    def _record(self, item: CatalogItem):
        if self.config.dry_run:
            return
        self.index.upsert(
            item.item_id,
            name=item.name,
            state=item.state,
            year=item.year,
            pub_date=item.pub_date,
            url=item.url,
            file_size=item.size,
            local_path=str(item.local_path) if item.local_path else None,
        )

    def _relocate(self, item: CatalogItem, record: IndexRecord, dest: Path) -> Optional[Path]:
        """Move a current file from its recorded path to the canonical one."""
        previous = check_currency(item, record.local_path)
        if previous is None:
            return None

        if self.config.dry_run:
            self.log(f"Would move {previous} -> {dest}", "info")
            return previous

        try:
            with self.index.transaction():
                dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(previous, dest)
                item.local_path = dest
                self._record(item)
        except OSError as e:
            self.log(f"Unable to move {previous} -> {dest}: {e}", "warning")
            return None

        self.log(f"Moved {previous} -> {dest}", "info")
        self.stats.items_relocated += 1
        return dest

    def _discard_stale(self, dest: Path):
        if not dest.exists() or self.config.dry_run:
            return
        try:
            dest.unlink()
            self.log(f"Removed stale file: {dest}", "info")
        except OSError as e:
            self.log(f"Unable to remove stale file {dest}: {e}", "error")

    # ----- maintenance -----

    def reconcile_index(self) -> int:
        """
        Clear ``local_path`` on every record whose file is missing or stale.

        Returns:
            Number of records cleared
        """
        cleared = 0

        def visit(record: IndexRecord):
            nonlocal cleared
            if not record.local_path:
                return
            path = Path(record.local_path)
            if path.is_file() and path.stat().st_size == record.file_size:
                return
            self.index.upsert(record.item_id, local_path=None)
            self.log(f"Cleared stale index path <{record.item_id}>: {path}", "debug")
            cleared += 1

        self.index.for_each(visit)
        return cleared

    def prune(self):
        protected = index_files(self.data_dir)
        if self.config.log_file:
            protected.append(Path(os.path.abspath(self.config.log_file)))

        self.log(f"Pruning data directory: {self.data_dir}", "info")
        removed = prune_data_dir(self.data_dir, self.referenced, protected=protected,
                                 dry_run=self.config.dry_run, log=self.log)
        self.stats.files_pruned = len(removed)

    def _report(self):
        s = self.stats
        self.log(f"Items: {s.items_seen} ({s.catalog_bytes} bytes in catalog)", "info")
        self.log(f"Current: {s.items_current} | Moved: {s.items_relocated} | "
                 f"Skipped: {s.items_skipped} | Invalid: {s.invalid_items}", "info")
        self.log(f"Downloaded: {s.items_downloaded} ({s.bytes_downloaded} bytes) | "
                 f"Failed: {s.items_failed}", "info")
        if self.config.prune:
            self.log(f"Pruned: {s.files_pruned} file(s)", "info")
        level = "warning" if s.items_failed else "success"
        self.log("Sync complete", level)

    def close(self):
        self.index.close()
        self.transport.close()
