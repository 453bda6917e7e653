# ustopo_core.py
# US TOPO SYNC CORE
# Version: 1.0.0

"""
US TOPO SYNC CORE
=================
Building blocks for mirroring the USGS US Topo catalog to a local directory.

COMPONENTS:
- Filename templates: {Field} placeholders expanded from catalog item fields
- Archive extraction: exactly one document per downloaded archive
- Transport: a requests session carrying the configured user agent
- Currency: a local copy is current iff its byte count matches the catalog
- Retry: an explicit Attempting -> Done | Failed state machine
- Download manager: fetch -> stage -> extract -> verify -> place
- Pruning: removes files under the data directory that no longer belong

The sync engine that ties these together lives in ustopo_sync.
"""

import os
import re
import json
import time
import shutil
import tempfile
import zipfile
import zlib
import requests
from pathlib import Path
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Tuple, Any, Callable, Iterable, Set, Union
from datetime import datetime

# =========================================================
# CONSTANTS
# =========================================================

# Extraction copy buffer (128KB)
DOWNLOAD_CHUNK_SIZE = 131072

# Connection timeout for every HTTP request
CONNECTION_TIMEOUT = 30

# Retry policy defaults (total attempts per item, seconds between attempts)
DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_DELAY = 5

# Catalog defaults
DEFAULT_SERIES = "US Topo"
DEFAULT_MAPNAME = "{State}/{Name}.pdf"

# Index file kept at the root of the data directory
INDEX_FILENAME = "index.db"
INDEX_SIDE_SUFFIXES = ("-journal", "-wal", "-shm")

USER_AGENT = "ustopo/1.0 (US Topo Map Mirroring Tool)"

# Characters allowed through a template substitution; everything else becomes "_"
UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_ -]")
PLACEHOLDER_PATTERN = re.compile(r"\{([^{}]+)\}")

# Field names every catalog item exposes to filename templates
ITEM_FIELDS = ("ID", "Name", "State", "Year", "Date", "Size")

LOG_LEVELS = {
    "debug": 10,
    "info": 20,
    "success": 25,
    "warning": 30,
    "error": 40,
}

LogFunc = Callable[..., None]


def _noop_log(message: str, level: str = "info"):
    pass


# =========================================================
# ERRORS
# =========================================================
class USTopoError(Exception):
    """Base class for all sync errors."""


class TemplateError(USTopoError):
    """A filename template names a field that catalog items do not carry."""


class TransportError(USTopoError):
    """An HTTP request failed at the network level or with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ArchiveError(USTopoError):
    """A downloaded archive could not be turned into a single document."""


class ArchiveEmpty(ArchiveError):
    pass


class ArchiveAmbiguous(ArchiveError):
    pass


class ExtractionError(ArchiveError):
    pass


class SizeMismatch(USTopoError):
    """The extracted document does not match the size published in the catalog."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"download size mismatch: {actual} bytes (expecting {expected})")
        self.expected = expected
        self.actual = actual


class InvalidMetadata(USTopoError):
    """A catalog record is missing mandatory fields."""


class CatalogUnavailable(USTopoError):
    """No catalog could be read for this run."""


# =========================================================
# DATA MODEL
# =========================================================
@dataclass
class CatalogItem:
    """
    One map unit as advertised by the catalog.

    The byte count in ``size`` is the currency oracle: a local copy is
    current iff it exists and has exactly this many bytes.
    """
    item_id: str
    name: str
    state: str
    url: str
    size: int
    year: Optional[str] = None
    pub_date: Optional[str] = None
    local_path: Optional[Path] = None
    extra: Dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def label(self) -> str:
        return f"{self.name}, {self.state} <{self.item_id}>"

    def fields(self) -> Dict[str, str]:
        """Field mapping used to expand filename templates."""
        values = dict(self.extra)
        values.update({
            "ID": self.item_id,
            "Name": self.name,
            "State": self.state,
            "Year": self.year or "",
            "Date": self.pub_date or "",
            "Size": str(self.size),
        })
        return values


@dataclass
class SyncConfig:
    """Fully resolved configuration for one sync run."""
    data_dir: str
    catalog: Optional[str] = None
    collection_id: Optional[str] = None
    mapname: str = DEFAULT_MAPNAME
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_delay: float = DEFAULT_RETRY_DELAY
    agent: Optional[str] = None
    download_limit: int = 0      # 0 = unlimited, -1 = downloads disabled
    prune: bool = False
    dry_run: bool = False
    series: str = DEFAULT_SERIES
    log_file: Optional[str] = None

    @property
    def downloads_enabled(self) -> bool:
        return not self.dry_run and self.download_limit >= 0


@dataclass
class SyncStats:
    """Aggregate counters for one pass; a fresh value per run."""
    items_seen: int = 0
    catalog_bytes: int = 0
    items_current: int = 0
    items_relocated: int = 0
    items_downloaded: int = 0
    bytes_downloaded: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    invalid_items: int = 0
    records_cleared: int = 0
    files_pruned: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


# =========================================================
# ACTIVITY LOG
# =========================================================
class ActivityLog:
    """
    Event stream shared by every component of a sync run.

    Every entry is kept in memory (see ``get_logs``); entries at or above
    the configured level are also appended to the log file and handed to
    the ``echo`` callback (the CLI prints them).
    """

    def __init__(self, log_file: Optional[str] = None, level: str = "info",
                 echo: Optional[Callable[[str], None]] = None, max_lines: int = 50000):
        self.log_file = Path(log_file) if log_file else None
        self.threshold = LOG_LEVELS.get(level, LOG_LEVELS["info"])
        self.echo = echo
        self.entries = deque(maxlen=max_lines)

    def __call__(self, message: str, level: str = "info"):
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"
        self.entries.append(formatted)

        if LOG_LEVELS.get(level, LOG_LEVELS["info"]) < self.threshold:
            return

        if self.log_file:
            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(formatted + "\n")
            except OSError:
                # a broken log file must not stop the sync
                pass

        if self.echo:
            self.echo(formatted)

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get log entries from a specific index.

        Returns:
            Tuple of (log_lines, new_index)
        """
        logs = list(self.entries)[from_index:]
        return logs, len(self.entries)


# =========================================================
# FILENAME TEMPLATES
# =========================================================
def sanitize_value(value: Any) -> str:
    """Replace every character outside [A-Za-z0-9_ -] with an underscore."""
    if value is None:
        return ""
    return UNSAFE_CHARS.sub("_", str(value))


def template_fields(template: str) -> List[str]:
    return PLACEHOLDER_PATTERN.findall(template)


def validate_template(template: str, known_fields: Iterable[str]):
    """
    Make sure every placeholder in ``template`` names a known field.

    Raises:
        TemplateError: listing the unknown placeholders
    """
    known = set(known_fields)
    missing = [name for name in template_fields(template) if name not in known]
    if missing:
        names = ", ".join("{" + name + "}" for name in missing)
        raise TemplateError(f"unknown field(s) in filename template: {names}")


def expand_template(template: str, fields: Dict[str, Any]) -> str:
    """
    Substitute each {Field} placeholder with its sanitized value.

    The template is scanned once; substituted text is never re-scanned, so a
    value can not introduce new placeholders. Absent fields expand to "".
    """
    return PLACEHOLDER_PATTERN.sub(lambda m: sanitize_value(fields.get(m.group(1))), template)


def resolve_local_path(template: str, fields: Dict[str, Any], data_dir: Union[str, Path]) -> Path:
    """
    Expand ``template`` for an item and join it onto the data directory.

    Returns:
        Absolute path of the item's canonical local file
    """
    relative = expand_template(template, fields)
    return Path(os.path.abspath(data_dir)) / relative


# =========================================================
# ARCHIVE EXTRACTION
# =========================================================
def extract_archive(archive_path: Union[str, Path], dest_path: Union[str, Path]) -> Tuple[Path, int]:
    """
    Extract the single member of a zip archive to ``dest_path``.

    The member is written to a ``.part`` sibling first and swapped into
    place with ``os.replace``, so the destination never holds a partial file.

    Args:
        archive_path: Path to the downloaded archive
        dest_path: Final path of the extracted document (overwritten if present)

    Returns:
        (dest_path, declared uncompressed size of the entry)

    Raises:
        ArchiveEmpty: the archive has no entries
        ArchiveAmbiguous: the archive has more than one entry
        ExtractionError: the archive is unreadable or the write failed
    """
    dest_path = Path(dest_path)

    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExtractionError(f"cannot create directory {dest_path.parent}: {e}") from e

    try:
        with zipfile.ZipFile(archive_path) as archive:
            members = archive.infolist()
            if not members:
                raise ArchiveEmpty("empty archive")
            if len(members) > 1:
                raise ArchiveAmbiguous(f"unexpected entries in archive ({len(members)} members)")

            entry = members[0]
            part_path = dest_path.with_name(dest_path.name + ".part")
            try:
                with archive.open(entry) as src, open(part_path, "wb") as dst:
                    shutil.copyfileobj(src, dst, DOWNLOAD_CHUNK_SIZE)
                os.replace(part_path, dest_path)
            except (OSError, zipfile.BadZipFile, zlib.error,
                    RuntimeError, NotImplementedError, EOFError) as e:
                # RuntimeError: encrypted entry; NotImplementedError: unsupported compression
                if part_path.exists():
                    part_path.unlink()
                raise ExtractionError(f"error extracting to {dest_path}: {e}") from e

    except (zipfile.BadZipFile, OSError) as e:
        raise ExtractionError(f"invalid archive file: {e}") from e

    return dest_path, entry.file_size


# =========================================================
# TRANSPORT
# =========================================================
@dataclass
class FetchResult:
    url: str
    content: bytes
    elapsed: float
    status: int

    @property
    def mbps(self) -> float:
        if self.elapsed <= 0:
            return 0.0
        return (len(self.content) / self.elapsed) / (1024 * 1024)


class TransportClient:
    """
    Synchronous HTTP client for catalog listings and map archives.

    No retry happens here; the download manager owns the retry policy.
    TLS verification uses requests' default certificate bundle.
    """

    def __init__(self, agent: Optional[str] = None, timeout: float = CONNECTION_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.agent = agent or USER_AGENT
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"User-Agent": self.agent})

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None) -> FetchResult:
        """
        GET ``url`` and return the full body.

        Raises:
            TransportError: network failure or a non-2xx response
        """
        time_start = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"request failed: {e}") from e
        elapsed = time.time() - time_start

        if not 200 <= response.status_code < 300:
            raise TransportError(f"HTTP {response.status_code} {response.reason}",
                                 status=response.status_code)

        return FetchResult(url=url, content=response.content, elapsed=elapsed,
                           status=response.status_code)

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        result = self.fetch(url, params=params)
        try:
            return json.loads(result.content)
        except ValueError as e:
            raise TransportError(f"invalid JSON from {url}: {e}") from e

    def close(self):
        self.session.close()


# =========================================================
# CURRENCY
# =========================================================
def check_currency(item: CatalogItem, path: Optional[Union[str, Path]]) -> Optional[Path]:
    """
    Decide whether ``path`` is a current copy of ``item``.

    Returns:
        The confirmed path if it is a file of exactly ``item.size`` bytes,
        otherwise None (stale or missing)
    """
    if path is None:
        return None
    path = Path(path)
    if not path.is_file():
        return None
    if path.stat().st_size != item.size:
        return None
    return path


# =========================================================
# RETRY STATE MACHINE
# =========================================================
@dataclass(frozen=True)
class Attempting:
    attempt: int


@dataclass(frozen=True)
class Done:
    attempts: int


@dataclass(frozen=True)
class Failed:
    attempts: int


RetryState = Union[Attempting, Done, Failed]


def next_state(state: RetryState, succeeded: bool, max_attempts: int) -> RetryState:
    """
    Advance the retry state machine after one attempt.

    Attempting(n) moves to Done on success, to Attempting(n+1) on failure
    while n < max_attempts, and to Failed once n reaches max_attempts.
    Done and Failed are terminal.
    """
    if not isinstance(state, Attempting):
        return state
    if succeeded:
        return Done(state.attempt)
    if state.attempt < max_attempts:
        return Attempting(state.attempt + 1)
    return Failed(state.attempt)


# =========================================================
# DOWNLOAD MANAGER
# =========================================================
@dataclass
class DownloadResult:
    item_id: str
    state: RetryState
    path: Optional[Path] = None
    size: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return isinstance(self.state, Done)

    @property
    def attempts(self) -> int:
        return self.state.attempts if not isinstance(self.state, Attempting) else self.state.attempt


class DownloadManager:
    """
    Materializes one catalog item at its canonical local path.

    Each attempt fetches the archive, stages it in a temporary file, extracts
    the single entry to the destination and re-checks the placed file's size.
    A size mismatch deletes the placed file. The staging file is removed on
    every path out of an attempt.
    """

    RETRYABLE = (TransportError, ArchiveError, SizeMismatch, OSError)

    def __init__(self, transport: TransportClient, max_attempts: int = DEFAULT_RETRY_COUNT,
                 retry_delay: float = DEFAULT_RETRY_DELAY, log: Optional[LogFunc] = None,
                 sleep: Callable[[float], None] = time.sleep, staging_dir: Optional[str] = None):
        self.transport = transport
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = retry_delay
        self.log = log or _noop_log
        self.sleep = sleep
        self.staging_dir = staging_dir

    def download(self, item: CatalogItem, dest_path: Union[str, Path]) -> DownloadResult:
        dest_path = Path(dest_path)
        state: RetryState = Attempting(1)
        errors: List[str] = []
        size = 0

        while isinstance(state, Attempting):
            self.log(f"Downloading map item: {item.label} [{state.attempt}]", "debug")
            try:
                size = self._attempt(item, dest_path)
                succeeded = True
            except self.RETRYABLE as e:
                errors.append(str(e))
                self.log(f"Attempt {state.attempt}/{self.max_attempts} failed for "
                         f"<{item.item_id}>: {e}", "warning")
                succeeded = False

            state = next_state(state, succeeded, self.max_attempts)

            if isinstance(state, Attempting) and self.retry_delay > 0:
                self.log(f"Retrying in {self.retry_delay}s", "debug")
                self.sleep(self.retry_delay)

        if isinstance(state, Done):
            self.log(f"Downloaded: {dest_path} ({size} bytes)", "success")
            return DownloadResult(item.item_id, state, path=dest_path, size=size, errors=errors)

        return DownloadResult(item.item_id, state, errors=errors)

    def _attempt(self, item: CatalogItem, dest_path: Path) -> int:
        result = self.transport.fetch(item.url)
        self.log(f"Downloaded {len(result.content)} bytes in {result.elapsed:.2f} seconds "
                 f"({result.mbps:.2f} MB/s)", "debug")

        fd, staging = tempfile.mkstemp(prefix="ustopo_", suffix=".zip", dir=self.staging_dir)
        staging_path = Path(staging)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(result.content)
            self.log(f"Saved download: {staging_path}", "debug")

            _, declared = extract_archive(staging_path, dest_path)
            self.log(f"Extracted: {dest_path} ({declared} bytes)", "debug")
        finally:
            if staging_path.exists():
                staging_path.unlink()

        actual = dest_path.stat().st_size
        if actual != item.size:
            dest_path.unlink()
            raise SizeMismatch(item.size, actual)

        return actual


# =========================================================
# PRUNING
# =========================================================
def prune_data_dir(data_dir: Union[str, Path], keep: Iterable[Union[str, Path]],
                   protected: Iterable[Union[str, Path]] = (), dry_run: bool = False,
                   log: Optional[LogFunc] = None) -> List[Path]:
    """
    Delete every plain file under ``data_dir`` that is not in ``keep``.

    Directories are left in place. A file that can not be removed is logged
    and the walk continues.

    Args:
        data_dir: Root of the local mirror
        keep: Files confirmed current or materialized during this pass
        protected: Files that are never pruned (the index, the log file)
        dry_run: Only report what would be removed

    Returns:
        Paths that were removed (or would be, in a dry run)
    """
    log = log or _noop_log
    root_dir = os.path.abspath(data_dir)
    retained: Set[str] = {os.path.abspath(p) for p in keep}
    retained.update(os.path.abspath(p) for p in protected)

    removed: List[Path] = []
    for root, _dirs, files in os.walk(root_dir):
        for name in sorted(files):
            path = os.path.join(root, name)
            if path in retained:
                continue

            if dry_run:
                log(f"Would remove: {path}", "info")
                removed.append(Path(path))
                continue

            try:
                os.unlink(path)
            except OSError as e:
                log(f"Unable to remove {path}: {e}", "error")
                continue

            log(f"Removed: {path}", "info")
            removed.append(Path(path))

    return removed


def index_files(data_dir: Union[str, Path]) -> List[Path]:
    """The index database and its journal side files."""
    base = Path(os.path.abspath(data_dir)) / INDEX_FILENAME
    return [base] + [base.with_name(base.name + suffix) for suffix in INDEX_SIDE_SUFFIXES]
