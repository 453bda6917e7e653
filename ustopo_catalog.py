# ustopo_catalog.py
# US TOPO CATALOG SOURCES

"""
US TOPO CATALOG SOURCES
=======================
Producers of CatalogItem values for one sync pass.

- CsvCatalog: the USGS ``topomaps_all.csv`` snapshot
- ScienceBaseCatalog: the live, paginated ScienceBase listing

Both are lazy and finite; iterating again re-reads the catalog from scratch.
"""

import os
import re
import csv
from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Iterator

from ustopo_core import (
    CatalogItem, SyncConfig, TransportClient, TransportError, InvalidMetadata,
    CatalogUnavailable, ITEM_FIELDS, DEFAULT_SERIES, LogFunc, _noop_log,
)

# =========================================================
# CONSTANTS
# =========================================================

# Column names in topomaps_all.csv
CSV_ID = "Cell ID"
CSV_NAME = "Map Name"
CSV_STATE = "Primary State"
CSV_URL = "Download GeoPDF"
CSV_SIZE = "Byte Count"
CSV_YEAR = ("Date On Map", "Imprint Year")
CSV_PUB_DATE = "Create Date"
CSV_SERIES = "Series"
CSV_VERSION = "Version"
CURRENT_VERSION = "Current"

# Bytes that were not valid UTF-8, as decoded with errors="surrogateescape"
UNDECODABLE = re.compile("[\udc80-\udcff]")

SCIENCEBASE_URL = "https://www.sciencebase.gov/catalog"

# ScienceBase parent item holding the current US Topo maps
US_TOPO_COLLECTION_ID = "4f554236e4b018de15819c85"

PAGE_SIZE = 100

# e.g. "USGS US Topo 7.5-minute map for Aberdeen NE, ID 2020"
TITLE_PATTERN = re.compile(
    r"^USGS US Topo 7\.5-minute map for (?P<name>.+?),\s*(?P<state>[A-Z]{2})(?:\s+\d{4})?\s*$"
)

PUBLICATION_DATE = "publication"
DOWNLOAD_LINK = "download"


def _readable(value: str) -> str:
    """Printable form of a value that may hold undecodable bytes."""
    return value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


# =========================================================
# BASE CLASS
# =========================================================
class CatalogSource(ABC):
    """
    A finite, lazy sequence of catalog items.

    Records that can not be turned into an item are logged and counted in
    ``invalid_count``. ``complete`` turns False when part of the catalog
    could not be read, which means the item set is not safe to prune against.
    """

    def __init__(self, log: Optional[LogFunc] = None):
        self.log = log or _noop_log
        self.invalid_count = 0
        self.complete = True

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @abstractmethod
    def items(self) -> Iterator[CatalogItem]:
        ...

    def check(self):
        """Fail fast with CatalogUnavailable before a pass starts."""

    def field_names(self) -> List[str]:
        """Fields available to filename templates."""
        return list(ITEM_FIELDS)

    def __iter__(self) -> Iterator[CatalogItem]:
        self.invalid_count = 0
        self.complete = True
        return self.items()

    def _skip(self, reason: Any):
        self.invalid_count += 1
        self.log(f"Skipping catalog record: {reason}", "warning")


# =========================================================
# TABULAR CATALOG
# =========================================================
class CsvCatalog(CatalogSource):
    """Current maps of one series from a CSV catalog file."""

    def __init__(self, path: str, series: str = DEFAULT_SERIES, log: Optional[LogFunc] = None):
        super().__init__(log)
        self.path = os.path.abspath(path)
        self.series = series
        self._columns: Optional[List[str]] = None

    @property
    def description(self) -> str:
        return self.path

    def _open(self):
        try:
            # undecodable bytes survive as lone surrogates; parse_row rejects them
            return open(self.path, "r", newline="", encoding="utf-8-sig", errors="surrogateescape")
        except OSError as e:
            raise CatalogUnavailable(f"catalog unavailable: {self.path}: {e}") from e

    def check(self):
        if not os.path.isfile(self.path) or os.path.getsize(self.path) == 0:
            raise CatalogUnavailable(f"catalog unavailable: {self.path}")
        with self._open() as handle:
            header = next(csv.reader(handle), None)
        if not header:
            raise CatalogUnavailable(f"catalog has no header row: {self.path}")
        self._columns = [name.strip() for name in header]

    def field_names(self) -> List[str]:
        if self._columns is None:
            self.check()
        return list(ITEM_FIELDS) + list(self._columns or [])

    def items(self) -> Iterator[CatalogItem]:
        with self._open() as handle:
            reader = csv.DictReader(handle)
            for row in reader:
                row = {
                    key.strip(): (value or "").strip()
                    for key, value in row.items() if isinstance(key, str)
                }
                if row.get(CSV_SERIES) != self.series or row.get(CSV_VERSION) != CURRENT_VERSION:
                    continue
                try:
                    yield self.parse_row(row)
                except InvalidMetadata as e:
                    self._skip(e)

    @staticmethod
    def parse_row(row: Dict[str, str]) -> CatalogItem:
        """
        Map one catalog row to a CatalogItem.

        Raises:
            InvalidMetadata: a value is not valid UTF-8, a mandatory column
                is empty or the byte count is not an integer
        """
        undecodable = [col for col, value in row.items() if UNDECODABLE.search(value)]
        if undecodable:
            label = _readable(row.get(CSV_ID) or row.get(CSV_NAME) or "?")
            raise InvalidMetadata(f"<{label}> invalid UTF-8 in {_readable(', '.join(undecodable))}")

        missing = [col for col in (CSV_ID, CSV_NAME, CSV_STATE, CSV_URL, CSV_SIZE) if not row.get(col)]
        if missing:
            label = row.get(CSV_ID) or row.get(CSV_NAME) or "?"
            raise InvalidMetadata(f"<{label}> missing {', '.join(missing)}")

        try:
            size = int(row[CSV_SIZE])
        except ValueError:
            raise InvalidMetadata(f"<{row[CSV_ID]}> invalid byte count: {row[CSV_SIZE]!r}")

        year = next((row[col] for col in CSV_YEAR if row.get(col)), None)

        return CatalogItem(
            item_id=row[CSV_ID],
            name=row[CSV_NAME],
            state=row[CSV_STATE],
            url=row[CSV_URL],
            size=size,
            year=year,
            pub_date=row.get(CSV_PUB_DATE) or None,
            extra=row,
        )


# =========================================================
# PAGINATED API CATALOG
# =========================================================
class ScienceBaseCatalog(CatalogSource):
    """
    Items under one ScienceBase parent collection.

    Listing pages look like ``{"items": [...], "nextlink": {"url": ...}}``;
    every item reference is expanded with a detail request.
    """

    def __init__(self, transport: TransportClient, collection_id: str = US_TOPO_COLLECTION_ID,
                 base_url: str = SCIENCEBASE_URL, page_size: int = PAGE_SIZE,
                 log: Optional[LogFunc] = None):
        super().__init__(log)
        self.transport = transport
        self.collection_id = collection_id
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size

    @property
    def description(self) -> str:
        return f"{self.base_url}/item/{self.collection_id}"

    def items(self) -> Iterator[CatalogItem]:
        params = {
            "parentId": self.collection_id,
            "format": "json",
            "max": self.page_size,
            "fields": "id",
        }
        try:
            page = self.transport.get_json(f"{self.base_url}/items", params=params)
        except TransportError as e:
            raise CatalogUnavailable(f"catalog unavailable: {self.description}: {e}") from e

        page_number = 1
        while True:
            if not isinstance(page, dict):
                self.complete = False
                raise CatalogUnavailable(f"catalog page {page_number} is not a JSON object")

            refs = page.get("items") or []
            if not isinstance(refs, list):
                self.complete = False
                raise CatalogUnavailable(f"catalog page {page_number} has no item list")
            self.log(f"Catalog page {page_number}: {len(refs)} items", "debug")

            for ref in refs:
                if not isinstance(ref, dict):
                    self._skip(f"malformed listing entry: {ref!r}")
                    continue
                item = self._fetch_item(ref)
                if item is not None:
                    yield item

            nextlink = page.get("nextlink")
            next_url = nextlink.get("url") if isinstance(nextlink, dict) else None
            if not next_url:
                break

            try:
                page = self.transport.get_json(next_url)
            except TransportError as e:
                # a partial listing must never drive a prune
                self.complete = False
                raise CatalogUnavailable(f"catalog page {page_number + 1} failed: {e}") from e
            page_number += 1

    def _fetch_item(self, ref: Dict[str, Any]) -> Optional[CatalogItem]:
        item_id = ref.get("id")
        url = (ref.get("link") or {}).get("url") or f"{self.base_url}/item/{item_id}"

        try:
            data = self.transport.get_json(url, params={"format": "json"})
        except TransportError as e:
            self.complete = False
            self.log(f"Unable to load catalog item <{item_id}>: {e}", "error")
            return None

        try:
            return self.parse_item(data)
        except InvalidMetadata as e:
            self._skip(e)
            return None

    @staticmethod
    def parse_item(data: Dict[str, Any]) -> CatalogItem:
        """
        Map a ScienceBase item document to a CatalogItem.

        Name and state come from the title, the year and publication date
        from the date tagged "Publication", URL and size from the web link
        tagged "download".

        Raises:
            InvalidMetadata: any of those fields can not be extracted
        """
        if not isinstance(data, dict):
            raise InvalidMetadata(f"item document is not a JSON object: {data!r}")
        item_id = data.get("id")
        if not item_id:
            raise InvalidMetadata("item without id")

        title = data.get("title") or ""
        match = TITLE_PATTERN.match(title)
        if not match:
            raise InvalidMetadata(f"<{item_id}> unrecognized title: {title!r}")

        pub_date = None
        for entry in data.get("dates") or []:
            if (entry.get("type") or "").lower() == PUBLICATION_DATE:
                pub_date = entry.get("dateString")
                break
        if not pub_date or not pub_date[:4].isdigit():
            raise InvalidMetadata(f"<{item_id}> missing publication date")

        link = None
        for entry in data.get("webLinks") or []:
            if (entry.get("type") or "").lower() == DOWNLOAD_LINK and entry.get("uri"):
                link = entry
                break
        if link is None:
            raise InvalidMetadata(f"<{item_id}> missing download link")

        try:
            size = int(link.get("length"))
        except (TypeError, ValueError):
            raise InvalidMetadata(f"<{item_id}> download link without a valid length")

        return CatalogItem(
            item_id=str(item_id),
            name=match.group("name").strip(),
            state=match.group("state"),
            url=link["uri"],
            size=size,
            year=pub_date[:4],
            pub_date=pub_date,
        )


def open_catalog(config: SyncConfig, transport: TransportClient,
                 log: Optional[LogFunc] = None) -> CatalogSource:
    """
    Pick the one catalog source configured for this run.

    Raises:
        CatalogUnavailable: neither a catalog file nor a collection is configured
    """
    if config.catalog:
        return CsvCatalog(config.catalog, series=config.series, log=log)
    if config.collection_id:
        return ScienceBaseCatalog(transport, collection_id=config.collection_id, log=log)
    raise CatalogUnavailable("catalog unavailable: no catalog file or collection configured")
