"""Shared test fixtures for ustopo."""

from __future__ import annotations

import csv
import io
import zipfile
from typing import Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from ustopo_core import ActivityLog, CatalogItem, SyncConfig, TransportClient

CSV_COLUMNS = [
    "Series", "Version", "Cell ID", "Map Name", "Primary State",
    "Date On Map", "Create Date", "Download GeoPDF", "Byte Count",
]


def _zip_bytes(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _response(content: bytes = b"", status: int = 200, reason: str = "OK") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.reason = reason
    response.content = content
    return response


def _mark_encrypted(data: bytes) -> bytes:
    """Set the "encrypted" flag bit on every entry of a zip archive."""
    raw = bytearray(data)
    for signature, offset in ((b"PK\x03\x04", 6), (b"PK\x01\x02", 8)):
        start = raw.find(signature)
        while start != -1:
            raw[start + offset] |= 0x01
            start = raw.find(signature, start + 4)
    return bytes(raw)


@pytest.fixture
def make_zip() -> Callable[[Dict[str, bytes]], bytes]:
    return _zip_bytes


@pytest.fixture
def mark_encrypted() -> Callable[[bytes], bytes]:
    return _mark_encrypted


@pytest.fixture
def make_response() -> Callable[..., MagicMock]:
    return _response


@pytest.fixture
def session() -> MagicMock:
    """Stand-in for requests.Session; tests set ``get`` behaviour."""
    mock = MagicMock()
    mock.headers = {}
    return mock


@pytest.fixture
def serve(session: MagicMock):
    """Route ``session.get`` by URL; values are responses or exceptions."""

    def install(routes: Dict[str, object]) -> MagicMock:
        def get(url, params=None, timeout=None):
            target = routes.get(url)
            if target is None:
                return _response(status=404, reason="Not Found")
            if isinstance(target, list):
                target = target.pop(0) if len(target) > 1 else target[0]
            if isinstance(target, BaseException):
                raise target
            return target

        session.get.side_effect = get
        return session

    return install


@pytest.fixture
def transport(session: MagicMock) -> TransportClient:
    return TransportClient(agent="ustopo-test/1.0", session=session)


@pytest.fixture
def log() -> ActivityLog:
    return ActivityLog(level="debug")


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "maps"
    path.mkdir()
    return path


@pytest.fixture
def make_item() -> Callable[..., CatalogItem]:
    def factory(item_id: str = "1001", name: str = "Aberdeen", state: str = "ID",
                size: int = 1024, url: Optional[str] = None, year: str = "2020") -> CatalogItem:
        return CatalogItem(
            item_id=item_id,
            name=name,
            state=state,
            url=url or f"https://example.com/{item_id}.zip",
            size=size,
            year=year,
            pub_date=f"{year}-05-01",
        )

    return factory


@pytest.fixture
def write_catalog(tmp_path):
    """Write a CSV catalog; each map is (cell_id, name, state, payload)."""

    def writer(maps: List[tuple], extra_rows: Optional[List[Dict[str, str]]] = None,
               name: str = "topomaps_all.csv"):
        path = tmp_path / name
        with open(path, "w", newline="", encoding="utf-8") as handle:
            out = csv.DictWriter(handle, fieldnames=CSV_COLUMNS)
            out.writeheader()
            for cell_id, map_name, state, payload in maps:
                out.writerow({
                    "Series": "US Topo",
                    "Version": "Current",
                    "Cell ID": cell_id,
                    "Map Name": map_name,
                    "Primary State": state,
                    "Date On Map": "2020",
                    "Create Date": "2020-05-01",
                    "Download GeoPDF": f"https://example.com/{cell_id}.zip",
                    "Byte Count": str(len(payload)),
                })
            for row in extra_rows or []:
                out.writerow(row)
        return path

    return writer


@pytest.fixture
def make_config(data_dir):
    def factory(**overrides) -> SyncConfig:
        values = dict(data_dir=str(data_dir), retry_count=2, retry_delay=0)
        values.update(overrides)
        return SyncConfig(**values)

    return factory
