# ustopo_index.py
# US TOPO LOCAL INDEX

"""
US TOPO LOCAL INDEX
===================
Durable SQLite store of every catalog item seen by the sync engine, keyed by
the catalog's stable item id.

- The schema version lives in ``PRAGMA user_version``
- Migrations are forward-only and each runs in its own transaction
- ``created_on`` / ``last_updated`` are stamped here, never by callers
- Transactions nest, so the engine can hold one open across an item's
  download and its record update
"""

import os
import sqlite3
from pathlib import Path
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, List, Tuple, Any, Callable, Iterator, Union

from ustopo_core import USTopoError, INDEX_FILENAME, LogFunc, _noop_log


class SchemaMigrationError(USTopoError):
    """The index can not be brought to the schema version this engine needs."""


# =========================================================
# SCHEMA MIGRATIONS
# =========================================================
MIGRATIONS: List[Tuple[int, List[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS maps (
            item_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            state TEXT NOT NULL,
            year TEXT,
            pub_date TEXT,
            url TEXT NOT NULL,
            file_size INTEGER,
            local_path TEXT,
            created_on TEXT NOT NULL,
            last_updated TEXT NOT NULL
        )
        """,
    ]),
    (2, [
        "CREATE INDEX IF NOT EXISTS idx_maps_name ON maps(name)",
        "CREATE INDEX IF NOT EXISTS idx_maps_state ON maps(state)",
    ]),
]

UPDATABLE_FIELDS = ("name", "state", "year", "pub_date", "url", "file_size", "local_path")


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class IndexRecord:
    item_id: str
    name: str
    state: str
    year: Optional[str]
    pub_date: Optional[str]
    url: str
    file_size: Optional[int]
    local_path: Optional[str]
    created_on: str
    last_updated: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "IndexRecord":
        return cls(**{key: row[key] for key in row.keys()})


# =========================================================
# LOCAL INDEX
# =========================================================
class LocalIndex:
    """
    SQLite-backed index of catalog items.

    Args:
        db_path: Index database file (created if missing)
        migrations: Ordered (version, statements) pairs; defaults to MIGRATIONS
    """

    def __init__(self, db_path: Union[str, Path],
                 migrations: Optional[List[Tuple[int, List[str]]]] = None):
        self.db_path = Path(db_path)
        self.migrations = sorted(migrations if migrations is not None else MIGRATIONS,
                                 key=lambda step: step[0])
        # autocommit mode; every write goes through transaction()
        self.conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._depth = 0

    @classmethod
    def for_data_dir(cls, data_dir: Union[str, Path]) -> "LocalIndex":
        return cls(Path(os.path.abspath(data_dir)) / INDEX_FILENAME)

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ----- transactions -----

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Open a write transaction, or join the one already open.

        The outermost scope commits on success and rolls back if anything
        raises inside it, including work done in nested scopes.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._depth = 0

    # ----- schema -----

    @property
    def schema_version(self) -> int:
        return int(self.conn.execute("PRAGMA user_version").fetchone()[0])

    @property
    def latest_version(self) -> int:
        return self.migrations[-1][0] if self.migrations else 0

    def migrate(self, log: Optional[LogFunc] = None) -> int:
        """
        Apply every pending migration in ascending order.

        Each step runs in its own transaction together with the version bump,
        so a failure leaves the store at the last step that succeeded.

        Returns:
            The schema version after migration

        Raises:
            SchemaMigrationError: a step failed, or the store is newer than
                any version this engine knows
        """
        log = log or _noop_log
        current = self.schema_version
        latest = self.latest_version

        if current > latest:
            raise SchemaMigrationError(
                f"index schema version {current} is newer than supported version {latest}")

        if current == latest:
            log(f"Index schema is current (version {current})", "debug")
            return current

        for version, statements in self.migrations:
            if version <= current:
                continue
            try:
                with self.transaction() as conn:
                    for sql in statements:
                        conn.execute(sql)
                    conn.execute(f"PRAGMA user_version = {int(version)}")
            except sqlite3.Error as e:
                raise SchemaMigrationError(
                    f"migration to schema version {version} failed: {e}") from e
            current = version
            log(f"Applied index migration: version {version}", "debug")

        log(f"Index schema migrated to version {current}", "info")
        return current

    # ----- records -----

    def get(self, item_id: str) -> Optional[IndexRecord]:
        row = self.conn.execute("SELECT * FROM maps WHERE item_id = ?", (item_id,)).fetchone()
        return IndexRecord.from_row(row) if row else None

    def upsert(self, item_id: str, **fields: Any) -> IndexRecord:
        """
        Insert a record, or update only the supplied fields of an existing one.

        ``local_path`` must name a file whose size matches the record's
        ``file_size`` at the time of the write; ``None`` clears it.

        Raises:
            ValueError: unknown field names
            USTopoError: ``local_path`` does not match the recorded size
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"unknown index fields: {', '.join(sorted(unknown))}")

        if isinstance(fields.get("local_path"), Path):
            fields["local_path"] = str(fields["local_path"])

        now = _timestamp()
        with self.transaction() as conn:
            existing = self.get(item_id)
            self._check_local_path(item_id, fields, existing)

            if existing:
                assignments = [f"{name} = ?" for name in fields] + ["last_updated = ?"]
                conn.execute(
                    f"UPDATE maps SET {', '.join(assignments)} WHERE item_id = ?",
                    [*fields.values(), now, item_id],
                )
            else:
                columns = ["item_id", *fields, "created_on", "last_updated"]
                placeholders = ", ".join("?" for _ in columns)
                conn.execute(
                    f"INSERT INTO maps ({', '.join(columns)}) VALUES ({placeholders})",
                    [item_id, *fields.values(), now, now],
                )

            return self.get(item_id)

    def _check_local_path(self, item_id: str, fields: Dict[str, Any],
                          existing: Optional[IndexRecord]):
        local_path = fields.get("local_path")
        if not local_path:
            return

        if "file_size" in fields:
            expected = fields["file_size"]
        else:
            expected = existing.file_size if existing else None

        try:
            actual = os.path.getsize(local_path)
        except OSError:
            actual = None

        if actual is None or actual != expected:
            raise USTopoError(f"refusing to record stale path for <{item_id}>: {local_path}")

    def for_each(self, visitor: Callable[[IndexRecord], None]) -> int:
        """
        Call ``visitor`` for every record, ordered by item id.

        Rows are read up front, so the visitor may update the index.

        Returns:
            Number of records visited
        """
        rows = self.conn.execute("SELECT * FROM maps ORDER BY item_id").fetchall()
        for row in rows:
            visitor(IndexRecord.from_row(row))
        return len(rows)

    def summary(self) -> Dict[str, int]:
        """Counts for status reporting."""
        total, with_local, total_bytes, local_bytes = self.conn.execute(
            """
            SELECT COUNT(*),
                   COUNT(local_path),
                   COALESCE(SUM(file_size), 0),
                   COALESCE(SUM(CASE WHEN local_path IS NOT NULL THEN file_size END), 0)
            FROM maps
            """
        ).fetchone()
        return {
            "items": total,
            "items_local": with_local,
            "catalog_bytes": total_bytes,
            "local_bytes": local_bytes,
        }
