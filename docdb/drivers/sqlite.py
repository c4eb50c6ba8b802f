"""
SQLite storage driver.

Each collection maps to one table of a SQLite file holding the raw record
as JSON text. Filters are evaluated in Python with the shared matcher;
uniqueness is enforced by SQLite itself through expression indexes over
json_extract(), so concurrent writers from other processes are covered.

URL form: sqlite:///absolute/path/to/file.db[?table=name]. The table name
defaults to the collection name.

Invariants:
    - One table per collection, primary key on the record id
    - Records are stored with sorted keys so nested objects compare equal
      as JSON text
    - All write operations are atomic (single transaction)
    - Index definitions are persisted next to the tables so that
      get_indexes() returns declared definitions, not SQLite internals

How to change safely:
    - Keep the table layout backward compatible, files outlive processes
    - Keep behavior identical to the in-memory driver

Table schema:
    <table>:
        - id TEXT PRIMARY KEY
        - doc_json TEXT (sorted-key JSON)
        - updated_at INTEGER (Unix ms)

    docdb_indexes:
        - table_name TEXT
        - name TEXT
        - definition_json TEXT
        - PRIMARY KEY (table_name, name)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlsplit

from ..paths import get_path, set_path, split_path, unset_path
from ..schema.types import ID_KEY, LOCKED_AT, LOCKED_BY, IndexDef
from .base import (
    DriverConnectionError,
    DriverError,
    DuplicateKeyError,
    Patch,
    Query,
    RawRecord,
    new_id,
    now_ms,
)
from .memory import lock_is_free
from .query import matches

logger = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    safe = "".join(c if c.isalnum() or c == "_" else "_" for c in name)
    if not safe:
        raise DriverError(f"Invalid table name: '{name}'")
    return safe


def json_path(path: str) -> str:
    """Convert a dot path to a SQLite JSON path ("a.0.b" -> "$.a[0].b")."""
    out = "$"
    for segment in split_path(path):
        out += f"[{segment}]" if segment.isdigit() else f'."{segment}"'
    return out


def _dumps(raw: RawRecord) -> str:
    return json.dumps(raw, sort_keys=True, separators=(",", ":"))


class SQLiteDriver:
    """SQLite implementation of StorageDriver.

    Attributes:
        db_path: Path of the SQLite file
        table: Table name
    """

    def __init__(
        self,
        url: str,
        *,
        collection_name: str = "documents",
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the driver.

        Args:
            url: sqlite:///path/to/file.db[?table=name]
            collection_name: Default table name
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL journal mode
        """
        parts = urlsplit(url)
        if not parts.path:
            raise DriverError(f"SQLite URL needs a file path: '{url}'")
        self.url = url
        self.db_path = Path(parts.path)
        self.table = _safe_name(parse_qs(parts.query).get("table", [collection_name])[0])
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database file."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise DriverConnectionError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise DriverError(f"SQLite error on table {self.table}: {e}") from e
        finally:
            conn.close()

    def _duplicate_error(self, error: sqlite3.IntegrityError) -> DriverError:
        message = str(error)
        if "UNIQUE" not in message:
            return DriverError(message)
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT name, definition_json FROM docdb_indexes WHERE table_name = ?",
                (self.table,),
            ).fetchall()
        for row in rows:
            if f"{self.table}__{row['name']}" in message:
                index = IndexDef.from_dict(json.loads(row["definition_json"]))
                return DuplicateKeyError(message, index_name=row["name"], index_fields=index.properties)
        return DuplicateKeyError(message, index_name=ID_KEY, index_fields=(ID_KEY,))

    async def connect(self) -> None:
        """Create the table and the index catalog if needed."""
        with self._get_connection() as conn:
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS "{self.table}" (
                    id TEXT PRIMARY KEY,
                    doc_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS docdb_indexes (
                    table_name TEXT NOT NULL,
                    name TEXT NOT NULL,
                    definition_json TEXT NOT NULL,
                    PRIMARY KEY (table_name, name)
                );
            """)
        self._connected = True
        logger.debug("SQLiteDriver connected", extra={"db_path": str(self.db_path), "table": self.table})

    async def close(self) -> None:
        self._connected = False

    def create_id(self) -> str:
        return new_id()

    def _select_all(self, conn: sqlite3.Connection) -> List[RawRecord]:
        cursor = conn.execute(f'SELECT doc_json FROM "{self.table}" ORDER BY rowid')
        return [json.loads(row["doc_json"]) for row in cursor.fetchall()]

    async def get(self, id: str) -> Optional[RawRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                f'SELECT doc_json FROM "{self.table}" WHERE id = ?', (str(id),)
            ).fetchone()
        return json.loads(row["doc_json"]) if row else None

    async def get_unique(self, fingerprint: Dict[str, Any]) -> Optional[RawRecord]:
        with self._get_connection() as conn:
            for raw in self._select_all(conn):
                if matches(raw, fingerprint):
                    return raw
        return None

    async def multi_get(self, ids: Sequence[str]) -> List[RawRecord]:
        unique_ids = list(dict.fromkeys(str(id) for id in ids))
        if not unique_ids:
            return []
        placeholders = ",".join("?" for _ in unique_ids)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f'SELECT doc_json FROM "{self.table}" WHERE id IN ({placeholders})',
                unique_ids,
            )
            return [json.loads(row["doc_json"]) for row in cursor.fetchall()]

    async def collect(self, fingerprint: Dict[str, Any]) -> List[RawRecord]:
        return await self.find(fingerprint)

    async def find(self, query: Query) -> List[RawRecord]:
        with self._get_connection() as conn:
            return [raw for raw in self._select_all(conn) if matches(raw, query)]

    async def create(self, raw: RawRecord, lock_id: Optional[str] = None) -> None:
        record = dict(raw)
        now = now_ms()
        if lock_id is not None:
            record[LOCKED_BY] = lock_id
            record[LOCKED_AT] = now
        with self._get_connection() as conn:
            try:
                conn.execute(
                    f'INSERT INTO "{self.table}" (id, doc_json, updated_at) VALUES (?, ?, ?)',
                    (str(record[ID_KEY]), _dumps(record), now),
                )
            except sqlite3.IntegrityError as e:
                raise self._duplicate_error(e) from e

    async def update(self, id: str, raw: RawRecord) -> None:
        record = dict(raw)
        record[ID_KEY] = str(id)
        with self._get_connection() as conn:
            try:
                conn.execute(
                    f'INSERT INTO "{self.table}" (id, doc_json, updated_at) VALUES (?, ?, ?) '
                    "ON CONFLICT(id) DO UPDATE SET doc_json = excluded.doc_json, "
                    "updated_at = excluded.updated_at",
                    (str(id), _dumps(record), now_ms()),
                )
            except sqlite3.IntegrityError as e:
                raise self._duplicate_error(e) from e

    async def patch(self, id: str, patch: Patch) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f'SELECT doc_json FROM "{self.table}" WHERE id = ?', (str(id),)
                ).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    logger.debug("Patch on missing record ignored", extra={"table": self.table, "id": id})
                    return

                record = json.loads(row["doc_json"])
                for path, value in patch.set.items():
                    set_path(record, path, value)
                for path in patch.unset:
                    unset_path(record, path)

                conn.execute(
                    f'UPDATE "{self.table}" SET doc_json = ?, updated_at = ? WHERE id = ?',
                    (_dumps(record), now_ms(), str(id)),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise self._duplicate_error(e) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def delete(self, id: str) -> None:
        with self._get_connection() as conn:
            conn.execute(f'DELETE FROM "{self.table}" WHERE id = ?', (str(id),))

    def _try_lock(self, conn: sqlite3.Connection, id: str, lock_id: str, timeout_ms: int, now: int) -> bool:
        cursor = conn.execute(
            f"""
            UPDATE "{self.table}"
            SET doc_json = json_set(doc_json, '$.{LOCKED_BY}', ?, '$.{LOCKED_AT}', ?),
                updated_at = ?
            WHERE id = ?
              AND (
                json_extract(doc_json, '$.{LOCKED_BY}') IS NULL
                OR json_extract(doc_json, '$.{LOCKED_AT}') IS NULL
                OR ? - json_extract(doc_json, '$.{LOCKED_AT}') >= ?
              )
            """,
            (lock_id, now, now, str(id), now, timeout_ms),
        )
        return cursor.rowcount == 1

    async def lock(self, id: str, timeout_ms: int) -> Optional[str]:
        lock_id = new_id()
        with self._get_connection() as conn:
            acquired = self._try_lock(conn, id, lock_id, timeout_ms, now_ms())
        return lock_id if acquired else None

    async def unlock(self, id: str, holder_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE "{self.table}"
                SET doc_json = json_set(doc_json, '$.{LOCKED_BY}', NULL, '$.{LOCKED_AT}', NULL)
                WHERE id = ? AND json_extract(doc_json, '$.{LOCKED_BY}') = ?
                """,
                (str(id), holder_id),
            )
            return cursor.rowcount == 1

    async def lock_many(self, query: Query, timeout_ms: int) -> Tuple[str, int]:
        lock_id = new_id()
        now = now_ms()
        count = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for raw in self._select_all(conn):
                    if matches(raw, query) and lock_is_free(raw, timeout_ms, now):
                        if self._try_lock(conn, raw[ID_KEY], lock_id, timeout_ms, now):
                            count += 1
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return lock_id, count

    async def release_locks(self, lock_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE "{self.table}"
                SET doc_json = json_set(doc_json, '$.{LOCKED_BY}', NULL, '$.{LOCKED_AT}', NULL)
                WHERE json_extract(doc_json, '$.{LOCKED_BY}') = ?
                """,
                (lock_id,),
            )
            return cursor.rowcount

    async def increment(
        self, match: Dict[str, Any], path: str, amount: int, defaults: RawRecord
    ) -> int:
        now = now_ms()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for record in self._select_all(conn):
                    if matches(record, match):
                        value = (get_path(record, path, None) or 0) + amount
                        set_path(record, path, value)
                        conn.execute(
                            f'UPDATE "{self.table}" SET doc_json = ?, updated_at = ? WHERE id = ?',
                            (_dumps(record), now, str(record[ID_KEY])),
                        )
                        break
                else:
                    record = dict(defaults)
                    record[ID_KEY] = str(record.get(ID_KEY) or new_id())
                    value = amount
                    set_path(record, path, value)
                    conn.execute(
                        f'INSERT INTO "{self.table}" (id, doc_json, updated_at) VALUES (?, ?, ?)',
                        (record[ID_KEY], _dumps(record), now),
                    )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise self._duplicate_error(e) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return value

    async def get_indexes(self) -> Dict[str, IndexDef]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT name, definition_json FROM docdb_indexes WHERE table_name = ?",
                (self.table,),
            ).fetchall()
        return {row["name"]: IndexDef.from_dict(json.loads(row["definition_json"])) for row in rows}

    async def build_index(self, index: IndexDef) -> None:
        columns = ", ".join(
            f"json_extract(doc_json, '{json_path(path)}')" for path in index.properties
        )
        unique = "UNIQUE " if index.unique else ""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    f'CREATE {unique}INDEX IF NOT EXISTS "{self.table}__{index.name}" '
                    f'ON "{self.table}" ({columns})'
                )
                conn.execute(
                    "INSERT OR REPLACE INTO docdb_indexes (table_name, name, definition_json) "
                    "VALUES (?, ?, ?)",
                    (self.table, index.name, json.dumps(index.to_dict())),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise DuplicateKeyError(
                    f"Cannot build unique index {index.name}: {e}",
                    index_name=index.name,
                    index_fields=index.properties,
                ) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def drop_index(self, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(f'DROP INDEX IF EXISTS "{self.table}__{name}"')
                conn.execute(
                    "DELETE FROM docdb_indexes WHERE table_name = ? AND name = ?",
                    (self.table, name),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
