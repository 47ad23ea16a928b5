"""SQLite registry implementation.

Stores table definitions with content-based versioning and a changelog,
plus the refresh history and scheduling status of dynamic tables.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

import freshtable.backends.base as base
import freshtable.registry as registry

_FRESHTABLE_VERSION = "0.1.0"

_REFRESH_COLUMNS = (
    "id, table_name, state, refresh_action, refresh_trigger, "
    "refresh_start_time, refresh_end_time, data_timestamp, row_count, "
    "rows_changed, attempts, error"
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


class SqliteRegistry(base.BaseRegistry):
    """SQLite-backed registry.

    Tables:
    - objects: kind, name, spec_hash, spec_json, version
    - changelog: every definition mutation with timestamps
    - meta: key-value metadata (lineage, serial, freshtable_version)
    - refresh_history: one row per refresh attempt
    - table_status: scheduling state per dynamic table
    """

    kind: Literal["sqlite"] = "sqlite"
    path: str

    def _connect(self) -> sqlite3.Connection:
        """Create a database connection."""
        return sqlite3.connect(self.path)

    def initialize(self) -> None:
        """Create tables if they don't exist and seed metadata."""
        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        try:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS objects (
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    spec_hash TEXT NOT NULL,
                    spec_json TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    PRIMARY KEY (kind, name)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS changelog (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    old_hash TEXT,
                    new_hash TEXT,
                    applied_by TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS refresh_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    refresh_action TEXT,
                    refresh_trigger TEXT NOT NULL,
                    refresh_start_time TEXT NOT NULL,
                    refresh_end_time TEXT NOT NULL,
                    data_timestamp TEXT,
                    row_count INTEGER,
                    rows_changed INTEGER,
                    attempts INTEGER NOT NULL,
                    error TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS table_status (
                    table_name TEXT PRIMARY KEY,
                    scheduling_state TEXT NOT NULL,
                    consecutive_failures INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("SELECT value FROM meta WHERE key = 'lineage'")
            if cursor.fetchone() is None:
                cursor.execute(
                    "INSERT INTO meta (key, value) VALUES ('lineage', ?)",
                    (str(uuid.uuid4()),),
                )
                cursor.execute("INSERT INTO meta (key, value) VALUES ('serial', '0')")
                cursor.execute(
                    "INSERT INTO meta (key, value) VALUES ('freshtable_version', ?)",
                    (_FRESHTABLE_VERSION,),
                )

            conn.commit()
        finally:
            conn.close()

    def get_object(self, kind: str, name: str) -> registry.ObjectRecord | None:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT kind, name, spec_hash, spec_json, version FROM objects WHERE kind = ? AND name = ?",
                (kind, name),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return registry.ObjectRecord(*row)
        finally:
            conn.close()

    def list_objects(self, kind: str | None = None) -> list[registry.ObjectRecord]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            if kind is not None:
                cursor.execute(
                    "SELECT kind, name, spec_hash, spec_json, version FROM objects WHERE kind = ? ORDER BY name",
                    (kind,),
                )
            else:
                cursor.execute(
                    "SELECT kind, name, spec_hash, spec_json, version FROM objects ORDER BY kind, name"
                )
            return [registry.ObjectRecord(*row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def put_object(self, obj: registry.ObjectRecord, applied_by: str) -> None:
        existing = self.get_object(obj.kind, obj.name)
        timestamp = datetime.now(timezone.utc).isoformat()

        conn = self._connect()
        try:
            cursor = conn.cursor()
            if existing is not None:
                cursor.execute(
                    "UPDATE objects SET spec_hash = ?, spec_json = ?, version = ? WHERE kind = ? AND name = ?",
                    (
                        obj.spec_hash,
                        obj.spec_json,
                        existing.version + 1,
                        obj.kind,
                        obj.name,
                    ),
                )
                operation, old_hash = "update", existing.spec_hash
            else:
                cursor.execute(
                    "INSERT INTO objects (kind, name, spec_hash, spec_json, version) VALUES (?, ?, ?, ?, ?)",
                    (obj.kind, obj.name, obj.spec_hash, obj.spec_json, 1),
                )
                operation, old_hash = "create", None

            cursor.execute(
                "INSERT INTO changelog (timestamp, operation, kind, name, old_hash, new_hash, applied_by) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    timestamp,
                    operation,
                    obj.kind,
                    obj.name,
                    old_hash,
                    obj.spec_hash,
                    applied_by,
                ),
            )
            self._bump_serial(cursor)
            conn.commit()
        finally:
            conn.close()

    def delete_object(self, kind: str, name: str, applied_by: str) -> None:
        existing = self.get_object(kind, name)
        if existing is None:
            return

        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM objects WHERE kind = ? AND name = ?",
                (kind, name),
            )
            cursor.execute(
                "INSERT INTO changelog (timestamp, operation, kind, name, old_hash, new_hash, applied_by) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    datetime.now(timezone.utc).isoformat(),
                    "delete",
                    kind,
                    name,
                    existing.spec_hash,
                    None,
                    applied_by,
                ),
            )
            cursor.execute("DELETE FROM table_status WHERE table_name = ?", (name,))
            self._bump_serial(cursor)
            conn.commit()
        finally:
            conn.close()

    def _bump_serial(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("SELECT value FROM meta WHERE key = 'serial'")
        row = cursor.fetchone()
        serial = int(row[0]) if row else 0
        cursor.execute(
            "UPDATE meta SET value = ? WHERE key = 'serial'",
            (str(serial + 1),),
        )

    def get_meta(self, key: str) -> str | None:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set_meta(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def get_changelog(self, limit: int = 100) -> list[registry.ChangelogEntry]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, timestamp, operation, kind, name, old_hash, new_hash, applied_by FROM changelog ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            return [
                registry.ChangelogEntry(
                    id=row[0],
                    timestamp=datetime.fromisoformat(row[1]),
                    operation=row[2],
                    kind=row[3],
                    name=row[4],
                    old_hash=row[5],
                    new_hash=row[6],
                    applied_by=row[7],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def put_refresh_record(self, record: registry.RefreshRecord) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO refresh_history (table_name, state, refresh_action, refresh_trigger, "
                "refresh_start_time, refresh_end_time, data_timestamp, row_count, rows_changed, "
                "attempts, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.table_name,
                    record.state,
                    record.refresh_action,
                    record.refresh_trigger,
                    _iso(record.refresh_start_time),
                    _iso(record.refresh_end_time),
                    _iso(record.data_timestamp),
                    record.row_count,
                    record.rows_changed,
                    record.attempts,
                    record.error,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_refresh_history(
        self, table_name: str | None = None, limit: int = 20
    ) -> list[registry.RefreshRecord]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            if table_name is not None:
                cursor.execute(
                    f"SELECT {_REFRESH_COLUMNS} FROM refresh_history WHERE table_name = ? ORDER BY id DESC LIMIT ?",
                    (table_name, limit),
                )
            else:
                cursor.execute(
                    f"SELECT {_REFRESH_COLUMNS} FROM refresh_history ORDER BY id DESC LIMIT ?",
                    (limit,),
                )
            return [self._row_to_refresh(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_latest_refresh(self, table_name: str) -> registry.RefreshRecord | None:
        records = self.get_refresh_history(table_name, limit=1)
        return records[0] if records else None

    def _row_to_refresh(self, row: tuple) -> registry.RefreshRecord:
        return registry.RefreshRecord(
            id=row[0],
            table_name=row[1],
            state=row[2],
            refresh_action=row[3],
            refresh_trigger=row[4],
            refresh_start_time=datetime.fromisoformat(row[5]),
            refresh_end_time=datetime.fromisoformat(row[6]),
            data_timestamp=_parse(row[7]),
            row_count=row[8],
            rows_changed=row[9],
            attempts=row[10],
            error=row[11],
        )

    def get_status(self, table_name: str) -> registry.TableStatus | None:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT table_name, scheduling_state, consecutive_failures, updated_at FROM table_status WHERE table_name = ?",
                (table_name,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return registry.TableStatus(
                table_name=row[0],
                scheduling_state=row[1],
                consecutive_failures=row[2],
                updated_at=datetime.fromisoformat(row[3]),
            )
        finally:
            conn.close()

    def put_status(self, status: registry.TableStatus) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO table_status (table_name, scheduling_state, consecutive_failures, updated_at) VALUES (?, ?, ?, ?)",
                (
                    status.table_name,
                    status.scheduling_state,
                    status.consecutive_failures,
                    status.updated_at.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
