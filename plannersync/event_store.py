from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from plannersync.models import LocalEvent

EVENT_COLUMNS = (
    "id",
    "original_id",
    "title",
    "start",
    "end",
    "all_day",
    "color",
    "description",
    "location",
    "source",
    "calendar_name",
    "calendar_url",
    "type",
    "recurrence_frequency",
    "recurrence_until",
)
QUERYABLE_FIELDS = {"id", "original_id", "source", "calendar_url", "calendar_name", "type"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _event_to_row(event: LocalEvent) -> tuple[Any, ...]:
    payload = event.to_dict()
    payload["all_day"] = 1 if event.all_day else 0
    return tuple(payload[column] for column in EVENT_COLUMNS) + (_utc_now(),)


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    payload = dict(row)
    payload["all_day"] = bool(payload.get("all_day"))
    return LocalEvent.from_dict(payload)


class EventStore:
    """sqlite-backed event table plus the sync audit trail."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            original_id TEXT NOT NULL DEFAULT '',
            title TEXT NOT NULL,
            start TEXT,
            "end" TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            color TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL,
            calendar_name TEXT NOT NULL DEFAULT '',
            calendar_url TEXT NOT NULL DEFAULT '',
            type TEXT NOT NULL DEFAULT 'event',
            recurrence_frequency TEXT NOT NULL DEFAULT 'none',
            recurrence_until TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_source ON events(source);
        CREATE INDEX IF NOT EXISTS idx_events_original_id ON events(original_id);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            upserted INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _upsert(conn: sqlite3.Connection, events: Iterable[LocalEvent]) -> int:
        placeholders = ", ".join("?" for _ in range(len(EVENT_COLUMNS) + 1))
        columns = ", ".join(f'"{column}"' for column in EVENT_COLUMNS + ("updated_at",))
        updates = ", ".join(f'"{column}" = excluded."{column}"' for column in EVENT_COLUMNS[1:] + ("updated_at",))
        rows = [_event_to_row(event) for event in events]
        conn.executemany(
            f"INSERT INTO events({columns}) VALUES ({placeholders}) ON CONFLICT(id) DO UPDATE SET {updates}",
            rows,
        )
        return len(rows)

    @staticmethod
    def _delete(conn: sqlite3.Connection, event_ids: Iterable[str]) -> int:
        ids = [(str(event_id),) for event_id in event_ids]
        conn.executemany("DELETE FROM events WHERE id = ?", ids)
        return len(ids)

    def get_all(self) -> list[LocalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM events ORDER BY start, id").fetchall()
        return [_row_to_event(row) for row in rows]

    def get(self, event_id: str) -> LocalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM events WHERE id = ?", (str(event_id),)).fetchone()
        return _row_to_event(row) if row else None

    def query(self, field: str, value: Any) -> list[LocalEvent]:
        if field not in QUERYABLE_FIELDS:
            raise ValueError(f"Unsupported query field: {field}")
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f'SELECT * FROM events WHERE "{field}" = ? ORDER BY start, id',
                    (value,),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def put(self, event: LocalEvent) -> None:
        self.bulk_put([event])

    def bulk_put(self, events: Iterable[LocalEvent]) -> int:
        with self._lock:
            with self._connect() as conn:
                count = self._upsert(conn, events)
                conn.commit()
        return count

    def delete(self, event_id: str) -> None:
        self.bulk_delete([event_id])

    def bulk_delete(self, event_ids: Iterable[str]) -> int:
        with self._lock:
            with self._connect() as conn:
                count = self._delete(conn, event_ids)
                conn.commit()
        return count

    def apply_batch(self, *, upserts: Iterable[LocalEvent], deletes: Iterable[str]) -> tuple[int, int]:
        """Upsert then delete inside one transaction; a failure rolls back both."""
        with self._lock:
            with self._connect() as conn:
                upserted = self._upsert(conn, upserts)
                deleted = self._delete(conn, deletes)
        return upserted, deleted

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        upserted: int,
        deleted: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, upserted, deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, upserted, deleted),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, upserted, deleted
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), event_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, event_id, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])
