"""
SQLite-backed local event log.

One row per observed (repository, commit, source). Hook processes insert
concurrently; the uniqueness constraint plus upsert makes repeated inserts of
the same key commute. Only the exporter moves rows out of PENDING.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

import structlog

from .errors import StoreError
from .models import Event, EventSource, EventStatus, format_rfc3339, parse_rfc3339

log = structlog.get_logger("footprint.store")

SCHEMA_VERSION = 1

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS repo_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_id     TEXT NOT NULL,
    repo_path   TEXT NOT NULL DEFAULT '',
    commit_hash TEXT NOT NULL,
    branch      TEXT NOT NULL DEFAULT '',
    timestamp   TEXT NOT NULL,
    status_id   INTEGER NOT NULL DEFAULT 0,
    source_id   INTEGER NOT NULL,
    UNIQUE (repo_id, commit_hash, source_id)
);

CREATE INDEX IF NOT EXISTS idx_repo_events_status ON repo_events (status_id);
"""

_COLUMNS = "id, repo_id, repo_path, commit_hash, branch, timestamp, status_id, source_id"


@dataclasses.dataclass
class EventFilter:
    status: Optional[EventStatus] = None
    source: Optional[EventSource] = None
    since: Optional[dt.datetime] = None
    until: Optional[dt.datetime] = None
    repo_id: str = ""
    limit: int = 0


class EventStore:
    def __init__(self, path: str | Path = ":memory:", *, busy_timeout_s: float = 10.0) -> None:
        self.path = str(path)
        try:
            self._conn = sqlite3.connect(self.path, timeout=busy_timeout_s)
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._migrate()
        except sqlite3.Error as e:
            raise StoreError(f"open database {self.path}: {e}") from e

    @classmethod
    def open(cls, path: Path) -> "EventStore":
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(path)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _migrate(self) -> None:
        (version,) = self._conn.execute("PRAGMA user_version").fetchone()
        if version >= SCHEMA_VERSION:
            return
        with self._conn:
            self._conn.executescript(_SCHEMA_DDL)
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def insert(self, event: Event) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO repo_events
                        (repo_id, repo_path, commit_hash, branch, timestamp, status_id, source_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (repo_id, commit_hash, source_id) DO UPDATE SET
                        timestamp = excluded.timestamp,
                        branch = excluded.branch,
                        repo_path = excluded.repo_path
                    """,
                    (
                        event.repo_id,
                        event.repo_path,
                        event.commit,
                        event.branch,
                        format_rfc3339(event.timestamp),
                        int(event.status),
                        int(event.source),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"insert event {event.repo_id}@{event.commit}: {e}") from e

    def _query(self, sql: str, args: Iterable[object] = ()) -> list[Event]:
        try:
            rows = self._conn.execute(sql, tuple(args)).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"query events: {e}") from e
        out: list[Event] = []
        for row_id, repo_id, repo_path, commit, branch, ts, status_id, source_id in rows:
            try:
                timestamp = parse_rfc3339(ts)
                status = EventStatus(status_id)
                source = EventSource(source_id)
            except ValueError:
                log.warning("skipping_unreadable_event", id=row_id, timestamp=ts, status=status_id, source=source_id)
                continue
            out.append(
                Event(
                    id=row_id,
                    repo_id=repo_id,
                    repo_path=repo_path,
                    commit=commit,
                    branch=branch,
                    timestamp=timestamp,
                    status=status,
                    source=source,
                )
            )
        return out

    def list_pending(self) -> list[Event]:
        return self._query(
            f"SELECT {_COLUMNS} FROM repo_events WHERE status_id = ? ORDER BY id ASC",
            (int(EventStatus.PENDING),),
        )

    def list_since(self, after_id: int) -> list[Event]:
        return self._query(f"SELECT {_COLUMNS} FROM repo_events WHERE id > ? ORDER BY id ASC", (after_id,))

    def list_events(self, flt: Optional[EventFilter] = None) -> list[Event]:
        flt = flt or EventFilter()
        clauses: list[str] = []
        args: list[object] = []
        if flt.status is not None:
            clauses.append("status_id = ?")
            args.append(int(flt.status))
        if flt.source is not None:
            clauses.append("source_id = ?")
            args.append(int(flt.source))
        if flt.since is not None:
            clauses.append("timestamp >= ?")
            args.append(format_rfc3339(flt.since))
        if flt.until is not None:
            clauses.append("timestamp <= ?")
            args.append(format_rfc3339(flt.until))
        if flt.repo_id:
            clauses.append("repo_id = ?")
            args.append(flt.repo_id)
        sql = f"SELECT {_COLUMNS} FROM repo_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, id DESC"
        if flt.limit > 0:
            sql += " LIMIT ?"
            args.append(flt.limit)
        return self._query(sql, args)

    def update_statuses(self, ids: list[int], status: EventStatus) -> None:
        """Move PENDING rows to `status` in one transaction; nothing moves back to PENDING."""
        if not EventStatus.PENDING.can_transition(status):
            raise StoreError(f"invalid status transition to {status.name}")
        if not ids:
            return
        try:
            with self._conn:
                self._conn.executemany(
                    "UPDATE repo_events SET status_id = ? WHERE id = ? AND status_id = ?",
                    [(int(status), i, int(EventStatus.PENDING)) for i in ids],
                )
        except sqlite3.Error as e:
            raise StoreError(f"update event statuses: {e}") from e

    def mark_orphaned(self, repo_id: str) -> int:
        try:
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE repo_events SET status_id = ? WHERE repo_id = ? AND status_id = ?",
                    (int(EventStatus.ORPHANED), repo_id, int(EventStatus.PENDING)),
                )
        except sqlite3.Error as e:
            raise StoreError(f"mark orphaned events for {repo_id}: {e}") from e
        return cur.rowcount

    def delete_orphaned(self) -> int:
        try:
            with self._conn:
                cur = self._conn.execute("DELETE FROM repo_events WHERE status_id = ?", (int(EventStatus.ORPHANED),))
        except sqlite3.Error as e:
            raise StoreError(f"delete orphaned events: {e}") from e
        return cur.rowcount
