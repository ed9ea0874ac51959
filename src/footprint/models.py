from __future__ import annotations

import dataclasses
import datetime as dt
import enum


class EventStatus(enum.IntEnum):
    # Persisted as integers. Never renumber; append new members only.
    PENDING = 0
    EXPORTED = 1
    ORPHANED = 2
    SKIPPED = 3

    @classmethod
    def parse(cls, text: str) -> "EventStatus":
        try:
            return cls[text.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown event status: {text!r}") from None

    def can_transition(self, to: "EventStatus") -> bool:
        return self is EventStatus.PENDING and to is not EventStatus.PENDING


class EventSource(enum.IntEnum):
    # Persisted as integers. Never renumber; append new members only.
    POST_COMMIT = 0
    POST_REWRITE = 1
    POST_CHECKOUT = 2
    POST_MERGE = 3
    PRE_PUSH = 4
    MANUAL = 5
    BACKFILL = 6

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")

    @classmethod
    def parse(cls, text: str) -> "EventSource":
        t = text.strip().lower().replace("_", "-")
        aliases = {
            "commit": cls.POST_COMMIT,
            "rewrite": cls.POST_REWRITE,
            "checkout": cls.POST_CHECKOUT,
            "merge": cls.POST_MERGE,
            "push": cls.PRE_PUSH,
        }
        if t in aliases:
            return aliases[t]
        for member in cls:
            if member.label == t:
                return member
        raise ValueError(f"unknown event source: {text!r}")


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_rfc3339(ts: dt.datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_rfc3339(value: str) -> dt.datetime:
    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    ts = dt.datetime.fromisoformat(v)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc)


@dataclasses.dataclass
class Event:
    repo_id: str
    repo_path: str
    commit: str
    branch: str
    timestamp: dt.datetime
    source: EventSource
    status: EventStatus = EventStatus.PENDING
    id: int = 0


@dataclasses.dataclass(frozen=True)
class CommitMetadata:
    authored_at: str = ""
    author_name: str = ""
    author_email: str = ""
    committer_name: str = ""
    committer_email: str = ""
    committed_at: str = ""
    parents: tuple[str, ...] = ()
    subject: str = ""
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def is_empty(self) -> bool:
        return self == CommitMetadata()


@dataclasses.dataclass
class ExportState:
    interval_sec: int = 3600
    last_export: int = 0


@dataclasses.dataclass
class ExportResult:
    exported: int = 0
    pushed: bool = False
    files: list[str] = dataclasses.field(default_factory=list)
    skipped_reason: str = ""
    pending: list[Event] = dataclasses.field(default_factory=list)
    dry_run: bool = False
