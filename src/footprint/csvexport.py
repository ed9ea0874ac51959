"""
Materialize events into yearly CSV files.

Each file is rebuilt from a `(repo, commit) -> row` map and rewritten whole,
sorted by authored time, through a temp file and an atomic rename. Rebuilding
from a keyed map is what makes repeated exports and cross-machine merges
converge on the same content.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from .errors import DiskSpaceError, ExportError
from .models import CommitMetadata, Event, format_rfc3339, parse_rfc3339

log = structlog.get_logger("footprint.export")

ACTIVE_CSV_NAME = "commits.csv"

CSV_HEADER = [
    "authored_at",
    "repo",
    "branch",
    "commit",
    "subject",
    "author",
    "author_email",
    "files",
    "additions",
    "deletions",
    "parents",
    "committer",
    "committer_email",
    "committed_at",
    "source",
    "machine",
]

REPO_COL = CSV_HEADER.index("repo")
COMMIT_COL = CSV_HEADER.index("commit")
AUTHORED_COL = CSV_HEADER.index("authored_at")

Key = tuple[str, str]
Enricher = Callable[[str, str], CommitMetadata]


def csv_name_for_year(year: int, current_year: int) -> str:
    if year == current_year:
        return ACTIVE_CSV_NAME
    return f"commits-{year}.csv"


def csv_path_for(export_dir: Path, event_time: dt.datetime, current_year: int) -> Path:
    if event_time.tzinfo is not None:
        event_time = event_time.astimezone(dt.timezone.utc)
    return export_dir / csv_name_for_year(event_time.year, current_year)


def sanitize_subject(subject: str) -> str:
    return subject.replace("\r", "").replace("\n", " ").strip()


def build_record(event: Event, meta: CommitMetadata, machine: str) -> list[str]:
    recorded_at = format_rfc3339(event.timestamp)
    return [
        meta.authored_at or recorded_at,
        event.repo_id,
        event.branch,
        event.commit,
        sanitize_subject(meta.subject),
        meta.author_name,
        meta.author_email,
        str(meta.files_changed),
        str(meta.insertions),
        str(meta.deletions),
        ",".join(meta.parents),
        meta.committer_name,
        meta.committer_email,
        meta.committed_at or recorded_at,
        event.source.label,
        machine,
    ]


def _key_indices(header: list[str], origin: str) -> tuple[int, int]:
    try:
        return header.index("repo"), header.index("commit")
    except ValueError:
        log.warning("csv_header_missing_key_columns", file=origin, header=header)
        return REPO_COL, COMMIT_COL


def _project(row: list[str], header: list[str]) -> list[str]:
    if header == CSV_HEADER:
        return row
    by_name = {name: row[i] for i, name in enumerate(header) if i < len(row)}
    return [by_name.get(name, "") for name in CSV_HEADER]


def parse_records(text: str, into: Optional[dict[Key, list[str]]] = None, *, origin: str = "<memory>") -> dict[Key, list[str]]:
    """
    Parse CSV text into `into` keyed by (repo, commit); later rows replace
    earlier ones. Rows too short to carry both key columns are logged and skipped.
    """
    records: dict[Key, list[str]] = {} if into is None else into
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        return records
    except csv.Error as e:
        log.warning("csv_unreadable_header", file=origin, error=str(e))
        return records
    header = [h.strip() for h in header]
    repo_idx, commit_idx = _key_indices(header, origin)
    known_header = "repo" in header and "commit" in header
    need = max(repo_idx, commit_idx) + 1
    line_no = 1
    while True:
        line_no += 1
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            log.warning("csv_skipping_malformed_line", file=origin, line=line_no, error=str(e))
            continue
        if not row:
            continue
        if len(row) < need:
            log.warning("csv_skipping_short_line", file=origin, line=line_no, columns=len(row), expected=need)
            continue
        key = (row[repo_idx], row[commit_idx])
        records[key] = _project(row, header) if known_header else row
    return records


def load_records(path: Path) -> dict[Key, list[str]]:
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ExportError(f"could not load existing CSV {path}: {e}") from e
    return parse_records(text, origin=str(path))


def _sort_key(row: list[str]) -> tuple:
    authored = row[AUTHORED_COL] if len(row) > AUTHORED_COL else ""
    try:
        instant = parse_rfc3339(authored).timestamp()
    except ValueError:
        instant = float("inf")
    repo = row[REPO_COL] if len(row) > REPO_COL else ""
    commit = row[COMMIT_COL] if len(row) > COMMIT_COL else ""
    return (instant, authored, repo, commit)


def check_disk_space(directory: Path, required: int) -> None:
    try:
        free = shutil.disk_usage(directory).free
    except OSError as e:
        log.debug("disk_space_unknown", dir=str(directory), error=str(e))
        return
    if free < required * 2:
        raise DiskSpaceError(need=required * 2, have=free)


def render_csv(rows: Iterable[list[str]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def write_sorted(path: Path, records: dict[Key, list[str]]) -> None:
    lines = []
    for row in records.values():
        if len(row) != len(CSV_HEADER):
            log.warning("csv_skipping_wrong_width_record", file=str(path), columns=len(row), expected=len(CSV_HEADER))
            continue
        lines.append(row)
    lines.sort(key=_sort_key)

    data = render_csv(lines).encode("utf-8")
    check_disk_space(path.parent, len(data))

    tmp = path.with_name(path.name + ".tmp")
    try:
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise ExportError(f"could not write {path}: {e}") from e


def materialize(
    export_dir: Path,
    events: list[Event],
    *,
    enricher: Enricher,
    current_year: int,
    machine: str,
) -> tuple[list[int], list[str]]:
    """
    Fold `events` into their yearly CSV files.

    Returns the ids of the events written and the modified files relative to
    `export_dir`. Enrichment failures degrade to blank metadata.
    """
    repo_paths: dict[str, str] = {}
    for e in events:
        if e.repo_path:
            repo_paths[e.repo_id] = e.repo_path

    by_file: dict[Path, list[Event]] = {}
    for e in events:
        by_file.setdefault(csv_path_for(export_dir, e.timestamp, current_year), []).append(e)

    exported_ids: list[int] = []
    modified: list[str] = []
    for csv_path in sorted(by_file):
        records = load_records(csv_path)
        for e in by_file[csv_path]:
            repo_path = e.repo_path or repo_paths.get(e.repo_id, "")
            meta = enricher(repo_path, e.commit) if repo_path else CommitMetadata()
            records[(e.repo_id, e.commit)] = build_record(e, meta, machine)
            exported_ids.append(e.id)
        write_sorted(csv_path, records)
        modified.append(csv_path.relative_to(export_dir).as_posix())
    return exported_ids, modified


def rotate_active_file(export_dir: Path, current_year: int, last_written_year: Optional[int]) -> list[str]:
    """
    Fold `commits.csv` into `commits-<year>.csv` once its year has passed.

    `last_written_year` is the year the active file was last committed in;
    every row in it was routed there while that year was current.
    """
    active = export_dir / ACTIVE_CSV_NAME
    if last_written_year is None or last_written_year >= current_year or not active.exists():
        return []
    target = export_dir / csv_name_for_year(last_written_year, current_year)
    records = load_records(target)
    records.update(load_records(active))
    write_sorted(target, records)
    try:
        active.unlink()
    except OSError as e:
        raise ExportError(f"could not remove rotated {active}: {e}") from e
    log.info("rotated_active_csv", year=last_written_year, target=target.name)
    return [ACTIVE_CSV_NAME, target.name]
