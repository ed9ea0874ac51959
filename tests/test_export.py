from __future__ import annotations

import datetime as dt
import subprocess
from pathlib import Path

import pytest

from footprint.config import InMemoryStateStore
from footprint.csvexport import CSV_HEADER, load_records
from footprint.errors import DirtyExportRepoError, ExportError, LockTimeoutError
from footprint.export import Exporter
from footprint.models import CommitMetadata, Event, EventSource, EventStatus, ExportState
from footprint.retry import RetryPolicy
from footprint.store import EventStore
from footprint.sync import ExportRepo

NOW = dt.datetime(2025, 7, 1, 12, 0, tzinfo=dt.timezone.utc)


def _run(cmd: list[str], cwd: Path) -> str:
    p = subprocess.run(cmd, cwd=str(cwd), capture_output=True, text=True)
    assert p.returncode == 0, p.stderr
    return p.stdout


def _utc(*args: int) -> dt.datetime:
    return dt.datetime(*args, tzinfo=dt.timezone.utc)


def _event(commit: str, ts: dt.datetime, repo: str = "github.com/org/repo") -> Event:
    return Event(repo_id=repo, repo_path="/src/repo", commit=commit, branch="main", timestamp=ts, source=EventSource.POST_COMMIT)


def _enricher(repo_path: str, commit: str) -> CommitMetadata:
    return CommitMetadata(author_name="Ada", author_email="ada@example.com", subject=f"work {commit[:6]}", files_changed=1, insertions=2)


def _bare(path: Path) -> Path:
    path.mkdir(parents=True)
    _run(["git", "init", "--bare"], cwd=path)
    return path


def _exporter(store: EventStore, path: Path, *, state: InMemoryStateStore | None = None, machine: str = "box") -> Exporter:
    repo = ExportRepo(path, retry=RetryPolicy(sleep=lambda s: None))
    return Exporter(store, repo, state or InMemoryStateStore(), enricher=_enricher, now=lambda: NOW, machine=machine, lock_timeout=0.2)


def test_export_routes_events_into_yearly_files(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2023, 6, 1)))
    store.insert(_event("b" * 40, _utc(2024, 6, 1)))
    store.insert(_event("c" * 40, _utc(2025, 6, 1)))
    state = InMemoryStateStore()
    exporter = _exporter(store, tmp_path / "export", state=state)

    result = exporter.run(force=True)

    assert result.exported == 3
    assert not result.pushed
    assert result.files == ["commits-2023.csv", "commits-2024.csv", "commits.csv"]
    for name, commit in (("commits-2023.csv", "a"), ("commits-2024.csv", "b"), ("commits.csv", "c")):
        records = load_records(tmp_path / "export" / name)
        assert list(records) == [("github.com/org/repo", commit * 40)]
        row = records[("github.com/org/repo", commit * 40)]
        assert row[CSV_HEADER.index("machine")] == "box"
        assert row[CSV_HEADER.index("subject")] == f"work {commit * 6}"
    assert store.list_pending() == []
    assert {e.status for e in store.list_events()} == {EventStatus.EXPORTED}
    assert _run(["git", "log", "-1", "--format=%s"], cwd=tmp_path / "export").strip() == "Export 3 files"
    assert state.state.last_export == int(NOW.timestamp())


def test_dry_run_has_no_side_effects(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    exporter = _exporter(store, tmp_path / "export")

    result = exporter.run(dry_run=True)

    assert result.dry_run
    assert [e.commit for e in result.pending] == ["a" * 40]
    assert not (tmp_path / "export").exists()
    assert len(store.list_pending()) == 1


def test_nothing_pending(tmp_path: Path) -> None:
    result = _exporter(EventStore(), tmp_path / "export").run(force=True)
    assert result.skipped_reason == "no_pending"
    assert not (tmp_path / "export").exists()


def test_interval_gate_and_force(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    state = InMemoryStateStore(ExportState(interval_sec=3600, last_export=int(NOW.timestamp()) - 60))
    exporter = _exporter(store, tmp_path / "export", state=state)

    assert not exporter.should_export()
    assert exporter.run().skipped_reason == "interval"
    assert exporter.maybe_export() is None
    assert len(store.list_pending()) == 1

    assert exporter.run(force=True).exported == 1
    assert store.list_pending() == []


def test_failed_push_keeps_events_pending_until_retry(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    store.insert(_event("b" * 40, _utc(2025, 6, 2)))
    exporter = _exporter(store, tmp_path / "export")
    exporter.repo.set_remote(str(tmp_path / "unreachable.git"))

    first = exporter.run(force=True)
    assert not first.pushed
    assert len(store.list_pending()) == 2

    remote = _bare(tmp_path / "remote.git")
    exporter.repo.set_remote(str(remote))
    second = exporter.run(force=True)

    assert second.pushed
    assert second.exported == 2
    assert store.list_pending() == []
    content = _run(["git", "show", "main:commits.csv"], cwd=remote)
    assert content.count("a" * 40) == 1
    assert content.count("b" * 40) == 1
    assert len(content.splitlines()) == 3


def test_machines_converge_through_shared_remote(tmp_path: Path) -> None:
    remote = _bare(tmp_path / "remote.git")

    store_a = EventStore()
    store_a.insert(_event("a" * 40, _utc(2025, 6, 1)))
    a = _exporter(store_a, tmp_path / "a", machine="laptop")
    a.repo.set_remote(str(remote))

    store_b = EventStore()
    store_b.insert(_event("b" * 40, _utc(2025, 6, 2), repo="github.com/org/other"))
    store_b.insert(_event("c" * 40, _utc(2024, 3, 1), repo="github.com/org/other"))
    b = _exporter(store_b, tmp_path / "b", machine="desktop")
    # b exports once while offline, so its history is unrelated to a's
    b.repo.set_remote(str(tmp_path / "unreachable.git"))
    assert not b.run(force=True).pushed

    assert a.run(force=True).pushed

    b.repo.set_remote(str(remote))
    assert b.run(force=True).pushed
    assert store_b.list_pending() == []

    store_a.insert(_event("d" * 40, _utc(2025, 6, 3)))
    assert a.run(force=True).pushed

    expected = {("github.com/org/repo", "a" * 40), ("github.com/org/other", "b" * 40), ("github.com/org/repo", "d" * 40)}
    assert set(load_records(tmp_path / "a" / "commits.csv")) == expected
    assert set(load_records(tmp_path / "a" / "commits-2024.csv")) == {("github.com/org/other", "c" * 40)}
    assert _run(["git", "rev-parse", "HEAD"], cwd=tmp_path / "a") == _run(["git", "rev-parse", "main"], cwd=remote)


def test_dirty_export_repo_refuses_to_run(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    exporter = _exporter(store, tmp_path / "export")
    exporter.repo.ensure()
    (exporter.repo.git_dir / "MERGE_HEAD").write_text("0" * 40 + "\n", encoding="utf-8")

    with pytest.raises(DirtyExportRepoError):
        exporter.run(force=True)
    assert len(store.list_pending()) == 1
    assert exporter.maybe_export() is None
    assert not (exporter.repo.git_dir / "footprint-export.lock").exists()


def test_concurrent_export_waits_for_lock(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    exporter = _exporter(store, tmp_path / "export")
    exporter.repo.ensure()

    with exporter.repo.lock():
        with pytest.raises(LockTimeoutError):
            exporter.run(force=True)
    assert len(store.list_pending()) == 1


def test_orphaned_events_are_purged_after_export(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    store.insert(_event("b" * 40, _utc(2025, 6, 1), repo="github.com/org/gone"))
    store.mark_orphaned("github.com/org/gone")

    result = _exporter(store, tmp_path / "export").run(force=True)

    assert result.exported == 1
    assert [e.repo_id for e in store.list_events()] == ["github.com/org/repo"]
    assert list(load_records(tmp_path / "export" / "commits.csv")) == [("github.com/org/repo", "a" * 40)]


def test_active_file_rotates_when_year_changes(tmp_path: Path) -> None:
    store = EventStore()
    export = tmp_path / "export"
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    _exporter(store, export).run(force=True)

    # the active file was committed now; pretend the clock moved a year ahead of it
    year = int(_run(["git", "log", "-1", "--format=%cd", "--date=format:%Y"], cwd=export).strip())
    later = dt.datetime(year + 1, 1, 2, tzinfo=dt.timezone.utc)
    store.insert(_event("b" * 40, later))
    exporter = _exporter(store, export)
    exporter.now = lambda: later
    result = exporter.run(force=True)

    assert "commits.csv" in result.files
    assert set(load_records(export / f"commits-{year}.csv")) >= {("github.com/org/repo", "a" * 40)}
    assert list(load_records(export / "commits.csv")) == [("github.com/org/repo", "b" * 40)]


def test_local_io_failure_is_reported_as_export_error(tmp_path: Path) -> None:
    store = EventStore()
    store.insert(_event("a" * 40, _utc(2025, 6, 1)))
    blocker = tmp_path / "blocker"
    blocker.write_text("x\n", encoding="utf-8")
    exporter = _exporter(store, blocker / "export")

    with pytest.raises(ExportError):
        exporter.run(force=True)
    assert exporter.maybe_export() is None
    assert len(store.list_pending()) == 1
