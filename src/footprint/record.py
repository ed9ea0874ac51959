from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Callable, Optional

import structlog

from . import config
from .errors import InvalidRepoError
from .git import commit_log, current_branch, git_available, head_commit, repo_toplevel, resolve_remote_url
from .identity import derive_repo_id
from .models import Event, EventSource, utc_now
from .store import EventStore

log = structlog.get_logger("footprint.record")


class Tracker:
    """The set of tracked repository ids, kept in the config file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def tracked(self) -> list[str]:
        value = config.get(self.path, "tracked_repos") or []
        return [str(v) for v in value if str(v).strip()]

    def is_tracked(self, repo_id: str) -> bool:
        return repo_id in self.tracked()

    def track(self, repo_id: str) -> bool:
        with config.config_lock(self.path):
            cfg = config.load_config(self.path)
            repos = list(cfg.get("tracked_repos") or [])
            if repo_id in repos:
                return False
            repos.append(repo_id)
            cfg["tracked_repos"] = sorted(repos)
            config.save_config(self.path, cfg)
        return True

    def untrack(self, repo_id: str) -> bool:
        with config.config_lock(self.path):
            cfg = config.load_config(self.path)
            repos = list(cfg.get("tracked_repos") or [])
            if repo_id not in repos:
                return False
            cfg["tracked_repos"] = [r for r in repos if r != repo_id]
            config.save_config(self.path, cfg)
        return True


def repo_identity(path: Path, remote: str = "") -> tuple[Path, str]:
    """Resolve `path` to its repository root and repo id; raises on failure."""
    root = repo_toplevel(path)
    if root is None:
        raise InvalidRepoError(f"not inside a git repository: {path}")
    return root, derive_repo_id(resolve_remote_url(root, remote), str(root))


def record_event(
    store: EventStore,
    tracker: Tracker,
    source: EventSource,
    cwd: Path,
    now: Callable[[], dt.datetime] = utc_now,
) -> Optional[Event]:
    """
    Record HEAD of the repository containing `cwd`.

    Returns None without touching the store when git is unavailable, `cwd` is
    not inside a repository, or the repository is not tracked.
    """
    if not git_available():
        return None
    root = repo_toplevel(cwd)
    if root is None:
        return None
    try:
        repo_id = derive_repo_id(resolve_remote_url(root), str(root))
    except InvalidRepoError as e:
        log.debug("record_skipped_no_repo_id", path=str(root), error=str(e))
        return None
    if not tracker.is_tracked(repo_id):
        return None
    commit = head_commit(root)
    if not commit:
        return None
    event = Event(
        repo_id=repo_id,
        repo_path=str(root),
        commit=commit,
        branch=current_branch(root),
        timestamp=now(),
        source=source,
    )
    store.insert(event)
    log.debug("recorded", repo=repo_id, commit=commit, source=source.label)
    return event


def untrack_repo(store: EventStore, tracker: Tracker, repo_id: str) -> bool:
    removed = tracker.untrack(repo_id)
    orphaned = store.mark_orphaned(repo_id)
    if orphaned:
        log.info("orphaned_pending_events", repo=repo_id, count=orphaned)
    return removed


def backfill(
    store: EventStore,
    repo_path: Path,
    repo_id: str,
    since: Optional[dt.datetime] = None,
    limit: int = 0,
) -> int:
    """Insert a BACKFILL event for each commit in history, timestamped with its authored time."""
    branch = current_branch(repo_path)
    count = 0
    for commit, authored in commit_log(repo_path, since=since, limit=limit):
        store.insert(
            Event(
                repo_id=repo_id,
                repo_path=str(repo_path),
                commit=commit,
                branch=branch,
                timestamp=authored,
                source=EventSource.BACKFILL,
            )
        )
        count += 1
    return count
