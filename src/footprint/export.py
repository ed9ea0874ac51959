"""
Export orchestration.

One run: gather pending events, pull the shared repository, fold the events
into the yearly CSV files, commit, push, and only then mark the events
EXPORTED. A failed push leaves them PENDING; the next run rewrites the same
keys, so the remote receives every event at least once and never a
duplicate row.
"""

from __future__ import annotations

import socket
from typing import Callable

import structlog

from .config import StateStore
from .csvexport import ACTIVE_CSV_NAME, Enricher, materialize, rotate_active_file
from .errors import ExportError, FootprintError, TransportError
from .git import commit_metadata
from .models import EventStatus, ExportResult, utc_now
from .store import EventStore
from .sync import ExportRepo, commit_message

log = structlog.get_logger("footprint.export")


def hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return ""


class Exporter:
    def __init__(
        self,
        store: EventStore,
        repo: ExportRepo,
        state: StateStore,
        *,
        enricher: Enricher = commit_metadata,
        now: Callable = utc_now,
        machine: str | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.repo = repo
        self.state = state
        self.enricher = enricher
        self.now = now
        self.machine = hostname() if machine is None else machine
        self.lock_timeout = lock_timeout

    def should_export(self, force: bool = False) -> bool:
        if force:
            return True
        st = self.state.load()
        return int(self.now().timestamp()) - st.last_export >= st.interval_sec

    def run(self, *, force: bool = False, dry_run: bool = False) -> ExportResult:
        events = self.store.list_pending()
        if not events:
            return ExportResult(skipped_reason="no_pending", dry_run=dry_run)
        if dry_run:
            return ExportResult(pending=events, dry_run=True)
        if not self.should_export(force):
            log.debug("export_interval_not_reached")
            return ExportResult(skipped_reason="interval", pending=events)

        self.repo.ensure()
        try:
            with self.repo.lock(self.lock_timeout):
                return self._run_locked()
        except OSError as e:
            raise ExportError(f"export to {self.repo.path} failed: {e}") from e

    def _run_locked(self) -> ExportResult:
        repo = self.repo
        repo.check_clean_state()
        # re-read under the lock: a concurrent run may have exported them already
        events = self.store.list_pending()
        if not events:
            return ExportResult(skipped_reason="no_pending")

        if repo.has_remote():
            try:
                repo.pull()
            except TransportError as e:
                log.warning("pull_failed_continuing_offline", repo=str(repo.path), error=str(e))

        now = self.now()
        rotated = rotate_active_file(repo.path, now.year, repo.last_commit_year(ACTIVE_CSV_NAME))
        exported_ids, files = materialize(
            repo.path,
            events,
            enricher=self.enricher,
            current_year=now.year,
            machine=self.machine,
        )
        files = sorted(set(files) | set(rotated))
        if not files:
            return ExportResult()

        repo.commit(files, commit_message(files))

        pushed = False
        if repo.has_remote():
            try:
                repo.push()
            except TransportError as e:
                log.warning("push_failed_events_stay_pending", repo=str(repo.path), error=str(e))
                return ExportResult(exported=len(exported_ids), pushed=False, files=files)
            pushed = True

        self.store.update_statuses(exported_ids, EventStatus.EXPORTED)

        try:
            deleted = self.store.delete_orphaned()
        except FootprintError as e:
            log.warning("delete_orphaned_failed", error=str(e))
        else:
            if deleted:
                log.info("deleted_orphaned_events", count=deleted)

        self.state.save_last_export(int(now.timestamp()))
        log.info("exported", events=len(exported_ids), files=files, pushed=pushed)
        return ExportResult(exported=len(exported_ids), pushed=pushed, files=files)

    def maybe_export(self) -> ExportResult | None:
        """Automatic export after recording; errors are logged, never raised."""
        try:
            if not self.should_export():
                log.debug("auto_export_interval_not_reached")
                return None
            return self.run()
        except (FootprintError, OSError) as e:
            log.error("auto_export_failed", error=str(e))
            return None
