from __future__ import annotations

import argparse
import datetime as dt
import json
import sys
from pathlib import Path

import structlog

from . import config
from .errors import FootprintError
from .export import Exporter
from .logs import setup_logging
from .models import Event, EventSource, EventStatus, ExportResult, format_rfc3339
from .record import Tracker, backfill, record_event, repo_identity, untrack_repo
from .store import EventFilter, EventStore
from .sync import ExportRepo

log = structlog.get_logger("footprint.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="footprint", description="Record git activity and sync it as CSV through a git repository.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("record", help="Record HEAD of the current repository (called from git hooks).")
    p.add_argument("source", help="Hook that fired: post-commit, post-rewrite, post-checkout, post-merge, pre-push, manual.")

    p = sub.add_parser("track", help="Start tracking a repository.")
    p.add_argument("path", nargs="?", type=Path, default=Path("."))
    p.add_argument("--remote", default="", help="Remote whose URL identifies the repository.")

    p = sub.add_parser("untrack", help="Stop tracking a repository; its pending events are orphaned.")
    p.add_argument("path", nargs="?", type=Path, default=Path("."))
    p.add_argument("--id", dest="repo_id", default="", help="Untrack by repo id instead of path.")

    sub.add_parser("repos", help="List tracked repositories.")

    p = sub.add_parser("export", help="Export pending events to the export repository.")
    p.add_argument("--now", action="store_true", help="Ignore the export interval.")
    p.add_argument("--dry-run", action="store_true", help="Show what would be exported.")
    p.add_argument("--json", action="store_true", help="Machine-readable output.")

    p = sub.add_parser("activity", help="List recorded events.")
    p.add_argument("--status", default="")
    p.add_argument("--source", default="")
    p.add_argument("--repo", default="")
    p.add_argument("--limit", type=int, default=0)
    p.add_argument("--oneline", action="store_true")

    p = sub.add_parser("backfill", help="Record historical commits of a tracked repository.")
    p.add_argument("path", nargs="?", type=Path, default=Path("."))
    p.add_argument("--since", default="", help="Only commits after this date (YYYY-MM-DD).")
    p.add_argument("--limit", type=int, default=0)

    p = sub.add_parser("remote", help="Set the remote URL of the export repository.")
    p.add_argument("url")
    return parser


def _open_store() -> EventStore:
    return EventStore.open(config.db_path())


def _exporter(store: EventStore, cfg_path: Path) -> Exporter:
    repo = ExportRepo(Path(str(config.get(cfg_path, "export_path"))).expanduser())
    return Exporter(store, repo, config.ConfigStateStore(cfg_path))


def format_event(e: Event, oneline: bool) -> str:
    if oneline:
        return f"{e.commit[:7]} {e.branch} ({e.repo_id}) {e.source.label} {e.status.name}"
    return "\n".join(
        [
            f"commit {e.commit}",
            f"repo:   {e.repo_id}",
            f"branch: {e.branch}",
            f"date:   {format_rfc3339(e.timestamp)}",
            f"source: {e.source.label}",
            f"status: {e.status.name}",
            "",
        ]
    )


def _export_json(result: ExportResult, export_path: str) -> str:
    if result.dry_run:
        data: dict = {
            "events_to_export": [
                {
                    "commit": e.commit,
                    "branch": e.branch,
                    "repo_id": e.repo_id,
                    "repo_path": e.repo_path,
                    "timestamp": format_rfc3339(e.timestamp),
                    "source": e.source.label,
                }
                for e in result.pending
            ],
            "count": len(result.pending),
        }
    elif result.skipped_reason == "interval":
        data = {"error": "export_interval_not_reached", "hint": "Use --now to export anyway"}
    else:
        data = {"events_exported": result.exported, "export_path": export_path, "pushed": result.pushed}
    return json.dumps(data, indent=2)


def _cmd_record(args: argparse.Namespace, cfg_path: Path) -> int:
    # hooks must never fail the git command that triggered them
    try:
        source = EventSource.parse(args.source)
        with _open_store() as store:
            event = record_event(store, Tracker(cfg_path), source, Path.cwd())
            if event is not None:
                _exporter(store, cfg_path).maybe_export()
    except Exception as e:
        log.warning("record_failed", source=args.source, error=str(e), exc_info=not isinstance(e, (FootprintError, ValueError)))
    return 0


def _cmd_track(args: argparse.Namespace, cfg_path: Path) -> int:
    _, repo_id = repo_identity(args.path, args.remote)
    if Tracker(cfg_path).track(repo_id):
        print(f"tracking {repo_id}")
    else:
        print(f"already tracking {repo_id}")
    return 0


def _cmd_untrack(args: argparse.Namespace, cfg_path: Path) -> int:
    repo_id = args.repo_id or repo_identity(args.path)[1]
    with _open_store() as store:
        removed = untrack_repo(store, Tracker(cfg_path), repo_id)
    print(f"untracked {repo_id}" if removed else f"not tracking {repo_id}")
    return 0


def _cmd_repos(args: argparse.Namespace, cfg_path: Path) -> int:
    for repo_id in Tracker(cfg_path).tracked():
        print(repo_id)
    return 0


def _cmd_export(args: argparse.Namespace, cfg_path: Path) -> int:
    with _open_store() as store:
        exporter = _exporter(store, cfg_path)
        result = exporter.run(force=args.now, dry_run=args.dry_run)
    export_path = str(exporter.repo.path)
    if args.json:
        print(_export_json(result, export_path))
        return 0
    if result.skipped_reason == "no_pending":
        print("No pending events to export")
    elif result.dry_run:
        print(f"Would export {len(result.pending)} events:")
        for e in result.pending:
            print(f"  {e.commit[:7]} {e.branch} ({e.repo_id})")
    elif result.skipped_reason == "interval":
        print("Export interval not reached. Use --now to export anyway.")
    elif result.exported == 0:
        print("No events were exported")
    else:
        print(f"Exported {result.exported} events to {export_path}")
        if result.pushed:
            print("Pushed to remote")
    return 0


def _cmd_activity(args: argparse.Namespace, cfg_path: Path) -> int:
    flt = EventFilter(repo_id=args.repo, limit=max(0, args.limit))
    if args.status:
        flt.status = EventStatus.parse(args.status)
    if args.source:
        flt.source = EventSource.parse(args.source)
    with _open_store() as store:
        events = store.list_events(flt)
    for e in events:
        print(format_event(e, args.oneline))
    return 0


def _cmd_backfill(args: argparse.Namespace, cfg_path: Path) -> int:
    root, repo_id = repo_identity(args.path)
    if not Tracker(cfg_path).is_tracked(repo_id):
        print(f"footprint: {repo_id} is not tracked; run `footprint track` first", file=sys.stderr)
        return 1
    since = None
    if args.since:
        since = dt.datetime.strptime(args.since, "%Y-%m-%d").replace(tzinfo=dt.timezone.utc)
    with _open_store() as store:
        count = backfill(store, root, repo_id, since=since, limit=max(0, args.limit))
    print(f"backfilled {count} commits from {repo_id}")
    return 0


def _cmd_remote(args: argparse.Namespace, cfg_path: Path) -> int:
    ExportRepo(Path(str(config.get(cfg_path, "export_path"))).expanduser()).set_remote(args.url)
    config.update(cfg_path, export_remote=args.url)
    print(f"export remote set to {args.url}")
    return 0


_COMMANDS = {
    "record": _cmd_record,
    "track": _cmd_track,
    "untrack": _cmd_untrack,
    "repos": _cmd_repos,
    "export": _cmd_export,
    "activity": _cmd_activity,
    "backfill": _cmd_backfill,
    "remote": _cmd_remote,
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = _build_parser().parse_args(argv)
    cfg_path = config.config_path()
    try:
        log_file = str(config.get(cfg_path, "log_file") or "")
    except FootprintError:
        log_file = ""
    setup_logging("DEBUG" if args.verbose else None, log_file=log_file)
    try:
        return _COMMANDS[args.command](args, cfg_path)
    except (FootprintError, ValueError, OSError) as e:
        print(f"footprint: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
