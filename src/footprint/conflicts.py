"""
Automatic resolution of merge conflicts in the exported CSV files.

The exported rows are keyed by (repo, commit) and a commit never changes once
observed, so merging two divergent copies of a file is a union of their key
spaces with the incoming side winning on collisions. Anything that is not a
CSV file is left to a human.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog

from .csvexport import Key, parse_records, write_sorted
from .errors import MergeConflictError
from .git import run_git

log = structlog.get_logger("footprint.sync")


def conflicted_files(repo: Path) -> list[str]:
    code, out, err = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=repo)
    if code != 0:
        raise MergeConflictError(f"could not list conflicted files: {err.strip()}")
    return [line.strip() for line in out.splitlines() if line.strip()]


def _stage_blob(repo: Path, stage: int, relpath: str) -> Optional[str]:
    code, out, err = run_git(["show", f":{stage}:{relpath}"], cwd=repo)
    if code != 0:
        log.warning("conflict_stage_unavailable", file=relpath, stage=stage, error=err.strip())
        return None
    return out


def merge_csv_versions(ours: Optional[str], theirs: Optional[str]) -> dict[Key, list[str]]:
    records: dict[Key, list[str]] = {}
    if ours:
        parse_records(ours, records, origin="ours")
    if theirs:
        parse_records(theirs, records, origin="theirs")
    return records


def resolve_csv_file(repo: Path, relpath: str) -> None:
    ours = _stage_blob(repo, 2, relpath)
    theirs = _stage_blob(repo, 3, relpath)
    if ours is None and theirs is None:
        raise MergeConflictError(f"could not read either side of {relpath}")
    write_sorted(repo / relpath, merge_csv_versions(ours, theirs))


def resolve_conflicts(repo: Path) -> list[str]:
    files = conflicted_files(repo)
    for relpath in files:
        if not relpath.endswith(".csv"):
            raise MergeConflictError(f"non-CSV conflict in {relpath}, manual resolution required")
    for relpath in files:
        resolve_csv_file(repo, relpath)
        code, _, err = run_git(["add", "--", relpath], cwd=repo)
        if code != 0:
            raise MergeConflictError(f"could not stage {relpath}: {err.strip()}")
    return files


def abort_merge(repo: Path) -> None:
    if (repo / ".git" / "MERGE_HEAD").exists():
        code, _, err = run_git(["merge", "--abort"], cwd=repo)
        if code != 0:
            log.error("merge_abort_failed", repo=str(repo), error=err.strip())


def merge_unrelated(repo: Path, ref: str) -> None:
    """Merge `ref` into HEAD, resolving CSV conflicts; all-or-nothing."""
    code, out, err = run_git(["merge", ref, "--allow-unrelated-histories", "--no-edit"], cwd=repo)
    if code == 0:
        log.info("merged_remote_history", ref=ref)
        return

    output = (out + err).strip()
    if "CONFLICT" not in output:
        abort_merge(repo)
        raise MergeConflictError(f"merge of {ref} failed: {output}")

    log.info("resolving_csv_conflicts", ref=ref)
    try:
        resolved = resolve_conflicts(repo)
        code, out, err = run_git(["commit", "--no-edit"], cwd=repo)
        if code != 0:
            raise MergeConflictError(f"could not commit merge: {(out + err).strip()}")
    except Exception:
        abort_merge(repo)
        raise
    log.info("consolidated_histories", ref=ref, files=resolved)
