from __future__ import annotations

import datetime as dt
import shutil
import subprocess
from pathlib import Path
from typing import Optional

import structlog

from .errors import InvalidRepoError
from .models import CommitMetadata, format_rfc3339, parse_rfc3339

log = structlog.get_logger("footprint.git")

_FIELD_SEP = "\x1f"
_SHOW_FORMAT = _FIELD_SEP.join(["%aI", "%an", "%ae", "%cn", "%ce", "%cI", "%P", "%s"])


def run_git(args: list[str], cwd: Path, timeout_s: int = 300) -> tuple[int, str, str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return 127, "", str(e)
    return proc.returncode, proc.stdout, proc.stderr


def git_available() -> bool:
    return shutil.which("git") is not None


def repo_toplevel(candidate: Path) -> Optional[Path]:
    if not candidate.exists():
        return None
    code, out, _ = run_git(["rev-parse", "--show-toplevel"], cwd=candidate)
    if code != 0 or not out.strip():
        return None
    return Path(out.strip()).resolve()


def remote_urls(repo: Path) -> dict[str, str]:
    code, out, _ = run_git(["config", "--get-regexp", r"^remote\..*\.url$"], cwd=repo)
    if code != 0:
        return {}
    remotes: dict[str, str] = {}
    for line in out.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            key, url = line.split(None, 1)
        except ValueError:
            continue
        if not key.startswith("remote.") or not key.endswith(".url"):
            continue
        name = key[len("remote.") : -len(".url")]
        url = url.strip()
        if name and url:
            remotes[name] = url
    return remotes


def resolve_remote_url(repo: Path, preferred: str = "") -> str:
    """
    Pick the remote that identifies `repo`: the explicitly requested one,
    else `origin`, else the only remote. Several remotes without `origin`
    are ambiguous. No remotes at all yields "" (identity falls back to the path).
    """
    remotes = remote_urls(repo)
    if preferred:
        if preferred not in remotes:
            raise InvalidRepoError(f"remote not found: {preferred}")
        return remotes[preferred]
    if "origin" in remotes:
        return remotes["origin"]
    if not remotes:
        return ""
    if len(remotes) == 1:
        return next(iter(remotes.values()))
    names = ", ".join(sorted(remotes))
    raise InvalidRepoError(f"ambiguous remote: choose one of {names} with --remote")


def head_commit(repo: Path) -> str:
    code, out, _ = run_git(["rev-parse", "HEAD"], cwd=repo)
    if code != 0:
        return ""
    return out.strip()


def current_branch(repo: Path) -> str:
    code, out, _ = run_git(["symbolic-ref", "--short", "-q", "HEAD"], cwd=repo)
    if code == 0 and out.strip():
        return out.strip()
    return "HEAD"


def _normalize_ts(value: str) -> str:
    if not value.strip():
        return ""
    try:
        return format_rfc3339(parse_rfc3339(value))
    except ValueError:
        return value.strip()


def _numstat_totals(repo: Path, commit: str) -> tuple[int, int, int]:
    code, out, _ = run_git(["show", "--numstat", "--format=", "--no-renames", commit], cwd=repo)
    if code != 0:
        return 0, 0, 0
    files = insertions = deletions = 0
    for line in out.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        files += 1
        # binary files report "-" for both counts
        if parts[0].isdigit():
            insertions += int(parts[0])
        if parts[1].isdigit():
            deletions += int(parts[1])
    return files, insertions, deletions


def commit_metadata(repo_path: str, commit: str) -> CommitMetadata:
    """Best-effort lookup; any failure yields an empty CommitMetadata."""
    repo = Path(repo_path) if repo_path else None
    if repo is None or not commit or not repo.is_dir():
        return CommitMetadata()
    code, out, err = run_git(["show", "-s", f"--format={_SHOW_FORMAT}", commit], cwd=repo)
    if code != 0:
        log.debug("commit_metadata_unavailable", repo=repo_path, commit=commit, error=err.strip())
        return CommitMetadata()
    parts = out.rstrip("\n").split(_FIELD_SEP)
    if len(parts) != 8:
        log.debug("commit_metadata_unparsable", repo=repo_path, commit=commit)
        return CommitMetadata()
    files, insertions, deletions = _numstat_totals(repo, commit)
    return CommitMetadata(
        authored_at=_normalize_ts(parts[0]),
        author_name=parts[1],
        author_email=parts[2],
        committer_name=parts[3],
        committer_email=parts[4],
        committed_at=_normalize_ts(parts[5]),
        parents=tuple(p for p in parts[6].split() if p),
        subject=parts[7],
        files_changed=files,
        insertions=insertions,
        deletions=deletions,
    )


def commit_log(repo: Path, since: Optional[dt.datetime] = None, limit: int = 0) -> list[tuple[str, dt.datetime]]:
    args = ["log", "--format=%H\t%aI"]
    if since is not None:
        args.append(f"--since={format_rfc3339(since)}")
    if limit > 0:
        args.append(f"-n{limit}")
    code, out, _ = run_git(args, cwd=repo)
    if code != 0:
        return []
    commits: list[tuple[str, dt.datetime]] = []
    for line in out.splitlines():
        parts = line.strip().split("\t", 1)
        if len(parts) != 2:
            continue
        try:
            commits.append((parts[0], parse_rfc3339(parts[1])))
        except ValueError:
            continue
    return commits
