from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog

from .conflicts import abort_merge, merge_unrelated
from .errors import DirtyExportRepoError, ExportError, TransportError
from .git import current_branch, run_git
from .lock import FileLock
from .models import parse_rfc3339
from .retry import RetryPolicy

log = structlog.get_logger("footprint.sync")

REMOTE = "origin"

_IN_PROGRESS = [
    ("MERGE_HEAD", "merge", "git merge --abort (or complete the merge)"),
    ("rebase-merge", "rebase", "git rebase --abort"),
    ("rebase-apply", "rebase", "git rebase --abort"),
    ("CHERRY_PICK_HEAD", "cherry-pick", "git cherry-pick --abort"),
]


def commit_message(files: list[str]) -> str:
    return f"Export {len(files)} files"


class ExportRepo:
    """The git working tree holding the exported CSV files."""

    def __init__(self, path: Path, retry: Optional[RetryPolicy] = None) -> None:
        self.path = path
        self.retry = retry or RetryPolicy()

    @property
    def git_dir(self) -> Path:
        return self.path / ".git"

    def lock(self, timeout: float = 30.0) -> FileLock:
        return FileLock(self.git_dir / "footprint-export.lock", timeout=timeout)

    def _git(self, args: list[str], *, error: type[Exception] = ExportError) -> str:
        code, out, err = run_git(args, cwd=self.path)
        if code != 0:
            detail = (err or out).strip()
            raise error(f"git {args[0]} failed: {detail}" if detail else f"git {args[0]} failed")
        return out

    def ensure(self) -> None:
        try:
            self.path.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise ExportError(f"could not create export repo {self.path}: {e}") from e
        if not self.git_dir.exists():
            self._git(["init"])
            log.info("initialized_export_repo", path=str(self.path))

    def has_remote(self) -> bool:
        if not self.git_dir.exists():
            return False
        code, _, _ = run_git(["remote", "get-url", REMOTE], cwd=self.path)
        return code == 0

    def set_remote(self, url: str) -> None:
        self.ensure()
        if self.has_remote():
            self._git(["remote", "set-url", REMOTE, url])
        else:
            self._git(["remote", "add", REMOTE, url])

    def check_clean_state(self) -> None:
        for marker, operation, hint in _IN_PROGRESS:
            if (self.git_dir / marker).exists():
                raise DirtyExportRepoError(str(self.path), operation, hint)

    def remote_branches(self) -> list[str]:
        code, out, _ = run_git(["branch", "-r", "--format=%(refname)"], cwd=self.path)
        if code != 0:
            return []
        prefix = f"refs/remotes/{REMOTE}/"
        names = []
        for line in out.splitlines():
            ref = line.strip()
            if ref.startswith(prefix) and ref != prefix + "HEAD":
                names.append(ref[len(prefix) :])
        return sorted(names)

    def upstream_branch(self) -> str:
        local = current_branch(self.path)
        branches = self.remote_branches()
        if local != "HEAD" and (not branches or local in branches):
            return local
        code, out, _ = run_git(["symbolic-ref", "--short", "-q", f"refs/remotes/{REMOTE}/HEAD"], cwd=self.path)
        default = out.strip().removeprefix(f"{REMOTE}/") if code == 0 else ""
        if default in branches:
            return default
        if branches:
            return branches[0]
        return "main"

    def fetch(self) -> None:
        self.retry.run(lambda: self._git(["fetch", REMOTE], error=TransportError), operation="git fetch")

    def _abort_rebase(self) -> bool:
        if not ((self.git_dir / "rebase-merge").exists() or (self.git_dir / "rebase-apply").exists()):
            return False
        code, _, err = run_git(["rebase", "--abort"], cwd=self.path)
        if code != 0:
            log.error("rebase_abort_failed", repo=str(self.path), error=err.strip())
        return True

    def pull(self) -> None:
        """
        Bring in the remote before writing.

        Empty remote: nothing to do. Otherwise rebase onto the remote branch;
        unrelated or conflicting histories fall back to a merge with
        automatic CSV resolution. Other failures raise TransportError.
        """
        self.fetch()
        if not self.remote_branches():
            log.debug("remote_empty_skipping_pull", repo=str(self.path))
            return
        branch = self.upstream_branch()
        code, out, err = run_git(["pull", "--rebase", REMOTE, branch], cwd=self.path)
        if code == 0:
            return
        output = (out + err).strip()
        stopped = self._abort_rebase()
        abort_merge(self.path)
        if stopped or "unrelated histories" in output or "CONFLICT" in output:
            log.info("pull_rebase_diverged_merging", branch=branch)
            merge_unrelated(self.path, f"{REMOTE}/{branch}")
            return
        raise TransportError(f"git pull --rebase failed: {output}")

    def commit(self, files: list[str], message: str) -> bool:
        if not files:
            return False
        self._git(["add", "-A", "--", *files])
        code, _, _ = run_git(["diff", "--cached", "--quiet"], cwd=self.path)
        if code == 0:
            return False
        self._git(["commit", "-m", message])
        return True

    def push(self) -> None:
        branch = self.upstream_branch()
        self.retry.run(
            lambda: self._git(["push", "-u", REMOTE, f"HEAD:refs/heads/{branch}"], error=TransportError),
            operation="git push",
        )

    def last_commit_year(self, relpath: str) -> Optional[int]:
        code, out, _ = run_git(["log", "-1", "--format=%cI", "--", relpath], cwd=self.path)
        if code != 0 or not out.strip():
            return None
        try:
            return parse_rfc3339(out.strip()).year
        except ValueError:
            return None
