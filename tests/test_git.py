from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from footprint.errors import InvalidRepoError
from footprint.git import commit_log, commit_metadata, current_branch, head_commit, repo_toplevel, resolve_remote_url


def _run(cmd: list[str], cwd: Path, env: dict[str, str] | None = None) -> str:
    p = subprocess.run(cmd, cwd=str(cwd), env=env, capture_output=True, text=True)
    assert p.returncode == 0, p.stderr
    return p.stdout


def _commit(repo: Path, files: dict[str, bytes], msg: str, date: str) -> str:
    for name, content in files.items():
        (repo / name).write_bytes(content)
    _run(["git", "add", "-A"], cwd=repo)
    env = os.environ.copy()
    env["GIT_AUTHOR_DATE"] = date
    env["GIT_COMMITTER_DATE"] = date
    _run(["git", "commit", "-m", msg], cwd=repo, env=env)
    return _run(["git", "rev-parse", "HEAD"], cwd=repo).strip()


def _init(repo: Path) -> Path:
    repo.mkdir(parents=True, exist_ok=True)
    _run(["git", "init"], cwd=repo)
    return repo


def test_commit_metadata_reads_real_commit(tmp_path: Path) -> None:
    repo = _init(tmp_path / "repo")
    first = _commit(repo, {"a.txt": b"one\ntwo\n"}, "initial", "2024-03-01T12:00:00+02:00")
    second = _commit(repo, {"a.txt": b"one\n", "b.txt": b"x\ny\nz\n", "blob.bin": b"\x00\x01\x02"}, "second change", "2024-03-02T09:30:00+00:00")

    meta = commit_metadata(str(repo), second)
    assert meta.subject == "second change"
    assert meta.author_name == "Test User"
    assert meta.author_email == "test@example.com"
    assert meta.committer_email == "test@example.com"
    assert meta.authored_at == "2024-03-02T09:30:00Z"
    assert meta.committed_at == "2024-03-02T09:30:00Z"
    assert meta.parents == (first,)
    assert meta.files_changed == 3
    assert meta.insertions == 3
    assert meta.deletions == 1

    root = commit_metadata(str(repo), first)
    assert root.parents == ()
    assert root.authored_at == "2024-03-01T10:00:00Z"


def test_commit_metadata_failures_are_empty(tmp_path: Path) -> None:
    repo = _init(tmp_path / "repo")
    _commit(repo, {"a.txt": b"a\n"}, "initial", "2024-03-01T12:00:00+00:00")

    assert commit_metadata(str(repo), "0" * 40).is_empty
    assert commit_metadata(str(tmp_path / "missing"), "0" * 40).is_empty
    assert commit_metadata("", "abc").is_empty


def test_head_branch_and_toplevel(tmp_path: Path) -> None:
    repo = _init(tmp_path / "repo")
    assert head_commit(repo) == ""
    sha = _commit(repo, {"a.txt": b"a\n"}, "initial", "2024-03-01T12:00:00+00:00")
    (repo / "sub").mkdir()

    assert head_commit(repo) == sha
    assert current_branch(repo) == "main"
    assert repo_toplevel(repo / "sub") == repo.resolve()
    assert repo_toplevel(tmp_path) is None

    _run(["git", "checkout", "--detach"], cwd=repo)
    assert current_branch(repo) == "HEAD"


def test_resolve_remote_url(tmp_path: Path) -> None:
    repo = _init(tmp_path / "repo")
    assert resolve_remote_url(repo) == ""

    _run(["git", "remote", "add", "upstream", "https://github.com/org/up.git"], cwd=repo)
    assert resolve_remote_url(repo) == "https://github.com/org/up.git"

    _run(["git", "remote", "add", "fork", "git@github.com:me/up.git"], cwd=repo)
    with pytest.raises(InvalidRepoError):
        resolve_remote_url(repo)
    assert resolve_remote_url(repo, "fork") == "git@github.com:me/up.git"
    with pytest.raises(InvalidRepoError):
        resolve_remote_url(repo, "nope")

    _run(["git", "remote", "add", "origin", "https://github.com/org/main.git"], cwd=repo)
    assert resolve_remote_url(repo) == "https://github.com/org/main.git"


def test_commit_log_newest_first_with_limit(tmp_path: Path) -> None:
    repo = _init(tmp_path / "repo")
    c1 = _commit(repo, {"a.txt": b"1\n"}, "one", "2024-01-01T00:00:00+00:00")
    c2 = _commit(repo, {"a.txt": b"2\n"}, "two", "2024-02-01T00:00:00+00:00")
    c3 = _commit(repo, {"a.txt": b"3\n"}, "three", "2024-03-01T00:00:00+00:00")

    assert [sha for sha, _ in commit_log(repo)] == [c3, c2, c1]
    assert [sha for sha, _ in commit_log(repo, limit=2)] == [c3, c2]
    assert commit_log(repo)[0][1].month == 3
    assert commit_log(tmp_path / "missing") == []
