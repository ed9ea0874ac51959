from __future__ import annotations

import hashlib
import os
import re
from urllib.parse import urlparse

from .errors import InvalidRepoError

LOCAL_PREFIX = "local:"


def _has_traversal(s: str) -> bool:
    return ".." in s or "\x00" in s


def canonicalize_remote(remote: str) -> str:
    r = (remote or "").strip()
    if not r:
        return ""

    if "://" not in r and ":" in r and "@" in r.split(":", 1)[0]:
        left, path = r.split(":", 1)
        host = left.split("@", 1)[1]
        canon = f"{host}/{path.lstrip('/')}"
    else:
        parsed = urlparse(r)
        if parsed.scheme and parsed.netloc:
            host = parsed.netloc
            if "@" in host:
                host = host.split("@", 1)[1]
            canon = f"{host}/{parsed.path.lstrip('/')}"
        else:
            canon = r

    canon = canon.rstrip("/")
    if canon.endswith(".git"):
        canon = canon[:-4]
    return canon.lower()


def derive_repo_id(remote_url: str, repo_root: str) -> str:
    """
    Stable identifier for a repository.

    Remote URLs (scp-like, https, http, ssh, git) become lower-cased
    `host/owner/name`; `file://` remotes and repositories without a remote
    become `local:<absolute path>`.
    """
    remote_url = (remote_url or "").strip()
    repo_root = (repo_root or "").strip()

    if remote_url:
        if remote_url.startswith("file://"):
            path = remote_url[len("file://") :]
            return LOCAL_PREFIX + (path.rstrip("/") or "/")
        parsed = urlparse(remote_url)
        is_scp = "://" not in remote_url and "@" in remote_url.split(":", 1)[0] and ":" in remote_url
        if not is_scp and parsed.scheme not in ("https", "http", "ssh", "git"):
            raise InvalidRepoError(f"unsupported remote url format: {remote_url}")
        canon = canonicalize_remote(remote_url)
        if not canon or "/" not in canon:
            raise InvalidRepoError(f"invalid remote url: {remote_url}")
        if _has_traversal(canon):
            raise InvalidRepoError("invalid remote url: contains path traversal sequence")
        return canon

    if repo_root:
        return LOCAL_PREFIX + (os.path.abspath(repo_root).rstrip("/") or "/")

    raise InvalidRepoError("cannot derive repo id")


def filesystem_safe(repo_id: str) -> str:
    s = re.sub(r"[/:@]", "_", repo_id)
    s = re.sub(r"[^a-zA-Z0-9_.-]", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    if len(s) > 100:
        digest = hashlib.sha256(repo_id.encode("utf-8")).hexdigest()[:16]
        s = s[:50] + "_" + digest
    return s
