# git.py
# Small, focused wrapper around the Git CLI.
# Every git invocation of the runner goes through _git so that the rest of
# the codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

from ..errors import CollaboratorError

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises:
        CollaboratorError: git is missing or exited non-zero.
    """
    try:
        out = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise CollaboratorError("git", "git command not found. Please install Git.")

    if out.returncode != 0:
        raise CollaboratorError(
            "git",
            f"git {' '.join(args)} failed",
            exit_code=out.returncode,
            stderr=out.stderr.strip(),
        )
    return out.stdout.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the repository containing cwd."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def rev_parse(ref: str, cwd: Optional[str | Path] = None) -> str:
    """Resolve ref to a commit SHA."""
    return _git(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=cwd)


def _repo_dir_name(repo_url: str) -> str:
    # last URL component, sanitized
    name = repo_url.rstrip("/").split("/")[-1].replace(".git", "") or "repo"
    return re.sub(r"[^A-Za-z0-9._-]", "_", name)


class GitCheckout:
    """
    VCS collaborator.

    With a repository URL, clones (or fetches) it under work_dir and checks
    out the ref there. Without one, the local repository at workspace is
    used read-only: the ref is only verified to exist.
    """

    def __init__(self, workspace: str | Path = ".", *, repository: str | None = None, work_dir: str | Path = ".pipewright/work"):
        self.workspace = Path(workspace).resolve()
        self.repository = repository
        self.work_dir = Path(work_dir).resolve()

    def checkout(self, ref: str) -> Path:
        if self.repository:
            return self._clone_or_update(self.repository, ref)

        root = repo_root(self.workspace)
        sha = rev_parse(ref, cwd=root)
        logger.debug("using local checkout %s at %s (%s)", root, ref, sha[:12])
        return root

    def _clone_or_update(self, repo_url: str, ref: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        repo_path = self.work_dir / _repo_dir_name(repo_url)

        if repo_path.exists():
            _git(["fetch", "origin"], cwd=repo_path)
        else:
            _git(["clone", repo_url, str(repo_path)])

        _git(["checkout", "--force", ref], cwd=repo_path)
        logger.info("checked out %s at %s (%s)", repo_url, ref, head_sha(repo_path)[:12])
        return repo_path
