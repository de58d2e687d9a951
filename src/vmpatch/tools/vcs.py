"""Minimal git helpers.

The helpers below provide just enough structure to query branch tips for the
build identity and to turn a freshly extracted source tree into a repository
that ``git apply`` can resolve paths against.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Sequence


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _run(args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not available") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, message: str = "Initial source import") -> "GitRepository":
        """Initialise a repository at ``root`` and commit its current contents."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        _run(["init"], cwd=path)

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], cwd=path, check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value], cwd=path)

        _ensure_config("user.email", "vmpatch@localhost")
        _ensure_config("user.name", "vmpatch")

        _run(["add", "."], cwd=path)
        _run(["commit", "--allow-empty", "-q", "-m", message], cwd=path)

        return cls(path)

    # -------------------------------------------------------------- refs
    def short_hash(self, ref: str, *, abbrev: int = 7) -> str:
        """Return the abbreviated commit hash ``ref`` points at."""

        result = _run(
            ["rev-parse", "--verify", "--quiet", f"--short={abbrev}", f"{ref}^{{commit}}"],
            cwd=self.root,
            check=False,
        )
        value = result.stdout.strip()
        if result.returncode != 0 or not value:
            raise GitError(f"Unable to resolve {ref} in {self.root}")
        return value


def ensure_repository(root: Path | str) -> tuple[GitRepository, bool]:
    """Return the repository rooted at ``root``, initialising it when absent.

    The boolean reports whether a new repository was created.
    """

    path = Path(root).resolve()
    if (path / ".git").exists():
        return GitRepository(path), False
    return GitRepository.initialise(path), True


__all__ = ["GitError", "GitRepository", "ensure_repository"]
