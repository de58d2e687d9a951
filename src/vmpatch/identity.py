"""Build identity token shared by the build and post-install phases.

The external signer binds the host binaries and the guest drivers using this
token, so the post-install phase must reproduce exactly what the build phase
produced. The persisted identity file is the single source of truth for the
second phase; the git-derived fallbacks only run when it is missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Tuple

from .errors import IdentityUnresolvable
from .tools.telemetry import emit_event
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

UNKNOWN_TOKEN = "unknown"


class IdentitySource(str, Enum):
    """Where a build identity token came from."""

    EXPLICIT_OVERRIDE = "explicit-override"
    PERSISTED = "persisted-from-prior-phase"
    REMOTE_BRANCH_TIP = "remote-branch-tip"
    LOCAL_BRANCH_TIP = "local-branch-tip"
    HEAD_COMMIT = "head-commit"
    UNKNOWN_FALLBACK = "unknown-fallback"


@dataclass(slots=True, frozen=True)
class BuildIdentity:
    token: str
    source: IdentitySource

    @property
    def is_unknown(self) -> bool:
        return self.source is IdentitySource.UNKNOWN_FALLBACK


@dataclass(slots=True, frozen=True)
class IdentitySettings:
    """Which refs the git-derived fallbacks consult."""

    remote: str = "origin"
    branch: str = "master"
    abbrev: int = 7


def _clean_override(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _short_hash(repo_root: Path | None, ref: str, abbrev: int) -> str:
    if repo_root is None:
        raise IdentityUnresolvable("No repository root to query.")
    try:
        repo = GitRepository.discover(repo_root)
        return repo.short_hash(ref, abbrev=abbrev)
    except GitError as error:
        raise IdentityUnresolvable(str(error), details={"ref": ref}) from error


def _git_chain(
    repo_root: Path | None,
    settings: IdentitySettings,
) -> List[Tuple[IdentitySource, Callable[[], str]]]:
    return [
        (
            IdentitySource.REMOTE_BRANCH_TIP,
            lambda: _short_hash(repo_root, f"refs/remotes/{settings.remote}/{settings.branch}", settings.abbrev),
        ),
        (
            IdentitySource.LOCAL_BRANCH_TIP,
            lambda: _short_hash(repo_root, f"refs/heads/{settings.branch}", settings.abbrev),
        ),
        (
            IdentitySource.HEAD_COMMIT,
            lambda: _short_hash(repo_root, "HEAD", settings.abbrev),
        ),
    ]


def _derive(repo_root: Path | None, settings: IdentitySettings) -> BuildIdentity:
    for source, step in _git_chain(repo_root, settings):
        try:
            token = step()
        except IdentityUnresolvable as error:
            LOGGER.debug("Identity source %s unavailable: %s", source.value, error)
            continue
        return BuildIdentity(token=token, source=source)
    LOGGER.warning("Unable to derive a build identity from %s; using %r", repo_root, UNKNOWN_TOKEN)
    return BuildIdentity(token=UNKNOWN_TOKEN, source=IdentitySource.UNKNOWN_FALLBACK)


def read_persisted(location: Path | str) -> str | None:
    """Return the token stored at ``location`` or ``None`` if absent/empty."""
    path = Path(location)
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as error:
        LOGGER.warning("Unable to read persisted identity %s: %s", path, error)
        return None
    return token or None


def persist(identity: BuildIdentity, location: Path | str) -> Path:
    """Write ``identity.token`` to ``location`` as a single line."""
    path = Path(location)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{identity.token}\n", encoding="utf-8")
    emit_event("identity_persisted", token=identity.token, source=identity.source, location=path)
    return path


def resolve(
    explicit_override: str | None,
    repo_root: Path | str | None,
    settings: IdentitySettings | None = None,
) -> BuildIdentity:
    """Build-phase resolution: override, then git-derived tips, then ``unknown``."""
    config = settings or IdentitySettings()
    override = _clean_override(explicit_override)
    if override is not None:
        identity = BuildIdentity(token=override, source=IdentitySource.EXPLICIT_OVERRIDE)
    else:
        identity = _derive(Path(repo_root) if repo_root is not None else None, config)
    emit_event("identity_resolved", phase="build", token=identity.token, source=identity.source)
    return identity


def recover(
    explicit_override: str | None,
    persisted_location: Path | str | None,
    repo_root: Path | str | None,
    settings: IdentitySettings | None = None,
) -> BuildIdentity:
    """Post-install resolution; the persisted token wins over recomputation."""
    config = settings or IdentitySettings()
    override = _clean_override(explicit_override)
    if override is not None:
        identity = BuildIdentity(token=override, source=IdentitySource.EXPLICIT_OVERRIDE)
    else:
        stored = read_persisted(persisted_location) if persisted_location is not None else None
        if stored is not None:
            identity = BuildIdentity(token=stored, source=IdentitySource.PERSISTED)
        else:
            LOGGER.info("No persisted identity at %s; recomputing", persisted_location)
            identity = _derive(Path(repo_root) if repo_root is not None else None, config)
    emit_event("identity_resolved", phase="post-install", token=identity.token, source=identity.source)
    return identity


__all__ = [
    "UNKNOWN_TOKEN",
    "BuildIdentity",
    "IdentitySettings",
    "IdentitySource",
    "persist",
    "read_persisted",
    "recover",
    "resolve",
]
