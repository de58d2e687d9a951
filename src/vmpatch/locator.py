"""Find the companion repository root and the extracted upstream source tree.

Both searches are plain ordered-list iterations with an early-exit
predicate: a candidate is accepted when every marker path exists under it.
Earlier candidates always win.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence

from .errors import RepositoryNotFound, SourceTreeNotFound
from .tools.telemetry import emit_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 15
DEFAULT_CI_ENV: tuple[str, ...] = (
    "GITHUB_WORKSPACE",
    "CI_PROJECT_DIR",
    "BUILDKITE_BUILD_CHECKOUT_PATH",
    "WORKSPACE",
)


def has_markers(candidate: Path, marker_files: Iterable[str]) -> bool:
    """Return ``True`` when every marker exists under ``candidate``."""
    markers = list(marker_files)
    if not markers:
        return False
    return candidate.is_dir() and all((candidate / marker).exists() for marker in markers)


def _walk_upward(start: Path, max_depth: int) -> List[Path]:
    """Return ``start`` followed by at most ``max_depth`` parents."""
    anchor = start if start.is_dir() else start.parent
    chain = [anchor, *anchor.parents]
    return chain[: max_depth + 1]


def candidate_paths(
    *,
    override: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    root_env: str = "VMPATCH_REPO_ROOT",
    ci_env: Sequence[str] = DEFAULT_CI_ENV,
    script_path: Path | str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    fallbacks: Sequence[str | os.PathLike[str]] = (),
) -> List[Path]:
    """Build the prioritised, de-duplicated candidate list for :func:`locate`.

    Order: explicit override (argument, then ``root_env``), CI workspace
    variables, the invoking script's directory and its parents, then
    well-known fallbacks. A path listed twice keeps its first position.
    """

    env_mapping = os.environ if env is None else env
    ordered: list[Path] = []

    def _add(value: str | os.PathLike[str] | None) -> None:
        if value is None:
            return
        text = os.fspath(value).strip()
        if not text:
            return
        path = Path(text).expanduser()
        try:
            path = path.resolve()
        except OSError:
            path = path.absolute()
        if path not in ordered:
            ordered.append(path)

    _add(override)
    _add(env_mapping.get(root_env))
    for key in ci_env:
        _add(env_mapping.get(key))
    if script_path is not None:
        for parent in _walk_upward(Path(script_path).expanduser().resolve(), max_depth):
            _add(parent)
    for fallback in fallbacks:
        _add(fallback)
    return ordered


def locate(marker_files: Iterable[str], hints: Sequence[Path | str]) -> Path:
    """Return the first hint under which every marker file exists.

    Raises :class:`RepositoryNotFound` when no hint qualifies; nothing is
    patched without the companion repository.
    """

    markers = [marker for marker in marker_files if marker]
    if not markers:
        raise RepositoryNotFound("At least one marker file is required to identify the repository.")

    checked: list[str] = []
    for hint in hints:
        candidate = Path(hint)
        checked.append(candidate.as_posix())
        if has_markers(candidate, markers):
            LOGGER.info("Repository root located at %s", candidate)
            emit_event("repository_located", root=candidate, checked=len(checked))
            return candidate
        LOGGER.debug("Rejected repository candidate %s", candidate)

    emit_event("repository_not_found", markers=markers, checked=checked)
    raise RepositoryNotFound(
        f"No candidate directory contains all of: {', '.join(markers)}",
        details={"markers": markers, "checked": checked},
    )


def locate_source_tree(
    build_path: Path | str,
    project: str,
    markers: Sequence[str] = ("configure", "meson.build"),
) -> Path:
    """Find the extracted upstream tree within ``build_path``.

    Archives are sometimes unpacked straight into ``build_path`` and sometimes
    into a versioned ``<project>-<version>`` subdirectory.
    """

    root = Path(build_path).resolve()
    if has_markers(root, markers):
        return root
    candidates = sorted(
        (path for path in root.glob(f"{project}-*") if path.is_dir()),
        key=lambda item: item.name,
    )
    for candidate in candidates:
        if has_markers(candidate, markers):
            LOGGER.info("Source tree located at %s", candidate)
            return candidate
    raise SourceTreeNotFound(
        f"{project} source directory not found in {root}",
        details={"build_path": root.as_posix(), "markers": list(markers)},
    )


class RepositoryLocator:
    """Bundle a marker set with the candidate-list settings from configuration."""

    def __init__(
        self,
        marker_files: Sequence[str],
        *,
        root_env: str = "VMPATCH_REPO_ROOT",
        ci_env: Sequence[str] = DEFAULT_CI_ENV,
        fallbacks: Sequence[str] = (),
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.marker_files = tuple(marker_files)
        self.root_env = root_env
        self.ci_env = tuple(ci_env)
        self.fallbacks = tuple(fallbacks)
        self.max_depth = max_depth

    def hints(
        self,
        *,
        override: str | os.PathLike[str] | None = None,
        script_path: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> List[Path]:
        return candidate_paths(
            override=override,
            env=env,
            root_env=self.root_env,
            ci_env=self.ci_env,
            script_path=script_path,
            max_depth=self.max_depth,
            fallbacks=self.fallbacks,
        )

    def locate(
        self,
        *,
        override: str | os.PathLike[str] | None = None,
        script_path: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Path:
        return locate(self.marker_files, self.hints(override=override, script_path=script_path, env=env))


__all__ = [
    "DEFAULT_CI_ENV",
    "DEFAULT_MAX_DEPTH",
    "RepositoryLocator",
    "candidate_paths",
    "has_markers",
    "locate",
    "locate_source_tree",
]
