"""Apply the patch set to a target source tree in a fixed order.

Order, regardless of how the patches were listed:

1. copy structural source subtrees from the companion repository;
2. the single mandatory core patch;
3. optional patches behind a feature gate;
4. compatibility patches discovered in a directory, normalised first;
5. inline single-line fixes in known files.

The pipeline is fail-fast. A mandatory patch that is missing, or any patch
that does not apply, aborts the run and the tree must not be compiled. No
partial-apply recovery is attempted.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Sequence

from .config import CompatSection, InlineFix, PatchSpec, PatchStage, StagingEntry
from .errors import ConfigError, PatchApplicationFailed, PatchMissing
from .tools.normalize import DEFAULT_PROJECTS, PatchNormalizer
from .tools.patch import apply_patch
from .tools.telemetry import emit_event

LOGGER = logging.getLogger(__name__)

_STAGE_RANK = {PatchStage.CORE: 0, PatchStage.GATED: 1, PatchStage.COMPAT: 2}


class PatchState(str, Enum):
    """Per-patch lifecycle."""

    UNAPPLIED = "unapplied"
    NORMALIZED = "normalized"
    APPLIED = "applied"
    VERIFIED = "verified"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass(slots=True)
class PatchOutcome:
    spec: PatchSpec
    location: Path
    state: PatchState = PatchState.UNAPPLIED
    reason: str | None = None
    touched_paths: tuple[Path, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.location.as_posix(),
            "stage": self.spec.stage.value,
            "state": self.state.value,
            "reason": self.reason,
            "touched_paths": [path.as_posix() for path in self.touched_paths],
        }


@dataclass(slots=True)
class StagedCopy:
    source: Path
    destination: Path
    copied: bool


@dataclass(slots=True)
class InlineFixOutcome:
    path: Path
    applied: bool
    reason: str | None = None


@dataclass(slots=True)
class AppliedReport:
    """Everything the applier did to the target tree, in order."""

    target_tree: Path
    staged: List[StagedCopy] = field(default_factory=list)
    patches: List[PatchOutcome] = field(default_factory=list)
    inline_fixes: List[InlineFixOutcome] = field(default_factory=list)

    @property
    def applied(self) -> List[PatchOutcome]:
        return [item for item in self.patches if item.state is PatchState.VERIFIED]

    @property
    def skipped(self) -> List[PatchOutcome]:
        return [item for item in self.patches if item.state is PatchState.SKIPPED]

    def outcome_for(self, path: str | Path) -> PatchOutcome | None:
        wanted = Path(path)
        for item in self.patches:
            if item.location == wanted or Path(item.spec.path) == wanted or item.location.name == wanted.name:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_tree": self.target_tree.as_posix(),
            "staged": [
                {"source": item.source.as_posix(), "destination": item.destination.as_posix(), "copied": item.copied}
                for item in self.staged
            ],
            "patches": [item.to_dict() for item in self.patches],
            "inline_fixes": [
                {"path": item.path.as_posix(), "applied": item.applied, "reason": item.reason}
                for item in self.inline_fixes
            ],
        }


def order_patches(patches: Iterable[PatchSpec]) -> List[PatchSpec]:
    """Return ``patches`` sorted into the fixed stage order (stable within a stage)."""
    return sorted(patches, key=lambda spec: _STAGE_RANK[spec.stage])


def discover_compat_patches(repo_root: Path, compat: CompatSection | None) -> List[PatchSpec]:
    """Scan the compatibility directory for patch files, sorted by name."""
    if compat is None or not compat.directory:
        return []
    directory = Path(compat.directory).expanduser()
    if not directory.is_absolute():
        directory = repo_root / directory
    if not directory.is_dir():
        LOGGER.info("Compatibility patch directory %s not present; nothing to scan", directory)
        return []
    extensions = {ext if ext.startswith(".") else f".{ext}" for ext in compat.extensions}
    found = sorted(
        (path for path in directory.iterdir() if path.is_file() and path.suffix in extensions),
        key=lambda item: item.name,
    )
    return [
        PatchSpec(
            path=str(path),
            stage=PatchStage.COMPAT,
            dialect=compat.dialect,
            strip=compat.strip,
            tool=compat.tool,
            normalize=True,
        )
        for path in found
    ]


class PatchApplier:
    """Stage sources and apply patches against a target tree."""

    def __init__(
        self,
        repo_root: Path | str,
        *,
        staging: Sequence[StagingEntry] = (),
        inline_fixes: Sequence[InlineFix] = (),
        compat: CompatSection | None = None,
        projects: Sequence[str] = DEFAULT_PROJECTS,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.staging = list(staging)
        self.inline_fixes = list(inline_fixes)
        self.compat = compat
        self.projects = tuple(projects)

    # ------------------------------------------------------------------ API
    def apply(
        self,
        target_tree: Path | str,
        patches: Sequence[PatchSpec],
        feature_flags: Iterable[str] = (),
    ) -> AppliedReport:
        target = Path(target_tree).resolve()
        flags = frozenset(feature_flags)
        report = AppliedReport(target_tree=target)

        ordered = order_patches(list(patches) + self._new_compat_specs(patches))
        core = [spec for spec in ordered if spec.stage is PatchStage.CORE]
        if len(core) > 1:
            raise ConfigError(
                "Only one core patch may be configured.",
                details={"core": [spec.path for spec in core]},
            )

        self._stage_sources(target, report)
        for spec in ordered:
            outcome = PatchOutcome(spec=spec, location=spec.resolve(self.repo_root))
            report.patches.append(outcome)
            self._apply_one(target, outcome, flags, report)
        self._apply_inline_fixes(target, report)

        emit_event(
            "patch_set_applied",
            target=target,
            applied=[item.location.name for item in report.applied],
            skipped=[item.location.name for item in report.skipped],
        )
        return report

    # ------------------------------------------------------------- stages
    def _new_compat_specs(self, patches: Sequence[PatchSpec]) -> List[PatchSpec]:
        listed = {spec.resolve(self.repo_root).resolve() for spec in patches}
        return [
            spec
            for spec in discover_compat_patches(self.repo_root, self.compat)
            if spec.resolve(self.repo_root).resolve() not in listed
        ]

    def _stage_sources(self, target: Path, report: AppliedReport) -> None:
        for entry in self.staging:
            source = Path(entry.source).expanduser()
            if not source.is_absolute():
                source = self.repo_root / source
            destination = target / entry.destination
            if not source.is_dir():
                LOGGER.warning("Structural source %s not found; skipping copy", source)
                report.staged.append(StagedCopy(source=source, destination=destination, copied=False))
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, destination, dirs_exist_ok=True)
            LOGGER.info("Copied %s -> %s", source, destination)
            report.staged.append(StagedCopy(source=source, destination=destination, copied=True))

    def _apply_one(
        self,
        target: Path,
        outcome: PatchOutcome,
        flags: frozenset[str],
        report: AppliedReport,
    ) -> None:
        spec = outcome.spec
        location = outcome.location
        mandatory = spec.required or spec.stage is PatchStage.CORE

        if spec.gate is not None and spec.gate not in flags:
            outcome.state = PatchState.SKIPPED
            outcome.reason = f"feature gate '{spec.gate}' not enabled"
            LOGGER.info("Skipping %s: %s", location.name, outcome.reason)
            return

        if not location.is_file():
            if mandatory:
                outcome.state = PatchState.REJECTED
                outcome.reason = "patch file missing"
                raise PatchMissing(
                    f"Mandatory patch not found: {location}",
                    details={"path": location.as_posix(), "report": report.to_dict()},
                )
            outcome.state = PatchState.SKIPPED
            outcome.reason = "patch file missing"
            LOGGER.info("Optional patch %s not found; skipping", location)
            return

        content = location.read_bytes()
        if spec.normalize:
            normalizer = PatchNormalizer(projects=tuple(spec.projects) or self.projects)
            content = normalizer.normalize(content, spec.dialect)
            outcome.state = PatchState.NORMALIZED

        try:
            result = apply_patch(
                content,
                target_root=target,
                tool=spec.tool,
                strip=spec.strip,
                label=location.name,
            )
        except PatchApplicationFailed as error:
            outcome.state = PatchState.REJECTED
            outcome.reason = str(error)
            error.details["report"] = report.to_dict()
            raise
        outcome.state = PatchState.APPLIED
        outcome.touched_paths = result.paths

        missing = [path for path in result.paths if not (target / path).exists()]
        if missing:
            outcome.state = PatchState.REJECTED
            outcome.reason = "patched files missing after apply"
            raise PatchApplicationFailed(
                f"Patch {location.name} reported success but files are missing: "
                + ", ".join(path.as_posix() for path in missing),
                details={"path": location.as_posix(), "report": report.to_dict()},
            )
        outcome.state = PatchState.VERIFIED
        LOGGER.info("Applied %s (%s)", location.name, spec.stage.value)

    def _apply_inline_fixes(self, target: Path, report: AppliedReport) -> None:
        for fix in self.inline_fixes:
            path = target / fix.path
            if not path.is_file():
                report.inline_fixes.append(InlineFixOutcome(path=path, applied=False, reason="file missing"))
                continue
            text = path.read_text(encoding="utf-8", errors="surrogateescape")
            if fix.search not in text:
                LOGGER.info("Inline fix for %s: %r not present", fix.path, fix.search)
                report.inline_fixes.append(InlineFixOutcome(path=path, applied=False, reason="pattern not found"))
                continue
            path.write_text(text.replace(fix.search, fix.replace), encoding="utf-8", errors="surrogateescape")
            LOGGER.info("Inline fix applied to %s", fix.path)
            report.inline_fixes.append(InlineFixOutcome(path=path, applied=True))


__all__ = [
    "AppliedReport",
    "InlineFixOutcome",
    "PatchApplier",
    "PatchOutcome",
    "PatchState",
    "StagedCopy",
    "discover_compat_patches",
    "order_patches",
]
