"""Apply normalised diffs to a source tree with a dry-run guard."""

from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Tuple

from ..errors import PatchApplicationFailed
from .process import run_tool
from .telemetry import emit_event


class PatchTool(str, Enum):
    """External programs able to apply a diff."""

    GIT = "git"
    PATCH = "patch"


_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_NO_SUCH_FILE_RE = re.compile(r"error: (?P<path>.+?): No such file or directory")
_HUNK_FAILED_RE = re.compile(r"Hunk #(?P<hunk>\d+) FAILED at (?P<line>\d+)")
_PATCHING_FILE_RE = re.compile(r"^(?:checking|patching) file '?(?P<path>.+?)'?$")
_CANT_FIND_RE = re.compile(r"can't find file to patch")


@dataclass(slots=True)
class PatchTelemetry:
    """Structured telemetry for a single patch application."""

    label: str = ""
    tool: str = PatchTool.GIT.value
    strip: int = 1
    patch_bytes: int = 0
    check_returncode: int | None = None
    check_stdout: str = ""
    check_stderr: str = ""
    failing_hunks: Tuple[Mapping[str, Any], ...] = ()
    touched_paths: Tuple[Path, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "tool": self.tool,
            "strip": self.strip,
            "patch_bytes": self.patch_bytes,
            "check": {
                "returncode": self.check_returncode,
                "stdout": self.check_stdout,
                "stderr": self.check_stderr,
            },
            "failing_hunks": [dict(item) for item in self.failing_hunks],
            "touched_paths": [path.as_posix() for path in self.touched_paths],
        }


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a patch to the target tree."""

    command: Tuple[str, ...]
    paths: Tuple[Path, ...]
    stdout: str
    stderr: str
    telemetry: PatchTelemetry = field(default_factory=PatchTelemetry)


def _parse_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply / patch(1) diagnostics for failing hunk metadata."""
    if not output:
        return ()
    entries: list[dict[str, Any]] = []
    current_file: str | None = None
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _PATCHING_FILE_RE.match(line)
        if match:
            current_file = match.group("path")
            continue
        match = _HUNK_FAILED_RE.search(line)
        if match:
            entries.append(
                {
                    "path": current_file,
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
            continue
        match = _NO_SUCH_FILE_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "missing_file"})
            continue
        if _CANT_FIND_RE.search(line):
            entries.append({"path": current_file, "reason": "missing_file"})
    return tuple(entries)


def extract_target_paths(patch: bytes, *, strip: int = 1) -> Tuple[Path, ...]:
    """Return the sorted set of paths a diff writes to after stripping ``strip`` components."""
    paths: set[Path] = set()
    for raw_line in patch.split(b"\n"):
        if not raw_line.startswith(b"+++ "):
            continue
        operand = raw_line[4:].split(b"\t", 1)[0].strip().decode("utf-8", errors="replace")
        if not operand or operand == "/dev/null":
            continue
        parts = [part for part in operand.split("/") if part]
        if len(parts) <= strip:
            continue
        paths.add(Path(*parts[strip:]))
    return tuple(sorted(paths, key=lambda item: item.as_posix()))


def _commands(tool: PatchTool, strip: int, patch_path: Path) -> tuple[list[str], list[str]]:
    if tool is PatchTool.GIT:
        base = ["git", "apply", f"-p{strip}", "--whitespace=nowarn"]
        return [*base, "--check", str(patch_path)], [*base, str(patch_path)]
    base = ["patch", f"-p{strip}", "--forward", "--batch", "-i", str(patch_path)]
    return [*base, "--dry-run"], base


def apply_patch(
    patch: bytes,
    *,
    target_root: Path | str,
    tool: PatchTool | str = PatchTool.GIT,
    strip: int = 1,
    check: bool = True,
    label: str | None = None,
) -> PatchResult:
    """Apply ``patch`` to ``target_root``.

    When ``check`` is set a dry run is performed first so a failing patch
    leaves the tree untouched. Failures raise :class:`PatchApplicationFailed`
    with the tool's diagnostics attached; a missing tool surfaces as
    :class:`~vmpatch.errors.ExternalToolFailure`.
    """

    root = Path(target_root).resolve()
    tool_kind = PatchTool(tool)
    telemetry = PatchTelemetry(
        label=label or "<inline>",
        tool=tool_kind.value,
        strip=strip,
        patch_bytes=len(patch),
    )
    if not patch.strip():
        raise PatchApplicationFailed(
            f"Patch {telemetry.label} is empty.",
            details={"telemetry": telemetry.to_dict()},
        )
    telemetry.touched_paths = extract_target_paths(patch, strip=strip)

    with tempfile.NamedTemporaryFile("wb", suffix=".patch", delete=False) as handle:
        handle.write(patch)
        handle.flush()
        temp_path = Path(handle.name)

    try:
        check_command, apply_command = _commands(tool_kind, strip, temp_path)
        if check:
            dry_run = run_tool(check_command, cwd=root, check=False)
            telemetry.check_returncode = dry_run.returncode
            telemetry.check_stdout = dry_run.stdout.strip()
            telemetry.check_stderr = dry_run.stderr.strip()
            telemetry.failing_hunks = _parse_apply_failures("\n".join((dry_run.stdout, dry_run.stderr)))
            if not dry_run.ok:
                payload = telemetry.to_dict()
                emit_event("patch_validation_failed", telemetry=payload)
                raise PatchApplicationFailed(
                    f"Patch {telemetry.label} failed validation: {dry_run.message()}",
                    details={"telemetry": payload, "stdout": dry_run.stdout, "stderr": dry_run.stderr},
                )

        result = run_tool(apply_command, cwd=root, check=False)
        if not result.ok:
            telemetry.failing_hunks = _parse_apply_failures("\n".join((result.stdout, result.stderr)))
            payload = telemetry.to_dict()
            emit_event("patch_apply_failed", telemetry=payload)
            raise PatchApplicationFailed(
                f"Patch {telemetry.label} failed to apply: {result.message()}",
                details={"telemetry": payload, "stdout": result.stdout, "stderr": result.stderr},
            )

        emit_event("patch_apply_succeeded", telemetry=telemetry.to_dict())
        return PatchResult(
            command=tuple(part for part in apply_command if part != str(temp_path)),
            paths=telemetry.touched_paths,
            stdout=result.stdout,
            stderr=result.stderr,
            telemetry=telemetry,
        )
    finally:
        temp_path.unlink(missing_ok=True)


__all__ = [
    "PatchResult",
    "PatchTelemetry",
    "PatchTool",
    "apply_patch",
    "extract_target_paths",
]
