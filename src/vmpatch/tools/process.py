"""Synchronous execution of external collaborators (git, patch, build, signer)."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from ..errors import ExternalToolFailure
from .telemetry import emit_event

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolResult:
    """Captured outcome of an external tool invocation."""

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def message(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


def run_tool(
    command: Sequence[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    capture: bool = True,
) -> ToolResult:
    """Run ``command`` in ``cwd`` and return its captured result.

    ``env`` entries are layered over the current process environment. When
    ``capture`` is false the tool writes straight to the invoker's terminal,
    which is how long-running compiler output is surfaced. With ``check`` set,
    a missing executable or non-zero exit raises :class:`ExternalToolFailure`
    carrying the tool's output verbatim.
    """

    args = tuple(str(part) for part in command)
    if not args:
        raise ExternalToolFailure("Empty command.")
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update({str(key): str(value) for key, value in env.items()})

    LOGGER.debug("Running %s in %s", " ".join(args), cwd)
    try:
        process = subprocess.run(  # noqa: S603 - commands come from pipeline configuration
            list(args),
            cwd=str(cwd),
            env=merged_env,
            capture_output=capture,
            text=False,
            check=False,
        )
    except (FileNotFoundError, PermissionError) as error:
        # Relative executables such as ../configure resolve against cwd.
        emit_event("tool_unavailable", command=list(args), cwd=Path(cwd), error=str(error))
        raise ExternalToolFailure(
            f"Executable not available: {args[0]} ({error.strerror or error})",
            command=args,
        ) from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = ToolResult(command=args, returncode=process.returncode, stdout=stdout, stderr=stderr)

    if check and not result.ok:
        emit_event(
            "tool_failed",
            command=list(args),
            cwd=Path(cwd),
            returncode=result.returncode,
        )
        raise ExternalToolFailure(
            f"{' '.join(args)} failed: {result.message()}",
            command=args,
            returncode=result.returncode,
            stdout=stdout,
            stderr=stderr,
        )
    return result


__all__ = ["ToolResult", "run_tool"]
