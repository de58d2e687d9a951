"""Error taxonomy shared by the patch pipeline."""

from __future__ import annotations

from typing import Any, Mapping


class VmpatchError(RuntimeError):
    """Base class for pipeline failures that carry structured details."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class ConfigError(VmpatchError):
    """Raised when the pipeline configuration cannot be loaded or validated."""


class RepositoryNotFound(VmpatchError):
    """Raised when no candidate directory satisfies the marker-file predicate."""


class SourceTreeNotFound(RepositoryNotFound):
    """Raised when the extracted upstream source tree cannot be found."""


class PatchMissing(VmpatchError):
    """Raised when a mandatory patch file does not exist."""


class PatchApplicationFailed(VmpatchError):
    """Raised when a patch does not apply cleanly against the target tree."""


class IdentityUnresolvable(VmpatchError):
    """Raised by a single identity source that cannot produce a token."""


class ExternalToolFailure(VmpatchError):
    """Raised when an external tool is missing or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: tuple[str, ...] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


__all__ = [
    "ConfigError",
    "ExternalToolFailure",
    "IdentityUnresolvable",
    "PatchApplicationFailed",
    "PatchMissing",
    "RepositoryNotFound",
    "SourceTreeNotFound",
    "VmpatchError",
]
