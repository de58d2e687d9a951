"""External tool integrations used by the patch pipeline."""

from .normalize import DEFAULT_PROJECTS, PatchDialect, PatchNormalizer, normalize_patch
from .patch import PatchResult, PatchTelemetry, PatchTool, apply_patch, extract_target_paths
from .process import ToolResult, run_tool
from .telemetry import TELEMETRY_LOGGER, emit_event
from .vcs import GitError, GitRepository, ensure_repository

__all__ = [
    "DEFAULT_PROJECTS",
    "GitError",
    "GitRepository",
    "PatchDialect",
    "PatchNormalizer",
    "PatchResult",
    "PatchTelemetry",
    "PatchTool",
    "TELEMETRY_LOGGER",
    "ToolResult",
    "apply_patch",
    "emit_event",
    "ensure_repository",
    "extract_target_paths",
    "normalize_patch",
    "run_tool",
]
