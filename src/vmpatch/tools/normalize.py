"""Rewrite patch header paths into a version-agnostic form.

Patches are authored against an upstream tree extracted under a
version-numbered directory (``qemu-9.2.2/``), while the pipeline extracts each
newly adopted upstream release under a different name. Only header lines are
rewritten; hunk bodies are located by their ``@@`` line counts and passed
through byte-for-byte. An operand whose leading directory was the versioned
tree itself (``qemu-9.2.2/ui/gl.c``) gains the ``a/``/``b/`` prefix so that it
applies at strip level 1 like every other rewritten patch.

Known limitation: the version-prefix rule is a heuristic. A directory inside
the patched project that is literally named ``<project>-<digits.digits>`` is
rewritten as well. Anchoring on the known project names keeps this rare.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Pattern, Sequence

DEFAULT_PROJECTS: tuple[str, ...] = ("qemu", "virglrenderer")

_DEV_NULL = b"/dev/null"
_HUNK_HEADER = re.compile(rb"^@@ -\d+(?:,(?P<old_count>\d+))? \+\d+(?:,(?P<new_count>\d+))? @@")
_DIFF_COMMAND = re.compile(
    rb"^(?P<head>diff (?:-\S+ )*)(?P<left>\S+) (?P<right>\S+)(?P<trail>\r?)$"
)
_BSD_DIFF_LINE = re.compile(rb"^diff -(?!-git)\S*[Nru]\S* ", re.MULTILINE)
_HEADER_PREFIXES: tuple[bytes, ...] = (b"diff ", b"--- ", b"+++ ", b"Index: ")


class PatchDialect(str, Enum):
    """Header flavours understood by the normaliser."""

    CANONICAL = "canonical-unified"
    LEGACY_AB = "legacy-unified-ab-prefixed"
    BSD_NRU = "bsd-diff-nru"


def _version_prefix_pattern(projects: Sequence[str]) -> Pattern[bytes]:
    names = b"|".join(re.escape(name.encode("utf-8")) for name in projects)
    return re.compile(rb"(?<![\w.-])(?:orig/)?(?:" + names + rb")-\d+(?:\.\d+)+/")


def _default_count(value: bytes | None) -> int:
    return int(value) if value is not None else 1


def _split_header_path(body: bytes) -> tuple[bytes, bytes]:
    """Split a ``---``/``+++`` operand into path and trailer (timestamp, CR)."""
    path, sep, tail = body.partition(b"\t")
    if sep:
        return path, sep + tail
    if path.endswith(b"\r"):
        return path[:-1], b"\r"
    return path, b""


@dataclass(slots=True)
class PatchNormalizer:
    """Strip version-numbered tree prefixes from patch headers."""

    projects: tuple[str, ...] = DEFAULT_PROJECTS

    def __post_init__(self) -> None:
        cleaned = tuple(name.strip() for name in self.projects if name and name.strip())
        if not cleaned:
            raise ValueError("At least one project name is required for normalisation.")
        self.projects = cleaned

    # ------------------------------------------------------------------ API
    def detect_dialect(self, raw: bytes) -> PatchDialect:
        """Guess the header dialect of ``raw``."""
        if _BSD_DIFF_LINE.search(raw):
            return PatchDialect.BSD_NRU
        names = b"|".join(re.escape(name.encode("utf-8")) for name in self.projects)
        legacy = re.compile(rb"^(?:---|\+\+\+) [ab]/(?:" + names + rb")-\d+(?:\.\d+)+/", re.MULTILINE)
        if legacy.search(raw):
            return PatchDialect.LEGACY_AB
        return PatchDialect.CANONICAL

    def normalize(self, raw: bytes, dialect: PatchDialect | str | None = None) -> bytes:
        """Return ``raw`` with header paths rewritten to the canonical form."""
        if not raw:
            return raw
        resolved = PatchDialect(dialect) if dialect is not None else self.detect_dialect(raw)
        pattern = _version_prefix_pattern(self.projects)
        lines = raw.split(b"\n")
        output: list[bytes] = []

        old_left = 0
        new_left = 0
        index = 0
        while index < len(lines):
            line = lines[index]

            if old_left > 0 or new_left > 0:
                if not line.startswith(b"\\"):
                    tag = line[:1]
                    if tag == b"+":
                        new_left -= 1
                    elif tag == b"-":
                        old_left -= 1
                    else:
                        old_left -= 1
                        new_left -= 1
                output.append(line)
                index += 1
                continue

            hunk = _HUNK_HEADER.match(line)
            if hunk:
                old_left = _default_count(hunk.group("old_count"))
                new_left = _default_count(hunk.group("new_count"))
                output.append(line)
                index += 1
                continue

            if resolved is PatchDialect.BSD_NRU:
                if line.startswith(b"--- ") and index + 1 < len(lines) and lines[index + 1].startswith(b"+++ "):
                    left, left_trail = _split_header_path(line[4:])
                    right, right_trail = _split_header_path(lines[index + 1][4:])
                    left, right = self._rewrite_pair(left, right, pattern)
                    output.append(b"--- " + left + left_trail)
                    output.append(b"+++ " + right + right_trail)
                    index += 2
                    continue
                command = _DIFF_COMMAND.match(line)
                if command:
                    left, right = self._rewrite_pair(command.group("left"), command.group("right"), pattern)
                    output.append(command.group("head") + left + b" " + right + command.group("trail"))
                    index += 1
                    continue

            if line.startswith((b"--- ", b"+++ ")):
                body, trail = _split_header_path(line[4:])
                side = b"a/" if line.startswith(b"---") else b"b/"
                line = line[:4] + self._strip_operand(body, side, pattern) + trail
            elif line.startswith(b"diff "):
                command = _DIFF_COMMAND.match(line)
                if command:
                    left = self._strip_operand(command.group("left"), b"a/", pattern)
                    right = self._strip_operand(command.group("right"), b"b/", pattern)
                    line = command.group("head") + left + b" " + right + command.group("trail")
                else:
                    line = pattern.sub(b"", line)
            elif line.startswith(_HEADER_PREFIXES):
                line = pattern.sub(b"", line)
            output.append(line)
            index += 1

        return b"\n".join(output)

    def normalize_file(self, path: Path | str, dialect: PatchDialect | str | None = None) -> bytes:
        """Read ``path`` and return its normalised content."""
        return self.normalize(Path(path).read_bytes(), dialect)

    # ------------------------------------------------------------- helpers
    def _strip_tree(self, path: bytes, pattern: Pattern[bytes]) -> bytes | None:
        """Drop a leading ``<tree>/<project>-<version>/`` from a lone operand."""
        parts = path.split(b"/")
        for depth, segment in enumerate(parts[:2], start=1):
            if len(parts) > depth and pattern.fullmatch(segment + b"/"):
                return b"/".join(parts[depth:])
        return None

    def _strip_operand(self, path: bytes, side: bytes, pattern: Pattern[bytes]) -> bytes:
        """Strip version prefixes; a prefix that was the whole tree gains ``side``."""
        leading = pattern.match(path)
        if leading:
            return side + pattern.sub(b"", path[leading.end():])
        return pattern.sub(b"", path)

    def _rewrite_pair(self, left: bytes, right: bytes, pattern: Pattern[bytes]) -> tuple[bytes, bytes]:
        """Rewrite a two-directory ``(orig/..., src/...)`` operand pair to ``a/``/``b/``."""
        if left == _DEV_NULL or right == _DEV_NULL:
            real = right if left == _DEV_NULL else left
            stripped = self._strip_tree(real, pattern)
            if stripped is None:
                return left, right
            if left == _DEV_NULL:
                return left, b"b/" + stripped
            return b"a/" + stripped, right

        left_tree, left_sep, left_rest = left.partition(b"/")
        right_tree, right_sep, right_rest = right.partition(b"/")
        if not (left_sep and right_sep) or left_tree == right_tree or left_rest != right_rest or not left_rest:
            return pattern.sub(b"", left), pattern.sub(b"", right)
        rest = pattern.sub(b"", left_rest)
        return b"a/" + rest, b"b/" + rest


def normalize_patch(
    raw: bytes,
    dialect: PatchDialect | str | None = None,
    *,
    projects: Iterable[str] = DEFAULT_PROJECTS,
) -> bytes:
    """Normalise ``raw`` using a one-off :class:`PatchNormalizer`."""
    return PatchNormalizer(projects=tuple(projects)).normalize(raw, dialect)


__all__ = ["DEFAULT_PROJECTS", "PatchDialect", "PatchNormalizer", "normalize_patch"]
