from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

CORE_PATCH = textwrap.dedent(
    """\
    --- hw/core.c
    +++ hw/core.c
    @@ -1 +1,2 @@
     int core;
    +int glide_enabled;
    """
)

GATED_PATCH = textwrap.dedent(
    """\
    --- a/hw/core.c
    +++ b/hw/core.c
    @@ -1,2 +1,3 @@
     int core;
     int glide_enabled;
    +int clipboard;
    """
)

COMPAT_PATCH = (
    "diff -Nru orig/qemu-9.2.2/ui/gl.c src/qemu-9.2.2/ui/gl.c\n"
    "--- orig/qemu-9.2.2/ui/gl.c\t2024-01-01 00:00:00.000000000 +0000\n"
    "+++ src/qemu-9.2.2/ui/gl.c\t2024-01-02 00:00:00.000000000 +0000\n"
    "@@ -1 +1 @@\n"
    "-int gl = 0;\n"
    "+int gl = 1;\n"
)


def git(root: Path, *args: str) -> str:
    """Run git in ``root`` and return stripped stdout."""

    process = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return process.stdout.strip()


def init_git_repo(root: Path, *, commit: bool = True) -> None:
    """Initialise ``root`` on branch ``master`` and optionally commit everything."""

    root.mkdir(parents=True, exist_ok=True)
    git(root, "init", "-q")
    git(root, "symbolic-ref", "HEAD", "refs/heads/master")
    git(root, "config", "user.email", "builder@example.com")
    git(root, "config", "user.name", "Formula Builder")
    if commit:
        git(root, "add", ".")
        git(root, "commit", "-q", "--allow-empty", "-m", "Initial import")


@dataclass(slots=True)
class CompanionRepo:
    """Synthetic extension repository carrying patches and structural sources."""

    root: Path
    core_patch: Path
    gated_patch: Path
    compat_dir: Path

    def head(self, abbrev: int = 7) -> str:
        return git(self.root, "rev-parse", f"--short={abbrev}", "HEAD")


@dataclass(slots=True)
class UpstreamBuild:
    """Extracted upstream tree nested in a versioned directory."""

    build_path: Path
    source_tree: Path


def write_upstream_tree(tree: Path) -> Path:
    (tree / "hw").mkdir(parents=True, exist_ok=True)
    (tree / "ui").mkdir(parents=True, exist_ok=True)
    (tree / "configure").write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    (tree / "meson.build").write_text(
        "project('qemu')\nerror('epoxy/egl.h not found')\n",
        encoding="utf-8",
    )
    (tree / "hw" / "core.c").write_text("int core;\n", encoding="utf-8")
    (tree / "ui" / "gl.c").write_text("int gl = 0;\n", encoding="utf-8")
    return tree


@pytest.fixture()
def companion_repo(tmp_path: Path) -> CompanionRepo:
    root = tmp_path / "qemu-3dfx"
    (root / "qemu-0" / "hw" / "3dfx").mkdir(parents=True)
    (root / "qemu-0" / "hw" / "3dfx" / "glide.c").write_text("int glide;\n", encoding="utf-8")
    (root / "qemu-1" / "hw" / "mesa").mkdir(parents=True)
    (root / "qemu-1" / "hw" / "mesa" / "mglcntx_linux.c").write_text(
        "int attr = GL_CONTEXTALPHA;\n",
        encoding="utf-8",
    )
    core = root / "00-qemu100x-mesa-glide.patch"
    core.write_text(CORE_PATCH, encoding="utf-8")
    (root / "patches").mkdir()
    gated = root / "patches" / "experimental.patch"
    gated.write_text(GATED_PATCH, encoding="utf-8")
    compat_dir = root / "virgil3d"
    compat_dir.mkdir()
    (compat_dir / "0001-gl-compat.patch").write_text(COMPAT_PATCH, encoding="utf-8")
    (compat_dir / "README.txt").write_text("not a patch\n", encoding="utf-8")
    init_git_repo(root)
    return CompanionRepo(root=root, core_patch=core, gated_patch=gated, compat_dir=compat_dir)


@pytest.fixture()
def upstream_build(tmp_path: Path) -> UpstreamBuild:
    build_path = tmp_path / "build"
    tree = write_upstream_tree(build_path / "qemu-10.0.0")
    return UpstreamBuild(build_path=build_path, source_tree=tree)


@pytest.fixture()
def config_data(companion_repo: CompanionRepo, tmp_path: Path) -> Dict[str, Any]:
    """Pipeline configuration wired to the synthetic companion repository."""

    return {
        "project": {"name": "qemu", "version": "10.0.0-3dfx", "revision": 2},
        "repository": {
            "root": companion_repo.root.as_posix(),
            "markers": ["00-qemu100x-mesa-glide.patch", "qemu-0", "qemu-1"],
            "ci_env": [],
            "fallbacks": [],
        },
        "staging": [
            {"source": "qemu-0/hw/3dfx", "destination": "hw/3dfx"},
            {"source": "qemu-1/hw/mesa", "destination": "hw/mesa"},
        ],
        "patches": [
            {
                "path": "00-qemu100x-mesa-glide.patch",
                "required": True,
                "stage": "core",
                "strip": 0,
                "normalize": False,
            },
            {"path": "patches/experimental.patch", "stage": "gated", "gate": "experimental"},
        ],
        "compat": {"directory": "virgil3d", "extensions": [".patch"]},
        "inline_fixes": [
            {
                "path": "meson.build",
                "search": "error('epoxy/egl.h not found')",
                "replace": "warning('epoxy/egl.h not found - EGL disabled')",
            },
            {"path": "hw/mesa/mglcntx_linux.c", "search": "GL_CONTEXTALPHA", "replace": "GLX_ALPHA_SIZE"},
        ],
        "features": {
            "experimental": {
                "env_key": "APPLY_EXPERIMENTAL_PATCHES",
                "flag_file": (tmp_path / "experimental-flag").as_posix(),
            }
        },
        "build": {"commands": [], "ci_env": ["CI", "GITHUB_ACTIONS"]},
        "signer": None,
        "companions": [],
    }
