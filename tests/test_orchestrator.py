from __future__ import annotations

import os
import shutil
import textwrap
from pathlib import Path
from typing import Any, Dict

import pytest

from conftest import CompanionRepo, UpstreamBuild, git
from vmpatch.config import default_config_dict, parse_config
from vmpatch.errors import ConfigError, RepositoryNotFound
from vmpatch.identity import IdentitySource
from vmpatch.orchestrator import BuildPipeline, expand_arguments

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")

SIGNER = textwrap.dedent(
    """\
    #!/bin/bash
    echo "$QEMU_3DFX_COMMIT $*" > signed.txt
    """
)

VIRGL_PATCH = (
    "diff -Nru orig/virglrenderer-1.1.1/src/v.c src/virglrenderer-1.1.1/src/v.c\n"
    "--- orig/virglrenderer-1.1.1/src/v.c\n"
    "+++ src/virglrenderer-1.1.1/src/v.c\n"
    "@@ -1 +1 @@\n"
    "-int macos = 0;\n"
    "+int macos = 1;\n"
)


def _stub(path: Path, log: Path) -> Path:
    path.write_text(f'#!/bin/sh\necho "{path.name} $(pwd -P) $*" >> {log}\n', encoding="utf-8")
    path.chmod(0o755)
    return path


def _pipeline(data: Dict[str, Any], **env: str) -> BuildPipeline:
    return BuildPipeline(parse_config(data), env=env)


def test_expand_arguments_keeps_unknown_placeholders() -> None:
    assert expand_arguments(["--prefix={prefix}", "{other}", "-j{jobs}"], {"prefix": "/opt/q"}) == [
        "--prefix=/opt/q",
        "{other}",
        "-j{jobs}",
    ]


def test_build_phase_end_to_end(
    companion_repo: CompanionRepo,
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    config_data["build"]["commands"] = [
        {"argv": ["sh", "-c", "echo {prefix} > configured.txt"]},
        {"argv": ["sh", "-c", 'echo "$@" > jobs.txt', "sh"], "parallel": True},
    ]
    output = tmp_path / "prefix"

    report = _pipeline(config_data, CI="1").run_build(upstream_build.build_path, output)

    tree = upstream_build.source_tree.resolve()
    assert report.source_tree == tree
    assert report.git_initialised is True
    assert (tree / ".git").exists()
    assert report.identity.token == companion_repo.head()
    assert report.identity.source is IdentitySource.LOCAL_BRANCH_TIP
    assert report.identity_file.read_text(encoding="utf-8") == f"{companion_repo.head()}\n"
    assert (tree / "meson.build").read_text(encoding="utf-8").endswith("warning('epoxy/egl.h not found - EGL disabled')\n")
    assert (tree / "build" / "configured.txt").read_text(encoding="utf-8").strip() == str(output.resolve())
    assert (tree / "build" / "jobs.txt").read_text(encoding="utf-8").strip() == "-j2"
    assert (output / "VERSION").read_text(encoding="utf-8") == "10.0.0-3dfx-2"
    assert report.stamped is False


def test_ci_job_limit_only_applies_in_ci(
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    config_data["build"]["commands"] = [{"argv": ["sh", "-c", 'echo "$#" > jobs.txt', "sh"], "parallel": True}]

    _pipeline(config_data).run_build(upstream_build.build_path, tmp_path / "prefix")

    assert (upstream_build.source_tree / "build" / "jobs.txt").read_text(encoding="utf-8").strip() == "0"


def test_missing_repository_aborts_before_mutation(
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    config_data["repository"]["root"] = (tmp_path / "nowhere").as_posix()

    with pytest.raises(RepositoryNotFound):
        _pipeline(config_data).run_build(upstream_build.build_path, tmp_path / "prefix")

    assert not (upstream_build.source_tree / ".git").exists()
    assert (upstream_build.source_tree / "hw" / "core.c").read_text(encoding="utf-8") == "int core;\n"


def test_exactly_one_core_patch_required(upstream_build: UpstreamBuild, config_data: Dict[str, Any], tmp_path: Path) -> None:
    config_data["patches"] = config_data["patches"][1:]

    with pytest.raises(ConfigError):
        _pipeline(config_data).run_build(upstream_build.build_path, tmp_path / "prefix")


@requires_bash
def test_stamp_hook_receives_repo_and_identity(
    companion_repo: CompanionRepo,
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    scripts = companion_repo.root / "scripts"
    scripts.mkdir()
    (scripts / "sign_commit").write_text('echo "$@" > stamp.txt\n', encoding="utf-8")
    config_data["stamp"] = {"script": "scripts/sign_commit"}

    report = _pipeline(config_data, VMPATCH_BUILD_IDENTITY="feed42").run_build(
        upstream_build.build_path, tmp_path / "prefix", compile_sources=False
    )

    assert report.stamped is True
    assert report.identity.token == "feed42"
    stamp = (report.source_tree / "stamp.txt").read_text(encoding="utf-8").strip()
    assert stamp == f"-git={companion_repo.root.resolve()} -commit=feed42 HEAD"
    assert report.version_file is None


@requires_bash
def test_post_install_signs_with_build_identity(
    companion_repo: CompanionRepo,
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    (companion_repo.root / "qemu.sign").write_text(SIGNER, encoding="utf-8")
    config_data["signer"] = {"files": ["qemu.sign"], "artifacts": ["bin/qemu-system-*"]}
    output = tmp_path / "prefix"
    pipeline = _pipeline(config_data)

    built = pipeline.run_build(upstream_build.build_path, output, compile_sources=False)
    assert (output / "sign" / "qemu.sign").exists()
    (output / "bin").mkdir()
    artifact = output / "bin" / "qemu-system-x86_64"
    artifact.write_text("binary", encoding="utf-8")

    # A later commit must not change the identity the signer sees.
    (companion_repo.root / "later.txt").write_text("later\n", encoding="utf-8")
    git(companion_repo.root, "add", "later.txt")
    git(companion_repo.root, "commit", "-q", "-m", "later")

    report = _pipeline(config_data).run_post_install(output)

    assert report.signed is True
    assert report.identity.token == built.identity.token
    assert report.identity.source is IdentitySource.PERSISTED
    assert report.artifacts == [artifact.resolve()]
    signed = (output / "sign" / "signed.txt").read_text(encoding="utf-8").strip()
    assert signed == f"{built.identity.token} {artifact.resolve()}"


@requires_bash
def test_post_install_copies_signer_from_repository(
    companion_repo: CompanionRepo,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    (companion_repo.root / "qemu.sign").write_text(SIGNER, encoding="utf-8")
    config_data["signer"] = {"files": [], "artifacts": []}
    output = tmp_path / "prefix"

    report = _pipeline(config_data, VMPATCH_BUILD_IDENTITY="cafe01").run_post_install(output)

    assert report.signed is True
    assert report.signer == output.resolve() / "sign" / "qemu.sign"
    assert (output / "sign" / "signed.txt").read_text(encoding="utf-8").strip() == "cafe01"


def test_post_install_without_signer_is_not_fatal(config_data: Dict[str, Any], tmp_path: Path) -> None:
    config_data["signer"] = {"files": []}
    config_data["repository"]["root"] = (tmp_path / "nowhere").as_posix()
    output = tmp_path / "prefix"
    (output / "sign").mkdir(parents=True)
    (output / "sign" / "BUILD_IDENTITY").write_text("abc123\n", encoding="utf-8")

    report = _pipeline(config_data).run_post_install(output)

    assert report.signed is False
    assert report.identity.token == "abc123"


def test_companion_tree_patched_with_its_project_name(
    companion_repo: CompanionRepo,
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
) -> None:
    mingw = companion_repo.compat_dir / "MINGW-packages"
    mingw.mkdir()
    (mingw / "0001-virgl.patch").write_text(VIRGL_PATCH, encoding="utf-8")
    virgl = upstream_build.build_path / "virglrenderer-1.1.1"
    (virgl / "src").mkdir(parents=True)
    (virgl / "meson.build").write_text("project('virglrenderer')\n", encoding="utf-8")
    (virgl / "src" / "v.c").write_text("int macos = 0;\n", encoding="utf-8")
    config_data["companions"] = [
        {
            "name": "virglrenderer",
            "directory": "virglrenderer-*",
            "markers": ["meson.build"],
            "patches": [{"path": "virgil3d/MINGW-packages/0001-virgl.patch"}],
            "commands": [{"argv": ["sh", "-c", "echo {prefix} > built.txt"]}],
        }
    ]
    output = tmp_path / "prefix"

    report = _pipeline(config_data).run_build(upstream_build.build_path, output)

    assert (virgl / "src" / "v.c").read_text(encoding="utf-8") == "int macos = 1;\n"
    assert (virgl / "built.txt").read_text(encoding="utf-8").strip() == str(output.resolve())
    assert report.companions[0].source_tree == virgl.resolve()


def test_default_template_commands_run_from_their_build_directories(
    companion_repo: CompanionRepo,
    upstream_build: UpstreamBuild,
    config_data: Dict[str, Any],
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    template = default_config_dict()
    config_data["build"] = template["build"]
    config_data["companions"] = template["companions"]
    mingw = companion_repo.compat_dir / "MINGW-packages"
    mingw.mkdir()
    (mingw / "0001-Virglrenderer-on-Windows-and-macOS.patch").write_text(VIRGL_PATCH, encoding="utf-8")
    virgl = upstream_build.build_path / "virglrenderer-1.1.1"
    (virgl / "src").mkdir(parents=True)
    (virgl / "meson.build").write_text("project('virglrenderer')\n", encoding="utf-8")
    (virgl / "src" / "v.c").write_text("int macos = 0;\n", encoding="utf-8")

    log = tmp_path / "commands.log"
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _stub(bin_dir / "ninja", log)
    _stub(bin_dir / "meson", log)
    _stub(upstream_build.source_tree / "configure", log)
    monkeypatch.setenv("PATH", f"{bin_dir}:{os.environ.get('PATH', '')}")
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    output = tmp_path / "prefix"

    report = _pipeline(config_data).run_build(upstream_build.build_path, output)

    build_dir = upstream_build.source_tree.resolve() / "build"
    companion_tree = virgl.resolve()
    prefix = output.resolve()
    lines = log.read_text(encoding="utf-8").splitlines()
    assert lines[:3] == [
        f"meson {companion_tree} setup build --prefix={prefix} --buildtype=release -Dtests=false -Dplatforms= -Dvenus=false",
        f"ninja {companion_tree} -C build",
        f"ninja {companion_tree} -C build install",
    ]
    assert lines[3].startswith(f"configure {build_dir} --prefix={prefix} --target-list=")
    assert lines[4:] == [f"ninja {build_dir}", f"ninja {build_dir} install"]
    assert report.version_file is not None
    assert report.version_file.read_text(encoding="utf-8") == "10.0.0-3dfx-2"
