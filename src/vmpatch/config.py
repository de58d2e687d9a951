"""Typed pipeline configuration loaded from YAML."""

from __future__ import annotations

import copy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .tools.normalize import DEFAULT_PROJECTS, PatchDialect
from .tools.patch import PatchTool

DEFAULT_CONFIG_NAME = "vmpatch.yaml"


class ConfigModel(BaseModel):
    """Base model rejecting unknown keys so typos surface early."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class PatchStage(str, Enum):
    """Position of a patch in the fixed application order."""

    CORE = "core"
    GATED = "gated"
    COMPAT = "compat"


class PatchSpec(ConfigModel):
    """A single patch file and the policy for applying it."""

    path: str
    required: bool = False
    gate: Optional[str] = None
    dialect: Optional[PatchDialect] = None
    stage: PatchStage = PatchStage.COMPAT
    strip: int = Field(default=1, ge=0)
    tool: PatchTool = PatchTool.GIT
    normalize: bool = True
    projects: List[str] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def _path_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("patch path must not be empty")
        return value.strip()

    def resolve(self, base: Path) -> Path:
        """Return the patch location, resolving relative paths against ``base``."""
        candidate = Path(self.path).expanduser()
        if not candidate.is_absolute():
            candidate = base / candidate
        return candidate


class StagingEntry(ConfigModel):
    """Structural source subtree copied from the companion repo into the target."""

    source: str
    destination: str


class InlineFix(ConfigModel):
    """Literal single-line substitution applied to a file if it exists."""

    path: str
    search: str
    replace: str


class ProjectSection(ConfigModel):
    name: str = "qemu"
    version: str = "10.0.0-3dfx"
    revision: int = 1
    normalize_projects: List[str] = Field(default_factory=lambda: list(DEFAULT_PROJECTS))


class RepositorySection(ConfigModel):
    root: Optional[str] = None
    root_env: str = "VMPATCH_REPO_ROOT"
    markers: List[str] = Field(default_factory=lambda: ["00-qemu100x-mesa-glide.patch", "qemu-0", "qemu-1"])
    ci_env: List[str] = Field(
        default_factory=lambda: ["GITHUB_WORKSPACE", "CI_PROJECT_DIR", "BUILDKITE_BUILD_CHECKOUT_PATH", "WORKSPACE"]
    )
    fallbacks: List[str] = Field(default_factory=lambda: ["~/qemu-3dfx", "/opt/qemu-3dfx"])
    max_depth: int = Field(default=15, ge=0)


class SourceSection(ConfigModel):
    markers: List[str] = Field(default_factory=lambda: ["configure", "meson.build"])
    init_git: bool = True


class CompatSection(ConfigModel):
    directory: Optional[str] = "virgil3d"
    extensions: List[str] = Field(default_factory=lambda: [".patch"])
    dialect: Optional[PatchDialect] = None
    strip: int = Field(default=1, ge=0)
    tool: PatchTool = PatchTool.GIT


class FeatureGateConfig(ConfigModel):
    env_key: str
    flag_file: Optional[str] = None


class IdentitySection(ConfigModel):
    override_env: str = "VMPATCH_BUILD_IDENTITY"
    remote: str = "origin"
    branch: str = "master"
    abbrev: int = Field(default=7, ge=4, le=40)
    persist_path: str = "sign/BUILD_IDENTITY"


class BuildCommand(ConfigModel):
    argv: List[str]
    parallel: bool = False

    @field_validator("argv")
    @classmethod
    def _argv_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("build command must not be empty")
        return value


class BuildSection(ConfigModel):
    build_dir: str = "build"
    commands: List[BuildCommand] = Field(default_factory=list)
    ci_env: List[str] = Field(default_factory=lambda: ["CI", "GITHUB_ACTIONS"])
    ci_jobs: int = Field(default=2, ge=1)
    jobs_flag: str = "-j{jobs}"


class StampSection(ConfigModel):
    script: str = "scripts/sign_commit"
    interpreter: str = "bash"
    args: List[str] = Field(default_factory=lambda: ["-git={repo}", "-commit={identity}", "HEAD"])
    token_env: Optional[str] = "QEMU_3DFX_COMMIT"


class SignerSection(ConfigModel):
    script: str = "qemu.sign"
    directory: str = "sign"
    interpreter: str = "bash"
    token_env: str = "QEMU_3DFX_COMMIT"
    artifacts: List[str] = Field(default_factory=lambda: ["bin/qemu-system-*"])
    files: List[str] = Field(default_factory=lambda: ["qemu.sign", "qemu.rsrc"])


class CompanionSection(ConfigModel):
    """Secondary source tree (e.g. virglrenderer) patched and built before the main one."""

    name: str
    directory: str
    markers: List[str] = Field(default_factory=list)
    patches: List[PatchSpec] = Field(default_factory=list)
    commands: List[BuildCommand] = Field(default_factory=list)


class PipelineConfig(ConfigModel):
    """Root configuration document."""

    project: ProjectSection = Field(default_factory=ProjectSection)
    repository: RepositorySection = Field(default_factory=RepositorySection)
    source: SourceSection = Field(default_factory=SourceSection)
    staging: List[StagingEntry] = Field(default_factory=list)
    patches: List[PatchSpec] = Field(default_factory=list)
    compat: CompatSection = Field(default_factory=CompatSection)
    inline_fixes: List[InlineFix] = Field(default_factory=list)
    features: Dict[str, FeatureGateConfig] = Field(default_factory=dict)
    identity: IdentitySection = Field(default_factory=IdentitySection)
    build: BuildSection = Field(default_factory=BuildSection)
    stamp: Optional[StampSection] = None
    signer: Optional[SignerSection] = Field(default_factory=SignerSection)
    companions: List[CompanionSection] = Field(default_factory=list)


DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "qemu",
        "version": "10.0.0-3dfx",
        "revision": 1,
        "normalize_projects": list(DEFAULT_PROJECTS),
    },
    "repository": {
        "markers": ["00-qemu100x-mesa-glide.patch", "qemu-0", "qemu-1"],
        "fallbacks": ["~/qemu-3dfx"],
        "max_depth": 15,
    },
    "source": {"markers": ["configure", "meson.build"], "init_git": True},
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
            "tool": "patch",
            "normalize": False,
        },
        {
            "path": "patches/qemu-10.0.0-sdl-clipboard-simple-safe.patch",
            "stage": "gated",
            "gate": "experimental",
        },
    ],
    "compat": {"directory": "virgil3d", "extensions": [".patch"]},
    "inline_fixes": [
        {
            "path": "meson.build",
            "search": "error('epoxy/egl.h not found')",
            "replace": "warning('epoxy/egl.h not found - EGL disabled')",
        },
        {
            "path": "hw/mesa/mglcntx_linux.c",
            "search": "GL_CONTEXTALPHA",
            "replace": "GLX_ALPHA_SIZE",
        },
    ],
    "features": {
        "experimental": {
            "env_key": "APPLY_EXPERIMENTAL_PATCHES",
            "flag_file": "/tmp/vmpatch-experimental-patches",
        }
    },
    "identity": {
        "override_env": "VMPATCH_BUILD_IDENTITY",
        "remote": "origin",
        "branch": "master",
        "abbrev": 7,
        "persist_path": "sign/BUILD_IDENTITY",
    },
    "build": {
        "build_dir": "build",
        "commands": [
            {
                "argv": [
                    "../configure",
                    "--prefix={prefix}",
                    "--target-list=i386-softmmu,x86_64-softmmu,aarch64-softmmu",
                    "--enable-sdl",
                    "--enable-opengl",
                    "--enable-virglrenderer",
                    "--disable-docs",
                ]
            },
            {"argv": ["ninja"], "parallel": True},
            {"argv": ["ninja", "install"]},
        ],
        "ci_jobs": 2,
    },
    "stamp": {
        "script": "scripts/sign_commit",
        "interpreter": "bash",
        "args": ["-git={repo}", "-commit={identity}", "HEAD"],
    },
    "signer": {
        "script": "qemu.sign",
        "directory": "sign",
        "token_env": "QEMU_3DFX_COMMIT",
        "artifacts": ["bin/qemu-system-*"],
        "files": ["qemu.sign", "qemu.rsrc"],
    },
    "companions": [
        {
            "name": "virglrenderer",
            "directory": "virglrenderer-*",
            "markers": ["meson.build"],
            "patches": [
                {"path": "virgil3d/MINGW-packages/0001-Virglrenderer-on-Windows-and-macOS.patch"}
            ],
            "commands": [
                {
                    "argv": [
                        "meson",
                        "setup",
                        "build",
                        "--prefix={prefix}",
                        "--buildtype=release",
                        "-Dtests=false",
                        "-Dplatforms=",
                        "-Dvenus=false",
                    ]
                },
                {"argv": ["ninja", "-C", "build"], "parallel": True},
                {"argv": ["ninja", "-C", "build", "install"]},
            ],
        }
    ],
}


def default_config_dict() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def parse_config(data: Any) -> PipelineConfig:
    """Validate a mapping into a :class:`PipelineConfig`."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}", details={"errors": error.errors()}) from error


def load_config(config_path: Path | str) -> PipelineConfig:
    """Load YAML configuration from disk and validate it."""
    path = Path(config_path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as error:
        raise ConfigError(f"Config file not found: {path}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    return parse_config(data)


def write_config(config_path: Path | str, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "BuildCommand",
    "BuildSection",
    "CompanionSection",
    "CompatSection",
    "FeatureGateConfig",
    "IdentitySection",
    "InlineFix",
    "PatchSpec",
    "PatchStage",
    "PipelineConfig",
    "ProjectSection",
    "RepositorySection",
    "SignerSection",
    "SourceSection",
    "StagingEntry",
    "StampSection",
    "default_config_dict",
    "load_config",
    "parse_config",
    "write_config",
]
