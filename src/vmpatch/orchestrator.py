"""Compose locator, applier, identity and external tools into the two phases.

``run_build`` prepares, patches and compiles the upstream tree and persists
the build identity. ``run_post_install`` runs later, possibly in a different
process, recovers that identity and hands it to the external signer.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Sequence

from .applier import AppliedReport, PatchApplier
from .config import BuildCommand, CompanionSection, PipelineConfig, PatchStage
from .errors import ConfigError, RepositoryNotFound, SourceTreeNotFound
from .features import FeatureGate, resolve_feature_flags
from .identity import BuildIdentity, IdentitySettings, persist, recover, resolve
from .locator import RepositoryLocator, has_markers, locate_source_tree
from .tools.process import ToolResult, run_tool
from .tools.telemetry import emit_event
from .tools.vcs import ensure_repository

LOGGER = logging.getLogger(__name__)

VERSION_FILE = "VERSION"


@dataclass(slots=True)
class CompanionReport:
    name: str
    source_tree: Path | None
    applied: AppliedReport | None = None
    commands: List[ToolResult] = field(default_factory=list)


@dataclass(slots=True)
class BuildReport:
    """Outcome of the build phase."""

    repo_root: Path
    source_tree: Path
    output_dir: Path
    git_initialised: bool
    applied: AppliedReport
    identity: BuildIdentity
    identity_file: Path
    stamped: bool = False
    companions: List[CompanionReport] = field(default_factory=list)
    commands: List[ToolResult] = field(default_factory=list)
    version_file: Path | None = None


@dataclass(slots=True)
class PostInstallReport:
    """Outcome of the post-install phase."""

    identity: BuildIdentity
    signer: Path | None
    signed: bool
    artifacts: List[Path] = field(default_factory=list)
    result: ToolResult | None = None


def expand_arguments(argv: Sequence[str], values: Mapping[str, str]) -> List[str]:
    """Substitute ``{name}`` placeholders in ``argv``; unknown braces are kept."""
    expanded: List[str] = []
    for arg in argv:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", value)
        expanded.append(arg)
    return expanded


class BuildPipeline:
    """Drive the build and post-install phases from a :class:`PipelineConfig`."""

    def __init__(self, config: PipelineConfig, *, env: Mapping[str, str] | None = None) -> None:
        self.config = config
        self.env: Mapping[str, str] = os.environ if env is None else env

    # ------------------------------------------------------------ helpers
    def locator(self) -> RepositoryLocator:
        section = self.config.repository
        return RepositoryLocator(
            section.markers,
            root_env=section.root_env,
            ci_env=section.ci_env,
            fallbacks=section.fallbacks,
            max_depth=section.max_depth,
        )

    def locate_repository(
        self,
        *,
        override: str | Path | None = None,
        script_path: Path | str | None = None,
    ) -> Path:
        explicit = override if override is not None else self.config.repository.root
        return self.locator().locate(override=explicit, script_path=script_path, env=self.env)

    def feature_flags(self) -> frozenset[str]:
        gates = [
            FeatureGate(
                name=name,
                env_key=gate.env_key,
                flag_file=Path(gate.flag_file).expanduser() if gate.flag_file else None,
            )
            for name, gate in self.config.features.items()
        ]
        return resolve_feature_flags(gates, env=self.env)

    def identity_settings(self) -> IdentitySettings:
        section = self.config.identity
        return IdentitySettings(remote=section.remote, branch=section.branch, abbrev=section.abbrev)

    def identity_location(self, output_dir: Path | str) -> Path:
        return Path(output_dir) / self.config.identity.persist_path

    def identity_override(self, explicit: str | None = None) -> str | None:
        if explicit is not None:
            return explicit
        return self.env.get(self.config.identity.override_env)

    def in_ci(self) -> bool:
        return any(self.env.get(key) for key in self.config.build.ci_env)

    def applier(self, repo_root: Path, projects: Sequence[str] | None = None) -> PatchApplier:
        return PatchApplier(
            repo_root,
            staging=self.config.staging,
            inline_fixes=self.config.inline_fixes,
            compat=self.config.compat,
            projects=projects or self.config.project.normalize_projects,
        )

    def _command_argv(self, command: BuildCommand, values: Mapping[str, str]) -> List[str]:
        argv = expand_arguments(command.argv, values)
        if command.parallel and self.in_ci():
            jobs_flag = self.config.build.jobs_flag.replace("{jobs}", str(self.config.build.ci_jobs))
            argv.append(jobs_flag)
        return argv

    def _run_commands(
        self,
        commands: Sequence[BuildCommand],
        *,
        cwd: Path,
        values: Mapping[str, str],
    ) -> List[ToolResult]:
        results: List[ToolResult] = []
        for command in commands:
            argv = self._command_argv(command, values)
            LOGGER.info("Running %s", " ".join(argv))
            results.append(run_tool(argv, cwd=cwd))
        return results

    # ------------------------------------------------------------- stages
    def prepare_target(self, source_tree: Path) -> bool:
        """Give the target tree a git repository so ``git apply`` anchors on it."""
        if not self.config.source.init_git:
            return False
        _, created = ensure_repository(source_tree)
        if created:
            LOGGER.info("Initialised git repository in %s", source_tree)
        return created

    def _find_companion_tree(self, build_path: Path, companion: CompanionSection) -> Path | None:
        for candidate in sorted(path for path in build_path.glob(companion.directory) if path.is_dir()):
            if not companion.markers or has_markers(candidate, companion.markers):
                return candidate
        return None

    def build_companions(
        self,
        build_path: Path,
        repo_root: Path,
        output_dir: Path,
        *,
        compile_sources: bool = True,
    ) -> List[CompanionReport]:
        reports: List[CompanionReport] = []
        for companion in self.config.companions:
            tree = self._find_companion_tree(build_path, companion)
            if tree is None:
                LOGGER.warning("Companion %s not found under %s; skipping", companion.name, build_path)
                reports.append(CompanionReport(name=companion.name, source_tree=None))
                continue
            self.prepare_target(tree)
            projects = [companion.name, *self.config.project.normalize_projects]
            applied = PatchApplier(repo_root, projects=projects).apply(tree, companion.patches, self.feature_flags())
            report = CompanionReport(name=companion.name, source_tree=tree, applied=applied)
            if compile_sources:
                values = {"prefix": str(output_dir), "source": str(tree), "repo": str(repo_root)}
                report.commands = self._run_commands(companion.commands, cwd=tree, values=values)
            reports.append(report)
        return reports

    def stamp(self, source_tree: Path, repo_root: Path, identity: BuildIdentity) -> bool:
        """Run the commit-stamp hook inside ``source_tree`` if it is configured."""
        section = self.config.stamp
        if section is None:
            return False
        script = repo_root / section.script
        if not script.is_file():
            LOGGER.warning("Stamp script %s not found; build will not carry a commit stamp", script)
            return False
        argv = [section.interpreter, str(script)] + expand_arguments(
            section.args, {"repo": str(repo_root), "identity": identity.token}
        )
        env = {section.token_env: identity.token} if section.token_env else None
        run_tool(argv, cwd=source_tree, env=env)
        emit_event("commit_stamped", script=script, token=identity.token)
        return True

    def copy_signing_files(self, repo_root: Path, output_dir: Path) -> List[Path]:
        section = self.config.signer
        if section is None:
            return []
        sign_dir = output_dir / section.directory
        copied: List[Path] = []
        for name in section.files:
            source = repo_root / name
            if not source.is_file():
                continue
            sign_dir.mkdir(parents=True, exist_ok=True)
            destination = sign_dir / source.name
            shutil.copy2(source, destination)
            LOGGER.info("Copied %s to %s", source.name, sign_dir)
            copied.append(destination)
        return copied

    def write_version(self, output_dir: Path) -> Path:
        project = self.config.project
        path = output_dir / VERSION_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{project.version}-{project.revision}", encoding="utf-8")
        return path

    # --------------------------------------------------------------- phases
    def run_build(
        self,
        build_path: Path | str,
        output_dir: Path | str,
        *,
        repo_root: Path | str | None = None,
        script_path: Path | str | None = None,
        identity_override: str | None = None,
        compile_sources: bool = True,
    ) -> BuildReport:
        """Locate, patch, identify and build.

        Nothing is mutated until the repository root and the source tree
        are both found. With ``compile_sources`` false the external build
        commands and the VERSION file are skipped.
        """

        core = [spec for spec in self.config.patches if spec.stage is PatchStage.CORE]
        if len(core) != 1:
            raise ConfigError(
                "Exactly one core patch must be configured.",
                details={"core": [spec.path for spec in core]},
            )

        build_root = Path(build_path).resolve()
        output = Path(output_dir).resolve()
        repo = self.locate_repository(override=repo_root, script_path=script_path).resolve()
        try:
            source_tree = locate_source_tree(build_root, self.config.project.name, self.config.source.markers)
        except SourceTreeNotFound:
            emit_event("source_tree_not_found", build_path=build_root, project=self.config.project.name)
            raise
        emit_event("build_started", repo_root=repo, source_tree=source_tree, output_dir=output)

        companions = self.build_companions(build_root, repo, output, compile_sources=compile_sources)

        initialised = self.prepare_target(source_tree)
        applied = self.applier(repo).apply(source_tree, self.config.patches, self.feature_flags())

        identity = resolve(self.identity_override(identity_override), repo, self.identity_settings())
        identity_file = persist(identity, self.identity_location(output))
        LOGGER.info("Build identity %s (%s)", identity.token, identity.source.value)

        report = BuildReport(
            repo_root=repo,
            source_tree=source_tree,
            output_dir=output,
            git_initialised=initialised,
            applied=applied,
            identity=identity,
            identity_file=identity_file,
            companions=companions,
        )
        report.stamped = self.stamp(source_tree, repo, identity)
        self.copy_signing_files(repo, output)

        if compile_sources:
            build_dir = source_tree / self.config.build.build_dir
            build_dir.mkdir(parents=True, exist_ok=True)
            values = {
                "prefix": str(output),
                "source": str(source_tree),
                "build": str(build_dir),
                "repo": str(repo),
                "identity": identity.token,
            }
            report.commands = self._run_commands(self.config.build.commands, cwd=build_dir, values=values)
            report.version_file = self.write_version(output)

        emit_event(
            "build_finished",
            source_tree=source_tree,
            identity=identity.token,
            applied=len(applied.applied),
            skipped=len(applied.skipped),
            compiled=compile_sources,
        )
        return report

    def run_post_install(
        self,
        output_dir: Path | str,
        *,
        repo_root: Path | str | None = None,
        script_path: Path | str | None = None,
        identity_override: str | None = None,
    ) -> PostInstallReport:
        """Recover the build identity and invoke the signer.

        A missing signer script is not fatal: the result is reported as
        unsigned and a warning is logged.
        """

        output = Path(output_dir).resolve()
        repo: Path | None
        try:
            repo = self.locate_repository(override=repo_root, script_path=script_path).resolve()
        except RepositoryNotFound as error:
            LOGGER.info("Repository root unavailable for post-install: %s", error)
            repo = None

        identity = recover(
            self.identity_override(identity_override),
            self.identity_location(output),
            repo,
            self.identity_settings(),
        )

        section = self.config.signer
        if section is None:
            return PostInstallReport(identity=identity, signer=None, signed=False)

        sign_dir = output / section.directory
        signer = sign_dir / section.script
        if not signer.is_file():
            fallback = repo / section.script if repo is not None else None
            if fallback is not None and fallback.is_file():
                sign_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(fallback, signer)
                LOGGER.info("Copied signer %s to %s", fallback, sign_dir)
            else:
                LOGGER.warning("Signer %s not found; binaries not signed", section.script)
                emit_event("signing_skipped", output_dir=output, token=identity.token)
                return PostInstallReport(identity=identity, signer=None, signed=False)
        signer.chmod(signer.stat().st_mode | 0o755)

        artifacts: List[Path] = []
        for pattern in section.artifacts:
            artifacts.extend(sorted(path for path in output.glob(pattern) if path.is_file()))

        argv = [section.interpreter, signer.name, *(str(path) for path in artifacts)]
        result = run_tool(argv, cwd=sign_dir, env={section.token_env: identity.token})
        emit_event("signed", token=identity.token, signer=signer, artifacts=artifacts)
        return PostInstallReport(identity=identity, signer=signer, signed=True, artifacts=artifacts, result=result)


__all__ = [
    "VERSION_FILE",
    "BuildPipeline",
    "BuildReport",
    "CompanionReport",
    "PostInstallReport",
    "expand_arguments",
]
