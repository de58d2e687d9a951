"""CLI commands for patching, building and signing a 3dfx-enabled emulator tree."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from .applier import AppliedReport, PatchState
from .config import DEFAULT_CONFIG_NAME, PipelineConfig, default_config_dict, load_config, write_config
from .errors import VmpatchError
from .identity import read_persisted, recover
from .locator import locate_source_tree
from .orchestrator import BuildPipeline
from .tools.normalize import DEFAULT_PROJECTS, PatchDialect, PatchNormalizer

APP_HELP = "Locate, normalise and apply emulator extension patches; resolve the build identity."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION_HELP = "Path to the pipeline configuration file."
_SCRIPT_PATH_HELP = "Start the upward repository search from here (defaults to the current directory)."


def _load(config_path: str) -> PipelineConfig:
    try:
        return load_config(Path(config_path))
    except VmpatchError as error:
        _fail(error)


def _search_start(script_path: Optional[Path]) -> Path:
    return script_path if script_path is not None else Path.cwd()


def _fail(error: VmpatchError) -> NoReturn:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1) from error


def _render_applied(report: AppliedReport) -> None:
    for staged in report.staged:
        status = "copied" if staged.copied else "missing"
        typer.echo(f"- stage {staged.source.name} -> {staged.destination}: {status}")
    for outcome in report.patches:
        line = f"- [{outcome.spec.stage.value}] {outcome.location.name}: {outcome.state.value}"
        if outcome.state is PatchState.SKIPPED and outcome.reason:
            line += f" ({outcome.reason})"
        typer.echo(line)
    for fix in report.inline_fixes:
        typer.echo(f"- fix {fix.path.name}: {'applied' if fix.applied else fix.reason}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline decisions to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default pipeline configuration."""

    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, default_config_dict())
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def locate(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Explicit repository root."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
    build_path: Optional[Path] = typer.Option(None, "--build-path", help="Also locate the source tree here."),
) -> None:
    """Print the located companion repository (and source tree)."""

    pipeline = BuildPipeline(_load(config))
    try:
        root = pipeline.locate_repository(override=repo_root, script_path=_search_start(script_path))
        typer.echo(f"Repository: {root}")
        if build_path is not None:
            tree = locate_source_tree(build_path, pipeline.config.project.name, pipeline.config.source.markers)
            typer.echo(f"Source tree: {tree}")
    except VmpatchError as error:
        _fail(error)


@app.command()
def normalize(
    patch: Path = typer.Argument(..., exists=True, dir_okay=False, help="Patch file to normalise."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write here instead of stdout."),
    dialect: Optional[PatchDialect] = typer.Option(None, "--dialect", help="Header dialect; detected if omitted."),
    project: List[str] = typer.Option(None, "--project", "-p", help="Known project name (repeatable)."),
) -> None:
    """Rewrite a patch's headers so it applies independent of versioned directories."""

    normalizer = PatchNormalizer(projects=tuple(project) if project else DEFAULT_PROJECTS)
    data = normalizer.normalize_file(patch, dialect)
    if output is None:
        typer.echo(data, nl=False)
        return
    output.write_bytes(data)
    typer.echo(f"Wrote normalised patch to {output}.")


@app.command()
def apply(
    build_path: Path = typer.Argument(..., help="Directory holding the extracted upstream sources."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Explicit repository root."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
) -> None:
    """Stage sources and apply the patch set without building."""

    pipeline = BuildPipeline(_load(config))
    try:
        root = pipeline.locate_repository(override=repo_root, script_path=_search_start(script_path))
        tree = locate_source_tree(build_path, pipeline.config.project.name, pipeline.config.source.markers)
        pipeline.prepare_target(tree)
        report = pipeline.applier(root).apply(tree, pipeline.config.patches, pipeline.feature_flags())
    except VmpatchError as error:
        _fail(error)
    typer.echo(f"Patched {tree}:")
    _render_applied(report)


@app.command()
def identity(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Install prefix holding the persisted token."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Explicit repository root."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
    override: Optional[str] = typer.Option(None, "--override", help="Explicit identity token."),
) -> None:
    """Print the build identity as the post-install phase would see it."""

    pipeline = BuildPipeline(_load(config))
    try:
        root = pipeline.locate_repository(override=repo_root, script_path=_search_start(script_path))
    except VmpatchError as error:
        _fail(error)
    location = pipeline.identity_location(output_dir) if output_dir is not None else None
    result = recover(pipeline.identity_override(override), location, root, pipeline.identity_settings())
    typer.echo(f"{result.token} ({result.source.value})")


@app.command()
def build(
    build_path: Path = typer.Argument(..., help="Directory holding the extracted upstream sources."),
    output_dir: Path = typer.Argument(..., help="Install prefix."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Explicit repository root."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
    override: Optional[str] = typer.Option(None, "--identity", help="Explicit identity token."),
    compile_sources: bool = typer.Option(True, "--compile/--no-compile", help="Run the external build commands."),
) -> None:
    """Run the build phase: locate, patch, identify, stamp and compile."""

    pipeline = BuildPipeline(_load(config))
    try:
        report = pipeline.run_build(
            build_path,
            output_dir,
            repo_root=repo_root,
            script_path=_search_start(script_path),
            identity_override=override,
            compile_sources=compile_sources,
        )
    except VmpatchError as error:
        _fail(error)
    typer.echo(f"Repository: {report.repo_root}")
    typer.echo(f"Source tree: {report.source_tree}")
    _render_applied(report.applied)
    typer.echo(f"Identity: {report.identity.token} ({report.identity.source.value})")
    if not report.stamped:
        typer.echo("Warning: commit stamp not applied.")
    if report.version_file is not None:
        typer.echo(f"Version file: {report.version_file}")


@app.command("post-install")
def post_install(
    output_dir: Path = typer.Argument(..., help="Install prefix used by the build phase."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Explicit repository root."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
    override: Optional[str] = typer.Option(None, "--identity", help="Explicit identity token."),
) -> None:
    """Recover the identity and run the signer."""

    pipeline = BuildPipeline(_load(config))
    try:
        report = pipeline.run_post_install(
            output_dir,
            repo_root=repo_root,
            script_path=_search_start(script_path),
            identity_override=override,
        )
    except VmpatchError as error:
        _fail(error)
    typer.echo(f"Identity: {report.identity.token} ({report.identity.source.value})")
    if report.signed:
        typer.echo(f"Signed {len(report.artifacts)} artifact(s) with {report.signer}.")
    else:
        typer.echo("Warning: signer not found; binaries not signed.")


@app.command()
def status(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Install prefix to inspect."),
    script_path: Optional[Path] = typer.Option(None, "--script-path", help=_SCRIPT_PATH_HELP),
) -> None:
    """Summarise configuration, feature gates and persisted identity."""

    pipeline = BuildPipeline(_load(config))
    project = pipeline.config.project
    typer.echo(f"Project: {project.name} {project.version}-{project.revision}")
    typer.echo(f"Patches configured: {len(pipeline.config.patches)}")
    flags = pipeline.feature_flags()
    for name in sorted(pipeline.config.features):
        typer.echo(f"Feature {name}: {'enabled' if name in flags else 'disabled'}")
    try:
        typer.echo(f"Repository: {pipeline.locate_repository(script_path=_search_start(script_path))}")
    except VmpatchError as error:
        typer.echo(f"Repository: not found ({error})")
    if output_dir is not None:
        token = read_persisted(pipeline.identity_location(output_dir))
        typer.echo(f"Persisted identity: {token or 'none'}")


if __name__ == "__main__":
    app()
