# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

from stepci.cache import CacheStore
from stepci.config import load_pipeline
from stepci.engine import PipelineEngine
from stepci.errors import CacheUnavailable, ConfigError
from stepci.git_facts.git import GitError, current_branch
from stepci.model import PipelineSpec
from stepci.scheduler import skip_reason
from stepci.settings import EngineSettings
from stepci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = (
    ".circleci/config.yml",
    ".circleci/config.yaml",
    "stepci.yml",
    "stepci.yaml",
)


def find_pipeline_files(root: Path = Path(".")) -> list[Path]:
    """
    Find candidate pipeline files under `root`.

    Returns:
        List of Path objects for pipeline files
    """
    found = [root / name for name in DEFAULT_PIPELINE_FILES if (root / name).is_file()]
    found.extend(sorted(root.glob("*_pipeline.py")))
    return found


def discover_pipeline(config_arg: str | None) -> Path:
    """
    Pick the pipeline file from --config or by looking in the current directory.

    Raises:
        SystemExit: If no file (or more than one) can be found
    """
    console = get_console()

    if config_arg:
        path = Path(config_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {config_arg}",
                suggestion="Specify an existing file:\n  stepci run --config .circleci/config.yml",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py"],
            suggestion="Create .circleci/config.yml or specify one explicitly:\n  stepci run --config my_pipeline.py",
        )
        sys.exit(1)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in files],
            suggestion=f"Specify a pipeline explicitly:\n  stepci run --config {files[0]}",
        )
        sys.exit(1)

    return files[0]


def resolve_branch(branch_arg: str | None) -> str:
    if branch_arg:
        return branch_arg
    console = get_console()
    try:
        branch = current_branch()
    except GitError as e:
        console.print_error(
            "Could not determine branch",
            "No --branch given and git could not report the current branch.",
            details=[str(e)],
            suggestion="Pass the triggering branch explicitly:\n  stepci run --branch master",
        )
        sys.exit(1)
    if branch is None:
        console.print_error(
            "Detached HEAD",
            "No --branch given and HEAD is not on a branch.",
            suggestion="Pass the triggering branch explicitly:\n  stepci run --branch master",
        )
        sys.exit(1)
    return branch


def _settings(**overrides) -> EngineSettings:
    """STEPCI_* environment settings with the given CLI values applied."""
    console = get_console()
    try:
        settings = EngineSettings.from_env().override(**overrides)
    except ConfigError as e:
        console.print_error(
            "Invalid settings",
            e.message,
            suggestion="Fix or unset the variable, or pass the matching command line option.",
        )
        sys.exit(1)
    console.print_debug(f"settings: {settings}")
    return settings


def _load(path: Path, ctx) -> PipelineSpec:
    console = get_console()
    try:
        return load_pipeline(path)
    except ConfigError as e:
        console.print_error(
            "Invalid pipeline",
            e.message,
            details=[f"file: {e.path or path}", *(f"{k}: {v}" for k, v in e.details.items())],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stepci: run CircleCI-style pipelines locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_path", default=None, help="Pipeline file (.yml/.yaml/.py)")
@click.option("--branch", default=None, envvar="STEPCI_BRANCH", help="Triggering branch (defaults to the current git branch)")
@click.option("--workflow", "workflows", multiple=True, help="Only run this workflow (repeatable)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of jobs to run in parallel")
@click.option("--cache-dir", default=None, help="Cache directory [env: STEPCI_CACHE_DIR]")
@click.option("--work-dir", default=None, help="Where cloned sources go [env: STEPCI_WORK_DIR]")
@click.option("--home", default=None, help="Home directory for ~ paths and $HOME [env: STEPCI_HOME]")
@click.option("--step-timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-step timeout in seconds [env: STEPCI_STEP_TIMEOUT]")
@click.option("--shell", default=None, help="Shell for run steps [env: STEPCI_SHELL]")
@click.option("--repo", default=None, help="Clone this repository for checkout instead of using the local directory")
@click.option("--ref", default=None, help="Ref to check out with --repo (defaults to the branch)")
@click.option("--verbose/--quiet", default=False, help="Echo the full output of every step")
@click.pass_context
def run(ctx, config_path, branch, workflows, workers, cache_dir, work_dir, home, step_timeout, shell, repo, ref, verbose):
    """Run a pipeline for a branch."""
    console = get_console()
    console.verbose = verbose

    path = discover_pipeline(config_path)
    spec = _load(path, ctx)
    branch = resolve_branch(branch)

    settings = _settings(
        cache_dir=Path(cache_dir) if cache_dir else None,
        work_dir=Path(work_dir) if work_dir else None,
        home=Path(home) if home else None,
        max_workers=workers,
        step_timeout=step_timeout,
        shell=shell,
        source_repo=repo,
        source_ref=ref,
    )

    try:
        engine = PipelineEngine(settings, console=console)
        runs = engine.plan(spec, branch, list(workflows) or None)

        console.print_run_started(pipeline=str(path), branch=branch, job_count=len(runs))
        result = engine.run(spec, branch, list(workflows) or None)
        console.print_results(result)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    sys.exit(result.exit_code)


@cli.command()
@click.option("--config", "config_path", default=None, help="Pipeline file (.yml/.yaml/.py)")
@click.option("--branch", default=None, envvar="STEPCI_BRANCH", help="Triggering branch (defaults to the current git branch)")
@click.pass_context
def plan(ctx, config_path, branch):
    """Show which jobs would run for a branch."""
    console = get_console()
    path = discover_pipeline(config_path)
    spec = _load(path, ctx)
    branch = resolve_branch(branch)

    console.print_header(f"Plan for branch {branch!r}")
    for wf in spec.workflows.values():
        console.print_info(f"workflow {wf.name}:")
        for ref in wf.jobs:
            reason = skip_reason(ref, branch)
            if reason is None:
                why = "no filter" if ref.filter is None else "filter matched"
                console.print_plan_job(ref.job, why)
            else:
                console.print_plan_job_skipped(ref.job, reason)


@cli.command()
@click.option("--config", "config_path", default=None, help="Pipeline file (.yml/.yaml/.py)")
@click.pass_context
def validate(ctx, config_path):
    """Check that a pipeline file loads."""
    console = get_console()
    path = discover_pipeline(config_path)
    spec = _load(path, ctx)

    console.print_info(f"{path}: valid (version {spec.version})")
    for job in spec.jobs.values():
        console.print_info(f"  job {job.name}: {len(job.steps)} step(s), executor {job.executor.describe()}")
    for wf in spec.workflows.values():
        console.print_info(f"  workflow {wf.name}: {', '.join(r.job for r in wf.jobs) or '<no jobs>'}")


@cli.group()
def cache():
    """Inspect and manage the dependency cache."""


@cache.command("delete")
@click.argument("key")
@click.option("--cache-dir", default=None, help="Cache directory [env: STEPCI_CACHE_DIR]")
def cache_delete(key, cache_dir):
    """Delete the cache entry stored under KEY."""
    console = get_console()
    settings = _settings(cache_dir=Path(cache_dir) if cache_dir else None)
    store = CacheStore(settings.resolved_cache_dir())
    try:
        removed = store.delete(key)
    except CacheUnavailable as e:
        console.print_error("Cache unavailable", e.message)
        sys.exit(1)
    if removed:
        console.print_info(f"deleted cache entry {key!r}")
    else:
        console.print_info(f"no cache entry for {key!r}")


def main(argv: Optional[list[str]] = None) -> None:
    cli(args=argv)


if __name__ == "__main__":
    main()
