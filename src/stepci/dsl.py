# src/stepci/dsl.py
from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Union

from .config import assemble_pipeline, parse_duration
from .model import (
    BranchFilter,
    Checkout,
    ExecutorSpec,
    JobRef,
    JobSpec,
    PipelineSpec,
    RestoreCache,
    RunStep,
    SaveCache,
    StepSpec,
    WorkflowSpec,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def checkout(path: str | None = None) -> Checkout:
    return Checkout(path=path)


def run(
    command: str,
    name: str | None = None,
    *,
    working_directory: str | None = None,
    environment: Optional[Dict[str, object]] = None,
    shell: str | None = None,
    timeout: Union[str, float, None] = None,
) -> RunStep:
    """Create a shell step. `timeout` takes seconds or '30s' / '10m' / '1h'."""
    return RunStep(
        command=command,
        label=name,
        working_directory=working_directory,
        # force values to str, same as YAML environment blocks
        environment=MappingProxyType({k: str(v) for k, v in (environment or {}).items()}),
        shell=shell,
        timeout=parse_duration(timeout),
    )


def sh(name: str, cmd: str, *, cwd: str | None = None) -> RunStep:
    """Named shell step, short form."""
    return run(cmd, name, working_directory=cwd)


def restore_cache(*keys: str, name: str | None = None) -> RestoreCache:
    if not keys:
        raise ValueError("restore_cache() needs at least one key")
    return RestoreCache(keys=tuple(keys), label=name)


def save_cache(key: str, paths: Iterable[str], *, name: str | None = None) -> SaveCache:
    if isinstance(paths, str):
        paths = [paths]
    paths = tuple(paths)
    if not paths:
        raise ValueError("save_cache() needs a non-empty list of paths")
    return SaveCache(key=key, paths=paths, label=name)


# ---------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------

def docker(image: str, *services: str) -> ExecutorSpec:
    return ExecutorSpec(kind="docker", image=image, services=tuple(services))


def machine(image: str | None = None) -> ExecutorSpec:
    return ExecutorSpec(kind="machine", image=image)


# ---------------------------------------------------------------------
# Jobs / workflows
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", checkout(), run(...))
    executor: Optional[ExecutorSpec] = None,
    environment: Optional[Dict[str, object]] = None,
    working_directory: str | None = None,
) -> JobSpec:
    """A job may have zero steps; it then trivially succeeds."""
    return JobSpec(
        name=name,
        steps=tuple(steps),
        executor=executor or ExecutorSpec(),
        environment=MappingProxyType({k: str(v) for k, v in (environment or {}).items()}),
        working_directory=working_directory,
    )


def only(job_name: Union[str, JobSpec], *branches: str) -> JobRef:
    """Reference a job that runs only on the given branches."""
    name = job_name.name if isinstance(job_name, JobSpec) else job_name
    return JobRef(job=name, filter=BranchFilter(only=tuple(branches)))


def ignore(job_name: Union[str, JobSpec], *branches: str) -> JobRef:
    """Reference a job that runs on every branch except the given ones."""
    name = job_name.name if isinstance(job_name, JobSpec) else job_name
    return JobRef(job=name, filter=BranchFilter(ignore=tuple(branches)))


def workflow(name: str, *jobs: Union[str, JobSpec, JobRef]) -> WorkflowSpec:
    refs: List[JobRef] = []
    for j in jobs:
        if isinstance(j, JobRef):
            refs.append(j)
        elif isinstance(j, JobSpec):
            refs.append(JobRef(job=j.name))
        else:
            refs.append(JobRef(job=j))
    return WorkflowSpec(name=name, jobs=tuple(refs))


def pipeline(
    *jobs: JobSpec,
    workflows: Iterable[WorkflowSpec] = (),
    version: str = "2.1",
) -> PipelineSpec:
    """
    Pipeline definition helper.

    Users can write, in e.g. `stepci_pipeline.py`:

        from stepci.dsl import pipeline, job, workflow, only, checkout, run

        def pipeline_spec():
            lint = job("lint", checkout(), run("ruff check ."))
            test = job("test", checkout(), run("pytest -q"))
            return pipeline(lint, test, workflows=[workflow("ci", lint, only(test, "main"))])

        PIPELINE = pipeline_spec()

    Without workflows, a single "default" workflow runs every job.
    """
    workflows = list(workflows)
    if not workflows:
        workflows = [workflow("default", *jobs)]
    return assemble_pipeline(version, jobs, workflows)
