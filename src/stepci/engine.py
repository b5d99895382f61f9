# engine.py
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .cache import CacheStore
from .errors import ConfigError
from .executor import JobExecutor
from .model import JobResult, JobRun, JobStatus, PipelineResult, PipelineSpec
from .scheduler import dispatch, schedule
from .settings import EngineSettings
from .steps import StepContext, StepRunner
from .ui.console import Console, get_console


def overall_status(results: Iterable[JobResult]) -> JobStatus:
    """Succeeded iff every dispatched job succeeded (vacuously true for none)."""
    return JobStatus.SUCCEEDED if all(r.status is JobStatus.SUCCEEDED for r in results) else JobStatus.FAILED


class PipelineEngine:
    """
    Top level: pick workflows, schedule their jobs for a branch, run them
    and fold the per-job results into one pass/fail.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        cache: Optional[CacheStore] = None,
        runner: Optional[StepRunner] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings or EngineSettings()
        self.cache = cache if cache is not None else CacheStore(self.settings.resolved_cache_dir())
        self.runner = runner or StepRunner(
            self.cache,
            shell=self.settings.shell,
            timeout=self.settings.step_timeout,
        )
        self.console = console
        self.executor = JobExecutor(self.runner, console)

    def _workspace_for(self, run: JobRun) -> Path:
        # one directory per job so parallel jobs never share a tree
        return self.settings.resolved_work_dir() / run.workflow / run.job.name

    def context_for(self, run: JobRun, branch: str) -> StepContext:
        workspace = self._workspace_for(run)
        local = not self.settings.source_repo
        if local and workspace.exists():
            # a clone is reused and fetched, a local copy starts over
            shutil.rmtree(workspace)
        workspace.mkdir(parents=True, exist_ok=True)
        return StepContext(
            workflow=run.workflow,
            job=run.job.name,
            branch=branch,
            workspace=workspace,
            home=self.settings.resolved_home(),
            working_directory=run.job.working_directory,
            source_repo=self.settings.source_repo,
            source_ref=self.settings.source_ref or branch,
            source_dir=self.settings.resolved_project_dir() if local else None,
            source_exclude=(self.settings.resolved_work_dir(), self.settings.resolved_cache_dir()),
        )

    def plan(self, pipeline: PipelineSpec, branch: str, workflows: Optional[List[str]] = None) -> List[JobRun]:
        """JobRuns that `run` would dispatch, without running anything."""
        names = list(pipeline.workflows) if not workflows else list(workflows)
        runs: List[JobRun] = []
        for name in names:
            wf = pipeline.workflows.get(name)
            if wf is None:
                raise ConfigError(
                    None,
                    f"unknown workflow {name!r}",
                    {"known": ", ".join(sorted(pipeline.workflows)) or "<none>"},
                )
            runs.extend(schedule(pipeline, wf, branch))
        return runs

    def run(self, pipeline: PipelineSpec, branch: str, workflows: Optional[List[str]] = None) -> PipelineResult:
        runs = self.plan(pipeline, branch, workflows)
        contexts: Dict[str, StepContext] = {run.run_id: self.context_for(run, branch) for run in runs}

        def _execute(run: JobRun) -> JobResult:
            return self.executor.execute(run, contexts[run.run_id])

        results = dispatch(
            runs,
            _execute,
            max_workers=self.settings.max_workers,
            on_interrupt=self.runner.cancel,
        )
        return PipelineResult(
            status=overall_status(results.values()),
            branch=branch,
            jobs=results,
        )


def run_pipeline(
    pipeline: PipelineSpec,
    branch: str,
    settings: Optional[EngineSettings] = None,
    workflows: Optional[List[str]] = None,
) -> PipelineResult:
    """Convenience wrapper: build an engine with `settings` and run once."""
    engine = PipelineEngine(settings, console=get_console())
    return engine.run(pipeline, branch, workflows)
