# executor.py
from __future__ import annotations

import os
import time
from typing import Dict, Optional

from .errors import CacheUnavailable, StepError
from .model import JobResult, JobRun, JobSpec, JobStatus, StepResult
from .steps import StepContext, StepRunner
from .ui.console import Console, get_console


def job_environment(job: JobSpec, ctx: StepContext, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Environment for every step of `job`:
    host env <- engine-provided vars <- job `environment`.
    Step-level variables are layered on top by the step runner.
    """
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "CI": "true",
            "STEPCI": "true",
            "STEPCI_JOB": job.name,
            "STEPCI_WORKFLOW": ctx.workflow,
            "STEPCI_BRANCH": ctx.branch,
            "HOME": str(ctx.home),
        }
    )
    env.update(job.environment)
    return env


class JobExecutor:
    """
    Runs the steps of one job in declared order.

    Fail-fast: the first fatal step error ends the job and nothing after it
    runs, save_cache steps included, so a broken job never writes the cache.
    """

    def __init__(self, runner: StepRunner, console: Optional[Console] = None):
        self.runner = runner
        self.console = console

    def _say(self, run: JobRun, line: str) -> None:
        run.log.append(line)

    def execute(self, run: JobRun, ctx: StepContext, base_env: Optional[Dict[str, str]] = None) -> JobResult:
        console = self.console or get_console()
        job = run.job
        started = time.monotonic()

        run.start()
        console.print_job_start(run.run_id, job.executor.describe())
        env = job_environment(job, ctx, base_env)

        results: list[StepResult] = []
        failed_step: Optional[str] = None

        for index, step in enumerate(job.steps):
            run.step_index = index
            console.print_step(run.run_id, step.name)
            self._say(run, f"STEP {index + 1}: {step.name}")

            try:
                result = self.runner.run(step, env, ctx)
            except CacheUnavailable as e:
                # caching is an optimization; keep going
                console.print_warning(run.run_id, f"{step.name}: {e.message}")
                self._say(run, f"WARNING: cache unavailable: {e.message}")
                result = StepResult(
                    name=step.name,
                    kind=step.kind,
                    exit_code=0,
                    duration_ms=e.duration_ms,
                    output=e.output,
                    error=e.kind,
                    message=e.message,
                )
            except StepError as e:
                result = StepResult(
                    name=step.name,
                    kind=step.kind,
                    exit_code=e.exit_code,
                    duration_ms=e.duration_ms,
                    output=e.output,
                    error=e.kind,
                    message=e.message,
                )
                console.print_failure(run.run_id, step.name, str(e), exit_code=e.exit_code, output=e.output)
            except Exception as e:
                # a bug in the runner must not take the whole pipeline down
                result = StepResult(
                    name=step.name,
                    kind=step.kind,
                    exit_code=1,
                    error="InternalError",
                    message=f"{type(e).__name__}: {e}",
                )
                console.print_failure(run.run_id, step.name, result.message or "", exit_code=1)
                if console.debug:
                    console.print_exception(e)

            results.append(result)
            console.print_step_output(run.run_id, result.output)

            if not result.ok:
                failed_step = step.name
                self._say(run, f"FAILED: {step.name} ({result.error}: {result.message})")
                break
            self._say(run, f"OK: {step.name} ({result.duration_ms} ms)")

        status = JobStatus.FAILED if failed_step is not None else JobStatus.SUCCEEDED
        run.finish(status)
        console.print_job_finished(run.run_id, status.value, time.monotonic() - started)

        return JobResult(
            workflow=run.workflow,
            job=job.name,
            status=status,
            steps=results,
            failed_step=failed_step,
            log=list(run.log),
        )
