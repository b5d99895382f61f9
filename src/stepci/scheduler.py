# scheduler.py
from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from .model import JobRef, JobResult, JobRun, JobStatus, PipelineSpec, WorkflowSpec


def eligible(workflow: WorkflowSpec, branch: str) -> List[JobRef]:
    """
    Job references of `workflow` that run on `branch`.

    No filter means always run; `only` is an exact-match allow list,
    `ignore` an exact-match deny list.
    """
    return [ref for ref in workflow.jobs if ref.filter is None or ref.filter.allows(branch)]


def skip_reason(ref: JobRef, branch: str) -> Optional[str]:
    """Why `ref` does not run on `branch`, or None if it does."""
    f = ref.filter
    if f is None:
        return None
    if f.only is not None and branch not in f.only:
        return f"branch {branch!r} not in only {list(f.only)}"
    if f.ignore is not None and branch in f.ignore:
        return f"branch {branch!r} is ignored"
    return None


def schedule(pipeline: PipelineSpec, workflow: WorkflowSpec, branch: str) -> List[JobRun]:
    """Create a pending JobRun for every job of `workflow` eligible on `branch`."""
    return [JobRun(workflow=workflow.name, job=pipeline.jobs[ref.job]) for ref in eligible(workflow, branch)]


def _default_workers(n_runs: int) -> int:
    c = os.cpu_count() or 2
    return max(1, min(n_runs, max(c - 1, 2)))


def dispatch(
    runs: List[JobRun],
    execute: Callable[[JobRun], JobResult],
    *,
    max_workers: Optional[int] = None,
    on_interrupt: Optional[Callable[[], None]] = None,
) -> Dict[str, JobResult]:
    """
    Run every JobRun concurrently and wait until all are terminal.

    Jobs are independent: a failing job does not cancel its siblings.
    Results are keyed by run id in dispatch order.

    On KeyboardInterrupt, queued jobs are dropped, `on_interrupt` is called
    to stop the running ones and the interrupt propagates without waiting.
    """
    if not runs:
        return {}

    if max_workers is None:
        max_workers = _default_workers(len(runs))

    results: Dict[str, JobResult] = {}

    pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stepci-job")
    try:
        in_flight = {pool.submit(execute, run): run for run in runs}

        for fut in as_completed(in_flight):
            run = in_flight[fut]
            try:
                results[run.run_id] = fut.result()
            except Exception as e:
                # executor bugs still end up as a terminal failed job
                if not run.status.terminal:
                    run.status = JobStatus.FAILED
                run.log.append(f"FAILED: {type(e).__name__}: {e}")
                results[run.run_id] = JobResult(
                    workflow=run.workflow,
                    job=run.job.name,
                    status=JobStatus.FAILED,
                    log=list(run.log),
                )
    except KeyboardInterrupt:
        pool.shutdown(wait=False, cancel_futures=True)
        if on_interrupt is not None:
            on_interrupt()
        raise
    pool.shutdown(wait=True)

    return {run.run_id: results[run.run_id] for run in runs}
