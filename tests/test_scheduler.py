"""Tests for branch filtering and concurrent dispatch."""

from __future__ import annotations

import threading
import time

import pytest

from stepci.dsl import ignore, job, only, pipeline, workflow
from stepci.model import JobResult, JobRun, JobStatus
from stepci.scheduler import dispatch, eligible, schedule, skip_reason


def _pipeline():
    j1 = job("J1")
    j2 = job("J2")
    j3 = job("J3")
    wf = workflow("W", j1, only(j2, "master"), ignore(j3, "gh-pages"))
    return pipeline(j1, j2, j3, workflows=[wf])


class TestBranchFilters:
    def test_feature_branch_skips_only_master_job(self):
        spec = _pipeline()
        assert [r.job for r in eligible(spec.workflows["W"], "feature")] == ["J1", "J3"]

    def test_master_runs_everything(self):
        spec = _pipeline()
        assert [r.job for r in eligible(spec.workflows["W"], "master")] == ["J1", "J2", "J3"]

    def test_ignored_branch(self):
        spec = _pipeline()
        assert [r.job for r in eligible(spec.workflows["W"], "gh-pages")] == ["J1"]

    def test_only_is_an_exact_match(self):
        spec = _pipeline()
        assert "J2" not in [r.job for r in eligible(spec.workflows["W"], "master-2")]

    def test_skip_reason(self):
        refs = {r.job: r for r in _pipeline().workflows["W"].jobs}
        assert skip_reason(refs["J1"], "feature") is None
        assert "not in only" in skip_reason(refs["J2"], "feature")
        assert "ignored" in skip_reason(refs["J3"], "gh-pages")

    def test_schedule_creates_pending_runs(self):
        spec = _pipeline()
        runs = schedule(spec, spec.workflows["W"], "master")
        assert [r.run_id for r in runs] == ["W/J1", "W/J2", "W/J3"]
        assert all(r.status is JobStatus.PENDING for r in runs)


def _finish(run: JobRun, status: JobStatus) -> JobResult:
    run.start()
    run.finish(status)
    return JobResult(workflow=run.workflow, job=run.job.name, status=status)


class TestDispatch:
    def test_no_runs(self):
        assert dispatch([], lambda r: None) == {}

    def test_jobs_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        def execute(run):
            # both jobs must be in flight at once to get past the barrier
            barrier.wait()
            return _finish(run, JobStatus.SUCCEEDED)

        runs = [JobRun(workflow="W", job=job("a")), JobRun(workflow="W", job=job("b"))]
        results = dispatch(runs, execute, max_workers=2)

        assert [r.status for r in results.values()] == [JobStatus.SUCCEEDED, JobStatus.SUCCEEDED]

    def test_failure_does_not_cancel_siblings(self):
        def execute(run):
            if run.job.name == "bad":
                return _finish(run, JobStatus.FAILED)
            return _finish(run, JobStatus.SUCCEEDED)

        runs = [JobRun(workflow="W", job=job("bad")), JobRun(workflow="W", job=job("good"))]
        results = dispatch(runs, execute, max_workers=2)

        assert results["W/bad"].status is JobStatus.FAILED
        assert results["W/good"].status is JobStatus.SUCCEEDED
        assert all(r.status.terminal for r in runs)

    def test_executor_exception_becomes_a_failed_job(self):
        def execute(run):
            if run.job.name == "boom":
                run.start()
                raise RuntimeError("executor bug")
            return _finish(run, JobStatus.SUCCEEDED)

        runs = [JobRun(workflow="W", job=job("boom")), JobRun(workflow="W", job=job("ok"))]
        results = dispatch(runs, execute)

        assert results["W/boom"].status is JobStatus.FAILED
        assert "executor bug" in results["W/boom"].log[-1]
        assert runs[0].status is JobStatus.FAILED
        assert results["W/ok"].status is JobStatus.SUCCEEDED

    def test_results_keep_dispatch_order(self):
        runs = [JobRun(workflow="W", job=job(n)) for n in ("c", "a", "b")]
        results = dispatch(runs, lambda r: _finish(r, JobStatus.SUCCEEDED))
        assert list(results) == ["W/c", "W/a", "W/b"]


class TestInterrupt:
    def test_interrupt_drops_queued_jobs_and_stops_running_ones(self, monkeypatch):
        started = threading.Event()
        release = threading.Event()
        executed = []

        def execute(run):
            executed.append(run.job.name)
            started.set()
            release.wait(5)
            return _finish(run, JobStatus.FAILED)

        def interrupted(fs):
            started.wait(5)
            raise KeyboardInterrupt
            yield  # pragma: no cover

        monkeypatch.setattr("stepci.scheduler.as_completed", interrupted)
        runs = [JobRun(workflow="W", job=job(n)) for n in ("a", "b", "c")]

        with pytest.raises(KeyboardInterrupt):
            dispatch(runs, execute, max_workers=1, on_interrupt=release.set)

        assert release.is_set()
        time.sleep(0.2)
        assert executed == ["a"]
        assert runs[1].status is JobStatus.PENDING
        assert runs[2].status is JobStatus.PENDING
