"""Tests for running individual steps."""

from __future__ import annotations

import threading
import time

import pytest

from stepci.dsl import checkout, job, restore_cache, run, save_cache
from stepci.errors import CacheUnavailable, Cancelled, NonZeroExit, SourceUnavailable, Timeout
from stepci.executor import job_environment
from stepci.steps import StepRunner


class TestRunStep:
    def test_success_captures_stdout_and_stderr(self, runner, ctx):
        result = runner.run(run("echo out; echo err >&2", "Say"), {"PATH": "/usr/bin:/bin"}, ctx)

        assert result.exit_code == 0
        assert result.ok
        assert "out" in result.output
        assert "err" in result.output
        assert result.duration_ms >= 0

    def test_non_zero_exit(self, runner, ctx):
        with pytest.raises(NonZeroExit) as exc:
            runner.run(run("echo partial; exit 3"), {"PATH": "/usr/bin:/bin"}, ctx)

        assert exc.value.exit_code == 3
        assert "partial" in exc.value.output

    def test_pipefail_is_on_by_default(self, runner, ctx):
        with pytest.raises(NonZeroExit):
            runner.run(run("false | cat"), {"PATH": "/usr/bin:/bin"}, ctx)

    def test_runs_in_workspace(self, runner, ctx, project):
        result = runner.run(run("pwd"), {"PATH": "/usr/bin:/bin"}, ctx)
        assert result.output.strip() == str(project)

    def test_working_directory(self, runner, ctx, project):
        (project / "backend").mkdir()
        result = runner.run(run("pwd", working_directory="backend"), {"PATH": "/usr/bin:/bin"}, ctx)
        assert result.output.strip() == str(project / "backend")

    def test_missing_working_directory(self, runner, ctx):
        with pytest.raises(SourceUnavailable, match="working directory not found"):
            runner.run(run("true", working_directory="nope"), {"PATH": "/usr/bin:/bin"}, ctx)

    def test_step_environment_overrides_job_environment(self, runner, ctx):
        spec = job("j", environment={"WHO": "job", "ONLY_JOB": "yes"})
        env = job_environment(spec, ctx, base={"PATH": "/usr/bin:/bin"})

        step = run('test "$WHO" = step && test "$ONLY_JOB" = yes', environment={"WHO": "step"})
        assert runner.run(step, env, ctx).ok

    def test_exports_do_not_leak_between_steps(self, runner, ctx):
        env = {"PATH": "/usr/bin:/bin"}
        runner.run(run("export LEAKED=1"), env, ctx)
        result = runner.run(run('echo "[${LEAKED:-}]"'), env, ctx)
        assert result.output.strip() == "[]"

    def test_timeout_kills_the_command(self, runner, ctx):
        started = time.monotonic()
        with pytest.raises(Timeout) as exc:
            runner.run(run("echo started; sleep 10; echo done", timeout=0.5), {"PATH": "/usr/bin:/bin"}, ctx)

        assert time.monotonic() - started < 5
        assert exc.value.seconds == 0.5
        assert "started" in exc.value.output
        assert "done" not in exc.value.output

    def test_runner_default_timeout(self, store, ctx):
        runner = StepRunner(store, timeout=0.5)
        with pytest.raises(Timeout):
            runner.run(run("sleep 10"), {"PATH": "/usr/bin:/bin"}, ctx)

    def test_missing_shell(self, runner, ctx):
        with pytest.raises(NonZeroExit) as exc:
            runner.run(run("true", shell="/definitely/not/a/shell"), {"PATH": "/usr/bin:/bin"}, ctx)
        assert exc.value.exit_code == 127


class TestCheckout:
    def test_local_source(self, runner, ctx, project):
        result = runner.run(checkout(), {}, ctx)
        assert result.ok
        assert str(project) in result.output

    def test_local_source_missing(self, runner, ctx, tmp_path):
        ctx.workspace = tmp_path / "gone"
        with pytest.raises(SourceUnavailable):
            runner.run(checkout(), {}, ctx)

    def test_unreachable_repository(self, runner, ctx, tmp_path):
        ctx.source_repo = str(tmp_path / "no-such-repo")
        ctx.source_ref = "master"
        with pytest.raises(SourceUnavailable, match="cannot fetch"):
            runner.run(checkout(), {}, ctx)


class TestCacheSteps:
    def test_restore_miss_is_success(self, runner, ctx, quiet_console):
        result = runner.run(restore_cache("dependencies"), {}, ctx)

        assert result.ok
        assert result.message == "miss"
        assert "CACHE: miss (dependencies)" in quiet_console._stream.getvalue()

    def test_save_then_restore(self, runner, ctx, project):
        (project / ".servo").mkdir()
        (project / ".servo" / "x").write_text("x")

        saved = runner.run(save_cache("dependencies", [".servo"]), {}, ctx)
        (project / ".servo" / "x").unlink()
        restored = runner.run(restore_cache("dependencies"), {}, ctx)

        assert saved.message == "saved dependencies"
        assert restored.message == "hit dependencies"
        assert (project / ".servo" / "x").read_text() == "x"

    def test_branch_template_in_key(self, runner, ctx, project):
        (project / "f").write_text("x")
        runner.run(save_cache("deps-{{ .Branch }}", ["f"]), {}, ctx)
        assert runner.cache.restore("deps-master") is not None

    def test_bad_template_is_a_cache_error(self, runner, ctx):
        with pytest.raises(CacheUnavailable, match="cannot render cache key"):
            runner.run(save_cache("deps-{{ checksum \"missing.lock\" }}", ["f"]), {}, ctx)

    def test_store_errors_carry_the_step_name(self, tmp_path, ctx):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        from stepci.cache import CacheStore

        runner = StepRunner(CacheStore(blocker / "cache"))
        with pytest.raises(CacheUnavailable) as exc:
            runner.run(restore_cache("dependencies", name="Restore deps"), {}, ctx)
        assert exc.value.step == "Restore deps"


class TestCancel:
    def test_cancel_kills_the_running_command(self, runner, ctx):
        errors = []

        def work():
            try:
                runner.run(run("echo started; sleep 30"), {"PATH": "/usr/bin:/bin"}, ctx)
            except Cancelled as e:
                errors.append(e)

        t = threading.Thread(target=work)
        started = time.monotonic()
        t.start()
        deadline = started + 5
        while not runner._live and time.monotonic() < deadline:
            time.sleep(0.01)

        runner.cancel()
        t.join(5)

        assert not t.is_alive()
        assert time.monotonic() - started < 5
        assert len(errors) == 1
        assert errors[0].exit_code == 130

    def test_steps_after_cancel_do_not_start(self, runner, ctx, project):
        runner.cancel()
        with pytest.raises(Cancelled):
            runner.run(run(f"touch {project / 'ran'}"), {"PATH": "/usr/bin:/bin"}, ctx)
        assert not (project / "ran").exists()


class TestLocalCopy:
    def test_checkout_copies_source_dir(self, runner, ctx, project, tmp_path):
        (project / "src.txt").write_text("src")
        ctx.source_dir = project
        ctx.workspace = tmp_path / "ws"
        ctx.workspace.mkdir()

        result = runner.run(checkout(), {}, ctx)

        assert "Copied" in result.output
        assert (ctx.workspace / "src.txt").read_text() == "src"

    def test_excluded_dirs_are_skipped(self, runner, ctx, project, tmp_path):
        (project / ".stepci" / "cache").mkdir(parents=True)
        (project / ".stepci" / "cache" / "blob").write_text("x")
        ctx.source_dir = project
        ctx.source_exclude = (project / ".stepci" / "cache",)
        ctx.workspace = tmp_path / "ws"
        ctx.workspace.mkdir()

        runner.run(checkout(), {}, ctx)

        assert not (ctx.workspace / ".stepci" / "cache").exists()

    def test_missing_source_dir(self, runner, ctx, tmp_path):
        ctx.source_dir = tmp_path / "gone"
        with pytest.raises(SourceUnavailable, match="project directory not found"):
            runner.run(checkout(), {}, ctx)
