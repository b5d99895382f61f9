# steps.py
from __future__ import annotations

import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Set, Tuple

from .cache import CacheStore
from .errors import CacheUnavailable, Cancelled, ConfigError, NonZeroExit, SourceUnavailable, Timeout
from .git_facts.git import GitError, clone_at, head_sha
from .keys import KeyContext, render_key
from .model import Checkout, RestoreCache, RunStep, SaveCache, StepResult, StepSpec
from .settings import DEFAULT_SHELL
from .ui.console import get_console


@dataclass
class StepContext:
    """Everything about the surrounding job a step may need."""
    workflow: str
    job: str
    branch: str
    workspace: Path
    home: Path
    working_directory: Optional[str] = None  # job default for run steps
    source_repo: Optional[str] = None
    source_ref: Optional[str] = None
    # local mode: checkout copies this tree into the workspace
    source_dir: Optional[Path] = None
    source_exclude: Tuple[Path, ...] = ()

    @property
    def run_id(self) -> str:
        return f"{self.workflow}/{self.job}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _kill_group(proc: subprocess.Popen) -> None:
    # the shell may have spawned children that hold the output pipe open
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _ignore_paths(excluded: Tuple[Path, ...]) -> Callable[[str, List[str]], List[str]]:
    # work/cache dirs usually live inside the project; never copy them into a job
    skip = {p.resolve() for p in excluded}

    def ignore(dirname: str, names: List[str]) -> List[str]:
        return [n for n in names if (Path(dirname) / n).resolve() in skip]

    return ignore


def copy_source(src: Path, dest: Path, exclude: Tuple[Path, ...] = ()) -> None:
    """Copy the project tree at `src` into a job workspace."""
    shutil.copytree(src, dest, symlinks=True, ignore=_ignore_paths(exclude), dirs_exist_ok=True)


def _expand_dir(raw: str, ctx: StepContext) -> Path:
    if raw == "~" or raw.startswith("~/"):
        return (ctx.home / raw[2:]).resolve() if raw != "~" else ctx.home
    return (ctx.workspace / raw).resolve()


class StepRunner:
    """
    Executes a single step and reports how it went.

    Successful steps return a StepResult. Failures raise a StepError
    subclass; whether that ends the job is the executor's call.

    `cancel()` kills every running command and makes later steps fail with
    Cancelled. It is permanent for this runner.
    """

    def __init__(self, cache: CacheStore, *, shell: str = DEFAULT_SHELL, timeout: Optional[float] = None):
        self.cache = cache
        self.shell = shell
        self.timeout = timeout
        self._live: Set[subprocess.Popen] = set()
        self._live_lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._live_lock:
            procs = list(self._live)
        for proc in procs:
            _kill_group(proc)

    def run(self, step: StepSpec, env: Mapping[str, str], ctx: StepContext) -> StepResult:
        if self.cancelled:
            raise Cancelled(step=step.name, message="run interrupted")
        if isinstance(step, Checkout):
            return self._checkout(step, ctx)
        if isinstance(step, RunStep):
            return self._run_command(step, env, ctx)
        if isinstance(step, RestoreCache):
            return self._restore_cache(step, env, ctx)
        if isinstance(step, SaveCache):
            return self._save_cache(step, env, ctx)
        raise TypeError(f"unknown step type: {type(step).__name__}")

    # -----------------------------------------------------------------
    # checkout
    # -----------------------------------------------------------------

    def _checkout(self, step: Checkout, ctx: StepContext) -> StepResult:
        started = time.monotonic()
        dest = _expand_dir(step.path, ctx) if step.path else ctx.workspace

        if ctx.source_repo:
            try:
                clone_at(ctx.source_repo, ctx.source_ref, dest)
            except GitError as e:
                raise SourceUnavailable(
                    step=step.name,
                    message=f"cannot fetch {ctx.source_repo}@{ctx.source_ref or 'HEAD'}: {e}",
                    duration_ms=_elapsed_ms(started),
                ) from e
            output = f"Checked out {ctx.source_repo} ({ctx.source_ref or 'default branch'}) into {dest}\n"
        elif ctx.source_dir is not None:
            if not ctx.source_dir.is_dir():
                raise SourceUnavailable(
                    step=step.name,
                    message=f"project directory not found: {ctx.source_dir}",
                    duration_ms=_elapsed_ms(started),
                )
            try:
                copy_source(ctx.source_dir, dest, ctx.source_exclude)
            except (OSError, shutil.Error) as e:
                raise SourceUnavailable(
                    step=step.name,
                    message=f"cannot copy {ctx.source_dir} into {dest}: {e}",
                    duration_ms=_elapsed_ms(started),
                ) from e
            output = f"Copied {ctx.source_dir} into {dest}\n"
        else:
            if not dest.is_dir():
                raise SourceUnavailable(
                    step=step.name,
                    message=f"project directory not found: {dest}",
                    duration_ms=_elapsed_ms(started),
                )
            output = f"Using local source at {dest}\n"

        return StepResult(name=step.name, kind=step.kind, duration_ms=_elapsed_ms(started), output=output)

    # -----------------------------------------------------------------
    # run
    # -----------------------------------------------------------------

    def _run_command(self, step: RunStep, env: Mapping[str, str], ctx: StepContext) -> StepResult:
        started = time.monotonic()

        raw_cwd = step.working_directory or ctx.working_directory
        cwd = _expand_dir(raw_cwd, ctx) if raw_cwd else ctx.workspace
        if not cwd.is_dir():
            raise SourceUnavailable(step=step.name, message=f"working directory not found: {cwd}")

        step_env = dict(env)
        step_env.update(step.environment)
        step_env["STEPCI_WORKING_DIRECTORY"] = str(cwd)

        argv = [*shlex.split(step.shell or self.shell), "-c", step.command]
        timeout = step.timeout if step.timeout is not None else self.timeout

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=step_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise NonZeroExit(
                step=step.name,
                message=f"cannot start shell {argv[0]!r}: {e}",
                duration_ms=_elapsed_ms(started),
                code=127,
            ) from e

        with self._live_lock:
            self._live.add(proc)
        if self.cancelled:
            # cancel() may have run between the check in run() and registration
            _kill_group(proc)

        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            output, _ = proc.communicate()
            raise Timeout(
                step=step.name,
                message=f"exceeded {timeout:g}s",
                output=output or "",
                duration_ms=_elapsed_ms(started),
                seconds=float(timeout),
            )
        finally:
            with self._live_lock:
                self._live.discard(proc)

        if self.cancelled:
            raise Cancelled(
                step=step.name,
                message="run interrupted",
                output=output or "",
                duration_ms=_elapsed_ms(started),
            )

        if proc.returncode != 0:
            raise NonZeroExit(
                step=step.name,
                message=f"command exited with code {proc.returncode}",
                output=output or "",
                duration_ms=_elapsed_ms(started),
                code=proc.returncode,
            )

        return StepResult(
            name=step.name,
            kind=step.kind,
            exit_code=0,
            duration_ms=_elapsed_ms(started),
            output=output or "",
        )

    # -----------------------------------------------------------------
    # cache
    # -----------------------------------------------------------------

    def _key_context(self, env: Mapping[str, str], ctx: StepContext) -> KeyContext:
        return KeyContext(
            workspace=ctx.workspace,
            branch=ctx.branch,
            environment=env,
            revision=lambda: head_sha(ctx.workspace),
        )

    def _render(self, template: str, step: StepSpec, env: Mapping[str, str], ctx: StepContext) -> str:
        try:
            return render_key(template, self._key_context(env, ctx))
        except (ConfigError, GitError, OSError) as e:
            # an unusable key means no caching, not a broken job
            raise CacheUnavailable(step=step.name, message=f"cannot render cache key: {e}") from e

    def _restore_cache(self, step: RestoreCache, env: Mapping[str, str], ctx: StepContext) -> StepResult:
        started = time.monotonic()
        console = get_console()
        keys = [self._render(k, step, env, ctx) for k in step.keys]

        try:
            entry = self.cache.restore_first(keys, workspace=ctx.workspace, home=ctx.home)
        except CacheUnavailable as e:
            e.step = step.name
            e.duration_ms = _elapsed_ms(started)
            raise

        if entry is None:
            console.print_cache_miss(ctx.run_id, keys)
            return StepResult(
                name=step.name,
                kind=step.kind,
                duration_ms=_elapsed_ms(started),
                output=f"No cache is found for key(s): {', '.join(keys)}\n",
                message="miss",
            )

        console.print_cache_hit(ctx.run_id, entry.key)
        return StepResult(
            name=step.name,
            kind=step.kind,
            duration_ms=_elapsed_ms(started),
            output=f"Found a cache from key {entry.key} ({entry.files} files)\n",
            message=f"hit {entry.key}",
        )

    def _save_cache(self, step: SaveCache, env: Mapping[str, str], ctx: StepContext) -> StepResult:
        started = time.monotonic()
        key = self._render(step.key, step, env, ctx)

        try:
            entry = self.cache.save(key, step.paths, workspace=ctx.workspace, home=ctx.home)
        except CacheUnavailable as e:
            e.step = step.name
            e.duration_ms = _elapsed_ms(started)
            raise

        get_console().print_cache_saved(ctx.run_id, entry.key, entry.files)
        return StepResult(
            name=step.name,
            kind=step.kind,
            duration_ms=_elapsed_ms(started),
            output=f"Stored {entry.files} files under key {entry.key}\n",
            message=f"saved {entry.key}",
        )
