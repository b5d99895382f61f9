"""Console output formatting utilities for stepci."""

from __future__ import annotations

import sys
import threading
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from stepci.model import PipelineResult


OUTPUT_TAIL_CHARS = 4000


class Console:
    """All user-visible output of stepci goes through here."""

    def __init__(self, debug: bool = False, verbose: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            verbose: If True, echo the full output of every step
            stream: Where normal output goes (defaults to sys.stdout at write time)
            err_stream: Where errors go (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self.verbose = verbose
        self._stream = stream
        self._err_stream = err_stream
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if err:
            stream = self._err_stream or sys.stderr
        else:
            stream = self._stream or sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def _job(self, run_id: str, *lines: str) -> None:
        self._out(*(f"[{run_id}] {line}" for line in lines))

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        branch: str,
        job_count: int,
    ) -> None:
        """Print the banner shown before any job is dispatched."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Branch: {branch}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print a job the branch filter lets through."""
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print a job the branch filter excludes."""
        self._out(f"  {name} (skipped: {reason})")

    def print_job_start(self, run_id: str, executor: str) -> None:
        self._job(run_id, f"JOB STARTED (executor: {executor})")

    def print_step(self, run_id: str, name: str) -> None:
        self._job(run_id, f"STEP: {name}")

    def print_step_output(self, run_id: str, output: str) -> None:
        """Echo captured step output (verbose mode only)."""
        if not self.verbose or not output:
            return
        self._job(run_id, *output.rstrip("\n").splitlines())

    def print_failure(
        self,
        run_id: str,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        """
        Print step failure message.

        Without debug/verbose only the tail of the step output is shown.
        """
        lines = [f"STEP FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._job(run_id, *lines)
        if output and not self.verbose:
            tail = output[-OUTPUT_TAIL_CHARS:]
            self._job(run_id, *tail.rstrip("\n").splitlines())

    def print_cache_hit(self, run_id: str, key: str) -> None:
        """Print which key a restore_cache step hit."""
        self._job(run_id, f"CACHE: hit ({key})")

    def print_cache_miss(self, run_id: str, keys) -> None:
        """Print the keys a restore_cache step tried without a hit."""
        self._job(run_id, f"CACHE: miss ({', '.join(keys)})")

    def print_cache_saved(self, run_id: str, key: str, files: int) -> None:
        self._job(run_id, f"CACHE: saved {key} ({files} files)")

    def print_warning(self, run_id: str, message: str) -> None:
        self._job(run_id, f"WARNING: {message}")

    def print_job_finished(self, run_id: str, status: str, duration: Optional[float] = None) -> None:
        line = f"JOB {status.upper()}"
        if duration is not None:
            line += f" in {duration:.1f}s"
        self._job(run_id, line)

    def print_results(self, result: "PipelineResult") -> None:
        """Print per-job outcomes and the pipeline verdict."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for run_id, job in result.jobs.items():
            status_display = "SUCCESS" if job.status.value == "succeeded" else job.status.value.upper()
            line = f"  {run_id}: {status_display}"
            if job.failed_step:
                line += f" (at step: {job.failed_step})"
            lines.append(line)
        if not result.jobs:
            lines.append("  no jobs matched this branch")
        lines.append(f"PIPELINE: {'SUCCESS' if result.exit_code == 0 else 'FAILED'}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Set by the CLI; library callers get a default stdout console
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
