# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Step variants
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Checkout:
    """Fetch the project source into the job workspace."""
    path: Optional[str] = None

    @property
    def name(self) -> str:
        return "Checkout code"

    kind = "checkout"


@dataclass(frozen=True)
class RunStep:
    """A shell command block. `command` is passed to the shell untouched."""
    command: str
    label: Optional[str] = None
    working_directory: Optional[str] = None
    environment: Mapping[str, str] = field(default_factory=dict)
    shell: Optional[str] = None
    timeout: Optional[float] = None  # seconds, wall clock

    kind = "run"

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        # unnamed steps show their first command line, like CircleCI does
        first = next((ln.strip() for ln in self.command.splitlines() if ln.strip()), "")
        return first or "<empty command>"


@dataclass(frozen=True)
class RestoreCache:
    keys: Tuple[str, ...]
    label: Optional[str] = None

    kind = "restore_cache"

    @property
    def name(self) -> str:
        return self.label or "Restoring cache"


@dataclass(frozen=True)
class SaveCache:
    key: str
    paths: Tuple[str, ...]
    label: Optional[str] = None

    kind = "save_cache"

    @property
    def name(self) -> str:
        return self.label or "Saving cache"


StepSpec = Union[Checkout, RunStep, RestoreCache, SaveCache]


# ---------------------------------------------------------------------
# Jobs / workflows
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutorSpec:
    """
    Where a job would run. stepci runs commands on the host, the executor
    is kept for reporting.
    """
    kind: str = "none"  # docker | machine | none
    image: Optional[str] = None
    services: Tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == "none":
            return "host"
        if self.image:
            return f"{self.kind} {self.image}"
        return self.kind


@dataclass(frozen=True)
class JobSpec:
    name: str
    steps: Tuple[StepSpec, ...] = ()
    executor: ExecutorSpec = field(default_factory=ExecutorSpec)
    environment: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None


@dataclass(frozen=True)
class BranchFilter:
    only: Optional[Tuple[str, ...]] = None
    ignore: Optional[Tuple[str, ...]] = None

    def allows(self, branch: str) -> bool:
        if self.only is not None and branch not in self.only:
            return False
        if self.ignore is not None and branch in self.ignore:
            return False
        return True


@dataclass(frozen=True)
class JobRef:
    job: str
    filter: Optional[BranchFilter] = None


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    jobs: Tuple[JobRef, ...] = ()


@dataclass(frozen=True)
class PipelineSpec:
    version: str
    jobs: Mapping[str, JobSpec]
    workflows: Mapping[str, WorkflowSpec]


# ---------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


@dataclass
class StepResult:
    name: str
    kind: str
    exit_code: int = 0
    duration_ms: int = 0
    output: str = ""
    error: Optional[str] = None  # error kind, e.g. "NonZeroExit"
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error in (None, "CacheUnavailable")


@dataclass
class JobRun:
    """
    One dispatched execution of a JobSpec.

    The status only ever moves forward: pending -> running -> succeeded|failed.
    """
    workflow: str
    job: JobSpec
    step_index: int = 0
    log: List[str] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING

    @property
    def run_id(self) -> str:
        return f"{self.workflow}/{self.job.name}"

    def start(self) -> None:
        if self.status is not JobStatus.PENDING:
            raise RuntimeError(f"{self.run_id}: cannot start from {self.status.value}")
        self.status = JobStatus.RUNNING

    def finish(self, status: JobStatus) -> None:
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status.terminal:
            raise RuntimeError(f"{self.run_id}: already {self.status.value}")
        self.status = status


@dataclass
class JobResult:
    workflow: str
    job: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    failed_step: Optional[str] = None
    log: List[str] = field(default_factory=list)

    @property
    def run_id(self) -> str:
        return f"{self.workflow}/{self.job}"


@dataclass
class PipelineResult:
    status: JobStatus
    branch: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 0 if self.status is JobStatus.SUCCEEDED else 1


@dataclass(frozen=True)
class CacheEntry:
    key: str
    paths: Tuple[str, ...]
    artifact: Path
    created_at: datetime
    files: int = 0
