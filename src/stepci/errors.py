# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


# ----------------------------------------------------------------------
# Step errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepError(Exception):
    """
    Raised by the step runner when a step cannot complete.

    Carries what the job log needs: which step, why, and whatever output
    the step produced before it stopped.
    """
    step: str
    message: str
    output: str = ""
    duration_ms: int = 0

    fatal = True

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def exit_code(self) -> int:
        return 1

    def __str__(self) -> str:
        return f"{self.kind}: step '{self.step}': {self.message}"


@dataclass(eq=False)
class SourceUnavailable(StepError):
    pass


@dataclass(eq=False)
class NonZeroExit(StepError):
    code: int = 1

    @property
    def exit_code(self) -> int:
        return self.code

    def __str__(self) -> str:
        return f"{self.kind}: step '{self.step}' failed (exit={self.code}): {self.message}"


@dataclass(eq=False)
class Timeout(StepError):
    seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        # same convention as coreutils timeout(1)
        return 124


@dataclass(eq=False)
class Cancelled(StepError):
    """The run was interrupted; the step was killed or never started."""

    @property
    def exit_code(self) -> int:
        return 130


@dataclass(eq=False)
class CacheUnavailable(StepError):
    """Cache storage failed. Never fails a job."""
    fatal = False


# ----------------------------------------------------------------------
# Configuration errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ConfigError(Exception):
    path: Optional[str]
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message if not self.path else f"{self.path}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
