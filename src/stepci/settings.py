# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

from .errors import ConfigError

DEFAULT_CACHE_DIR = ".stepci/cache"
DEFAULT_WORK_DIR = ".stepci/work"
DEFAULT_SHELL = "/bin/bash -eo pipefail"

T = TypeVar("T")


def _env_number(env: Mapping[str, str], name: str, cast: Callable[[str], T]) -> Optional[T]:
    raw = env.get(name)
    if not raw:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(None, f"invalid {name}: {raw!r} is not a number") from None
    if value <= 0:
        raise ConfigError(None, f"invalid {name}: must be greater than zero, got {raw!r}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """
    Runtime knobs for the engine. Values come from STEPCI_* environment
    variables, CLI options override them.
    """
    project_dir: Path = Path(".")
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    home: Optional[Path] = None      # None -> the user's real home
    max_workers: Optional[int] = None
    step_timeout: Optional[float] = None
    shell: str = DEFAULT_SHELL
    source_repo: Optional[str] = None  # clone this instead of using project_dir
    source_ref: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Read STEPCI_* variables. Raises ConfigError for malformed numbers."""
        env = os.environ if environ is None else environ
        home = env.get("STEPCI_HOME")
        return cls(
            cache_dir=Path(env.get("STEPCI_CACHE_DIR", DEFAULT_CACHE_DIR)),
            work_dir=Path(env.get("STEPCI_WORK_DIR", DEFAULT_WORK_DIR)),
            home=Path(home) if home else None,
            max_workers=_env_number(env, "STEPCI_MAX_WORKERS", int),
            step_timeout=_env_number(env, "STEPCI_STEP_TIMEOUT", float),
            shell=env.get("STEPCI_SHELL", DEFAULT_SHELL),
        )

    def override(self, **changes) -> "EngineSettings":
        """Return a copy with the non-None values in `changes` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def resolved_home(self) -> Path:
        return (self.home or Path.home()).expanduser().resolve()

    def resolved_project_dir(self) -> Path:
        return self.project_dir.expanduser().resolve()

    def resolved_cache_dir(self) -> Path:
        p = self.cache_dir.expanduser()
        if not p.is_absolute():
            p = self.resolved_project_dir() / p
        return p.resolve()

    def resolved_work_dir(self) -> Path:
        p = self.work_dir.expanduser()
        if not p.is_absolute():
            p = self.resolved_project_dir() / p
        return p.resolve()
