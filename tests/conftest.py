from __future__ import annotations

import io
from pathlib import Path

import pytest

from stepci.cache import CacheStore
from stepci.settings import EngineSettings
from stepci.steps import StepContext, StepRunner
from stepci.ui.console import Console, set_console

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture(autouse=True)
def quiet_console():
    """Route console output into buffers so tests can inspect it."""
    console = Console(stream=io.StringIO(), err_stream=io.StringIO())
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def home(tmp_path) -> Path:
    h = tmp_path / "home"
    h.mkdir()
    return h


@pytest.fixture
def project(tmp_path) -> Path:
    p = tmp_path / "project"
    p.mkdir()
    return p


@pytest.fixture
def store(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def settings(tmp_path, project, home) -> EngineSettings:
    return EngineSettings(
        project_dir=project,
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        home=home,
    )


@pytest.fixture
def ctx(project, home) -> StepContext:
    return StepContext(workflow="build", job="unit", branch="master", workspace=project, home=home)


@pytest.fixture
def runner(store) -> StepRunner:
    return StepRunner(store)
