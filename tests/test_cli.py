"""Tests for the stepci command line."""

from __future__ import annotations

import textwrap

import pytest
from click.testing import CliRunner

from stepci.cli import cli, find_pipeline_files

CONFIG = """
version: 2.1
jobs:
  lint:
    steps:
      - run: echo linting
  deploy:
    steps:
      - run: exit 3
workflows:
  ci:
    jobs:
      - lint
      - deploy:
          filters:
            branches:
              only: master
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch, home):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STEPCI_HOME", str(home))
    monkeypatch.setenv("STEPCI_CACHE_DIR", str(tmp_path / "cache"))
    (tmp_path / "stepci.yml").write_text(textwrap.dedent(CONFIG))
    return tmp_path


@pytest.fixture
def cli_runner():
    return CliRunner()


class TestRun:
    def test_passing_branch_exits_zero(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--config", "stepci.yml", "--branch", "feature"])

        assert result.exit_code == 0, result.output
        assert "RUN STARTED" in result.output
        assert "ci/lint: SUCCESS" in result.output
        assert "ci/deploy" not in result.output
        assert "PIPELINE: SUCCESS" in result.output

    def test_failing_job_exits_non_zero(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--config", "stepci.yml", "--branch", "master"])

        assert result.exit_code == 1
        assert "ci/deploy: FAILED" in result.output
        assert "PIPELINE: FAILED" in result.output

    def test_branch_from_environment(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["run"], env={"STEPCI_BRANCH": "feature"})
        assert result.exit_code == 0, result.output

    def test_missing_config(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--config", "nope.yml", "--branch", "master"])
        assert result.exit_code == 1

    def test_invalid_config(self, workspace, cli_runner):
        (workspace / "stepci.yml").write_text("version: 2\njobs:\n  build:\n    steps: [{bogus: 1}]\n")
        result = cli_runner.invoke(cli, ["run", "--branch", "master"])
        assert result.exit_code == 1

    def test_malformed_environment_setting(self, workspace, cli_runner):
        result = cli_runner.invoke(
            cli, ["run", "--branch", "feature"], env={"STEPCI_MAX_WORKERS": "many"}
        )

        assert result.exit_code == 1
        assert "Invalid settings" in result.output
        assert "STEPCI_MAX_WORKERS" in result.output
        assert "Traceback" not in result.output

    def test_workers_must_be_positive(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--branch", "feature", "--workers", "0"])
        assert result.exit_code == 2

    def test_debug_prints_settings(self, workspace, cli_runner):
        result = cli_runner.invoke(cli, ["--debug", "run", "--branch", "feature"])

        assert result.exit_code == 0, result.output
        assert "[DEBUG] settings: EngineSettings(" in result.output


def test_plan_shows_skipped_jobs(workspace, cli_runner):
    result = cli_runner.invoke(cli, ["plan", "--branch", "feature"])

    assert result.exit_code == 0, result.output
    assert "lint (no filter)" in result.output
    assert "deploy (skipped: branch 'feature' not in only ['master'])" in result.output


def test_validate(workspace, cli_runner):
    result = cli_runner.invoke(cli, ["validate"])

    assert result.exit_code == 0, result.output
    assert "valid (version 2.1)" in result.output
    assert "workflow ci: lint, deploy" in result.output


def test_cache_delete(workspace, cli_runner):
    run = cli_runner.invoke(cli, ["run", "--branch", "feature"])
    assert run.exit_code == 0

    result = cli_runner.invoke(cli, ["cache", "delete", "nothing-here"])
    assert result.exit_code == 0
    assert "no cache entry for 'nothing-here'" in result.output


def test_find_pipeline_files(tmp_path):
    (tmp_path / ".circleci").mkdir()
    (tmp_path / ".circleci" / "config.yml").write_text("version: 2\n")
    (tmp_path / "release_pipeline.py").write_text("")

    names = [p.relative_to(tmp_path).as_posix() for p in find_pipeline_files(tmp_path)]
    assert names == [".circleci/config.yml", "release_pipeline.py"]
