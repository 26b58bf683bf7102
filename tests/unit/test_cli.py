"""Unit tests for the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from ringcompat.cli import main
from ringcompat.core.exceptions import ExitCode, FailureKind
from ringcompat.core.models import Run, Verdict
from ringcompat.reporting.diagnostic import Diagnostic


@pytest.fixture(autouse=True)
def in_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "harness.yml"
    path.write_text(
        "initial_poll_interval: 1\n"
        "backoff_factor: 2\n"
        "convergence_deadline: 10\n"
        "node_count: 4\n",
        encoding="utf-8",
    )
    return path


class TestLayouts:
    """Tests for the ``layouts`` subcommand."""

    def test_lists_every_layout(self, capsys) -> None:
        assert main(["layouts"]) == 0
        out = capsys.readouterr().out
        for name in ("homogeneous", "inner_ring_old", "inner_ring_new", "half_ring_old", "single_old"):
            assert name in out


class TestValidate:
    """Tests for the ``validate`` subcommand."""

    def test_valid_configuration(self, settings_file: Path, capsys) -> None:
        assert main(["validate", "--config", str(settings_file)]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["ok"] is True
        assert data["config"]["node_count"] == 4
        assert data["config"]["layout"] == "homogeneous"

    def test_environment_and_flags_layer(self, settings_file: Path, monkeypatch, capsys) -> None:
        monkeypatch.setenv("NODE_COUNT", "5")
        monkeypatch.setenv("REVISION_B", "release-1")
        assert main(["validate", "--config", str(settings_file), "--layout", "half_ring_old"]) == 0
        config = json.loads(capsys.readouterr().out)["config"]
        assert config["node_count"] == 5
        assert config["revision_b"] == "release-1"
        assert config["layout"] == "half_ring_old"

    @pytest.mark.parametrize(
        "argv",
        [
            ["validate", "--nodes", "2"],
            ["validate", "--layout", "inner_ring_old"],
            ["validate", "--layout", "no_such_layout"],
            ["validate", "--config", "missing.yml"],
            ["run", "--deadline", "0"],
        ],
    )
    def test_configuration_errors(self, argv: list[str]) -> None:
        assert main(argv) == ExitCode.CONFIG_ERROR


class TestPlan:
    """Tests for the ``plan`` subcommand."""

    def test_plan_timeline(self, settings_file: Path, capsys) -> None:
        assert main(["plan", "--config", str(settings_file)]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["layout"] == "homogeneous"
        assert [n["revision"] for n in data["nodes"]] == ["A", "A", "A", "A"]
        assert data["max_rounds"] == 3
        assert [r["interval"] for r in data["timeline"]] == [1.0, 2.0, 4.0]
        assert [r["earliest_start"] for r in data["timeline"]] == [1.0, 3.0, 7.0]
        assert [r["query_timeout"] for r in data["timeline"]] == [0.8, 1.6, 3.2]

    def test_plan_mixed_layout(self, monkeypatch, capsys) -> None:
        monkeypatch.setenv("REVISION_B", "v0.5")
        assert main(["plan", "--nodes", "4"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["layout"] == "inner_ring_old"
        assert [n["revision"] for n in data["nodes"]] == ["A", "B", "A", "B"]
        assert len(data["revisions"]) == 2


class TestRun:
    """Tests for the ``run`` subcommand."""

    def test_exit_code_follows_verdict(self, settings_file: Path, capsys) -> None:
        run = Run(run_id="r1", verdict=Verdict.failed(FailureKind.CONVERGENCE_TIMEOUT, "late"))
        with patch("ringcompat.cli.Orchestrator") as orchestrator_cls:
            orchestrator = orchestrator_cls.return_value
            orchestrator.run = AsyncMock(return_value=run)
            orchestrator.diagnostic = Diagnostic.from_run(run)
            code = main(["run", "--config", str(settings_file), "--cleanup-stale"])

        assert code == ExitCode.CONVERGENCE_TIMEOUT
        config = orchestrator_cls.call_args.args[0]
        assert config.node_count == 4
        assert config.cleanup_stale is True
        assert "**Verdict:** Fail(ConvergenceTimeout)" in capsys.readouterr().out

    def test_pass(self, settings_file: Path) -> None:
        run = Run(run_id="r2", verdict=Verdict.passed())
        with patch("ringcompat.cli.Orchestrator") as orchestrator_cls:
            orchestrator_cls.return_value.run = AsyncMock(return_value=run)
            orchestrator_cls.return_value.diagnostic = None
            assert main(["run", "--config", str(settings_file)]) == 0

    def test_missing_verdict_is_internal_error(self, settings_file: Path) -> None:
        run = Run(run_id="r3")
        with patch("ringcompat.cli.Orchestrator") as orchestrator_cls:
            orchestrator_cls.return_value.run = AsyncMock(return_value=run)
            orchestrator_cls.return_value.diagnostic = None
            assert main(["run", "--config", str(settings_file)]) == ExitCode.INTERNAL_ERROR
