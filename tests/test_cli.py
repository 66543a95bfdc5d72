"""
Tests for the command-line interface.
"""

from __future__ import annotations

import orjson
import pytest
from typer.testing import CliRunner

from agentrun import __version__
from agentrun.cli.main import app
from agentrun.cli.progress import RunProgress, describe_event
from agentrun.config import Settings

runner = CliRunner()


class TestInfoCommands:
    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "CONSENSUS_MODELS" in result.output


class TestRunCommands:
    """Tests for executing and inspecting runs from the CLI."""

    def test_run_consensus(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["run", "AAPL", "NASDAQ"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert "AAPL consensus view" in result.output

    def test_run_research(self, mock_settings: Settings) -> None:
        result = runner.invoke(
            app,
            ["run", "MSFT", "NASDAQ", "--workflow", "research", "--query", "Cloud growth?"],
        )

        assert result.exit_code == 0, result.output
        assert "MSFT research report" in result.output

    def test_run_requires_offline_services(
        self, mock_settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that run refuses to start when DRY_RUN is off."""
        monkeypatch.setenv("DRY_RUN", "false")

        result = runner.invoke(app, ["run", "AAPL", "NASDAQ"])

        assert result.exit_code == 1
        assert "DRY_RUN" in result.output

    def test_run_rejects_invalid_input(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["run", "A" * 30, "NASDAQ"])

        assert result.exit_code == 1

    def test_runs_and_replay(self, mock_settings: Settings) -> None:
        """Test that a finished run is listed and replays as NDJSON."""
        assert runner.invoke(app, ["run", "AAPL", "NASDAQ"]).exit_code == 0

        listed = runner.invoke(app, ["runs"])
        assert listed.exit_code == 0
        assert "AAPL:NASDAQ" in listed.output

        replayed = runner.invoke(app, ["replay", "1", "--max-delay-ms", "0", "--raw"])
        assert replayed.exit_code == 0
        lines = [orjson.loads(line) for line in replayed.output.splitlines() if line.strip()]
        assert lines[0]["sequence"] == 1
        assert lines[-1]["type"] == "complete"

    def test_stream_finished_run(self, mock_settings: Settings) -> None:
        assert runner.invoke(app, ["run", "AAPL", "NASDAQ"]).exit_code == 0

        result = runner.invoke(app, ["stream", "1", "--cursor", "1"])

        assert result.exit_code == 0
        assert "complete" in result.output

    def test_stream_unknown_run(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["stream", "42"])

        assert result.exit_code == 1
        assert "runId not found" in result.output

    def test_runs_empty(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["runs"])

        assert result.exit_code == 0
        assert "No runs recorded yet" in result.output


class TestProgressDisplay:
    """Tests for the event-driven progress display."""

    def test_tracks_steps(self) -> None:
        progress = RunProgress(
            console=None,  # type: ignore[arg-type]
            title="AAPL consensus",
            step_names=["fetch_data", "parallel_analysis"],
        )

        progress.handle_event({"type": "stage", "stage": "consensus.request", "progress": 0})
        progress.handle_event(
            {"type": "stage", "stage": "consensus.fetch_data", "progress": 0.5, "message": "Fetching"}
        )
        assert progress.steps["fetch_data"].status == "running"

        progress.handle_event({"type": "stage", "stage": "consensus.parallel_analysis", "progress": 1})
        assert progress.steps["fetch_data"].status == "complete"
        assert progress.steps["parallel_analysis"].status == "running"

        progress.handle_event({"type": "error", "message": "quorum", "recoverable": False})
        assert progress.steps["parallel_analysis"].status == "error"
        assert progress.error_message == "quorum"
        assert progress.event_count == 4

    def test_recoverable_error_does_not_fail_display(self) -> None:
        progress = RunProgress(console=None, title="x", step_names=["a"])  # type: ignore[arg-type]

        progress.handle_event({"type": "stage", "stage": "consensus.a", "progress": 1})
        progress.handle_event({"type": "error", "message": "search down", "recoverable": True})
        progress.handle_event({"type": "complete", "duration": 3})

        assert progress.steps["a"].status == "complete"
        assert progress.is_complete
        assert progress.error_message is None

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"type": "stage", "stage": "consensus.fetch_data", "sequence": 2}, "consensus.fetch_data"),
            ({"type": "progress", "percent": 50, "message": "half"}, "50.0%"),
            ({"type": "complete", "duration": 12}, "12ms"),
            ({"type": "branch-status", "branches": [{"id": "m1", "status": "running"}]}, "m1=running"),
        ],
    )
    def test_describe_event(self, payload: dict, expected: str) -> None:
        assert expected in describe_event(payload)
