"""Unit tests for dotfactory.cli – the Typer application."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dotfactory.cli import app, terminal_hints
from dotfactory.engine.parser import parse_dot
from dotfactory.logging_setup import console_level


runner = CliRunner()

_VALID = """
digraph review {
    start [shape=Mdiamond];
    plan  [prompt="Plan"];
    gate  [shape=hexagon];
    done  [shape=Msquare];
    start -> plan -> gate;
    gate -> done [label="Approve"];
    gate -> plan [label="Revise"];
}
"""

_SKIPPING = """
digraph skip {
    start [shape=Mdiamond]; done [shape=Msquare];
    sensor [shape=parallelogram,
           tool_command="echo '{\\"status\\": \\"skipped\\"}' > \\"$ATTRACTOR_STAGE_DIR/status.json\\""];
    start -> sensor -> done;
}
"""

_FAILING = """
digraph fail {
    start [shape=Mdiamond]; done [shape=Msquare];
    sensor [shape=parallelogram, tool_command="exit 2"];
    start -> sensor -> done;
}
"""


def _write(tmp_path: Path, text: str, name: str = "pipeline.dot") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger = logging.getLogger("dotfactory")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


# ---------------------------------------------------------------------------
# --version / --help
# ---------------------------------------------------------------------------


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "dotfactory 0.1.0" in result.output

    def test_version_short_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestHelp:
    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "validate" in result.output
        assert "run" in result.output


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid_pipeline(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(_write(tmp_path, _VALID))])
        assert result.exit_code == 0
        assert "SYNOPSIS: PLANNING" in result.output
        assert "ERROR" not in result.output

    def test_hybrid_synopsis(self, tmp_path: Path) -> None:
        dot = _VALID.replace('plan  [prompt="Plan"];', 'plan [prompt="Plan"]; t [shape=parallelogram];') \
            .replace("start -> plan", "start -> t -> plan")
        result = runner.invoke(app, ["validate", str(_write(tmp_path, dot))])
        assert "SYNOPSIS: HYBRID" in result.output

    def test_errors_exit_one(self, tmp_path: Path) -> None:
        dot = "digraph g { start [shape=Mdiamond]; a; start -> a; a -> ghost; }"
        result = runner.invoke(app, ["validate", str(_write(tmp_path, dot))])
        assert result.exit_code == 1
        assert "ERROR terminal_node" in result.output
        assert "hint: expected exactly one exit node with shape=Msquare (found 0)" in result.output
        assert "SYNOPSIS:" in result.output

    def test_missing_start_is_only_a_warning(self, tmp_path: Path) -> None:
        dot = "digraph g { a; done [shape=Msquare]; a -> done; }"
        result = runner.invoke(app, ["validate", str(_write(tmp_path, dot))])
        assert "WARNING start_node" in result.output
        assert "hint: expected exactly one start node" in result.output

    def test_parse_error(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(_write(tmp_path, "digraph g { a -> }"))])
        assert result.exit_code == 1
        assert "ParseError" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(tmp_path / "nope.dot")])
        assert result.exit_code == 1
        assert "File not found" in result.output


def test_terminal_hints() -> None:
    graph = parse_dot("digraph g { a [shape=Mdiamond]; b [shape=Msquare]; c [shape=Msquare] }")
    assert terminal_hints(graph) == [
        "hint: expected exactly one exit node with shape=Msquare (found 2)",
    ]


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    def test_simulated_run(self, tmp_path: Path) -> None:
        logs = tmp_path / "logs"
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, _VALID)),
            "--simulate", "--auto-approve", "--logs", str(logs),
        ])
        assert result.exit_code == 0, result.output
        assert "Pipeline completed" in result.output
        assert (logs / "checkpoint.json").exists()
        assert (logs / "run.log").exists()
        response = (logs / "plan" / "response.md").read_text(encoding="utf-8")
        assert response == "SIMULATED RESPONSE: plan"

    def test_quiet_run_prints_nothing_on_success(self, tmp_path: Path) -> None:
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, _VALID)),
            "--auto-approve", "-q", "--logs", str(tmp_path / "logs"),
        ])
        assert result.exit_code == 0
        assert "Pipeline completed" not in result.output

    def test_skipped_exit_code(self, tmp_path: Path) -> None:
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, _SKIPPING)),
            "--logs", str(tmp_path / "logs"), "--workdir", str(tmp_path),
        ])
        assert result.exit_code == 77

    def test_failed_run(self, tmp_path: Path) -> None:
        dot = _FAILING
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, dot)),
            "--logs", str(tmp_path / "logs"), "--workdir", str(tmp_path),
        ])
        assert result.exit_code == 1
        assert "Node 'sensor' failed: tool exited with code 2" in result.output

    def test_invalid_pipeline(self, tmp_path: Path) -> None:
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, "digraph g { a -> b }")), "--logs", str(tmp_path / "logs"),
        ])
        assert result.exit_code == 1
        assert "ValidationError" in result.output

    def test_resume(self, tmp_path: Path) -> None:
        dot = _write(tmp_path, """
        digraph flaky {
            start [shape=Mdiamond]; done [shape=Msquare];
            check [shape=parallelogram, tool_command="test -f ready.flag"];
            start -> check -> done;
        }
        """)
        logs = tmp_path / "logs"
        first = runner.invoke(app, ["run", str(dot), "--logs", str(logs), "--workdir", str(tmp_path)])
        assert first.exit_code == 1

        (tmp_path / "ready.flag").write_text("", encoding="utf-8")
        second = runner.invoke(app, ["run", str(dot), "--resume", str(logs), "--workdir", str(tmp_path)])
        assert second.exit_code == 0, second.output
        checkpoint = json.loads((logs / "checkpoint.json").read_text(encoding="utf-8"))
        assert checkpoint["current_node"] == "done"

    def test_resume_directory_must_exist(self, tmp_path: Path) -> None:
        result = runner.invoke(app, [
            "run", str(_write(tmp_path, _VALID)), "--resume", str(tmp_path / "missing"),
        ])
        assert result.exit_code == 1
        assert "Resume directory not found" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["run", str(tmp_path / "nope.dot")])
        assert result.exit_code == 1
        assert "File not found" in result.output


@pytest.mark.parametrize(
    ("verbose", "quiet", "level"),
    [(True, False, logging.DEBUG), (False, True, logging.ERROR), (False, False, logging.WARNING)],
)
def test_console_level(verbose: bool, quiet: bool, level: int) -> None:
    assert console_level(verbose, quiet) == level
