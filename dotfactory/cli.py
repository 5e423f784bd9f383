"""dotfactory CLI — validate and run DOT pipelines.

Built with `Typer <https://typer.tiangolo.com/>`_ and
`Rich <https://rich.readthedocs.io/>`_.

    dotfactory validate pipeline.dot
    dotfactory run pipeline.dot --simulate --auto-approve --logs ./logs
    dotfactory run pipeline.dot --resume ./logs
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import logfire
import typer
from rich.console import Console
from rich.prompt import Prompt

from dotfactory import __version__
from dotfactory.engine.callbacks import EngineCallbacks, HumanQuestion
from dotfactory.engine.graph import Graph
from dotfactory.engine.lint import Severity, classify, lint
from dotfactory.engine.outcome import RunStatus
from dotfactory.engine.parser import parse_file
from dotfactory.engine.runner import PipelineRunner, exit_code_for
from dotfactory.errors import EXIT_GENERAL_ERROR, CLIError, error_handler
from dotfactory.logging_setup import RUN_LOG_FILENAME, setup_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="dotfactory",
    help="dotfactory – parse, validate and execute DOT pipelines.",
    add_completion=False,
    no_args_is_help=True,
)

_console = Console(stderr=True)
_stdout = Console()


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        _stdout.print(f"dotfactory {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Global options for dotfactory."""
    # Spans are exported only when a Logfire token is configured.
    logfire.configure(send_to_logfire="if-token-present", console=False)


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------


def terminal_hints(graph: Graph) -> list[str]:
    """Hints for graphs without exactly one Mdiamond start and one Msquare exit."""
    hints: list[str] = []
    shapes = [node.shape for node in graph.nodes.values()]
    start_count = shapes.count("Mdiamond")
    exit_count = shapes.count("Msquare")
    if start_count != 1:
        hints.append(
            f"hint: expected exactly one start node with shape=Mdiamond (found {start_count})"
        )
    if exit_count != 1:
        hints.append(
            f"hint: expected exactly one exit node with shape=Msquare (found {exit_count})"
        )
    return hints


@app.command()
def validate(
    file: Path = typer.Argument(..., help="Path to .dot file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) output."),
) -> None:
    """Lint a pipeline DOT file.

    Diagnostics and hints go to stderr; ``SYNOPSIS: <kind>`` goes to stdout.
    Exits 1 when any ERROR diagnostic is found.
    """
    setup_logging(verbose=verbose, console=_console)
    with error_handler(_console):
        if not file.exists():
            raise CLIError(f"File not found: {file}")
        graph = parse_file(file)

    diagnostics = lint(graph)
    for diagnostic in diagnostics:
        typer.echo(str(diagnostic), err=True)
    for hint in terminal_hints(graph):
        typer.echo(hint, err=True)
    typer.echo(f"SYNOPSIS: {classify(graph).value}")

    if any(d.severity is Severity.ERROR for d in diagnostics):
        raise typer.Exit(EXIT_GENERAL_ERROR)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def _prompt_human(question: HumanQuestion) -> str:
    """Ask on the terminal; blocking input runs in a worker thread."""
    choices = list(question.options) or None
    return await asyncio.to_thread(
        Prompt.ask,
        f"[bold]{question.node_id}[/bold]: {question.prompt}",
        choices=choices,
        default=choices[0] if choices else "APPROVE",
        console=_console,
    )


@app.command()
def run(
    file: Path = typer.Argument(..., help="Path to .dot file"),
    simulate: bool = typer.Option(False, "--simulate", help="Answer generation nodes with simulated responses."),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Pick the first option at every human gate."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print errors."),
    logs: Optional[Path] = typer.Option(None, "--logs", help="Logs directory for this run."),
    resume: Optional[Path] = typer.Option(None, "--resume", help="Resume the run whose logs directory is given."),
    workdir: Optional[Path] = typer.Option(None, "--workdir", help="Repository root for tool commands (default: cwd)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) output."),
) -> None:
    """Execute a pipeline DOT file.

    Exit codes: 0 success, 1 failure or cancellation, 77 when the run ended
    at an exit node whose outcome was skipped.
    """
    logs_dir = resume or logs
    callbacks = EngineCallbacks()
    if not auto_approve and sys.stdin.isatty():
        callbacks.ask_human = _prompt_human

    with error_handler(_console):
        if not file.exists():
            raise CLIError(f"File not found: {file}")
        if resume is not None and not resume.is_dir():
            raise CLIError(f"Resume directory not found: {resume}")

        runner = PipelineRunner(
            file,
            logs_dir=logs_dir.resolve() if logs_dir is not None else None,
            work_dir=workdir,
            callbacks=callbacks,
            simulate=simulate,
            auto_approve=auto_approve,
            resume=resume is not None,
        )
        setup_logging(
            verbose=verbose,
            quiet=quiet,
            log_file=runner.logs_dir / RUN_LOG_FILENAME,
            console=_console,
        )
        result = asyncio.run(runner.run())

    code = exit_code_for(result)
    if result.status == RunStatus.SUCCESS:
        if not quiet:
            _stdout.print(
                f"[green]Pipeline completed[/green] at exit '{result.exit_node_id}' "
                f"({len(result.state.completed_nodes)} node(s)); logs in {runner.logs_dir}"
            )
    elif result.status == RunStatus.CANCELED:
        typer.echo(f"Pipeline canceled at '{result.current_node}'", err=True)
    else:
        typer.echo(result.error or "pipeline failed", err=True)
    raise typer.Exit(code)
