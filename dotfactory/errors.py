"""dotfactory CLI error handling.

Provides Rich-formatted error output and consistent exit codes for the CLI.

Exit codes:
    0  - Success
    1  - Pipeline invalid, run failed or canceled, unexpected error
    77 - Run ended at an exit node whose outcome was SKIPPED
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Generator

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from dotfactory.engine.exceptions import EngineError

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_SKIPPED = 77

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CLIError(Exception):
    """Base exception for CLI errors.

    Parameters
    ----------
    message:
        Human-readable error description.
    exit_code:
        Process exit code (default :data:`EXIT_GENERAL_ERROR`).
    """

    def __init__(self, message: str, exit_code: int = EXIT_GENERAL_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Error handler context manager
# ---------------------------------------------------------------------------

_stderr = Console(stderr=True)


@contextmanager
def error_handler(console: Console | None = None) -> Generator[None, None, None]:
    """Context manager that catches exceptions and prints a Rich error panel.

    ``SystemExit`` (including ``typer.Exit``) passes through untouched.

    Parameters
    ----------
    console:
        Rich console to use for output. Defaults to stderr console.

    Raises
    ------
    SystemExit
        Always raised when an exception is caught, with the appropriate
        exit code.
    """
    out = console or _stderr
    try:
        yield
    except CLIError as exc:
        out.print(
            Panel(
                f"[bold red]{exc.message}[/bold red]",
                title="[red]Error[/red]",
                border_style="red",
            )
        )
        sys.exit(exc.exit_code)
    except EngineError as exc:
        out.print(
            Panel(
                Text(str(exc), style="bold red"),
                title=f"[red]{type(exc).__name__}[/red]",
                border_style="red",
            )
        )
        sys.exit(EXIT_GENERAL_ERROR)
    except KeyboardInterrupt:
        out.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    except Exception as exc:
        out.print(
            Panel(
                f"[bold red]{exc}[/bold red]",
                title="[red]Unexpected Error[/red]",
                border_style="red",
            )
        )
        sys.exit(EXIT_GENERAL_ERROR)
