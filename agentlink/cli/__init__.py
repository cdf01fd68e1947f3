"""CLI package for agentlink."""

from .errors import CliUsageError, ConfigLoadError, InvalidModeError
from .events import ApprovalHandler, handle_message
from .single import run_single
from .state import app

# Import command modules so their @app.command() decorators register
from . import main_cmd as _main_cmd  # noqa: F401


def cli() -> None:
    """Console script entry point."""
    app()


__all__ = [
    "ApprovalHandler",
    "CliUsageError",
    "ConfigLoadError",
    "InvalidModeError",
    "app",
    "cli",
    "handle_message",
    "run_single",
]
