"""Shared CLI state: console, app, theme."""

from __future__ import annotations

import os
from dataclasses import dataclass

import typer
from rich.console import Console
from rich.theme import Theme


@dataclass(frozen=True)
class CliTheme:
    """Semantic Rich color tokens for CLI output."""

    primary: str = "#E6EDF3"
    secondary: str = "#56B6C2"
    muted: str = "#7F848E"
    success: str = "#98C379"
    warning: str = "#E5C07B"
    error: str = "#E06C75"
    tool_call: str = "#61AFEF"


THEME = CliTheme()

# Render assistant output as markdown when attached to a terminal
RENDER_MARKDOWN = os.getenv("AGENTLINK_RENDER_MARKDOWN", "1").lower() not in ("0", "false", "no")

console = Console()

MARKDOWN_THEME = Theme(
    {
        "markdown": THEME.primary,
        "markdown.paragraph": THEME.primary,
        "markdown.code": THEME.primary,
        "markdown.code_block": THEME.primary,
        "markdown.block_quote": THEME.muted,
        "markdown.link": THEME.secondary,
        "markdown.strong": f"bold {THEME.primary}",
    }
)

app = typer.Typer(
    name="agentlink",
    help="Drive the agent CLI over its streaming control protocol.",
    epilog=(
        "Examples:\n"
        '  agentlink run "What does this repo do?"\n'
        '  agentlink run --permission-mode plan "Refactor the parser"\n'
        "  agentlink run --config agent.yaml --ask \"Fix the failing test\"\n"
        "  agentlink version"
    ),
    add_completion=False,
)
