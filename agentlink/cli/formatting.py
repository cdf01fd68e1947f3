"""Display helpers for messages streamed from the agent CLI."""

from __future__ import annotations

import importlib.metadata
import sys
from typing import Any

from rich.markup import escape

from ..types import ResultMessage
from .state import console


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def _is_interactive_terminal() -> bool:
    """Return True when running in an interactive TTY."""
    return console.is_terminal and sys.stdin.isatty() and sys.stdout.isatty()


def _get_version() -> str:
    """Return the installed package version or 'dev' if not installed."""
    try:
        return importlib.metadata.version("agentlink")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _format_tool_signature(tool_name: str | None, tool_args: dict[str, Any] | None) -> str:
    """Format tool call as a signature like: Read(file_path='/foo/bar.py')"""
    if not tool_name:
        return "()"
    if not tool_args:
        return f"{tool_name}()"

    # For shell commands, show just the command
    if tool_name == "Bash" and "command" in tool_args:
        return f"{tool_name}({tool_args['command']})"

    parts = []
    for key, val in tool_args.items():
        if isinstance(val, str):
            parts.append(f"{key}='{val}'")
        else:
            parts.append(f"{key}={val}")
    return f"{tool_name}({', '.join(parts)})"


def _format_duration(duration_ms: int) -> str:
    secs = duration_ms / 1000
    if secs < 60:
        return f"{secs:.1f}s"
    minutes, secs = divmod(int(secs), 60)
    return f"{minutes}m {secs}s"


def _format_result_summary(result: ResultMessage) -> str:
    """One-line summary like: 'done in 4.2s, 3 turns, $0.0123'"""
    status = "error" if result.is_error else "done"
    turns = "turn" if result.num_turns == 1 else "turns"
    summary = f"{status} in {_format_duration(result.duration_ms)}, {result.num_turns} {turns}"
    if result.total_cost_usd is not None:
        summary += f", ${result.total_cost_usd:.4f}"
    return summary
