"""Message rendering and the interactive tool approval prompt."""

from __future__ import annotations

import asyncio
from typing import Any

from rich.markdown import Markdown
from rich.panel import Panel

from ..types import (
    AssistantMessage,
    Message,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolPermissionContext,
    ToolUseBlock,
)
from .formatting import _format_result_summary, _format_tool_signature, _markup
from .state import MARKDOWN_THEME, THEME, console


class ApprovalHandler:
    """Answers the CLI's tool permission requests with a Rich prompt."""

    def __init__(self, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve

    def enable_auto_approve(self) -> None:
        """Enable auto-approve mode for this session."""
        self.auto_approve = True
        console.print(_markup("Auto-approve enabled for this session", THEME.success))

    async def check_approval(self, tool_name: str, tool_args: dict[str, Any]) -> bool:
        """Prompt user for approval. Returns True if approved."""
        if self.auto_approve:
            return True

        sig = _format_tool_signature(tool_name, tool_args)
        console.print(
            Panel(
                _markup(sig, THEME.tool_call),
                title=_markup("approval", THEME.warning),
                title_align="left",
                border_style=THEME.warning,
                padding=(0, 1),
            )
        )
        console.print(_markup("Approve? \\[Y/n/a]:", THEME.warning), end=" ")

        try:
            response = (await asyncio.to_thread(input)).strip().lower()
        except (EOFError, KeyboardInterrupt):
            return False

        if response in ("a", "always"):
            self.enable_auto_approve()
            return True
        # Default to yes (empty input = approve)
        return response not in ("n", "no")

    async def can_use_tool(
        self, tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext
    ) -> PermissionResult:
        """Permission callback handed to AgentOptions.can_use_tool."""
        if context.blocked_path:
            console.print(_markup(f"Path outside allowed directories: {context.blocked_path}", THEME.muted))
        if await self.check_approval(tool_name, tool_input):
            return PermissionResultAllow()
        return PermissionResultDeny(message="User denied this tool call")


def handle_message(message: Message, *, render_markdown: bool = False) -> None:
    """Print one conversation message to the console."""
    if isinstance(message, AssistantMessage):
        for block in message.content:
            if isinstance(block, TextBlock):
                _print_text(block.text, render_markdown)
            elif isinstance(block, ToolUseBlock):
                sig = _format_tool_signature(block.name, block.input)
                console.print(
                    Panel(
                        _markup(sig, THEME.tool_call),
                        title=_markup("tool", THEME.secondary),
                        title_align="left",
                        border_style=THEME.muted,
                        padding=(0, 1),
                    )
                )
        if message.error:
            console.print(_markup(f"Error: {message.error}", THEME.error))

    elif isinstance(message, SystemMessage):
        if message.subtype == "init":
            model = message.data.get("model")
            if model:
                console.print(_markup(f"model: {model}", THEME.muted))

    elif isinstance(message, ResultMessage):
        color = THEME.error if message.is_error else THEME.muted
        console.print()
        console.print(_markup(_format_result_summary(message), color))


def _print_text(text: str, render_markdown: bool) -> None:
    if not text.strip():
        return
    if not render_markdown:
        print(text, flush=True)
        return
    with console.use_theme(MARKDOWN_THEME):
        console.print(Markdown(text, style=THEME.primary, code_theme="ansi_dark"))
