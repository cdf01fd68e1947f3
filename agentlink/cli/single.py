"""Single-shot execution: run one prompt and render the streamed messages."""

from __future__ import annotations

import asyncio
import platform
import signal

from ..client import AgentClient
from ..errors import AgentLinkError, MessageParseError
from ..options import AgentOptions
from ..types import ResultMessage
from .events import handle_message
from .formatting import _is_interactive_terminal, _markup
from .state import RENDER_MARKDOWN, THEME, console


async def run_single(options: AgentOptions, prompt: str) -> bool:
    """Run a single prompt and exit.

    Returns True when the turn finished without an error result. Ctrl+C sends
    an interrupt to the CLI instead of killing it, so the turn still ends with
    a result message.
    """
    loop = asyncio.get_running_loop()
    render_markdown = _is_interactive_terminal() and RENDER_MARKDOWN
    client = AgentClient(options)
    interrupt_task: asyncio.Task[None] | None = None

    def on_cancel() -> None:
        nonlocal interrupt_task
        console.print(f"\n{_markup('Interrupting...', THEME.warning)}")
        if interrupt_task is None and client.is_connected:
            interrupt_task = asyncio.create_task(client.interrupt())

    if platform.system() != "Windows":
        loop.add_signal_handler(signal.SIGINT, on_cancel)

    succeeded = False
    try:
        await client.connect()
        await client.query(prompt)
        if not options.has_callbacks:
            await client.end_input()

        stream = client.receive_response()
        while True:
            try:
                message = await anext(stream)
            except StopAsyncIteration:
                break
            except MessageParseError as exc:
                console.print(_markup(f"Skipping unreadable message: {exc}", THEME.muted))
                continue
            handle_message(message, render_markdown=render_markdown)
            if isinstance(message, ResultMessage):
                succeeded = not message.is_error
    finally:
        if platform.system() != "Windows":
            loop.remove_signal_handler(signal.SIGINT)
        if interrupt_task is not None:
            try:
                await interrupt_task
            except AgentLinkError as exc:
                console.print(_markup(f"Interrupt failed: {exc}", THEME.muted))
        await client.disconnect()
    return succeeded
