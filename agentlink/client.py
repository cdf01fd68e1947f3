"""Session facade over the control engine.

``AgentClient`` keeps one CLI process alive for an interactive conversation;
``query()`` and ``process_query()`` run a single prompt and tear the process
down when the messages are consumed.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

from .errors import CLIConnectionError, MessageParseError
from .options import AgentOptions
from .runtime.engine import ControlEngine
from .transport import Transport
from .transport.subprocess import SubprocessTransport
from .types import Message, PermissionMode, ResultMessage


class MessageStream:
    """Async iterator over conversation messages.

    Decode errors are raised from ``__anext__`` and the stream stays usable;
    iterating again continues with the next message. A stream returned by
    ``process_query()`` owns its client and disconnects it when the stream
    is exhausted, fails with a terminal error, or is closed.
    """

    def __init__(
        self,
        engine: ControlEngine,
        *,
        owner: AgentClient | None = None,
        stop_after_result: bool = False,
    ) -> None:
        self._engine = engine
        self._owner = owner
        self._stop_after_result = stop_after_result
        self._result_seen = False
        self._closed = False

    def __aiter__(self) -> MessageStream:
        return self

    async def __anext__(self) -> Message:
        if self._closed or self._result_seen:
            raise StopAsyncIteration
        try:
            message = await self._engine.next_message()
        except MessageParseError:
            raise
        except Exception:
            await self.aclose()
            raise
        if message is None:
            await self.aclose()
            raise StopAsyncIteration
        if self._stop_after_result and isinstance(message, ResultMessage):
            self._result_seen = True
        return message

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owner is not None:
            owner, self._owner = self._owner, None
            await owner.disconnect()

    async def __aenter__(self) -> MessageStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class AgentClient:
    """Interactive, multi-turn session with the agent CLI.

    Usage::

        async with AgentClient(AgentOptions(model="sonnet")) as client:
            await client.query("Summarize README.md")
            async for message in client.receive_response():
                print(message)
    """

    def __init__(self, options: AgentOptions | None = None, transport: Transport | None = None) -> None:
        self.options = options or AgentOptions()
        self._custom_transport = transport
        self._engine: ControlEngine | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None and self._engine.is_active

    def _require_engine(self) -> ControlEngine:
        if self._engine is None or not self._engine.is_active:
            raise CLIConnectionError("Not connected")
        return self._engine

    async def connect(self, prompt: str | None = None) -> None:
        """Spawn the CLI and complete the initialize handshake (no-op when connected)."""
        if self.is_connected:
            return
        self.options.validate()
        transport = self._custom_transport or SubprocessTransport(self.options)
        engine = ControlEngine(transport, self.options)
        await engine.connect()
        self._engine = engine
        if prompt is not None:
            await self.query(prompt)

    async def query(self, prompt: str | dict[str, Any], session_id: str = "default") -> None:
        """Send a user prompt, or a pre-built message object, into the conversation."""
        engine = self._require_engine()
        if isinstance(prompt, str):
            await engine.send_message(prompt, session_id=session_id)
        else:
            await engine.send_raw({"session_id": session_id, **prompt})

    def receive_messages(self) -> MessageStream:
        """Stream every message until the CLI output ends."""
        return MessageStream(self._require_engine())

    def receive_response(self) -> MessageStream:
        """Stream messages up to and including the next ResultMessage."""
        return MessageStream(self._require_engine(), stop_after_result=True)

    async def end_input(self) -> None:
        await self._require_engine().end_input()

    async def interrupt(self) -> None:
        await self._require_engine().interrupt()

    async def set_permission_mode(self, mode: PermissionMode | str) -> None:
        await self._require_engine().set_permission_mode(mode)

    async def set_model(self, model: str | None = None) -> None:
        await self._require_engine().set_model(model)

    async def rewind_files(self, user_message_id: str) -> None:
        """Restore tracked files to their state at the given user message."""
        await self._require_engine().rewind_files(user_message_id)

    async def get_mcp_status(self) -> dict[str, Any]:
        return await self._require_engine().mcp_status()

    def get_server_info(self) -> dict[str, Any] | None:
        """Initialize payload (commands, output styles), or None before connect."""
        if self._engine is None:
            return None
        return self._engine.server_info

    async def disconnect(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.close_consumer()
            await engine.stop()

    async def __aenter__(self) -> AgentClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()


async def process_query(
    prompt: str,
    options: AgentOptions | None = None,
    *,
    transport: Transport | None = None,
) -> MessageStream:
    """Run one prompt and return a stream that owns the connection.

    Without a permission callback or hooks the CLI's input is closed right
    after the prompt. With callbacks it stays open so they can be answered,
    and is closed when the first ResultMessage arrives.
    """
    options = options or AgentOptions()
    client = AgentClient(options, transport=transport)
    await client.connect()
    try:
        engine = client._require_engine()
        if options.has_callbacks:
            engine.set_close_input_on_result()
            await client.query(prompt)
        else:
            await client.query(prompt)
            await client.end_input()
    except BaseException:
        await client.disconnect()
        raise
    return MessageStream(engine, owner=client)


async def query(
    prompt: str,
    options: AgentOptions | None = None,
    *,
    transport: Transport | None = None,
) -> AsyncIterator[Message]:
    """Yield the messages of a one-shot prompt; the process is always shut down."""
    stream = await process_query(prompt, options, transport=transport)
    try:
        async for message in stream:
            yield message
    finally:
        await stream.aclose()
