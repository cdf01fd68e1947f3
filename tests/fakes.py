"""Scripted in-memory transport and wire-format builders shared by the tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from agentlink.errors import CLIConnectionError, CLIJSONDecodeError
from agentlink.transport import Transport

EOF = object()


def success_response(request_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"subtype": "success", "request_id": request_id}
    if payload is not None:
        response["response"] = payload
    return {"type": "control_response", "response": response}


def error_response(request_id: str, message: str) -> dict[str, Any]:
    return {
        "type": "control_response",
        "response": {"subtype": "error", "request_id": request_id, "error": message},
    }


def assistant_message(text: str, *, tool_use: dict[str, Any] | None = None) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    if tool_use is not None:
        content.append({"type": "tool_use", **tool_use})
    return {
        "type": "assistant",
        "message": {"role": "assistant", "model": "claude-sonnet-4-5", "content": content},
        "parent_tool_use_id": None,
    }


def result_message(*, is_error: bool = False, session_id: str = "session-1") -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "error_during_execution" if is_error else "success",
        "duration_ms": 1200,
        "duration_api_ms": 900,
        "is_error": is_error,
        "num_turns": 1,
        "session_id": session_id,
        "total_cost_usd": 0.0042,
        "result": "done",
    }


def system_init() -> dict[str, Any]:
    return {"type": "system", "subtype": "init", "model": "claude-sonnet-4-5", "tools": ["Bash"]}


class ScriptedTransport(Transport):
    """Transport double that records writes and plays back scripted output.

    The initialize handshake is answered automatically unless disabled.
    ``on_write`` is called with every written JSON object and may return
    items to feed back; tests can also ``feed()`` items directly. Feeding
    ``EOF`` ends the output, feeding an exception raises it from
    ``read_messages`` (except decode errors, which are yielded as items).
    """

    def __init__(
        self,
        *,
        auto_initialize: bool = True,
        initialize_response: dict[str, Any] | None = None,
        on_write: Callable[[dict[str, Any]], Iterable[Any] | None] | None = None,
        connect_error: Exception | None = None,
    ) -> None:
        self.auto_initialize = auto_initialize
        self.initialize_response = initialize_response if initialize_response is not None else {}
        self.on_write = on_write
        self.connect_error = connect_error
        self.written: list[dict[str, Any]] = []
        self.events: list[str] = []
        self.connect_calls = 0
        self.connected = False
        self.input_ended = False
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def connect(self) -> None:
        self.connect_calls += 1
        self.events.append("connect")
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def write(self, data: str) -> None:
        if not self.connected or self.closed:
            raise CLIConnectionError("Transport is not ready for writing")
        if self.input_ended:
            raise CLIConnectionError("Input stream already closed")
        assert data.endswith("\n")
        message = json.loads(data)
        self.written.append(message)
        self.events.append(f"write:{message.get('type')}")

        if message.get("type") == "control_request":
            request = message["request"]
            if request["subtype"] == "initialize" and self.auto_initialize:
                self.feed(success_response(message["request_id"], self.initialize_response))
                return
        if self.on_write is not None:
            for item in self.on_write(message) or ():
                self.feed(item)

    def feed(self, *items: Any) -> None:
        for item in items:
            self._incoming.put_nowait(item)

    def finish(self) -> None:
        self.feed(EOF)

    async def read_messages(self) -> AsyncIterator[Any | CLIJSONDecodeError]:
        while True:
            item = await self._incoming.get()
            if item is EOF:
                return
            if isinstance(item, BaseException) and not isinstance(item, CLIJSONDecodeError):
                raise item
            yield item

    async def end_input(self) -> None:
        if not self.input_ended:
            self.events.append("end_input")
        self.input_ended = True

    async def close(self) -> None:
        if not self.closed:
            self.events.append("close")
        self.closed = True
        self.connected = False

    def is_ready(self) -> bool:
        return self.connected and not self.closed

    # --- inspection helpers ---

    def control_requests(self, subtype: str | None = None) -> list[dict[str, Any]]:
        return [
            message
            for message in self.written
            if message.get("type") == "control_request"
            and (subtype is None or message["request"]["subtype"] == subtype)
        ]

    def control_responses(self) -> list[dict[str, Any]]:
        return [
            message["response"]
            for message in self.written
            if message.get("type") == "control_response"
        ]

    def user_messages(self) -> list[dict[str, Any]]:
        return [message for message in self.written if message.get("type") == "user"]


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)
