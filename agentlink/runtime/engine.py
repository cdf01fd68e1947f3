"""ControlEngine: the control protocol spoken over one transport.

The engine owns the read loop. Every line from the CLI is routed to one of
three places: a pending outbound request (``control_response``), a dispatch
task running a host callback (``control_request``), or the conversation queue
the consumer drains (everything else). Outbound requests suspend only their
caller, and one lock serializes every write to the transport.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..errors import (
    AgentLinkError,
    CLIConnectionError,
    CLIJSONDecodeError,
    ControlError,
    ControlTimeoutError,
    MessageParseError,
    RequestCancelledError,
)
from ..options import AgentOptions
from ..parser import parse_hook_input, parse_message
from ..transport import Transport
from ..types import (
    HookCallback,
    HookContext,
    HookOutput,
    Message,
    PermissionMode,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    ToolPermissionContext,
)
from .pending import PendingRequests

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class EngineState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class _InboundDispatch:
    """A host callback running on behalf of one inbound control request."""

    task: asyncio.Task[None]
    signal: asyncio.Event


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ControlEngine:
    """Correlates control requests and routes CLI output for one session."""

    def __init__(self, transport: Transport, options: AgentOptions) -> None:
        self._transport = transport
        self._options = options
        self._state = EngineState.IDLE
        self._write_lock = asyncio.Lock()
        self._request_counter = 0
        self._reset_session_state()

    def _reset_session_state(self) -> None:
        self._pending = PendingRequests()
        self._hook_callbacks: dict[str, HookCallback] = {}
        self._next_callback_id = 0
        self._inflight: dict[str, _InboundDispatch] = {}
        self._messages: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=self._options.message_buffer_size
        )
        self._read_task: asyncio.Task[None] | None = None
        self._server_info: dict[str, Any] | None = None
        self._close_input_on_result = False
        self._input_closed = False
        self._consumer_closed = False
        self._stream_ended = False
        self._output_ended = False

    # --- state ---

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is EngineState.ACTIVE

    @property
    def server_info(self) -> dict[str, Any] | None:
        """Payload of the initialize response, cached at connect time."""
        return self._server_info

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- lifecycle ---

    async def connect(self) -> dict[str, Any]:
        """Start the transport, the read loop, and the initialize handshake.

        Options are validated before anything is spawned. On any failure the
        transport is torn down and the engine is back to IDLE.
        """
        if self._state is EngineState.ACTIVE:
            return self._server_info or {}
        if self._state is not EngineState.IDLE:
            raise CLIConnectionError(f"Cannot connect engine in state {self._state}")

        self._options.validate()
        self._state = EngineState.CONNECTING
        try:
            await self._transport.connect()
            self._read_task = asyncio.create_task(self._read_loop(), name="agentlink-read-loop")
            info = await self.initialize()
        except BaseException as exc:
            await self._teardown()
            self._reset_session_state()
            self._state = EngineState.IDLE
            if isinstance(exc, ControlError):
                raise CLIConnectionError(f"Failed to initialize agent CLI: {exc}") from exc
            raise

        self._state = EngineState.ACTIVE
        logger.info("Connected to agent CLI")
        return info

    async def stop(self) -> None:
        """Shut down the session. Idempotent and safe from any state."""
        if self._state in (EngineState.CLOSING, EngineState.CLOSED):
            return
        was_running = self._state is not EngineState.IDLE
        self._state = EngineState.CLOSING
        await self._teardown()
        self._state = EngineState.CLOSED
        if was_running:
            logger.info("Disconnected from agent CLI")

    async def _teardown(self) -> None:
        read_task, self._read_task = self._read_task, None
        if read_task is not None and not read_task.done():
            read_task.cancel()
            with suppress(asyncio.CancelledError):
                await read_task

        cancelled = self._pending.fail_all(
            lambda subtype: RequestCancelledError(
                f"Control request {subtype!r} cancelled: engine shut down", subtype=subtype
            )
        )
        if cancelled:
            logger.debug("Cancelled %d pending control request(s)", cancelled)

        dispatches = list(self._inflight.values())
        self._inflight.clear()
        for dispatch in dispatches:
            dispatch.signal.set()
            dispatch.task.cancel()
        if dispatches:
            await asyncio.gather(*(d.task for d in dispatches), return_exceptions=True)

        if not self._input_closed:
            self._input_closed = True
            try:
                await self._transport.end_input()
            except (AgentLinkError, OSError) as exc:
                logger.debug("Failed to close CLI input during shutdown: %s", exc)

        if not await self._transport.wait_for_exit(self._options.close_grace_period):
            logger.debug("Agent CLI still running after %.1fs; closing", self._options.close_grace_period)
        await self._transport.close()
        self._end_stream()

    # --- read loop ---

    async def _read_loop(self) -> None:
        error: Exception | None = None
        try:
            async for item in self._transport.read_messages():
                if isinstance(item, CLIJSONDecodeError):
                    await self._forward(item)
                    continue
                kind = item.get("type") if isinstance(item, dict) else None
                if kind == "control_response":
                    self._handle_control_response(item)
                elif kind == "control_request":
                    self._start_inbound(item)
                elif kind == "control_cancel_request":
                    self._cancel_inbound(item)
                else:
                    await self._handle_conversation(item)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Read loop ended with error: %s", exc)
            error = exc

        self._output_ended = True
        reason = f": {error}" if error is not None else ""
        self._pending.fail_all(
            lambda subtype: ControlError(
                f"Agent CLI output ended before {subtype!r} was answered{reason}", subtype=subtype
            )
        )
        if error is not None:
            await self._forward(error)
        self._end_stream()

    async def _handle_conversation(self, item: Any) -> None:
        try:
            message = parse_message(item)
        except MessageParseError as exc:
            logger.debug("Malformed message from agent CLI: %s", exc)
            await self._forward(exc)
            return
        if message is None:
            return

        if isinstance(message, ResultMessage) and self._close_input_on_result:
            self._close_input_on_result = False
            try:
                await self.end_input()
            except (AgentLinkError, OSError) as exc:
                logger.debug("Failed to close CLI input after result: %s", exc)
        await self._forward(message)

    def _handle_control_response(self, item: dict[str, Any]) -> None:
        response = item.get("response")
        if not isinstance(response, dict):
            logger.debug("Ignoring control response without a body: %r", item)
            return
        request_id = response.get("request_id")
        if response.get("subtype") == "error":
            matched = self._pending.reject(
                request_id, str(response.get("error") or "Unknown control error")
            )
        else:
            payload = response.get("response")
            matched = self._pending.resolve(request_id, payload if payload is not None else {})
        if not matched:
            logger.debug("Ignoring control response for unknown request id %r", request_id)

    async def _forward(self, item: Any) -> None:
        if self._consumer_closed:
            return
        await self._messages.put(item)

    def _end_stream(self) -> None:
        if self._stream_ended:
            return
        self._stream_ended = True
        # A full queue means the consumer is not waiting; it sees the flag once drained
        with suppress(asyncio.QueueFull):
            self._messages.put_nowait(_END_OF_STREAM)

    # --- consumer side ---

    async def next_message(self) -> Message | None:
        """Return the next conversation message, or None at end of stream.

        Decode errors and the transport's terminal error are raised in stream
        order; the stream stays readable after a decode error.
        """
        if self._stream_ended and self._messages.empty():
            return None
        item = await self._messages.get()
        if item is _END_OF_STREAM:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    def close_consumer(self) -> None:
        """Stop buffering conversation messages; later ones are discarded."""
        self._consumer_closed = True
        while not self._messages.empty():
            self._messages.get_nowait()

    def set_close_input_on_result(self, enabled: bool = True) -> None:
        """Half-close the CLI input once the next ResultMessage arrives."""
        self._close_input_on_result = enabled

    # --- inbound control requests ---

    def _start_inbound(self, item: dict[str, Any]) -> None:
        request_id = item.get("request_id")
        request = item.get("request")
        if not isinstance(request_id, str) or not isinstance(request, dict):
            logger.warning("Ignoring malformed control request: %r", item)
            return
        if request_id in self._inflight:
            logger.debug("Ignoring duplicate control request %s", request_id)
            return

        signal = asyncio.Event()
        task = asyncio.create_task(
            self._dispatch_inbound(request_id, request, signal),
            name=f"agentlink-control-{request_id}",
        )
        dispatch = _InboundDispatch(task=task, signal=signal)
        self._inflight[request_id] = dispatch

        def _done(_task: asyncio.Task[None]) -> None:
            if self._inflight.get(request_id) is dispatch:
                del self._inflight[request_id]

        task.add_done_callback(_done)

    def _cancel_inbound(self, item: dict[str, Any]) -> None:
        request_id = item.get("request_id")
        dispatch = self._inflight.pop(request_id, None) if isinstance(request_id, str) else None
        if dispatch is None:
            logger.debug("Ignoring cancel for unknown control request %r", request_id)
            return
        logger.debug("Control request %s cancelled by agent CLI", request_id)
        dispatch.signal.set()
        dispatch.task.cancel()

    async def _dispatch_inbound(
        self, request_id: str, request: dict[str, Any], signal: asyncio.Event
    ) -> None:
        subtype = request.get("subtype")
        try:
            if subtype == "can_use_tool":
                payload = await self._handle_permission(request, signal)
            elif subtype == "hook_callback":
                payload = await self._handle_hook(request, signal)
            else:
                raise ControlError(f"Unsupported control request subtype: {subtype}", subtype=subtype)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Control request %s (%s) failed: %s", request_id, subtype, exc)
            await self._write_response(request_id, error=str(exc) or type(exc).__name__)
            return
        await self._write_response(request_id, payload=payload)

    async def _handle_permission(
        self, request: dict[str, Any], signal: asyncio.Event
    ) -> dict[str, Any]:
        callback = self._options.can_use_tool
        if callback is None:
            raise ControlError("No permission callback is configured", subtype="can_use_tool")

        tool_name = str(request.get("tool_name", ""))
        tool_input = request.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        blocked_path = request.get("blocked_path")
        context = ToolPermissionContext(
            suggestions=list(request.get("permission_suggestions") or []),
            blocked_path=blocked_path if isinstance(blocked_path, str) else None,
            signal=signal,
        )

        result = await _resolve(callback(tool_name, tool_input, context))
        if not isinstance(result, (PermissionResultAllow, PermissionResultDeny)):
            raise TypeError(
                "Permission callback must return PermissionResultAllow or "
                f"PermissionResultDeny, got {type(result).__name__}"
            )
        return result.to_dict(tool_input)

    async def _handle_hook(self, request: dict[str, Any], signal: asyncio.Event) -> dict[str, Any]:
        callback_id = request.get("callback_id")
        callback = self._hook_callbacks.get(callback_id) if isinstance(callback_id, str) else None
        if callback is None:
            raise ControlError(f"No hook callback found for ID: {callback_id}", subtype="hook_callback")

        raw_input = request.get("input")
        hook_input = parse_hook_input(raw_input if isinstance(raw_input, dict) else {})
        tool_use_id = request.get("tool_use_id")
        output = await _resolve(
            callback(
                hook_input,
                tool_use_id if isinstance(tool_use_id, str) else None,
                HookContext(signal=signal),
            )
        )
        if output is None:
            return {}
        if isinstance(output, HookOutput):
            return output.to_dict()
        if isinstance(output, dict):
            return HookOutput.normalize_dict(output)
        raise TypeError(f"Hook callback must return HookOutput or dict, got {type(output).__name__}")

    async def _write_response(
        self,
        request_id: str,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if error is not None:
            response: dict[str, Any] = {"subtype": "error", "request_id": request_id, "error": error}
        else:
            response = {"subtype": "success", "request_id": request_id, "response": payload or {}}
        try:
            await self._write_json({"type": "control_response", "response": response})
        except AgentLinkError as exc:
            logger.debug("Could not answer control request %s: %s", request_id, exc)

    # --- outbound control requests ---

    def _register_hooks(self) -> dict[str, list[dict[str, Any]]]:
        config: dict[str, list[dict[str, Any]]] = {}
        for event, matchers in (self._options.hooks or {}).items():
            entries = []
            for matcher in matchers:
                callback_ids = []
                for callback in matcher.hooks:
                    callback_id = f"hook_{self._next_callback_id}"
                    self._next_callback_id += 1
                    self._hook_callbacks[callback_id] = callback
                    callback_ids.append(callback_id)
                entry: dict[str, Any] = {"matcher": matcher.matcher, "hookCallbackIds": callback_ids}
                if matcher.timeout is not None:
                    entry["timeout"] = matcher.timeout
                entries.append(entry)
            if entries:
                config[str(event)] = entries
        return config

    async def initialize(self) -> dict[str, Any]:
        """Send the initialize handshake and cache its response as server info."""
        hooks = self._register_hooks()
        request: dict[str, Any] = {"subtype": "initialize", "hooks": hooks or None}
        if self._options.agents:
            request["agents"] = {
                name: definition.to_dict() for name, definition in self._options.agents.items()
            }
        response = await self._send_control_request(request)
        self._server_info = response if isinstance(response, dict) else {}
        return self._server_info

    async def interrupt(self) -> None:
        await self._send_control_request({"subtype": "interrupt"})

    async def set_permission_mode(self, mode: PermissionMode | str) -> None:
        await self._send_control_request(
            {"subtype": "set_permission_mode", "mode": str(PermissionMode(mode))}
        )

    async def set_model(self, model: str | None) -> None:
        await self._send_control_request({"subtype": "set_model", "model": model})

    async def rewind_files(self, user_message_id: str) -> None:
        await self._send_control_request(
            {"subtype": "rewind_files", "user_message_id": user_message_id}
        )

    async def mcp_status(self) -> dict[str, Any]:
        return await self._send_control_request({"subtype": "mcp_status"})

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{self._request_counter}_{os.urandom(4).hex()}"

    async def _send_control_request(
        self, request: dict[str, Any], timeout: float | None = None
    ) -> Any:
        """Write one control request and wait for its response payload.

        Raises:
            CLIConnectionError: Not connected, or the CLI output has already ended.
            ControlTimeoutError: No response within the deadline.
            ControlError: The CLI answered with an error outcome.
            RequestCancelledError: The engine shut down first.
        """
        if self._state not in (EngineState.CONNECTING, EngineState.ACTIVE) or self._output_ended:
            raise CLIConnectionError("Not connected")

        subtype = str(request["subtype"])
        request_id = self._next_request_id()
        future = self._pending.register(request_id, subtype)
        deadline = timeout if timeout is not None else self._options.timeout_seconds
        try:
            await self._write_json(
                {"type": "control_request", "request_id": request_id, "request": request}
            )
            if deadline is None:
                return await future
            return await asyncio.wait_for(future, timeout=deadline)
        except asyncio.TimeoutError:
            raise ControlTimeoutError(f"Control request {subtype!r}", deadline) from None
        finally:
            self._pending.discard(request_id)

    # --- conversation input ---

    async def send_message(self, prompt: str, session_id: str = "default") -> None:
        """Write one user prompt line."""
        await self.send_raw(
            {
                "type": "user",
                "message": {"role": "user", "content": prompt},
                "parent_tool_use_id": None,
                "session_id": session_id,
            }
        )

    async def send_raw(self, message: dict[str, Any]) -> None:
        if self._state is not EngineState.ACTIVE or self._output_ended:
            raise CLIConnectionError("Not connected")
        await self._write_json(message)

    async def end_input(self) -> None:
        """Half-close the CLI's input. Later writes fail with CLIConnectionError."""
        if self._input_closed:
            return
        async with self._write_lock:
            if self._input_closed:
                return
            self._input_closed = True
            await self._transport.end_input()
        logger.debug("Closed agent CLI input")

    async def _write_json(self, obj: dict[str, Any]) -> None:
        line = json.dumps(obj) + "\n"
        async with self._write_lock:
            if self._input_closed:
                raise CLIConnectionError("Input stream already closed")
            logger.debug("-> %s", line.rstrip())
            await self._transport.write(line)
