from __future__ import annotations

from contextlib import aclosing
from typing import Any

import pytest

from agentlink import AgentClient, process_query, query
from agentlink.errors import CLIConnectionError, CLIJSONDecodeError, ConfigurationError
from agentlink.options import AgentOptions
from agentlink.types import (
    AssistantMessage,
    PermissionResultAllow,
    ResultMessage,
    SystemMessage,
    ToolPermissionContext,
)

from fakes import (
    EOF,
    ScriptedTransport,
    assistant_message,
    result_message,
    success_response,
    system_init,
)


def _options(**overrides: Any) -> AgentOptions:
    overrides.setdefault("control_timeout", 5.0)
    overrides.setdefault("close_grace_period", 0.01)
    return AgentOptions(**overrides)


def _reply_to_prompt(*, finish: bool = True):
    """on_write hook answering each user prompt with one assistant turn."""

    def on_write(message: dict[str, Any]) -> list[Any]:
        if message.get("type") == "user":
            content = message["message"]["content"]
            items: list[Any] = [system_init(), assistant_message(f"echo: {content}"), result_message()]
            if finish:
                items.append(EOF)
            return items
        if message.get("type") == "control_request":
            return [success_response(message["request_id"], {"ok": True})]
        return []

    return on_write


async def _allow(_name: str, _input: dict[str, Any], _ctx: ToolPermissionContext) -> Any:
    return PermissionResultAllow()


@pytest.mark.asyncio
async def test_operations_before_connect_raise_not_connected() -> None:
    client = AgentClient(_options(), transport=ScriptedTransport())

    assert not client.is_connected
    assert client.get_server_info() is None
    with pytest.raises(CLIConnectionError, match="Not connected"):
        await client.query("hello")
    with pytest.raises(CLIConnectionError, match="Not connected"):
        await client.interrupt()
    with pytest.raises(CLIConnectionError, match="Not connected"):
        client.receive_messages()
    with pytest.raises(CLIConnectionError, match="Not connected"):
        await client.get_mcp_status()


@pytest.mark.asyncio
async def test_context_manager_connects_and_disconnects() -> None:
    transport = ScriptedTransport(initialize_response={"output_style": "default"})

    async with AgentClient(_options(), transport=transport) as client:
        assert client.is_connected
        assert client.get_server_info() == {"output_style": "default"}
        await client.connect()
        assert transport.connect_calls == 1

    assert not client.is_connected
    assert transport.closed


@pytest.mark.asyncio
async def test_interactive_turns_with_receive_response() -> None:
    transport = ScriptedTransport(on_write=_reply_to_prompt(finish=False))

    async with AgentClient(_options(), transport=transport) as client:
        await client.query("first")
        first = [message async for message in client.receive_response()]
        await client.query("second", session_id="thread-2")
        second = [message async for message in client.receive_response()]

    assert [type(message) for message in first] == [SystemMessage, AssistantMessage, ResultMessage]
    assert first[1].text() == "echo: first"
    assert second[1].text() == "echo: second"
    assert transport.user_messages()[1]["session_id"] == "thread-2"


@pytest.mark.asyncio
async def test_connect_with_prompt_and_control_operations() -> None:
    transport = ScriptedTransport(on_write=_reply_to_prompt(finish=False))
    client = AgentClient(_options(), transport=transport)

    await client.connect(prompt="hi")
    await client.interrupt()
    await client.set_permission_mode("plan")
    await client.set_model("claude-opus-4-1")
    await client.rewind_files("msg-1")
    assert await client.get_mcp_status() == {"ok": True}
    await client.disconnect()

    assert transport.user_messages()[0]["message"]["content"] == "hi"
    subtypes = [message["request"]["subtype"] for message in transport.control_requests()]
    assert subtypes == [
        "initialize",
        "interrupt",
        "set_permission_mode",
        "set_model",
        "rewind_files",
        "mcp_status",
    ]


@pytest.mark.asyncio
async def test_query_accepts_prebuilt_message() -> None:
    transport = ScriptedTransport()

    async with AgentClient(_options(), transport=transport) as client:
        await client.query({"type": "user", "message": {"role": "user", "content": "raw"}})

    [message] = transport.user_messages()
    assert message["session_id"] == "default"
    assert message["message"]["content"] == "raw"


@pytest.mark.asyncio
async def test_process_query_closes_input_immediately_without_callbacks() -> None:
    transport = ScriptedTransport(on_write=_reply_to_prompt())

    stream = await process_query("What is 2 + 2?", _options(), transport=transport)

    assert transport.events[-2:] == ["write:user", "end_input"]
    messages = [message async for message in stream]
    assert isinstance(messages[-1], ResultMessage)
    assert transport.closed


@pytest.mark.asyncio
async def test_process_query_defers_end_input_until_result_with_callbacks() -> None:
    transport = ScriptedTransport(on_write=_reply_to_prompt(finish=False))

    stream = await process_query("list files", _options(can_use_tool=_allow), transport=transport)
    assert not transport.input_ended

    messages = []
    async for message in stream:
        messages.append(message)
        if isinstance(message, ResultMessage):
            assert transport.input_ended
            break
    await stream.aclose()

    assert [type(message) for message in messages] == [SystemMessage, AssistantMessage, ResultMessage]
    assert transport.events.count("end_input") == 1
    assert transport.closed


@pytest.mark.asyncio
async def test_process_query_validates_before_spawn() -> None:
    transport = ScriptedTransport()
    options = _options(can_use_tool=_allow, permission_prompt_tool_name="mcp__perm__check")

    with pytest.raises(ConfigurationError):
        await process_query("hi", options, transport=transport)
    assert transport.connect_calls == 0


@pytest.mark.asyncio
async def test_query_generator_disconnects_when_closed_early() -> None:
    transport = ScriptedTransport(on_write=_reply_to_prompt(finish=False))

    async with aclosing(query("hi", _options(), transport=transport)) as messages:
        async for message in messages:
            if isinstance(message, AssistantMessage):
                break

    assert transport.closed


@pytest.mark.asyncio
async def test_stream_survives_decode_errors() -> None:
    def on_write(message: dict[str, Any]) -> list[Any]:
        if message.get("type") == "user":
            return [
                CLIJSONDecodeError("{oops", ValueError("bad json")),
                assistant_message("fine"),
                result_message(),
                EOF,
            ]
        return []

    transport = ScriptedTransport(on_write=on_write)
    stream = await process_query("hi", _options(), transport=transport)

    with pytest.raises(CLIJSONDecodeError):
        await anext(stream)
    assert not transport.closed

    remaining = [message async for message in stream]
    assert [type(message) for message in remaining] == [AssistantMessage, ResultMessage]
    assert transport.closed
