"""Decode raw JSON objects from the CLI into typed messages.

Decoding is pure. Unknown message types are ignored (``None``); malformed
content for a known type raises ``MessageParseError``.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import MessageParseError
from .types import (
    AssistantMessage,
    ContentBlock,
    GenericHookInput,
    HookEvent,
    HookInput,
    Message,
    PostToolUseHookInput,
    PreCompactHookInput,
    PreToolUseHookInput,
    ResultMessage,
    StopHookInput,
    StreamEvent,
    SubagentStopHookInput,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    UserPromptSubmitHookInput,
)

logger = logging.getLogger(__name__)


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    if key not in data:
        raise MessageParseError(f"Missing required field in {kind}: {key}", data)
    return data[key]


def _require_str(data: dict[str, Any], key: str, kind: str) -> str:
    value = _require(data, key, kind)
    if not isinstance(value, str):
        raise MessageParseError(f"Field {key} in {kind} must be a string", data)
    return value


def _require_int(data: dict[str, Any], key: str, kind: str) -> int:
    value = _require(data, key, kind)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise MessageParseError(f"Field {key} in {kind} must be an integer", data)
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def parse_content_block(block: Any) -> ContentBlock | None:
    """Decode one content block; unknown block types return None."""
    if not isinstance(block, dict):
        raise MessageParseError("Content block must be an object", block)

    block_type = block.get("type")
    if block_type == "text":
        return TextBlock(text=_require_str(block, "text", "text block"))
    if block_type == "thinking":
        return ThinkingBlock(
            thinking=_require_str(block, "thinking", "thinking block"),
            signature=block.get("signature") or "",
        )
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            id=_require_str(block, "id", "tool_use block"),
            name=_require_str(block, "name", "tool_use block"),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        is_error = block.get("is_error")
        return ToolResultBlock(
            tool_use_id=_require_str(block, "tool_use_id", "tool_result block"),
            content=block.get("content"),
            is_error=is_error if isinstance(is_error, bool) else None,
        )

    logger.debug("Skipping unknown content block type: %r", block_type)
    return None


def _parse_blocks(raw_blocks: list[Any]) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    for raw in raw_blocks:
        block = parse_content_block(raw)
        if block is not None:
            blocks.append(block)
    return blocks


def _parse_user(data: dict[str, Any]) -> UserMessage:
    message = _require(data, "message", "user message")
    if not isinstance(message, dict):
        raise MessageParseError("Field message in user message must be an object", data)
    content = _require(message, "content", "user message")

    tool_use_result = data.get("tool_use_result")
    common = {
        "uuid": _optional_str(data, "uuid"),
        "parent_tool_use_id": _optional_str(data, "parent_tool_use_id"),
        "tool_use_result": tool_use_result if isinstance(tool_use_result, dict) else None,
    }
    if isinstance(content, str):
        return UserMessage(content=content, **common)
    if isinstance(content, list):
        return UserMessage(content=_parse_blocks(content), **common)
    raise MessageParseError("User message content must be a string or a list", data)


def _parse_assistant(data: dict[str, Any]) -> AssistantMessage:
    message = _require(data, "message", "assistant message")
    if not isinstance(message, dict):
        raise MessageParseError("Field message in assistant message must be an object", data)
    content = _require(message, "content", "assistant message")
    if not isinstance(content, list):
        raise MessageParseError("Assistant message content must be a list", data)

    return AssistantMessage(
        content=_parse_blocks(content),
        model=_optional_str(message, "model") or _optional_str(data, "model") or "",
        parent_tool_use_id=_optional_str(data, "parent_tool_use_id"),
        error=_optional_str(data, "error"),
    )


def _parse_system(data: dict[str, Any]) -> SystemMessage:
    return SystemMessage(subtype=_require_str(data, "subtype", "system message"), data=data)


def _parse_result(data: dict[str, Any]) -> ResultMessage:
    kind = "result message"
    is_error = _require(data, "is_error", kind)
    if not isinstance(is_error, bool):
        raise MessageParseError("Field is_error in result message must be a boolean", data)

    cost = data.get("total_cost_usd")
    usage = data.get("usage")
    return ResultMessage(
        subtype=_require_str(data, "subtype", kind),
        duration_ms=_require_int(data, "duration_ms", kind),
        duration_api_ms=_require_int(data, "duration_api_ms", kind),
        is_error=is_error,
        num_turns=_require_int(data, "num_turns", kind),
        session_id=_require_str(data, "session_id", kind),
        total_cost_usd=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
        usage=usage if isinstance(usage, dict) else None,
        result=_optional_str(data, "result"),
        structured_output=data.get("structured_output"),
    )


def _parse_stream_event(data: dict[str, Any]) -> StreamEvent:
    kind = "stream_event message"
    event = _require(data, "event", kind)
    if not isinstance(event, dict):
        raise MessageParseError("Field event in stream_event message must be an object", data)
    return StreamEvent(
        uuid=_require_str(data, "uuid", kind),
        session_id=_require_str(data, "session_id", kind),
        event=event,
        parent_tool_use_id=_optional_str(data, "parent_tool_use_id"),
    )


_PARSERS = {
    "user": _parse_user,
    "assistant": _parse_assistant,
    "system": _parse_system,
    "result": _parse_result,
    "stream_event": _parse_stream_event,
}


def parse_message(data: Any) -> Message | None:
    """Decode one raw JSON value from the CLI.

    Returns:
        The typed message, or None when the value is not an object or its
        ``type`` is unknown.

    Raises:
        MessageParseError: The type is known but the content is malformed.
    """
    if not isinstance(data, dict):
        logger.debug("Ignoring non-object message: %r", type(data).__name__)
        return None

    message_type = data.get("type")
    parser = _PARSERS.get(message_type) if isinstance(message_type, str) else None
    if parser is None:
        logger.debug("Ignoring message with unknown type: %r", message_type)
        return None
    return parser(data)


_HOOK_INPUT_TYPES: dict[str, type] = {
    HookEvent.PRE_TOOL_USE.value: PreToolUseHookInput,
    HookEvent.POST_TOOL_USE.value: PostToolUseHookInput,
    HookEvent.USER_PROMPT_SUBMIT.value: UserPromptSubmitHookInput,
    HookEvent.STOP.value: StopHookInput,
    HookEvent.SUBAGENT_STOP.value: SubagentStopHookInput,
    HookEvent.PRE_COMPACT.value: PreCompactHookInput,
}

_HOOK_FIELDS: dict[type, tuple[str, ...]] = {
    PreToolUseHookInput: ("tool_name", "tool_input"),
    PostToolUseHookInput: ("tool_name", "tool_input", "tool_response"),
    UserPromptSubmitHookInput: ("prompt",),
    StopHookInput: ("stop_hook_active",),
    SubagentStopHookInput: ("stop_hook_active",),
    PreCompactHookInput: ("trigger", "custom_instructions"),
}


def parse_hook_input(data: dict[str, Any]) -> HookInput:
    """Build the typed hook input for a ``hook_callback`` request payload."""
    event_name = _optional_str(data, "hook_event_name") or ""
    base = {
        "session_id": _optional_str(data, "session_id") or "",
        "transcript_path": _optional_str(data, "transcript_path") or "",
        "cwd": _optional_str(data, "cwd") or "",
        "permission_mode": _optional_str(data, "permission_mode"),
    }
    input_cls = _HOOK_INPUT_TYPES.get(event_name)
    if input_cls is None:
        return GenericHookInput(**base, hook_event_name=event_name, data=dict(data))

    extra = {name: data[name] for name in _HOOK_FIELDS[input_cls] if name in data}
    return input_cls(**base, **extra)
