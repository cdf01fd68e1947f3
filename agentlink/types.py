"""Typed messages, content blocks, and callback payloads exchanged with the agent CLI."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeAlias


class PermissionMode(StrEnum):
    """Permission handling mode understood by the CLI."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


class HookEvent(StrEnum):
    """Lifecycle points at which the CLI can call back into the host."""

    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"
    NOTIFICATION = "Notification"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"


# --- Content blocks ---


@dataclass
class TextBlock:
    text: str


@dataclass
class ThinkingBlock:
    thinking: str
    signature: str


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


ContentBlock: TypeAlias = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


# --- Conversation messages ---


@dataclass
class UserMessage:
    """Prompt or tool-result turn echoed back by the CLI."""

    content: str | list[ContentBlock]
    uuid: str | None = None
    parent_tool_use_id: str | None = None
    tool_use_result: dict[str, Any] | None = None

    def text(self) -> str | None:
        """Return the plain-text content, or None when the content is blocks."""
        if isinstance(self.content, str):
            return self.content
        return None


@dataclass
class AssistantMessage:
    """Model output for one assistant turn."""

    content: list[ContentBlock]
    model: str
    parent_tool_use_id: str | None = None
    error: str | None = None

    def text(self) -> str:
        """Concatenate the text blocks in order, skipping every other block kind."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        """Return the tool-use blocks in order."""
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


@dataclass
class SystemMessage:
    """System notice (``init``, status changes); ``data`` keeps the raw payload."""

    subtype: str
    data: dict[str, Any]


@dataclass
class ResultMessage:
    """Final message of a turn with timing, cost, and usage."""

    subtype: str
    duration_ms: int
    duration_api_ms: int
    is_error: bool
    num_turns: int
    session_id: str
    total_cost_usd: float | None = None
    usage: dict[str, Any] | None = None
    result: str | None = None
    structured_output: Any = None


@dataclass
class StreamEvent:
    """Partial-update event emitted when partial messages are enabled."""

    uuid: str
    session_id: str
    event: dict[str, Any]
    parent_tool_use_id: str | None = None


Message: TypeAlias = UserMessage | AssistantMessage | SystemMessage | ResultMessage | StreamEvent


# --- Permissions ---


@dataclass
class PermissionRuleValue:
    tool_name: str
    rule_content: str | None = None


@dataclass
class PermissionUpdate:
    """Permission change the host asks the CLI to apply alongside an allow."""

    type: str  # addRules | replaceRules | removeRules | setMode | addDirectories | removeDirectories
    rules: list[PermissionRuleValue] | None = None
    behavior: str | None = None
    mode: PermissionMode | None = None
    directories: list[str] | None = None
    destination: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.destination is not None:
            data["destination"] = self.destination
        if self.rules is not None:
            data["rules"] = [
                {"toolName": rule.tool_name, "ruleContent": rule.rule_content}
                for rule in self.rules
            ]
        if self.behavior is not None:
            data["behavior"] = self.behavior
        if self.mode is not None:
            data["mode"] = str(self.mode)
        if self.directories is not None:
            data["directories"] = list(self.directories)
        return data


@dataclass
class ToolPermissionContext:
    """Extra information passed to the permission callback."""

    suggestions: list[dict[str, Any]] = field(default_factory=list)
    blocked_path: str | None = None
    signal: asyncio.Event | None = None


@dataclass
class PermissionResultAllow:
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[PermissionUpdate] | None = None

    def to_dict(self, original_input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Serialize as a control response payload.

        The CLI expects the (possibly rewritten) tool input back on allow, so the
        original input is echoed when no override is given.
        """
        data: dict[str, Any] = {"behavior": "allow"}
        updated = self.updated_input if self.updated_input is not None else original_input
        if updated is not None:
            data["updatedInput"] = updated
        if self.updated_permissions is not None:
            data["updatedPermissions"] = [p.to_dict() for p in self.updated_permissions]
        return data


@dataclass
class PermissionResultDeny:
    message: str = ""
    interrupt: bool = False

    def to_dict(self, original_input: dict[str, Any] | None = None) -> dict[str, Any]:
        del original_input
        data: dict[str, Any] = {"behavior": "deny", "message": self.message}
        if self.interrupt:
            data["interrupt"] = True
        return data


PermissionResult: TypeAlias = PermissionResultAllow | PermissionResultDeny

# (tool_name, tool_input, context) -> allow/deny
CanUseTool = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[PermissionResult] | PermissionResult,
]


# --- Hooks ---


@dataclass
class HookContext:
    signal: asyncio.Event | None = None


@dataclass
class BaseHookInput:
    session_id: str
    transcript_path: str
    cwd: str
    permission_mode: str | None = None


@dataclass
class PreToolUseHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.PRE_TOOL_USE.value
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class PostToolUseHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.POST_TOOL_USE.value
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_response: Any = None


@dataclass
class UserPromptSubmitHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.USER_PROMPT_SUBMIT.value
    prompt: str = ""


@dataclass
class StopHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.STOP.value
    stop_hook_active: bool = False


@dataclass
class SubagentStopHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.SUBAGENT_STOP.value
    stop_hook_active: bool = False


@dataclass
class PreCompactHookInput(BaseHookInput):
    hook_event_name: str = HookEvent.PRE_COMPACT.value
    trigger: str = "auto"
    custom_instructions: str | None = None


@dataclass
class GenericHookInput(BaseHookInput):
    """Hook input for events without a dedicated shape; ``data`` keeps the raw payload."""

    hook_event_name: str = ""
    data: dict[str, Any] = field(default_factory=dict)


HookInput: TypeAlias = (
    PreToolUseHookInput
    | PostToolUseHookInput
    | UserPromptSubmitHookInput
    | StopHookInput
    | SubagentStopHookInput
    | PreCompactHookInput
    | GenericHookInput
)


@dataclass
class HookOutput:
    """Decision returned by a hook callback.

    ``continue_`` is spelled with a trailing underscore because ``continue`` is a
    keyword; it is serialized as ``continue``.
    """

    continue_: bool | None = None
    suppress_output: bool | None = None
    stop_reason: str | None = None
    decision: str | None = None
    reason: str | None = None
    system_message: str | None = None
    hook_specific_output: dict[str, Any] | None = None

    _WIRE_NAMES = {
        "continue_": "continue",
        "suppress_output": "suppressOutput",
        "stop_reason": "stopReason",
        "decision": "decision",
        "reason": "reason",
        "system_message": "systemMessage",
        "hook_specific_output": "hookSpecificOutput",
    }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to wire names, omitting unset fields."""
        data: dict[str, Any] = {}
        for attr, wire in self._WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookOutput:
        """Build from either wire names or attribute names."""
        by_wire = {wire: attr for attr, wire in cls._WIRE_NAMES.items()}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = by_wire.get(key, key)
            if attr in cls._WIRE_NAMES:
                kwargs[attr] = value
        return cls(**kwargs)

    @classmethod
    def normalize_dict(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Rename attribute-style keys to wire names and drop None values.

        Keys that are not HookOutput fields pass through unchanged.
        """
        return {
            cls._WIRE_NAMES.get(key, key): value for key, value in data.items() if value is not None
        }


# (input, tool_use_id, context) -> output
HookCallback = Callable[
    [HookInput, str | None, HookContext],
    Awaitable[HookOutput | dict[str, Any]] | HookOutput | dict[str, Any],
]


@dataclass
class HookMatcher:
    """Hook callbacks registered for tool names matching ``matcher`` (None = all)."""

    matcher: str | None = None
    hooks: list[HookCallback] = field(default_factory=list)
    timeout: float | None = None


@dataclass
class AgentDefinition:
    """Sub-agent definition passed to the CLI at initialize time."""

    description: str
    prompt: str
    tools: list[str] | None = None
    model: str | None = None  # sonnet | opus | haiku | inherit

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"description": self.description, "prompt": self.prompt}
        if self.tools is not None:
            data["tools"] = list(self.tools)
        if self.model is not None:
            data["model"] = self.model
        return data
