"""Options for launching and talking to the agent CLI."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError
from .types import AgentDefinition, CanUseTool, HookEvent, HookMatcher, PermissionMode

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024  # 1 MiB per stdout line
DEFAULT_CONTROL_TIMEOUT = 60.0
DEFAULT_CLOSE_GRACE_PERIOD = 2.0
DEFAULT_MESSAGE_BUFFER_SIZE = 100


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class AgentOptions:
    """Configuration for one connection to the agent CLI.

    Covers how the process is launched (path, flags, environment), how the
    control protocol behaves (timeouts, buffer sizes), and the host-side
    callbacks the CLI may invoke mid-turn.

    Plain settings can live in a YAML file; callbacks are attached in code::

        options = AgentOptions.from_file("agent.yaml")
        options.can_use_tool = my_permission_callback

    ``can_use_tool`` and ``permission_prompt_tool_name`` are mutually exclusive:
    the callback answers permission checks over the control protocol, the tool
    name delegates them to an MCP tool inside the CLI.
    """

    model: str | None = field(default_factory=lambda: os.getenv("AGENTLINK_MODEL"))
    fallback_model: str | None = None
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    permission_mode: PermissionMode | None = None
    max_turns: int | None = None
    max_budget_usd: float | None = None
    max_thinking_tokens: int | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)

    # Session management
    continue_conversation: bool = False
    resume: str | None = None
    fork_session: bool = False

    # Process
    cwd: str | Path | None = None
    add_dirs: list[str | Path] = field(default_factory=list)
    cli_path: str | Path | None = field(default_factory=lambda: os.getenv("AGENTLINK_CLI_PATH"))
    env: dict[str, str] = field(default_factory=dict)
    extra_args: dict[str, str | None] = field(default_factory=dict)
    settings: str | None = None
    setting_sources: list[str] | None = None
    mcp_servers: dict[str, Any] | str | Path = field(default_factory=dict)
    agents: dict[str, AgentDefinition] | None = None
    include_partial_messages: bool = False
    user: str | None = None

    # Protocol tuning
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    control_timeout: float | None = field(
        default_factory=lambda: _env_float("AGENTLINK_CONTROL_TIMEOUT", DEFAULT_CONTROL_TIMEOUT)
    )
    close_grace_period: float = DEFAULT_CLOSE_GRACE_PERIOD
    message_buffer_size: int = DEFAULT_MESSAGE_BUFFER_SIZE

    # Host callbacks
    can_use_tool: CanUseTool | None = None
    permission_prompt_tool_name: str | None = None
    hooks: dict[HookEvent | str, list[HookMatcher]] | None = None
    stderr: Callable[[str], None] | None = None

    extras: dict[str, Any] = field(default_factory=dict)

    # Fields that may appear in a YAML config file
    _KNOWN_FIELDS = frozenset(
        {
            "model",
            "fallback_model",
            "system_prompt",
            "append_system_prompt",
            "permission_mode",
            "max_turns",
            "max_budget_usd",
            "max_thinking_tokens",
            "allowed_tools",
            "disallowed_tools",
            "continue_conversation",
            "resume",
            "fork_session",
            "cwd",
            "add_dirs",
            "cli_path",
            "env",
            "extra_args",
            "settings",
            "setting_sources",
            "mcp_servers",
            "agents",
            "include_partial_messages",
            "user",
            "max_buffer_size",
            "control_timeout",
            "close_grace_period",
            "message_buffer_size",
            "permission_prompt_tool_name",
        }
    )

    def __post_init__(self) -> None:
        if isinstance(self.permission_mode, str) and not isinstance(
            self.permission_mode, PermissionMode
        ):
            try:
                self.permission_mode = PermissionMode(self.permission_mode)
            except ValueError:
                allowed = ", ".join(mode.value for mode in PermissionMode)
                raise ConfigurationError(
                    f"Invalid permission_mode '{self.permission_mode}'. Allowed values: {allowed}."
                ) from None

    @property
    def has_callbacks(self) -> bool:
        """True when the CLI may send control requests that need the host to answer."""
        return self.can_use_tool is not None or bool(self.hooks)

    @property
    def timeout_seconds(self) -> float | None:
        """Control-request deadline; None when timeouts are disabled (unset or <= 0)."""
        if self.control_timeout is None or self.control_timeout <= 0:
            return None
        return float(self.control_timeout)

    def validate(self) -> None:
        """Reject contradictory settings before any process is spawned."""
        if self.can_use_tool is not None and self.permission_prompt_tool_name is not None:
            raise ConfigurationError(
                "Cannot specify both 'can_use_tool' and 'permission_prompt_tool_name'"
            )
        if self.max_buffer_size <= 0:
            raise ConfigurationError("max_buffer_size must be positive")
        if self.message_buffer_size <= 0:
            raise ConfigurationError("message_buffer_size must be positive")

    # --- YAML persistence ---

    @classmethod
    def from_file(cls, path: str | Path) -> AgentOptions:
        """Load options from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a YAML mapping: {path}")
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> AgentOptions:
        """Build options from a plain dict, preserving unknown keys in extras."""
        known: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, value in data.items():
            if key in cls._KNOWN_FIELDS:
                known[key] = value
            else:
                extras[key] = value
        if isinstance(known.get("agents"), dict):
            known["agents"] = {
                name: AgentDefinition(**definition)
                for name, definition in known["agents"].items()
            }
        known["extras"] = extras
        return cls(**known)

    def to_file(self, path: str | Path) -> None:
        """Save the serializable options to a YAML file (callbacks are skipped)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self._to_dict(), f, default_flow_style=False, sort_keys=False)

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in sorted(self._KNOWN_FIELDS):
            value = getattr(self, name)
            if value is None or value == [] or value == {} or value is False:
                continue
            if isinstance(value, PermissionMode):
                value = value.value
            elif isinstance(value, Path):
                value = str(value)
            elif name == "add_dirs":
                value = [str(item) for item in value]
            elif name == "agents":
                value = {key: agent.to_dict() for key, agent in value.items()}
            data[name] = value
        data.update(self.extras)
        return data
