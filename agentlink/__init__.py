"""agentlink: drive an agent CLI over its streaming JSON control protocol."""

from .client import AgentClient, MessageStream, process_query, query
from .errors import (
    AgentLinkError,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ConfigurationError,
    ControlError,
    ControlTimeoutError,
    MessageParseError,
    ProcessError,
    RequestCancelledError,
)
from .options import AgentOptions
from .parser import parse_hook_input, parse_message
from .runtime import ControlEngine, EngineState
from .transport import Transport
from .transport.subprocess import SubprocessTransport
from .types import (
    AgentDefinition,
    AssistantMessage,
    ContentBlock,
    HookContext,
    HookEvent,
    HookInput,
    HookMatcher,
    HookOutput,
    Message,
    PermissionMode,
    PermissionResult,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from .version import check_cli_version

__version__ = "0.1.0"

__all__ = [
    "AgentClient",
    "AgentDefinition",
    "AgentLinkError",
    "AgentOptions",
    "AssistantMessage",
    "CLIConnectionError",
    "CLIJSONDecodeError",
    "CLINotFoundError",
    "ConfigurationError",
    "ContentBlock",
    "ControlEngine",
    "ControlError",
    "ControlTimeoutError",
    "EngineState",
    "HookContext",
    "HookEvent",
    "HookInput",
    "HookMatcher",
    "HookOutput",
    "Message",
    "MessageParseError",
    "MessageStream",
    "PermissionMode",
    "PermissionResult",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionRuleValue",
    "PermissionUpdate",
    "ProcessError",
    "RequestCancelledError",
    "ResultMessage",
    "StreamEvent",
    "SubprocessTransport",
    "SystemMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolPermissionContext",
    "ToolResultBlock",
    "ToolUseBlock",
    "Transport",
    "UserMessage",
    "__version__",
    "check_cli_version",
    "parse_hook_input",
    "parse_message",
    "query",
    "process_query",
]
