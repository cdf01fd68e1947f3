"""Error types raised by the agentlink runtime."""

from __future__ import annotations

from typing import Any


class AgentLinkError(Exception):
    """Base class for all agentlink errors."""


class ConfigurationError(AgentLinkError, ValueError):
    """Raised when options are contradictory or incomplete."""


class CLIConnectionError(AgentLinkError):
    """Raised when the agent CLI cannot be started or talked to."""


class CLINotFoundError(CLIConnectionError):
    """Raised when the agent CLI executable cannot be located."""

    def __init__(self, message: str = "Agent CLI not found", cli_path: str | None = None) -> None:
        if cli_path:
            message = f"{message}: {cli_path}"
        super().__init__(message)
        self.cli_path = cli_path


class ProcessError(AgentLinkError):
    """Raised when the CLI process exits with a failure status."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        if exit_code is not None:
            message = f"{message} (exit code: {exit_code})"
        if stderr:
            message = f"{message}\nError output: {stderr}"
        super().__init__(message)


class ControlTimeoutError(AgentLinkError, TimeoutError):
    """Raised when a control request (or version probe) misses its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class MessageParseError(AgentLinkError):
    """Raised when a known message type carries malformed content."""

    def __init__(self, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.data = data


class CLIJSONDecodeError(MessageParseError):
    """A line from the CLI was not valid JSON or exceeded the buffer limit."""

    def __init__(self, line: str, original_error: Exception) -> None:
        preview = line if len(line) <= 100 else f"{line[:100]}..."
        super().__init__(f"Failed to decode JSON: {preview}", data=line)
        self.line = line
        self.original_error = original_error


class ControlError(AgentLinkError):
    """The CLI answered a control request with an error outcome."""

    def __init__(self, message: str, subtype: str | None = None) -> None:
        super().__init__(message)
        self.subtype = subtype


class RequestCancelledError(ControlError):
    """A pending control request was abandoned because the engine shut down."""
