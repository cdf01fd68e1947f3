"""User-facing CLI error types with actionable messages."""


class CliUsageError(ValueError):
    """Base class for user-facing CLI configuration and usage errors."""


class InvalidModeError(CliUsageError):
    """Raised when mode option values are invalid."""

    def __init__(self, option: str, value: str, allowed: str) -> None:
        super().__init__(f"Invalid {option} '{value}'. Allowed values: {allowed}.")


class ConfigLoadError(CliUsageError):
    """Raised when the options file cannot be loaded."""

    def __init__(self, details: str) -> None:
        super().__init__(f"Config error: {details}. Fix --config to point to a valid YAML file.")
