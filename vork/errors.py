"""Exception types shared by the agent loop, tools, and CLI."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad policy name, corrupt profile, etc.)."""


class BackendError(AgentError):
    """Raised when the chat-completions backend is unreachable or misbehaves."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ArgumentParseError(ValueError):
    """Raised when a tool call carries malformed or incomplete arguments."""


class ToolError(Exception):
    """Raised by a tool executor; the loop feeds it back to the model."""
