"""Exceptions raised or recorded by the streaming layer."""

from typing import Optional


class StepStreamError(Exception):
    """Base exception for streaming layer errors."""

    recoverable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnsupportedProviderError(StepStreamError):
    """Raised at configuration time when a provider has no registered factory."""

    def __init__(self, provider: str):
        super().__init__(f"Unsupported LLM provider: {provider}")
        self.provider = provider


class StreamDesyncError(StepStreamError):
    """A delta referenced an unknown or closed step. Recorded, never raised."""

    recoverable = True

    def __init__(self, step_id: Optional[str], reason: str = "unknown step"):
        super().__init__(f"Dropped delta for step {step_id!r}: {reason}")
        self.step_id = step_id
        self.reason = reason


class MalformedToolArgsError(StepStreamError):
    """Accumulated tool-call arguments did not parse. Surfaced on the tool end event."""

    recoverable = True

    def __init__(self, tool_call_id: Optional[str], raw_args: str, detail: str = ""):
        message = f"Malformed arguments for tool call {tool_call_id!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.tool_call_id = tool_call_id
        self.raw_args = raw_args


class UnknownToolError(StepStreamError):
    """Raised when a tool call names a tool that is not available."""

    def __init__(self, name: str):
        super().__init__(f'Tool "{name}" not found.')
        self.name = name


class ToolExecutionError(StepStreamError):
    """Raised when a tool implementation fails and errors are not handled."""

    def __init__(self, name: str, tool_call_id: Optional[str], cause: BaseException):
        super().__init__(f'Tool "{name}" failed: {cause}')
        self.name = name
        self.tool_call_id = tool_call_id
        self.cause = cause
