"""Step-scoped event streaming for LangChain/LangGraph model output."""

from .events import GraphEvent, StepType, StreamEvent
from .exceptions import (
    MalformedToolArgsError,
    StepStreamError,
    StreamDesyncError,
    ToolExecutionError,
    UnknownToolError,
    UnsupportedProviderError,
)
from .providers import Provider, ProviderRegistry, UsagePolicy, default_registry
from .run import Run, RunResult

__all__ = [
    "GraphEvent",
    "MalformedToolArgsError",
    "Provider",
    "ProviderRegistry",
    "Run",
    "RunResult",
    "StepStreamError",
    "StepType",
    "StreamDesyncError",
    "StreamEvent",
    "ToolExecutionError",
    "UnknownToolError",
    "UnsupportedProviderError",
    "UsagePolicy",
    "default_registry",
]
