"""Event tags and payloads exchanged between the stream layer and its handlers.

Every payload is wrapped in a StreamEvent envelope carrying its GraphEvent tag and
the run id, so handlers can be registered per tag and still tell runs apart.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from langchain_core.messages import ToolCall, ToolCallChunk
from langchain_core.messages.ai import UsageMetadata


class GraphEvent(str, Enum):
    """Event tags produced by the stream layer and consumed from LangChain."""
    # Produced
    RUN_STEP_CREATED = "on_run_step"
    RUN_STEP_CLOSED = "on_run_step_closed"
    MESSAGE_DELTA = "on_message_delta"
    REASONING_DELTA = "on_reasoning_delta"
    TOOL_CALL_CHUNK = "on_run_step_delta"
    TOOL_END = "on_run_step_completed"
    MODEL_END = "on_model_end"
    USAGE_METADATA = "on_usage_metadata"
    RUN_END = "on_run_end"
    # Consumed (LangChain astream_events names)
    CHAT_MODEL_STREAM = "on_chat_model_stream"
    CHAT_MODEL_END = "on_chat_model_end"
    CUSTOM_EVENT = "on_custom_event"


class StepType(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"


class ContentType(str, Enum):
    TEXT = "text"
    THINK = "think"
    TOOL_CALL = "tool_call"
    ERROR = "error"


def text_part(text: str, tool_call_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    part: Dict[str, Any] = {"type": ContentType.TEXT.value, "text": text}
    if tool_call_ids:
        part["tool_call_ids"] = list(tool_call_ids)
    return part


def think_part(text: str) -> Dict[str, Any]:
    return {"type": ContentType.THINK.value, "think": text}


@dataclass
class RunStep:
    """An addressable unit of output. One (type, message_id) pair for its lifetime."""
    id: str
    run_id: str
    type: StepType
    index: int
    message_id: Optional[str] = None
    step_key: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    closed: bool = False


@dataclass
class MessageDelta:
    step_id: str
    content: List[Dict[str, Any]]

    @property
    def text(self) -> str:
        return "".join(
            p.get("text", "") for p in self.content
            if isinstance(p, dict) and p.get("type") == ContentType.TEXT.value
        )


@dataclass
class ReasoningDelta:
    step_id: str
    content: List[Dict[str, Any]]

    @property
    def text(self) -> str:
        return "".join(
            p.get("think", "") for p in self.content
            if isinstance(p, dict) and p.get("type") == ContentType.THINK.value
        )


@dataclass
class ToolCallDelta:
    """Partial tool-call fragments attached to a TOOL_CALL step."""
    step_id: str
    tool_call_chunks: List[ToolCallChunk]


@dataclass
class ToolEndEvent:
    """Emitted once per completed (or failed) tool call."""
    step_id: str
    tool_call: Dict[str, Any]
    content_index: int
    is_error: bool = False
    artifact: Any = None


@dataclass
class ModelEndEvent:
    """End of one model turn: final usage and any complete tool calls."""
    usage: Optional[UsageMetadata] = None
    response_metadata: Dict[str, Any] = field(default_factory=dict)
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class RunEndEvent:
    run_id: str
    failed: bool = False


@dataclass
class StreamEvent:
    """Envelope delivered to handlers."""
    event: Union[GraphEvent, str]
    data: Any
    run_id: Optional[str] = None
