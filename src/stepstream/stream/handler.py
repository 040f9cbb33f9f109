"""Normalize raw LangChain/LangGraph stream payloads into stable models.

This is the only place that knows provider chunk shapes (AIMessageChunk, plain
dicts, OpenAI-style choice deltas) and astream_events envelopes. Downstream the
splitter and correlator only see NormalizedChunk and GraphEventEnvelope.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.messages import ToolCall, ToolCallChunk
from langchain_core.messages.ai import UsageMetadata

from ..events import GraphEvent
from ..logging_config import get_logger

logger = get_logger(__name__)

# Content-part types that carry model reasoning rather than answer text
REASONING_PART_TYPES = ("thinking", "reasoning", "think")
# Tool-use parts duplicate tool_call_chunks and are never content
TOOL_PART_TYPES = ("tool_use", "input_json_delta", "tool_call_chunk", "tool_call")
_STOP_KEYS = ("finish_reason", "stop_reason", "done_reason")


@dataclass
class NormalizedChunk:
    """One model output fragment in provider-independent form."""
    text: str = ""
    reasoning: str = ""
    parts: List[Dict[str, Any]] = field(default_factory=list)  # non-text content parts
    tool_call_chunks: List[ToolCallChunk] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[UsageMetadata] = None
    response_metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    is_last: bool = False
    raw_content: Any = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.reasoning and not self.parts


@dataclass
class GraphEventEnvelope:
    """Normalized astream_events item."""
    event: str
    data: Dict[str, Any]
    metadata: Dict[str, Any]
    name: str = ""


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def content_text(content: Any) -> Tuple[str, List[Dict[str, Any]]]:
    """Split message content into joined text and the remaining non-text parts."""
    if content is None:
        return "", []
    if isinstance(content, str):
        return content, []
    text = ""
    parts: List[Dict[str, Any]] = []
    if isinstance(content, list):
        for item in content:
            if isinstance(item, str):
                text += item
            elif isinstance(item, dict) and item.get("type", "text") == "text" and "text" in item:
                text += item.get("text") or ""
            elif isinstance(item, dict) and item.get("type") not in TOOL_PART_TYPES:
                parts.append(item)
        return text, parts
    return str(content), []


def _chunk_is_last(chunk: Any, response_metadata: Dict[str, Any]) -> bool:
    if _get(chunk, "chunk_position") == "last":
        return True
    return any(response_metadata.get(key) for key in _STOP_KEYS)


def normalize_chunk(chunk: Any, reasoning_key: str = "reasoning_content") -> Optional[NormalizedChunk]:
    """Read a raw model chunk. Returns None if the payload is not a message chunk."""
    if chunk is None:
        return None
    if isinstance(chunk, str):
        return NormalizedChunk(text=chunk, raw_content=chunk)

    if isinstance(chunk, dict) and "choices" in chunk:
        # OpenAI-style completion chunk: {"choices": [{"delta": {...}, "finish_reason": ...}]}
        choices = chunk.get("choices") or [{}]
        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        return NormalizedChunk(
            text=delta.get("content") or "",
            reasoning=delta.get(reasoning_key) or "",
            id=chunk.get("id"),
            is_last=bool(choice.get("finish_reason")),
            response_metadata={"finish_reason": choice.get("finish_reason")},
            raw_content=delta.get("content"),
        )

    if not isinstance(chunk, dict) and not hasattr(chunk, "content"):
        return None

    raw_content = _get(chunk, "content")
    text, parts = content_text(raw_content)
    additional = _get(chunk, "additional_kwargs") or {}
    response_metadata = dict(_get(chunk, "response_metadata") or {})
    reasoning = additional.get(reasoning_key) or ""
    normalized = NormalizedChunk(
        text=text,
        reasoning=reasoning if isinstance(reasoning, str) else "",
        parts=parts,
        tool_call_chunks=list(_get(chunk, "tool_call_chunks") or []),
        tool_calls=list(_get(chunk, "tool_calls") or []),
        usage=_get(chunk, "usage_metadata"),
        response_metadata=response_metadata,
        id=_get(chunk, "id"),
        is_last=_chunk_is_last(chunk, response_metadata),
        raw_content=raw_content,
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "Normalized chunk: text=%r reasoning=%d chars parts=%d tool_call_chunks=%d last=%s",
            text[:80],
            len(normalized.reasoning),
            len(parts),
            len(normalized.tool_call_chunks),
            normalized.is_last,
        )
    return normalized


def extract_reasoning(chunk: NormalizedChunk) -> NormalizedChunk:
    """Move reasoning embedded in generic content parts onto the reasoning field.

    Providers that stream thinking as content blocks ({"type": "thinking", ...})
    do not separate it the way reasoning_content providers do.
    """
    if not chunk.parts:
        return chunk
    kept: List[Dict[str, Any]] = []
    reasoning = chunk.reasoning
    for part in chunk.parts:
        part_type = part.get("type")
        if part_type in REASONING_PART_TYPES:
            value = part.get(part_type)
            if value is None:
                value = part.get("summary") or part.get("text", "")
            if isinstance(value, list):
                # e.g. {"type": "reasoning", "summary": [...]} style payloads
                value = "".join(v.get("text", "") for v in value if isinstance(v, dict))
            reasoning += value or ""
        else:
            kept.append(part)
    chunk.parts = kept
    chunk.reasoning = reasoning
    return chunk


def normalize_event(raw: Any) -> Optional[GraphEventEnvelope]:
    """Read an astream_events(v2) item; custom events are re-tagged by their name."""
    if not isinstance(raw, dict) or "event" not in raw:
        return None
    event = raw.get("event") or ""
    name = raw.get("name") or ""
    if event == GraphEvent.CUSTOM_EVENT.value and name:
        event = name
    data = raw.get("data")
    if not isinstance(data, dict):
        data = {"chunk": data} if data is not None else {}
    return GraphEventEnvelope(
        event=event,
        data=data,
        metadata=raw.get("metadata") or {},
        name=name,
    )
