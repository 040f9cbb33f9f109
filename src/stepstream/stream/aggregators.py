"""Run-scoped folds over dispatched events: final content parts and total token usage.

Both aggregators are fed only through the dispatcher and answer get_result() with
an explicit status. Until the run's terminal event the status is INCOMPLETE and no
value is returned; a failed run returns FAILED and no partial value.
"""

import copy
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from langchain_core.messages.ai import UsageMetadata, add_usage

from ..events import ContentType, GraphEvent, RunEndEvent, StreamEvent, StepType
from ..logging_config import get_logger
from ..providers import UsagePolicy
from .state import tag_of

logger = get_logger(__name__)


class AggregatorStatus(str, Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class AggregateResult:
    status: AggregatorStatus
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status == AggregatorStatus.COMPLETE


def _terminal_status(event: StreamEvent) -> AggregatorStatus:
    data = event.data
    if isinstance(data, RunEndEvent) and data.failed:
        return AggregatorStatus.FAILED
    return AggregatorStatus.COMPLETE


_MERGEABLE = {ContentType.TEXT.value: "text", ContentType.THINK.value: "think"}


class ContentAggregator:
    """Folds content deltas and tool results into ordered content parts.

    Parts are grouped by step index. Within a step, consecutive text (or think)
    parts are concatenated; any other part, such as an image or other structured
    payload, is kept as its own part at its position.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.status = AggregatorStatus.INCOMPLETE
        self.step_map: Dict[str, Any] = {}
        self._parts: Dict[int, List[Dict[str, Any]]] = {}
        self._tool_parts: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def replay(cls, events: Iterable[StreamEvent]) -> "ContentAggregator":
        """Fold a finished event log into a fresh aggregator."""
        aggregator = cls()
        for event in events:
            aggregator.handle(event)
        return aggregator

    def handle(self, event: StreamEvent) -> None:
        tag = tag_of(event.event)
        if tag == GraphEvent.RUN_STEP_CREATED.value:
            self._on_step(event.data)
        elif tag in (GraphEvent.MESSAGE_DELTA.value, GraphEvent.REASONING_DELTA.value):
            step = self._known_step(event.data.step_id, tag)
            if step is not None:
                for part in event.data.content:
                    self._merge(step.index, part)
        elif tag == GraphEvent.TOOL_CALL_CHUNK.value:
            self._on_tool_call_chunks(event.data)
        elif tag == GraphEvent.TOOL_END.value:
            self._on_tool_end(event.data)
        elif tag == GraphEvent.RUN_END.value:
            self.status = _terminal_status(event)

    def fail(self) -> None:
        self.status = AggregatorStatus.FAILED

    def get_result(self) -> AggregateResult:
        if self.status != AggregatorStatus.COMPLETE:
            return AggregateResult(self.status)
        return AggregateResult(self.status, self.content())

    def content(self) -> List[Dict[str, Any]]:
        """Current parts in step order, regardless of status."""
        ordered: List[Dict[str, Any]] = []
        for index in sorted(self._parts):
            ordered.extend(copy.deepcopy(self._parts[index]))
        return ordered

    def _known_step(self, step_id: str, tag: str):
        step = self.step_map.get(step_id)
        if step is None:
            logger.warning("Content aggregator: %s for unknown step %s", tag, step_id)
        return step

    def _on_step(self, step) -> None:
        self.step_map[step.id] = step
        self._parts.setdefault(step.index, [])
        if step.type != StepType.TOOL_CALL:
            return
        for call in step.tool_calls:
            part = {
                "type": ContentType.TOOL_CALL.value,
                "tool_call": {"id": call.get("id"), "name": call.get("name"), "args": "", "progress": 0.1},
            }
            self._parts[step.index].append(part)
            self._tool_parts[step.id] = part

    def _merge(self, index: int, part: Dict[str, Any]) -> None:
        parts = self._parts.setdefault(index, [])
        part_type = part.get("type")
        key = _MERGEABLE.get(part_type)
        if key is not None and parts and parts[-1].get("type") == part_type:
            last = parts[-1]
            last[key] = last.get(key, "") + (part.get(key) or "")
            if part.get("tool_call_ids"):
                ids = last.setdefault("tool_call_ids", [])
                ids.extend(i for i in part["tool_call_ids"] if i not in ids)
            return
        parts.append(copy.deepcopy(part))

    def _on_tool_call_chunks(self, delta) -> None:
        step = self._known_step(delta.step_id, GraphEvent.TOOL_CALL_CHUNK.value)
        if step is None:
            return
        part = self._tool_parts.get(step.id)
        if part is None:
            part = {"type": ContentType.TOOL_CALL.value, "tool_call": {"args": "", "progress": 0.1}}
            self._parts.setdefault(step.index, []).append(part)
            self._tool_parts[step.id] = part
        tool_call = part["tool_call"]
        for chunk in delta.tool_call_chunks:
            if chunk.get("id") and not tool_call.get("id"):
                tool_call["id"] = chunk["id"]
            if chunk.get("name") and not tool_call.get("name"):
                tool_call["name"] = chunk["name"]
            tool_call["args"] = tool_call.get("args", "") + (chunk.get("args") or "")

    def _on_tool_end(self, result) -> None:
        part = self._tool_parts.get(result.step_id)
        if part is None:
            # Result for a step this run never announced
            part = {"type": ContentType.TOOL_CALL.value, "tool_call": {}}
            self._parts.setdefault(result.content_index, []).append(part)
            self._tool_parts[result.step_id] = part
        tool_call = part["tool_call"]
        args = result.tool_call.get("args", tool_call.get("args", ""))
        tool_call.update(
            id=result.tool_call.get("id", tool_call.get("id")),
            name=result.tool_call.get("name", tool_call.get("name")),
            args=args if isinstance(args, str) else json.dumps(args),
            output=result.tool_call.get("output"),
            progress=1,
        )
        if result.is_error:
            tool_call["is_error"] = True
        if result.artifact is not None:
            part["artifact"] = copy.deepcopy(result.artifact)


class MetadataAggregator:
    """Folds usage fragments into the run's total token usage.

    Within one model turn fragments are either running totals (cumulative: the
    latest replaces) or deltas (incremental: summed). Turns are summed into the
    run total when the turn ends. The policy is given by the caller.
    """

    def __init__(self, usage_policy: UsagePolicy = UsagePolicy.INCREMENTAL) -> None:
        self.usage_policy = UsagePolicy(usage_policy)
        self.reset()

    def reset(self) -> None:
        self.status = AggregatorStatus.INCOMPLETE
        self.response_metadata: List[Dict[str, Any]] = []
        self._total: Optional[UsageMetadata] = None
        self._turn: Optional[UsageMetadata] = None
        self._turn_has_fragments = False

    def handle(self, event: StreamEvent) -> None:
        tag = tag_of(event.event)
        if tag == GraphEvent.USAGE_METADATA.value:
            self._fold_fragment(event.data)
        elif tag == GraphEvent.MODEL_END.value:
            model_end = event.data
            if not self._turn_has_fragments and model_end.usage:
                self._turn = dict(model_end.usage)
            if model_end.response_metadata:
                self.response_metadata.append(dict(model_end.response_metadata))
            self._end_turn()
        elif tag == GraphEvent.RUN_END.value:
            self._end_turn()
            self.status = _terminal_status(event)

    def fail(self) -> None:
        self.status = AggregatorStatus.FAILED

    def get_result(self) -> AggregateResult:
        if self.status != AggregatorStatus.COMPLETE:
            return AggregateResult(self.status)
        return AggregateResult(self.status, dict(self._total) if self._total else None)

    def _fold_fragment(self, usage: Optional[UsageMetadata]) -> None:
        if not usage:
            return
        if self.usage_policy == UsagePolicy.CUMULATIVE:
            self._turn = dict(usage)
        else:
            self._turn = add_usage(self._turn, usage)
        self._turn_has_fragments = True

    def _end_turn(self) -> None:
        if self._turn:
            self._total = add_usage(self._total, self._turn)
        self._turn = None
        self._turn_has_fragments = False
