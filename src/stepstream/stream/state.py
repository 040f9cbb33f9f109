"""Per-run mutable state and the step ledger that emits step lifecycle events.

A RunState is created for exactly one run and owned by the splitter/correlator
pair processing it. Nothing in it is shared between runs.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from langchain_core.messages import ToolCall, ToolCallChunk

from ..events import (
    GraphEvent,
    MessageDelta,
    ReasoningDelta,
    RunStep,
    StepType,
    StreamEvent,
    ToolCallDelta,
)
from ..exceptions import StepStreamError, StreamDesyncError
from ..logging_config import get_logger

logger = get_logger(__name__)

Handler = Callable[[StreamEvent], None]


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def tag_of(tag: Union[GraphEvent, str]) -> str:
    """Plain string form of an event tag (str enums do not hash like their values)."""
    return tag.value if isinstance(tag, Enum) else str(tag)


@dataclass
class ToolCallSlot:
    """In-progress tool call assembled from fragments sharing an index or id."""
    index: Optional[int] = None
    id: Optional[str] = None
    name: Optional[str] = None
    args: List[str] = field(default_factory=list)
    step_id: Optional[str] = None
    step_key: str = ""
    undispatched: List[ToolCallChunk] = field(default_factory=list)

    @property
    def raw_args(self) -> str:
        return "".join(self.args)


@dataclass
class RunState:
    """Everything one run accumulates while its chunk sequence is consumed."""
    run_id: str
    steps: List[RunStep] = field(default_factory=list)
    step_positions: Dict[str, int] = field(default_factory=dict)
    open_step_id: Optional[str] = None
    step_key_ids: Dict[str, List[str]] = field(default_factory=dict)
    message_ids_by_step_key: Dict[str, str] = field(default_factory=dict)
    prelim_message_ids_by_step_key: Dict[str, str] = field(default_factory=dict)
    message_steps_with_tool_calls: Set[str] = field(default_factory=set)
    tool_call_step_ids: Dict[str, str] = field(default_factory=dict)
    open_tool_step_ids: List[str] = field(default_factory=list)
    tool_call_slots: Dict[int, ToolCallSlot] = field(default_factory=dict)
    last_slot_key: Optional[int] = None
    completed_tool_calls: List[ToolCall] = field(default_factory=list)
    diagnostics: List[StepStreamError] = field(default_factory=list)

    def get_step(self, step_id: Optional[str]) -> Optional[RunStep]:
        if step_id is None:
            return None
        position = self.step_positions.get(step_id)
        if position is None:
            return None
        return self.steps[position]

    def get_open_step(self) -> Optional[RunStep]:
        return self.get_step(self.open_step_id)

    def get_step_id_by_key(self, step_key: str, index: Optional[int] = None) -> Optional[str]:
        step_ids = self.step_key_ids.get(step_key)
        if not step_ids:
            return None
        if index is None:
            return step_ids[-1]
        if 0 <= index < len(step_ids):
            return step_ids[index]
        return None

    def record(self, error: StepStreamError) -> None:
        """Keep a recoverable error as a diagnostic of this run."""
        logger.warning("%s", error.message, extra={"run_id": self.run_id})
        self.diagnostics.append(error)


class StepEmitter:
    """Creates and closes steps on a RunState and delivers events to handlers.

    handlers is either an object with a dispatch(event) method (EventDispatcher)
    or a mapping of event tag -> callable.
    """

    def __init__(self, state: RunState, handlers: Union[Mapping[Any, Handler], Any, None]):
        self.state = state
        self._dispatch: Optional[Handler] = None
        self._handlers: Dict[str, Handler] = {}
        if handlers is not None and hasattr(handlers, "dispatch"):
            self._dispatch = handlers.dispatch
        elif handlers is not None:
            self._handlers = {tag_of(k): v for k, v in handlers.items()}

    def emit(self, tag: GraphEvent, data: Any) -> None:
        event = StreamEvent(event=tag, data=data, run_id=self.state.run_id)
        if self._dispatch is not None:
            self._dispatch(event)
            return
        handler = self._handlers.get(tag_of(tag))
        if handler is not None:
            handler(event)

    def create_step(
        self,
        step_type: StepType,
        message_id: Optional[str] = None,
        step_key: str = "",
        tool_calls: Optional[List[ToolCall]] = None,
    ) -> RunStep:
        """Close the open step (if any) and open a new one. Index is never reused.

        Tool-call steps are not closed here: they keep accepting argument deltas
        until close_tool_steps runs at the end of the model turn.
        """
        self.close_step()
        state = self.state
        step = RunStep(
            id=new_step_id(),
            run_id=state.run_id,
            type=step_type,
            index=len(state.steps),
            message_id=message_id,
            step_key=step_key,
            tool_calls=list(tool_calls or []),
        )
        state.steps.append(step)
        state.step_positions[step.id] = step.index
        state.step_key_ids.setdefault(step_key, []).append(step.id)
        state.open_step_id = step.id
        if step_type == StepType.TOOL_CALL:
            state.open_tool_step_ids.append(step.id)
        for call in step.tool_calls:
            call_id = call.get("id")
            if call_id and call_id not in state.tool_call_step_ids:
                state.tool_call_step_ids[call_id] = step.id
        logger.debug("Created %s step %s (index %d)", step_type.value, step.id, step.index)
        self.emit(GraphEvent.RUN_STEP_CREATED, step)
        return step

    def close_step(self) -> None:
        """Close the open text or reasoning step. A tool-call step is only left."""
        step = self.state.get_open_step()
        self.state.open_step_id = None
        if step is None or step.id in self.state.open_tool_step_ids:
            return
        self._close(step)

    def close_tool_steps(self) -> None:
        """Close every tool-call step still taking deltas, in creation order."""
        state = self.state
        step_ids, state.open_tool_step_ids = state.open_tool_step_ids, []
        if state.open_step_id in step_ids:
            state.open_step_id = None
        for step_id in step_ids:
            self._close(state.get_step(step_id))

    def close_all(self) -> None:
        self.close_step()
        self.close_tool_steps()

    def _close(self, step: Optional[RunStep]) -> None:
        if step is None or step.closed:
            return
        step.closed = True
        self.emit(GraphEvent.RUN_STEP_CLOSED, step)

    def _accepts_delta(self, step_id: Optional[str]) -> bool:
        step = self.state.get_step(step_id)
        if step is None:
            self.state.record(StreamDesyncError(step_id, "unknown step"))
            return False
        if step.closed:
            self.state.record(StreamDesyncError(step_id, "step already closed"))
            return False
        return True

    def message_delta(self, step_id: Optional[str], content: List[Dict[str, Any]]) -> bool:
        if not self._accepts_delta(step_id):
            return False
        self.emit(GraphEvent.MESSAGE_DELTA, MessageDelta(step_id=step_id, content=content))
        return True

    def reasoning_delta(self, step_id: Optional[str], content: List[Dict[str, Any]]) -> bool:
        if not self._accepts_delta(step_id):
            return False
        self.emit(GraphEvent.REASONING_DELTA, ReasoningDelta(step_id=step_id, content=content))
        return True

    def tool_call_delta(self, step_id: Optional[str], chunks: List[ToolCallChunk]) -> bool:
        if not self._accepts_delta(step_id):
            return False
        self.emit(GraphEvent.TOOL_CALL_CHUNK, ToolCallDelta(step_id=step_id, tool_call_chunks=chunks))
        return True
