"""Correlate model chunks with steps: message ids per step key and tool-call assembly.

Text and reasoning are handed to the StreamSplitter once the chunk's message id is
known. Tool-call fragments are accumulated into one slot per call (matched by id,
then index) and completed at the end of the model turn, when their arguments
must parse.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from langchain_core.messages import ToolCall, ToolCallChunk
from langchain_core.messages.tool import tool_call as make_tool_call
from langchain_core.messages.tool import tool_call_chunk as make_tool_call_chunk

from ..events import GraphEvent, RunStep, StepType, ToolEndEvent, text_part
from ..exceptions import MalformedToolArgsError
from ..logging_config import get_logger
from ..providers import Provider, get_capabilities, to_provider
from .handler import NormalizedChunk, extract_reasoning, normalize_chunk
from .splitter import StreamSplitter
from .state import ToolCallSlot, new_message_id, tag_of

logger = get_logger(__name__)

# Metadata fields that identify one model turn inside a graph run
STEP_KEY_FIELDS = ("run_id", "thread_id", "langgraph_node", "langgraph_step", "checkpoint_ns")


def new_tool_call_id() -> str:
    return f"toolu_{uuid.uuid4().hex}"


def parse_tool_args(raw: str) -> Dict[str, Any]:
    """Parse accumulated argument text. Empty text means no arguments."""
    if not raw.strip():
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


class ChunkCorrelator:
    """Per-run correlation of chunks to steps. Shares the splitter's RunState and emitter."""

    def __init__(self, splitter: StreamSplitter, provider: Union[Provider, str, None] = None):
        self.splitter = splitter
        self.state = splitter.run_state
        self.emitter = splitter.emitter
        self.provider = to_provider(provider)
        self.capabilities = get_capabilities(provider)

    @property
    def manual_assembly(self) -> bool:
        return self.capabilities.manual_tool_assembly

    # ---- Keys and ids ----

    def get_step_key(self, metadata: Optional[Dict[str, Any]]) -> str:
        if not metadata:
            return ""
        return "_".join(
            "" if metadata.get(name) is None else str(metadata.get(name))
            for name in STEP_KEY_FIELDS
        )

    def get_message_id(self, step_key: str, reuse_existing: bool = False) -> Optional[str]:
        """Message id for a step key, assigned on first sight.

        Returns None when the key already has one, unless reuse_existing is set.
        A preliminary id seen on an empty chunk is promoted instead of minting one.
        """
        state = self.state
        existing = state.message_ids_by_step_key.get(step_key)
        if existing is not None:
            return existing if reuse_existing else None
        message_id = state.prelim_message_ids_by_step_key.pop(step_key, None) or new_message_id()
        state.message_ids_by_step_key[step_key] = message_id
        return message_id

    # ---- Input ----

    def handle(
        self,
        event: Union[GraphEvent, str],
        chunk: Any,
        metadata: Optional[Dict[str, Any]] = None,
        graph: Any = None,
    ) -> None:
        """Route one chat model stream chunk.

        graph, when given, may expose a tool_call_step_ids mapping that is kept in
        sync so a tool node sharing it can place results under the right step.
        """
        if tag_of(event) != GraphEvent.CHAT_MODEL_STREAM.value:
            logger.debug("Correlator ignoring event %s", tag_of(event))
            return
        normalized = normalize_chunk(chunk, self.splitter.reasoning_key)
        if normalized is None:
            return
        extract_reasoning(normalized)
        step_key = self.get_step_key(metadata)

        if normalized.usage:
            self.emitter.emit(GraphEvent.USAGE_METADATA, normalized.usage)

        if normalized.tool_calls and not normalized.tool_call_chunks:
            self.handle_tool_calls(normalized.tool_calls, metadata)

        if normalized.is_empty and not normalized.tool_call_chunks:
            if normalized.id and normalized.id.startswith("msg"):
                self.state.prelim_message_ids_by_step_key.setdefault(step_key, normalized.id)
        elif not normalized.is_empty and not self._duplicates_tool_args(normalized):
            self._handle_content(normalized, step_key)

        if normalized.tool_call_chunks:
            self._handle_tool_call_chunks(normalized.tool_call_chunks, step_key)

        if normalized.is_last:
            self.complete_tool_calls()
        self._publish_step_ids(graph)

    def _handle_content(self, chunk: NormalizedChunk, step_key: str) -> None:
        message_id = self.get_message_id(step_key)
        if message_id is not None:
            self.splitter.begin_message(message_id, step_key)
        else:
            self.splitter.resume_message(self.get_message_id(step_key, reuse_existing=True), step_key)
        self.splitter.handle_normalized(chunk)

    def _duplicates_tool_args(self, chunk: NormalizedChunk) -> bool:
        """Some providers echo tool arguments as content; that text is not output."""
        if not chunk.tool_call_chunks or not chunk.text or chunk.reasoning or chunk.parts:
            return False
        args = "".join(c.get("args") or "" for c in chunk.tool_call_chunks)
        return chunk.text == args

    def _publish_step_ids(self, graph: Any) -> None:
        if graph is None:
            return
        target = getattr(graph, "tool_call_step_ids", None)
        if isinstance(target, dict) and target is not self.state.tool_call_step_ids:
            target.update(self.state.tool_call_step_ids)

    # ---- Tool calls ----

    def _find_slot(self, index: Optional[int], call_id: Optional[str]) -> Optional[ToolCallSlot]:
        """Slot a fragment continues, or None when it starts a new call.

        An id always wins. Manual-assembly providers reuse indices across calls, so
        there a fragment with an unseen id starts a call of its own.
        """
        slots = self.state.tool_call_slots
        if call_id:
            for slot in slots.values():
                if slot.id == call_id:
                    return slot
            if self.manual_assembly:
                return None
        if index is not None:
            matching = [slot for slot in slots.values() if slot.index == index]
            return matching[-1] if matching else None
        # Continuation fragment with neither index nor id
        return slots.get(self.state.last_slot_key)

    def _slot_for(self, chunk: ToolCallChunk, step_key: str) -> ToolCallSlot:
        slots = self.state.tool_call_slots
        index = chunk.get("index")
        call_id = chunk.get("id")
        slot = self._find_slot(index, call_id)
        if slot is None or (call_id and slot.id and slot.id != call_id):
            slot = ToolCallSlot(index=index, id=call_id, step_key=step_key)
            self.state.last_slot_key = len(slots)
            slots[self.state.last_slot_key] = slot
        else:
            self.state.last_slot_key = next(key for key, value in slots.items() if value is slot)
        return slot

    def _handle_tool_call_chunks(self, chunks: List[ToolCallChunk], step_key: str) -> None:
        for chunk in chunks:
            slot = self._slot_for(chunk, step_key)
            if chunk.get("name") and not slot.name:
                slot.name = chunk["name"]
            if chunk.get("id") and not slot.id:
                slot.id = chunk["id"]
            if chunk.get("args"):
                slot.args.append(chunk["args"])
            if self.manual_assembly:
                continue
            slot.undispatched.append(chunk)
            if slot.step_id is None:
                if not (slot.id and slot.name):
                    continue
                self._open_tool_step(slot, make_tool_call(name=slot.name, args={}, id=slot.id))
            self.emitter.tool_call_delta(slot.step_id, [dict(c) for c in slot.undispatched])
            slot.undispatched = []

    def _announce_tool_call_ids(self, step_key: str, tool_call_ids: List[str]) -> None:
        """Mark the text step that precedes a tool call with the call ids it led to."""
        step = self.state.get_open_step()
        if step is None or step.type != StepType.TEXT or step.step_key != step_key:
            return
        if step.id in self.state.message_steps_with_tool_calls:
            return
        self.state.message_steps_with_tool_calls.add(step.id)
        self.emitter.message_delta(step.id, [text_part("", tool_call_ids)])

    def _open_tool_step(self, slot: ToolCallSlot, call: ToolCall) -> RunStep:
        self.splitter.settle()
        self._announce_tool_call_ids(slot.step_key, [call["id"]])
        message_id = self.get_message_id(slot.step_key, reuse_existing=True)
        step = self.emitter.create_step(
            StepType.TOOL_CALL,
            message_id=message_id,
            step_key=slot.step_key,
            tool_calls=[call],
        )
        slot.step_id = step.id
        return step

    def _fail_tool_call(self, slot: ToolCallSlot, error: MalformedToolArgsError) -> None:
        self.state.record(error)
        if slot.step_id is None:
            self._open_tool_step(slot, make_tool_call(name=slot.name or "", args={}, id=slot.id))
        step = self.state.get_step(slot.step_id)
        self.emitter.emit(
            GraphEvent.TOOL_END,
            ToolEndEvent(
                step_id=step.id,
                tool_call={
                    "id": slot.id,
                    "name": slot.name or "",
                    "args": slot.raw_args,
                    "output": error.message,
                },
                content_index=step.index,
                is_error=True,
            ),
        )

    def complete_tool_calls(self) -> List[ToolCall]:
        """End of turn: parse every accumulated call. Malformed ones end with an error."""
        slots = self.state.tool_call_slots
        if not slots:
            self.emitter.close_tool_steps()
            return []
        completed: List[ToolCall] = []
        for slot in slots.values():
            if not slot.id:
                slot.id = new_tool_call_id()
            raw = slot.raw_args
            if not slot.name:
                self._fail_tool_call(slot, MalformedToolArgsError(slot.id, raw, "missing tool name"))
                continue
            try:
                args = parse_tool_args(raw)
            except ValueError as e:
                self._fail_tool_call(slot, MalformedToolArgsError(slot.id, raw, str(e)))
                continue
            call = make_tool_call(name=slot.name, args=args, id=slot.id)
            if slot.step_id is None:
                # Buffered call: one step and one complete fragment
                step = self._open_tool_step(slot, call)
                self.emitter.tool_call_delta(
                    step.id,
                    [make_tool_call_chunk(name=slot.name, args=raw, id=slot.id, index=slot.index)],
                )
            else:
                step = self.state.get_step(slot.step_id)
                step.tool_calls = [call]
            self.state.tool_call_step_ids[slot.id] = slot.step_id
            completed.append(call)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Completed %d tool call(s): %s", len(completed), [c["name"] for c in completed])
        self.state.completed_tool_calls.extend(completed)
        slots.clear()
        self.state.last_slot_key = None
        self.emitter.close_tool_steps()
        return completed

    def handle_tool_calls(
        self,
        tool_calls: List[ToolCall],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[ToolCall]:
        """Complete tool calls reported whole (no fragments). Already-seen ids are skipped."""
        step_key = self.get_step_key(metadata)
        handled: List[ToolCall] = []
        for raw_call in tool_calls:
            call_id = raw_call.get("id") or new_tool_call_id()
            if call_id in self.state.tool_call_step_ids:
                continue
            args = raw_call.get("args") or {}
            call = make_tool_call(name=raw_call.get("name") or "", args=args, id=call_id)
            slot = ToolCallSlot(id=call_id, name=call["name"], step_key=step_key)
            step = self._open_tool_step(slot, call)
            self.emitter.tool_call_delta(
                step.id,
                [make_tool_call_chunk(name=call["name"], args=json.dumps(args), id=call_id, index=None)],
            )
            self.state.completed_tool_calls.append(call)
            handled.append(call)
        if not self.state.tool_call_slots:
            self.emitter.close_tool_steps()
        return handled
