"""Stream splitter: classify output tokens into typed steps and batch their deltas.

Text fragments are scanned for think tags and code fences. A fragment that crosses
a marker is split there; content before the marker keeps the old type, content after
it gets the new one. A marker split across fragments is held back until the next
fragment decides it. Content is buffered per step and dispatched once
block_threshold characters are pending, on a type change, at a code fence, or when
the stream ends. Deltas are never reordered and the tail is never dropped.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..config import DEFAULT_BLOCK_THRESHOLD
from ..events import StepType, text_part, think_part
from ..logging_config import get_logger
from .handler import NormalizedChunk, normalize_chunk
from .state import RunState, StepEmitter, new_message_id

logger = get_logger(__name__)

CODE_FENCE = "```"
THINK_START = "<think>"
THINK_END = "</think>"
REASONING_KEYS = ("reasoning_content", "reasoning")


@dataclass
class SplitState:
    """Splitter-owned buffers and flags for one run."""
    in_code_block: bool = False
    in_think_block: bool = False
    pending: str = ""  # unscanned tail that may be the start of a marker
    buffer: List[str] = field(default_factory=list)
    current_length: int = 0
    current_type: Optional[StepType] = None
    step_id: Optional[str] = None
    message_id: Optional[str] = None
    next_message_id: Optional[str] = None
    step_key: str = ""
    last_token: str = ""
    tokens: List[str] = field(default_factory=list)
    reasoning_tokens: List[str] = field(default_factory=list)


class StreamSplitter:
    """Turns a flat sequence of model chunks into step events and batched deltas."""

    def __init__(
        self,
        run_id: str,
        handlers: Union[Mapping[Any, Any], Any],
        accumulate: bool = False,
        reasoning_key: str = "reasoning_content",
        block_threshold: int = DEFAULT_BLOCK_THRESHOLD,
        state: Optional[RunState] = None,
    ) -> None:
        if not run_id:
            raise ValueError("run_id is required")
        if block_threshold is None or block_threshold < 1:
            raise ValueError(f"block_threshold must be a positive integer, got {block_threshold!r}")
        if reasoning_key not in REASONING_KEYS:
            raise ValueError(f"reasoning_key must be one of {REASONING_KEYS}, got {reasoning_key!r}")
        self.run_id = run_id
        self.accumulate = accumulate
        self.reasoning_key = reasoning_key
        self.block_threshold = block_threshold
        self.run_state = state if state is not None else RunState(run_id=run_id)
        self.emitter = StepEmitter(self.run_state, handlers)
        self.split = SplitState()

    @property
    def current_index(self) -> int:
        """Index of the most recently created step in this run (-1 before the first)."""
        return len(self.run_state.steps) - 1

    @property
    def message_id(self) -> Optional[str]:
        return self.split.message_id

    def accumulated_text(self) -> Tuple[str, str]:
        """(text, reasoning) seen so far. Only populated when accumulate=True."""
        return "".join(self.split.tokens), "".join(self.split.reasoning_tokens)

    # ---- Input ----

    def handle(self, chunk: Any) -> None:
        """Consume one raw chunk (AIMessageChunk, dict, or NormalizedChunk)."""
        if isinstance(chunk, NormalizedChunk):
            normalized = chunk
        else:
            normalized = normalize_chunk(chunk, self.reasoning_key)
        if normalized is None:
            return
        self.handle_normalized(normalized)

    def handle_normalized(self, chunk: NormalizedChunk) -> None:
        if chunk.reasoning:
            self._drain_pending()
            self._push(chunk.reasoning, StepType.REASONING)
        if chunk.text:
            self._scan(chunk.text)
            self.split.last_token = chunk.text
        if chunk.parts:
            self._push_parts(chunk.parts)

    def begin_message(self, message_id: str, step_key: str = "") -> None:
        """Start a new message: the next step created uses message_id."""
        self.settle()
        if self._step_is_open():
            self.emitter.close_step()
        self.split.step_id = None
        self.split.next_message_id = message_id
        self.split.step_key = step_key

    def resume_message(self, message_id: Optional[str], step_key: str = "") -> None:
        """Continue a known message: a step created after the last one closed reuses its id."""
        self.split.step_key = step_key
        if not self._step_is_open():
            self.split.next_message_id = message_id

    def flush(self) -> None:
        """Dispatch buffered content for the current step."""
        s = self.split
        if not s.buffer:
            return
        text = "".join(s.buffer)
        s.buffer = []
        s.current_length = 0
        if s.current_type == StepType.REASONING:
            self.emitter.reasoning_delta(s.step_id, [think_part(text)])
        else:
            self.emitter.message_delta(s.step_id, [text_part(text)])

    def settle(self) -> None:
        """Dispatch everything buffered, including a held-back partial marker."""
        self._drain_pending()
        self.flush()

    def finish(self) -> None:
        """End of stream: settle buffers and close every open step."""
        self.settle()
        self.emitter.close_all()
        self.split.step_id = None

    def discard(self) -> None:
        """Abandon the run: drop anything not yet dispatched."""
        s = self.split
        if s.buffer or s.pending:
            logger.debug("Discarding %d buffered chars for run %s", s.current_length + len(s.pending), self.run_id)
        s.buffer = []
        s.pending = ""
        s.current_length = 0

    # ---- Classification ----

    def _text_type(self) -> StepType:
        return StepType.REASONING if self.split.in_think_block else StepType.TEXT

    def _active_markers(self) -> Tuple[str, ...]:
        s = self.split
        if s.in_code_block:
            return (CODE_FENCE,)
        if s.in_think_block:
            return (THINK_END, CODE_FENCE)
        return (THINK_START, CODE_FENCE)

    def _find_marker(self, text: str, start: int) -> Optional[Tuple[int, str]]:
        found: Optional[Tuple[int, str]] = None
        for marker in self._active_markers():
            position = text.find(marker, start)
            if position > -1 and (found is None or position < found[0]):
                found = (position, marker)
        return found

    def _find_partial_index(self, text: str, start: int) -> int:
        """Start of a trailing proper prefix of an active marker, else len(text)."""
        markers = self._active_markers()
        longest = max(len(m) for m in markers)
        for size in range(min(longest - 1, len(text) - start), 0, -1):
            tail = text[len(text) - size:]
            if any(m.startswith(tail) for m in markers):
                return len(text) - size
        return len(text)

    def _scan(self, fragment: str) -> None:
        s = self.split
        text = s.pending + fragment
        s.pending = ""
        index = 0
        while index < len(text):
            found = self._find_marker(text, index)
            if found is None:
                partial = self._find_partial_index(text, index)
                self._push(text[index:partial], self._text_type())
                s.pending = text[partial:]
                return
            position, marker = found
            if marker == CODE_FENCE:
                if s.in_code_block:
                    # Closing fence stays with the code it closes
                    self._push(text[index:position + len(CODE_FENCE)], self._text_type())
                    self.flush()
                else:
                    self._push(text[index:position], self._text_type())
                    self.flush()
                    self._push(CODE_FENCE, self._text_type())
                s.in_code_block = not s.in_code_block
            elif marker == THINK_START:
                self._push(text[index:position], StepType.TEXT)
                s.in_think_block = True
                self._push(THINK_START, StepType.REASONING)
            else:
                self._push(text[index:position + len(THINK_END)], StepType.REASONING)
                s.in_think_block = False
            index = position + len(marker)

    def _drain_pending(self) -> None:
        s = self.split
        if s.pending:
            text = s.pending
            s.pending = ""
            self._push(text, self._text_type())

    # ---- Steps and batching ----

    def _step_is_open(self) -> bool:
        s = self.split
        return s.step_id is not None and self.run_state.open_step_id == s.step_id

    def _ensure_step(self, step_type: StepType) -> None:
        if self._step_is_open() and self.split.current_type == step_type:
            return
        self.flush()
        s = self.split
        if s.next_message_id:
            message_id = s.next_message_id
            s.next_message_id = None
        elif self.accumulate and s.message_id:
            message_id = s.message_id
        else:
            message_id = new_message_id()
        step = self.emitter.create_step(step_type, message_id=message_id, step_key=s.step_key)
        s.step_id = step.id
        s.current_type = step_type
        s.message_id = message_id
        s.current_length = 0

    def _push(self, text: str, step_type: StepType) -> None:
        if not text:
            return
        s = self.split
        if self.accumulate:
            if step_type == StepType.REASONING:
                s.reasoning_tokens.append(text)
            else:
                s.tokens.append(text)
        self._ensure_step(step_type)
        s.buffer.append(text)
        s.current_length += len(text)
        if s.current_length >= self.block_threshold:
            self.flush()

    def _push_parts(self, parts: List[Dict[str, Any]]) -> None:
        """Non-text content parts go out immediately, after any buffered text."""
        self._ensure_step(StepType.TEXT)
        self.flush()
        self.emitter.message_delta(self.split.step_id, list(parts))
