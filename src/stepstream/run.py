"""One run: the splitter/correlator pair, the dispatcher and the aggregators wired together.

A Run consumes a one-shot sequence of astream_events(v2) items (or bare model
chunks), dispatches step events as they are produced and ends with a RunResult.
Nothing is shared between Run instances, so concurrent runs need no locking.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from langchain_core.messages import ToolCall
from langchain_core.messages.ai import UsageMetadata
from langchain_core.tools import BaseTool

from .config import config
from .events import GraphEvent, ModelEndEvent, RunEndEvent, RunStep, StepType, StreamEvent, ToolEndEvent
from .exceptions import StepStreamError
from .logging_config import get_run_logger
from .providers import Provider, UsagePolicy, get_capabilities, to_provider
from .stream.aggregators import AggregatorStatus, ContentAggregator, MetadataAggregator
from .stream.correlator import ChunkCorrelator
from .stream.dispatcher import ALL_EVENTS, EventDispatcher
from .stream.handler import normalize_event
from .stream.splitter import StreamSplitter
from .stream.state import new_message_id
from .tools.node import ToolDispatchNode

CONTENT_EVENTS = (
    GraphEvent.RUN_STEP_CREATED,
    GraphEvent.MESSAGE_DELTA,
    GraphEvent.REASONING_DELTA,
    GraphEvent.TOOL_CALL_CHUNK,
    GraphEvent.TOOL_END,
    GraphEvent.RUN_END,
)
METADATA_EVENTS = (GraphEvent.USAGE_METADATA, GraphEvent.MODEL_END, GraphEvent.RUN_END)


@dataclass
class RunResult:
    """Outcome of a run. A failed run carries the error and no content or usage."""
    run_id: str
    status: AggregatorStatus
    content: Optional[List[Dict[str, Any]]] = None
    usage: Optional[UsageMetadata] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    diagnostics: List[StepStreamError] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == AggregatorStatus.COMPLETE


def _field(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _drain(buffer: List[StreamEvent]) -> Iterator[StreamEvent]:
    while buffer:
        yield buffer.pop(0)


class Run:
    """Processes one model generation into step events.

    custom_handlers maps an event tag to a handler (or a list of handlers); they
    are registered after the aggregators, so aggregators see every event first.
    Options left as None come from the stream section of the configuration.
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        provider: Union[Provider, str, None] = None,
        custom_handlers: Optional[Dict[Any, Any]] = None,
        reasoning_key: Optional[str] = None,
        block_threshold: Optional[int] = None,
        accumulate: Optional[bool] = None,
        usage_policy: Optional[UsagePolicy] = None,
    ) -> None:
        stream_config = config["stream"]
        self.run_id = run_id or f"run_{uuid.uuid4().hex}"
        self.log = get_run_logger(__name__, self.run_id)
        self.provider = to_provider(provider)
        self.capabilities = get_capabilities(provider)

        self.dispatcher = EventDispatcher()
        self.content_aggregator = ContentAggregator()
        self.metadata_aggregator = MetadataAggregator(usage_policy or self.capabilities.usage_policy)
        for tag in CONTENT_EVENTS:
            self.dispatcher.register(tag, self.content_aggregator, internal=True)
        for tag in METADATA_EVENTS:
            self.dispatcher.register(tag, self.metadata_aggregator, internal=True)
        for tag, handlers in (custom_handlers or {}).items():
            for handler in handlers if isinstance(handlers, (list, tuple)) else [handlers]:
                self.dispatcher.register(tag, handler)

        self.splitter = StreamSplitter(
            self.run_id,
            self.dispatcher,
            accumulate=stream_config["accumulate"] if accumulate is None else accumulate,
            reasoning_key=reasoning_key or stream_config["reasoning_key"],
            block_threshold=stream_config["block_threshold"] if block_threshold is None else block_threshold,
        )
        self.state = self.splitter.run_state
        self.emitter = self.splitter.emitter
        self.correlator = ChunkCorrelator(self.splitter, provider)
        self.result: Optional[RunResult] = None

    @property
    def finished(self) -> bool:
        return self.result is not None

    # ---- Inbound events ----

    def handle_event(self, raw: Any) -> None:
        """Consume one astream_events(v2) item."""
        envelope = normalize_event(raw)
        if envelope is None:
            self.log.debug("Ignoring non-event item of type %s", type(raw).__name__)
            return
        tag = envelope.event
        if tag == GraphEvent.CHAT_MODEL_STREAM.value:
            self.correlator.handle(tag, envelope.data.get("chunk"), envelope.metadata)
        elif tag == GraphEvent.CHAT_MODEL_END.value:
            self._handle_model_end(envelope.data.get("output"), envelope.metadata)
        elif self.dispatcher.has_handlers(tag):
            self.dispatcher.dispatch(StreamEvent(event=tag, data=envelope.data, run_id=self.run_id))

    def _handle_model_end(self, output: Any, metadata: Dict[str, Any]) -> None:
        tool_calls = self.correlator.complete_tool_calls()
        reported = list(_field(output, "tool_calls") or [])
        if reported:
            tool_calls = tool_calls + self.correlator.handle_tool_calls(reported, metadata)
        self.splitter.settle()
        self.emitter.emit(
            GraphEvent.MODEL_END,
            ModelEndEvent(
                usage=_field(output, "usage_metadata"),
                response_metadata=dict(_field(output, "response_metadata") or {}),
                tool_calls=tool_calls,
            ),
        )

    def handle_tool_end(self, event: ToolEndEvent) -> None:
        """Re-enter a tool result into the event stream under its step."""
        step = self.state.get_step(event.step_id)
        if step is not None:
            event.content_index = step.index
        self.splitter.settle()
        self.emitter.emit(GraphEvent.TOOL_END, event)

    def create_tool_step(self, call: ToolCall) -> RunStep:
        """Step for a tool call that was never streamed."""
        self.splitter.settle()
        return self.emitter.create_step(StepType.TOOL_CALL, message_id=new_message_id(), tool_calls=[call])

    def create_tool_node(self, tools: Sequence[BaseTool], **kwargs: Any) -> ToolDispatchNode:
        """ToolDispatchNode whose results are reported into this run."""
        kwargs.setdefault("handle_tool_errors", config["tools"]["handle_tool_errors"])
        return ToolDispatchNode(
            tools,
            tool_call_step_ids=self.state.tool_call_step_ids,
            on_tool_end=self.handle_tool_end,
            step_factory=self.create_tool_step,
            **kwargs,
        )

    # ---- Lifecycle ----

    def finish(self) -> RunResult:
        """Flush, close every step, dispatch RUN_END and collect the aggregates."""
        if self.result is not None:
            return self.result
        self.correlator.complete_tool_calls()
        self.splitter.finish()
        self.emitter.emit(GraphEvent.RUN_END, RunEndEvent(run_id=self.run_id))
        content = self.content_aggregator.get_result()
        usage = self.metadata_aggregator.get_result()
        self.result = RunResult(
            run_id=self.run_id,
            status=content.status,
            content=content.value,
            usage=usage.value,
            tool_calls=list(self.state.completed_tool_calls),
            diagnostics=list(self.state.diagnostics),
        )
        self.log.info(
            "Run finished: %d step(s), %d tool call(s), %d diagnostic(s)",
            len(self.state.steps),
            len(self.result.tool_calls),
            len(self.result.diagnostics),
        )
        return self.result

    def fail(self, error: BaseException) -> RunResult:
        """Producer failure: drop undispatched content and report the run as failed."""
        if self.result is not None:
            return self.result
        self.log.error("Run failed: %s", error)
        self.splitter.discard()
        self.state.tool_call_slots.clear()
        self.content_aggregator.fail()
        self.metadata_aggregator.fail()
        self.emitter.close_all()
        self.emitter.emit(GraphEvent.RUN_END, RunEndEvent(run_id=self.run_id, failed=True))
        self.result = RunResult(
            run_id=self.run_id,
            status=AggregatorStatus.FAILED,
            tool_calls=list(self.state.completed_tool_calls),
            diagnostics=list(self.state.diagnostics),
            error=error,
        )
        return self.result

    def abandon(self) -> None:
        """Consumer stopped pulling: discard buffers, no terminal event."""
        if self.result is not None:
            return
        self.log.debug("Run abandoned")
        self.splitter.discard()
        self.state.tool_call_slots.clear()

    # ---- Consumption ----

    def process_stream(self, events: Iterable[Any], raise_errors: bool = False) -> RunResult:
        """Consume a one-shot iterator of graph events, then finish."""
        try:
            for event in events:
                self.handle_event(event)
        except Exception as e:
            result = self.fail(e)
            if raise_errors:
                raise
            return result
        return self.finish()

    async def aprocess_stream(self, events: AsyncIterable[Any], raise_errors: bool = False) -> RunResult:
        try:
            async for event in events:
                self.handle_event(event)
        except Exception as e:
            result = self.fail(e)
            if raise_errors:
                raise
            return result
        return self.finish()

    def iter_events(self, events: Iterable[Any]) -> Iterator[StreamEvent]:
        """Yield every dispatched event as it is produced.

        Closing the generator early abandons the run. A producer error marks the run
        failed and is re-raised.
        """
        buffer: List[StreamEvent] = []
        collect = buffer.append
        self.dispatcher.register(ALL_EVENTS, collect)
        completed = False
        try:
            for event in events:
                self.handle_event(event)
                yield from _drain(buffer)
            self.finish()
            yield from _drain(buffer)
            completed = True
        except Exception as e:
            self.fail(e)
            raise
        finally:
            self.dispatcher.unregister(ALL_EVENTS, collect)
            if not completed:
                self.abandon()

    def stream_chunks(self, chunks: Iterable[Any], raise_errors: bool = False) -> RunResult:
        """Process bare model chunks, e.g. from ChatModel.stream(), without graph metadata."""
        return self.process_stream(
            ({"event": GraphEvent.CHAT_MODEL_STREAM.value, "data": {"chunk": c}} for c in chunks),
            raise_errors=raise_errors,
        )

    async def astream_chunks(self, chunks: AsyncIterable[Any], raise_errors: bool = False) -> RunResult:
        async def wrap():
            async for c in chunks:
                yield {"event": GraphEvent.CHAT_MODEL_STREAM.value, "data": {"chunk": c}}

        return await self.aprocess_stream(wrap(), raise_errors=raise_errors)


def summarize(result: RunResult) -> str:
    """One-line summary of a run result for logs."""
    if not result.ok:
        return f"run {result.run_id} {result.status.value}: {result.error}"
    usage = result.usage or {}
    return (
        f"run {result.run_id} complete: {len(result.content or [])} part(s), "
        f"{len(result.tool_calls)} tool call(s), {usage.get('total_tokens', 0)} tokens"
    )
