"""Stream layer: split, correlate, dispatch and aggregate model chunks for one run."""

from .aggregators import AggregateResult, AggregatorStatus, ContentAggregator, MetadataAggregator
from .correlator import ChunkCorrelator
from .dispatcher import ALL_EVENTS, EventDispatcher
from .handler import GraphEventEnvelope, NormalizedChunk, normalize_chunk, normalize_event
from .splitter import SplitState, StreamSplitter
from .state import RunState, StepEmitter

__all__ = [
    "ALL_EVENTS",
    "AggregateResult",
    "AggregatorStatus",
    "ChunkCorrelator",
    "ContentAggregator",
    "EventDispatcher",
    "GraphEventEnvelope",
    "MetadataAggregator",
    "NormalizedChunk",
    "RunState",
    "SplitState",
    "StepEmitter",
    "StreamSplitter",
    "normalize_chunk",
    "normalize_event",
]
