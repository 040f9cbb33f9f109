"""Pytest configuration and fixtures for stream layer testing."""

import pytest

from stepstream.events import GraphEvent, StepType, StreamEvent
from stepstream.stream.splitter import StreamSplitter
from stepstream.stream.state import tag_of
from stepstream.testing.mock_llm import create_mock_llm
from stepstream.testing.mock_tools import create_mock_tools


class EventLog:
    """Callable handler that records every event it receives."""

    def __init__(self):
        self.events: list[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def handlers(self) -> dict:
        """Handler map sending every event tag to this log."""
        return {tag: self for tag in GraphEvent}

    def tags(self) -> list[str]:
        return [tag_of(e.event) for e in self.events]

    def of(self, tag) -> list[StreamEvent]:
        return [e for e in self.events if tag_of(e.event) == tag_of(tag)]

    def deltas(self) -> list[tuple[str, str]]:
        """(kind, text) for every text/reasoning delta, in dispatch order."""
        out = []
        for e in self.events:
            if tag_of(e.event) == GraphEvent.MESSAGE_DELTA.value:
                out.append(("text", e.data.text))
            elif tag_of(e.event) == GraphEvent.REASONING_DELTA.value:
                out.append(("reasoning", e.data.text))
        return out

    def step_types(self) -> list[StepType]:
        return [e.data.type for e in self.of(GraphEvent.RUN_STEP_CREATED)]


@pytest.fixture
def event_log():
    """Fresh EventLog."""
    return EventLog()


@pytest.fixture
def splitter_factory():
    """Factory for a StreamSplitter wired to a new EventLog.

    Example:
        >>> def test_x(splitter_factory):
        ...     splitter, log = splitter_factory(block_threshold=5)
    """
    def _factory(run_id="run_1", **kwargs):
        log = EventLog()
        return StreamSplitter(run_id, log.handlers(), **kwargs), log
    return _factory


@pytest.fixture
def mock_llm_factory():
    """Factory for creating mock LLMs with scripted responses.

    Returns:
        Function that takes a list of responses and returns GenericFakeChatModel
    """
    def _factory(responses):
        return create_mock_llm(responses)
    return _factory


@pytest.fixture
def mock_tools_factory():
    """Factory for creating mock tools with controlled responses.

    Example:
        >>> def test_tools(mock_tools_factory):
        ...     tools = mock_tools_factory({"get_weather": {"Oslo": "snow"}})
    """
    def _factory(responses=None):
        return create_mock_tools(responses)
    return _factory
