"""Unit tests for the content and usage aggregators."""

import pytest

from stepstream.events import (
    GraphEvent,
    MessageDelta,
    ModelEndEvent,
    ReasoningDelta,
    RunEndEvent,
    RunStep,
    StepType,
    StreamEvent,
    ToolCallDelta,
    ToolEndEvent,
    text_part,
    think_part,
)
from stepstream.providers import UsagePolicy
from stepstream.stream.aggregators import AggregatorStatus, ContentAggregator, MetadataAggregator


def ev(tag, data):
    return StreamEvent(event=tag, data=data, run_id="run_1")


def usage(input_tokens, output_tokens):
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def run_end(failed=False):
    return ev(GraphEvent.RUN_END, RunEndEvent(run_id="run_1", failed=failed))


def step(step_id, index, step_type=StepType.TEXT, tool_calls=None):
    return ev(
        GraphEvent.RUN_STEP_CREATED,
        RunStep(id=step_id, run_id="run_1", type=step_type, index=index, tool_calls=tool_calls or []),
    )


@pytest.fixture
def text_events():
    return [
        step("s0", 0),
        ev(GraphEvent.MESSAGE_DELTA, MessageDelta("s0", [text_part("Hello ")])),
        ev(GraphEvent.MESSAGE_DELTA, MessageDelta("s0", [text_part("world", ["call_1"])])),
        step("s1", 1, StepType.REASONING),
        ev(GraphEvent.REASONING_DELTA, ReasoningDelta("s1", [think_part("hm")])),
        ev(GraphEvent.REASONING_DELTA, ReasoningDelta("s1", [think_part("m")])),
        run_end(),
    ]


class TestMetadataAggregator:

    def test_cumulative_latest_fragment_wins(self):
        aggregator = MetadataAggregator(UsagePolicy.CUMULATIVE)
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(5, 5)))
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(5, 20)))
        aggregator.handle(run_end())
        assert aggregator.get_result().value["total_tokens"] == 25

    def test_incremental_fragments_are_summed(self):
        aggregator = MetadataAggregator(UsagePolicy.INCREMENTAL)
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(5, 5)))
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(5, 20)))
        aggregator.handle(run_end())
        result = aggregator.get_result().value
        assert result["total_tokens"] == 35
        assert result["input_tokens"] == 10

    def test_cumulative_turns_are_summed(self):
        aggregator = MetadataAggregator("cumulative")
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(2, 10)))
        aggregator.handle(ev(GraphEvent.MODEL_END, ModelEndEvent()))
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(5, 15)))
        aggregator.handle(run_end())
        assert aggregator.get_result().value["total_tokens"] == 32

    def test_model_end_usage_used_without_fragments(self):
        aggregator = MetadataAggregator()
        aggregator.handle(ev(GraphEvent.MODEL_END, ModelEndEvent(usage=usage(1, 2), response_metadata={"model": "m"})))
        aggregator.handle(run_end())
        assert aggregator.get_result().value["total_tokens"] == 3
        assert aggregator.response_metadata == [{"model": "m"}]

    def test_model_end_usage_ignored_after_fragments(self):
        aggregator = MetadataAggregator()
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(1, 1)))
        aggregator.handle(ev(GraphEvent.MODEL_END, ModelEndEvent(usage=usage(1, 1))))
        aggregator.handle(run_end())
        assert aggregator.get_result().value["total_tokens"] == 2

    def test_incomplete_until_run_end(self):
        aggregator = MetadataAggregator()
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(1, 1)))
        result = aggregator.get_result()
        assert result.status == AggregatorStatus.INCOMPLETE
        assert result.value is None

    def test_no_usage_gives_none(self):
        aggregator = MetadataAggregator()
        aggregator.handle(run_end())
        result = aggregator.get_result()
        assert result.ok
        assert result.value is None

    def test_failed_run_has_no_value(self):
        aggregator = MetadataAggregator()
        aggregator.handle(ev(GraphEvent.USAGE_METADATA, usage(1, 1)))
        aggregator.handle(run_end(failed=True))
        result = aggregator.get_result()
        assert result.status == AggregatorStatus.FAILED
        assert result.value is None

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            MetadataAggregator("sometimes")


class TestContentAggregator:

    def test_consecutive_parts_merge_per_step(self, text_events):
        result = ContentAggregator.replay(text_events).get_result()
        assert result.ok
        assert result.value == [
            {"type": "text", "text": "Hello world", "tool_call_ids": ["call_1"]},
            {"type": "think", "think": "hmm"},
        ]

    def test_replay_is_idempotent(self, text_events):
        first = ContentAggregator.replay(text_events).get_result().value
        second = ContentAggregator.replay(text_events).get_result().value
        assert first == second

    def test_incomplete_before_run_end(self, text_events):
        aggregator = ContentAggregator.replay(text_events[:-1])
        assert aggregator.get_result().status == AggregatorStatus.INCOMPLETE
        assert aggregator.content()[0]["text"] == "Hello world"

    def test_structured_part_kept_separately(self):
        image = {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}}
        events = [
            step("s0", 0),
            ev(GraphEvent.MESSAGE_DELTA, MessageDelta("s0", [text_part("see ")])),
            ev(GraphEvent.MESSAGE_DELTA, MessageDelta("s0", [image])),
            ev(GraphEvent.MESSAGE_DELTA, MessageDelta("s0", [text_part("this")])),
            run_end(),
        ]
        assert ContentAggregator.replay(events).get_result().value == [
            {"type": "text", "text": "see "},
            image,
            {"type": "text", "text": "this"},
        ]

    def test_delta_for_unknown_step_ignored(self):
        events = [ev(GraphEvent.MESSAGE_DELTA, MessageDelta("nowhere", [text_part("x")])), run_end()]
        assert ContentAggregator.replay(events).get_result().value == []

    def test_tool_call_lifecycle(self):
        call = {"name": "get_weather", "args": {}, "id": "call_1", "type": "tool_call"}
        events = [
            step("s0", 0, StepType.TOOL_CALL, [call]),
            ev(GraphEvent.TOOL_CALL_CHUNK, ToolCallDelta("s0", [{"args": '{"city": '}])),
            ev(GraphEvent.TOOL_CALL_CHUNK, ToolCallDelta("s0", [{"args": '"Oslo"}'}])),
        ]
        aggregator = ContentAggregator.replay(events)
        assert aggregator.content()[0]["tool_call"]["args"] == '{"city": "Oslo"}'
        assert aggregator.content()[0]["tool_call"]["progress"] == 0.1

        aggregator.handle(ev(GraphEvent.TOOL_END, ToolEndEvent(
            step_id="s0",
            tool_call={"id": "call_1", "name": "get_weather", "args": {"city": "Oslo"}, "output": "sunny"},
            content_index=0,
            artifact={"raw": 1},
        )))
        aggregator.handle(run_end())
        [part] = aggregator.get_result().value
        assert part["tool_call"] == {
            "id": "call_1",
            "name": "get_weather",
            "args": '{"city": "Oslo"}',
            "output": "sunny",
            "progress": 1,
        }
        assert part["artifact"] == {"raw": 1}

    def test_tool_error_marked(self):
        events = [
            ev(GraphEvent.TOOL_END, ToolEndEvent(
                step_id="s9",
                tool_call={"id": "c", "name": "t", "args": "{", "output": "bad"},
                content_index=3,
                is_error=True,
            )),
            run_end(),
        ]
        [part] = ContentAggregator.replay(events).get_result().value
        assert part["tool_call"]["is_error"] is True
        assert part["tool_call"]["args"] == "{"

    def test_failed_run(self, text_events):
        aggregator = ContentAggregator.replay(text_events[:-1] + [run_end(failed=True)])
        assert aggregator.get_result().status == AggregatorStatus.FAILED
        assert aggregator.get_result().value is None
