"""Unit tests for ToolDispatchNode, tools_condition and RunnableCallable."""

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.tools import tool
from langgraph.errors import GraphInterrupt
from langgraph.graph import END

from stepstream.events import RunStep, StepType
from stepstream.exceptions import ToolExecutionError, UnknownToolError
from stepstream.runnable import RunnableCallable
from stepstream.testing.mock_tools import MockToolFailure, get_mock_tool_calls
from stepstream.tools import ToolDispatchNode, tools_condition


def ai_with_calls(*calls):
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args, "id": call_id} for name, args, call_id in calls],
    )


@pytest.fixture
def responses():
    return {"get_weather": {"Oslo": "snow"}}


@pytest.fixture
def tools(mock_tools_factory, responses):
    return mock_tools_factory(responses)


class TestExecution:

    def test_state_input_returns_messages_in_call_order(self, tools, responses):
        node = ToolDispatchNode(tools)
        state = {"messages": [
            HumanMessage(content="hi"),
            ai_with_calls(("add_numbers", {"a": 2, "b": 3}, "c1"), ("get_weather", {"city": "Oslo"}, "c2")),
        ]}
        result = node.invoke(state)
        first, second = result["messages"]
        assert isinstance(first, ToolMessage)
        assert (first.tool_call_id, first.content) == ("c1", "5")
        assert (second.tool_call_id, second.content) == ("c2", "snow")
        assert [c["name"] for c in get_mock_tool_calls(responses)] == ["add_numbers", "get_weather"]

    def test_message_list_input_returns_list(self, tools):
        node = ToolDispatchNode(tools)
        [message] = node.invoke([ai_with_calls(("get_weather", {"city": "Rome"}, "c1"))])
        assert message.content == "It is sunny in Rome"

    def test_async_batch_keeps_order(self, tools):
        node = ToolDispatchNode(tools)
        calls = [
            {"name": "add_numbers", "args": {"a": 1, "b": 1}, "id": "c1"},
            {"name": "add_numbers", "args": {"a": 2, "b": 2}, "id": "c2"},
        ]
        messages = asyncio.run(node.ainvoke(calls))
        assert [m.content for m in messages] == ["2", "4"]

    def test_runtime_tools_loaded_per_batch(self, tools):
        loaded = []

        def load(calls):
            loaded.append([c["name"] for c in calls])
            return tools

        node = ToolDispatchNode([], load_runtime_tools=load)
        [message] = node.invoke([{"name": "add_numbers", "args": {"a": 1, "b": 2}, "id": "c1"}])
        assert message.content == "3"
        assert loaded == [["add_numbers"]]

    def test_unsupported_input_rejected(self, tools):
        with pytest.raises(ValueError):
            ToolDispatchNode(tools).invoke("not tool calls")


class TestErrors:

    def test_handled_error_becomes_error_message(self, tools):
        node = ToolDispatchNode(tools, handle_tool_errors=True)
        [message] = node.invoke([{"name": "always_fails", "args": {}, "id": "c1"}])
        assert message.status == "error"
        assert message.content == "Error: boom\n Please fix your mistakes."

    def test_handled_error_does_not_stop_batch(self, tools):
        node = ToolDispatchNode(tools)
        failed, ok = node.invoke([
            {"name": "always_fails", "args": {"reason": "nope"}, "id": "c1"},
            {"name": "add_numbers", "args": {"a": 1, "b": 1}, "id": "c2"},
        ])
        assert failed.status == "error"
        assert ok.content == "2"

    def test_unknown_tool_handled(self, tools):
        [message] = ToolDispatchNode(tools).invoke([{"name": "missing", "args": {}, "id": "c1"}])
        assert message.status == "error"
        assert 'Tool "missing" not found.' in message.content

    def test_unknown_tool_unhandled(self, tools):
        node = ToolDispatchNode(tools, handle_tool_errors=False)
        with pytest.raises(UnknownToolError):
            node.invoke([{"name": "missing", "args": {}, "id": "c1"}])

    def test_unhandled_error_wrapped_with_cause(self, tools):
        node = ToolDispatchNode(tools, handle_tool_errors=False)
        with pytest.raises(ToolExecutionError) as exc_info:
            node.invoke([{"name": "always_fails", "args": {}, "id": "c1"}])
        assert exc_info.value.tool_call_id == "c1"
        assert isinstance(exc_info.value.__cause__, MockToolFailure)

    def test_async_failure_cancels_pending_calls(self):
        events = []
        finished = []

        @tool
        async def fast(value: int) -> int:
            """Fail straight away."""
            raise ValueError("fast failed")

        @tool
        async def slow(value: int) -> int:
            """Finish after a short wait."""
            await asyncio.sleep(0.05)
            finished.append(value)
            return value

        node = ToolDispatchNode([fast, slow], handle_tool_errors=False, on_tool_end=events.append)

        async def run_batch():
            with pytest.raises(ToolExecutionError):
                await node.ainvoke([
                    {"name": "fast", "args": {"value": 1}, "id": "a"},
                    {"name": "slow", "args": {"value": 2}, "id": "b"},
                ])
            await asyncio.sleep(0.1)

        asyncio.run(run_batch())
        assert finished == []
        assert events == []

    def test_graph_interrupt_always_propagates(self):
        @tool
        def ask_human(question: str) -> str:
            """Pause the graph for human input."""
            raise GraphInterrupt()

        node = ToolDispatchNode([ask_human], handle_tool_errors=True)
        with pytest.raises(GraphInterrupt):
            node.invoke([{"name": "ask_human", "args": {"question": "ok?"}, "id": "c1"}])


class TestToolEndEvents:

    def test_known_step_id_used(self, tools):
        events = []
        node = ToolDispatchNode(tools, tool_call_step_ids={"c1": "step_known"}, on_tool_end=events.append)
        node.invoke([{"name": "add_numbers", "args": {"a": 1, "b": 2}, "id": "c1"}])
        [event] = events
        assert event.step_id == "step_known"
        assert event.content_index == 0
        assert event.tool_call == {"id": "c1", "name": "add_numbers", "args": {"a": 1, "b": 2}, "output": "3"}
        assert not event.is_error

    def test_step_factory_for_unstreamed_call(self, tools):
        events = []
        step_ids = {}

        def factory(call):
            return RunStep(id="step_made", run_id="run_1", type=StepType.TOOL_CALL, index=4, tool_calls=[call])

        node = ToolDispatchNode(tools, tool_call_step_ids=step_ids, on_tool_end=events.append, step_factory=factory)
        node.invoke([{"name": "add_numbers", "args": {"a": 1, "b": 2}, "id": "c1"}])
        assert (events[0].step_id, events[0].content_index) == ("step_made", 4)
        assert step_ids == {"c1": "step_made"}

    def test_fresh_step_id_without_factory(self, tools):
        events = []
        node = ToolDispatchNode(tools, on_tool_end=events.append)
        node.invoke([
            {"name": "add_numbers", "args": {"a": 1, "b": 2}, "id": "c1"},
            {"name": "always_fails", "args": {}, "id": "c2"},
        ])
        assert all(e.step_id.startswith("step_") for e in events)
        assert [e.content_index for e in events] == [0, 1]
        assert [e.is_error for e in events] == [False, True]


class TestToolsCondition:

    def test_routes_to_tools(self):
        state = {"messages": [ai_with_calls(("add_numbers", {}, "c1"))]}
        assert tools_condition(state) == "tools"

    def test_routes_to_end(self):
        assert tools_condition([AIMessage(content="done")]) == END

    def test_no_messages_raises(self):
        with pytest.raises(ValueError):
            tools_condition({"messages": []})


class TestRunnableCallable:

    def test_invoke_traced(self):
        runnable = RunnableCallable(lambda x: x + 1, name="inc")
        assert runnable.invoke(1) == 2
        assert runnable.get_name() == "inc"

    def test_config_passed_when_accepted(self):
        def read_tags(x, config):
            return config.get("tags")

        runnable = RunnableCallable(read_tags, tags=["mine"], trace=False)
        assert "mine" in runnable.invoke(None)

    def test_sync_function_runs_for_ainvoke(self):
        runnable = RunnableCallable(lambda x: x * 2)
        assert asyncio.run(runnable.ainvoke(3)) == 6

    def test_returned_runnable_is_invoked(self):
        inner = RunnableCallable(lambda x: x + 10)
        outer = RunnableCallable(lambda x: inner)
        assert outer.invoke(1) == 11
