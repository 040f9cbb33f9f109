"""Tool dispatch node: run a batch of tool calls and report each result as a tool-end event."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from langchain_core.messages import AIMessage, BaseMessage, ToolCall, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.errors import GraphInterrupt
from langgraph.graph import END

from ..events import RunStep, ToolEndEvent
from ..exceptions import StepStreamError, ToolExecutionError, UnknownToolError
from ..logging_config import get_logger
from ..runnable import RunnableCallable
from ..stream.state import new_step_id

logger = get_logger(__name__)

ERROR_TEMPLATE = "Error: {error}\n Please fix your mistakes."


def _tools_by_name(tools: Any) -> Dict[str, BaseTool]:
    if isinstance(tools, Mapping):
        return dict(tools)
    return {t.name: t for t in tools or []}


def _last_ai_message(messages: Sequence[Any]) -> AIMessage:
    for message in reversed(messages):
        if isinstance(message, AIMessage):
            return message
    raise ValueError("No AIMessage found in input")


def _parse_input(input: Any) -> Tuple[List[ToolCall], str]:
    """Tool calls from the input and the shape the output should take."""
    if isinstance(input, dict) and "messages" in input:
        return list(_last_ai_message(input["messages"]).tool_calls), "state"
    if isinstance(input, AIMessage):
        return list(input.tool_calls), "list"
    if isinstance(input, list) and input and isinstance(input[-1], BaseMessage):
        return list(_last_ai_message(input).tool_calls), "list"
    if isinstance(input, list):
        return list(input), "list"
    raise ValueError(f"Unsupported tool node input: {type(input).__name__}")


def _content(output: Any) -> Any:
    if isinstance(output, (str, list)):
        return output
    try:
        return json.dumps(output)
    except (TypeError, ValueError):
        return str(output)


class ToolDispatchNode(RunnableCallable):
    """Executes the tool calls of the latest AI message.

    Results come back as ToolMessages, one per call and in call order. With
    handle_tool_errors=True a failing or unknown tool becomes an error ToolMessage
    and the batch continues; otherwise the error propagates. GraphInterrupt always
    propagates.

    Each result is also reported through on_tool_end as a ToolEndEvent carrying the
    step id the call was streamed under (tool_call_step_ids). When a call has no
    known step, step_factory(call) may create one; failing that a fresh id is used.
    """

    def __init__(
        self,
        tools: Sequence[BaseTool],
        tool_map: Optional[Mapping[str, BaseTool]] = None,
        name: str = "tools",
        tags: Optional[Sequence[str]] = None,
        tool_call_step_ids: Optional[Dict[str, str]] = None,
        handle_tool_errors: bool = True,
        load_runtime_tools: Optional[Callable[[List[ToolCall]], Any]] = None,
        on_tool_end: Optional[Callable[[ToolEndEvent], None]] = None,
        step_factory: Optional[Callable[[ToolCall], RunStep]] = None,
    ) -> None:
        super().__init__(self._run, self._arun, name=name, tags=tags, trace=False)
        self.tools = list(tools or [])
        self.tool_map = dict(tool_map) if tool_map is not None else _tools_by_name(self.tools)
        self.tool_call_step_ids = tool_call_step_ids if tool_call_step_ids is not None else {}
        self.handle_tool_errors = handle_tool_errors
        self.load_runtime_tools = load_runtime_tools
        self.on_tool_end = on_tool_end
        self.step_factory = step_factory

    def _resolve_tools(self, tool_calls: List[ToolCall]) -> Dict[str, BaseTool]:
        if self.load_runtime_tools is None:
            return self.tool_map
        return _tools_by_name(self.load_runtime_tools(tool_calls))

    def _run(self, input: Any, config: RunnableConfig) -> Any:
        tool_calls, shape = _parse_input(input)
        tools = self._resolve_tools(tool_calls)
        messages = [self._run_one(call, position, tools, config) for position, call in enumerate(tool_calls)]
        return {"messages": messages} if shape == "state" else messages

    async def _arun(self, input: Any, config: RunnableConfig) -> Any:
        tool_calls, shape = _parse_input(input)
        tools = self._resolve_tools(tool_calls)
        tasks = [
            asyncio.ensure_future(self._arun_one(call, position, tools, config))
            for position, call in enumerate(tool_calls)
        ]
        try:
            messages = list(await asyncio.gather(*tasks))
        except BaseException:
            # No sibling may report a result once the batch has failed
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return {"messages": messages} if shape == "state" else messages

    def _lookup(self, call: ToolCall, tools: Dict[str, BaseTool]) -> BaseTool:
        tool = tools.get(call["name"])
        if tool is None:
            raise UnknownToolError(call["name"])
        return tool

    def _run_one(self, call: ToolCall, position: int, tools: Dict[str, BaseTool], config: RunnableConfig) -> ToolMessage:
        try:
            tool = self._lookup(call, tools)
            message = self._as_message(tool.invoke({**call, "type": "tool_call"}, config), call)
        except GraphInterrupt:
            raise
        except Exception as e:
            message = self._on_error(call, e)
        self._emit_end(call, position, message)
        return message

    async def _arun_one(
        self, call: ToolCall, position: int, tools: Dict[str, BaseTool], config: RunnableConfig
    ) -> ToolMessage:
        try:
            tool = self._lookup(call, tools)
            message = self._as_message(await tool.ainvoke({**call, "type": "tool_call"}, config), call)
        except GraphInterrupt:
            raise
        except Exception as e:
            message = self._on_error(call, e)
        self._emit_end(call, position, message)
        return message

    def _as_message(self, output: Any, call: ToolCall) -> ToolMessage:
        if isinstance(output, ToolMessage):
            return output
        return ToolMessage(content=_content(output), name=call["name"], tool_call_id=call["id"])

    def _on_error(self, call: ToolCall, error: Exception) -> ToolMessage:
        if not self.handle_tool_errors:
            if isinstance(error, StepStreamError):
                raise error
            raise ToolExecutionError(call["name"], call.get("id"), error) from error
        logger.warning("Tool %s (%s) failed: %s", call["name"], call.get("id"), error)
        return ToolMessage(
            content=ERROR_TEMPLATE.format(error=error),
            name=call["name"],
            tool_call_id=call["id"],
            status="error",
        )

    def _step_for(self, call: ToolCall, position: int) -> Tuple[str, int]:
        call_id = call.get("id")
        step_id = self.tool_call_step_ids.get(call_id) if call_id else None
        if step_id is not None:
            return step_id, position
        if self.step_factory is not None:
            step = self.step_factory(call)
            if call_id:
                self.tool_call_step_ids[call_id] = step.id
            return step.id, step.index
        step_id = new_step_id()
        if call_id:
            self.tool_call_step_ids[call_id] = step_id
        return step_id, position

    def _emit_end(self, call: ToolCall, position: int, message: ToolMessage) -> None:
        if self.on_tool_end is None:
            return
        step_id, content_index = self._step_for(call, position)
        self.on_tool_end(
            ToolEndEvent(
                step_id=step_id,
                tool_call={
                    "id": call.get("id"),
                    "name": call["name"],
                    "args": call.get("args", {}),
                    "output": message.content,
                },
                content_index=content_index,
                is_error=message.status == "error",
                artifact=getattr(message, "artifact", None),
            )
        )


def tools_condition(state: Any, messages_key: str = "messages") -> str:
    """Route to "tools" when the latest AI message has tool calls, else END."""
    if isinstance(state, list):
        messages = state
    elif isinstance(state, dict):
        messages = state.get(messages_key, [])
    else:
        messages = getattr(state, messages_key, [])
    if not messages:
        raise ValueError(f"No messages found in input state: {state!r}")
    last = messages[-1]
    if getattr(last, "tool_calls", None):
        return "tools"
    return END
