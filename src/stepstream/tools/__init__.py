"""Tool dispatch for graph runs."""

from .node import ToolDispatchNode, tools_condition

__all__ = [
    "ToolDispatchNode",
    "tools_condition",
]
