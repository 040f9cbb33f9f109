"""Plain functions as graph nodes.

RunnableCallable wraps a sync (and optionally async) function so it can sit in a
LangGraph graph and appear in LangChain tracing like any other runnable.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Sequence

from langchain_core.runnables import Runnable, RunnableConfig
from langchain_core.runnables.config import ensure_config, merge_configs, patch_config


def _accepts_config(func: Callable[..., Any]) -> bool:
    try:
        return "config" in inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False


class RunnableCallable(Runnable):
    """Runnable adapter around func (and afunc for ainvoke).

    With trace=True the call is recorded as a chain run and child callbacks are
    handed to func through config. With recurse=True a Runnable returned by func
    is invoked with the same input and config.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        afunc: Optional[Callable[..., Awaitable[Any]]] = None,
        name: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        trace: bool = True,
        recurse: bool = True,
        **kwargs: Any,
    ) -> None:
        self.func = func
        self.afunc = afunc
        self.name = name or getattr(func, "__name__", None) or self.__class__.__name__
        self.tags = list(tags) if tags else None
        self.trace = trace
        self.recurse = recurse
        self.kwargs = kwargs
        self._func_accepts_config = _accepts_config(func)
        self._afunc_accepts_config = afunc is not None and _accepts_config(afunc)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"

    def _config(self, config: Optional[RunnableConfig]) -> RunnableConfig:
        if self.tags:
            return merge_configs(ensure_config(config), {"tags": self.tags})
        return ensure_config(config)

    def _call_func(self, input: Any, config: RunnableConfig) -> Any:
        if self._func_accepts_config:
            return self.func(input, config=config, **self.kwargs)
        return self.func(input, **self.kwargs)

    async def _acall_func(self, input: Any, config: RunnableConfig) -> Any:
        if self.afunc is None:
            # Sync function off the event loop
            return await asyncio.to_thread(self._call_func, input, config)
        if self._afunc_accepts_config:
            return await self.afunc(input, config=config, **self.kwargs)
        return await self.afunc(input, **self.kwargs)

    def invoke(self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any) -> Any:
        config = self._config(config)
        if self.trace:

            def traced(value: Any, run_manager, config: RunnableConfig) -> Any:
                return self._call_func(value, patch_config(config, callbacks=run_manager.get_child()))

            output = self._call_with_config(traced, input, config)
        else:
            output = self._call_func(input, config)
        if self.recurse and isinstance(output, Runnable):
            return output.invoke(input, config)
        return output

    async def ainvoke(self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any) -> Any:
        config = self._config(config)
        if self.trace:

            async def traced(value: Any, run_manager, config: RunnableConfig) -> Any:
                return await self._acall_func(value, patch_config(config, callbacks=run_manager.get_child()))

            output = await self._acall_with_config(traced, input, config)
        else:
            output = await self._acall_func(input, config)
        if self.recurse and isinstance(output, Runnable):
            return await output.ainvoke(input, config)
        return output
