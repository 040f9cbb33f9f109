"""Event dispatcher: event tag -> ordered handlers, delivered synchronously in arrival order."""

from typing import Any, Dict, List, Optional, Tuple, Union

from ..events import GraphEvent, StreamEvent
from ..logging_config import get_logger
from .state import tag_of

logger = get_logger(__name__)

# Handlers registered under this tag see every event, after the tag's own handlers
ALL_EVENTS = "*"


class EventDispatcher:
    """Registry of handlers per event tag.

    A handler is either a callable taking a StreamEvent or an object with a
    handle(event) method. Internal handlers (the aggregators) are trusted: their
    exceptions propagate. Exceptions from client handlers are logged and dropped so
    one faulty subscriber cannot break the stream.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[Any, bool]]] = {}

    def register(self, tag: Union[GraphEvent, str], handler: Any, internal: bool = False) -> None:
        entries = self._handlers.setdefault(tag_of(tag), [])
        if any(existing is handler for existing, _ in entries):
            return
        entries.append((handler, internal))

    def unregister(self, tag: Union[GraphEvent, str], handler: Any) -> None:
        entries = self._handlers.get(tag_of(tag))
        if not entries:
            return
        self._handlers[tag_of(tag)] = [(h, i) for h, i in entries if h is not handler]

    def get_handlers(self, tag: Union[GraphEvent, str]) -> Tuple[Any, ...]:
        return tuple(h for h, _ in self._handlers.get(tag_of(tag), ()))

    def get_handler(self, tag: Union[GraphEvent, str]) -> Optional[Any]:
        """First handler for tag, or None."""
        handlers = self.get_handlers(tag)
        return handlers[0] if handlers else None

    def has_handlers(self, tag: Union[GraphEvent, str]) -> bool:
        return bool(self._handlers.get(tag_of(tag)))

    def dispatch(self, event: StreamEvent) -> None:
        tag = tag_of(event.event)
        entries = list(self._handlers.get(tag, ()))
        if tag != ALL_EVENTS:
            entries.extend(self._handlers.get(ALL_EVENTS, ()))
        for handler, internal in entries:
            if internal:
                _deliver(handler, event)
                continue
            try:
                _deliver(handler, event)
            except Exception:
                logger.exception("Handler %r failed on %s", handler, tag)


def _deliver(handler: Any, event: StreamEvent) -> None:
    handle = getattr(handler, "handle", None)
    if callable(handle):
        handle(event)
    else:
        handler(event)
