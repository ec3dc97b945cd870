from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def lead_id(self) -> str | None:
        inner = self.payload.get("payload")
        if isinstance(inner, dict):
            return inner.get("lead_id")
        return self.payload.get("lead_id")


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out keyed by event name or glob pattern such as ``crm.lead.*``."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        matched: list[EventHandler] = []
        for pattern, handlers in list(self._subscribers.items()):
            if pattern == event_name or fnmatchcase(event_name, pattern):
                matched.extend(handler for handler in handlers if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = self.handlers_for(event_name)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
