import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("gophercrm.events")


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out to subscribers of an exact name or a ``prefix.*`` pattern.

    Events are published after the owning transaction committed, so a failing
    subscriber is logged and skipped instead of failing the publisher.
    """

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
        for pattern, handlers in self._subscribers.items():
            if pattern == event_name or (pattern.endswith(".*") and event_name.startswith(pattern[:-1])):
                matched.extend(handlers)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self.handlers_for(event_name):
            try:
                handler(event)
            except Exception as exc:
                logger.exception("events.subscriber_failed", extra={"event_name": event_name, "error": str(exc)})
                continue
            delivered += 1
        return delivered


event_bus = InProcessEventBus()
