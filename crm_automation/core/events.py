import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("crm_automation.events")

WILDCARD = "*"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Fan-out of engine events to in-process subscribers.

    Subscribers registered under ``*`` see every event. A subscriber that raises is logged and
    skipped; the publisher (usually an automation run) is never failed by a listener.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in [*self._subscribers.get(event_name, []), *self._subscribers.get(WILDCARD, [])]:
            try:
                handler(event)
            except Exception as exc:
                logger.warning(
                    "event_subscriber_failed",
                    exc_info=True,
                    extra={"status": event_name, "error": str(exc)[:500]},
                )
                continue
            delivered += 1
        return delivered


event_bus = InProcessEventBus()
