from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Protocol, Type, TypeVar

from rookery_build.integration.events import DomainEvent


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[DomainEvent], None]


class EventBus(Protocol):
    """Publish/subscribe interface the core reports through."""

    def publish(self, event: DomainEvent) -> None:
        ...

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        ...


@dataclass
class InMemoryEventBus(EventBus):
    """Synchronous in-process pub/sub bus.

    Fetch workers publish from several threads at once, so delivery is
    serialized: handlers never run concurrently with each other.
    """

    _handlers: DefaultDict[Type[DomainEvent], list[Handler]]

    def __init__(self) -> None:
        self._handlers = defaultdict(list)
        self._lock = threading.RLock()

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            for event_type, handlers in list(self._handlers.items()):
                if isinstance(event, event_type):
                    for handler in handlers:
                        try:
                            handler(event)
                        except Exception:
                            logger.exception(
                                "Event handler failed: %s for %s",
                                handler,
                                event,
                            )

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)  # type: ignore[arg-type]


@dataclass
class RecordingEventBus(InMemoryEventBus):
    """Bus that also keeps every published event, in order."""

    events: list[DomainEvent]

    def __init__(self) -> None:
        super().__init__()
        self.events = []

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self.events.append(event)
        super().publish(event)

    def of_type(self, event_type: Type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]  # type: ignore[misc]
