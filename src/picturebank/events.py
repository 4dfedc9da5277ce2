"""Change events published by picture banks, browsers and the registry.

The core publishes; it never assumes which thread observers run on.
Observers register per event type on an ``EventBus``:

    >>> bus = EventBus()
    >>> bus.on(PictureAddedEvent, lambda event: print(event.picture_id))
    >>> bus.publish(PictureAddedEvent(picture_id="559AEA..."))
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PictureChangedEvent:
    """A browser moved to another picture."""

    picture_id: str
    browser_id: int


@dataclass(frozen=True)
class PictureAddedEvent:
    """A picture was ingested."""

    picture_id: str
    picture_bank_id: int | None = None


@dataclass(frozen=True)
class TagChangedEvent:
    """A tag was created, edited or removed."""

    tag_id: int
    removed: bool = False


@dataclass(frozen=True)
class BankListChangedEvent:
    """The set of known or selected banks changed."""

    pass


class EventBus:
    """Synchronous publish/subscribe, one observer list per event type.

    A failing observer is logged and does not prevent delivery to the
    others, nor does it propagate to the publisher.
    """

    def __init__(self):
        self._listeners: dict[type, list[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def on(self, event_type: type, callback: Callable[[Any], None]) -> None:
        """Register an observer for one event type."""
        with self._lock:
            self._listeners.setdefault(event_type, []).append(callback)

    def off(self, event_type: type, callback: Callable[[Any], None]) -> bool:
        """Unregister an observer. Returns False if it wasn't registered."""
        with self._lock:
            callbacks = self._listeners.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
            return False

    def publish(self, event: Any) -> None:
        """Deliver an event to every observer of its type."""
        with self._lock:
            callbacks = list(self._listeners.get(type(event), []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Observer {callback!r} failed on {type(event).__name__}")

    def listener_count(self, event_type: type) -> int:
        with self._lock:
            return len(self._listeners.get(event_type, []))
