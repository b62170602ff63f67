"""Event sinks the core pushes progress, log and completion events into."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from .schemas import Event

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receiver of push events."""

    def emit(self, event: Event) -> None:
        """Deliver one event; must not raise."""
        ...


class CollectingSink:
    """Keeps every emitted event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of(self, channel: str, event_id: str | None = None) -> list[Event]:
        """Return events on one channel, optionally for one correlation id."""
        return [
            event
            for event in self.events
            if event.channel == channel and (event_id is None or event.id == event_id)
        ]

    def clear(self) -> None:
        """Forget every collected event."""
        self.events.clear()


class CallbackSink:
    """Forwards each event as a wire dictionary to a callback."""

    def __init__(self, callback: Callable[[dict[str, object]], None]) -> None:
        self._callback = callback

    def emit(self, event: Event) -> None:
        """Forward the event, logging rather than raising callback failures."""
        try:
            self._callback(event.to_wire())
        except Exception:
            logger.exception("event callback failed for %s", event.channel)
