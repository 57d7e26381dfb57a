"""Event outbox and dispatch to notification sinks.

``emit`` appends the event to the ``events`` table inside the caller's
unit of work; sinks are notified only after that unit of work commits.
A failing sink is logged and skipped: the event is already durable.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from pydantic import TypeAdapter

from tandem.models.events import Event
from tandem.storage.schema import EventRow

if TYPE_CHECKING:
    from tandem.protocols import NotificationSink
    from tandem.storage.sqlite import Repositories

logger = logging.getLogger(__name__)

_EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)


def load_event(row: EventRow) -> Event:
    return _EVENT_ADAPTER.validate_python(row.payload_json)


class EventBus:
    """Subscribed sinks plus the durable event log."""

    def __init__(self) -> None:
        self._sinks: list[NotificationSink] = []
        self._lock = threading.Lock()

    def subscribe(self, sink: NotificationSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def unsubscribe(self, sink: NotificationSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(self, repos: Repositories, event: Event) -> None:
        repos.events.append(
            EventRow(
                event_id=event.event_id,
                kind=event.kind,
                payload_json=event.model_dump(mode="json"),
                created_at=event.created_at,
            )
        )
        logger.debug("Recorded %s event %s", event.kind, event.event_id[:12])
        repos.on_commit(lambda: self.dispatch(event))

    def dispatch(self, event: Event) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink.notify(event)
            except Exception:
                logger.exception(
                    "Notification sink %r failed on %s event %s",
                    sink,
                    event.kind,
                    event.event_id,
                )
