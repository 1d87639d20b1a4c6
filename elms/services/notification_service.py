"""Fire-and-forget scheduling event fan-out."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from elms.repository.data_repository import DataRepository
from elms.utils.logger import get_logger


logger = get_logger(__name__)


class EventType(str, Enum):
    TIMETABLE_GENERATED = "TIMETABLE_GENERATED"
    TIMETABLE_PUBLISHED = "TIMETABLE_PUBLISHED"
    STATUS_CHANGED = "STATUS_CHANGED"
    CONFLICTS_CHANGED = "CONFLICTS_CHANGED"
    INVIGILATOR_ADDED = "INVIGILATOR_ADDED"
    INVIGILATOR_REMOVED = "INVIGILATOR_REMOVED"
    PLACEMENT_ADDED = "PLACEMENT_ADDED"
    PLACEMENT_MOVED = "PLACEMENT_MOVED"
    PLACEMENT_REMOVED = "PLACEMENT_REMOVED"
    REVISION_CREATED = "REVISION_CREATED"


@dataclass(frozen=True)
class SchedulingEvent:
    event_type: EventType
    timetable_id: Optional[int]
    detail: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[SchedulingEvent], None]


class EventPublisher:
    """Delivers events to subscribers in registration order.

    A subscriber that raises is logged and skipped; the scheduling
    operation that emitted the event never sees the failure.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: SchedulingEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed | event=%s | timetable_id=%s | subscriber=%s",
                    event.event_type.value,
                    event.timetable_id,
                    getattr(subscriber, "__qualname__", repr(subscriber)),
                )


class AuditTrailSubscriber:
    """Writes every event to the repository audit log."""

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    def __call__(self, event: SchedulingEvent) -> None:
        self._repository.record_audit_event(
            event.event_type.value,
            event.timetable_id,
            event.detail,
        )


def log_event(event: SchedulingEvent) -> None:
    logger.info(
        "Scheduling event | event=%s | timetable_id=%s | detail=%s",
        event.event_type.value,
        event.timetable_id,
        event.detail,
    )


def build_default_publisher(repository: DataRepository) -> EventPublisher:
    publisher = EventPublisher()
    publisher.subscribe(log_event)
    publisher.subscribe(AuditTrailSubscriber(repository))
    return publisher
