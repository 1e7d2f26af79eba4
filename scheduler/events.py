"""
Domain events emitted after a transition commits.

Transport (push, SMS, email) is someone else's job: subscribers registered on the
EventPublisher receive each event synchronously, in subscription order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    status: str
    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AppointmentBooked(DomainEvent):
    appointment_id: str = ""
    patient_id: str = ""
    med_tech_id: str = ""
    service_request_id: Optional[str] = None


@dataclass(frozen=True)
class AppointmentCancelled(DomainEvent):
    appointment_id: str = ""
    patient_id: str = ""
    med_tech_id: str = ""
    reason: str = ""
    # Encounter / Delivery ids cancelled along with the appointment
    cascaded_ids: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class AppointmentFulfilled(DomainEvent):
    appointment_id: str = ""
    encounter_id: str = ""
    service_request_id: Optional[str] = None


@dataclass(frozen=True)
class AppointmentNoShow(DomainEvent):
    appointment_id: str = ""
    patient_id: str = ""
    med_tech_id: str = ""


@dataclass(frozen=True)
class EncounterFinished(DomainEvent):
    encounter_id: str = ""
    appointment_id: str = ""
    patient_id: str = ""
    med_tech_id: str = ""


@dataclass(frozen=True)
class DeliveryCreated(DomainEvent):
    delivery_id: str = ""
    encounter_id: str = ""
    laboratory_id: str = ""
    patient_id: str = ""
    med_tech_id: str = ""


Subscriber = Callable[[DomainEvent], None]


class EventPublisher:
    """Fan-out of committed domain events to registered subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.remove(subscriber)

    def publish(self, event: DomainEvent) -> None:
        logger.info(f"Event {event.name} ({event.status})")
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                # The transition is already committed
                logger.exception(f"Subscriber {subscriber!r} failed on {event.name}")
