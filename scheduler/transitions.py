"""
Transition tables for every stateful entity.

A state missing from a table's keys is terminal. Anything not listed is illegal.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from models import AppointmentStatus as A, DeliveryStatus as D, EncounterStatus as E, RequestStatus as R
from .errors import InvalidTransitionError

APPOINTMENT_TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
    A.PROPOSED: frozenset({A.PENDING, A.CANCELLED, A.ENTERED_IN_ERROR}),
    A.PENDING: frozenset({A.BOOKED, A.CANCELLED, A.ENTERED_IN_ERROR}),
    A.BOOKED: frozenset({A.ARRIVED, A.CANCELLED, A.NOSHOW, A.ENTERED_IN_ERROR}),
    A.ARRIVED: frozenset({A.FULFILLED, A.CANCELLED, A.ENTERED_IN_ERROR}),
}

ENCOUNTER_TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
    E.PLANNED: frozenset({E.ARRIVED, E.IN_PROGRESS, E.CANCELLED, E.ENTERED_IN_ERROR}),
    E.ARRIVED: frozenset({E.TRIAGED, E.IN_PROGRESS, E.CANCELLED, E.ENTERED_IN_ERROR}),
    E.TRIAGED: frozenset({E.IN_PROGRESS, E.CANCELLED, E.ENTERED_IN_ERROR}),
    E.IN_PROGRESS: frozenset({E.ONLEAVE, E.FINISHED, E.CANCELLED, E.ENTERED_IN_ERROR}),
    E.ONLEAVE: frozenset({E.IN_PROGRESS, E.FINISHED, E.CANCELLED, E.ENTERED_IN_ERROR}),
    E.UNKNOWN: frozenset({E.CANCELLED, E.ENTERED_IN_ERROR}),
}

DELIVERY_TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
    D.PLANNED: frozenset({D.IN_PROGRESS, D.CANCELLED, D.ENTERED_IN_ERROR}),
    D.IN_PROGRESS: frozenset({D.ARRIVED, D.CANCELLED, D.ENTERED_IN_ERROR}),
    D.ARRIVED: frozenset({D.FINISHED, D.CANCELLED, D.ENTERED_IN_ERROR}),
}

REQUEST_TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
    R.DRAFT: frozenset({R.ACTIVE, R.CANCELLED, R.ENTERED_IN_ERROR}),
    R.ACTIVE: frozenset({R.SUSPENDED, R.COMPLETED, R.CANCELLED, R.ENTERED_IN_ERROR}),
    R.SUSPENDED: frozenset({R.ACTIVE, R.CANCELLED, R.ENTERED_IN_ERROR}),
    R.UNKNOWN: frozenset({R.ENTERED_IN_ERROR}),
}


class StateMachine:
    """Guards one entity type's status field."""

    def __init__(self, entity: str, table: Dict[Enum, FrozenSet[Enum]]):
        self.entity = entity
        self.table = table

    def is_terminal(self, status: Enum) -> bool:
        return status not in self.table

    def can(self, current: Enum, target: Enum) -> bool:
        return target in self.table.get(current, frozenset())

    def check(self, entity_id: Optional[str], current: Enum, target: Enum) -> None:
        if not self.can(current, target):
            raise InvalidTransitionError(self.entity, entity_id, current, target)


APPOINTMENT = StateMachine("Appointment", APPOINTMENT_TRANSITIONS)
ENCOUNTER = StateMachine("Encounter", ENCOUNTER_TRANSITIONS)
DELIVERY = StateMachine("Delivery", DELIVERY_TRANSITIONS)
SERVICE_REQUEST = StateMachine("ServiceRequest", REQUEST_TRANSITIONS)
