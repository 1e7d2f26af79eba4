"""
Error taxonomy for the Home Visit scheduling engine.

Every operation either fully succeeds or raises exactly one of these.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ConstraintViolation:
    """Detailed reason for rejection."""
    entity: str   # e.g., "Appointment", "Encounter"
    field: str
    rule: str     # e.g., "reference-exists", "no-double-booking"
    reason: str
    entity_id: Optional[str] = None


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """An invariant was violated. The caller can fix its input and try again."""

    def __init__(self, violation: ConstraintViolation):
        self.violation = violation
        super().__init__(f"{violation.entity}.{violation.field} [{violation.rule}]: {violation.reason}")

    @property
    def entity(self) -> str:
        return self.violation.entity

    @property
    def field(self) -> str:
        return self.violation.field

    @property
    def rule(self) -> str:
        return self.violation.rule

    @property
    def reason(self) -> str:
        return self.violation.reason


class ConflictError(EngineError):
    """The requested window was taken by a concurrent booking. Re-run the matcher and retry."""

    def __init__(self, med_tech_id: str, period: Any):
        self.med_tech_id = med_tech_id
        self.period = period
        super().__init__(f"Med tech {med_tech_id} is not free during {period.start} - {period.end}")


class InvalidTransitionError(EngineError):
    """A state machine was driven along an edge it does not have."""

    def __init__(self, entity: str, entity_id: Optional[str], current: Any, target: Any):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"{entity} {entity_id}: cannot move from '{_value(current)}' to '{_value(target)}'"
        )


class InvalidScheduleError(EngineError):
    """A med tech's availability data is malformed."""

    def __init__(self, med_tech_id: str, reason: str):
        self.med_tech_id = med_tech_id
        self.reason = reason
        super().__init__(f"Invalid schedule for med tech {med_tech_id}: {reason}")


class NotFoundError(EngineError):
    """A referenced entity does not exist in the store."""

    def __init__(self, kind: Any, entity_id: Optional[str]):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{_value(kind)} {entity_id} not found")


def _value(obj: Any) -> Any:
    return getattr(obj, "value", obj)
