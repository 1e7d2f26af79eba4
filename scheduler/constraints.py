"""
Consistency Validation Logic.

This module answers the binary question: "Can this entity be written as it is?"
It runs as a pre-commit gate on every mutation and enforces:
1. Referential integrity (every identifier resolves to an entity of the expected kind).
2. Structural rules (period ordering, acyclic partOf, enumerations, one value per observation).
3. Cross-entity agreement (an Encounter's patient is its Appointment's patient, and so on).

The first violated rule is reported; nothing is written when any rule fails.
"""

import logging
import threading
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel

from models import (
    AdministrativeGender, AppointmentStatus, DeliveryStatus, DeviceStatus, EncounterStatus,
    LocationStatus, RequestStatus, ServiceArea, OCCUPYING_STATUSES
)
from .availability import schedulable_windows
from .config import EngineSettings
from .errors import ConstraintViolation, InvalidScheduleError, ValidationError
from .store import EntityKind, EntityStore, MODEL_FOR_KIND
from . import transitions

logger = logging.getLogger(__name__)

K = EntityKind

# kind -> [(field, referenced kind, required)]; list-valued fields hold many ids
REFERENCES: Dict[EntityKind, List[Tuple[str, EntityKind, bool]]] = {
    K.PATIENT: [
        ("location_id", K.LOCATION, False),
        ("general_practitioner_id", K.PRACTITIONER, False),
        ("managing_organization_id", K.ORGANIZATION, False),
    ],
    K.MED_TECH: [
        ("location_id", K.LOCATION, False),
        ("work_location_id", K.LOCATION, False),
        ("organization_id", K.ORGANIZATION, False),
        ("service_ids", K.HEALTHCARE_SERVICE, False),
    ],
    K.PRACTITIONER: [
        ("location_id", K.LOCATION, False),
        ("organization_ids", K.ORGANIZATION, False),
    ],
    K.LOCATION: [
        ("managing_organization_id", K.ORGANIZATION, False),
        ("part_of_id", K.LOCATION, False),
    ],
    K.ORGANIZATION: [
        ("location_id", K.LOCATION, False),
        ("part_of_id", K.ORGANIZATION, False),
    ],
    K.HEALTHCARE_SERVICE: [
        ("device_ids", K.DEVICE, False),
    ],
    K.DEVICE: [
        ("patient_id", K.PATIENT, False),
        ("owner_id", K.ORGANIZATION, False),
        ("location_id", K.LOCATION, False),
    ],
    K.LABORATORY: [
        ("location_id", K.LOCATION, True),
        ("services_offered", K.HEALTHCARE_SERVICE, False),
    ],
    K.SERVICE_REQUEST: [
        ("patient_id", K.PATIENT, True),
        ("ordering_practitioner_id", K.PRACTITIONER, False),
        ("service_ids", K.HEALTHCARE_SERVICE, False),
    ],
    K.APPOINTMENT: [
        ("patient_id", K.PATIENT, True),
        ("med_tech_id", K.MED_TECH, True),
        ("incoming_referral_id", K.SERVICE_REQUEST, False),
        ("service_ids", K.HEALTHCARE_SERVICE, False),
    ],
    K.ENCOUNTER: [
        ("appointment_id", K.APPOINTMENT, True),
        ("patient_id", K.PATIENT, True),
        ("med_tech_id", K.MED_TECH, True),
        ("location_id", K.LOCATION, False),
        ("service_ids", K.HEALTHCARE_SERVICE, False),
        ("observation_ids", K.OBSERVATION, False),
    ],
    K.OBSERVATION: [
        ("subject_id", K.PATIENT, True),
        ("context_id", K.ENCOUNTER, True),
        ("performer_id", K.MED_TECH, False),
        ("device_id", K.DEVICE, False),
    ],
    K.DELIVERY: [
        ("encounter_id", K.ENCOUNTER, True),
        ("patient_id", K.PATIENT, True),
        ("med_tech_id", K.MED_TECH, True),
        ("laboratory_id", K.LABORATORY, True),
        ("service_ids", K.HEALTHCARE_SERVICE, False),
    ],
}

# kind -> [(field, enumeration)]; list-valued fields check every member
ENUMERATIONS: Dict[EntityKind, List[Tuple[str, Type[Enum]]]] = {
    K.PATIENT: [("service_area", ServiceArea), ("gender", AdministrativeGender)],
    K.MED_TECH: [("service_areas", ServiceArea)],
    K.PRACTITIONER: [("gender", AdministrativeGender)],
    K.LOCATION: [("status", LocationStatus)],
    K.DEVICE: [("status", DeviceStatus)],
    K.SERVICE_REQUEST: [("status", RequestStatus)],
    K.APPOINTMENT: [("status", AppointmentStatus)],
    K.ENCOUNTER: [("status", EncounterStatus)],
    K.DELIVERY: [("status", DeliveryStatus)],
}

CONTACT_KINDS = frozenset({K.PATIENT, K.MED_TECH, K.PRACTITIONER, K.LOCATION, K.ORGANIZATION, K.LABORATORY})


def _as_ids(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


class ConsistencyValidator:
    """
    Validates invariants of the entity graph before anything is committed.
    """

    def __init__(self, store: EntityStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or EngineSettings()
        # Entities being written in the same batch, visible to each other's checks
        self._local = threading.local()

        self._cross_checks = {
            K.MED_TECH: self._check_med_tech,
            K.LOCATION: self._check_part_of,
            K.ORGANIZATION: self._check_part_of,
            K.SERVICE_REQUEST: self._check_service_request,
            K.APPOINTMENT: self._check_appointment,
            K.ENCOUNTER: self._check_encounter,
            K.OBSERVATION: self._check_observation,
            K.DELIVERY: self._check_delivery,
        }

    # --- Public API ---

    def check(self, kind: EntityKind, entity: BaseModel) -> Optional[ConstraintViolation]:
        """
        Master validation function. Returns None if Valid, Violation object if Invalid.
        """
        expected = MODEL_FOR_KIND[kind]
        if not isinstance(entity, expected):
            return self._violation(kind, entity, "*", "entity-kind", f"expected a {expected.__name__}")

        # 1. Enumerations & contact details (cheap, local to the entity)
        violation = self._check_enumerations(kind, entity)
        if violation: return violation

        violation = self._check_contact(kind, entity)
        if violation: return violation

        # 2. Every identifier resolves
        violation = self._check_references(kind, entity)
        if violation: return violation

        # 3. Kind-specific structure & cross-entity rules
        cross_check = self._cross_checks.get(kind)
        if cross_check:
            violation = cross_check(kind, entity)
            if violation: return violation

        return None

    def validate(self, kind: EntityKind, entity: BaseModel) -> None:
        """Raise ValidationError for the first violated rule."""
        violation = self.check(kind, entity)
        if violation:
            logger.warning(f"Rejected {violation.entity} {violation.entity_id}: {violation.rule} ({violation.reason})")
            raise ValidationError(violation)

    def validate_all(self, mutations: Iterable[Tuple[EntityKind, BaseModel]]) -> None:
        """
        Validate a multi-entity commit. Every entity is checked against the store
        as it will look after the whole batch is applied.
        """
        mutations = list(mutations)
        self._local.pending = {(kind, entity.id): entity for kind, entity in mutations if entity.id}
        try:
            for kind, entity in mutations:
                self.validate(kind, entity)
        finally:
            self._local.pending = {}

    def check_delete(self, kind: EntityKind, entity_id: str) -> Optional[ConstraintViolation]:
        """An entity may only be removed while nothing references it."""
        for referrer_kind, fields in REFERENCES.items():
            targets = [f for f, target, _ in fields if target == kind]
            if not targets:
                continue
            for referrer in self.store.list(referrer_kind):
                for field in targets:
                    if entity_id in _as_ids(getattr(referrer, field)):
                        return ConstraintViolation(
                            kind.value, "id", "referenced",
                            f"still referenced by {referrer_kind.value} {referrer.id}.{field}",
                            entity_id
                        )
        return None

    # --- Helpers ---

    def _resolve(self, kind: EntityKind, entity_id: Optional[str]) -> Optional[BaseModel]:
        pending = getattr(self._local, "pending", None) or {}
        if (kind, entity_id) in pending:
            return pending[(kind, entity_id)]
        return self.store.find(kind, entity_id)

    @staticmethod
    def _violation(kind: EntityKind, entity: BaseModel, field: str, rule: str, reason: str) -> ConstraintViolation:
        return ConstraintViolation(kind.value, field, rule, reason, getattr(entity, "id", None))

    def _check_period(self, kind: EntityKind, entity: BaseModel, field: str, period) -> Optional[ConstraintViolation]:
        if period is not None and period.start >= period.end:
            return self._violation(kind, entity, field, "period-order", "start must be before end")
        return None

    # --- Generic Checks ---

    def _check_enumerations(self, kind: EntityKind, entity: BaseModel) -> Optional[ConstraintViolation]:
        for field, enum_cls in ENUMERATIONS.get(kind, []):
            for value in _as_ids(getattr(entity, field)):
                if isinstance(value, enum_cls):
                    continue
                try:
                    enum_cls(value)
                except ValueError:
                    return self._violation(
                        kind, entity, field, "enumeration",
                        f"'{value}' is not one of {[m.value for m in enum_cls]}"
                    )
        return None

    def _check_contact(self, kind: EntityKind, entity: BaseModel) -> Optional[ConstraintViolation]:
        if not self.settings.REQUIRE_CONTACT_FIELDS or kind not in CONTACT_KINDS:
            return None
        for field in ("phone", "email"):
            if not getattr(entity, field):
                return self._violation(kind, entity, field, "contact-required", f"{field} is required")
        return None

    def _check_references(self, kind: EntityKind, entity: BaseModel) -> Optional[ConstraintViolation]:
        for field, target, required in REFERENCES.get(kind, []):
            value = getattr(entity, field)
            if value is None:
                if required:
                    return self._violation(kind, entity, field, "reference-required", f"{field} is required")
                continue
            for ref_id in _as_ids(value):
                if self._resolve(target, ref_id) is None:
                    return self._violation(
                        kind, entity, field, "reference-exists",
                        f"{target.value} {ref_id} does not exist"
                    )
        return None

    # --- Kind-specific Checks ---

    def _check_med_tech(self, kind, med_tech) -> Optional[ConstraintViolation]:
        violation = self._check_period(kind, med_tech, "schedule", med_tech.schedule)
        if violation: return violation

        for window in med_tech.availabilities:
            violation = self._check_period(kind, med_tech, "availabilities", window)
            if violation: return violation

        try:
            schedulable_windows(med_tech)
        except InvalidScheduleError as e:
            return self._violation(kind, med_tech, "availabilities", "valid-schedule", e.reason)
        return None

    def _check_part_of(self, kind, entity) -> Optional[ConstraintViolation]:
        """Depth-bounded walk up the partOf chain; a revisit means a cycle."""
        visited = {entity.id} if entity.id else set()
        current_id = entity.part_of_id
        depth = 0

        while current_id is not None:
            if current_id in visited:
                return self._violation(kind, entity, "part_of_id", "part-of-acyclic", f"cycle through {current_id}")
            if depth >= self.settings.MAX_PART_OF_DEPTH:
                return self._violation(
                    kind, entity, "part_of_id", "part-of-depth",
                    f"chain longer than {self.settings.MAX_PART_OF_DEPTH} hops"
                )
            parent = self._resolve(kind, current_id)
            if parent is None:
                return self._violation(kind, entity, "part_of_id", "reference-exists", f"{kind.value} {current_id} does not exist")

            visited.add(current_id)
            current_id = parent.part_of_id
            depth += 1
        return None

    def _check_service_request(self, kind, request) -> Optional[ConstraintViolation]:
        return self._check_period(kind, request, "desired_period", request.desired_period)

    def _check_appointment(self, kind, appointment) -> Optional[ConstraintViolation]:
        violation = self._check_period(kind, appointment, "period", appointment.period)
        if violation: return violation

        request = self._resolve(K.SERVICE_REQUEST, appointment.incoming_referral_id)
        if request is not None and request.patient_id != appointment.patient_id:
            return self._violation(
                kind, appointment, "patient_id", "matches-request",
                f"request {request.id} is for patient {request.patient_id}"
            )

        is_live = not transitions.APPOINTMENT.is_terminal(AppointmentStatus(appointment.status))
        occupies = appointment.status in OCCUPYING_STATUSES

        for other in self.store.list(K.APPOINTMENT):
            if other.id == appointment.id:
                continue
            other = self._resolve(K.APPOINTMENT, other.id) or other

            # No double-booking of a med tech
            if occupies and other.med_tech_id == appointment.med_tech_id \
                    and other.status in OCCUPYING_STATUSES and other.period.overlaps(appointment.period):
                return self._violation(
                    kind, appointment, "period", "no-double-booking",
                    f"overlaps appointment {other.id} of med tech {appointment.med_tech_id}"
                )

            # One live appointment per service request
            if is_live and request is not None and other.incoming_referral_id == request.id \
                    and not transitions.APPOINTMENT.is_terminal(other.status):
                return self._violation(
                    kind, appointment, "incoming_referral_id", "single-active-appointment",
                    f"request {request.id} already has appointment {other.id} ({other.status.value})"
                )
        return None

    def _check_encounter(self, kind, encounter) -> Optional[ConstraintViolation]:
        appointment = self._resolve(K.APPOINTMENT, encounter.appointment_id)

        if encounter.patient_id != appointment.patient_id:
            return self._violation(kind, encounter, "patient_id", "matches-appointment", "patient differs from appointment")
        if encounter.med_tech_id != appointment.med_tech_id:
            return self._violation(kind, encounter, "med_tech_id", "matches-appointment", "med tech differs from appointment")

        violation = self._check_period(kind, encounter, "period", encounter.period)
        if violation: return violation

        # Contained in the appointment, or straddling its start
        booked = appointment.period
        actual = encounter.period
        contained = booked.contains(actual)
        straddles_start = actual.start <= booked.start < actual.end
        if not (contained or straddles_start):
            return self._violation(kind, encounter, "period", "within-appointment", "period falls outside the appointment")

        for service_id in encounter.service_ids:
            service = self._resolve(K.HEALTHCARE_SERVICE, service_id)
            if service.appointment_required and service_id not in appointment.service_ids:
                return self._violation(
                    kind, encounter, "service_ids", "appointment-required",
                    f"{service.name} must be booked on the appointment"
                )
        return None

    def _check_observation(self, kind, observation) -> Optional[ConstraintViolation]:
        encounter = self._resolve(K.ENCOUNTER, observation.context_id)
        if observation.subject_id != encounter.patient_id:
            return self._violation(kind, observation, "subject_id", "matches-context", "subject is not the encounter's patient")

        values = observation.populated_values()
        if len(values) != 1:
            return self._violation(
                kind, observation, "value", "exactly-one-value", f"{len(values)} value fields populated"
            )

        for i, component in enumerate(observation.components):
            if len(component.populated_values()) != 1:
                return self._violation(
                    kind, observation, f"components[{i}]", "exactly-one-value",
                    f"component '{component.measured}' must carry exactly one value"
                )
            violation = self._check_period(kind, observation, f"components[{i}].value_period", component.value_period)
            if violation: return violation

        for field in ("effective_period", "value_period"):
            violation = self._check_period(kind, observation, field, getattr(observation, field))
            if violation: return violation
        return None

    def _check_delivery(self, kind, delivery) -> Optional[ConstraintViolation]:
        encounter = self._resolve(K.ENCOUNTER, delivery.encounter_id)
        if delivery.patient_id != encounter.patient_id:
            return self._violation(kind, delivery, "patient_id", "matches-encounter", "patient differs from encounter")
        if delivery.med_tech_id != encounter.med_tech_id:
            return self._violation(kind, delivery, "med_tech_id", "matches-encounter", "med tech differs from encounter")
        return None
