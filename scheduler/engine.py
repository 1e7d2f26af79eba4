"""
The Booking State Machine.

This module drives a booking through its lifecycle:
1. Appointment: proposed -> pending -> booked -> arrived -> fulfilled (or cancelled / noshow / entered-in-error).
2. Encounter: created on arrival, advanced through the visit, finished before the appointment completes.
3. Observation & Delivery: the outputs of a visit.

Every operation validates the whole mutation, commits it in one store transaction and only
then publishes its event. A failed step leaves every entity, and the availability index,
exactly as it was before the call.
"""

import logging
import uuid
from contextlib import ExitStack, contextmanager
from typing import Iterator, List, Optional, Tuple

from pydantic import BaseModel

from models import (
    Appointment, AppointmentStatus, Delivery, DeliveryStatus, Encounter, EncounterStatus,
    Observation, Period, RequestStatus, OCCUPYING_STATUSES
)
from .availability import AvailabilityIndex, LockRegistry
from .clock import Clock, SystemClock
from .config import EngineSettings
from .constraints import ConsistencyValidator
from .errors import ConflictError, ConstraintViolation, ValidationError
from .events import (
    AppointmentBooked, AppointmentCancelled, AppointmentFulfilled, AppointmentNoShow,
    DeliveryCreated, EncounterFinished, EventPublisher
)
from .matcher import check_request_bookable, ineligibility
from .store import EntityKind, EntityStore
from . import transitions

logger = logging.getLogger(__name__)

# Encounter states in which the med tech is with the patient
OBSERVABLE_ENCOUNTER = frozenset({
    EncounterStatus.ARRIVED, EncounterStatus.TRIAGED, EncounterStatus.IN_PROGRESS, EncounterStatus.ONLEAVE,
})
# Encounter states after which samples exist
SAMPLES_COLLECTED = frozenset({EncounterStatus.IN_PROGRESS, EncounterStatus.ONLEAVE, EncounterStatus.FINISHED})


def _reject(entity: str, field: str, rule: str, reason: str, entity_id: Optional[str] = None) -> ValidationError:
    return ValidationError(ConstraintViolation(entity, field, rule, reason, entity_id))


class BookingEngine:
    """
    Main booking engine.
    Owns no entities: it loads them from the store, applies one legal transition and writes them back.
    """

    def __init__(
        self,
        store: EntityStore,
        index: Optional[AvailabilityIndex] = None,
        validator: Optional[ConsistencyValidator] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.index = index or AvailabilityIndex(store)
        self.validator = validator or ConsistencyValidator(store, self.settings)
        self.clock = clock or SystemClock()
        self.events = events or EventPublisher()
        self._locks = LockRegistry()

    # --- Plumbing ---

    @contextmanager
    def _serialized(self, kind: EntityKind, entity_id: str) -> Iterator[None]:
        """No two transitions of the same entity run at once."""
        with self._locks.hold(f"{kind.value}:{entity_id}"):
            yield

    def _commit(self, *mutations: Tuple[EntityKind, BaseModel]) -> None:
        """Validate every entity of the batch, then write them all, or nothing."""
        with self.store.transaction():
            self.validator.validate_all(mutations)
            for kind, entity in mutations:
                self.store.put(kind, entity)

    def _encounter_for(self, appointment_id: str) -> Optional[Encounter]:
        for encounter in self.store.list(EntityKind.ENCOUNTER):
            if encounter.appointment_id == appointment_id:
                return encounter
        return None

    def _deliveries_for(self, encounter_id: str) -> List[Delivery]:
        return [d for d in self.store.list(EntityKind.DELIVERY) if d.encounter_id == encounter_id]

    # --- Appointment lifecycle ---

    def propose(
        self,
        request_id: str,
        med_tech_id: str,
        period: Period,
        description: Optional[str] = None,
        comment: Optional[str] = None
    ) -> Appointment:
        """Create an Appointment in `proposed`. No time is reserved yet."""
        with self._serialized(EntityKind.SERVICE_REQUEST, request_id):
            request = self.store.get(EntityKind.SERVICE_REQUEST, request_id)
            check_request_bookable(request)

            patient = self.store.get(EntityKind.PATIENT, request.patient_id)
            med_tech = self.store.get(EntityKind.MED_TECH, med_tech_id)
            reason = ineligibility(med_tech, patient, set(request.service_ids))
            if reason:
                raise _reject("Appointment", "med_tech_id", "med-tech-eligible", f"{med_tech_id} {reason}")

            now = self.clock.now()
            if period.start < now:
                raise _reject("Appointment", "period", "period-not-past", f"starts before {now.isoformat()}")

            appointment = Appointment(
                status=AppointmentStatus.PROPOSED,
                description=description,
                period=period,
                created=now,
                comment=comment,
                incoming_referral_id=request.id,
                patient_id=request.patient_id,
                med_tech_id=med_tech_id,
                service_ids=list(request.service_ids)
            )
            self._commit((EntityKind.APPOINTMENT, appointment))

        logger.info(f"Proposed appointment {appointment.id}: {med_tech_id} at {period.start} for request {request_id}")
        return appointment

    def confirm(self, appointment_id: str) -> Appointment:
        """
        proposed -> pending -> booked, reserving the med tech's time.
        Raises ConflictError if the window was taken in the meantime; re-run the matcher.
        """
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            path = [AppointmentStatus.BOOKED]
            if appointment.status == AppointmentStatus.PROPOSED:
                path.insert(0, AppointmentStatus.PENDING)

            current = appointment.status
            for target in path:
                transitions.APPOINTMENT.check(appointment_id, current, target)
                current = target

            med_tech_id = appointment.med_tech_id
            period = appointment.period
            with self.index.lock(med_tech_id):
                self.index.reserve(med_tech_id, period)
                try:
                    appointment.status = AppointmentStatus.BOOKED
                    self._commit((EntityKind.APPOINTMENT, appointment))
                except ValidationError as e:
                    self.index.release(med_tech_id, period)
                    if e.rule == "no-double-booking":
                        # The index missed a booking written elsewhere
                        self.index.invalidate(med_tech_id)
                        raise ConflictError(med_tech_id, period) from e
                    raise
                except Exception:
                    self.index.release(med_tech_id, period)
                    raise

        logger.info(f"Booked appointment {appointment_id} for {med_tech_id} at {period.start}")
        self.events.publish(AppointmentBooked(
            status=appointment.status.value,
            occurred_at=self.clock.now(),
            appointment_id=appointment_id,
            patient_id=appointment.patient_id,
            med_tech_id=med_tech_id,
            service_request_id=appointment.incoming_referral_id
        ))
        return appointment

    def record_arrival(self, appointment_id: str) -> Encounter:
        """booked -> arrived. Opens the Encounter (planned, then arrived) with the appointment's parties and period."""
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            transitions.APPOINTMENT.check(appointment_id, appointment.status, AppointmentStatus.ARRIVED)

            patient = self.store.get(EntityKind.PATIENT, appointment.patient_id)
            encounter = Encounter(
                id=uuid.uuid4().hex,
                status=EncounterStatus.PLANNED,
                patient_id=appointment.patient_id,
                med_tech_id=appointment.med_tech_id,
                appointment_id=appointment_id,
                period=appointment.period,
                location_id=patient.location_id,
                service_ids=list(appointment.service_ids)
            )
            transitions.ENCOUNTER.check(encounter.id, encounter.status, EncounterStatus.ARRIVED)
            encounter.status = EncounterStatus.ARRIVED
            appointment.status = AppointmentStatus.ARRIVED

            self._commit((EntityKind.APPOINTMENT, appointment), (EntityKind.ENCOUNTER, encounter))

        logger.info(f"Arrival recorded for appointment {appointment_id}, encounter {encounter.id}")
        return encounter

    def complete(self, appointment_id: str) -> Appointment:
        """arrived -> fulfilled, once the encounter is finished. Completes the originating request."""
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            transitions.APPOINTMENT.check(appointment_id, appointment.status, AppointmentStatus.FULFILLED)

            encounter = self._encounter_for(appointment_id)
            if encounter is None or encounter.status != EncounterStatus.FINISHED:
                state = encounter.status.value if encounter else "missing"
                raise _reject(
                    "Appointment", "status", "encounter-finished",
                    f"encounter is {state}", appointment_id
                )

            appointment.status = AppointmentStatus.FULFILLED
            mutations = [(EntityKind.APPOINTMENT, appointment)]

            request = self.store.find(EntityKind.SERVICE_REQUEST, appointment.incoming_referral_id)
            if request is not None and transitions.SERVICE_REQUEST.can(request.status, RequestStatus.COMPLETED):
                request.status = RequestStatus.COMPLETED
                mutations.append((EntityKind.SERVICE_REQUEST, request))

            self._commit(*mutations)

        logger.info(f"Appointment {appointment_id} fulfilled")
        self.events.publish(AppointmentFulfilled(
            status=appointment.status.value,
            occurred_at=self.clock.now(),
            appointment_id=appointment_id,
            encounter_id=encounter.id,
            service_request_id=appointment.incoming_referral_id
        ))
        return appointment

    def cancel(self, appointment_id: str, reason: str) -> Appointment:
        """
        Legal from proposed, pending, booked and arrived. Releases held time and cancels
        the open Encounter and Deliveries along with it.
        """
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            transitions.APPOINTMENT.check(appointment_id, appointment.status, AppointmentStatus.CANCELLED)
            cascaded = self._retire(appointment, AppointmentStatus.CANCELLED, reason)

        logger.info(f"Appointment {appointment_id} cancelled ({reason}); cascaded to {cascaded}")
        self.events.publish(AppointmentCancelled(
            status=appointment.status.value,
            occurred_at=self.clock.now(),
            appointment_id=appointment_id,
            patient_id=appointment.patient_id,
            med_tech_id=appointment.med_tech_id,
            reason=reason,
            cascaded_ids=tuple(cascaded)
        ))
        return appointment

    def mark_no_show(self, appointment_id: str) -> Appointment:
        """booked -> noshow. The reserved time goes back to the pool."""
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            transitions.APPOINTMENT.check(appointment_id, appointment.status, AppointmentStatus.NOSHOW)
            self._retire(appointment, AppointmentStatus.NOSHOW, None)

        logger.info(f"Appointment {appointment_id} marked no-show")
        self.events.publish(AppointmentNoShow(
            status=appointment.status.value,
            occurred_at=self.clock.now(),
            appointment_id=appointment_id,
            patient_id=appointment.patient_id,
            med_tech_id=appointment.med_tech_id
        ))
        return appointment

    def mark_entered_in_error(self, appointment_id: str) -> Appointment:
        """Withdraw an appointment recorded by mistake, along with anything created from it."""
        with self._serialized(EntityKind.APPOINTMENT, appointment_id):
            appointment = self.store.get(EntityKind.APPOINTMENT, appointment_id)
            transitions.APPOINTMENT.check(appointment_id, appointment.status, AppointmentStatus.ENTERED_IN_ERROR)
            cascaded = self._retire(appointment, AppointmentStatus.ENTERED_IN_ERROR, None)

        logger.info(f"Appointment {appointment_id} entered in error; cascaded to {cascaded}")
        return appointment

    def _retire(self, appointment: Appointment, target: AppointmentStatus, reason: Optional[str]) -> List[str]:
        """
        Move an appointment to a terminal state, close its open children and free its time.
        Returns the ids of the cascaded Encounter / Deliveries.
        """
        held = appointment.status in OCCUPYING_STATUSES
        appointment.status = target
        if reason is not None:
            appointment.cancellation_reason = reason
        mutations = [(EntityKind.APPOINTMENT, appointment)]
        cascaded = []

        if target == AppointmentStatus.ENTERED_IN_ERROR:
            encounter_target, delivery_target = EncounterStatus.ENTERED_IN_ERROR, DeliveryStatus.ENTERED_IN_ERROR
        else:
            encounter_target, delivery_target = EncounterStatus.CANCELLED, DeliveryStatus.CANCELLED

        with ExitStack() as stack:
            encounter = self._encounter_for(appointment.id)
            if encounter is not None:
                stack.enter_context(self._serialized(EntityKind.ENCOUNTER, encounter.id))
                encounter = self.store.get(EntityKind.ENCOUNTER, encounter.id)
                if not transitions.ENCOUNTER.is_terminal(encounter.status):
                    encounter.status = encounter_target
                    mutations.append((EntityKind.ENCOUNTER, encounter))
                    cascaded.append(encounter.id)

                for delivery in self._deliveries_for(encounter.id):
                    stack.enter_context(self._serialized(EntityKind.DELIVERY, delivery.id))
                    delivery = self.store.get(EntityKind.DELIVERY, delivery.id)
                    if not transitions.DELIVERY.is_terminal(delivery.status):
                        delivery.status = delivery_target
                        mutations.append((EntityKind.DELIVERY, delivery))
                        cascaded.append(delivery.id)

            # Release last, inside the transaction: if it fails the writes roll back
            with self.index.lock(appointment.med_tech_id), self.store.transaction():
                self._commit(*mutations)
                if held:
                    self.index.release(appointment.med_tech_id, appointment.period)

        return cascaded

    # --- Encounter lifecycle ---

    def advance_encounter(self, encounter_id: str, status: EncounterStatus) -> Encounter:
        """Move an encounter along its transition table. Finishing publishes EncounterFinished."""
        with self._serialized(EntityKind.ENCOUNTER, encounter_id):
            encounter = self.store.get(EntityKind.ENCOUNTER, encounter_id)
            transitions.ENCOUNTER.check(encounter_id, encounter.status, status)
            encounter.status = status
            self._commit((EntityKind.ENCOUNTER, encounter))

        logger.info(f"Encounter {encounter_id} -> {status.value}")
        if status == EncounterStatus.FINISHED:
            self.events.publish(EncounterFinished(
                status=status.value,
                occurred_at=self.clock.now(),
                encounter_id=encounter_id,
                appointment_id=encounter.appointment_id,
                patient_id=encounter.patient_id,
                med_tech_id=encounter.med_tech_id
            ))
        return encounter

    def finish_encounter(self, encounter_id: str) -> Encounter:
        return self.advance_encounter(encounter_id, EncounterStatus.FINISHED)

    def attach_service(self, encounter_id: str, service_id: str) -> Encounter:
        """Perform an additional service during the visit. Appointment-only services must be on the booking."""
        with self._serialized(EntityKind.ENCOUNTER, encounter_id):
            encounter = self.store.get(EntityKind.ENCOUNTER, encounter_id)
            if transitions.ENCOUNTER.is_terminal(encounter.status):
                raise _reject(
                    "Encounter", "status", "encounter-open",
                    f"encounter is {encounter.status.value}", encounter_id
                )
            self.store.get(EntityKind.HEALTHCARE_SERVICE, service_id)
            if service_id not in encounter.service_ids:
                encounter.service_ids.append(service_id)
                self._commit((EntityKind.ENCOUNTER, encounter))
        return encounter

    def record_observation(self, observation: Observation) -> Observation:
        """Store a measurement taken while the med tech is with the patient. Recorded observations are never replaced."""
        observation = observation.model_copy(deep=True)
        with self._serialized(EntityKind.ENCOUNTER, observation.context_id):
            encounter = self.store.get(EntityKind.ENCOUNTER, observation.context_id)
            if encounter.status not in OBSERVABLE_ENCOUNTER:
                raise _reject(
                    "Observation", "context_id", "encounter-active",
                    f"encounter is {encounter.status.value}", observation.id
                )

            if observation.id is None:
                observation.id = uuid.uuid4().hex
            elif self.store.exists(EntityKind.OBSERVATION, observation.id):
                raise _reject(
                    "Observation", "id", "observation-exists",
                    f"observation {observation.id} is already recorded", observation.id
                )
            if observation.issued is None:
                observation.issued = self.clock.now()
            if observation.performer_id is None:
                observation.performer_id = encounter.med_tech_id

            encounter.observation_ids.append(observation.id)
            self._commit((EntityKind.OBSERVATION, observation), (EntityKind.ENCOUNTER, encounter))

        logger.info(f"Observation '{observation.measured}' recorded on encounter {encounter.id}")
        return observation

    # --- Delivery lifecycle ---

    def create_delivery(
        self,
        encounter_id: str,
        laboratory_id: str,
        description: str = "",
        service_ids: Optional[List[str]] = None
    ) -> Delivery:
        """Plan the transport of the encounter's samples to a laboratory."""
        with self._serialized(EntityKind.ENCOUNTER, encounter_id):
            encounter = self.store.get(EntityKind.ENCOUNTER, encounter_id)
            if encounter.status not in SAMPLES_COLLECTED:
                raise _reject(
                    "Delivery", "encounter_id", "samples-collected",
                    f"encounter is {encounter.status.value}"
                )

            laboratory = self.store.get(EntityKind.LABORATORY, laboratory_id)
            if not laboratory.active:
                raise _reject("Delivery", "laboratory_id", "laboratory-active", f"{laboratory.name} is inactive")

            services = list(encounter.service_ids if service_ids is None else service_ids)
            missing = set(services) - set(laboratory.services_offered)
            if missing:
                raise _reject(
                    "Delivery", "service_ids", "laboratory-offers",
                    f"{laboratory.name} does not process {sorted(missing)}"
                )

            delivery = Delivery(
                status=DeliveryStatus.PLANNED,
                patient_id=encounter.patient_id,
                med_tech_id=encounter.med_tech_id,
                encounter_id=encounter_id,
                laboratory_id=laboratory_id,
                description=description,
                service_ids=services
            )
            self._commit((EntityKind.DELIVERY, delivery))

        logger.info(f"Delivery {delivery.id} planned from encounter {encounter_id} to {laboratory_id}")
        self.events.publish(DeliveryCreated(
            status=delivery.status.value,
            occurred_at=self.clock.now(),
            delivery_id=delivery.id,
            encounter_id=encounter_id,
            laboratory_id=laboratory_id,
            patient_id=delivery.patient_id,
            med_tech_id=delivery.med_tech_id
        ))
        return delivery

    def advance_delivery(self, delivery_id: str, status: DeliveryStatus) -> Delivery:
        with self._serialized(EntityKind.DELIVERY, delivery_id):
            delivery = self.store.get(EntityKind.DELIVERY, delivery_id)
            transitions.DELIVERY.check(delivery_id, delivery.status, status)
            delivery.status = status
            self._commit((EntityKind.DELIVERY, delivery))

        logger.info(f"Delivery {delivery_id} -> {status.value}")
        return delivery
