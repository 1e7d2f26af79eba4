"""Tests for the booking state machine."""
import threading

import pytest

from models import (
    AppointmentStatus, DeliveryStatus, EncounterStatus, HealthcareService, MedTech, Observation,
    Patient, Period, Quantity, RequestStatus, ServiceArea, ServiceRequest
)
from scheduler.availability import AvailabilityIndex
from scheduler.engine import BookingEngine
from scheduler.errors import ConflictError, InvalidTransitionError, ValidationError
from scheduler.events import (
    AppointmentBooked, AppointmentCancelled, AppointmentFulfilled, AppointmentNoShow,
    DeliveryCreated, EncounterFinished
)
from scheduler.matcher import Matcher
from scheduler.store import EntityKind
from conftest import make_med_tech, span


def arrive_and_start(engine, appointment_id):
    encounter = engine.record_arrival(appointment_id)
    return engine.advance_encounter(encounter.id, EncounterStatus.IN_PROGRESS)


class TestPropose:
    def test_creates_proposed_appointment_without_reserving(self, engine, store, world):
        appointment = engine.propose(world.request_id, world.med_tech_id, world.slot)

        stored = store.get(EntityKind.APPOINTMENT, appointment.id)
        assert stored.status == AppointmentStatus.PROPOSED
        assert stored.patient_id == world.patient_id
        assert stored.incoming_referral_id == world.request_id
        assert stored.service_ids == ["svc_blood"]
        assert engine.index.is_free(world.med_tech_id, world.slot)

    def test_one_live_appointment_per_request(self, engine, world):
        engine.propose(world.request_id, world.med_tech_id, world.slot)

        with pytest.raises(ValidationError) as exc:
            engine.propose(world.request_id, world.med_tech_id, span("11:00", "11:30"))
        assert exc.value.rule == "single-active-appointment"

    def test_request_can_be_rebooked_after_cancellation(self, engine, world):
        first = engine.propose(world.request_id, world.med_tech_id, world.slot)
        engine.cancel(first.id, "wrong time")

        second = engine.propose(world.request_id, world.med_tech_id, span("11:00", "11:30"))

        assert second.status == AppointmentStatus.PROPOSED

    def test_rejects_period_in_the_past(self, engine, world):
        with pytest.raises(ValidationError) as exc:
            engine.propose(world.request_id, world.med_tech_id, span("07:00", "07:30"))
        assert exc.value.rule == "period-not-past"

    def test_rejects_med_tech_outside_patient_area(self, engine, registry, world):
        registry.register(EntityKind.MED_TECH, make_med_tech("mt_north", service_areas=[ServiceArea.NORTH_BAY]))

        with pytest.raises(ValidationError) as exc:
            engine.propose(world.request_id, "mt_north", world.slot)
        assert exc.value.rule == "med-tech-eligible"


class TestConfirm:
    def test_happy_path_books_and_reserves(self, engine, store, world, published):
        appointment = engine.propose(world.request_id, world.med_tech_id, world.slot)

        booked = engine.confirm(appointment.id)

        assert booked.status == AppointmentStatus.BOOKED
        assert store.get(EntityKind.APPOINTMENT, appointment.id).status == AppointmentStatus.BOOKED
        assert not engine.index.is_free(world.med_tech_id, world.slot)
        assert [type(e) for e in published] == [AppointmentBooked]
        assert published[0].appointment_id == appointment.id
        assert published[0].status == "booked"

    def test_confirm_from_pending(self, engine, store, world):
        appointment = engine.propose(world.request_id, world.med_tech_id, world.slot)
        appointment.status = AppointmentStatus.PENDING
        store.put(EntityKind.APPOINTMENT, appointment)

        assert engine.confirm(appointment.id).status == AppointmentStatus.BOOKED

    def test_concurrent_confirms_for_one_window(self, engine, store, world, second_request, published):
        """Two proposals for the same med tech and slot: exactly one books."""
        first = engine.propose(world.request_id, world.med_tech_id, world.slot)
        second = engine.propose(second_request, world.med_tech_id, world.slot)

        barrier = threading.Barrier(2)
        outcomes = {}

        def attempt(appointment_id):
            barrier.wait()
            try:
                outcomes[appointment_id] = engine.confirm(appointment_id).status.value
            except ConflictError:
                outcomes[appointment_id] = "conflict"

        threads = [threading.Thread(target=attempt, args=(a.id,)) for a in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values()) == ["booked", "conflict"]
        statuses = sorted(store.get(EntityKind.APPOINTMENT, a.id).status.value for a in (first, second))
        assert statuses == ["booked", "proposed"]
        assert len(published) == 1

    def test_conflict_leaves_appointment_untouched(self, engine, store, world, second_request, booked):
        loser = engine.propose(second_request, world.med_tech_id, world.slot)

        with pytest.raises(ConflictError):
            engine.confirm(loser.id)

        assert store.get(EntityKind.APPOINTMENT, loser.id).status == AppointmentStatus.PROPOSED

    def test_stale_index_is_caught_at_commit(self, engine, store, clock, world, second_request):
        """A booking written by another engine is detected before it can be double-booked."""
        assert engine.index.is_free(world.med_tech_id, world.slot)
        other_engine = BookingEngine(store, clock=clock)
        other = other_engine.propose(second_request, world.med_tech_id, world.slot)
        other_engine.confirm(other.id)

        mine = engine.propose(world.request_id, world.med_tech_id, world.slot)
        with pytest.raises(ConflictError):
            engine.confirm(mine.id)

        assert store.get(EntityKind.APPOINTMENT, mine.id).status == AppointmentStatus.PROPOSED
        assert not engine.index.is_free(world.med_tech_id, world.slot)


class TestCancel:
    def test_cancellation_releases_capacity(self, engine, store, booked, world, published):
        cancelled = engine.cancel(booked.id, "patient request")

        assert cancelled.status == AppointmentStatus.CANCELLED
        stored = store.get(EntityKind.APPOINTMENT, booked.id)
        assert stored.cancellation_reason == "patient request"
        assert engine.index.is_free(world.med_tech_id, world.slot)
        assert isinstance(published[-1], AppointmentCancelled)
        assert published[-1].reason == "patient request"

    def test_cancelling_a_proposal_releases_nothing(self, engine, world, second_request, booked):
        proposal = engine.propose(second_request, world.med_tech_id, span("11:00", "11:30"))

        engine.cancel(proposal.id, "changed mind")

        assert not engine.index.is_free(world.med_tech_id, world.slot)

    def test_cancel_cascades_to_encounter_and_delivery(self, engine, store, booked, published):
        encounter = arrive_and_start(engine, booked.id)
        delivery = engine.create_delivery(encounter.id, "lab_1")

        engine.cancel(booked.id, "patient unwell")

        assert store.get(EntityKind.ENCOUNTER, encounter.id).status == EncounterStatus.CANCELLED
        assert store.get(EntityKind.DELIVERY, delivery.id).status == DeliveryStatus.CANCELLED
        assert set(published[-1].cascaded_ids) == {encounter.id, delivery.id}

    def test_cancel_leaves_finished_delivery_alone(self, engine, store, booked):
        encounter = arrive_and_start(engine, booked.id)
        delivery = engine.create_delivery(encounter.id, "lab_1")
        for status in (DeliveryStatus.IN_PROGRESS, DeliveryStatus.ARRIVED, DeliveryStatus.FINISHED):
            engine.advance_delivery(delivery.id, status)

        engine.cancel(booked.id, "billing dispute")

        assert store.get(EntityKind.DELIVERY, delivery.id).status == DeliveryStatus.FINISHED


class TestArrivalAndCompletion:
    def test_arrival_opens_encounter(self, engine, store, booked, world):
        encounter = engine.record_arrival(booked.id)

        assert encounter.status == EncounterStatus.ARRIVED
        assert encounter.appointment_id == booked.id
        assert encounter.patient_id == world.patient_id
        assert encounter.med_tech_id == world.med_tech_id
        assert encounter.period == world.slot
        assert encounter.location_id == "loc_home"
        assert store.get(EntityKind.APPOINTMENT, booked.id).status == AppointmentStatus.ARRIVED

    def test_arrival_requires_booking(self, engine, world):
        proposal = engine.propose(world.request_id, world.med_tech_id, world.slot)
        with pytest.raises(InvalidTransitionError):
            engine.record_arrival(proposal.id)

    def test_complete_requires_finished_encounter(self, engine, booked):
        arrive_and_start(engine, booked.id)

        with pytest.raises(ValidationError) as exc:
            engine.complete(booked.id)
        assert exc.value.rule == "encounter-finished"

    def test_complete_fulfils_appointment_and_request(self, engine, store, booked, world, published):
        encounter = arrive_and_start(engine, booked.id)
        engine.finish_encounter(encounter.id)

        fulfilled = engine.complete(booked.id)

        assert fulfilled.status == AppointmentStatus.FULFILLED
        assert store.get(EntityKind.SERVICE_REQUEST, world.request_id).status == RequestStatus.COMPLETED
        assert [type(e) for e in published[-2:]] == [EncounterFinished, AppointmentFulfilled]
        # A fulfilled visit still occupies its slot
        assert not engine.index.is_free(world.med_tech_id, world.slot)


class TestNoShow:
    def test_no_show_frees_the_slot(self, engine, booked, world, published):
        result = engine.mark_no_show(booked.id)

        assert result.status == AppointmentStatus.NOSHOW
        assert engine.index.is_free(world.med_tech_id, world.slot)
        assert isinstance(published[-1], AppointmentNoShow)

    def test_no_show_only_from_booked(self, engine, world):
        proposal = engine.propose(world.request_id, world.med_tech_id, world.slot)
        with pytest.raises(InvalidTransitionError):
            engine.mark_no_show(proposal.id)


def _to_fulfilled(engine, appointment):
    encounter = arrive_and_start(engine, appointment.id)
    engine.finish_encounter(encounter.id)
    engine.complete(appointment.id)


TERMINAL_PATHS = {
    "fulfilled": _to_fulfilled,
    "cancelled": lambda engine, a: engine.cancel(a.id, "test"),
    "noshow": lambda engine, a: engine.mark_no_show(a.id),
    "entered-in-error": lambda engine, a: engine.mark_entered_in_error(a.id),
}

OPERATIONS = {
    "confirm": lambda engine, a: engine.confirm(a.id),
    "record_arrival": lambda engine, a: engine.record_arrival(a.id),
    "complete": lambda engine, a: engine.complete(a.id),
    "cancel": lambda engine, a: engine.cancel(a.id, "again"),
    "mark_no_show": lambda engine, a: engine.mark_no_show(a.id),
    "mark_entered_in_error": lambda engine, a: engine.mark_entered_in_error(a.id),
}


class TestTerminalStates:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_PATHS))
    @pytest.mark.parametrize("operation", sorted(OPERATIONS))
    def test_terminal_appointments_reject_every_transition(self, engine, store, booked, terminal, operation):
        TERMINAL_PATHS[terminal](engine, booked)
        before = store.get(EntityKind.APPOINTMENT, booked.id)

        with pytest.raises(InvalidTransitionError):
            OPERATIONS[operation](engine, booked)

        assert store.get(EntityKind.APPOINTMENT, booked.id) == before

    def test_entered_in_error_cascades(self, engine, store, booked):
        encounter = engine.record_arrival(booked.id)

        engine.mark_entered_in_error(booked.id)

        assert store.get(EntityKind.ENCOUNTER, encounter.id).status == EncounterStatus.ENTERED_IN_ERROR


class TestEncounter:
    def test_illegal_encounter_transition(self, engine, booked):
        encounter = engine.record_arrival(booked.id)
        with pytest.raises(InvalidTransitionError):
            engine.advance_encounter(encounter.id, EncounterStatus.PLANNED)

    def test_finished_encounter_is_terminal(self, engine, booked):
        encounter = arrive_and_start(engine, booked.id)
        engine.finish_encounter(encounter.id)
        with pytest.raises(InvalidTransitionError):
            engine.advance_encounter(encounter.id, EncounterStatus.IN_PROGRESS)

    def test_attach_ad_hoc_service(self, engine, store, booked):
        encounter = engine.record_arrival(booked.id)

        engine.attach_service(encounter.id, "svc_vitals")

        assert store.get(EntityKind.ENCOUNTER, encounter.id).service_ids == ["svc_blood", "svc_vitals"]

    def test_appointment_only_service_cannot_be_added_ad_hoc(self, engine, registry, store, world):
        registry.update(EntityKind.SERVICE_REQUEST, store.get(EntityKind.SERVICE_REQUEST, world.request_id).model_copy(
            update={"service_ids": ["svc_vitals"]}
        ))
        appointment = engine.confirm(engine.propose(world.request_id, world.med_tech_id, world.slot).id)
        encounter = engine.record_arrival(appointment.id)

        with pytest.raises(ValidationError) as exc:
            engine.attach_service(encounter.id, "svc_blood")

        assert exc.value.rule == "appointment-required"
        assert store.get(EntityKind.ENCOUNTER, encounter.id).service_ids == ["svc_vitals"]


class TestObservations:
    def test_record_observation(self, engine, store, booked, world):
        encounter = engine.record_arrival(booked.id)

        observation = engine.record_observation(Observation(
            subject_id=world.patient_id, context_id=encounter.id, measured="heart-rate",
            value_quantity=Quantity(value=72, unit="bpm")
        ))

        assert store.get(EntityKind.ENCOUNTER, encounter.id).observation_ids == [observation.id]
        stored = store.get(EntityKind.OBSERVATION, observation.id)
        assert stored.performer_id == world.med_tech_id
        assert stored.issued is not None

    def test_invalid_observation_changes_nothing(self, engine, store, booked, world):
        encounter = engine.record_arrival(booked.id)

        with pytest.raises(ValidationError) as exc:
            engine.record_observation(Observation(
                subject_id=world.patient_id, context_id=encounter.id, measured="bp",
                value_string="120/80", value_boolean=True
            ))

        assert exc.value.rule == "exactly-one-value"
        assert store.get(EntityKind.ENCOUNTER, encounter.id).observation_ids == []
        assert store.list(EntityKind.OBSERVATION) == []

    def test_caller_observation_is_not_modified(self, engine, booked, world):
        encounter = engine.record_arrival(booked.id)
        draft = Observation(
            subject_id=world.patient_id, context_id=encounter.id, measured="bp",
            value_string="120/80", value_boolean=True
        )

        with pytest.raises(ValidationError):
            engine.record_observation(draft)

        assert (draft.id, draft.issued, draft.performer_id) == (None, None, None)

    def test_recorded_observation_cannot_be_replaced(self, engine, store, booked, world):
        encounter = engine.record_arrival(booked.id)
        first = engine.record_observation(Observation(
            id="obs_1", subject_id=world.patient_id, context_id=encounter.id, measured="heart-rate",
            value_quantity=Quantity(value=72, unit="bpm")
        ))

        with pytest.raises(ValidationError) as exc:
            engine.record_observation(Observation(
                id=first.id, subject_id=world.patient_id, context_id=encounter.id, measured="bp",
                value_string="120/80"
            ))

        assert exc.value.rule == "observation-exists"
        assert store.get(EntityKind.ENCOUNTER, encounter.id).observation_ids == ["obs_1"]
        assert store.get(EntityKind.OBSERVATION, "obs_1").measured == "heart-rate"

    def test_observation_subject_must_be_encounter_patient(self, engine, booked, second_request):
        encounter = engine.record_arrival(booked.id)

        with pytest.raises(ValidationError) as exc:
            engine.record_observation(Observation(
                subject_id="pt_2", context_id=encounter.id, measured="temp", value_string="37.1"
            ))
        assert exc.value.rule == "matches-context"

    def test_observation_needs_open_encounter(self, engine, booked, world):
        encounter = arrive_and_start(engine, booked.id)
        engine.finish_encounter(encounter.id)

        with pytest.raises(ValidationError) as exc:
            engine.record_observation(Observation(
                subject_id=world.patient_id, context_id=encounter.id, measured="temp", value_string="37.1"
            ))
        assert exc.value.rule == "encounter-active"


class TestDelivery:
    def test_delivery_lifecycle(self, engine, store, booked, world, published):
        encounter = arrive_and_start(engine, booked.id)

        delivery = engine.create_delivery(encounter.id, "lab_1", description="2 tubes")

        assert delivery.status == DeliveryStatus.PLANNED
        assert delivery.patient_id == world.patient_id
        assert delivery.med_tech_id == world.med_tech_id
        assert isinstance(published[-1], DeliveryCreated)

        for status in (DeliveryStatus.IN_PROGRESS, DeliveryStatus.ARRIVED, DeliveryStatus.FINISHED):
            engine.advance_delivery(delivery.id, status)
        assert store.get(EntityKind.DELIVERY, delivery.id).status == DeliveryStatus.FINISHED

        with pytest.raises(InvalidTransitionError):
            engine.advance_delivery(delivery.id, DeliveryStatus.PLANNED)

    def test_delivery_needs_collected_samples(self, engine, booked):
        encounter = engine.record_arrival(booked.id)
        with pytest.raises(ValidationError) as exc:
            engine.create_delivery(encounter.id, "lab_1")
        assert exc.value.rule == "samples-collected"

    def test_laboratory_must_offer_the_services(self, engine, booked):
        encounter = arrive_and_start(engine, booked.id)
        with pytest.raises(ValidationError) as exc:
            engine.create_delivery(encounter.id, "lab_1", service_ids=["svc_vitals"])
        assert exc.value.rule == "laboratory-offers"

    def test_laboratory_must_be_active(self, engine, registry, booked):
        registry.deactivate(EntityKind.LABORATORY, "lab_1")
        encounter = arrive_and_start(engine, booked.id)
        with pytest.raises(ValidationError) as exc:
            engine.create_delivery(encounter.id, "lab_1")
        assert exc.value.rule == "laboratory-active"


class TestEvents:
    def test_failing_subscriber_does_not_undo_booking(self, engine, store, world):
        def broken(event):
            raise RuntimeError("sms gateway down")
        engine.events.subscribe(broken)

        appointment = engine.confirm(engine.propose(world.request_id, world.med_tech_id, world.slot).id)

        assert store.get(EntityKind.APPOINTMENT, appointment.id).status == AppointmentStatus.BOOKED


class TestWallClock:
    """Periods in the models' example format, without an offset, against the default clock."""

    @pytest.fixture
    def slot(self, registry):
        registry.register(EntityKind.HEALTHCARE_SERVICE, HealthcareService(id="svc_blood", name="Blood draw"))
        registry.register(EntityKind.PATIENT, Patient(id="pt_1", name="Ana Ruiz", service_area=ServiceArea.SOUTH_BAY))
        registry.register(EntityKind.MED_TECH, MedTech.model_validate({
            "id": "mt_t", "name": "Tech", "service_areas": ["south-bay"], "service_ids": ["svc_blood"],
            "schedule": {"start": "2099-03-03T09:00:00", "end": "2099-03-03T17:00:00"},
            "availabilities": [{"start": "2099-03-03T09:00:00", "end": "2099-03-03T17:00:00"}],
        }))
        registry.register(EntityKind.SERVICE_REQUEST, ServiceRequest.model_validate({
            "id": "sr_1", "status": "active", "patient_id": "pt_1", "service_ids": ["svc_blood"],
            "desired_period": {"start": "2099-03-03T10:00:00", "end": "2099-03-03T10:30:00"},
        }))
        return Period.model_validate({"start": "2099-03-03T10:00:00", "end": "2099-03-03T10:30:00"})

    def test_default_engine_proposes(self, store, slot):
        appointment = BookingEngine(store).propose("sr_1", "mt_t", slot)

        assert appointment.status == AppointmentStatus.PROPOSED
        assert appointment.period.start.tzinfo is not None

    def test_default_matcher_matches(self, store, slot):
        result = Matcher(store, AvailabilityIndex(store)).match("sr_1")

        assert result.best.med_tech_id == "mt_t"
        assert result.best.period == slot
