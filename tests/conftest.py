"""Shared fixtures: an in-memory store, a fixed clock and a small south-bay world."""
import pytest
from datetime import datetime, timezone
from types import SimpleNamespace

from models import (
    Address, HealthcareService, Laboratory, Location, LocationPosition, MedTech,
    Patient, Period, Practitioner, RequestStatus, ServiceArea, ServiceRequest
)
from scheduler.availability import AvailabilityIndex
from scheduler.clock import FixedClock
from scheduler.config import EngineSettings
from scheduler.constraints import ConsistencyValidator
from scheduler.engine import BookingEngine
from scheduler.events import EventPublisher
from scheduler.matcher import Matcher
from scheduler.registry import EntityRegistry
from scheduler.store import EntityKind, InMemoryEntityStore

DAY = datetime(2025, 3, 3, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY.replace(hour=hour, minute=minute)


def span(start: str, end: str) -> Period:
    """span("10:00", "10:30") -> Period on the test day."""
    (h1, m1), (h2, m2) = (map(int, start.split(":")), map(int, end.split(":")))
    return Period(start=at(h1, m1), end=at(h2, m2))


def make_location(location_id: str, latitude: float, longitude: float, **kwargs) -> Location:
    return Location(
        id=location_id,
        address=Address(line="1 Main St", city="San Jose", state="CA", postal_code="95112"),
        position=LocationPosition(latitude=latitude, longitude=longitude),
        **kwargs
    )


def make_med_tech(med_tech_id: str, **overrides) -> MedTech:
    fields = dict(
        id=med_tech_id,
        name=f"Tech {med_tech_id}",
        schedule=span("09:00", "17:00"),
        availabilities=[span("09:00", "17:00")],
        service_areas=[ServiceArea.SOUTH_BAY],
        service_ids=["svc_blood", "svc_vitals"],
        work_location_id="loc_depot_near",
    )
    fields.update(overrides)
    return MedTech(**fields)


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def clock():
    return FixedClock(at(8))


@pytest.fixture
def validator(store, settings):
    return ConsistencyValidator(store, settings)


@pytest.fixture
def index(store):
    return AvailabilityIndex(store)


@pytest.fixture
def published():
    """Every event the engine publishes, in order."""
    return []


@pytest.fixture
def publisher(published):
    publisher = EventPublisher()
    publisher.subscribe(published.append)
    return publisher


@pytest.fixture
def engine(store, index, validator, clock, publisher, settings):
    return BookingEngine(store, index=index, validator=validator, clock=clock, events=publisher, settings=settings)


@pytest.fixture
def matcher(store, index, clock, settings):
    return Matcher(store, index, clock=clock, settings=settings)


@pytest.fixture
def registry(store, validator, index):
    return EntityRegistry(store, validator, index)


@pytest.fixture
def world(registry):
    """
    Patient in south-bay with a blood draw request for 10:00-10:30.
    One med tech (mt_t) serves south-bay from 09:00 to 17:00 with nothing booked.
    """
    registry.register(EntityKind.LOCATION, make_location("loc_home", 37.33, -121.89))
    registry.register(EntityKind.LOCATION, make_location("loc_depot_near", 37.34, -121.90))
    registry.register(EntityKind.LOCATION, make_location("loc_depot_far", 37.80, -122.40))
    registry.register(EntityKind.LOCATION, make_location("loc_lab", 37.36, -121.92))

    registry.register(EntityKind.HEALTHCARE_SERVICE, HealthcareService(
        id="svc_blood", name="Blood draw", appointment_required=True
    ))
    registry.register(EntityKind.HEALTHCARE_SERVICE, HealthcareService(id="svc_vitals", name="Vitals"))
    registry.register(EntityKind.LABORATORY, Laboratory(
        id="lab_1", name="Central Lab", location_id="loc_lab", services_offered=["svc_blood"]
    ))
    registry.register(EntityKind.PRACTITIONER, Practitioner(id="pr_1", names=["Dr. Okafor"]))

    registry.register(EntityKind.PATIENT, Patient(
        id="pt_1", name="Ana Ruiz", location_id="loc_home", service_area=ServiceArea.SOUTH_BAY
    ))
    registry.register(EntityKind.MED_TECH, make_med_tech("mt_t"))
    registry.register(EntityKind.SERVICE_REQUEST, ServiceRequest(
        id="sr_1",
        status=RequestStatus.ACTIVE,
        patient_id="pt_1",
        ordering_practitioner_id="pr_1",
        service_ids=["svc_blood"],
        desired_period=span("10:00", "10:30"),
    ))

    return SimpleNamespace(patient_id="pt_1", med_tech_id="mt_t", request_id="sr_1", slot=span("10:00", "10:30"))


@pytest.fixture
def second_request(registry, world):
    """Another south-bay patient asking for the same window."""
    registry.register(EntityKind.PATIENT, Patient(
        id="pt_2", name="Ben Cho", location_id="loc_home", service_area=ServiceArea.SOUTH_BAY
    ))
    registry.register(EntityKind.SERVICE_REQUEST, ServiceRequest(
        id="sr_2", status=RequestStatus.ACTIVE, patient_id="pt_2", service_ids=["svc_blood"],
        desired_period=span("10:00", "10:30"),
    ))
    return "sr_2"


@pytest.fixture
def booked(engine, world):
    """The happy-path booking: mt_t, 10:00-10:30."""
    appointment = engine.propose(world.request_id, world.med_tech_id, world.slot)
    return engine.confirm(appointment.id)
