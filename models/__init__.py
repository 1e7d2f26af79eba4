"""
Data models package for the Home Visit scheduling engine.

This package exports the four groups of the data architecture:
1. Shared values (Period, Quantity, Address, ServiceArea)
2. Demand (Patient, ServiceRequest)
3. Supply (MedTech, HealthcareService, Device, Laboratory, Location, Organization, Practitioner)
4. Output (Appointment, Encounter, Observation, Delivery)
"""

from .common import (
    Address,
    AddressType,
    AddressUse,
    AdministrativeGender,
    LocationPosition,
    Period,
    Quantity,
    QuantityKind,
    ServiceArea
)

from .request import (
    Patient,
    RequestStatus,
    ServiceRequest
)

from .resource import (
    Device,
    DeviceStatus,
    HealthcareService,
    Laboratory,
    Location,
    LocationStatus,
    MedTech,
    Organization,
    Practitioner
)

from .schedule import (
    OCCUPYING_STATUSES,
    Appointment,
    AppointmentStatus,
    Delivery,
    DeliveryStatus,
    Encounter,
    EncounterStatus,
    Observation,
    ObservationComponent,
    ObservationReferenceRange
)

__all__ = [
    # --- Shared Values ---
    "Address",
    "AddressType",
    "AddressUse",
    "AdministrativeGender",
    "LocationPosition",
    "Period",
    "Quantity",
    "QuantityKind",
    "ServiceArea",

    # --- Demand Models ---
    "Patient",
    "RequestStatus",
    "ServiceRequest",

    # --- Resource Models ---
    "Device",
    "DeviceStatus",
    "HealthcareService",
    "Laboratory",
    "Location",
    "LocationStatus",
    "MedTech",
    "Organization",
    "Practitioner",

    # --- Output Models ---
    "OCCUPYING_STATUSES",
    "Appointment",
    "AppointmentStatus",
    "Delivery",
    "DeliveryStatus",
    "Encounter",
    "EncounterStatus",
    "Observation",
    "ObservationComponent",
    "ObservationReferenceRange",
]
