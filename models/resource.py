"""
Resource and registry data models for the Home Visit scheduling engine.

This module defines the 'Supply' side of the scheduler:
1. Med Techs (Human resources with a schedule and availability windows)
2. Services, Devices and Laboratories (What can be performed, with what, and where samples go)
3. Places and Organizations (Locations form a partOf hierarchy)

All cross-entity links are identifier references resolved through the Entity Store.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict
from datetime import date, datetime

from .common import Address, AdministrativeGender, LocationPosition, Period, ServiceArea


class LocationStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ENTERED_IN_ERROR = "entered-in-error"
    UNKNOWN = "unknown"


class Location(BaseModel):
    """A physical place. `part_of_id` links to an enclosing Location and must never form a cycle."""
    id: Optional[str] = None
    status: LocationStatus = Field(default=LocationStatus.ACTIVE)
    name: Optional[str] = None
    alias: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    address: Address
    position: LocationPosition
    managing_organization_id: Optional[str] = None
    part_of_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class Organization(BaseModel):
    id: Optional[str] = None
    active: bool = True
    name: str = Field(min_length=1)
    alias: List[str] = Field(default_factory=list)
    phone: Optional[str] = None
    email: Optional[str] = None
    location_id: Optional[str] = None
    part_of_id: Optional[str] = None


class Practitioner(BaseModel):
    """Ordering clinician for a ServiceRequest."""
    id: Optional[str] = None
    active: bool = True
    names: List[str] = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    location_id: Optional[str] = None
    gender: AdministrativeGender = AdministrativeGender.UNKNOWN
    birth_date: Optional[date] = None
    organization_ids: List[str] = Field(default_factory=list)


class Device(BaseModel):
    id: Optional[str] = None
    udi: Optional[str] = None
    status: DeviceStatus = Field(default=DeviceStatus.ACTIVE)
    type: Optional[str] = None
    lot_number: Optional[str] = None
    manufacturer: Optional[str] = None
    manufacture_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    model: Optional[str] = None
    version: Optional[str] = None
    patient_id: Optional[str] = None
    owner_id: Optional[str] = None
    location_id: Optional[str] = None
    notes: List[str] = Field(default_factory=list)


class HealthcareService(BaseModel):
    """
    A service a med tech can perform during a home visit.
    If `appointment_required` is set it may only be performed as part of an Appointment.
    """
    id: Optional[str] = None
    active: bool = True
    name: str = Field(min_length=1)
    description: Optional[str] = None
    extra_details: Optional[str] = None
    program_names: List[str] = Field(default_factory=list)
    appointment_required: bool = False
    device_ids: List[str] = Field(default_factory=list, description="Devices needed to perform the service")


class Laboratory(BaseModel):
    """Destination of a Delivery."""
    id: Optional[str] = None
    active: bool = True
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    location_id: str
    services_offered: List[str] = Field(default_factory=list)


class MedTech(BaseModel):
    """
    Human resource with an outer working schedule and the availability windows inside it.
    Booked appointments are not stored here; they are derived from the Appointment records.
    """
    id: Optional[str] = None
    active: bool = True
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    location_id: Optional[str] = None
    work_location_id: Optional[str] = None
    organization_id: Optional[str] = None

    # Scheduling Constraints
    schedule: Period = Field(description="Outer working hours")
    availabilities: List[Period] = Field(
        default_factory=list,
        description="Non-overlapping schedulable windows, each inside `schedule`"
    )
    service_areas: List[ServiceArea] = Field(default_factory=list)

    # Capability
    service_ids: List[str] = Field(default_factory=list, description="HealthcareServices this med tech performs")

    @field_validator('availabilities')
    @classmethod
    def sort_availabilities(cls, v):
        """Keep availabilities ordered by start time."""
        return sorted(v, key=lambda p: p.start)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "mt_south_01",
            "name": "Dana Whitfield",
            "work_location_id": "loc_sj_depot",
            "schedule": {"start": "2025-03-03T09:00:00Z", "end": "2025-03-03T17:00:00Z"},
            "availabilities": [
                {"start": "2025-03-03T09:00:00Z", "end": "2025-03-03T12:00:00Z"},
                {"start": "2025-03-03T13:00:00Z", "end": "2025-03-03T17:00:00Z"}
            ],
            "service_areas": ["south-bay"],
            "service_ids": ["svc_blood_draw"]
        }
    })
