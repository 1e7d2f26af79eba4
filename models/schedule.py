"""
Booking chain data models for the Home Visit scheduling engine.

This module defines the 'Output' of the engine, created strictly forward:
ServiceRequest -> Appointment -> Encounter -> (Observation | Delivery).
Every child holds the identifier of its parent and never changes it.
"""

from typing import ClassVar, List, Optional, Tuple
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime

from .common import Period, Quantity


class AppointmentStatus(str, Enum):
    PROPOSED = "proposed"
    PENDING = "pending"
    BOOKED = "booked"
    ARRIVED = "arrived"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    NOSHOW = "noshow"
    ENTERED_IN_ERROR = "entered-in-error"


class EncounterStatus(str, Enum):
    PLANNED = "planned"
    ARRIVED = "arrived"
    TRIAGED = "triaged"
    IN_PROGRESS = "in-progress"
    ONLEAVE = "onleave"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    ENTERED_IN_ERROR = "entered-in-error"
    UNKNOWN = "unknown"


class DeliveryStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    ARRIVED = "arrived"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    ENTERED_IN_ERROR = "entered-in-error"


# Appointments in these states hold the med tech's time
OCCUPYING_STATUSES = frozenset({
    AppointmentStatus.BOOKED,
    AppointmentStatus.ARRIVED,
    AppointmentStatus.FULFILLED,
})


class Appointment(BaseModel):
    id: Optional[str] = None
    status: AppointmentStatus = Field(default=AppointmentStatus.PROPOSED)
    description: Optional[str] = None
    period: Period
    created: Optional[datetime] = None
    comment: Optional[str] = None
    incoming_referral_id: Optional[str] = Field(default=None, description="Originating ServiceRequest")
    patient_id: str
    med_tech_id: str
    service_ids: List[str] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "apt_001",
            "status": "booked",
            "period": {"start": "2025-03-03T10:00:00Z", "end": "2025-03-03T10:30:00Z"},
            "incoming_referral_id": "sr_001",
            "patient_id": "pt_001",
            "med_tech_id": "mt_south_01",
            "service_ids": ["svc_blood_draw"]
        }
    })


class Encounter(BaseModel):
    """The realized visit once the patient has been reached."""
    id: Optional[str] = None
    status: EncounterStatus = Field(default=EncounterStatus.PLANNED)
    patient_id: str
    med_tech_id: str
    appointment_id: str
    period: Period
    location_id: Optional[str] = None
    service_ids: List[str] = Field(default_factory=list)
    observation_ids: List[str] = Field(default_factory=list)


class ObservationReferenceRange(BaseModel):
    low: Optional[Quantity] = None
    high: Optional[Quantity] = None
    text: Optional[str] = None


class ObservationComponent(BaseModel):
    """A sub-measurement. Exactly one value_* field must be populated."""
    measured: str
    value_quantity: Optional[Quantity] = None
    value_string: Optional[str] = None
    value_date_time: Optional[datetime] = None
    value_period: Optional[Period] = None
    data_absent_reason: Optional[str] = None
    interpretation: Optional[str] = None
    reference_range: List[ObservationReferenceRange] = Field(default_factory=list)

    VALUE_FIELDS: ClassVar[Tuple[str, ...]] = ("value_quantity", "value_string", "value_date_time", "value_period")

    def populated_values(self) -> List[str]:
        return [name for name in self.VALUE_FIELDS if getattr(self, name) is not None]


class Observation(BaseModel):
    """A measurement taken during an Encounter. Exactly one value_* field must be populated."""
    id: Optional[str] = None
    subject_id: str = Field(description="Patient")
    context_id: str = Field(description="Encounter")
    measured: str
    effective_date_time: Optional[datetime] = None
    effective_period: Optional[Period] = None
    issued: Optional[datetime] = None
    performer_id: Optional[str] = Field(default=None, description="MedTech")

    value_quantity: Optional[Quantity] = None
    value_string: Optional[str] = None
    value_boolean: Optional[bool] = None
    value_date_time: Optional[datetime] = None
    value_period: Optional[Period] = None

    comment: Optional[str] = None
    method: Optional[str] = None
    device_id: Optional[str] = None
    data_absent_reason: Optional[str] = None
    interpretation: Optional[str] = None
    reference_range: List[ObservationReferenceRange] = Field(default_factory=list)
    components: List[ObservationComponent] = Field(default_factory=list)

    VALUE_FIELDS: ClassVar[Tuple[str, ...]] = ("value_quantity", "value_string", "value_boolean", "value_date_time", "value_period")

    def populated_values(self) -> List[str]:
        return [name for name in self.VALUE_FIELDS if getattr(self, name) is not None]


class Delivery(BaseModel):
    """Transport of collected samples from the med tech to a laboratory."""
    id: Optional[str] = None
    status: DeliveryStatus = Field(default=DeliveryStatus.PLANNED)
    patient_id: str
    med_tech_id: str
    encounter_id: str
    laboratory_id: str
    description: str = ""
    service_ids: List[str] = Field(default_factory=list)
