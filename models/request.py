"""
Patient and ServiceRequest data models for the Home Visit scheduling engine.
This is the 'Demand' side: who needs a visit, and what they need done.
"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict
from datetime import date, datetime

from .common import AdministrativeGender, Period, ServiceArea


class RequestStatus(str, Enum):
    """Lifecycle stage of a ServiceRequest."""
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ENTERED_IN_ERROR = "entered-in-error"
    UNKNOWN = "unknown"


class Patient(BaseModel):
    id: Optional[str] = None
    active: bool = True
    name: str = Field(min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    location_id: Optional[str] = Field(default=None, description="Home location, where visits happen")
    gender: AdministrativeGender = AdministrativeGender.UNKNOWN
    birth_date: Optional[date] = None
    general_practitioner_id: Optional[str] = None
    managing_organization_id: Optional[str] = None

    # If None, every med tech is a candidate regardless of area
    service_area: Optional[ServiceArea] = None


class ServiceRequest(BaseModel):
    """
    An order for one or more HealthcareServices to be performed at the patient's home.
    At most one non-terminal Appointment may descend from a request at a time.
    """
    id: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.DRAFT)
    patient_id: str
    ordering_practitioner_id: Optional[str] = None
    authored_on: Optional[datetime] = None
    service_ids: List[str] = Field(default_factory=list)
    comment: Optional[str] = None

    desired_period: Optional[Period] = Field(
        default=None,
        description="When the patient would like the visit; None means 'as soon as possible'"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "sr_001",
            "status": "active",
            "patient_id": "pt_001",
            "ordering_practitioner_id": "pr_001",
            "service_ids": ["svc_blood_draw"],
            "desired_period": {"start": "2025-03-03T10:00:00Z", "end": "2025-03-03T10:30:00Z"}
        }
    })
