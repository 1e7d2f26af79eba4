"""
Shared value types for the Home Visit scheduling engine.

These are the building blocks every entity reuses:
1. Time (Period)
2. Measurement (Quantity, tagged by QuantityKind)
3. Place (Address, LocationPosition, ServiceArea)
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from datetime import datetime, timedelta, timezone


class ServiceArea(str, Enum):
    """Coarse geographic zones used to pre-filter match candidates."""
    NORTH_BAY = "north-bay"
    SOUTH_BAY = "south-bay"
    LOS_ANGELES = "los-angeles"


class AdministrativeGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    UNKNOWN = "unknown"


class AddressUse(str, Enum):
    HOME = "home"
    WORK = "work"
    TEMP = "temp"
    OLD = "old"


class AddressType(str, Enum):
    POSTAL = "postal"
    PHYSICAL = "physical"
    BOTH = "both"


class QuantityKind(str, Enum):
    """Tag distinguishing the Quantity flavours that share one numeric-plus-unit shape."""
    QUANTITY = "quantity"
    AGE = "age"
    COUNT = "count"
    DISTANCE = "distance"
    DURATION = "duration"


class Period(BaseModel):
    """
    Half-open time range [start, end).
    Two periods that merely touch (a.end == b.start) do not overlap.
    """
    start: datetime = Field(description="Inclusive start")
    end: datetime = Field(description="Exclusive end")

    model_config = ConfigDict(frozen=True)

    @field_validator('start', 'end')
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # Naive times are read as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode='after')
    def validate_times(self):
        if self.start >= self.end:
            raise ValueError("End time must be strictly after start time")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "Period") -> bool:
        # Standard Overlap Logic: StartA < EndB and StartB < EndA
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Period") -> bool:
        return self.start <= other.start and other.end <= self.end

    def intersection(self, other: "Period") -> Optional["Period"]:
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if start >= end:
            return None
        return Period(start=start, end=end)


class Quantity(BaseModel):
    """A measured amount. Age, Count, Distance and Duration are Quantities with a different kind."""
    kind: QuantityKind = Field(default=QuantityKind.QUANTITY)
    value: Optional[float] = Field(default=None, description="Numerical value (implicit precision)")
    unit: Optional[str] = Field(default=None, description="Unit representation")


class Address(BaseModel):
    """A location expressed using postal conventions."""
    use: AddressUse = Field(default=AddressUse.HOME)
    type: Optional[AddressType] = None
    text: Optional[str] = None
    line: str
    city: str
    district: Optional[str] = None
    state: str
    postal_code: str
    country: str = "US"


class LocationPosition(BaseModel):
    """WGS84 coordinates of a Location."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    altitude: Optional[float] = None
