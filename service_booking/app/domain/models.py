"""
Booking data models for the Booking Service.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


WEEK_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_WORKING_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Appointments in these states give their slot back.
RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class WorkingHours(BaseModel):
    start: str = "09:00"
    end: str = "17:00"


def _check_working_days(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return value
    days = [day.lower() for day in value]
    unknown = [day for day in days if day not in WEEK_DAYS]
    if unknown:
        raise ValueError(f"unknown working days: {', '.join(unknown)}")
    return days


@dataclass
class Department:
    """Hospital department offering numbered daily slots."""
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool = True
    slots_per_day: int = 10
    working_days: List[str] = field(default_factory=lambda: list(DEFAULT_WORKING_DAYS))
    working_hours: Dict[str, str] = field(default_factory=lambda: WorkingHours().model_dump())
    color: str = "#3B82F6"

    def works_on(self, day: date) -> bool:
        return WEEK_DAYS[day.weekday()] in self.working_days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "slots_per_day": self.slots_per_day,
            "working_days": list(self.working_days),
            "working_hours": dict(self.working_hours),
            "color": self.color,
        }


@dataclass
class Appointment:
    """A booked slot."""
    id: int
    client_id: int
    department_id: int
    appointment_date: date
    slot_number: int
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def holds_slot(self) -> bool:
        return self.status not in RELEASED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "department_id": self.department_id,
            "appointment_date": self.appointment_date.isoformat(),
            "slot_number": self.slot_number,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


class DepartmentCreateRequest(BaseModel):
    """Request model for department creation."""
    name: str = Field(..., min_length=1, description="Department name")
    description: Optional[str] = Field(None, description="Free text description")
    slots_per_day: int = Field(10, gt=0, le=200, description="Numbered slots per working day")
    working_days: List[str] = Field(default_factory=lambda: list(DEFAULT_WORKING_DAYS))
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    color: str = Field("#3B82F6", pattern=r"^#[0-9A-Fa-f]{6}$")

    @field_validator("working_days")
    @classmethod
    def _known_days(cls, value):
        return _check_working_days(value)


class DepartmentUpdateRequest(BaseModel):
    """Request model for department updates; omitted fields are unchanged."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    slots_per_day: Optional[int] = Field(None, gt=0, le=200)
    working_days: Optional[List[str]] = None
    working_hours: Optional[WorkingHours] = None
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")

    @field_validator("working_days")
    @classmethod
    def _known_days(cls, value):
        return _check_working_days(value)


class BookingRequest(BaseModel):
    """Request model for booking a slot."""
    model_config = ConfigDict(populate_by_name=True)

    department_id: int = Field(..., alias="departmentId", gt=0)
    client_id: int = Field(..., alias="clientId", gt=0)
    appointment_date: date = Field(..., alias="date")
    slot_number: int = Field(..., alias="slotNumber", gt=0)
    x_number: Optional[str] = Field(None, alias="xNumber", description="Patient hospital record number")


class CacheInvalidateRequest(BaseModel):
    """Exactly one of ``key`` or ``pattern``."""
    key: Optional[str] = Field(None, min_length=1)
    pattern: Optional[str] = Field(None, min_length=1)

    @model_validator(mode="after")
    def _one_target(self):
        if (self.key is None) == (self.pattern is None):
            raise ValueError("provide exactly one of 'key' or 'pattern'")
        return self


class CacheConfigUpdateRequest(BaseModel):
    """TTL overrides keyed by strategy name."""
    strategies: Dict[str, int]


class RateLimitAdminRequest(BaseModel):
    action: str
    ip: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
