"""
Pydantic schemas for tours, schedule rules, slots and instances.
"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class BlackoutRange(BaseModel):
    start: date = Field(..., alias="from")
    end: date = Field(..., alias="to")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def check_order(self):
        if self.end < self.start:
            raise ValueError("blackout range ends before it starts")
        return self

    def covers(self, day: date) -> bool:
        return self.start <= day <= self.end


class ScheduleConfig(BaseModel):
    """Recurring rule set. Weekdays use 0 = Sunday ... 6 = Saturday."""

    days_of_week: list[int] = Field(..., min_length=1)
    times: list[str] = Field(..., min_length=1)
    blackout_ranges: list[BlackoutRange] = Field(default_factory=list)

    @field_validator("days_of_week")
    @classmethod
    def check_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("times")
    @classmethod
    def check_times(cls, value: list[str]) -> list[str]:
        parsed = []
        for raw in value:
            try:
                parsed.append(datetime.strptime(raw, "%H:%M").time())
            except ValueError:
                raise ValueError(f"invalid time {raw!r}, expected HH:MM")
        return [t.strftime("%H:%M") for t in sorted(set(parsed))]

    def slot_times(self) -> list[time]:
        return [datetime.strptime(raw, "%H:%M").time() for raw in self.times]


class TourCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    capacity: int = Field(15, gt=0, le=10000)
    duration_minutes: int = Field(60, gt=0)
    booking_window_days: int = Field(90, ge=0, le=730)
    active: bool = True


class TourResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    capacity: int
    duration_minutes: int
    booking_window_days: int
    active: bool

    model_config = {"from_attributes": True}


class AvailableSlot(BaseModel):
    tour_instance_id: Optional[int]  # None until the slot is materialized
    tour_id: int
    date: date
    time: time
    capacity: int
    booked_seats: int
    available_seats: int


class InstanceView(BaseModel):
    id: Optional[int]
    tour_id: int
    date: date
    time: time
    status: str
    capacity: int
    booked_seats: int
    available_seats: int
    cancellation_reason: Optional[str] = None


class InstanceCancelRequest(BaseModel):
    date: date
    time: time
    reason: str = Field(..., min_length=1, max_length=1000)
    changed_by: Optional[str] = None


class InstanceSlotRequest(BaseModel):
    date: date
    time: time


class InstanceCancelResponse(BaseModel):
    instance_id: int
    affected_bookings: int
    already_cancelled: bool = False
