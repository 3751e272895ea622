"""
Tour templates, their recurring schedules and materialized instances.

Key design decisions:
- A schedule is a rule set stored as JSON; instances are only written when a
  slot is first booked, priced or cancelled ("just-in-time" materialization)
- Unique (tour_id, date, time) makes instance creation idempotent under races
- `booked_seats` is a denormalized counter guarded by CHECK constraints and
  mutated only while the instance row is locked
"""

import enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    JSON, String, Text, Time, UniqueConstraint,
)

from tourbooking.db.base import Base, TimestampMixin


class InstanceStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Tour(Base, TimestampMixin):
    __tablename__ = "tours"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    capacity = Column(Integer, nullable=False, default=15)
    duration_minutes = Column(Integer, nullable=False, default=60)
    booking_window_days = Column(Integer, nullable=False, default=90)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("capacity > 0", name="check_tour_capacity_positive"),
        CheckConstraint("booking_window_days >= 0", name="check_tour_window_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Tour(id={self.id}, name={self.name}, capacity={self.capacity})>"


class TourSchedule(Base, TimestampMixin):
    __tablename__ = "tour_schedules"

    id = Column(Integer, primary_key=True, index=True)
    tour_id = Column(Integer, ForeignKey("tours.id", ondelete="CASCADE"), nullable=False, index=True)
    # {"days_of_week": [0-6, 0=Sunday], "times": ["HH:MM"], "blackout_ranges": [{"from", "to"}]}
    schedule_config = Column(JSON, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<TourSchedule(id={self.id}, tour={self.tour_id}, active={self.active})>"


class TourInstance(Base, TimestampMixin):
    __tablename__ = "tour_instances"

    id = Column(Integer, primary_key=True, index=True)
    tour_id = Column(Integer, ForeignKey("tours.id"), nullable=False)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    capacity = Column(Integer, nullable=False)
    booked_seats = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=InstanceStatus.SCHEDULED.value)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("tour_id", "date", "time", name="uq_tour_instance_slot"),
        CheckConstraint("booked_seats >= 0", name="check_booked_seats_non_negative"),
        CheckConstraint("booked_seats <= capacity", name="check_booked_lte_capacity"),
        CheckConstraint(
            "status IN ('scheduled', 'cancelled', 'completed')", name="check_instance_status"
        ),
        # Range scans for availability: WHERE tour_id = ? AND date BETWEEN ? AND ?
        Index("ix_tour_instances_tour_date", "tour_id", "date"),
    )

    @property
    def available_seats(self) -> int:
        return self.capacity - self.booked_seats

    def __repr__(self) -> str:
        return (
            f"<TourInstance(id={self.id}, tour={self.tour_id}, {self.date} {self.time}, "
            f"booked={self.booked_seats}/{self.capacity}, status={self.status})>"
        )
