"""
Ticket library and the two pricing tiers stored against it.

- Tier 1: `TourPricing`, one base price per (tour, ticket). A ticket is only
  sellable on a tour that has a rule for it.
- Tiers 2/3: `InstancePricing`, one override per (instance, ticket). Batch
  ("macro") and single ("micro") edits upsert the same row.
"""

import enum

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, Numeric, String, UniqueConstraint

from tourbooking.db.base import Base, TimestampMixin


class TicketType(str, enum.Enum):
    ATOMIC = "atomic"
    COMBINED = "combined"


class Ticket(Base, TimestampMixin):
    __tablename__ = "tour_tickets"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False, default=TicketType.ATOMIC.value)

    __table_args__ = (
        CheckConstraint("type IN ('atomic', 'combined')", name="check_ticket_type"),
    )

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id}, name={self.name}, type={self.type})>"


class TicketRecipeItem(Base):
    __tablename__ = "tour_ticket_recipes"

    id = Column(Integer, primary_key=True)
    combined_ticket_id = Column(
        Integer, ForeignKey("tour_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    atomic_ticket_id = Column(
        Integer, ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("combined_ticket_id", "atomic_ticket_id", name="uq_recipe_component"),
        CheckConstraint("quantity > 0", name="check_recipe_quantity_positive"),
    )


class TourPricing(Base, TimestampMixin):
    __tablename__ = "tour_pricing"

    id = Column(Integer, primary_key=True)
    tour_id = Column(Integer, ForeignKey("tours.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_id = Column(Integer, ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("tour_id", "ticket_id", name="uq_tour_ticket_price"),
        CheckConstraint("price >= 0", name="check_tour_price_non_negative"),
    )


class InstancePricing(Base, TimestampMixin):
    __tablename__ = "tour_instance_pricing"

    id = Column(Integer, primary_key=True)
    instance_id = Column(Integer, ForeignKey("tour_instances.id"), nullable=False, index=True)
    ticket_id = Column(Integer, ForeignKey("tour_tickets.id", ondelete="RESTRICT"), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("instance_id", "ticket_id", name="uq_instance_ticket_price"),
        CheckConstraint("price >= 0", name="check_instance_price_non_negative"),
    )
