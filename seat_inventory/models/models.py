from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from seat_inventory.db.base import Base
from seat_inventory.errors import AuditLogImmutable


TRIP_STATUS_SCHEDULED = "scheduled"
TRIP_STATUS_CANCELLED = "cancelled"


class SeatPlan(Base):
    __tablename__ = "seat_plans"
    id = Column(Integer, primary_key=True)
    name = Column(String(128), nullable=True)
    # {"rows": [{"letter": "A", "seats": {"1": "window", "2": "aisle"}}]}
    layout = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    trips = relationship("Trip", back_populates="seat_plan")


class Trip(Base):
    __tablename__ = "trips"
    id = Column(Integer, primary_key=True)
    seat_plan_id = Column(Integer, ForeignKey("seat_plans.id", ondelete="SET NULL"), nullable=True, index=True)
    capacity = Column(Integer, nullable=False, default=0)
    booked_count = Column(Integer, nullable=False, default=0)
    status = Column(String(50), nullable=False, default=TRIP_STATUS_SCHEDULED, index=True)
    departure_time = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    seat_plan = relationship("SeatPlan", back_populates="trips")

    __table_args__ = (
        CheckConstraint("booked_count >= 0", name="ck_trip_booked_count_non_negative"),
        CheckConstraint("booked_count <= capacity", name="ck_trip_booked_count_within_capacity"),
    )


class SeatLock(Base):
    __tablename__ = "seat_locks"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    seat_code = Column(String(16), nullable=False)
    # 1 = booked, 2 = free, 3 = held
    status = Column(Integer, nullable=False, default=2)
    holder_user_id = Column(Integer, nullable=True)
    hold_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("trip_id", "seat_code", name="uq_seat_lock_trip_seat"),
        Index("ix_seat_lock_status_expiry", "status", "hold_expires_at"),
    )


class BookedCountAudit(Base):
    __tablename__ = "booked_count_audit"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    before = Column(Integer, nullable=False)
    after = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    operation_kind = Column(String(50), nullable=False)
    actor_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


@event.listens_for(BookedCountAudit, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutable("booked_count_audit rows are append-only")


@event.listens_for(BookedCountAudit, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutable("booked_count_audit rows are append-only")
