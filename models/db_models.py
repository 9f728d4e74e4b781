"""
SQLAlchemy ORM models.

Purpose:
- Define attendance_records, bills, bill_items, sequence_counters,
  subscriptions and notifications tables
- Use SQLAlchemy async-compatible models
- Support migrations via Alembic

Integrity notes:
- attendance_records carries UNIQUE(subscriber_id, meal_type, date); the
  ledger relies on it instead of a read-then-write check
- bill_items are value copies of attendance at generation time, with no
  foreign key back to attendance_records
- sequence_counters holds one row per named counter (bill numbers)
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from core.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AttendanceRecord(Base):
    """
    One meal taken by one subscriber on one day.

    Columns:
    - subscriber_id: 10-digit phone number identifying the subscriber
    - meal_type: breakfast, lunch, dinner
    - date: calendar day of the meal
    - price: amount charged for the meal
    - recorded_by: operator who recorded it
    """
    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(String(20), nullable=False, index=True)
    subscriber_name = Column(String(100), nullable=False)
    meal_type = Column(String(20), nullable=False)
    date = Column(Date, nullable=False)
    price = Column(Float, nullable=False)
    recorded_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("subscriber_id", "meal_type", "date", name="ux_attendance_subscriber_meal_date"),
        Index("ix_attendance_date_meal", "date", "meal_type"),
        CheckConstraint("price >= 0", name="ck_attendance_price_non_negative"),
    )


class Bill(Base):
    """
    Immutable billing snapshot for one subscriber over a date window.

    total_meals / total_amount are computed from items at generation time and
    never recomputed; reconciliation against the live ledger is read-only.
    """
    __tablename__ = "bills"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bill_number = Column(String(32), unique=True, nullable=False, index=True)
    subscriber_id = Column(String(20), nullable=False, index=True)
    subscriber_name = Column(String(100), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    total_meals = Column(Integer, nullable=False)
    total_amount = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="generated", index=True)
    generated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # --- relationships ---
    # One Bill -> many snapshot lines, ordered as captured
    items = relationship(
        "BillItem",
        back_populates="bill",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="BillItem.position",
    )

    __table_args__ = (
        Index("ix_bills_period", "start_date", "end_date"),
    )


class BillItem(Base):
    __tablename__ = "bill_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bill_id = Column(Integer, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    meal_type = Column(String(20), nullable=False)
    price = Column(Float, nullable=False)

    bill = relationship("Bill", back_populates="items")


class SequenceCounter(Base):
    """Named monotonic counter advanced with UPDATE value = value + 1."""
    __tablename__ = "sequence_counters"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class Subscription(Base):
    """
    Recurring meal plan.

    Columns:
    - plan: weekly, monthly
    - meals_included: defaults to 7 (weekly) or 30 (monthly)
    - status: active, paused, expired, cancelled (expired/cancelled are terminal)
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(String(20), nullable=False, index=True)
    subscriber_name = Column(String(100), nullable=False)
    plan = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    price = Column(Float, nullable=False)
    meals_included = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_subscription_dates"),
        Index("ix_subscriptions_period", "start_date", "end_date"),
    )


class Notification(Base):
    """
    Persisted notification log; the source of truth behind live pushes.

    related_kind + related_id together form the optional reference to an
    order, attendance record, bill, subscription or meal.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(String(20), nullable=False)
    subscriber_name = Column(String(100), nullable=True)
    title = Column(String(100), nullable=False)
    message = Column(String(500), nullable=False)
    type = Column(String(20), nullable=False, default="general", index=True)
    read = Column(Boolean, nullable=False, default=False)
    related_kind = Column(String(20), nullable=True)
    related_id = Column(Integer, nullable=True)
    sent_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_notifications_subscriber_read", "subscriber_id", "read"),
    )
