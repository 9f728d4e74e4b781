"""
Pydantic request/response models for the HTTP API.

Request models do the type coercion and simple range checks; the services
re-check business rules (future dates, date ordering, duplicates) so they stay
safe when called without the HTTP layer.
"""
import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    BillStatus,
    MealType,
    NotificationType,
    RelatedEntityKind,
    SubscriptionPlan,
    SubscriptionStatus,
)

PHONE_PATTERN = r"^\d{10}$"


class _Stripped(BaseModel):
    @field_validator("subscriber_name", mode="before", check_fields=False)
    @classmethod
    def _strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


# ---------------- Attendance ---------------- #

class AttendanceCreate(_Stripped):
    subscriber_id: str = Field(..., pattern=PHONE_PATTERN, description="10-digit subscriber phone")
    subscriber_name: str = Field(..., min_length=2, max_length=100)
    meal_type: MealType
    date: dt.date
    price: float = Field(..., ge=0)


class AttendanceBatchCreate(BaseModel):
    attendances: List[AttendanceCreate] = Field(..., min_length=1)


class AttendanceUpdate(_Stripped):
    subscriber_name: Optional[str] = Field(None, min_length=2, max_length=100)
    meal_type: Optional[MealType] = None
    date: Optional[dt.date] = None
    price: Optional[float] = Field(None, ge=0)


class AttendanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscriber_id: str
    subscriber_name: str
    meal_type: MealType
    date: dt.date
    price: float
    recorded_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class Pagination(BaseModel):
    current: int
    pages: int
    total: int
    limit: int


# ---------------- Bills ---------------- #

class BillGenerateRequest(_Stripped):
    subscriber_id: str = Field(..., pattern=PHONE_PATTERN)
    subscriber_name: str = Field(..., min_length=1, max_length=100)
    start_date: dt.date
    end_date: dt.date


class BillStatusUpdate(BaseModel):
    status: BillStatus


class BillItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    meal_type: MealType
    price: float


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_number: str
    subscriber_id: str
    subscriber_name: str
    start_date: dt.date
    end_date: dt.date
    total_meals: int
    total_amount: float
    status: BillStatus
    items: List[BillItemOut]
    generated_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class BillReconciliationOut(BaseModel):
    bill: BillOut
    snapshot_total_meals: int
    snapshot_total_amount: float
    active_total_meals: int
    active_total_amount: float
    active_items: List[BillItemOut]
    removed_items: List[BillItemOut]


# ---------------- Subscriptions ---------------- #

class SubscriptionCreate(_Stripped):
    subscriber_id: str = Field(..., pattern=PHONE_PATTERN)
    subscriber_name: str = Field(..., min_length=2, max_length=100)
    plan: SubscriptionPlan
    start_date: dt.date
    end_date: dt.date
    price: float = Field(..., ge=0)
    meals_included: Optional[int] = Field(None, ge=1)


class SubscriptionUpdate(BaseModel):
    plan: Optional[SubscriptionPlan] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    price: Optional[float] = Field(None, ge=0)
    meals_included: Optional[int] = Field(None, ge=1)


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscriber_id: str
    subscriber_name: str
    plan: SubscriptionPlan
    start_date: dt.date
    end_date: dt.date
    price: float
    meals_included: int
    status: SubscriptionStatus
    created_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None


# ---------------- Notifications ---------------- #

class RelatedEntity(BaseModel):
    """Tagged reference from a notification to the entity it is about."""

    kind: RelatedEntityKind
    id: int


class NotificationCreate(_Stripped):
    subscriber_id: str = Field(..., pattern=PHONE_PATTERN)
    subscriber_name: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=500)
    type: NotificationType = NotificationType.GENERAL
    related: Optional[RelatedEntity] = None


class NotificationBatchCreate(BaseModel):
    notifications: List[NotificationCreate] = Field(..., min_length=1)


class NotificationOut(BaseModel):
    id: int
    subscriber_id: str
    subscriber_name: Optional[str] = None
    title: str
    message: str
    type: NotificationType
    read: bool
    related: Optional[RelatedEntity] = None
    sent_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    @classmethod
    def from_row(cls, row) -> "NotificationOut":
        related = None
        if row.related_kind and row.related_id is not None:
            related = RelatedEntity(kind=RelatedEntityKind(row.related_kind), id=row.related_id)
        return cls(
            id=row.id,
            subscriber_id=row.subscriber_id,
            subscriber_name=row.subscriber_name,
            title=row.title,
            message=row.message,
            type=NotificationType(row.type),
            read=bool(row.read),
            related=related,
            sent_by=row.sent_by,
            created_at=row.created_at,
        )
