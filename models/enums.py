# models/enums.py
from enum import Enum


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class BillStatus(str, Enum):
    GENERATED = "generated"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


class SubscriptionPlan(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def default_meals(self) -> int:
        return 7 if self is SubscriptionPlan.WEEKLY else 30


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


class NotificationType(str, Enum):
    ORDER = "order"
    ATTENDANCE = "attendance"
    BILL = "bill"
    SUBSCRIPTION = "subscription"
    MENU = "menu"
    GENERAL = "general"


class RelatedEntityKind(str, Enum):
    ORDER = "order"
    ATTENDANCE = "attendance"
    BILL = "bill"
    SUBSCRIPTION = "subscription"
    MEAL = "meal"


class SummaryGroupBy(str, Enum):
    SUBSCRIBER = "subscriber"
    MEAL_TYPE = "mealType"
