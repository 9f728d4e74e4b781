"""
FastAPI dependency wiring for the service layer.

One AsyncSession per request; every service built for that request shares it
together with the process-wide ChannelRegistry kept on app.state.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from core.db import get_db_session
from services.attendance_service import AttendanceLedger
from services.billing_service import BillingEngine
from services.channel_registry import ChannelRegistry
from services.notification_service import NotificationService
from services.subscription_service import SubscriptionLifecycle


def get_registry(request: Request) -> ChannelRegistry:
    return request.app.state.channel_registry


def get_notifier(
    session: AsyncSession = Depends(get_db_session),
    registry: ChannelRegistry = Depends(get_registry),
) -> NotificationService:
    return NotificationService(session, registry)


def get_ledger(
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationService = Depends(get_notifier),
) -> AttendanceLedger:
    return AttendanceLedger(session, notifier, notify_on_record=settings.NOTIFY_ON_ATTENDANCE)


def get_billing(
    session: AsyncSession = Depends(get_db_session),
    ledger: AttendanceLedger = Depends(get_ledger),
    notifier: NotificationService = Depends(get_notifier),
) -> BillingEngine:
    return BillingEngine(session, ledger, notifier)


def get_lifecycle(
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationService = Depends(get_notifier),
) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(session, notifier)
