"""
Subscription lifecycle.

States: active, paused, expired, cancelled. expired and cancelled are
terminal; every transition out of them is rejected with a Conflict.

The expiry sweep is safe to run from several places at once (the background
sweeper, the operator endpoint): each record is expired by a conditional
UPDATE, and only the caller whose UPDATE actually changed the row notifies.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, InternalError, NotFoundError, ValidationError
from models.db_models import Subscription
from models.enums import NotificationType, RelatedEntityKind, SubscriptionPlan, SubscriptionStatus
from models.schemas import Pagination, RelatedEntity
from services.common import check_date_range, check_name, check_price, check_subscriber_id, paginate
from services.notification_service import NotificationDraft, NotificationService

logger = logging.getLogger(__name__)

LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value)

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELLED: set(),
}

TRANSITION_TITLES = {
    SubscriptionStatus.ACTIVE: "Subscription Resumed",
    SubscriptionStatus.PAUSED: "Subscription Paused",
    SubscriptionStatus.CANCELLED: "Subscription Cancelled",
    SubscriptionStatus.EXPIRED: "Subscription Expired",
}


def _plan(plan: Union[SubscriptionPlan, str]) -> SubscriptionPlan:
    try:
        return SubscriptionPlan(plan)
    except ValueError:
        raise ValidationError("Plan must be weekly or monthly")


def _status(status: Union[SubscriptionStatus, str]) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(status)
    except ValueError:
        raise ValidationError("Status must be active, paused, expired, or cancelled")


class SubscriptionLifecycle:
    def __init__(self, session: AsyncSession, notifier: Optional[NotificationService] = None):
        self.session = session
        self.notifier = notifier

    async def create(
        self,
        *,
        subscriber_id: str,
        subscriber_name: str,
        plan: Union[SubscriptionPlan, str],
        start_date: date,
        end_date: date,
        price: Any,
        meals_included: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Subscription:
        check_subscriber_id(subscriber_id)
        name = check_name(subscriber_name)
        plan = _plan(plan)
        check_date_range(start_date, end_date, strict=True)
        if meals_included is not None and meals_included < 1:
            raise ValidationError("Meals included must be at least 1")

        sub = Subscription(
            subscriber_id=subscriber_id,
            subscriber_name=name,
            plan=plan.value,
            start_date=start_date,
            end_date=end_date,
            price=check_price(price),
            meals_included=meals_included or plan.default_meals,
            status=SubscriptionStatus.ACTIVE.value,
            created_by=created_by,
        )
        self.session.add(sub)
        try:
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error("Failed to create subscription for %s: %s", subscriber_id, e)
            raise InternalError("Failed to create subscription") from e
        await self.session.refresh(sub)

        logger.info("Subscription %s created: %s %s %s..%s", sub.id, subscriber_id, sub.plan, start_date, end_date)
        await self._notify(
            sub,
            title="Subscription Created",
            message=(
                f"Your {sub.plan} subscription from {start_date.isoformat()} to {end_date.isoformat()} "
                f"is active. {sub.meals_included} meals included."
            ),
            sent_by=created_by,
        )
        return sub

    async def get(self, subscription_id: int) -> Subscription:
        sub = await self.session.get(Subscription, subscription_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    async def list(
        self,
        *,
        status: Optional[Union[SubscriptionStatus, str]] = None,
        plan: Optional[Union[SubscriptionPlan, str]] = None,
        subscriber_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> Tuple[List[Subscription], Pagination]:
        check_date_range(date_from, date_to)
        stmt = select(Subscription)
        if status:
            stmt = stmt.where(Subscription.status == _status(status).value)
        if plan:
            stmt = stmt.where(Subscription.plan == _plan(plan).value)
        if subscriber_id:
            stmt = stmt.where(Subscription.subscriber_id == subscriber_id)
        if date_from:
            stmt = stmt.where(Subscription.start_date >= date_from)
        if date_to:
            stmt = stmt.where(Subscription.end_date <= date_to)
        stmt = stmt.order_by(Subscription.start_date.desc(), Subscription.id.desc())
        return await paginate(self.session, stmt, page, page_size)

    async def update(
        self,
        subscription_id: int,
        *,
        plan: Optional[Union[SubscriptionPlan, str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        price: Optional[Any] = None,
        meals_included: Optional[int] = None,
    ) -> Subscription:
        sub = await self.get(subscription_id)
        if SubscriptionStatus(sub.status).is_terminal:
            raise ConflictError(f"Cannot modify a {sub.status} subscription")

        new_start = start_date or sub.start_date
        new_end = end_date or sub.end_date
        check_date_range(new_start, new_end, strict=True)
        if meals_included is not None and meals_included < 1:
            raise ValidationError("Meals included must be at least 1")

        if plan is not None:
            sub.plan = _plan(plan).value
        sub.start_date = new_start
        sub.end_date = new_end
        if price is not None:
            sub.price = check_price(price)
        if meals_included is not None:
            sub.meals_included = meals_included
        await self.session.commit()
        await self.session.refresh(sub)
        logger.info("Subscription %s updated", subscription_id)
        return sub

    # ---------------- status transitions ---------------- #

    async def pause(self, subscription_id: int, *, changed_by: Optional[str] = None) -> Subscription:
        return await self._transition(subscription_id, SubscriptionStatus.PAUSED, changed_by)

    async def resume(self, subscription_id: int, *, changed_by: Optional[str] = None) -> Subscription:
        return await self._transition(subscription_id, SubscriptionStatus.ACTIVE, changed_by)

    async def cancel(self, subscription_id: int, *, changed_by: Optional[str] = None) -> Subscription:
        return await self._transition(subscription_id, SubscriptionStatus.CANCELLED, changed_by)

    async def expire(self, subscription_id: int, *, changed_by: Optional[str] = None) -> Subscription:
        return await self._transition(subscription_id, SubscriptionStatus.EXPIRED, changed_by)

    async def set_status(
        self,
        subscription_id: int,
        status: Union[SubscriptionStatus, str],
        *,
        changed_by: Optional[str] = None,
    ) -> Subscription:
        target = _status(status)
        handler = {
            SubscriptionStatus.ACTIVE: self.resume,
            SubscriptionStatus.PAUSED: self.pause,
            SubscriptionStatus.CANCELLED: self.cancel,
            SubscriptionStatus.EXPIRED: self.expire,
        }[target]
        return await handler(subscription_id, changed_by=changed_by)

    async def _transition(
        self,
        subscription_id: int,
        target: SubscriptionStatus,
        changed_by: Optional[str],
    ) -> Subscription:
        sub = await self.get(subscription_id)
        current = SubscriptionStatus(sub.status)
        if current is target:
            return sub
        if target not in ALLOWED_TRANSITIONS[current]:
            raise ConflictError(f"Cannot change a {current.value} subscription to {target.value}")

        sub.status = target.value
        await self.session.commit()
        await self.session.refresh(sub)
        logger.info("Subscription %s %s -> %s by %s", subscription_id, current.value, target.value, changed_by)
        await self._notify(
            sub,
            title=TRANSITION_TITLES[target],
            message=f"Your {sub.plan} subscription is now {target.value}.",
            sent_by=changed_by,
        )
        return sub

    # ---------------- expiry ---------------- #

    async def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Expire every active or paused subscription whose end_date is before
        today. A record whose conditional UPDATE matched nothing was expired,
        cancelled or extended by someone else in the meantime and is skipped
        silently.
        """
        today = (now or datetime.now()).date()
        stmt = (
            select(Subscription.id)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .where(Subscription.end_date < today)
            .order_by(Subscription.end_date.asc(), Subscription.id.asc())
        )
        candidates = list((await self.session.execute(stmt)).scalars().all())

        expired_ids: List[int] = []
        failed_ids: List[int] = []
        for subscription_id in candidates:
            try:
                result = await self.session.execute(
                    update(Subscription)
                    .where(Subscription.id == subscription_id)
                    .where(Subscription.status.in_(LIVE_STATUSES))
                    .where(Subscription.end_date < today)
                    .values(status=SubscriptionStatus.EXPIRED.value)
                    .execution_options(synchronize_session="fetch")
                )
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error("Failed to expire subscription %s: %s", subscription_id, e)
                failed_ids.append(subscription_id)
                continue

            if result.rowcount != 1:
                continue
            expired_ids.append(subscription_id)
            sub = await self.get(subscription_id)
            await self._notify(
                sub,
                title="Subscription Expired",
                message=(
                    f"Your {sub.plan} subscription ended on {sub.end_date.isoformat()}. "
                    "Renew to keep your meals coming."
                ),
                sent_by="system",
            )

        if expired_ids or failed_ids:
            logger.info("Expiry sweep: expired=%d failed=%d", len(expired_ids), len(failed_ids))
        return {"expired_count": len(expired_ids), "expired_ids": expired_ids, "failed_ids": failed_ids}

    async def list_expiring_within(self, days: int = 7, now: Optional[datetime] = None) -> List[Subscription]:
        if days < 0:
            raise ValidationError("Days must be zero or positive")
        today = (now or datetime.now()).date()
        stmt = (
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .where(Subscription.end_date >= today)
            .where(Subscription.end_date <= today + timedelta(days=days))
            .order_by(Subscription.end_date.asc(), Subscription.id.asc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def stats(
        self,
        *,
        plan: Optional[Union[SubscriptionPlan, str]] = None,
        status: Optional[Union[SubscriptionStatus, str]] = None,
    ) -> Dict[str, Any]:
        filters = []
        if plan:
            filters.append(Subscription.plan == _plan(plan).value)
        if status:
            filters.append(Subscription.status == _status(status).value)

        count, revenue, meals = (await self.session.execute(
            select(
                func.count(Subscription.id),
                func.coalesce(func.sum(Subscription.price), 0),
                func.coalesce(func.sum(Subscription.meals_included), 0),
            ).where(*filters)
        )).one()
        count = int(count)
        revenue = float(revenue)

        async def breakdown(column):
            rows = (await self.session.execute(
                select(column, func.count(Subscription.id), func.coalesce(func.sum(Subscription.price), 0))
                .where(*filters)
                .group_by(column)
                .order_by(column)
            )).all()
            return [{"key": key, "count": int(n), "revenue": float(total)} for key, n, total in rows]

        return {
            "total_subscriptions": count,
            "total_revenue": revenue,
            "average_price": revenue / count if count else 0.0,
            "total_meals_included": int(meals),
            "by_plan": await breakdown(Subscription.plan),
            "by_status": await breakdown(Subscription.status),
        }

    async def _notify(self, sub: Subscription, *, title: str, message: str, sent_by: Optional[str]) -> None:
        if self.notifier is None:
            return
        await self.notifier.emit_quietly(NotificationDraft(
            subscriber_id=sub.subscriber_id,
            subscriber_name=sub.subscriber_name,
            title=title,
            message=message,
            type=NotificationType.SUBSCRIPTION,
            related=RelatedEntity(kind=RelatedEntityKind.SUBSCRIPTION, id=sub.id),
            sent_by=sent_by,
        ))
