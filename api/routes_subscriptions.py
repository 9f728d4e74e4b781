"""
Subscription endpoints.

DELETE cancels (soft status change); the row stays for history and billing.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_lifecycle
from config.settings import settings
from core.auth import Identity, ensure_can_view, get_current_identity, require_owner
from core.response import ok
from models.enums import SubscriptionPlan, SubscriptionStatus
from models.schemas import SubscriptionCreate, SubscriptionOut, SubscriptionStatusUpdate, SubscriptionUpdate
from services.subscription_service import SubscriptionLifecycle

router = APIRouter()


def _out(sub) -> dict:
    return SubscriptionOut.model_validate(sub).model_dump(mode="json")


@router.post("", status_code=201)
async def create_subscription(
    payload: SubscriptionCreate,
    owner: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = await lifecycle.create(**payload.model_dump(), created_by=owner.subscriber_id)
    return ok(_out(sub))


@router.get("")
async def list_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    plan: Optional[SubscriptionPlan] = None,
    subscriber_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    if not identity.is_owner:
        subscriber_id = subscriber_id or identity.subscriber_id
        ensure_can_view(identity, subscriber_id)
    subs, pagination = await lifecycle.list(
        status=status,
        plan=plan,
        subscriber_id=subscriber_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=limit,
    )
    return ok({"items": [_out(s) for s in subs], "pagination": pagination.model_dump()})


@router.get("/stats/summary")
async def subscription_stats(
    plan: Optional[SubscriptionPlan] = None,
    status: Optional[SubscriptionStatus] = None,
    _: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return ok(await lifecycle.stats(plan=plan, status=status))


@router.get("/alerts/expiring")
async def expiring_subscriptions(
    days: int = Query(settings.EXPIRING_DEFAULT_DAYS, ge=0, le=365),
    _: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subs = await lifecycle.list_expiring_within(days)
    return ok({"days": days, "count": len(subs), "subscriptions": [_out(s) for s in subs]})


@router.post("/auto-expire")
async def auto_expire(
    _: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    return ok(await lifecycle.sweep_expired())


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: int,
    identity: Identity = Depends(get_current_identity),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = await lifecycle.get(subscription_id)
    ensure_can_view(identity, sub.subscriber_id)
    return ok(_out(sub))


@router.put("/{subscription_id}")
async def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdate,
    _: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = await lifecycle.update(subscription_id, **payload.model_dump(exclude_none=True))
    return ok(_out(sub))


@router.patch("/{subscription_id}/status")
async def change_status(
    subscription_id: int,
    payload: SubscriptionStatusUpdate,
    owner: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = await lifecycle.set_status(subscription_id, payload.status, changed_by=owner.subscriber_id)
    return ok(_out(sub))


@router.delete("/{subscription_id}")
async def cancel_subscription(
    subscription_id: int,
    owner: Identity = Depends(require_owner),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    sub = await lifecycle.cancel(subscription_id, changed_by=owner.subscriber_id)
    return ok(_out(sub))
