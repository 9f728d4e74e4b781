"""
Billing endpoints.

Generation and status changes are owner-only. Viewing a bill always goes
through reconciliation, so the response shows both the contractual snapshot
and what is still backed by the live ledger.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from api.deps import get_billing
from core.auth import Identity, ensure_can_view, get_current_identity, require_owner
from core.response import ok
from models.enums import BillStatus
from models.schemas import AttendanceOut, BillGenerateRequest, BillItemOut, BillOut, BillReconciliationOut, BillStatusUpdate
from services.billing_service import BillingEngine, BillReconciliation

router = APIRouter()


def _bill(bill) -> dict:
    return BillOut.model_validate(bill).model_dump(mode="json")


def _reconciliation(rec: BillReconciliation) -> dict:
    return BillReconciliationOut(
        bill=BillOut.model_validate(rec.bill),
        snapshot_total_meals=rec.snapshot_total_meals,
        snapshot_total_amount=rec.snapshot_total_amount,
        active_total_meals=rec.active_total_meals,
        active_total_amount=rec.active_total_amount,
        active_items=[BillItemOut.model_validate(i) for i in rec.active_items],
        removed_items=[BillItemOut.model_validate(i) for i in rec.removed_items],
    ).model_dump(mode="json")


@router.post("/generate", status_code=201)
async def generate_bill(
    payload: BillGenerateRequest,
    owner: Identity = Depends(require_owner),
    billing: BillingEngine = Depends(get_billing),
):
    bill = await billing.generate_bill(
        subscriber_id=payload.subscriber_id,
        subscriber_name=payload.subscriber_name,
        start_date=payload.start_date,
        end_date=payload.end_date,
        generated_by=owner.subscriber_id,
    )
    return ok(_bill(bill))


@router.get("")
async def list_bills(
    subscriber_id: Optional[str] = None,
    status: Optional[BillStatus] = None,
    identity: Identity = Depends(get_current_identity),
    billing: BillingEngine = Depends(get_billing),
):
    if not identity.is_owner:
        subscriber_id = subscriber_id or identity.subscriber_id
        ensure_can_view(identity, subscriber_id)
    bills = await billing.list_bills(subscriber_id=subscriber_id, status=status)
    return ok([_bill(b) for b in bills])


@router.get("/subscriber/{subscriber_id}")
async def bills_for_subscriber(
    subscriber_id: str,
    identity: Identity = Depends(get_current_identity),
    billing: BillingEngine = Depends(get_billing),
):
    ensure_can_view(identity, subscriber_id)
    bills = await billing.list_bills(subscriber_id=subscriber_id)
    return ok([_bill(b) for b in bills])


@router.get("/attendance-history/{subscriber_id}")
async def attendance_history(
    subscriber_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    identity: Identity = Depends(get_current_identity),
    billing: BillingEngine = Depends(get_billing),
):
    ensure_can_view(identity, subscriber_id)
    records = await billing.attendance_history(subscriber_id, date_from=date_from, date_to=date_to)
    return ok([AttendanceOut.model_validate(r).model_dump(mode="json") for r in records])


@router.get("/{bill_id}")
async def get_bill(
    bill_id: int,
    identity: Identity = Depends(get_current_identity),
    billing: BillingEngine = Depends(get_billing),
):
    bill = await billing.get(bill_id)
    ensure_can_view(identity, bill.subscriber_id)
    return ok(_reconciliation(await billing.reconcile_for_display(bill)))


@router.get("/{bill_id}/download")
async def download_bill(
    bill_id: int,
    identity: Identity = Depends(get_current_identity),
    billing: BillingEngine = Depends(get_billing),
):
    """Printable view: same reconciliation, with line totals per meal type."""
    bill = await billing.get(bill_id)
    ensure_can_view(identity, bill.subscriber_id)
    rec = await billing.reconcile_for_display(bill)
    per_meal = {}
    for item in rec.active_items:
        line = per_meal.setdefault(item.meal_type, {"meal_type": item.meal_type, "count": 0, "amount": 0.0})
        line["count"] += 1
        line["amount"] += item.price
    data = _reconciliation(rec)
    data["lines"] = sorted(per_meal.values(), key=lambda line: line["meal_type"])
    return ok(data)


@router.patch("/{bill_id}/status")
async def update_bill_status(
    bill_id: int,
    payload: BillStatusUpdate,
    owner: Identity = Depends(require_owner),
    billing: BillingEngine = Depends(get_billing),
):
    bill = await billing.update_status(bill_id, payload.status, updated_by=owner.subscriber_id)
    return ok(_bill(bill))
