"""
Attendance endpoints.

Writes are owner-only; subscribers can read their own records and history.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_ledger
from core.auth import Identity, ensure_can_view, get_current_identity, require_owner
from core.response import ok
from models.enums import MealType, SummaryGroupBy
from models.schemas import AttendanceBatchCreate, AttendanceCreate, AttendanceOut, AttendanceUpdate
from services.attendance_service import AttendanceLedger

router = APIRouter()


def _out(record) -> dict:
    return AttendanceOut.model_validate(record).model_dump(mode="json")


@router.post("", status_code=201)
async def record_attendance(
    payload: AttendanceCreate,
    owner: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    record = await ledger.record_attendance(
        subscriber_id=payload.subscriber_id,
        subscriber_name=payload.subscriber_name,
        meal_type=payload.meal_type,
        date=payload.date,
        price=payload.price,
        recorded_by=owner.subscriber_id,
    )
    return ok(_out(record))


@router.post("/bulk", status_code=201)
async def record_batch(
    payload: AttendanceBatchCreate,
    owner: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    records = await ledger.record_batch(payload.attendances, recorded_by=owner.subscriber_id)
    return ok({"count": len(records), "attendances": [_out(r) for r in records]})


@router.get("")
async def query_attendance(
    subscriber_id: Optional[str] = None,
    meal_type: Optional[MealType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    if not identity.is_owner:
        subscriber_id = subscriber_id or identity.subscriber_id
        ensure_can_view(identity, subscriber_id)
    records, pagination = await ledger.query(
        subscriber_id=subscriber_id,
        meal_type=meal_type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=limit,
    )
    return ok({"items": [_out(r) for r in records], "pagination": pagination.model_dump()})


@router.get("/stats/daily")
async def daily_summary(
    day: Optional[date] = Query(None, alias="date"),
    meal_type: Optional[MealType] = None,
    _: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    return ok(await ledger.daily_summary(day or date.today(), meal_type))


@router.get("/stats/summary")
async def range_summary(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    meal_type: Optional[MealType] = None,
    group_by: SummaryGroupBy = Query(SummaryGroupBy.SUBSCRIBER, alias="groupBy"),
    _: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    summary = await ledger.range_summary(
        date_from=date_from, date_to=date_to, meal_type=meal_type, group_by=group_by,
    )
    return ok(summary)


@router.get("/subscriber/{subscriber_id}/history")
async def subscriber_history(
    subscriber_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    ensure_can_view(identity, subscriber_id)
    history = await ledger.subscriber_history(
        subscriber_id, date_from=date_from, date_to=date_to, page=page, page_size=limit,
    )
    return ok({
        "records": [_out(r) for r in history["records"]],
        "pagination": history["pagination"].model_dump(),
        "summary": history["summary"],
    })


@router.get("/{record_id}")
async def get_attendance(
    record_id: int,
    identity: Identity = Depends(get_current_identity),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    record = await ledger.get(record_id)
    ensure_can_view(identity, record.subscriber_id)
    return ok(_out(record))


@router.put("/{record_id}")
async def update_attendance(
    record_id: int,
    payload: AttendanceUpdate,
    owner: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    record = await ledger.update(record_id, **payload.model_dump(exclude_none=True), updated_by=owner.subscriber_id)
    return ok(_out(record))


@router.delete("/{record_id}")
async def delete_attendance(
    record_id: int,
    _: Identity = Depends(require_owner),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    await ledger.delete(record_id)
    return ok({"message": "Attendance record deleted successfully"})
