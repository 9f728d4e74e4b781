"""
Attendance ledger.

Purpose:
- Record one attendance fact per (subscriber_id, meal_type, date)
- Bulk recording with all-or-nothing duplicate rejection
- Paginated queries and read-only summaries used by billing and reporting

Uniqueness is enforced by the UNIQUE constraint on attendance_records; an
IntegrityError on commit is the Conflict signal. The batch pre-check only
exists to report *every* offending entry in one response.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, InternalError, NotFoundError, ValidationError
from models.db_models import AttendanceRecord
from models.enums import MealType, NotificationType, RelatedEntityKind, SummaryGroupBy
from models.schemas import AttendanceCreate, Pagination, RelatedEntity
from services.common import check_date_range, check_name, check_not_future, check_price, check_subscriber_id, paginate
from services.notification_service import NotificationDraft, NotificationService

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Attendance already recorded for this subscriber, meal type, and date"

AttendanceKey = Tuple[str, str, date]


def _meal_value(meal_type: Union[MealType, str]) -> str:
    try:
        return MealType(meal_type).value
    except ValueError:
        raise ValidationError("Meal type must be breakfast, lunch, or dinner")


def describe(name: str, meal_type: str, day: date) -> str:
    return f"{name} - {meal_type} - {day.isoformat()}"


class AttendanceLedger:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[NotificationService] = None,
        *,
        notify_on_record: bool = True,
    ):
        self.session = session
        self.notifier = notifier
        self.notify_on_record = notify_on_record

    # ---------------- writes ---------------- #

    def _validated(
        self,
        *,
        subscriber_id: str,
        subscriber_name: str,
        meal_type: Union[MealType, str],
        day: Any,
        price: Any,
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        check_subscriber_id(subscriber_id)
        name = check_name(subscriber_name)
        meal = _meal_value(meal_type)
        if isinstance(day, datetime):
            day = day.date()
        if not isinstance(day, date):
            raise ValidationError("Invalid date format")
        check_not_future(day, today)
        return {
            "subscriber_id": subscriber_id,
            "subscriber_name": name,
            "meal_type": meal,
            "date": day,
            "price": check_price(price),
        }

    async def record_attendance(
        self,
        *,
        subscriber_id: str,
        subscriber_name: str,
        meal_type: Union[MealType, str],
        date: date,
        price: Any,
        recorded_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AttendanceRecord:
        fields = self._validated(
            subscriber_id=subscriber_id,
            subscriber_name=subscriber_name,
            meal_type=meal_type,
            day=date,
            price=price,
            today=today,
        )
        record = AttendanceRecord(**fields, recorded_by=recorded_by)
        self.session.add(record)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Duplicate attendance rejected: %s:%s:%s", subscriber_id, fields["meal_type"], fields["date"])
            raise ConflictError(
                DUPLICATE_MESSAGE,
                details=[describe(fields["subscriber_name"], fields["meal_type"], fields["date"])],
            )
        except Exception as e:
            await self.session.rollback()
            logger.error("Failed to record attendance for %s: %s", subscriber_id, e)
            raise InternalError("Failed to record attendance") from e

        await self.session.refresh(record)
        logger.info("Attendance %s recorded: %s %s %s", record.id, subscriber_id, record.meal_type, record.date)
        if self.notify_on_record:
            await self._notify_recorded([record], recorded_by)
        return record

    async def record_batch(
        self,
        entries: Sequence[Union[AttendanceCreate, Mapping[str, Any]]],
        *,
        recorded_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[AttendanceRecord]:
        if not entries:
            raise ValidationError("At least one attendance record is required")

        validated: List[Dict[str, Any]] = []
        errors = []
        for index, entry in enumerate(entries):
            data = entry.model_dump() if isinstance(entry, AttendanceCreate) else dict(entry)
            try:
                validated.append(self._validated(
                    subscriber_id=data.get("subscriber_id"),
                    subscriber_name=data.get("subscriber_name"),
                    meal_type=data.get("meal_type"),
                    day=data.get("date"),
                    price=data.get("price"),
                    today=today,
                ))
            except ValidationError as e:
                errors.append({"index": index, "message": e.message})
        if errors:
            raise ValidationError("Validation failed", details=errors)

        keys = [(f["subscriber_id"], f["meal_type"], f["date"]) for f in validated]
        existing = await self._existing_keys(keys)
        seen: Set[AttendanceKey] = set()
        duplicates = []
        for index, (fields, key) in enumerate(zip(validated, keys)):
            label = describe(fields["subscriber_name"], fields["meal_type"], fields["date"])
            if key in existing:
                duplicates.append({"index": index, "entry": label, "reason": "already recorded"})
            elif key in seen:
                duplicates.append({"index": index, "entry": label, "reason": "repeated in batch"})
            seen.add(key)

        if duplicates:
            logger.info("Attendance batch of %d rejected: %d duplicates", len(validated), len(duplicates))
            raise ConflictError("Duplicate attendance records found", details=duplicates)

        records = [AttendanceRecord(**fields, recorded_by=recorded_by) for fields in validated]
        self.session.add_all(records)
        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent writer got in between the pre-check and the insert.
            await self.session.rollback()
            logger.warning("Attendance batch lost a uniqueness race; nothing persisted")
            raise ConflictError("Duplicate attendance records found", details=[
                {"index": i, "entry": describe(f["subscriber_name"], f["meal_type"], f["date"]), "reason": "concurrent write"}
                for i, f in enumerate(validated)
            ])
        except Exception as e:
            await self.session.rollback()
            logger.error("Failed to persist attendance batch: %s", e)
            raise InternalError("Failed to create bulk attendance records") from e

        for record in records:
            await self.session.refresh(record)
        logger.info("Attendance batch persisted: %d records", len(records))
        if self.notify_on_record:
            await self._notify_recorded(records, recorded_by)
        return records

    async def _existing_keys(self, keys: Iterable[AttendanceKey]) -> Set[AttendanceKey]:
        keys = set(keys)
        if not keys:
            return set()
        stmt = select(AttendanceRecord.subscriber_id, AttendanceRecord.meal_type, AttendanceRecord.date).where(
            AttendanceRecord.subscriber_id.in_({k[0] for k in keys}),
            AttendanceRecord.date.in_({k[2] for k in keys}),
        )
        rows = (await self.session.execute(stmt)).all()
        return {(r.subscriber_id, r.meal_type, r.date) for r in rows} & keys

    async def update(
        self,
        record_id: int,
        *,
        subscriber_name: Optional[str] = None,
        meal_type: Optional[Union[MealType, str]] = None,
        date: Optional[date] = None,
        price: Optional[Any] = None,
        updated_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AttendanceRecord:
        record = await self.get(record_id)
        if subscriber_name is not None:
            record.subscriber_name = check_name(subscriber_name)
        if meal_type is not None:
            record.meal_type = _meal_value(meal_type)
        if date is not None:
            check_not_future(date, today)
            record.date = date
        if price is not None:
            record.price = check_price(price)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError(DUPLICATE_MESSAGE)
        await self.session.refresh(record)
        logger.info("Attendance %s updated by %s", record_id, updated_by)
        return record

    async def delete(self, record_id: int) -> None:
        """Hard delete. Bills that already captured this record keep their snapshot."""
        record = await self.get(record_id)
        await self.session.delete(record)
        await self.session.commit()
        logger.info("Attendance %s deleted (%s %s %s)", record_id, record.subscriber_id, record.meal_type, record.date)

    async def _notify_recorded(self, records: Sequence[AttendanceRecord], recorded_by: Optional[str]) -> None:
        if self.notifier is None:
            return
        drafts = [
            NotificationDraft(
                subscriber_id=r.subscriber_id,
                subscriber_name=r.subscriber_name,
                title="Attendance Recorded",
                message=f"Your {r.meal_type} on {r.date.isoformat()} has been recorded. Price: ₹{r.price:g}",
                type=NotificationType.ATTENDANCE,
                related=RelatedEntity(kind=RelatedEntityKind.ATTENDANCE, id=r.id),
                sent_by=recorded_by,
            )
            for r in records
        ]
        if len(drafts) == 1:
            await self.notifier.emit_quietly(drafts[0])
            return
        try:
            await self.notifier.emit_batch(drafts)
        except InternalError:
            logger.warning("Dropped %d attendance notifications", len(drafts))

    # ---------------- reads ---------------- #

    async def get(self, record_id: int) -> AttendanceRecord:
        record = await self.session.get(AttendanceRecord, record_id)
        if record is None:
            raise NotFoundError("Attendance record not found")
        return record

    async def query(
        self,
        *,
        subscriber_id: Optional[str] = None,
        meal_type: Optional[Union[MealType, str]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> Tuple[List[AttendanceRecord], Pagination]:
        """Filtered page, newest day first, meal type ascending within a day."""
        stmt = select(AttendanceRecord)
        if subscriber_id:
            stmt = stmt.where(AttendanceRecord.subscriber_id == subscriber_id)
        if meal_type:
            stmt = stmt.where(AttendanceRecord.meal_type == _meal_value(meal_type))
        if date_from:
            stmt = stmt.where(AttendanceRecord.date >= date_from)
        if date_to:
            stmt = stmt.where(AttendanceRecord.date <= date_to)
        stmt = stmt.order_by(AttendanceRecord.date.desc(), AttendanceRecord.meal_type.asc(), AttendanceRecord.id.asc())
        return await paginate(self.session, stmt, page, page_size)

    async def window(
        self,
        subscriber_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        *,
        newest_first: bool = False,
    ) -> List[AttendanceRecord]:
        """All records of one subscriber in [start_date, end_date], unpaginated."""
        stmt = select(AttendanceRecord).where(AttendanceRecord.subscriber_id == subscriber_id)
        if start_date:
            stmt = stmt.where(AttendanceRecord.date >= start_date)
        if end_date:
            stmt = stmt.where(AttendanceRecord.date <= end_date)
        day_order = AttendanceRecord.date.desc() if newest_first else AttendanceRecord.date.asc()
        stmt = stmt.order_by(day_order, AttendanceRecord.meal_type.asc(), AttendanceRecord.id.asc())
        return list((await self.session.execute(stmt)).scalars().all())

    async def live_keys(self, subscriber_id: str, days: Iterable[date]) -> Set[Tuple[date, str]]:
        days = set(days)
        if not days:
            return set()
        stmt = select(AttendanceRecord.date, AttendanceRecord.meal_type).where(
            AttendanceRecord.subscriber_id == subscriber_id,
            AttendanceRecord.date.in_(days),
        )
        return {(r.date, r.meal_type) for r in (await self.session.execute(stmt)).all()}

    async def daily_summary(self, day: date, meal_type: Optional[Union[MealType, str]] = None) -> Dict[str, Any]:
        stmt = (
            select(
                AttendanceRecord.meal_type,
                func.count(AttendanceRecord.id).label("count"),
                func.coalesce(func.sum(AttendanceRecord.price), 0).label("revenue"),
            )
            .where(AttendanceRecord.date == day)
            .group_by(AttendanceRecord.meal_type)
            .order_by(AttendanceRecord.meal_type)
        )
        if meal_type:
            stmt = stmt.where(AttendanceRecord.meal_type == _meal_value(meal_type))
        rows = (await self.session.execute(stmt)).all()

        breakdown = [
            {
                "meal_type": r.meal_type,
                "count": int(r.count),
                "revenue": float(r.revenue),
                "average_price": float(r.revenue) / int(r.count) if r.count else 0.0,
            }
            for r in rows
        ]
        total_count = sum(b["count"] for b in breakdown)
        total_revenue = sum(b["revenue"] for b in breakdown)
        return {
            "date": day.isoformat(),
            "meal_type": _meal_value(meal_type) if meal_type else "all",
            "total_count": total_count,
            "total_revenue": total_revenue,
            "average_price": total_revenue / total_count if total_count else 0.0,
            "breakdown": breakdown,
        }

    async def range_summary(
        self,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        meal_type: Optional[Union[MealType, str]] = None,
        group_by: Union[SummaryGroupBy, str] = SummaryGroupBy.SUBSCRIBER,
        top: int = 10,
    ) -> Dict[str, Any]:
        check_date_range(date_from, date_to)
        try:
            group_by = SummaryGroupBy(group_by)
        except ValueError:
            raise ValidationError("groupBy must be subscriber or mealType")

        filters = []
        if meal_type:
            filters.append(AttendanceRecord.meal_type == _meal_value(meal_type))
        if date_from:
            filters.append(AttendanceRecord.date >= date_from)
        if date_to:
            filters.append(AttendanceRecord.date <= date_to)

        totals_stmt = select(
            func.count(AttendanceRecord.id),
            func.coalesce(func.sum(AttendanceRecord.price), 0),
        ).where(*filters)
        total_records, total_revenue = (await self.session.execute(totals_stmt)).one()
        total_records = int(total_records)
        total_revenue = float(total_revenue)

        count_col = func.count(AttendanceRecord.id).label("count")
        revenue_col = func.coalesce(func.sum(AttendanceRecord.price), 0).label("revenue")
        if group_by is SummaryGroupBy.SUBSCRIBER:
            stmt = (
                select(
                    AttendanceRecord.subscriber_id,
                    func.max(AttendanceRecord.subscriber_name).label("subscriber_name"),
                    count_col,
                    revenue_col,
                )
                .where(*filters)
                .group_by(AttendanceRecord.subscriber_id)
                .order_by(count_col.desc(), AttendanceRecord.subscriber_id.asc())
                .limit(top)
            )
            groups = [
                {
                    "subscriber_id": r.subscriber_id,
                    "subscriber_name": r.subscriber_name,
                    "count": int(r.count),
                    "revenue": float(r.revenue),
                }
                for r in (await self.session.execute(stmt)).all()
            ]
        else:
            stmt = (
                select(AttendanceRecord.meal_type, count_col, revenue_col)
                .where(*filters)
                .group_by(AttendanceRecord.meal_type)
                .order_by(AttendanceRecord.meal_type)
            )
            groups = [
                {"meal_type": r.meal_type, "count": int(r.count), "revenue": float(r.revenue)}
                for r in (await self.session.execute(stmt)).all()
            ]

        return {
            "total_records": total_records,
            "total_revenue": total_revenue,
            "average_price": total_revenue / total_records if total_records else 0.0,
            "group_by": group_by.value,
            "groups": groups,
        }

    async def subscriber_history(
        self,
        subscriber_id: str,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        records, pagination = await self.query(
            subscriber_id=subscriber_id, date_from=date_from, date_to=date_to, page=page, page_size=page_size,
        )

        def meal_count(meal: MealType):
            return func.coalesce(func.sum(case((AttendanceRecord.meal_type == meal.value, 1), else_=0)), 0)

        stmt = select(
            func.count(AttendanceRecord.id),
            func.coalesce(func.sum(AttendanceRecord.price), 0),
            meal_count(MealType.BREAKFAST),
            meal_count(MealType.LUNCH),
            meal_count(MealType.DINNER),
        ).where(AttendanceRecord.subscriber_id == subscriber_id)
        visits, spent, breakfast, lunch, dinner = (await self.session.execute(stmt)).one()
        return {
            "records": records,
            "pagination": pagination,
            "summary": {
                "total_visits": int(visits),
                "total_spent": float(spent),
                "breakfast_count": int(breakfast),
                "lunch_count": int(lunch),
                "dinner_count": int(dinner),
            },
        }
