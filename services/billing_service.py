"""
Billing engine.

Purpose:
- Turn a subscriber's attendance window into an immutable Bill snapshot
- Allocate bill numbers from an atomic counter (BILL000001, BILL000002, ...)
- Reconcile a bill against the live ledger at read time without touching it
- Operator-driven status changes

Bill + counter increment + snapshot lines commit in one transaction; the
"Bill Generated" notification goes out only after that commit.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from core.errors import InternalError, NotFoundError, ValidationError
from models.db_models import Bill, BillItem, SequenceCounter
from models.enums import BillStatus, NotificationType, RelatedEntityKind
from models.schemas import RelatedEntity
from services.attendance_service import AttendanceLedger
from services.common import check_date_range, check_name, check_subscriber_id
from services.notification_service import NotificationDraft, NotificationService

logger = logging.getLogger(__name__)

BILL_COUNTER = "bill_number"


def format_bill_number(value: int, prefix: str = "BILL", width: int = 6) -> str:
    return f"{prefix}{value:0{width}d}"


async def next_sequence_value(session: AsyncSession, name: str) -> int:
    """
    Advance the named counter inside the caller's transaction and return the
    new value. The UPDATE takes a row lock that is held until commit, so two
    concurrent generators can never read the same value.
    """
    stmt = (
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(value=SequenceCounter.value + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        # First use of this counter. Two concurrent first uses collide on the
        # primary key and the loser's transaction fails as a whole.
        await session.execute(insert(SequenceCounter).values(name=name, value=1))
        return 1

    value = await session.scalar(select(SequenceCounter.value).where(SequenceCounter.name == name))
    return int(value)


@dataclass
class BillReconciliation:
    bill: Bill
    active_items: List[BillItem]
    removed_items: List[BillItem]

    @property
    def snapshot_total_meals(self) -> int:
        return self.bill.total_meals

    @property
    def snapshot_total_amount(self) -> float:
        return self.bill.total_amount

    @property
    def active_total_meals(self) -> int:
        return len(self.active_items)

    @property
    def active_total_amount(self) -> float:
        return sum(item.price for item in self.active_items)


class BillingEngine:
    def __init__(
        self,
        session: AsyncSession,
        ledger: AttendanceLedger,
        notifier: Optional[NotificationService] = None,
        *,
        number_prefix: str = settings.BILL_NUMBER_PREFIX,
        number_width: int = settings.BILL_NUMBER_WIDTH,
    ):
        self.session = session
        self.ledger = ledger
        self.notifier = notifier
        self.number_prefix = number_prefix
        self.number_width = number_width

    async def generate_bill(
        self,
        *,
        subscriber_id: str,
        subscriber_name: str,
        start_date: date,
        end_date: date,
        generated_by: Optional[str] = None,
    ) -> Bill:
        check_subscriber_id(subscriber_id)
        name = check_name(subscriber_name, min_len=1)
        check_date_range(start_date, end_date)

        records = await self.ledger.window(subscriber_id, start_date, end_date)
        if not records:
            raise NotFoundError("No attendance records found for the selected date range")

        items = [
            BillItem(position=i, date=r.date, meal_type=r.meal_type, price=float(r.price))
            for i, r in enumerate(records)
        ]
        total_amount = sum(item.price for item in items)

        try:
            number = await next_sequence_value(self.session, BILL_COUNTER)
            bill = Bill(
                bill_number=format_bill_number(number, self.number_prefix, self.number_width),
                subscriber_id=subscriber_id,
                subscriber_name=name,
                start_date=start_date,
                end_date=end_date,
                total_meals=len(items),
                total_amount=total_amount,
                status=BillStatus.GENERATED.value,
                generated_by=generated_by,
                items=items,
            )
            self.session.add(bill)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error("Bill generation failed for %s: %s", subscriber_id, e)
            raise InternalError("Failed to generate bill") from e

        await self.session.refresh(bill)
        logger.info(
            "Bill %s generated for %s: %d meals, total %.2f",
            bill.bill_number, subscriber_id, bill.total_meals, bill.total_amount,
        )
        await self._notify(
            bill,
            title="Bill Generated",
            message=(
                f"Your bill for {start_date.isoformat()} to {end_date.isoformat()} has been generated. "
                f"Total: ₹{total_amount:g}"
            ),
            sent_by=generated_by,
        )
        return bill

    async def reconcile_for_display(self, bill_or_id: Union[Bill, int]) -> BillReconciliation:
        """
        Split the bill's snapshot into lines still backed by a ledger record and
        lines whose attendance was deleted after billing. Read-only.
        """
        bill = bill_or_id if isinstance(bill_or_id, Bill) else await self.get(bill_or_id)
        live = await self.ledger.live_keys(bill.subscriber_id, {item.date for item in bill.items})
        active, removed = [], []
        for item in bill.items:
            (active if (item.date, item.meal_type) in live else removed).append(item)
        if removed:
            logger.info("Bill %s: %d snapshot lines no longer in ledger", bill.bill_number, len(removed))
        return BillReconciliation(bill=bill, active_items=active, removed_items=removed)

    async def update_status(
        self,
        bill_id: int,
        new_status: Union[BillStatus, str],
        *,
        updated_by: Optional[str] = None,
    ) -> Bill:
        try:
            status = BillStatus(new_status)
        except ValueError:
            raise ValidationError("Invalid status")

        bill = await self.get(bill_id)
        previous = bill.status
        if previous == status.value:
            return bill
        bill.status = status.value
        await self.session.commit()
        await self.session.refresh(bill)
        logger.info("Bill %s status %s -> %s by %s", bill.bill_number, previous, status.value, updated_by)
        await self._notify(
            bill,
            title="Bill Status Updated",
            message=f"Bill {bill.bill_number} is now {status.value}.",
            sent_by=updated_by,
        )
        return bill

    async def get(self, bill_id: int) -> Bill:
        bill = await self.session.get(Bill, bill_id)
        if bill is None:
            raise NotFoundError("Bill not found")
        return bill

    async def list_bills(
        self,
        *,
        subscriber_id: Optional[str] = None,
        status: Optional[Union[BillStatus, str]] = None,
    ) -> List[Bill]:
        stmt = select(Bill)
        if subscriber_id:
            stmt = stmt.where(Bill.subscriber_id == subscriber_id)
        if status:
            try:
                stmt = stmt.where(Bill.status == BillStatus(status).value)
            except ValueError:
                raise ValidationError("Invalid status")
        stmt = stmt.order_by(Bill.created_at.desc(), Bill.id.desc())
        return list((await self.session.execute(stmt)).scalars().all())

    async def attendance_history(
        self,
        subscriber_id: str,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ):
        """Billing preview: every ledger record of the subscriber, newest first."""
        check_subscriber_id(subscriber_id)
        check_date_range(date_from, date_to)
        return await self.ledger.window(subscriber_id, date_from, date_to, newest_first=True)

    async def _notify(self, bill: Bill, *, title: str, message: str, sent_by: Optional[str]) -> None:
        if self.notifier is None:
            return
        await self.notifier.emit_quietly(NotificationDraft(
            subscriber_id=bill.subscriber_id,
            subscriber_name=bill.subscriber_name,
            title=title,
            message=message,
            type=NotificationType.BILL,
            related=RelatedEntity(kind=RelatedEntityKind.BILL, id=bill.id),
            sent_by=sent_by,
        ))
