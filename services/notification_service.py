# services/notification_service.py
"""
Notification persistence + live fan-out.

emit() always writes the notifications row first (the durable log subscribers
can poll), then hands the serialized notification to the ChannelRegistry.
Delivery problems are logged and never reach the caller.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InternalError, NotFoundError
from models.db_models import Notification
from models.enums import NotificationType
from models.schemas import NotificationOut, RelatedEntity
from services.channel_registry import ChannelRegistry

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100


@dataclass
class NotificationDraft:
    subscriber_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.GENERAL
    subscriber_name: Optional[str] = None
    related: Optional[RelatedEntity] = None
    sent_by: Optional[str] = None

    def to_row(self) -> Notification:
        return Notification(
            subscriber_id=self.subscriber_id,
            subscriber_name=self.subscriber_name,
            title=self.title[:100],
            message=self.message[:500],
            type=NotificationType(self.type).value,
            read=False,
            related_kind=self.related.kind.value if self.related else None,
            related_id=self.related.id if self.related else None,
            sent_by=self.sent_by,
        )


def push_frame(notification: Notification) -> dict:
    return {"type": "notification", "data": NotificationOut.from_row(notification).model_dump(mode="json")}


class NotificationService:
    def __init__(self, session: AsyncSession, registry: ChannelRegistry):
        self.session = session
        self.registry = registry

    async def emit(self, draft: NotificationDraft) -> Notification:
        """Persist the notification, then push it to any live channel."""
        row = draft.to_row()
        try:
            self.session.add(row)
            await self.session.commit()
            await self.session.refresh(row)
        except Exception as e:
            await self.session.rollback()
            logger.error("Failed to persist notification for %s: %s", draft.subscriber_id, e)
            raise InternalError("Failed to persist notification") from e

        await self._deliver(row)
        return row

    async def emit_quietly(self, draft: NotificationDraft) -> Optional[Notification]:
        """
        emit() for domain event producers: their own operation has already
        committed, so a notification failure is logged and dropped.
        """
        try:
            return await self.emit(draft)
        except InternalError:
            logger.warning("Dropped '%s' notification for %s", draft.title, draft.subscriber_id)
            return None

    async def emit_batch(self, drafts: Sequence[NotificationDraft]) -> List[Notification]:
        rows = [d.to_row() for d in drafts]
        try:
            self.session.add_all(rows)
            await self.session.commit()
            for row in rows:
                await self.session.refresh(row)
        except Exception as e:
            await self.session.rollback()
            logger.error("Failed to persist notification batch (%d): %s", len(rows), e)
            raise InternalError("Failed to persist notifications") from e

        for row in rows:
            await self._deliver(row)
        return rows

    async def _deliver(self, row: Notification) -> None:
        try:
            report = await self.registry.push(row.subscriber_id, push_frame(row))
        except Exception as e:
            logger.error("Live delivery of notification %s failed: %s", row.id, e)
            return
        if report.delivered or report.failed:
            logger.info(
                "Notification %s pushed to %s: delivered=%d failed=%d",
                row.id, row.subscriber_id, report.delivered, report.failed,
            )

    async def get(self, notification_id: int) -> Notification:
        row = await self.session.get(Notification, notification_id)
        if row is None:
            raise NotFoundError("Notification not found")
        return row

    async def list_for_subscriber(self, subscriber_id: str, limit: int = 50) -> List[Notification]:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        stmt = (
            select(Notification)
            .where(Notification.subscriber_id == subscriber_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def unread_count(self, subscriber_id: str) -> int:
        stmt = (
            select(func.count(Notification.id))
            .where(Notification.subscriber_id == subscriber_id)
            .where(Notification.read.is_(False))
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def mark_read(self, notification_id: int) -> Notification:
        """Idempotent: an already-read notification is returned unchanged."""
        row = await self.get(notification_id)
        if not row.read:
            row.read = True
            await self.session.commit()
            await self.session.refresh(row)
        return row

    async def mark_all_read(self, subscriber_id: str) -> int:
        """Returns how many notifications flipped from unread to read."""
        stmt = (
            update(Notification)
            .where(Notification.subscriber_id == subscriber_id)
            .where(Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return int(result.rowcount or 0)
