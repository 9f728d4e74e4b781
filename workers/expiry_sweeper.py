"""
Subscription expiry sweeper.

Purpose:
- Periodically move active/paused subscriptions past their end date to expired
- Emit one "Subscription Expired" notification per actual transition
- Run inside the API process as an asyncio task (started in the app lifespan)

Usage:
- started automatically when EXPIRY_SWEEP_INTERVAL_SEC > 0
- python -m workers.expiry_sweeper runs a single sweep and exits

Notes:
- Every pass opens its own session; a failing pass is logged and the loop
  keeps going.
- Running several sweepers at once is safe: the conditional UPDATE in
  SubscriptionLifecycle.sweep_expired lets exactly one of them expire a row.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from core import db
from services.channel_registry import ChannelRegistry
from services.notification_service import NotificationService
from services.subscription_service import SubscriptionLifecycle

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Background task wrapper around SubscriptionLifecycle.sweep_expired."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: ChannelRegistry,
        interval_sec: float = settings.EXPIRY_SWEEP_INTERVAL_SEC,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.interval_sec = interval_sec
        self.clock = clock
        self.runs = 0
        self.expired_total = 0
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> dict:
        async with self.session_maker() as session:
            lifecycle = SubscriptionLifecycle(session, NotificationService(session, self.registry))
            result = await lifecycle.sweep_expired(self.clock())
        self.runs += 1
        self.expired_total += result["expired_count"]
        return result

    async def run(self) -> None:
        logger.info("Expiry sweeper started (every %ss)", self.interval_sec)
        try:
            while True:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Expiry sweep failed: %s", e)
                await asyncio.sleep(self.interval_sec)
        finally:
            logger.info("Expiry sweeper stopped. Runs: %d, expired: %d", self.runs, self.expired_total)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="expiry-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


async def main():
    """Entry point for a one-shot sweep."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    if db.async_session_maker is None:
        logger.error("Database is disabled; nothing to sweep")
        return
    sweeper = ExpirySweeper(db.async_session_maker, ChannelRegistry(settings.PUSH_TIMEOUT_SEC))
    result = await sweeper.run_once()
    logger.info("Sweep result: %s", result)


if __name__ == "__main__":
    asyncio.run(main())
