import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy import Update, func, select
from sqlalchemy.exc import OperationalError

from conftest import FakeChannel, SUBSCRIBER_ID, OTHER_SUBSCRIBER_ID
from core.errors import ConflictError, NotFoundError, ValidationError
from models.db_models import Notification
from workers.expiry_sweeper import ExpirySweeper


async def create(lifecycle, subscriber_id=SUBSCRIBER_ID, plan="monthly", start=date(2024, 1, 1),
                 end=date(2024, 1, 31), price=3000, **extra):
    return await lifecycle.create(
        subscriber_id=subscriber_id,
        subscriber_name="Asha Rao",
        plan=plan,
        start_date=start,
        end_date=end,
        price=price,
        **extra,
    )


async def expired_notifications(session, subscriber_id=SUBSCRIBER_ID):
    stmt = (
        select(func.count(Notification.id))
        .where(Notification.subscriber_id == subscriber_id)
        .where(Notification.title == "Subscription Expired")
    )
    return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
@pytest.mark.parametrize("plan,meals", [("weekly", 7), ("monthly", 30)])
async def test_default_meals_per_plan(lifecycle, plan, meals):
    sub = await create(lifecycle, plan=plan)
    assert sub.meals_included == meals
    assert sub.status == "active"


@pytest.mark.asyncio
async def test_explicit_meals_included_wins(lifecycle):
    sub = await create(lifecycle, plan="weekly", meals_included=14)
    assert sub.meals_included == 14


@pytest.mark.asyncio
@pytest.mark.parametrize("end", [date(2024, 1, 1), date(2023, 12, 31)])
async def test_end_date_must_follow_start_date(lifecycle, end):
    with pytest.raises(ValidationError) as exc:
        await create(lifecycle, end=end)
    assert exc.value.message == "End date must be after start date"


@pytest.mark.asyncio
async def test_pause_resume_cancel(lifecycle):
    sub = await create(lifecycle)

    assert (await lifecycle.pause(sub.id)).status == "paused"
    assert (await lifecycle.resume(sub.id)).status == "active"
    assert (await lifecycle.cancel(sub.id)).status == "cancelled"
    # cancelling twice is a no-op
    assert (await lifecycle.cancel(sub.id)).status == "cancelled"


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["active", "paused", "expired"])
async def test_terminal_states_cannot_be_left(lifecycle, target):
    sub = await create(lifecycle)
    await lifecycle.cancel(sub.id)
    with pytest.raises(ConflictError):
        await lifecycle.set_status(sub.id, target)


@pytest.mark.asyncio
async def test_update_rejected_for_terminal_subscription(lifecycle):
    sub = await create(lifecycle)
    await lifecycle.expire(sub.id)
    with pytest.raises(ConflictError):
        await lifecycle.update(sub.id, price=100)


@pytest.mark.asyncio
async def test_update_revalidates_dates(lifecycle):
    sub = await create(lifecycle)
    with pytest.raises(ValidationError):
        await lifecycle.update(sub.id, end_date=date(2023, 12, 1))
    updated = await lifecycle.update(sub.id, end_date=date(2024, 2, 29), price=3200)
    assert updated.end_date == date(2024, 2, 29)
    assert updated.price == 3200.0


@pytest.mark.asyncio
async def test_get_missing_is_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.get(12345)


@pytest.mark.asyncio
async def test_sweep_expires_once_and_notifies_once(lifecycle, session, registry):
    channel = FakeChannel()
    await registry.register(SUBSCRIBER_ID, channel)
    ended = await create(lifecycle, end=date(2024, 1, 31))
    paused = await create(lifecycle, end=date(2024, 1, 20))
    await lifecycle.pause(paused.id)
    running = await create(lifecycle, end=date(2024, 3, 1))
    ended_id, paused_id, running_id = ended.id, paused.id, running.id

    now = datetime(2024, 2, 1, 9, 0)
    first = await lifecycle.sweep_expired(now)
    second = await lifecycle.sweep_expired(now)

    assert first["expired_count"] == 2
    assert sorted(first["expired_ids"]) == sorted([ended_id, paused_id])
    assert first["failed_ids"] == []
    assert second == {"expired_count": 0, "expired_ids": [], "failed_ids": []}
    assert (await lifecycle.get(running_id)).status == "active"
    assert await expired_notifications(session) == 2
    assert [f["data"]["title"] for f in channel.sent].count("Subscription Expired") == 2


@pytest.mark.asyncio
async def test_sweep_keeps_subscription_ending_today(lifecycle):
    sub = await create(lifecycle, end=date(2024, 2, 1))
    result = await lifecycle.sweep_expired(datetime(2024, 2, 1, 23, 59))
    assert result["expired_count"] == 0
    assert (await lifecycle.get(sub.id)).status == "active"


@pytest.mark.asyncio
async def test_sweep_skips_cancelled(lifecycle, session):
    sub = await create(lifecycle)
    await lifecycle.cancel(sub.id)
    result = await lifecycle.sweep_expired(datetime(2024, 3, 1))
    assert result["expired_count"] == 0
    assert await expired_notifications(session) == 0


@pytest.mark.asyncio
async def test_list_expiring_within(lifecycle):
    soon = await create(lifecycle, end=date(2024, 2, 5))
    sooner = await create(lifecycle, subscriber_id=OTHER_SUBSCRIBER_ID, end=date(2024, 2, 2))
    await create(lifecycle, end=date(2024, 3, 1))
    paused = await create(lifecycle, end=date(2024, 2, 3))
    await lifecycle.pause(paused.id)

    subs = await lifecycle.list_expiring_within(7, now=datetime(2024, 2, 1))
    assert [s.id for s in subs] == [sooner.id, soon.id]


@pytest.mark.asyncio
async def test_list_filters_and_sorts_by_start_desc(lifecycle):
    await create(lifecycle, start=date(2024, 1, 1), end=date(2024, 1, 8), plan="weekly")
    await create(lifecycle, start=date(2024, 2, 1), end=date(2024, 3, 1))
    await create(lifecycle, subscriber_id=OTHER_SUBSCRIBER_ID, start=date(2024, 3, 1), end=date(2024, 3, 31))

    subs, pagination = await lifecycle.list(subscriber_id=SUBSCRIBER_ID)
    assert [s.start_date for s in subs] == [date(2024, 2, 1), date(2024, 1, 1)]
    assert pagination.total == 2

    weekly, _ = await lifecycle.list(plan="weekly")
    assert len(weekly) == 1


@pytest.mark.asyncio
async def test_stats(lifecycle):
    await create(lifecycle, plan="weekly", price=700, end=date(2024, 1, 8))
    await create(lifecycle, plan="monthly", price=3000)
    cancelled = await create(lifecycle, plan="monthly", price=2600)
    await lifecycle.cancel(cancelled.id)

    stats = await lifecycle.stats()
    assert stats["total_subscriptions"] == 3
    assert stats["total_revenue"] == 6300.0
    assert stats["total_meals_included"] == 67
    assert {row["key"]: row["count"] for row in stats["by_plan"]} == {"monthly": 2, "weekly": 1}
    assert {row["key"]: row["count"] for row in stats["by_status"]} == {"active": 2, "cancelled": 1}

    monthly_active = await lifecycle.stats(plan="monthly", status="active")
    assert monthly_active["total_subscriptions"] == 1
    assert monthly_active["average_price"] == 3000.0


@pytest.mark.asyncio
async def test_background_sweeper_runs_until_stopped(lifecycle, session_maker, registry):
    await create(lifecycle, end=date(2024, 1, 31))
    sweeper = ExpirySweeper(session_maker, registry, interval_sec=60, clock=lambda: datetime(2024, 2, 1))

    sweeper.start()
    for _ in range(50):
        if sweeper.runs:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert sweeper.runs == 1
    assert sweeper.expired_total == 1
    assert (await sweeper.run_once())["expired_count"] == 0


@pytest.mark.asyncio
async def test_sweep_continues_past_a_failing_record(lifecycle, session, monkeypatch):
    locked = await create(lifecycle, end=date(2024, 1, 10))
    ended = await create(lifecycle, end=date(2024, 1, 31))
    locked_id, ended_id = locked.id, ended.id

    execute = session.execute
    updates = []

    async def flaky_execute(statement, *args, **kwargs):
        if isinstance(statement, Update):
            updates.append(statement)
            if len(updates) == 1:
                raise OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))
        return await execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", flaky_execute)
    result = await lifecycle.sweep_expired(datetime(2024, 2, 1))

    assert result["failed_ids"] == [locked_id]
    assert result["expired_ids"] == [ended_id]
    assert (await lifecycle.get(locked_id)).status == "active"
    assert (await lifecycle.get(ended_id)).status == "expired"

    monkeypatch.undo()
    retry = await lifecycle.sweep_expired(datetime(2024, 2, 1))
    assert retry["expired_ids"] == [locked_id]
