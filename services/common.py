"""Shared validation and pagination helpers for the service layer."""
import math
import re
from datetime import date
from typing import Any, List, Optional, Tuple

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ValidationError
from models.schemas import Pagination

PHONE_RE = re.compile(r"^\d{10}$")
MAX_PAGE_SIZE = 100


def check_subscriber_id(subscriber_id: str) -> None:
    if not subscriber_id or not PHONE_RE.fullmatch(str(subscriber_id)):
        raise ValidationError("Please enter a valid 10-digit phone number")


def check_name(name: Optional[str], *, min_len: int = 2, max_len: int = 100) -> str:
    cleaned = (name or "").strip()
    if not (min_len <= len(cleaned) <= max_len):
        raise ValidationError(f"Name must be between {min_len} and {max_len} characters")
    return cleaned


def check_price(price: Any) -> float:
    try:
        value = float(price)
    except (TypeError, ValueError):
        raise ValidationError("Price must be a number")
    if value < 0 or math.isnan(value) or math.isinf(value):
        raise ValidationError("Price must be a positive number")
    return value


def check_not_future(day: date, today: Optional[date] = None) -> None:
    if day > (today or date.today()):
        raise ValidationError("Attendance date cannot be in the future")


def check_date_range(start: Optional[date], end: Optional[date], *, strict: bool = False) -> None:
    if start is None or end is None:
        return
    if strict and end <= start:
        raise ValidationError("End date must be after start date")
    if not strict and end < start:
        raise ValidationError("End date cannot be before start date")


def check_page(page: int, page_size: int) -> Tuple[int, int]:
    if page < 1:
        raise ValidationError("Page must be a positive integer")
    if not (1 <= page_size <= MAX_PAGE_SIZE):
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
    return page, page_size


async def paginate(session: AsyncSession, stmt: Select, page: int, page_size: int) -> Tuple[List[Any], Pagination]:
    page, page_size = check_page(page, page_size)
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = int((await session.execute(count_stmt)).scalar_one())
    result = await session.execute(stmt.offset((page - 1) * page_size).limit(page_size))
    items = list(result.scalars().all())
    return items, Pagination(
        current=page,
        pages=math.ceil(total / page_size) if total else 0,
        total=total,
        limit=page_size,
    )
