"""
Fixed-window rate limiting backed by the ``rate_limit_windows`` table, so every
worker process shares the same counters.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.errors import RateLimitExceeded
from navdrishti.models import RateLimitWindow

logger = logging.getLogger(__name__)


def window_start(now: datetime, window_seconds: int) -> datetime:
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window_seconds, tz=timezone.utc)


async def _increment(session: AsyncSession, key: str, start: datetime) -> int:
    for _ in range(2):
        result = await session.execute(
            update(RateLimitWindow)
            .where(RateLimitWindow.bucket_key == key, RateLimitWindow.window_start == start)
            .values(count=RateLimitWindow.count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            break
        try:
            session.add(RateLimitWindow(bucket_key=key, window_start=start, count=1))
            await session.flush()
            break
        except IntegrityError:
            # Another process opened the window first; count against theirs
            await session.rollback()
    return (
        await session.execute(
            select(RateLimitWindow.count).where(
                RateLimitWindow.bucket_key == key, RateLimitWindow.window_start == start
            )
        )
    ).scalar_one()


async def hit(
    session: AsyncSession,
    key: str,
    limit: int,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Count one request against *key* and commit the counter.

    Raises ``RateLimitExceeded`` once the window holds more than *limit*
    requests.  Must run before the caller writes anything else on *session*.
    """
    now = now or datetime.now(timezone.utc)
    start = window_start(now, window_seconds)
    count = await _increment(session, key, start)
    await session.commit()

    if count > limit:
        retry_after = max(1, math.ceil((start + timedelta(seconds=window_seconds) - now).total_seconds()))
        logger.warning("Rate limit hit for %s (%d/%d)", key, count, limit)
        raise RateLimitExceeded(retry_after=retry_after)
    return count


async def purge_expired(
    session: AsyncSession, window_seconds: int, now: Optional[datetime] = None
) -> int:
    """Drop windows that can no longer be counted against."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        delete(RateLimitWindow).where(
            RateLimitWindow.window_start < window_start(now, window_seconds)
        )
    )
    return result.rowcount or 0
