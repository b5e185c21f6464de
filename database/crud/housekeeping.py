"""
Housekeeping CRUD Operations

Rate-limit counters and retention sweep logs.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import RateLimit, CleanupLog

logger = logging.getLogger(__name__)


async def hit_rate_limit(
    db: AsyncSession,
    key: str,
    limit: int,
    window_ms: int,
    now_ms: int,
) -> bool:
    """
    Count one request against a fixed window.

    The counter row is locked for the rest of the transaction, so
    concurrent requests for the same key are serialized.

    Args:
        db: Database session
        key: "<action>:<user hash>"
        limit: Allowed requests per window
        window_ms: Window length in millis
        now_ms: Current time in millis

    Returns:
        True if the request is allowed
    """
    result = await db.execute(
        select(RateLimit).where(RateLimit.key == key).with_for_update()
    )
    counter = result.scalar_one_or_none()

    if counter is None:
        db.add(RateLimit(key=key, count=1, window_start=now_ms))
        await db.flush()
        return True

    if now_ms - counter.window_start >= window_ms:
        counter.count = 1
        counter.window_start = now_ms
        await db.flush()
        return True

    if counter.count >= limit:
        return False

    counter.count += 1
    await db.flush()
    return True


async def create_cleanup_log(
    db: AsyncSession,
    cutoff: int,
    interactions_deleted: int,
    notifications_deleted: int,
    reports_deleted: int,
) -> CleanupLog:
    """Record the outcome of a retention sweep."""
    entry = CleanupLog(
        cutoff=cutoff,
        interactions_deleted=interactions_deleted,
        notifications_deleted=notifications_deleted,
        reports_deleted=reports_deleted,
    )

    db.add(entry)
    await db.flush()

    logger.info(
        f"Cleanup logged: {interactions_deleted} interactions, "
        f"{notifications_deleted} notifications, {reports_deleted} reports"
    )
    return entry
