"""
Notification CRUD Operations

Handles notification retrieval, the locked reads used by upserts and
chain rewrites, chain-membership queries and batched field updates.
"""

import logging
from typing import Optional, List, Any, Dict, Sequence
from uuid import UUID

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Notification, NotificationType

logger = logging.getLogger(__name__)


async def get_notification(
    db: AsyncSession,
    notification_id: UUID,
    recipient_id: Optional[str] = None,
) -> Optional[Notification]:
    """
    Get notification by ID.

    Args:
        db: Database session
        notification_id: Notification UUID
        recipient_id: If provided, verify ownership

    Returns:
        Notification if found
    """
    query = select(Notification).where(Notification.id == notification_id)

    if recipient_id:
        query = query.where(Notification.recipient_id == recipient_id)

    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_notification_for_recipient(
    db: AsyncSession,
    report_id: UUID,
    recipient_id: str,
    for_update: bool = False,
) -> Optional[Notification]:
    """
    Get the single notification for a (report, recipient) pair.

    Args:
        db: Database session
        report_id: Report UUID
        recipient_id: Notification-domain hash
        for_update: Lock the row until the transaction ends

    Returns:
        Notification if found
    """
    query = select(Notification).where(
        and_(
            Notification.report_id == report_id,
            Notification.recipient_id == recipient_id,
        )
    )

    if for_update:
        query = query.with_for_update()

    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_notification(
    db: AsyncSession,
    values: Dict[str, Any],
) -> Notification:
    """
    Insert a notification.

    Raises IntegrityError when (report_id, recipient_id) already exists;
    callers resolve that by merging.

    Args:
        db: Database session
        values: Column values

    Returns:
        Created notification
    """
    notification = Notification(**values)

    db.add(notification)
    await db.flush()
    await db.refresh(notification)

    logger.info(f"Created notification {notification.id} at hop {notification.hop_depth}")
    return notification


async def find_notifications_by_chain_member(
    db: AsyncSession,
    chain_id: str,
) -> List[Notification]:
    """
    Active notifications with `chain_id` on their primary path or on
    any stored secondary path.

    Args:
        db: Database session
        chain_id: Chain-domain hash

    Returns:
        Matching notifications
    """
    result = await db.execute(
        select(Notification).where(
            and_(
                or_(
                    Notification.chain_path.contains([chain_id]),
                    Notification.chain_paths.contains([[chain_id]]),
                ),
                Notification.deleted_at.is_(None),
            )
        )
    )
    return list(result.scalars().all())


async def lock_notifications(
    db: AsyncSession,
    notification_ids: Sequence[UUID],
) -> List[Notification]:
    """
    Lock active notifications for a read-modify-write.

    Rows are locked in id order so concurrent batches cannot deadlock.

    Args:
        db: Database session
        notification_ids: Notification UUIDs

    Returns:
        Locked notifications, ordered by id
    """
    result = await db.execute(
        select(Notification)
        .where(
            and_(
                Notification.id.in_(list(notification_ids)),
                Notification.deleted_at.is_(None),
            )
        )
        .order_by(Notification.id)
        .with_for_update()
    )
    return list(result.scalars().all())


async def get_recipient_notifications(
    db: AsyncSession,
    recipient_id: str,
    unread_only: bool = False,
    notification_type: Optional[NotificationType] = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[List[Notification], int, int]:
    """
    Get notifications for a recipient, newest first.

    Args:
        db: Database session
        recipient_id: Notification-domain hash
        unread_only: Only return unread notifications
        notification_type: Filter by type
        include_deleted: Include soft-deleted notifications
        limit: Max notifications to return
        offset: Pagination offset

    Returns:
        Tuple of (notifications, total_count, unread_count)
    """
    filters = [Notification.recipient_id == recipient_id]

    if not include_deleted:
        filters.append(Notification.deleted_at.is_(None))

    if unread_only:
        filters.append(Notification.is_read == False)

    if notification_type:
        filters.append(Notification.type == notification_type)

    count_query = select(func.count(Notification.id)).where(and_(*filters))
    total = await db.execute(count_query)
    total_count = total.scalar() or 0

    unread_query = select(func.count(Notification.id)).where(
        and_(
            Notification.recipient_id == recipient_id,
            Notification.deleted_at.is_(None),
            Notification.is_read == False,
        )
    )
    unread = await db.execute(unread_query)
    unread_count = unread.scalar() or 0

    query = (
        select(Notification)
        .where(and_(*filters))
        .order_by(Notification.received_at.desc())
        .limit(limit)
        .offset(offset)
    )

    result = await db.execute(query)
    notifications = list(result.scalars().all())

    return notifications, total_count, unread_count


async def get_report_notifications(
    db: AsyncSession,
    report_id: UUID,
    include_deleted: bool = False,
) -> List[Notification]:
    """All notifications produced by one report."""
    filters = [Notification.report_id == report_id]

    if not include_deleted:
        filters.append(Notification.deleted_at.is_(None))

    result = await db.execute(
        select(Notification).where(and_(*filters))
    )
    return list(result.scalars().all())


async def count_report_notifications(
    db: AsyncSession,
    report_id: UUID,
) -> int:
    """Number of active notifications produced by one report."""
    result = await db.execute(
        select(func.count(Notification.id)).where(
            and_(
                Notification.report_id == report_id,
                Notification.deleted_at.is_(None),
            )
        )
    )
    return result.scalar() or 0


async def update_notification(
    db: AsyncSession,
    notification_id: UUID,
    values: Dict[str, Any],
) -> bool:
    """
    Apply column updates to one notification.

    Returns:
        True if the notification exists
    """
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id)
        .values(**values)
    )
    return result.rowcount > 0


async def mark_notification_read(
    db: AsyncSession,
    notification_id: UUID,
    recipient_id: str,
    updated_at: int,
) -> Optional[Notification]:
    """
    Mark a notification as read.

    Args:
        db: Database session
        notification_id: Notification UUID
        recipient_id: Notification-domain hash (for verification)
        updated_at: Epoch millis

    Returns:
        Updated notification if found
    """
    notification = await get_notification(db, notification_id, recipient_id)
    if not notification:
        return None

    notification.is_read = True
    notification.updated_at = updated_at
    await db.flush()
    await db.refresh(notification)

    return notification


async def delete_expired_notifications(
    db: AsyncSession,
    cutoff: int,
    batch_size: int = 500,
) -> int:
    """
    Delete one batch of notifications received before `cutoff`.

    Returns:
        Number of notifications deleted
    """
    batch = (
        select(Notification.id)
        .where(Notification.received_at < cutoff)
        .limit(batch_size)
    )

    result = await db.execute(
        delete(Notification).where(Notification.id.in_(batch))
    )

    deleted_count = result.rowcount
    if deleted_count > 0:
        logger.info(f"Deleted {deleted_count} expired notifications")

    return deleted_count
