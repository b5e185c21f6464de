"""
User Directory CRUD Operations

Handles directory lookups by graph / notification hash, and the sync of
an authenticated user into the directory.
"""

import logging
from typing import Optional, List, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import User

logger = logging.getLogger(__name__)


async def get_user_by_uid(
    db: AsyncSession,
    uid: str,
) -> Optional[User]:
    """
    Get user by auth subject.

    Args:
        db: Database session
        uid: Clerk user ID

    Returns:
        User if found, None otherwise
    """
    result = await db.execute(
        select(User).where(User.uid == uid)
    )
    return result.scalar_one_or_none()


async def get_user_by_graph_id(
    db: AsyncSession,
    graph_id: str,
) -> Optional[User]:
    """
    Get user by graph-domain hash.

    Args:
        db: Database session
        graph_id: Graph-domain hash

    Returns:
        User if found, None otherwise
    """
    result = await db.execute(
        select(User).where(User.graph_id == graph_id)
    )
    return result.scalar_one_or_none()


async def get_users_by_graph_ids(
    db: AsyncSession,
    graph_ids: Sequence[str],
) -> List[User]:
    """
    Batched lookup by graph-domain hash. Unknown ids are simply absent
    from the result.
    """
    if not graph_ids:
        return []

    result = await db.execute(
        select(User).where(User.graph_id.in_(list(graph_ids)))
    )
    return list(result.scalars().all())


async def get_user_by_notification_id(
    db: AsyncSession,
    notification_id: str,
) -> Optional[User]:
    """
    Get user by notification-domain hash.

    Args:
        db: Database session
        notification_id: Notification-domain hash

    Returns:
        User if found, None otherwise
    """
    result = await db.execute(
        select(User).where(User.notification_id == notification_id)
    )
    return result.scalar_one_or_none()


async def get_users_by_notification_ids(
    db: AsyncSession,
    notification_ids: Sequence[str],
) -> List[User]:
    """Batched lookup by notification-domain hash."""
    if not notification_ids:
        return []

    result = await db.execute(
        select(User).where(User.notification_id.in_(list(notification_ids)))
    )
    return list(result.scalars().all())


async def upsert_user(
    db: AsyncSession,
    uid: str,
    graph_id: str,
    notification_id: str,
    display_name: str,
    push_token: Optional[str] = None,
) -> User:
    """
    Create the directory entry if missing, update it otherwise.

    Args:
        db: Database session
        uid: Clerk user ID
        graph_id: hash_graph(uid)
        notification_id: hash_notification(uid)
        display_name: Name shown to direct contacts
        push_token: Device push token (None keeps the stored one)

    Returns:
        User (created or existing)
    """
    user = await get_user_by_uid(db, uid)

    if user is None:
        user = User(
            uid=uid,
            graph_id=graph_id,
            notification_id=notification_id,
            display_name=display_name,
            push_token=push_token,
        )
        db.add(user)
        await db.flush()
        await db.refresh(user)
        logger.info(f"Created directory entry: {graph_id[:8]}...")
        return user

    changed = False
    if user.display_name != display_name:
        user.display_name = display_name
        changed = True
    if push_token is not None and user.push_token != push_token:
        user.push_token = push_token
        changed = True

    if changed:
        await db.flush()
        logger.debug(f"Updated directory entry: {graph_id[:8]}...")

    return user


async def clear_push_token(
    db: AsyncSession,
    graph_id: str,
) -> bool:
    """
    Remove a push token the delivery service rejected.

    Returns:
        True if a row was updated
    """
    result = await db.execute(
        update(User)
        .where(User.graph_id == graph_id)
        .values(push_token=None)
    )

    cleared = result.rowcount > 0
    if cleared:
        logger.info(f"Cleared invalid push token for {graph_id[:8]}...")

    return cleared
