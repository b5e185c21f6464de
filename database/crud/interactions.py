"""
Interaction CRUD Operations

Append-only contact edges. Edges are only ever read by partner: the
owner is the one vouching for the contact.
"""

import logging
from typing import List

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Interaction

logger = logging.getLogger(__name__)


async def record_interaction(
    db: AsyncSession,
    owner_graph_id: str,
    partner_graph_id: str,
    partner_display_name: str,
    recorded_at: int,
) -> Interaction:
    """
    Store a new edge.

    Args:
        db: Database session
        owner_graph_id: Graph hash of the user recording the interaction
        partner_graph_id: Graph hash of the other party
        partner_display_name: Name the owner sees for the partner
        recorded_at: Epoch millis

    Returns:
        Created interaction
    """
    interaction = Interaction(
        owner_graph_id=owner_graph_id,
        partner_graph_id=partner_graph_id,
        partner_display_name=partner_display_name,
        recorded_at=recorded_at,
    )

    db.add(interaction)
    await db.flush()
    await db.refresh(interaction)

    logger.debug(f"Recorded interaction {owner_graph_id[:8]}... -> {partner_graph_id[:8]}...")
    return interaction


async def find_edges_by_partner(
    db: AsyncSession,
    partner_graph_id: str,
    start: int,
    end: int,
) -> List[Interaction]:
    """
    Edges whose partner is `partner_graph_id`, recorded in [start, end].

    Args:
        db: Database session
        partner_graph_id: Node being expanded
        start: Window start (epoch millis, inclusive)
        end: Window end (epoch millis, inclusive)

    Returns:
        Matching interactions, most recent first
    """
    result = await db.execute(
        select(Interaction)
        .where(
            and_(
                Interaction.partner_graph_id == partner_graph_id,
                Interaction.recorded_at >= start,
                Interaction.recorded_at <= end,
            )
        )
        .order_by(Interaction.recorded_at.desc())
    )
    return list(result.scalars().all())


async def delete_expired_interactions(
    db: AsyncSession,
    cutoff: int,
    batch_size: int = 500,
) -> int:
    """
    Delete one batch of interactions recorded before `cutoff`.

    Returns:
        Number of interactions deleted (0 when nothing is left)
    """
    batch = (
        select(Interaction.id)
        .where(Interaction.recorded_at < cutoff)
        .limit(batch_size)
    )

    result = await db.execute(
        delete(Interaction).where(Interaction.id.in_(batch))
    )

    deleted_count = result.rowcount
    if deleted_count > 0:
        logger.info(f"Deleted {deleted_count} expired interactions")

    return deleted_count
