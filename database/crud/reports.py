"""
Report CRUD Operations

Handles report creation, status transitions and retention.
"""

import logging
from typing import Optional, Any, Dict
from uuid import UUID

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Report

logger = logging.getLogger(__name__)


async def get_report(
    db: AsyncSession,
    report_id: UUID,
    reporter_id: Optional[str] = None,
) -> Optional[Report]:
    """
    Get report by ID.

    Args:
        db: Database session
        report_id: Report UUID
        reporter_id: If provided, verify ownership (report-domain hash)

    Returns:
        Report if found
    """
    query = select(Report).where(Report.id == report_id)

    if reporter_id:
        query = query.where(Report.reporter_id == reporter_id)

    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_report(
    db: AsyncSession,
    values: Dict[str, Any],
) -> Report:
    """
    Create a new report.

    Args:
        db: Database session
        values: Column values

    Returns:
        Created report
    """
    report = Report(**values)

    db.add(report)
    await db.flush()
    await db.refresh(report)

    logger.info(f"Created report {report.id} ({report.test_result.value})")
    return report


async def update_report(
    db: AsyncSession,
    report_id: UUID,
    values: Dict[str, Any],
) -> bool:
    """
    Apply column updates to a report.

    Returns:
        True if the report exists
    """
    result = await db.execute(
        update(Report)
        .where(Report.id == report_id)
        .values(**values)
    )
    return result.rowcount > 0


async def delete_report(
    db: AsyncSession,
    report_id: UUID,
) -> bool:
    """
    Delete a report.

    Returns:
        True if deleted, False if not found
    """
    result = await db.execute(
        delete(Report).where(Report.id == report_id)
    )

    deleted = result.rowcount > 0
    if deleted:
        logger.info(f"Deleted report: {report_id}")

    return deleted


async def delete_expired_reports(
    db: AsyncSession,
    cutoff: int,
    batch_size: int = 500,
) -> int:
    """
    Delete one batch of reports submitted before `cutoff`.

    Returns:
        Number of reports deleted
    """
    batch = (
        select(Report.id)
        .where(Report.reported_at < cutoff)
        .limit(batch_size)
    )

    result = await db.execute(
        delete(Report).where(Report.id.in_(batch))
    )

    deleted_count = result.rowcount
    if deleted_count > 0:
        logger.info(f"Deleted {deleted_count} expired reports")

    return deleted_count
