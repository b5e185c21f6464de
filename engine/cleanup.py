"""
Retention Cleanup

Deletes interactions, notifications and reports older than the
retention period, batch by batch, and logs the totals.
"""

import logging
from typing import Callable, Optional

from .config import PropagationSettings, get_propagation_settings
from .records import CleanupStats
from .retry import with_retries
from .store import ExposureStore
from .windows import now_millis, retention_boundary

logger = logging.getLogger(__name__)


async def cleanup_expired_data(
    store: ExposureStore,
    settings: Optional[PropagationSettings] = None,
    clock: Callable[[], int] = now_millis,
) -> CleanupStats:
    """
    Run one retention sweep.

    Args:
        store: Exposure store
        settings: Retention period and batch size
        clock: Epoch-millis clock

    Returns:
        Totals removed
    """
    settings = settings or get_propagation_settings()
    cutoff = retention_boundary(clock(), settings.retention_days)
    batch_size = settings.batch_size
    totals = CleanupStats(cutoff=cutoff)

    logger.info(f"Retention sweep: removing data older than {settings.retention_days} days")

    while True:
        batch = await with_retries(
            lambda: store.delete_expired_batch(cutoff, batch_size),
            description="retention batch",
            attempts=settings.store_retry_attempts,
            base_delay=settings.store_retry_base_delay,
            max_delay=settings.store_retry_max_delay,
        )
        totals.interactions_deleted += batch.interactions_deleted
        totals.notifications_deleted += batch.notifications_deleted
        totals.reports_deleted += batch.reports_deleted

        if max(batch.interactions_deleted, batch.notifications_deleted, batch.reports_deleted) < batch_size:
            break

    await store.record_cleanup(totals)

    logger.info(
        f"Retention sweep done: {totals.interactions_deleted} interactions, "
        f"{totals.notifications_deleted} notifications, {totals.reports_deleted} reports"
    )
    return totals
