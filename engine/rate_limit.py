"""
Rate Limiting

Per-user, per-action fixed one-hour windows, counted in the store so
limits hold across workers. If the counter cannot be read the request
is allowed: reporting an exposure matters more than throttling it.
"""

import enum
import logging
from typing import Callable, Optional

from .config import PropagationSettings, get_propagation_settings
from .errors import ExposureError, RateLimitExceededError
from .hashing import short_hash
from .store import ExposureStore
from .windows import now_millis

logger = logging.getLogger(__name__)


class RateLimitAction(str, enum.Enum):
    POSITIVE_REPORT = "positive_report"
    NEGATIVE_TEST = "negative_test"
    REPORT_DELETION = "report_deletion"


class RateLimiter:
    """Store-backed rate limiter."""

    def __init__(
        self,
        store: ExposureStore,
        settings: Optional[PropagationSettings] = None,
        clock: Callable[[], int] = now_millis,
    ):
        self.store = store
        self.settings = settings or get_propagation_settings()
        self.clock = clock

    def limit_for(self, action: RateLimitAction) -> int:
        limits = {
            RateLimitAction.POSITIVE_REPORT: self.settings.rate_limit_positive_report,
            RateLimitAction.NEGATIVE_TEST: self.settings.rate_limit_negative_test,
            RateLimitAction.REPORT_DELETION: self.settings.rate_limit_report_deletion,
        }
        return limits[action]

    async def check(self, action: RateLimitAction, user_key: str) -> bool:
        """
        Count one request.

        Args:
            action: What the user is doing
            user_key: A hash of the user (never the raw id)

        Returns:
            True if allowed
        """
        limit = self.limit_for(action)
        try:
            return await self.store.hit_rate_limit(
                key=f"{action.value}:{user_key}",
                limit=limit,
                window_ms=self.settings.rate_limit_window_seconds * 1000,
                now_ms=self.clock(),
            )
        except ExposureError as e:
            logger.warning(f"Rate limit check failed for {action.value}; allowing request: {e}")
            return True

    async def enforce(self, action: RateLimitAction, user_key: str) -> None:
        """
        Raises:
            RateLimitExceededError: Limit reached for this window
        """
        if not await self.check(action, user_key):
            logger.warning(f"Rate limit hit: {action.value} by {short_hash(user_key)}")
            raise RateLimitExceededError(action.value, self.limit_for(action))
