"""Tests for store-backed rate limiting and the retention sweep."""

import pytest

from engine.cleanup import cleanup_expired_data
from engine.errors import RateLimitExceededError, TransientStoreError
from engine.memory_store import InMemoryExposureStore
from engine.rate_limit import RateLimitAction, RateLimiter
from engine.records import ContactEdge, TestResult as Result
from engine.reports import ReportService, ReportSubmission

from tests.conftest import NOW, days_ago, gid


class MutableClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class BrokenCounterStore(InMemoryExposureStore):
    async def hit_rate_limit(self, key, limit, window_ms, now_ms):
        raise TransientStoreError("counter table unavailable")


# =============================================================================
# RATE LIMITS
# =============================================================================

class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, store, settings, clock):
        limiter = RateLimiter(store, settings, clock)

        results = [await limiter.check(RateLimitAction.NEGATIVE_TEST, "user-1") for _ in range(11)]

        assert results == [True] * 10 + [False]

    @pytest.mark.asyncio
    async def test_enforce_raises(self, store, settings, clock):
        limiter = RateLimiter(store, settings, clock)
        for _ in range(5):
            await limiter.enforce(RateLimitAction.REPORT_DELETION, "user-1")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.enforce(RateLimitAction.REPORT_DELETION, "user-1")
        assert exc_info.value.action == "report_deletion"

    @pytest.mark.asyncio
    async def test_window_resets_after_an_hour(self, store, settings):
        clock = MutableClock()
        limiter = RateLimiter(store, settings, clock)
        for _ in range(5):
            assert await limiter.check(RateLimitAction.POSITIVE_REPORT, "user-1")
        assert not await limiter.check(RateLimitAction.POSITIVE_REPORT, "user-1")

        clock.now += 3600 * 1000

        assert await limiter.check(RateLimitAction.POSITIVE_REPORT, "user-1")

    @pytest.mark.asyncio
    async def test_still_limited_inside_window(self, store, settings):
        clock = MutableClock()
        limiter = RateLimiter(store, settings, clock)
        for _ in range(5):
            await limiter.check(RateLimitAction.POSITIVE_REPORT, "user-1")

        clock.now += 3599 * 1000

        assert not await limiter.check(RateLimitAction.POSITIVE_REPORT, "user-1")

    @pytest.mark.asyncio
    async def test_fails_open_when_counter_unavailable(self, settings, clock):
        limiter = RateLimiter(BrokenCounterStore(), settings, clock)

        for _ in range(20):
            await limiter.enforce(RateLimitAction.POSITIVE_REPORT, "user-1")


# =============================================================================
# RETENTION
# =============================================================================

class TestCleanup:

    async def _edges(self, store, count, at):
        for index in range(count):
            await store.record_edge(ContactEdge(
                owner_graph_id=gid(f"owner-{index}"),
                partner_graph_id=gid("partner"),
                partner_display_name="",
                recorded_at=at,
            ))

    @pytest.mark.asyncio
    async def test_removes_only_expired(self, store, settings, clock):
        await self._edges(store, 3, days_ago(200))
        await self._edges(store, 2, days_ago(10))

        stats = await cleanup_expired_data(store, settings, clock)

        assert stats.interactions_deleted == 3
        assert stats.cutoff == days_ago(180)
        remaining = await store.find_edges_by_partner(gid("partner"), 0, NOW)
        assert len(remaining) == 2

    @pytest.mark.asyncio
    async def test_loops_over_batches_and_logs_once(self, store, settings, clock):
        small_batches = settings.model_copy(update={"batch_size": 2})
        await self._edges(store, 5, days_ago(200))

        stats = await cleanup_expired_data(store, small_batches, clock)

        assert stats.interactions_deleted == 5
        assert stats.total == 5
        assert len(store.cleanup_log) == 1
        assert store.cleanup_log[0].interactions_deleted == 5

    @pytest.mark.asyncio
    async def test_expired_reports_and_notifications(self, graph, store, sink, settings):
        await graph.add_users("A", "B")
        await graph.meet("B", "A", days_ago(204))
        old_clock = MutableClock(days_ago(200))
        service = ReportService(store, sink, settings, old_clock)
        await service.submit_report("A", "A", ReportSubmission(
            test_result=Result.POSITIVE,
            condition_labels=["HIV"],
            test_date=days_ago(203),
        ))

        stats = await cleanup_expired_data(store, settings, lambda: NOW)

        assert stats.reports_deleted == 1
        assert stats.notifications_deleted == 1
        assert stats.interactions_deleted == 1
