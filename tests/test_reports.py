"""Tests for report submission, processing and deletion."""

import pytest

from engine.chain import TestStatus as Status
from engine.errors import (
    AuthorizationError,
    ExposureError,
    RateLimitExceededError,
    ReportNotFoundError,
    ReportValidationError,
)
from engine.hashing import hash_report
from engine.memory_store import InMemoryExposureStore
from engine.records import ReportStatus, TestResult as Result
from engine.reports import ReportService, ReportSubmission

from tests.conftest import DAY, NOW, ContactGraph, days_ago, nid


class BrokenEdgeStore(InMemoryExposureStore):
    """Edge lookups fail with an error the store does not classify."""

    async def find_edges_by_partner(self, partner_graph_id, start, end):
        raise RuntimeError("edge index corrupted")


@pytest.fixture
def service(store, sink, settings, clock):
    return ReportService(store, sink, settings, clock)


def positive(labels=("HIV",), test_date=None, **kwargs):
    return ReportSubmission(
        test_result=Result.POSITIVE,
        condition_labels=list(labels) if isinstance(labels, tuple) else labels,
        test_date=days_ago(1) if test_date is None else test_date,
        **kwargs,
    )


def negative(**kwargs):
    return ReportSubmission(test_result=Result.NEGATIVE, **kwargs)


@pytest.fixture
async def abc(graph):
    """B recorded A, C recorded B."""
    await graph.add_users("A", "B", "C")
    await graph.meet("B", "A", days_ago(2))
    await graph.meet("C", "B", days_ago(3))
    return graph


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:

    @pytest.mark.parametrize("submission, field", [
        (ReportSubmission(test_result="MAYBE", condition_labels=["HIV"], test_date=days_ago(1)), "test_result"),
        (positive(labels=()), "condition_labels"),
        (positive(labels=None), "condition_labels"),
        (positive(labels="x" * 501), "condition_labels"),
        (positive(labels=["x" * 300, "y" * 300]), "condition_labels"),
        (positive(test_date=NOW + DAY), "test_date"),
        (positive(test_date=days_ago(181)), "test_date"),
        (positive(privacy_level="PUBLIC"), "privacy_level"),
    ])
    def test_rejected_with_field(self, service, submission, field):
        with pytest.raises(ReportValidationError) as exc_info:
            service.validate("A", submission)
        assert exc_info.value.field == field

    def test_positive_requires_test_date(self, service):
        submission = ReportSubmission(test_result=Result.POSITIVE, condition_labels=["HIV"])
        with pytest.raises(ReportValidationError) as exc_info:
            service.validate("A", submission)
        assert exc_info.value.field == "test_date"

    @pytest.mark.parametrize("uid", ["", "   ", "u" * 129])
    def test_reporter_id(self, service, uid):
        with pytest.raises(ReportValidationError) as exc_info:
            service.validate(uid, positive())
        assert exc_info.value.field == "reporter_id"

    def test_labels_json_string_accepted(self, service):
        validated = service.validate("A", positive(labels='["HIV", "HPV"]'))
        assert validated.labels == ["HIV", "HPV"]

    def test_negative_needs_no_labels_or_date(self, service):
        validated = service.validate("A", negative())
        assert validated.test_result == Result.NEGATIVE
        assert validated.labels == []
        assert validated.test_date is None

    def test_test_date_at_retention_edge_accepted(self, service):
        validated = service.validate("A", positive(test_date=days_ago(180)))
        assert validated.test_date == days_ago(180)


# =============================================================================
# SUBMISSION
# =============================================================================

class TestSubmitPositive:

    @pytest.mark.asyncio
    async def test_completed_with_notified_count(self, abc, service, store, sink):
        report = await service.submit_report("A", "A", positive())

        assert report.status == ReportStatus.COMPLETED
        assert report.notified_count == 2
        assert report.processed_at == NOW
        assert report.reporter_id == hash_report("A")

        stored = await store.get_report(report.id)
        assert stored.status == ReportStatus.COMPLETED
        assert stored.notified_count == 2
        assert sink.types_for("token-B") == ["EXPOSURE"]
        assert sink.types_for("token-C") == ["EXPOSURE"]

    @pytest.mark.asyncio
    async def test_reporter_node_positive_and_masked(self, abc, service):
        await service.submit_report("A", "Alex", positive(privacy_level="FULL"))

        record = (await abc.notifications_for("C"))[0]
        assert record.chain.nodes[0].test_status == Status.POSITIVE
        assert record.chain.nodes[0].display_name != "Alex"

    @pytest.mark.asyncio
    async def test_own_notifications_marked_positive(self, abc, service):
        await service.submit_report("A", "A", positive())

        await service.submit_report("B", "B", positive())

        own = (await abc.notifications_for("B"))
        assert any(
            node.is_current_user and node.test_status == Status.POSITIVE
            for record in own
            for node in record.chain.nodes
        )

    @pytest.mark.asyncio
    async def test_follow_up_links_to_exposing_report(self, abc, service, store):
        first = await service.submit_report("A", "A", positive())
        own = (await abc.notifications_for("C"))[0]

        follow_up = await service.submit_report("C", "C", positive(notification_id=own.id))

        stored = await store.get_report(follow_up.id)
        assert stored.linked_report_id == first.id
        assert stored.notification_id == own.id

    @pytest.mark.asyncio
    async def test_failed_propagation_marks_report_failed(self, abc, service, store, monkeypatch):
        async def explode(**kwargs):
            raise ExposureError("edge query exhausted retries")

        monkeypatch.setattr(service.engine, "propagate_exposure_chain", explode)

        with pytest.raises(ExposureError):
            await service.submit_report("A", "A", positive())

        reports = list(store._reports.values())
        assert len(reports) == 1
        assert reports[0].status == ReportStatus.FAILED
        assert reports[0].error == "edge query exhausted retries"
        assert reports[0].processed_at == NOW

    @pytest.mark.asyncio
    async def test_unexpected_store_error_marks_report_failed(self, sink, settings, clock):
        store = BrokenEdgeStore()
        service = ReportService(store, sink, settings, clock)
        graph = ContactGraph(store)
        await graph.add_users("A", "B")
        await graph.meet("B", "A", days_ago(2))

        with pytest.raises(RuntimeError):
            await service.submit_report("A", "A", positive())

        report = list(store._reports.values())[0]
        assert report.status == ReportStatus.FAILED
        assert report.error == "RuntimeError: edge index corrupted"
        assert report.processed_at == NOW

    @pytest.mark.asyncio
    async def test_invalid_submission_not_stored(self, service, store):
        with pytest.raises(ReportValidationError):
            await service.submit_report("A", "A", positive(labels=()))
        assert store._reports == {}


class TestSubmitNegative:

    @pytest.mark.asyncio
    async def test_negative_updates_chains(self, abc, service, sink):
        await service.submit_report("A", "A", positive())
        sink.messages.clear()

        report = await service.submit_report("B", "B", negative())

        assert report.status == ReportStatus.COMPLETED
        assert report.notified_count == 2
        record = (await abc.notifications_for("C"))[0]
        assert record.chain.nodes[1].test_status == Status.NEGATIVE
        assert sink.types_for("token-C") == ["UPDATE"]

    @pytest.mark.asyncio
    async def test_foreign_notification_rejected(self, abc, service):
        await service.submit_report("A", "A", positive())
        foreign = (await abc.notifications_for("C"))[0]

        with pytest.raises(AuthorizationError):
            await service.submit_report("B", "B", negative(notification_id=foreign.id))

    @pytest.mark.asyncio
    async def test_missing_notification_rejected(self, service):
        with pytest.raises(ReportValidationError) as exc_info:
            await service.submit_report("B", "B", negative(notification_id="missing"))
        assert exc_info.value.field == "notification_id"


class TestRateLimits:

    @pytest.mark.asyncio
    async def test_sixth_positive_in_an_hour_rejected(self, graph, service):
        await graph.add_user("A")
        for _ in range(5):
            await service.submit_report("A", "A", positive())

        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.submit_report("A", "A", positive())
        assert exc_info.value.limit == 5

    @pytest.mark.asyncio
    async def test_actions_limited_separately(self, graph, service):
        await graph.add_user("A")
        for _ in range(5):
            await service.submit_report("A", "A", positive())

        report = await service.submit_report("A", "A", negative())
        assert report.status == ReportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_users_limited_separately(self, graph, service):
        await graph.add_users("A", "B")
        for _ in range(5):
            await service.submit_report("A", "A", positive())

        report = await service.submit_report("B", "B", positive())
        assert report.status == ReportStatus.COMPLETED


# =============================================================================
# DELETION
# =============================================================================

class TestDeleteReport:

    @pytest.mark.asyncio
    async def test_positive_deletion_retracts_notifications(self, abc, service, store, sink):
        report = await service.submit_report("A", "A", positive())
        sink.messages.clear()

        affected = await service.delete_report("A", report.id)

        assert affected == 2
        assert await store.get_report(report.id) is None
        assert await abc.notifications_for("B") == []

        retracted = await store.list_notifications_for_recipient(nid("B"), include_deleted=True)
        assert retracted[0].deleted_at == NOW
        assert retracted[0].is_read is False
        assert sink.types_for("token-B") == ["REPORT_DELETED"]
        assert sink.types_for("token-C") == ["REPORT_DELETED"]

    @pytest.mark.asyncio
    async def test_negative_deletion_reverts_status(self, abc, service):
        await service.submit_report("A", "A", positive())
        negative_report = await service.submit_report("B", "B", negative())

        affected = await service.delete_report("B", negative_report.id)

        assert affected == 2
        record = (await abc.notifications_for("C"))[0]
        assert record.chain.nodes[1].test_status == Status.UNKNOWN

    @pytest.mark.asyncio
    async def test_someone_elses_report(self, abc, service, store):
        report = await service.submit_report("A", "A", positive())

        with pytest.raises(AuthorizationError):
            await service.delete_report("B", report.id)
        assert await store.get_report(report.id) is not None

    @pytest.mark.asyncio
    async def test_missing_report(self, service):
        with pytest.raises(ReportNotFoundError):
            await service.delete_report("A", "missing")
