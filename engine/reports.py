"""
Report Service

Entry point for test reports: validation, rate limiting, the report
status lifecycle (pending -> processing -> completed | failed), and the
fan-out to propagation and chain updates. Also handles report deletion.

Callers pass the verified auth subject (uid); every hash is derived
here from it, never taken from the client.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from .chain import PrivacyLevel
from .chain_updates import ChainUpdatePropagator
from .config import PropagationSettings, get_propagation_settings
from .errors import (
    AuthorizationError,
    ExposureError,
    ReportNotFoundError,
    ReportValidationError,
)
from .hashing import hash_graph, hash_notification, hash_report
from .incubation import parse_condition_labels
from .propagation import ChainPropagationEngine
from .push import DeliverySink
from .rate_limit import RateLimitAction, RateLimiter
from .records import (
    NotificationType,
    NotificationUpdate,
    ReportRecord,
    ReportStatus,
    TestResult,
)
from .store import ExposureStore
from .windows import days_to_millis, now_millis

logger = logging.getLogger(__name__)


@dataclass
class ReportSubmission:
    """What a client submits for a test result."""
    test_result: Union[TestResult, str]
    condition_labels: Union[str, Sequence[str], None] = None
    test_date: Optional[int] = None
    privacy_level: Union[PrivacyLevel, str] = PrivacyLevel.FULL
    # Notification this result answers (self-update / linked report)
    notification_id: Optional[str] = None


@dataclass
class ValidatedReport:
    test_result: TestResult
    labels: List[str]
    test_date: Optional[int]
    privacy_level: PrivacyLevel


class ReportService:
    """Submits, processes and deletes reports."""

    def __init__(
        self,
        store: ExposureStore,
        sink: DeliverySink,
        settings: Optional[PropagationSettings] = None,
        clock: Callable[[], int] = now_millis,
    ):
        self.store = store
        self.settings = settings or get_propagation_settings()
        self.clock = clock
        self.engine = ChainPropagationEngine(store, sink, self.settings, clock)
        self.updates = ChainUpdatePropagator(store, sink, self.settings, clock)
        self.rate_limiter = RateLimiter(store, self.settings, clock)

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    def validate(self, reporter_uid: str, submission: ReportSubmission) -> ValidatedReport:
        """
        Check a submission.

        Raises:
            ReportValidationError: With the offending field
        """
        if not reporter_uid or not reporter_uid.strip():
            raise ReportValidationError("Reporter id is required", field="reporter_id")
        if len(reporter_uid) > self.settings.max_reporter_id_length:
            raise ReportValidationError("Reporter id is too long", field="reporter_id")

        try:
            test_result = TestResult(submission.test_result)
        except ValueError:
            raise ReportValidationError(
                f"Invalid test result: {submission.test_result!r}", field="test_result"
            )

        raw_labels = submission.condition_labels
        if isinstance(raw_labels, str) and len(raw_labels) > self.settings.max_condition_labels_length:
            raise ReportValidationError("Condition labels payload is too long", field="condition_labels")
        if raw_labels is not None and not isinstance(raw_labels, str):
            raw_labels = list(raw_labels)
            if len(json.dumps(raw_labels)) > self.settings.max_condition_labels_length:
                raise ReportValidationError("Condition labels payload is too long", field="condition_labels")

        labels = parse_condition_labels(raw_labels)

        try:
            privacy_level = PrivacyLevel(submission.privacy_level)
        except ValueError:
            raise ReportValidationError(
                f"Invalid privacy level: {submission.privacy_level!r}", field="privacy_level"
            )

        if test_result == TestResult.NEGATIVE:
            return ValidatedReport(test_result, labels, submission.test_date, privacy_level)

        if not labels:
            raise ReportValidationError(
                "A positive report needs at least one condition label", field="condition_labels"
            )

        if submission.test_date is None:
            raise ReportValidationError("Test date is required", field="test_date")

        now = self.clock()
        if submission.test_date > now:
            raise ReportValidationError("Test date cannot be in the future", field="test_date")
        if submission.test_date < now - days_to_millis(self.settings.retention_days):
            raise ReportValidationError(
                f"Test date is older than {self.settings.retention_days} days", field="test_date"
            )

        return ValidatedReport(test_result, labels, submission.test_date, privacy_level)

    # -------------------------------------------------------------------------
    # SUBMISSION
    # -------------------------------------------------------------------------

    async def submit_report(
        self,
        reporter_uid: str,
        reporter_display_name: str,
        submission: ReportSubmission,
    ) -> ReportRecord:
        """
        Validate, persist and process a report.

        Returns:
            The report in its final state

        Raises:
            ReportValidationError: Invalid payload
            RateLimitExceededError: Too many reports this hour
            AuthorizationError: notification_id is not the caller's
        """
        validated = self.validate(reporter_uid, submission)

        reporter_id = hash_report(reporter_uid)
        action = (
            RateLimitAction.POSITIVE_REPORT
            if validated.test_result == TestResult.POSITIVE
            else RateLimitAction.NEGATIVE_TEST
        )
        await self.rate_limiter.enforce(action, reporter_id)

        linked_report_id = None
        if submission.notification_id:
            own = await self.store.get_notification(submission.notification_id)
            if own is None:
                raise ReportValidationError("Notification not found", field="notification_id")
            if own.recipient_id != hash_notification(reporter_uid):
                raise AuthorizationError("Notification does not belong to caller")
            linked_report_id = own.report_id

        report = ReportRecord(
            id=str(uuid.uuid4()),
            reporter_id=reporter_id,
            reporter_graph_id=hash_graph(reporter_uid),
            test_result=validated.test_result,
            condition_labels=validated.labels,
            test_date=validated.test_date,
            privacy_level=validated.privacy_level,
            linked_report_id=linked_report_id if validated.test_result == TestResult.POSITIVE else None,
            notification_id=submission.notification_id,
            reported_at=self.clock(),
        )
        report = await self.store.create_report(report)
        logger.info(f"Report {report.id} submitted ({report.test_result.value})")

        return await self.process_report(report, reporter_uid, reporter_display_name)

    async def process_report(
        self,
        report: ReportRecord,
        reporter_uid: str,
        reporter_display_name: str = "",
    ) -> ReportRecord:
        """Run a stored report through propagation / chain updates."""
        await self.store.update_report(report.id, status=ReportStatus.PROCESSING)
        report.status = ReportStatus.PROCESSING

        try:
            if report.test_result == TestResult.POSITIVE:
                count = await self.engine.propagate_exposure_chain(
                    report_id=report.id,
                    reporter_graph_id=report.reporter_graph_id,
                    reporter_display_name=reporter_display_name,
                    condition_labels_json=json.dumps(report.condition_labels),
                    test_date_ms=report.test_date,
                    privacy_level=report.privacy_level,
                    linked_report_id=report.linked_report_id,
                )
                await self.updates.propagate_positive_test_update(reporter_uid, report.condition_labels)
                await self.updates.update_own_notifications_positive(reporter_uid, report.condition_labels)
            else:
                count = await self.updates.propagate_negative_test_update(
                    reporter_uid,
                    condition_label=report.condition_labels or None,
                    notification_id=report.notification_id,
                )
        except ExposureError as e:
            logger.error(f"Report {report.id} failed: {e}")
            await self._mark_failed(report, str(e))
            raise
        except Exception as e:
            logger.exception(f"Report {report.id} failed unexpectedly: {e}")
            await self._mark_failed(report, f"{type(e).__name__}: {e}")
            raise

        processed_at = self.clock()
        await self.store.update_report(
            report.id,
            status=ReportStatus.COMPLETED,
            notified_count=count,
            processed_at=processed_at,
        )
        report.status = ReportStatus.COMPLETED
        report.notified_count = count
        report.processed_at = processed_at

        logger.info(f"Report {report.id} completed: {count} notification(s) affected")
        return report

    async def _mark_failed(self, report: ReportRecord, error: str) -> None:
        """Record a failed run; the caller re-raises the original error."""
        processed_at = self.clock()
        report.status = ReportStatus.FAILED
        report.error = error
        report.processed_at = processed_at
        try:
            await self.store.update_report(
                report.id,
                status=ReportStatus.FAILED,
                error=error,
                processed_at=processed_at,
            )
        except Exception as e:
            logger.error(f"Could not mark report {report.id} failed: {e}")

    # -------------------------------------------------------------------------
    # DELETION
    # -------------------------------------------------------------------------

    async def delete_report(self, reporter_uid: str, report_id: str) -> int:
        """
        Delete one of the caller's reports and undo its effect.

        A positive report's notifications are soft-deleted and their
        recipients told; a negative report's NEGATIVE marks are reverted.

        Returns:
            Number of notifications affected

        Raises:
            ReportNotFoundError: No such report
            AuthorizationError: Report belongs to someone else
        """
        report = await self.store.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(f"Report {report_id} not found")

        reporter_id = hash_report(reporter_uid)
        if report.reporter_id != reporter_id:
            raise AuthorizationError("Report does not belong to caller")

        await self.rate_limiter.enforce(RateLimitAction.REPORT_DELETION, reporter_id)

        if report.test_result == TestResult.POSITIVE:
            affected = await self._retract_notifications(report_id)
        else:
            affected = await self.updates.revert_negative_status(reporter_uid)

        await self.store.delete_report(report_id)
        logger.info(f"Report {report_id} deleted; {affected} notification(s) affected")
        return affected

    async def _retract_notifications(self, report_id: str) -> int:
        records = await self.store.list_notifications_for_report(report_id)
        if not records:
            return 0

        now = self.clock()
        updates = [
            NotificationUpdate(notification_id=record.id, updated_at=now, is_read=False, deleted_at=now)
            for record in records
        ]
        affected = await self.store.commit_notification_updates(updates)
        await self.updates.push_to_recipients(records, NotificationType.REPORT_DELETED)
        return affected
