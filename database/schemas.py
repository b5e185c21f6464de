"""
Pydantic Schemas

API request and response models for validation and serialization.
Separate from SQLAlchemy models and engine records; responses are built
from engine records so the store backend never leaks into the API.
"""

from typing import Optional, List, Any, Dict, Union
from uuid import UUID

from pydantic import BaseModel, Field

from engine.chain import PrivacyLevel
from engine.records import (
    CleanupStats,
    DirectoryEntry,
    NotificationRecord,
    NotificationType,
    ReportRecord,
    ReportStatus,
    TestResult,
)

HASH_PATTERN = r"^[0-9a-f]{64}$"


# =============================================================================
# USER DIRECTORY SCHEMAS
# =============================================================================

class UserSync(BaseModel):
    """Register or refresh the caller's directory entry."""
    display_name: str = Field(..., min_length=1, max_length=50)
    push_token: Optional[str] = Field(None, max_length=512)


class DirectoryEntryResponse(BaseModel):
    """The caller's directory entry. Never includes the raw uid or token."""
    graph_id: str
    notification_id: str
    display_name: str
    has_push_token: bool

    @classmethod
    def from_entry(cls, entry: DirectoryEntry) -> "DirectoryEntryResponse":
        return cls(
            graph_id=entry.graph_id,
            notification_id=entry.notification_id,
            display_name=entry.display_name,
            has_push_token=bool(entry.push_token),
        )


# =============================================================================
# INTERACTION SCHEMAS
# =============================================================================

class InteractionCreate(BaseModel):
    """Caller met partner. partner_graph_id is exchanged between devices."""
    partner_graph_id: str = Field(..., pattern=HASH_PATTERN)
    partner_display_name: str = Field("", max_length=50)
    recorded_at: Optional[int] = Field(None, ge=0, description="Epoch millis, defaults to now")


class InteractionResponse(BaseModel):
    """Recorded edge."""
    id: str
    partner_graph_id: str
    partner_display_name: str
    recorded_at: int


# =============================================================================
# REPORT SCHEMAS
# =============================================================================

class ReportCreate(BaseModel):
    """Submit a test result."""
    test_result: TestResult
    condition_labels: Union[List[str], str, None] = None
    test_date: Optional[int] = Field(None, ge=0, description="Epoch millis")
    privacy_level: PrivacyLevel = PrivacyLevel.FULL
    notification_id: Optional[UUID] = None


class ReportResponse(BaseModel):
    """Report state after processing."""
    id: str
    test_result: TestResult
    status: ReportStatus
    privacy_level: PrivacyLevel
    condition_labels: List[str]
    test_date: Optional[int] = None
    notified_count: int
    reported_at: int
    processed_at: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, report: ReportRecord) -> "ReportResponse":
        return cls(
            id=report.id,
            test_result=report.test_result,
            status=report.status,
            privacy_level=report.privacy_level,
            condition_labels=list(report.condition_labels),
            test_date=report.test_date,
            notified_count=report.notified_count,
            reported_at=report.reported_at,
            processed_at=report.processed_at,
            error=report.error,
        )


class ReportDeleted(BaseModel):
    """Result of a report deletion."""
    deleted: bool = True
    notifications_affected: int


# =============================================================================
# NOTIFICATION SCHEMAS
# =============================================================================

class Notification(BaseModel):
    """Notification as shown to its recipient. Chain paths stay server side."""
    id: str
    report_id: str
    type: NotificationType
    hop_depth: int
    condition_labels: Optional[List[str]] = None
    exposure_at: Optional[int] = None
    chain: Dict[str, Any]
    is_read: bool
    received_at: int
    updated_at: int
    deleted: bool = False

    @classmethod
    def from_record(cls, record: NotificationRecord) -> "Notification":
        return cls(
            id=record.id,
            report_id=record.report_id,
            type=record.type,
            hop_depth=record.hop_depth,
            condition_labels=record.condition_labels,
            exposure_at=record.exposure_at,
            chain=record.chain.to_dict(),
            is_read=record.is_read,
            received_at=record.received_at,
            updated_at=record.updated_at,
            deleted=record.deleted_at is not None,
        )


class NotificationList(BaseModel):
    """List of notifications response."""
    notifications: List[Notification]
    total: int
    unread_count: int


class ChainLinkInfo(BaseModel):
    """Report a positive follow-up should link to, if any."""
    condition_label: Optional[str] = None
    linked_report_id: Optional[str] = None


# =============================================================================
# MAINTENANCE SCHEMAS
# =============================================================================

class CleanupResponse(BaseModel):
    """Counts from one retention sweep."""
    cutoff: int
    interactions_deleted: int
    notifications_deleted: int
    reports_deleted: int
    total: int

    @classmethod
    def from_stats(cls, stats: CleanupStats) -> "CleanupResponse":
        return cls(total=stats.total, **stats.to_dict())
