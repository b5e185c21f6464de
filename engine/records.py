"""
Exposure Records

Plain dataclasses exchanged between the engine and the stores. The SQL
store maps ORM rows to and from these; the in-memory store keeps them
directly.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .chain import ChainNode, ChainVisualization, PrivacyLevel


# =============================================================================
# ENUMS
# =============================================================================

class NotificationType(str, enum.Enum):
    """Kinds of notification / push payload."""
    EXPOSURE = "EXPOSURE"
    UPDATE = "UPDATE"
    REPORT_DELETED = "REPORT_DELETED"


class TestResult(str, enum.Enum):
    """Result a user reports."""
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"


class ReportStatus(str, enum.Enum):
    """Processing lifecycle of a report."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# GRAPH & DIRECTORY
# =============================================================================

@dataclass
class ContactEdge:
    """
    "Owner recorded an interaction with partner at recorded_at."

    Only traversed from partner to owner: the owner vouches for the
    contact, the partner never can.
    """
    owner_graph_id: str
    partner_graph_id: str
    partner_display_name: str
    recorded_at: int
    id: Optional[str] = None


@dataclass
class DirectoryEntry:
    """User directory row, keyed by graph-domain hash."""
    graph_id: str
    notification_id: str
    display_name: str
    push_token: Optional[str] = None
    uid: Optional[str] = None


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@dataclass
class NotificationRecord:
    """A stored notification. One per (report_id, recipient_id)."""
    id: str
    recipient_id: str
    report_id: str
    hop_depth: int
    chain: ChainVisualization
    chain_path: List[str]
    chain_paths: List[List[str]]
    received_at: int
    updated_at: int
    type: NotificationType = NotificationType.EXPOSURE
    condition_labels: Optional[List[str]] = None
    exposure_at: Optional[int] = None
    is_read: bool = False
    deleted_at: Optional[int] = None


@dataclass
class NotificationDraft:
    """A path discovered during propagation, to be inserted or merged."""
    report_id: str
    recipient_id: str
    hop_depth: int
    chain_path: List[str]
    nodes: List[ChainNode]
    condition_labels: Optional[List[str]] = None
    exposure_at: Optional[int] = None


@dataclass
class UpsertResult:
    """Outcome of an upsert: the stored record and what happened."""
    record: NotificationRecord
    created: bool
    changed: bool


@dataclass
class NotificationUpdate:
    """Flag changes applied to one notification in a batched commit."""
    notification_id: str
    updated_at: int
    is_read: Optional[bool] = None
    deleted_at: Optional[int] = None


# =============================================================================
# REPORTS & HOUSEKEEPING
# =============================================================================

@dataclass
class ReportRecord:
    """A submitted test report."""
    id: str
    reporter_id: str
    reporter_graph_id: str
    test_result: TestResult
    reported_at: int
    status: ReportStatus = ReportStatus.PENDING
    condition_labels: List[str] = field(default_factory=list)
    test_date: Optional[int] = None
    privacy_level: PrivacyLevel = PrivacyLevel.FULL
    linked_report_id: Optional[str] = None
    notification_id: Optional[str] = None
    notified_count: int = 0
    processed_at: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CleanupStats:
    """Rows removed by one retention sweep."""
    interactions_deleted: int = 0
    notifications_deleted: int = 0
    reports_deleted: int = 0
    cutoff: int = 0

    @property
    def total(self) -> int:
        return self.interactions_deleted + self.notifications_deleted + self.reports_deleted

    def to_dict(self) -> Dict[str, int]:
        return {
            "interactions_deleted": self.interactions_deleted,
            "notifications_deleted": self.notifications_deleted,
            "reports_deleted": self.reports_deleted,
            "cutoff": self.cutoff,
        }
