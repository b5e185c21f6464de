"""
Database Models

SQLAlchemy ORM models for the exposure notification backend.
Defines the database schema and indexes.

Every identity column holds a domain-separated hash (see engine.hashing),
never a raw user id, except users.uid which is the auth subject used to
derive those hashes. Event timestamps are epoch milliseconds.
"""

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Boolean,
    Text,
    DateTime,
    Index,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID, JSONB

from engine.chain import PrivacyLevel
from engine.records import NotificationType, ReportStatus, TestResult

from .connection import Base


# Helper to get enum values instead of names
def _enum_values(enum_class):
    """Return enum values for SQLAlchemy to store in DB."""
    return [e.value for e in enum_class]


# =============================================================================
# USER DIRECTORY
# =============================================================================

class User(Base):
    """
    User directory entry.

    graph_id joins against interaction edges, notification_id against
    notification recipients. Both are hashes of uid in different domains.
    """
    __tablename__ = "users"

    # Auth subject (Clerk user id)
    uid: Mapped[str] = mapped_column(String(128), primary_key=True)

    graph_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    notification_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    push_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.graph_id[:8]}>"


# =============================================================================
# INTERACTIONS (CONTACT EDGES)
# =============================================================================

class Interaction(Base):
    """
    Directed contact edge: owner recorded an interaction with partner.

    Append-only. Traversal queries by partner_graph_id + recorded_at,
    never by owner.
    """
    __tablename__ = "interactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    owner_graph_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    partner_graph_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_display_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")

    recorded_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_interactions_partner_recorded", "partner_graph_id", "recorded_at"),
        Index("ix_interactions_recorded", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<Interaction {self.owner_graph_id[:8]} -> {self.partner_graph_id[:8]}>"


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(Base):
    """
    Exposure notification delivered to one recipient for one report.

    chain_path holds chain-domain hashes from reporter to recipient;
    chain_paths holds every distinct contributing path, index-aligned
    with chain_data["paths"].
    """
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    report_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)

    type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, values_callable=_enum_values),
        default=NotificationType.EXPOSURE,
        nullable=False,
    )

    hop_depth: Mapped[int] = mapped_column(Integer, nullable=False)

    # Disclosed according to the reporter's privacy level
    condition_labels: Mapped[Optional[List[str]]] = mapped_column(JSONB, nullable=True)
    exposure_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Chain visualization {"nodes": [...], "paths": [[...], ...]}
    chain_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    chain_path: Mapped[List[str]] = mapped_column(JSONB, nullable=False)
    chain_paths: Mapped[List[List[str]]] = mapped_column(JSONB, nullable=False)

    # State
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    received_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deleted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("report_id", "recipient_id", name="uq_notifications_report_recipient"),
        Index("ix_notifications_chain_path", "chain_path", postgresql_using="gin"),
        Index("ix_notifications_chain_paths", "chain_paths", postgresql_using="gin"),
        Index("ix_notifications_recipient_received", "recipient_id", "received_at"),
        Index("ix_notifications_received", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification {self.id} hop={self.hop_depth}>"


# =============================================================================
# REPORTS
# =============================================================================

class Report(Base):
    """
    Positive or negative test report.

    reporter_id is the report-domain hash used for ownership checks.
    """
    __tablename__ = "reports"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reporter_graph_id: Mapped[str] = mapped_column(String(64), nullable=False)

    test_result: Mapped[TestResult] = mapped_column(
        SQLEnum(TestResult, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[ReportStatus] = mapped_column(
        SQLEnum(ReportStatus, values_callable=_enum_values),
        default=ReportStatus.PENDING,
        nullable=False,
    )
    privacy_level: Mapped[PrivacyLevel] = mapped_column(
        SQLEnum(PrivacyLevel, values_callable=_enum_values),
        default=PrivacyLevel.FULL,
        nullable=False,
    )

    condition_labels: Mapped[List[str]] = mapped_column(JSONB, nullable=False, default=list)
    test_date: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    linked_report_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    # Notification a negative result refers to (self-update)
    notification_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    notified_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reported_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_reports_reported", "reported_at"),
    )

    def __repr__(self) -> str:
        return f"<Report {self.id} {self.test_result.value} {self.status.value}>"


# =============================================================================
# HOUSEKEEPING
# =============================================================================

class RateLimit(Base):
    """Fixed-window request counter per (user, action)."""
    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)


class CleanupLog(Base):
    """One row per retention sweep."""
    __tablename__ = "cleanup_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    cutoff: Mapped[int] = mapped_column(BigInteger, nullable=False)
    interactions_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reports_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        nullable=False,
    )
