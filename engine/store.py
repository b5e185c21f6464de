"""
Exposure Store

The storage interface the propagation engine, the update propagator and
the report service run against, plus its PostgreSQL implementation.

    ExposureStore          abstract interface
    SqlExposureStore       async SQLAlchemy (database.crud) implementation
    create_exposure_store  factory (Postgres or in-memory)

Every SqlExposureStore method runs in its own transaction. Connection
level failures surface as TransientStoreError so callers can retry them.
"""

from __future__ import annotations

import abc
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import crud
from database.models import Interaction, Notification, Report, User

from .chain import ChainVisualization
from .errors import TransientStoreError
from .hashing import short_hash
from .merge import build_record, merge_draft
from .records import (
    CleanupStats,
    ContactEdge,
    DirectoryEntry,
    NotificationDraft,
    NotificationRecord,
    NotificationUpdate,
    ReportRecord,
    UpsertResult,
)

logger = logging.getLogger(__name__)

# Given a freshly read record, return its new chain or None to leave it alone
ChainRewrite = Callable[[NotificationRecord], Optional[ChainVisualization]]


# =============================================================================
# INTERFACE
# =============================================================================

class ExposureStore(abc.ABC):
    """Storage operations used by the engine."""

    # ---- contact edges ----------------------------------------------------

    @abc.abstractmethod
    async def record_edge(self, edge: ContactEdge) -> ContactEdge:
        ...

    @abc.abstractmethod
    async def find_edges_by_partner(
        self,
        partner_graph_id: str,
        start: int,
        end: int,
    ) -> List[ContactEdge]:
        """Edges with partner == partner_graph_id and recorded_at in [start, end]."""

    # ---- user directory ---------------------------------------------------

    @abc.abstractmethod
    async def upsert_user(self, entry: DirectoryEntry) -> DirectoryEntry:
        ...

    @abc.abstractmethod
    async def get_user_by_uid(self, uid: str) -> Optional[DirectoryEntry]:
        ...

    @abc.abstractmethod
    async def get_user_by_graph_id(self, graph_id: str) -> Optional[DirectoryEntry]:
        ...

    @abc.abstractmethod
    async def get_users_by_graph_ids(self, graph_ids: Sequence[str]) -> Dict[str, DirectoryEntry]:
        """Batched lookup keyed by graph id; misses are absent."""

    @abc.abstractmethod
    async def get_user_by_notification_id(self, notification_id: str) -> Optional[DirectoryEntry]:
        ...

    @abc.abstractmethod
    async def get_users_by_notification_ids(
        self,
        notification_ids: Sequence[str],
    ) -> Dict[str, DirectoryEntry]:
        """Batched lookup keyed by notification id; misses are absent."""

    @abc.abstractmethod
    async def clear_push_token(self, graph_id: str) -> bool:
        ...

    def accepts_report_id(self, report_id: str) -> bool:
        """Whether report_id can key notifications in this store."""
        return bool(report_id)

    # ---- notifications ----------------------------------------------------

    @abc.abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    @abc.abstractmethod
    async def get_notification_for_recipient(
        self,
        report_id: str,
        recipient_id: str,
    ) -> Optional[NotificationRecord]:
        ...

    @abc.abstractmethod
    async def upsert_notification(self, draft: NotificationDraft, now_ms: int) -> UpsertResult:
        """
        Insert or merge the notification for (draft.report_id,
        draft.recipient_id). Serialized per key; never raises on a
        duplicate.
        """

    @abc.abstractmethod
    async def find_notifications_by_chain_member(self, chain_id: str) -> List[NotificationRecord]:
        """Active notifications with chain_id on their primary or any stored path."""

    @abc.abstractmethod
    async def list_notifications_for_recipient(
        self,
        recipient_id: str,
        include_deleted: bool = False,
    ) -> List[NotificationRecord]:
        """Newest first."""

    @abc.abstractmethod
    async def list_notifications_for_report(self, report_id: str) -> List[NotificationRecord]:
        ...

    @abc.abstractmethod
    async def count_notifications_for_report(self, report_id: str) -> int:
        ...

    @abc.abstractmethod
    async def rewrite_notifications(
        self,
        notification_ids: Sequence[str],
        rewrite: ChainRewrite,
        now_ms: int,
    ) -> List[NotificationRecord]:
        """
        Re-read each active notification under its row lock, pass it to
        `rewrite` and store the returned chain before the lock is released.
        Returns the rewritten records.
        """

    @abc.abstractmethod
    async def commit_notification_updates(self, updates: Sequence[NotificationUpdate]) -> int:
        """Apply a batch of updates atomically. Returns rows updated."""

    @abc.abstractmethod
    async def mark_notification_read(self, notification_id: str, recipient_id: str, now_ms: int) -> bool:
        """Mark read if the notification belongs to recipient_id."""

    # ---- reports ----------------------------------------------------------

    @abc.abstractmethod
    async def create_report(self, report: ReportRecord) -> ReportRecord:
        ...

    @abc.abstractmethod
    async def get_report(self, report_id: str) -> Optional[ReportRecord]:
        ...

    @abc.abstractmethod
    async def update_report(self, report_id: str, **fields) -> bool:
        ...

    @abc.abstractmethod
    async def delete_report(self, report_id: str) -> bool:
        ...

    # ---- housekeeping -----------------------------------------------------

    @abc.abstractmethod
    async def hit_rate_limit(self, key: str, limit: int, window_ms: int, now_ms: int) -> bool:
        """Count a request; False when the window's limit is already reached."""

    @abc.abstractmethod
    async def delete_expired_batch(self, cutoff: int, batch_size: int) -> CleanupStats:
        """Delete up to batch_size rows of each kind older than cutoff."""

    @abc.abstractmethod
    async def record_cleanup(self, stats: CleanupStats) -> None:
        ...


# =============================================================================
# ROW MAPPING
# =============================================================================

def _edge_from_row(row: Interaction) -> ContactEdge:
    return ContactEdge(
        id=str(row.id),
        owner_graph_id=row.owner_graph_id,
        partner_graph_id=row.partner_graph_id,
        partner_display_name=row.partner_display_name,
        recorded_at=row.recorded_at,
    )


def _user_from_row(row: User) -> DirectoryEntry:
    return DirectoryEntry(
        uid=row.uid,
        graph_id=row.graph_id,
        notification_id=row.notification_id,
        display_name=row.display_name,
        push_token=row.push_token,
    )


def _notification_from_row(row: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=str(row.id),
        recipient_id=row.recipient_id,
        report_id=str(row.report_id),
        type=row.type,
        hop_depth=row.hop_depth,
        chain=ChainVisualization.from_dict(row.chain_data),
        chain_path=list(row.chain_path or []),
        chain_paths=[list(path) for path in (row.chain_paths or [])],
        condition_labels=list(row.condition_labels) if row.condition_labels else None,
        exposure_at=row.exposure_at,
        is_read=row.is_read,
        received_at=row.received_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _notification_values(record: NotificationRecord) -> dict:
    return {
        "id": uuid.UUID(record.id),
        "recipient_id": record.recipient_id,
        "report_id": uuid.UUID(record.report_id),
        "type": record.type,
        "hop_depth": record.hop_depth,
        "condition_labels": record.condition_labels,
        "exposure_at": record.exposure_at,
        "chain_data": record.chain.to_dict(),
        "chain_path": record.chain_path,
        "chain_paths": record.chain_paths,
        "is_read": record.is_read,
        "received_at": record.received_at,
        "updated_at": record.updated_at,
        "deleted_at": record.deleted_at,
    }


def _update_values(update: NotificationUpdate) -> dict:
    values = {"updated_at": update.updated_at}
    if update.is_read is not None:
        values["is_read"] = update.is_read
    if update.deleted_at is not None:
        values["deleted_at"] = update.deleted_at
    return values


def _report_from_row(row: Report) -> ReportRecord:
    return ReportRecord(
        id=str(row.id),
        reporter_id=row.reporter_id,
        reporter_graph_id=row.reporter_graph_id,
        test_result=row.test_result,
        status=row.status,
        privacy_level=row.privacy_level,
        condition_labels=list(row.condition_labels or []),
        test_date=row.test_date,
        linked_report_id=str(row.linked_report_id) if row.linked_report_id else None,
        notification_id=str(row.notification_id) if row.notification_id else None,
        notified_count=row.notified_count,
        error=row.error,
        reported_at=row.reported_at,
        processed_at=row.processed_at,
    )


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse an id; None for anything that is not a UUID."""
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


_REPORT_UUID_FIELDS = ("linked_report_id", "notification_id")


def _report_values(fields: dict) -> dict:
    values = dict(fields)
    for name in _REPORT_UUID_FIELDS:
        if name in values and values[name] is not None:
            values[name] = _as_uuid(values[name])
    return values


# =============================================================================
# POSTGRES STORE
# =============================================================================

class SqlExposureStore(ExposureStore):
    """
    ExposureStore backed by PostgreSQL through database.crud.

    Notification upserts lock the (report, recipient) row with
    SELECT ... FOR UPDATE. When two transactions race to insert the same
    key, the loser hits the unique constraint and retries as a merge.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, ConnectionError, TimeoutError) as e:
            raise TransientStoreError(str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(str(e)) from e
            raise

    # ---- contact edges ----------------------------------------------------

    async def record_edge(self, edge: ContactEdge) -> ContactEdge:
        async with self._transaction() as db:
            row = await crud.record_interaction(
                db,
                owner_graph_id=edge.owner_graph_id,
                partner_graph_id=edge.partner_graph_id,
                partner_display_name=edge.partner_display_name,
                recorded_at=edge.recorded_at,
            )
            return _edge_from_row(row)

    async def find_edges_by_partner(self, partner_graph_id: str, start: int, end: int) -> List[ContactEdge]:
        async with self._transaction() as db:
            rows = await crud.find_edges_by_partner(db, partner_graph_id, start, end)
            return [_edge_from_row(row) for row in rows]

    # ---- user directory ---------------------------------------------------

    async def upsert_user(self, entry: DirectoryEntry) -> DirectoryEntry:
        async with self._transaction() as db:
            row = await crud.upsert_user(
                db,
                uid=entry.uid,
                graph_id=entry.graph_id,
                notification_id=entry.notification_id,
                display_name=entry.display_name,
                push_token=entry.push_token,
            )
            return _user_from_row(row)

    async def get_user_by_uid(self, uid: str) -> Optional[DirectoryEntry]:
        async with self._transaction() as db:
            row = await crud.get_user_by_uid(db, uid)
            return _user_from_row(row) if row else None

    async def get_user_by_graph_id(self, graph_id: str) -> Optional[DirectoryEntry]:
        async with self._transaction() as db:
            row = await crud.get_user_by_graph_id(db, graph_id)
            return _user_from_row(row) if row else None

    async def get_users_by_graph_ids(self, graph_ids: Sequence[str]) -> Dict[str, DirectoryEntry]:
        async with self._transaction() as db:
            rows = await crud.get_users_by_graph_ids(db, graph_ids)
            return {row.graph_id: _user_from_row(row) for row in rows}

    async def get_user_by_notification_id(self, notification_id: str) -> Optional[DirectoryEntry]:
        async with self._transaction() as db:
            row = await crud.get_user_by_notification_id(db, notification_id)
            return _user_from_row(row) if row else None

    async def get_users_by_notification_ids(self, notification_ids: Sequence[str]) -> Dict[str, DirectoryEntry]:
        async with self._transaction() as db:
            rows = await crud.get_users_by_notification_ids(db, notification_ids)
            return {row.notification_id: _user_from_row(row) for row in rows}

    async def clear_push_token(self, graph_id: str) -> bool:
        async with self._transaction() as db:
            return await crud.clear_push_token(db, graph_id)

    # ---- notifications ----------------------------------------------------

    def accepts_report_id(self, report_id: str) -> bool:
        return _as_uuid(report_id) is not None

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        key = _as_uuid(notification_id)
        if key is None:
            return None
        async with self._transaction() as db:
            row = await crud.get_notification(db, key)
            return _notification_from_row(row) if row else None

    async def get_notification_for_recipient(self, report_id: str, recipient_id: str) -> Optional[NotificationRecord]:
        key = _as_uuid(report_id)
        if key is None:
            return None
        async with self._transaction() as db:
            row = await crud.get_notification_for_recipient(db, key, recipient_id)
            return _notification_from_row(row) if row else None

    async def upsert_notification(self, draft: NotificationDraft, now_ms: int) -> UpsertResult:
        try:
            return await self._upsert_locked(draft, now_ms)
        except IntegrityError:
            logger.info(
                f"Concurrent insert for report {draft.report_id} / "
                f"{short_hash(draft.recipient_id)}; merging"
            )
            return await self._upsert_locked(draft, now_ms)

    async def _upsert_locked(self, draft: NotificationDraft, now_ms: int) -> UpsertResult:
        async with self._transaction() as db:
            row = await crud.get_notification_for_recipient(
                db,
                uuid.UUID(draft.report_id),
                draft.recipient_id,
                for_update=True,
            )

            if row is None:
                record = build_record(draft, now_ms)
                row = await crud.create_notification(db, _notification_values(record))
                return UpsertResult(record=_notification_from_row(row), created=True, changed=True)

            record = _notification_from_row(row)
            changed = merge_draft(record, draft, now_ms)
            if changed:
                await crud.update_notification(db, row.id, {
                    "hop_depth": record.hop_depth,
                    "chain_data": record.chain.to_dict(),
                    "chain_path": record.chain_path,
                    "chain_paths": record.chain_paths,
                    "updated_at": record.updated_at,
                })
            return UpsertResult(record=record, created=False, changed=changed)

    async def find_notifications_by_chain_member(self, chain_id: str) -> List[NotificationRecord]:
        async with self._transaction() as db:
            rows = await crud.find_notifications_by_chain_member(db, chain_id)
            return [_notification_from_row(row) for row in rows]

    async def list_notifications_for_recipient(
        self,
        recipient_id: str,
        include_deleted: bool = False,
    ) -> List[NotificationRecord]:
        async with self._transaction() as db:
            rows, _, _ = await crud.get_recipient_notifications(
                db,
                recipient_id,
                include_deleted=include_deleted,
                limit=1000,
            )
            return [_notification_from_row(row) for row in rows]

    async def list_notifications_for_report(self, report_id: str) -> List[NotificationRecord]:
        key = _as_uuid(report_id)
        if key is None:
            return []
        async with self._transaction() as db:
            rows = await crud.get_report_notifications(db, key)
            return [_notification_from_row(row) for row in rows]

    async def count_notifications_for_report(self, report_id: str) -> int:
        key = _as_uuid(report_id)
        if key is None:
            return 0
        async with self._transaction() as db:
            return await crud.count_report_notifications(db, key)

    async def rewrite_notifications(
        self,
        notification_ids: Sequence[str],
        rewrite: ChainRewrite,
        now_ms: int,
    ) -> List[NotificationRecord]:
        keys = [key for key in (_as_uuid(value) for value in notification_ids) if key is not None]
        if not keys:
            return []

        rewritten: List[NotificationRecord] = []
        async with self._transaction() as db:
            rows = await crud.lock_notifications(db, keys)
            for row in rows:
                record = _notification_from_row(row)
                chain = rewrite(record)
                if chain is None:
                    continue
                record.chain = chain
                record.updated_at = now_ms
                await crud.update_notification(db, row.id, {
                    "chain_data": chain.to_dict(),
                    "updated_at": now_ms,
                })
                rewritten.append(record)
        return rewritten

    async def commit_notification_updates(self, updates: Sequence[NotificationUpdate]) -> int:
        if not updates:
            return 0
        updated = 0
        async with self._transaction() as db:
            for update in updates:
                if await crud.update_notification(db, uuid.UUID(update.notification_id), _update_values(update)):
                    updated += 1
        return updated

    async def mark_notification_read(self, notification_id: str, recipient_id: str, now_ms: int) -> bool:
        key = _as_uuid(notification_id)
        if key is None:
            return False
        async with self._transaction() as db:
            row = await crud.mark_notification_read(db, key, recipient_id, now_ms)
            return row is not None

    # ---- reports ----------------------------------------------------------

    async def create_report(self, report: ReportRecord) -> ReportRecord:
        async with self._transaction() as db:
            row = await crud.create_report(db, _report_values({
                "id": uuid.UUID(report.id),
                "reporter_id": report.reporter_id,
                "reporter_graph_id": report.reporter_graph_id,
                "test_result": report.test_result,
                "status": report.status,
                "privacy_level": report.privacy_level,
                "condition_labels": report.condition_labels,
                "test_date": report.test_date,
                "linked_report_id": report.linked_report_id,
                "notification_id": report.notification_id,
                "reported_at": report.reported_at,
            }))
            return _report_from_row(row)

    async def get_report(self, report_id: str) -> Optional[ReportRecord]:
        key = _as_uuid(report_id)
        if key is None:
            return None
        async with self._transaction() as db:
            row = await crud.get_report(db, key)
            return _report_from_row(row) if row else None

    async def update_report(self, report_id: str, **fields) -> bool:
        async with self._transaction() as db:
            return await crud.update_report(db, uuid.UUID(report_id), _report_values(fields))

    async def delete_report(self, report_id: str) -> bool:
        key = _as_uuid(report_id)
        if key is None:
            return False
        async with self._transaction() as db:
            return await crud.delete_report(db, key)

    # ---- housekeeping -----------------------------------------------------

    async def hit_rate_limit(self, key: str, limit: int, window_ms: int, now_ms: int) -> bool:
        async with self._transaction() as db:
            return await crud.hit_rate_limit(db, key, limit, window_ms, now_ms)

    async def delete_expired_batch(self, cutoff: int, batch_size: int) -> CleanupStats:
        async with self._transaction() as db:
            return CleanupStats(
                interactions_deleted=await crud.delete_expired_interactions(db, cutoff, batch_size),
                notifications_deleted=await crud.delete_expired_notifications(db, cutoff, batch_size),
                reports_deleted=await crud.delete_expired_reports(db, cutoff, batch_size),
                cutoff=cutoff,
            )

    async def record_cleanup(self, stats: CleanupStats) -> None:
        async with self._transaction() as db:
            await crud.create_cleanup_log(
                db,
                cutoff=stats.cutoff,
                interactions_deleted=stats.interactions_deleted,
                notifications_deleted=stats.notifications_deleted,
                reports_deleted=stats.reports_deleted,
            )


# =============================================================================
# FACTORY
# =============================================================================

def create_exposure_store(
    use_postgres: bool = True,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ExposureStore:
    """
    Factory for exposure stores.

    Args:
        use_postgres: If True, use PostgreSQL; otherwise in-memory
        session_factory: Session factory (defaults to the app-wide one)

    Returns:
        ExposureStore instance
    """
    if use_postgres:
        if session_factory is None:
            from database import get_session_factory
            session_factory = get_session_factory()
        return SqlExposureStore(session_factory)

    from .memory_store import InMemoryExposureStore
    return InMemoryExposureStore()
