"""
In-Memory Exposure Store

Same interface as SqlExposureStore, no database. Used by tests and local
development. Records are copied on the way in and out so callers can
never mutate stored state without going through the store.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

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
from .store import ChainRewrite, ExposureStore

logger = logging.getLogger(__name__)


class InMemoryExposureStore(ExposureStore):
    """
    Dict-backed ExposureStore.

    Upserts and chain rewrites for one (report, recipient) key are
    serialized with a per-key asyncio.Lock, mirroring the row lock the
    Postgres store takes.
    """

    def __init__(self):
        self._edges: List[ContactEdge] = []
        self._users: Dict[str, DirectoryEntry] = {}
        self._notifications: Dict[str, NotificationRecord] = {}
        self._notification_keys: Dict[Tuple[str, str], str] = {}
        self._reports: Dict[str, ReportRecord] = {}
        self._rate_limits: Dict[str, Tuple[int, int]] = {}
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self.cleanup_log: List[CleanupStats] = []

    # ---- contact edges ----------------------------------------------------

    async def record_edge(self, edge: ContactEdge) -> ContactEdge:
        stored = copy.copy(edge)
        stored.id = stored.id or str(uuid.uuid4())
        self._edges.append(stored)
        return copy.copy(stored)

    async def find_edges_by_partner(self, partner_graph_id: str, start: int, end: int) -> List[ContactEdge]:
        matches = [
            copy.copy(edge)
            for edge in self._edges
            if edge.partner_graph_id == partner_graph_id and start <= edge.recorded_at <= end
        ]
        matches.sort(key=lambda edge: edge.recorded_at, reverse=True)
        return matches

    # ---- user directory ---------------------------------------------------

    async def upsert_user(self, entry: DirectoryEntry) -> DirectoryEntry:
        existing = self._users.get(entry.graph_id)
        stored = copy.copy(entry)
        if existing is not None and stored.push_token is None:
            stored.push_token = existing.push_token
        self._users[stored.graph_id] = stored
        return copy.copy(stored)

    async def get_user_by_uid(self, uid: str) -> Optional[DirectoryEntry]:
        for entry in self._users.values():
            if entry.uid == uid:
                return copy.copy(entry)
        return None

    async def get_user_by_graph_id(self, graph_id: str) -> Optional[DirectoryEntry]:
        entry = self._users.get(graph_id)
        return copy.copy(entry) if entry else None

    async def get_users_by_graph_ids(self, graph_ids: Sequence[str]) -> Dict[str, DirectoryEntry]:
        return {
            graph_id: copy.copy(self._users[graph_id])
            for graph_id in graph_ids
            if graph_id in self._users
        }

    async def get_user_by_notification_id(self, notification_id: str) -> Optional[DirectoryEntry]:
        for entry in self._users.values():
            if entry.notification_id == notification_id:
                return copy.copy(entry)
        return None

    async def get_users_by_notification_ids(self, notification_ids: Sequence[str]) -> Dict[str, DirectoryEntry]:
        wanted = set(notification_ids)
        return {
            entry.notification_id: copy.copy(entry)
            for entry in self._users.values()
            if entry.notification_id in wanted
        }

    async def clear_push_token(self, graph_id: str) -> bool:
        entry = self._users.get(graph_id)
        if entry is None or entry.push_token is None:
            return False
        entry.push_token = None
        logger.info(f"Cleared invalid push token for {short_hash(graph_id)}")
        return True

    # ---- notifications ----------------------------------------------------

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        record = self._notifications.get(notification_id)
        return copy.deepcopy(record) if record else None

    async def get_notification_for_recipient(self, report_id: str, recipient_id: str) -> Optional[NotificationRecord]:
        notification_id = self._notification_keys.get((report_id, recipient_id))
        if notification_id is None:
            return None
        return copy.deepcopy(self._notifications[notification_id])

    async def upsert_notification(self, draft: NotificationDraft, now_ms: int) -> UpsertResult:
        key = (draft.report_id, draft.recipient_id)
        lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with lock:
            notification_id = self._notification_keys.get(key)

            if notification_id is None:
                record = build_record(draft, now_ms)
                self._notifications[record.id] = record
                self._notification_keys[key] = record.id
                return UpsertResult(record=copy.deepcopy(record), created=True, changed=True)

            record = self._notifications[notification_id]
            changed = merge_draft(record, draft, now_ms)
            return UpsertResult(record=copy.deepcopy(record), created=False, changed=changed)

    async def find_notifications_by_chain_member(self, chain_id: str) -> List[NotificationRecord]:
        return [
            copy.deepcopy(record)
            for record in self._notifications.values()
            if record.deleted_at is None and (
                chain_id in record.chain_path
                or any(chain_id in path for path in record.chain_paths)
            )
        ]

    async def list_notifications_for_recipient(
        self,
        recipient_id: str,
        include_deleted: bool = False,
    ) -> List[NotificationRecord]:
        records = [
            copy.deepcopy(record)
            for record in self._notifications.values()
            if record.recipient_id == recipient_id
            and (include_deleted or record.deleted_at is None)
        ]
        records.sort(key=lambda record: record.received_at, reverse=True)
        return records

    async def list_notifications_for_report(self, report_id: str) -> List[NotificationRecord]:
        return [
            copy.deepcopy(record)
            for record in self._notifications.values()
            if record.report_id == report_id and record.deleted_at is None
        ]

    async def count_notifications_for_report(self, report_id: str) -> int:
        return sum(
            1 for record in self._notifications.values()
            if record.report_id == report_id and record.deleted_at is None
        )

    async def rewrite_notifications(
        self,
        notification_ids: Sequence[str],
        rewrite: ChainRewrite,
        now_ms: int,
    ) -> List[NotificationRecord]:
        rewritten: List[NotificationRecord] = []
        for notification_id in notification_ids:
            record = self._notifications.get(notification_id)
            if record is None:
                continue
            lock = self._key_locks.setdefault((record.report_id, record.recipient_id), asyncio.Lock())

            async with lock:
                if record.deleted_at is not None:
                    continue
                chain = rewrite(copy.deepcopy(record))
                if chain is None:
                    continue
                record.chain = copy.deepcopy(chain)
                record.updated_at = now_ms
                rewritten.append(copy.deepcopy(record))
        return rewritten

    async def commit_notification_updates(self, updates: Sequence[NotificationUpdate]) -> int:
        updated = 0
        for update in updates:
            record = self._notifications.get(update.notification_id)
            if record is None:
                continue
            record.updated_at = update.updated_at
            if update.is_read is not None:
                record.is_read = update.is_read
            if update.deleted_at is not None:
                record.deleted_at = update.deleted_at
            updated += 1
        return updated

    async def mark_notification_read(self, notification_id: str, recipient_id: str, now_ms: int) -> bool:
        record = self._notifications.get(notification_id)
        if record is None or record.recipient_id != recipient_id:
            return False
        record.is_read = True
        record.updated_at = now_ms
        return True

    # ---- reports ----------------------------------------------------------

    async def create_report(self, report: ReportRecord) -> ReportRecord:
        self._reports[report.id] = copy.deepcopy(report)
        return copy.deepcopy(report)

    async def get_report(self, report_id: str) -> Optional[ReportRecord]:
        report = self._reports.get(report_id)
        return copy.deepcopy(report) if report else None

    async def update_report(self, report_id: str, **fields) -> bool:
        report = self._reports.get(report_id)
        if report is None:
            return False
        for name, value in fields.items():
            setattr(report, name, value)
        return True

    async def delete_report(self, report_id: str) -> bool:
        return self._reports.pop(report_id, None) is not None

    # ---- housekeeping -----------------------------------------------------

    async def hit_rate_limit(self, key: str, limit: int, window_ms: int, now_ms: int) -> bool:
        count, window_start = self._rate_limits.get(key, (0, now_ms))

        if now_ms - window_start >= window_ms:
            count, window_start = 0, now_ms

        if count >= limit:
            return False

        self._rate_limits[key] = (count + 1, window_start)
        return True

    async def delete_expired_batch(self, cutoff: int, batch_size: int) -> CleanupStats:
        stats = CleanupStats(cutoff=cutoff)

        expired_edges = [edge for edge in self._edges if edge.recorded_at < cutoff][:batch_size]
        for edge in expired_edges:
            self._edges.remove(edge)
        stats.interactions_deleted = len(expired_edges)

        expired_notifications = [
            record for record in self._notifications.values() if record.received_at < cutoff
        ][:batch_size]
        for record in expired_notifications:
            del self._notifications[record.id]
            self._notification_keys.pop((record.report_id, record.recipient_id), None)
        stats.notifications_deleted = len(expired_notifications)

        expired_reports = [
            report_id for report_id, report in self._reports.items() if report.reported_at < cutoff
        ][:batch_size]
        for report_id in expired_reports:
            del self._reports[report_id]
        stats.reports_deleted = len(expired_reports)

        return stats

    async def record_cleanup(self, stats: CleanupStats) -> None:
        self.cleanup_log.append(copy.copy(stats))
