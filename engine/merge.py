"""
Notification Merge / Dedup

Pure read-modify-write logic behind upsert_notification(). Both stores
call these helpers while holding their per-(report, recipient) lock, so
the rules live in one place:

    - no entry: insert with a single path
    - entry exists, equivalent path already stored: no change
    - entry exists, new path: append it; if strictly shorter, it also
      becomes the primary path and hop depth drops to its length
    - read state, timestamps of first delivery, and the disclosed
      labels/date are never touched by a merge (first written wins)
"""

import copy
import uuid
from typing import List

from .chain import ChainNode, ChainVisualization, contains_equivalent_path
from .records import NotificationDraft, NotificationRecord


def new_notification_id() -> str:
    return str(uuid.uuid4())


def _copy_nodes(nodes: List[ChainNode]) -> List[ChainNode]:
    return copy.deepcopy(nodes)


def build_record(
    draft: NotificationDraft,
    now_ms: int,
    notification_id: str | None = None,
) -> NotificationRecord:
    """Fresh notification holding a single path."""
    return NotificationRecord(
        id=notification_id or new_notification_id(),
        recipient_id=draft.recipient_id,
        report_id=draft.report_id,
        hop_depth=draft.hop_depth,
        chain=ChainVisualization(
            nodes=_copy_nodes(draft.nodes),
            paths=[_copy_nodes(draft.nodes)],
        ),
        chain_path=list(draft.chain_path),
        chain_paths=[list(draft.chain_path)],
        condition_labels=list(draft.condition_labels) if draft.condition_labels else None,
        exposure_at=draft.exposure_at,
        received_at=now_ms,
        updated_at=now_ms,
    )


def ensure_path_lists(record: NotificationRecord) -> None:
    """
    Backfill chain_paths / chain.paths for entries written with only a
    primary path, keeping the two lists index-aligned.
    """
    if not record.chain_paths:
        record.chain_paths = [list(record.chain_path)]
    if not record.chain.paths:
        record.chain.paths = [_copy_nodes(record.chain.nodes)]


def merge_draft(record: NotificationRecord, draft: NotificationDraft, now_ms: int) -> bool:
    """
    Merge a newly discovered path into an existing notification.

    Args:
        record: Stored notification (mutated in place)
        draft: The path just discovered
        now_ms: Merge timestamp

    Returns:
        True if the record changed and must be written back
    """
    ensure_path_lists(record)

    if contains_equivalent_path(record.chain_paths, draft.chain_path):
        return False

    record.chain_paths.append(list(draft.chain_path))
    record.chain.paths.append(_copy_nodes(draft.nodes))

    if draft.hop_depth < record.hop_depth:
        record.hop_depth = draft.hop_depth
        record.chain_path = list(draft.chain_path)
        record.chain.nodes = _copy_nodes(draft.nodes)

    record.updated_at = now_ms
    return True
