"""
Chain Status Updates

When someone in a chain reports a new test result, every notification
whose chain includes them is rewritten so the recipient sees the new
status. Notifications are found by chain-domain hash membership; the
node to rewrite is the one at the member's position in that specific
path.

Recipients are pushed an UPDATE only when the member sits strictly
between the reporter and them. The member's own notifications, where
they are the last node, are rewritten without a push.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .chain import ChainNode, ChainVisualization, TestStatus
from .config import PropagationSettings, get_propagation_settings
from .errors import AuthorizationError
from .hashing import hash_chain, hash_graph, hash_notification, short_hash
from .incubation import LabelsInput, labels_match, overlapping_labels, parse_condition_labels
from .push import DeliverySink, PushBatcher, PushMessage
from .records import NotificationRecord, NotificationType
from .retry import with_retries
from .store import ChainRewrite, ExposureStore
from .windows import now_millis

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _set_status(
    node: ChainNode,
    status: TestStatus,
    tested_positive_for: Optional[List[str]] = None,
    only_from: Optional[TestStatus] = None,
) -> bool:
    """Rewrite one node; returns True if anything changed."""
    if only_from is not None and node.test_status != only_from:
        return False

    changed = node.test_status != status
    node.test_status = status

    if status == TestStatus.POSITIVE and tested_positive_for:
        merged = list(dict.fromkeys([*(node.tested_positive_for or []), *tested_positive_for]))
        if merged != (node.tested_positive_for or []):
            node.tested_positive_for = merged
            changed = True

    return changed


def apply_member_status(
    record: NotificationRecord,
    chain_id: str,
    status: TestStatus,
    tested_positive_for: Optional[List[str]] = None,
    only_from: Optional[TestStatus] = None,
) -> tuple[Optional[ChainVisualization], bool]:
    """
    Rewrite the member's node in the primary chain and in every stored path.

    Returns:
        (new visualization or None if unchanged, member is an intermediary
        on at least one path)
    """
    chain = record.chain.copy()
    changed = False
    intermediary = False

    if chain_id in record.chain_path:
        if len(chain.nodes) != len(record.chain_path):
            logger.warning(
                f"Notification {record.id}: {len(chain.nodes)} nodes for a path of "
                f"{len(record.chain_path)}; skipping"
            )
            return None, False
        index = record.chain_path.index(chain_id)
        changed |= _set_status(chain.nodes[index], status, tested_positive_for, only_from)
        intermediary |= 0 < index < len(record.chain_path) - 1

    for path_ids, path_nodes in zip(record.chain_paths, chain.paths):
        if chain_id not in path_ids or len(path_nodes) != len(path_ids):
            continue
        index = path_ids.index(chain_id)
        changed |= _set_status(path_nodes[index], status, tested_positive_for, only_from)
        intermediary |= 0 < index < len(path_ids) - 1

    return (chain if changed else None), intermediary


def apply_current_user_status(
    record: NotificationRecord,
    status: TestStatus,
    tested_positive_for: Optional[List[str]] = None,
) -> Optional[ChainVisualization]:
    """Rewrite the recipient's own node(s). None if nothing changed."""
    chain = record.chain.copy()
    changed = False

    for node in [*chain.nodes, *(node for path in chain.paths for node in path)]:
        if node.is_current_user:
            changed |= _set_status(node, status, tested_positive_for)

    return chain if changed else None


class ChainUpdatePropagator:
    """Rewrites chain visualizations after a test-status change."""

    def __init__(
        self,
        store: ExposureStore,
        sink: DeliverySink,
        settings: Optional[PropagationSettings] = None,
        clock: Callable[[], int] = now_millis,
    ):
        self.store = store
        self.sink = sink
        self.settings = settings or get_propagation_settings()
        self.clock = clock

    async def _call(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retries(
            operation,
            description=description,
            attempts=self.settings.store_retry_attempts,
            base_delay=self.settings.store_retry_base_delay,
            max_delay=self.settings.store_retry_max_delay,
        )

    # -------------------------------------------------------------------------
    # ENTRY POINTS
    # -------------------------------------------------------------------------

    async def propagate_negative_test_update(
        self,
        user_graph_id_raw: str,
        condition_label: LabelsInput = None,
        notification_id: Optional[str] = None,
    ) -> int:
        """
        Mark a user NEGATIVE in every chain they belong to.

        Args:
            user_graph_id_raw: The user's raw id (hashed here)
            condition_label: Only touch notifications for this label (or labels)
            notification_id: The user's own notification this result
                answers; its current-user node is flipped too

        Returns:
            Number of notifications updated
        """
        updated = await self._rewrite_member_status(
            user_graph_id_raw,
            TestStatus.NEGATIVE,
            label_filter=condition_label,
        )

        if notification_id:
            updated += await self.update_own_notification(
                user_graph_id_raw, notification_id, TestStatus.NEGATIVE
            )

        logger.info(f"Negative update for {short_hash(hash_graph(user_graph_id_raw))}: {updated} notification(s)")
        return updated

    async def propagate_positive_test_update(
        self,
        user_graph_id_raw: str,
        condition_labels_json: LabelsInput,
    ) -> int:
        """Mark a user POSITIVE (for the given labels) in every chain they belong to."""
        labels = parse_condition_labels(condition_labels_json)
        updated = await self._rewrite_member_status(
            user_graph_id_raw,
            TestStatus.POSITIVE,
            label_filter=labels,
            tested_positive_for=labels,
        )
        logger.info(f"Positive update for {short_hash(hash_graph(user_graph_id_raw))}: {updated} notification(s)")
        return updated

    async def revert_negative_status(self, user_graph_id_raw: str) -> int:
        """Undo a negative result: NEGATIVE nodes for this member go back to UNKNOWN."""
        return await self._rewrite_member_status(
            user_graph_id_raw,
            TestStatus.UNKNOWN,
            only_from=TestStatus.NEGATIVE,
        )

    async def update_own_notification(
        self,
        user_raw_id: str,
        notification_id: str,
        status: TestStatus,
    ) -> int:
        """
        Flip the current-user node of one of the user's own notifications.

        Raises:
            AuthorizationError: The notification belongs to someone else
        """
        record = await self._call(
            f"load notification {notification_id}",
            lambda: self.store.get_notification(notification_id),
        )
        if record is None:
            logger.warning(f"Own notification {notification_id} not found")
            return 0

        if record.recipient_id != hash_notification(user_raw_id):
            raise AuthorizationError("Notification does not belong to caller")

        rewritten = await self._rewrite(
            [record.id],
            lambda fresh: apply_current_user_status(fresh, status),
        )
        return len(rewritten)

    async def update_own_notifications_positive(
        self,
        user_raw_id: str,
        condition_labels_json: LabelsInput,
    ) -> int:
        """Flip the current-user node to POSITIVE on every matching notification the user received."""
        labels = parse_condition_labels(condition_labels_json)
        recipient_id = hash_notification(user_raw_id)

        records = await self._call(
            f"list notifications for {short_hash(recipient_id)}",
            lambda: self.store.list_notifications_for_recipient(recipient_id),
        )

        def rewrite(record: NotificationRecord) -> Optional[ChainVisualization]:
            if not labels_match(record.condition_labels, labels):
                return None
            tested_for = overlapping_labels(labels, record.condition_labels) or labels
            return apply_current_user_status(record, TestStatus.POSITIVE, tested_for)

        rewritten = await self._rewrite([record.id for record in records], rewrite)
        return len(rewritten)

    async def find_linked_report_id(
        self,
        recipient_notification_id: str,
        condition_label: Optional[str],
    ) -> Optional[str]:
        """
        Most recent report that exposed this recipient to the label.

        Returns:
            Report id, or None if the recipient has no matching exposure
        """
        records = await self._call(
            f"list notifications for {short_hash(recipient_notification_id)}",
            lambda: self.store.list_notifications_for_recipient(recipient_notification_id),
        )
        for record in records:
            if record.type != NotificationType.EXPOSURE:
                continue
            if labels_match(record.condition_labels, condition_label):
                return record.report_id
        return None

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    async def _rewrite_member_status(
        self,
        user_graph_id_raw: str,
        status: TestStatus,
        label_filter: LabelsInput = None,
        tested_positive_for: Optional[Sequence[str]] = None,
        only_from: Optional[TestStatus] = None,
    ) -> int:
        chain_id = hash_chain(hash_graph(user_graph_id_raw))

        records = await self._call(
            f"chain membership query for {short_hash(chain_id)}",
            lambda: self.store.find_notifications_by_chain_member(chain_id),
        )

        # notification id -> member sits between reporter and recipient
        intermediary_in: Dict[str, bool] = {}

        def rewrite(record: NotificationRecord) -> Optional[ChainVisualization]:
            if not labels_match(record.condition_labels, label_filter):
                return None

            positive_for = None
            if tested_positive_for:
                positive_for = overlapping_labels(tested_positive_for, record.condition_labels) or list(tested_positive_for)

            chain, intermediary = apply_member_status(record, chain_id, status, positive_for, only_from)
            intermediary_in[record.id] = intermediary
            return chain

        rewritten = await self._rewrite([record.id for record in records], rewrite)
        await self.push_to_recipients([record for record in rewritten if intermediary_in.get(record.id)])
        return len(rewritten)

    async def _rewrite(self, notification_ids: List[str], rewrite: ChainRewrite) -> List[NotificationRecord]:
        """Locked rewrite in batches; each batch re-reads its rows."""
        now = self.clock()
        rewritten: List[NotificationRecord] = []
        batch_size = self.settings.batch_size
        for start in range(0, len(notification_ids), batch_size):
            batch = notification_ids[start:start + batch_size]
            rewritten.extend(await self._call(
                f"rewrite {len(batch)} notification chain(s)",
                lambda: self.store.rewrite_notifications(batch, rewrite, now),
            ))
        return rewritten

    async def push_to_recipients(
        self,
        records: List[NotificationRecord],
        notification_type: NotificationType = NotificationType.UPDATE,
    ) -> None:
        if not records:
            return

        recipients: Dict = await self._call(
            "resolve update recipients",
            lambda: self.store.get_users_by_notification_ids(
                list({record.recipient_id for record in records})
            ),
        )

        batcher = PushBatcher(self.sink, self.store, batch_size=self.settings.batch_size)
        for record in records:
            entry = recipients.get(record.recipient_id)
            if entry is None or not entry.push_token:
                continue
            batcher.add(PushMessage(
                token=entry.push_token,
                notification_type=notification_type,
                notification_id=record.id,
                graph_id=entry.graph_id,
            ))
        await batcher.flush()
