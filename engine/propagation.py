"""
Exposure Chain Propagation

Breadth-first traversal of the contact graph from a positive reporter.

Traversal is unidirectional: a node N is expanded by looking up edges
whose *partner* is N, i.e. edges someone else recorded about N. An edge
N recorded about somebody else is never followed, so a reporter cannot
cause notifications for people who never recorded them.

Each hop's eligible edges fall in a window that looks back the longest
incubation period among the report's labels from an anchor: the test
date at hop 1, then the timestamp of the edge through which the node
was reached. Nothing older than the retention boundary is eligible.

A recipient reached through several paths gets one notification. Its
hop depth is the shortest path found; every non-equivalent path is kept
for display. The visited map is the cycle breaker: each node is
expanded at most once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .chain import (
    SOMEONE_MARKER,
    ChainNode,
    PrivacyLevel,
    TestStatus,
    build_display_chain,
    contains_equivalent_path,
)
from .config import PropagationSettings, get_propagation_settings
from .errors import ReportValidationError, TransientStoreError
from .hashing import hash_chain, short_hash
from .incubation import label_set, max_incubation_days, parse_condition_labels
from .push import DeliverySink, PushBatcher, PushMessage, dispatch_push
from .records import (
    ContactEdge,
    DirectoryEntry,
    NotificationDraft,
    NotificationType,
)
from .retry import with_retries
from .store import ExposureStore
from .windows import hop_window, now_millis, retention_boundary

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# RUN STATE
# =============================================================================

@dataclass
class VisitedNode:
    """
    Traversal state for one graph id.

    recipient_id is None for nodes that can never receive a notification
    in this run: the reporter, directory misses, recipients already
    covered by a linked report, and nodes whose write was abandoned.
    """
    paths: List[List[str]] = field(default_factory=list)
    min_hop: int = 0
    recipient_id: Optional[str] = None


@dataclass
class FrontierNode:
    """A node waiting to be expanded on the next hop."""
    graph_id: str
    path: List[str]
    # Chain as seen by anyone reached through this node, excluding the node itself
    upstream: List[ChainNode]
    # This node's own entry; its display name is filled in from the edge snapshot
    node: ChainNode
    anchor: int


@dataclass
class Discovery:
    """A candidate contact found through one edge."""
    edge: ContactEdge
    via: FrontierNode

    @property
    def graph_id(self) -> str:
        return self.edge.owner_graph_id

    @property
    def path(self) -> List[str]:
        return [*self.via.path, self.edge.owner_graph_id]


@dataclass
class PropagationResult:
    """Summary of one propagation run."""
    report_id: str
    notified_count: int = 0
    created: int = 0
    merged: int = 0
    skipped_unknown: int = 0
    abandoned_branches: int = 0
    max_hop_reached: int = 0


# =============================================================================
# ENGINE
# =============================================================================

class ChainPropagationEngine:
    """
    Runs exposure-chain propagation against an ExposureStore and pushes
    through a DeliverySink.
    """

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

    async def propagate_exposure_chain(
        self,
        report_id: str,
        reporter_graph_id: str,
        reporter_display_name: str,
        condition_labels_json: str | Sequence[str] | None,
        test_date_ms: int,
        privacy_level: PrivacyLevel | str,
        linked_report_id: Optional[str] = None,
        enable_optimizations: bool = True,
    ) -> int:
        """
        Notify everyone reachable from the reporter.

        Args:
            report_id: Report being propagated (part of every notification key)
            reporter_graph_id: Reporter's graph-domain hash
            reporter_display_name: Fallback name for the reporter node
            condition_labels_json: JSON array of labels (or a list)
            test_date_ms: Test date, anchor of the first hop
            privacy_level: What notified users may see
            linked_report_id: Earlier report whose recipients are skipped
                when it already covers every label of this one
            enable_optimizations: Batch pushes and send them after the traversal

        Returns:
            Number of notifications stored for this report
        """
        result = await self.run(
            report_id=report_id,
            reporter_graph_id=reporter_graph_id,
            reporter_display_name=reporter_display_name,
            condition_labels_json=condition_labels_json,
            test_date_ms=test_date_ms,
            privacy_level=privacy_level,
            linked_report_id=linked_report_id,
            enable_optimizations=enable_optimizations,
        )
        return result.notified_count

    async def run(
        self,
        report_id: str,
        reporter_graph_id: str,
        reporter_display_name: str,
        condition_labels_json: str | Sequence[str] | None,
        test_date_ms: int,
        privacy_level: PrivacyLevel | str,
        linked_report_id: Optional[str] = None,
        enable_optimizations: bool = True,
    ) -> PropagationResult:
        """Same as propagate_exposure_chain(), returning the full summary."""
        if not self.store.accepts_report_id(report_id):
            raise ReportValidationError(f"Invalid report id {report_id!r}", field="report_id")

        privacy = PrivacyLevel(privacy_level)
        labels = parse_condition_labels(condition_labels_json)
        window_days = max_incubation_days(labels)
        now = self.clock()
        retention_start = retention_boundary(now, self.settings.retention_days)

        result = PropagationResult(report_id=report_id)
        visited: Dict[str, VisitedNode] = {
            reporter_graph_id: VisitedNode(paths=[[reporter_graph_id]], min_hop=0),
        }

        batcher: Optional[PushBatcher] = None
        if enable_optimizations:
            batcher = PushBatcher(self.sink, self.store, batch_size=self.settings.batch_size)

        logger.info(
            f"Propagating report {report_id} from {short_hash(reporter_graph_id)}: "
            f"{len(labels)} label(s), window {window_days}d, privacy {privacy.value}"
        )

        if linked_report_id:
            await self._skip_linked_recipients(linked_report_id, labels, visited)

        frontier: List[FrontierNode] = [
            FrontierNode(
                graph_id=reporter_graph_id,
                path=[reporter_graph_id],
                upstream=[],
                node=ChainNode(
                    display_name=reporter_display_name or SOMEONE_MARKER,
                    test_status=TestStatus.POSITIVE,
                    date=test_date_ms if privacy.discloses_date else None,
                ),
                anchor=test_date_ms,
            )
        ]

        for hop in range(1, self.settings.max_chain_depth + 1):
            if not frontier:
                break

            discoveries = await self._expand_frontier(
                frontier, window_days, retention_start, result
            )
            if not discoveries:
                break

            new_ids = [
                discovery.graph_id for discovery in discoveries
                if discovery.graph_id not in visited
            ]
            directory = await self._resolve_users(new_ids)

            next_frontier: List[FrontierNode] = []
            for discovery in discoveries:
                frontier_node = await self._visit(
                    discovery=discovery,
                    hop=hop,
                    report_id=report_id,
                    labels=labels,
                    privacy=privacy,
                    visited=visited,
                    directory=directory,
                    batcher=batcher,
                    result=result,
                )
                if frontier_node is not None:
                    next_frontier.append(frontier_node)

            if next_frontier:
                result.max_hop_reached = hop
            frontier = next_frontier

        if batcher is not None:
            await batcher.flush()

        try:
            result.notified_count = await self._call(
                f"count notifications for report {report_id}",
                lambda: self.store.count_notifications_for_report(report_id),
            )
        except TransientStoreError:
            result.notified_count = sum(
                1 for state in visited.values() if state.recipient_id is not None
            )

        logger.info(
            f"Report {report_id} propagated: {result.notified_count} notified "
            f"({result.created} new, {result.merged} merged), "
            f"max hop {result.max_hop_reached}, {result.skipped_unknown} unknown, "
            f"{result.abandoned_branches} abandoned"
        )
        return result

    # -------------------------------------------------------------------------
    # LINKED REPORTS
    # -------------------------------------------------------------------------

    async def _skip_linked_recipients(
        self,
        linked_report_id: str,
        labels: List[str],
        visited: Dict[str, VisitedNode],
    ) -> None:
        """
        Pre-mark the recipients of a linked report as visited when that
        report already covers every label of this one.
        """
        try:
            linked = await self._call(
                f"load linked report {linked_report_id}",
                lambda: self.store.get_report(linked_report_id),
            )
            if linked is None:
                logger.warning(f"Linked report {linked_report_id} not found")
                return

            new_labels = label_set(labels)
            if not new_labels or not new_labels <= label_set(linked.condition_labels):
                logger.info(f"Linked report {linked_report_id} does not cover all labels; no skip")
                return

            notifications = await self._call(
                f"list notifications of linked report {linked_report_id}",
                lambda: self.store.list_notifications_for_report(linked_report_id),
            )
            recipients = await self._call(
                "resolve linked recipients",
                lambda: self.store.get_users_by_notification_ids(
                    [notification.recipient_id for notification in notifications]
                ),
            )
        except TransientStoreError:
            logger.warning(f"Could not load linked report {linked_report_id}; propagating without skip")
            return

        skipped = 0
        for entry in recipients.values():
            if entry.graph_id not in visited:
                visited[entry.graph_id] = VisitedNode()
                skipped += 1

        logger.info(f"Skipping {skipped} recipient(s) already notified by linked report {linked_report_id}")

    # -------------------------------------------------------------------------
    # EXPANSION
    # -------------------------------------------------------------------------

    async def _expand_frontier(
        self,
        frontier: List[FrontierNode],
        window_days: int,
        retention_start: int,
        result: PropagationResult,
    ) -> List[Discovery]:
        """Edges into every frontier node, one discovery per (node, owner)."""
        discoveries: List[Discovery] = []

        for frontier_node in frontier:
            window = hop_window(frontier_node.anchor, window_days, retention_start)
            if window.is_empty:
                continue

            try:
                edges = await self._call(
                    f"edge query for {short_hash(frontier_node.graph_id)}",
                    lambda: self.store.find_edges_by_partner(frontier_node.graph_id, window.start, window.end),
                )
            except TransientStoreError:
                logger.error(f"Abandoning branch at {short_hash(frontier_node.graph_id)}: edge query failed")
                result.abandoned_branches += 1
                continue

            # one discovery per owner, keeping the most recent edge
            latest: Dict[str, ContactEdge] = {}
            for edge in edges:
                current = latest.get(edge.owner_graph_id)
                if current is None or edge.recorded_at > current.recorded_at:
                    latest[edge.owner_graph_id] = edge

            discoveries.extend(Discovery(edge=edge, via=frontier_node) for edge in latest.values())

        return discoveries

    async def _resolve_users(
        self,
        graph_ids: List[str],
    ) -> Dict[str, DirectoryEntry]:
        """
        Batched directory lookup. Chunks run concurrently; a chunk that
        keeps failing leaves its ids unresolved.
        """
        unique_ids = list(dict.fromkeys(graph_ids))

        chunk_size = self.settings.batch_size
        chunks = [unique_ids[i:i + chunk_size] for i in range(0, len(unique_ids), chunk_size)]

        async def lookup(chunk: List[str]) -> Dict[str, DirectoryEntry]:
            try:
                return await self._call(
                    f"directory lookup ({len(chunk)} ids)",
                    lambda: self.store.get_users_by_graph_ids(chunk),
                )
            except TransientStoreError:
                logger.error(f"Directory lookup failed for {len(chunk)} id(s); skipping them")
                return {}

        found: Dict[str, DirectoryEntry] = {}
        for chunk_result in await asyncio.gather(*(lookup(chunk) for chunk in chunks)):
            found.update(chunk_result)

        return found

    # -------------------------------------------------------------------------
    # VISIT
    # -------------------------------------------------------------------------

    async def _visit(
        self,
        discovery: Discovery,
        hop: int,
        report_id: str,
        labels: List[str],
        privacy: PrivacyLevel,
        visited: Dict[str, VisitedNode],
        directory: Dict[str, DirectoryEntry],
        batcher: Optional[PushBatcher],
        result: PropagationResult,
    ) -> Optional[FrontierNode]:
        """
        Handle one discovery. Returns the node to expand next hop, or
        None when the candidate is not (re-)enqueued.
        """
        graph_id = discovery.graph_id
        edge = discovery.edge
        via = discovery.via

        # self-edges and loops back into this branch
        if graph_id in via.path:
            return None

        path = discovery.path
        state = visited.get(graph_id)

        if state is not None:
            if state.recipient_id is None:
                return None
            if contains_equivalent_path(state.paths, path):
                return None
            state.paths.append(path)
            state.min_hop = min(state.min_hop, hop)
            upserted = await self._upsert(
                self._draft(discovery, hop, report_id, labels, privacy, state.recipient_id),
                result,
            )
            if upserted is not None and upserted.changed:
                result.merged += 1
            return None

        state = VisitedNode(paths=[path], min_hop=hop)
        visited[graph_id] = state

        entry = directory.get(graph_id)
        if entry is None:
            logger.info(f"No directory entry for {short_hash(graph_id)}; skipping")
            result.skipped_unknown += 1
            return None

        upserted = await self._upsert(
            self._draft(discovery, hop, report_id, labels, privacy, entry.notification_id),
            result,
        )
        if upserted is None:
            return None

        state.recipient_id = entry.notification_id

        if upserted.created:
            result.created += 1
            logger.info(
                f"Notified {short_hash(entry.notification_id)} at hop {hop} "
                f"for report {report_id}"
            )
            if entry.push_token:
                message = PushMessage(
                    token=entry.push_token,
                    notification_type=NotificationType.EXPOSURE,
                    notification_id=upserted.record.id,
                    graph_id=entry.graph_id,
                )
                if batcher is not None:
                    batcher.add(message)
                else:
                    await dispatch_push(self.sink, self.store, message)
        elif upserted.changed:
            result.merged += 1

        return FrontierNode(
            graph_id=graph_id,
            path=path,
            upstream=self._upstream_for(discovery),
            node=ChainNode(
                display_name="",
                test_status=TestStatus.UNKNOWN,
                date=edge.recorded_at if privacy.discloses_date else None,
            ),
            anchor=edge.recorded_at,
        )

    async def _upsert(self, draft: NotificationDraft, result: PropagationResult):
        try:
            return await self._call(
                f"upsert notification for {short_hash(draft.recipient_id)}",
                lambda: self.store.upsert_notification(draft, self.clock()),
            )
        except TransientStoreError:
            logger.error(
                f"Abandoning branch at {short_hash(draft.recipient_id)}: "
                f"notification write failed"
            )
            result.abandoned_branches += 1
            return None

    @staticmethod
    def _upstream_for(discovery: Discovery) -> List[ChainNode]:
        """Upstream chain for the candidate: the expanded node's chain plus
        the expanded node itself, named as the candidate recorded it."""
        via = discovery.via
        name = discovery.edge.partner_display_name or via.node.display_name or SOMEONE_MARKER
        return [*via.upstream, replace(via.node, display_name=name)]

    def _draft(
        self,
        discovery: Discovery,
        hop: int,
        report_id: str,
        labels: List[str],
        privacy: PrivacyLevel,
        recipient_id: str,
    ) -> NotificationDraft:
        exposure_at = discovery.edge.recorded_at if privacy.discloses_date else None
        return NotificationDraft(
            report_id=report_id,
            recipient_id=recipient_id,
            hop_depth=hop,
            chain_path=[hash_chain(graph_id) for graph_id in discovery.path],
            nodes=build_display_chain(self._upstream_for(discovery), exposure_at),
            condition_labels=list(labels) if privacy.discloses_labels and labels else None,
            exposure_at=exposure_at,
        )
