"""
Exposure Chain Engine

Anonymous exposure-chain notification:
- Domain-separated identity hashing
- Incubation windows per condition
- Multi-hop chain propagation over directed contact edges
- Notification merge and dedup across paths
- Chain status updates after later test results
- Report lifecycle, rate limiting, retention cleanup and push delivery

Store-backed modules (propagation, chain_updates, reports, store) are
imported from their own modules; this package only re-exports the
dependency-free building blocks.
"""

from .chain import (
    SOMEONE_MARKER,
    YOU_MARKER,
    TestStatus,
    PrivacyLevel,
    ChainNode,
    ChainVisualization,
    build_display_chain,
    paths_equivalent,
)

from .records import (
    NotificationType,
    TestResult,
    ReportStatus,
    ContactEdge,
    DirectoryEntry,
    NotificationRecord,
    NotificationDraft,
    ReportRecord,
    CleanupStats,
)

from .errors import (
    ExposureError,
    TransientStoreError,
    ReportValidationError,
    ReportNotFoundError,
    AuthorizationError,
    RateLimitExceededError,
    PushDeliveryError,
)

from .hashing import (
    hash_graph,
    hash_notification,
    hash_chain,
    hash_report,
)

from .incubation import (
    max_incubation_days,
    parse_condition_labels,
)

from .windows import (
    ExposureWindow,
    hop_window,
    now_millis,
)

__all__ = [
    # Chain
    "SOMEONE_MARKER",
    "YOU_MARKER",
    "TestStatus",
    "PrivacyLevel",
    "ChainNode",
    "ChainVisualization",
    "build_display_chain",
    "paths_equivalent",
    # Records
    "NotificationType",
    "TestResult",
    "ReportStatus",
    "ContactEdge",
    "DirectoryEntry",
    "NotificationRecord",
    "NotificationDraft",
    "ReportRecord",
    "CleanupStats",
    # Errors
    "ExposureError",
    "TransientStoreError",
    "ReportValidationError",
    "ReportNotFoundError",
    "AuthorizationError",
    "RateLimitExceededError",
    "PushDeliveryError",
    # Hashing
    "hash_graph",
    "hash_notification",
    "hash_chain",
    "hash_report",
    # Incubation
    "max_incubation_days",
    "parse_condition_labels",
    # Windows
    "ExposureWindow",
    "hop_window",
    "now_millis",
]
