"""
Identity Hashing

Domain-separated one-way identifiers derived from a user's stable
anonymous ID. The same person hashes to a different, uncorrelatable
value in each domain:

    graph          ""               interaction edges, user directory join key
    notification   "notification:"  notification recipients
    chain          "chain:"         chain membership inside notifications
    report         "report:"        report ownership

hash_graph() uses an empty salt and must stay that way: devices compute
the same value during discovery.
"""

import hashlib

GRAPH_SALT = ""
NOTIFICATION_SALT = "notification:"
CHAIN_SALT = "chain:"
REPORT_SALT = "report:"


def hash_identity(salt: str, raw_id: str) -> str:
    """SHA-256 of salt + raw_id as 64 lowercase hex characters."""
    return hashlib.sha256(f"{salt}{raw_id}".encode("utf-8")).hexdigest()


def hash_graph(raw_id: str) -> str:
    return hash_identity(GRAPH_SALT, raw_id)


def hash_notification(raw_id: str) -> str:
    return hash_identity(NOTIFICATION_SALT, raw_id)


def hash_chain(raw_id: str) -> str:
    return hash_identity(CHAIN_SALT, raw_id)


def hash_report(raw_id: str) -> str:
    return hash_identity(REPORT_SALT, raw_id)


def short_hash(value: str | None) -> str:
    """Truncated hash for log lines."""
    if not value:
        return "<none>"
    return f"{value[:8]}..."
