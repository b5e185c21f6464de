"""
CRUD Operations

Database Create, Read, Update, Delete operations.
Each module handles a specific entity.
"""

from .users import (
    get_user_by_uid,
    get_user_by_graph_id,
    get_users_by_graph_ids,
    get_user_by_notification_id,
    get_users_by_notification_ids,
    upsert_user,
    clear_push_token,
)

from .interactions import (
    record_interaction,
    find_edges_by_partner,
    delete_expired_interactions,
)

from .notifications import (
    get_notification,
    get_notification_for_recipient,
    create_notification,
    find_notifications_by_chain_member,
    lock_notifications,
    get_recipient_notifications,
    get_report_notifications,
    count_report_notifications,
    update_notification,
    mark_notification_read,
    delete_expired_notifications,
)

from .reports import (
    get_report,
    create_report,
    update_report,
    delete_report,
    delete_expired_reports,
)

from .housekeeping import (
    hit_rate_limit,
    create_cleanup_log,
)

__all__ = [
    # Users
    "get_user_by_uid",
    "get_user_by_graph_id",
    "get_users_by_graph_ids",
    "get_user_by_notification_id",
    "get_users_by_notification_ids",
    "upsert_user",
    "clear_push_token",
    # Interactions
    "record_interaction",
    "find_edges_by_partner",
    "delete_expired_interactions",
    # Notifications
    "get_notification",
    "get_notification_for_recipient",
    "create_notification",
    "find_notifications_by_chain_member",
    "lock_notifications",
    "get_recipient_notifications",
    "get_report_notifications",
    "count_report_notifications",
    "update_notification",
    "mark_notification_read",
    "delete_expired_notifications",
    # Reports
    "get_report",
    "create_report",
    "update_report",
    "delete_report",
    "delete_expired_reports",
    # Housekeeping
    "hit_rate_limit",
    "create_cleanup_log",
]
