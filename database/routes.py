"""
API Routes for the Exposure Notification Backend

- Directory sync and interaction recording
- Report submission and deletion (processed inline)
- Recipient-only notification access
- Retention cleanup for the scheduler

Every identity is derived from the verified caller; nothing a client
sends is taken as its own hash.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from database.schemas import (
    # Users
    UserSync,
    DirectoryEntryResponse,
    # Interactions
    InteractionCreate,
    InteractionResponse,
    # Reports
    ReportCreate,
    ReportResponse,
    ReportDeleted,
    # Notifications
    Notification as NotificationSchema,
    NotificationList,
    ChainLinkInfo,
    # Maintenance
    CleanupResponse,
)
from engine.auth import Caller, get_current_user, require_admin
from engine.chain_updates import ChainUpdatePropagator
from engine.cleanup import cleanup_expired_data
from engine.config import get_propagation_settings
from engine.errors import (
    AuthorizationError,
    RateLimitExceededError,
    ReportNotFoundError,
    ReportValidationError,
)
from engine.push import DeliverySink, create_delivery_sink
from engine.records import ContactEdge, DirectoryEntry, NotificationRecord, NotificationType
from engine.reports import ReportService, ReportSubmission
from engine.store import ExposureStore, create_exposure_store
from engine.windows import now_millis

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# =============================================================================
# DEPENDENCIES
# =============================================================================

_store: Optional[ExposureStore] = None
_sink: Optional[DeliverySink] = None


def get_exposure_store() -> ExposureStore:
    """Process-wide store backed by the shared session factory."""
    global _store
    if _store is None:
        _store = create_exposure_store(use_postgres=True)
    return _store


def get_delivery_sink() -> DeliverySink:
    """Process-wide push sink (FCM, or log-only when push is disabled)."""
    global _sink
    if _sink is None:
        _sink = create_delivery_sink(get_propagation_settings())
    return _sink


def get_report_service(
    store: ExposureStore = Depends(get_exposure_store),
    sink: DeliverySink = Depends(get_delivery_sink),
) -> ReportService:
    return ReportService(store, sink, get_propagation_settings())


def get_update_propagator(
    store: ExposureStore = Depends(get_exposure_store),
    sink: DeliverySink = Depends(get_delivery_sink),
) -> ChainUpdatePropagator:
    return ChainUpdatePropagator(store, sink, get_propagation_settings())


async def shutdown_services() -> None:
    """Release the push client on application shutdown."""
    global _store, _sink
    if _sink is not None:
        await _sink.aclose()
    _store = None
    _sink = None


# =============================================================================
# HELPERS
# =============================================================================

async def get_owned_notification(
    store: ExposureStore,
    notification_id: UUID,
    caller: Caller,
) -> NotificationRecord:
    """
    Load a notification the caller received.

    Raises:
        HTTPException: 404 if missing, 403 if it belongs to someone else
    """
    record = await store.get_notification(str(notification_id))
    if record is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    if record.recipient_id != caller.notification_id:
        raise HTTPException(status_code=403, detail="Not your notification")
    return record


# =============================================================================
# USER ROUTES
# =============================================================================

@router.post("/users/sync", response_model=DirectoryEntryResponse)
async def sync_user(
    payload: UserSync,
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    Create or refresh the caller's directory entry.
    Omitting push_token keeps the stored one.
    """
    entry = await store.upsert_user(DirectoryEntry(
        graph_id=caller.graph_id,
        notification_id=caller.notification_id,
        display_name=payload.display_name,
        push_token=payload.push_token,
        uid=caller.user_id,
    ))
    return DirectoryEntryResponse.from_entry(entry)


# =============================================================================
# INTERACTION ROUTES
# =============================================================================

@router.post("/interactions", response_model=InteractionResponse)
async def record_interaction(
    payload: InteractionCreate,
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    Record that the caller met someone. The caller is always the owner.
    """
    if payload.partner_graph_id == caller.graph_id:
        raise HTTPException(status_code=400, detail="Cannot record an interaction with yourself")

    now = now_millis()
    recorded_at = payload.recorded_at if payload.recorded_at is not None else now
    if recorded_at > now:
        raise HTTPException(status_code=400, detail="Interaction time cannot be in the future")

    edge = await store.record_edge(ContactEdge(
        owner_graph_id=caller.graph_id,
        partner_graph_id=payload.partner_graph_id,
        partner_display_name=payload.partner_display_name,
        recorded_at=recorded_at,
    ))

    return InteractionResponse(
        id=edge.id,
        partner_graph_id=edge.partner_graph_id,
        partner_display_name=edge.partner_display_name,
        recorded_at=edge.recorded_at,
    )


# =============================================================================
# REPORT ROUTES
# =============================================================================

@router.post("/reports", response_model=ReportResponse)
async def submit_report(
    payload: ReportCreate,
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
    service: ReportService = Depends(get_report_service),
):
    """
    Submit a positive or negative test result.
    Propagation runs inline; the response carries the final status.
    """
    entry = await store.get_user_by_uid(caller.user_id)
    display_name = entry.display_name if entry else (caller.display_name or "")

    submission = ReportSubmission(
        test_result=payload.test_result,
        condition_labels=payload.condition_labels,
        test_date=payload.test_date,
        privacy_level=payload.privacy_level,
        notification_id=str(payload.notification_id) if payload.notification_id else None,
    )

    try:
        report = await service.submit_report(caller.user_id, display_name, submission)
    except ReportValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AuthorizationError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))

    return ReportResponse.from_record(report)


@router.delete("/reports/{report_id}", response_model=ReportDeleted)
async def delete_report(
    report_id: UUID,
    caller: Caller = Depends(get_current_user),
    service: ReportService = Depends(get_report_service),
):
    """
    Delete one of the caller's reports and retract its notifications.
    """
    try:
        affected = await service.delete_report(caller.user_id, str(report_id))
    except ReportNotFoundError:
        raise HTTPException(status_code=404, detail="Report not found")
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Not your report")
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))

    return ReportDeleted(notifications_affected=affected)


# =============================================================================
# NOTIFICATION ROUTES
# =============================================================================

@router.get("/notifications", response_model=NotificationList)
async def list_notifications(
    unread_only: bool = Query(False),
    notification_type: Optional[NotificationType] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    The caller's notifications, newest first.
    """
    records = await store.list_notifications_for_recipient(caller.notification_id)
    unread_count = sum(1 for record in records if not record.is_read)

    if unread_only:
        records = [record for record in records if not record.is_read]
    if notification_type:
        records = [record for record in records if record.type == notification_type]

    return NotificationList(
        notifications=[
            NotificationSchema.from_record(record)
            for record in records[offset:offset + limit]
        ],
        total=len(records),
        unread_count=unread_count,
    )


@router.get("/notifications/linked-report", response_model=ChainLinkInfo)
async def get_linked_report(
    condition_label: Optional[str] = Query(None, max_length=100),
    caller: Caller = Depends(get_current_user),
    updates: ChainUpdatePropagator = Depends(get_update_propagator),
):
    """
    Most recent report that exposed the caller to this condition.
    A positive follow-up passes it on so earlier recipients are not re-notified.
    """
    linked_report_id = await updates.find_linked_report_id(caller.notification_id, condition_label)
    return ChainLinkInfo(condition_label=condition_label, linked_report_id=linked_report_id)


@router.get("/notifications/{notification_id}", response_model=NotificationSchema)
async def get_notification(
    notification_id: UUID,
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    A single notification. Only its recipient may read it.
    """
    record = await get_owned_notification(store, notification_id, caller)
    return NotificationSchema.from_record(record)


@router.patch("/notifications/{notification_id}/read", response_model=NotificationSchema)
async def mark_notification_read(
    notification_id: UUID,
    caller: Caller = Depends(get_current_user),
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    Mark a notification as read.
    """
    await get_owned_notification(store, notification_id, caller)
    await store.mark_notification_read(str(notification_id), caller.notification_id, now_millis())

    record = await get_owned_notification(store, notification_id, caller)
    return NotificationSchema.from_record(record)


# =============================================================================
# MAINTENANCE ROUTES
# =============================================================================

@router.post("/admin/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_admin)])
async def run_cleanup(
    store: ExposureStore = Depends(get_exposure_store),
):
    """
    Delete interactions, notifications and reports past retention.
    Intended for a daily scheduler.
    """
    stats = await cleanup_expired_data(store, get_propagation_settings())
    return CleanupResponse.from_stats(stats)
