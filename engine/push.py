"""
Push Delivery

Fire-and-forget push dispatch. The engine hands messages to a
DeliverySink and never retries; failures are logged, and a token the
provider reports as invalid is cleared from the directory.

    PushMessage          localized payload for one device
    DeliverySink         sink interface
    FcmDeliverySink      Firebase Cloud Messaging HTTP v1 over httpx
    LoggingDeliverySink  logs instead of sending (push disabled / dev)
    PushBatcher          collects a run's pushes, flushes in chunks
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .config import PropagationSettings, get_propagation_settings
from .errors import ExposureError, PushDeliveryError
from .hashing import short_hash
from .records import NotificationType
from .store import ExposureStore

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "exposure_notifications"

NOTIFICATION_LOC_KEYS: Dict[NotificationType, tuple[str, str]] = {
    NotificationType.EXPOSURE: ("notification_exposure_title", "notification_exposure_body"),
    NotificationType.UPDATE: ("notification_update_title", "notification_update_body"),
    NotificationType.REPORT_DELETED: (
        "notification_report_deleted_title",
        "notification_report_deleted_body",
    ),
}


# =============================================================================
# MESSAGE
# =============================================================================

@dataclass
class PushMessage:
    """One push to one device."""
    token: str
    notification_type: NotificationType
    notification_id: str
    # Directory key of the device owner, for invalid-token cleanup
    graph_id: Optional[str] = None

    @property
    def data(self) -> Dict[str, str]:
        return {
            "notificationId": self.notification_id,
            "type": self.notification_type.value,
        }

    @property
    def title_loc_key(self) -> str:
        return NOTIFICATION_LOC_KEYS[self.notification_type][0]

    @property
    def body_loc_key(self) -> str:
        return NOTIFICATION_LOC_KEYS[self.notification_type][1]

    def to_fcm_payload(self) -> Dict:
        """FCM HTTP v1 `message` object with Android and APNs localization."""
        return {
            "token": self.token,
            "data": self.data,
            "android": {
                "priority": "HIGH",
                "notification": {
                    "channel_id": ANDROID_CHANNEL_ID,
                    "title_loc_key": self.title_loc_key,
                    "body_loc_key": self.body_loc_key,
                    "default_sound": True,
                },
            },
            "apns": {
                "payload": {
                    "aps": {
                        "alert": {
                            "title-loc-key": self.title_loc_key,
                            "body-loc-key": self.body_loc_key,
                        },
                        "sound": "default",
                    },
                },
            },
        }


# =============================================================================
# SINKS
# =============================================================================

class DeliverySink(abc.ABC):
    """Push transport."""

    @abc.abstractmethod
    async def send(self, message: PushMessage) -> str:
        """
        Send one message.

        Returns:
            Provider message id

        Raises:
            PushDeliveryError: Provider refused or could not be reached
        """

    async def aclose(self) -> None:
        pass


class LoggingDeliverySink(DeliverySink):
    """Logs pushes instead of sending them."""

    async def send(self, message: PushMessage) -> str:
        message_id = f"logged-{uuid.uuid4()}"
        logger.info(
            f"Push ({message.notification_type.value}) for notification "
            f"{message.notification_id} not sent: delivery disabled"
        )
        return message_id


def _fcm_error_code(response: httpx.Response) -> Optional[str]:
    """Pull the FCM error code (e.g. UNREGISTERED) out of an error body."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None
    for detail in error.get("details", []) or []:
        if detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")


class FcmDeliverySink(DeliverySink):
    """Firebase Cloud Messaging HTTP v1 sender."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        endpoint: str = "https://fcm.googleapis.com/v1",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self._access_token = access_token
        self._url = f"{endpoint.rstrip('/')}/projects/{project_id}/messages:send"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, message: PushMessage) -> str:
        try:
            response = await self._client.post(
                self._url,
                json={"message": message.to_fcm_payload()},
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as e:
            raise PushDeliveryError(f"FCM request failed: {e}") from e

        if response.status_code >= 400:
            code = _fcm_error_code(response)
            raise PushDeliveryError(
                f"FCM rejected message: HTTP {response.status_code} ({code})",
                code=code,
            )

        return response.json().get("name", "")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_delivery_sink(settings: Optional[PropagationSettings] = None) -> DeliverySink:
    """FCM sink when push is configured, logging sink otherwise."""
    settings = settings or get_propagation_settings()

    if settings.push_enabled and settings.fcm_project_id and settings.fcm_access_token:
        logger.info(f"Push delivery via FCM project {settings.fcm_project_id}")
        return FcmDeliverySink(
            project_id=settings.fcm_project_id,
            access_token=settings.fcm_access_token,
            endpoint=settings.fcm_endpoint,
            timeout=settings.fcm_timeout,
        )

    logger.warning("Push delivery is DISABLED. Set EXPOSURE_PUSH_ENABLED and FCM credentials to enable.")
    return LoggingDeliverySink()


# =============================================================================
# DISPATCH
# =============================================================================

async def dispatch_push(sink: DeliverySink, store: ExposureStore, message: PushMessage) -> bool:
    """
    Send one message, fire-and-forget.

    Returns:
        True if the provider accepted it
    """
    try:
        message_id = await sink.send(message)
        logger.info(
            f"Sent {message.notification_type.value} push for notification "
            f"{message.notification_id}: {message_id}"
        )
        return True
    except PushDeliveryError as e:
        logger.warning(f"Push for notification {message.notification_id} failed: {e}")
        if e.token_invalid and message.graph_id:
            try:
                await store.clear_push_token(message.graph_id)
            except ExposureError as clear_error:
                logger.warning(
                    f"Could not clear invalid token for {short_hash(message.graph_id)}: {clear_error}"
                )
        return False


@dataclass
class PushBatchResult:
    success_count: int = 0
    failure_count: int = 0
    failed_notification_ids: List[str] = field(default_factory=list)


class PushBatcher:
    """
    Collects pushes during a propagation run and sends them at the end,
    batch_size messages at a time.
    """

    def __init__(self, sink: DeliverySink, store: ExposureStore, batch_size: int = 500):
        self.sink = sink
        self.store = store
        self.batch_size = max(1, batch_size)
        self._pending: List[PushMessage] = []

    def add(self, message: PushMessage) -> None:
        self._pending.append(message)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def flush(self) -> PushBatchResult:
        result = PushBatchResult()
        pending, self._pending = self._pending, []

        for start in range(0, len(pending), self.batch_size):
            chunk = pending[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(dispatch_push(self.sink, self.store, message) for message in chunk)
            )
            for message, delivered in zip(chunk, outcomes):
                if delivered:
                    result.success_count += 1
                else:
                    result.failure_count += 1
                    result.failed_notification_ids.append(message.notification_id)

        if pending:
            logger.info(
                f"Push batch flushed: {result.success_count} sent, "
                f"{result.failure_count} failed"
            )
        return result
