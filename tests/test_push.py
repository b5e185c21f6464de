"""Tests for push payloads, FCM delivery and batched dispatch."""

import json

import httpx
import pytest

from engine.errors import PushDeliveryError
from engine.push import (
    ANDROID_CHANNEL_ID,
    FcmDeliverySink,
    LoggingDeliverySink,
    PushBatcher,
    PushMessage,
    create_delivery_sink,
    dispatch_push,
)
from engine.records import NotificationType

from tests.conftest import gid


def message(token="token-B", notification_type=NotificationType.EXPOSURE, notification_id="n-1", graph_id=None):
    return PushMessage(
        token=token,
        notification_type=notification_type,
        notification_id=notification_id,
        graph_id=graph_id,
    )


def fcm_sink(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FcmDeliverySink(
        project_id="demo-project",
        access_token="secret-token",
        endpoint="https://fcm.example.test/v1/",
        client=client,
    )


class TestPayload:

    def test_data_carries_only_id_and_type(self):
        assert message(notification_type=NotificationType.UPDATE).data == {
            "notificationId": "n-1",
            "type": "UPDATE",
        }

    def test_fcm_payload_localization(self):
        payload = message(notification_type=NotificationType.REPORT_DELETED).to_fcm_payload()

        android = payload["android"]["notification"]
        alert = payload["apns"]["payload"]["aps"]["alert"]
        assert payload["token"] == "token-B"
        assert android["channel_id"] == ANDROID_CHANNEL_ID
        assert android["title_loc_key"] == "notification_report_deleted_title"
        assert alert["body-loc-key"] == "notification_report_deleted_body"

    def test_no_free_text_in_payload(self):
        payload = json.dumps(message().to_fcm_payload())
        assert "HIV" not in payload
        assert '"title"' not in payload


class TestFcmDeliverySink:

    @pytest.mark.asyncio
    async def test_posts_message_with_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"name": "projects/demo-project/messages/1"})

        sink = fcm_sink(handler)
        message_id = await sink.send(message())

        assert message_id == "projects/demo-project/messages/1"
        request = seen[0]
        assert str(request.url) == "https://fcm.example.test/v1/projects/demo-project/messages:send"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert json.loads(request.content)["message"]["data"]["type"] == "EXPOSURE"
        await sink._client.aclose()

    @pytest.mark.asyncio
    async def test_unregistered_token(self):
        def handler(request):
            return httpx.Response(404, json={
                "error": {
                    "status": "NOT_FOUND",
                    "details": [{"errorCode": "UNREGISTERED"}],
                }
            })

        sink = fcm_sink(handler)
        with pytest.raises(PushDeliveryError) as exc_info:
            await sink.send(message())

        assert exc_info.value.code == "UNREGISTERED"
        assert exc_info.value.token_invalid
        await sink._client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_keeps_token(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        sink = fcm_sink(handler)
        with pytest.raises(PushDeliveryError) as exc_info:
            await sink.send(message())

        assert not exc_info.value.token_invalid
        await sink._client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        sink = fcm_sink(handler)
        with pytest.raises(PushDeliveryError):
            await sink.send(message())
        await sink._client.aclose()


class TestCreateDeliverySink:

    def test_disabled_logs_instead(self, settings):
        assert isinstance(create_delivery_sink(settings), LoggingDeliverySink)

    def test_enabled_without_credentials_logs_instead(self, settings):
        enabled = settings.model_copy(update={"push_enabled": True})
        assert isinstance(create_delivery_sink(enabled), LoggingDeliverySink)

    @pytest.mark.asyncio
    async def test_enabled_with_credentials(self, settings):
        enabled = settings.model_copy(update={
            "push_enabled": True,
            "fcm_project_id": "demo-project",
            "fcm_access_token": "secret-token",
        })
        sink = create_delivery_sink(enabled)
        assert isinstance(sink, FcmDeliverySink)
        assert sink.project_id == "demo-project"
        await sink.aclose()


class TestDispatch:

    @pytest.mark.asyncio
    async def test_invalid_token_cleared(self, graph, store, sink):
        await graph.add_user("B")
        sink.fail_codes["token-B"] = "UNREGISTERED"

        delivered = await dispatch_push(sink, store, message(graph_id=gid("B")))

        assert not delivered
        assert (await store.get_user_by_graph_id(gid("B"))).push_token is None

    @pytest.mark.asyncio
    async def test_other_failure_keeps_token(self, graph, store, sink):
        await graph.add_user("B")
        sink.fail_codes["token-B"] = "INTERNAL"

        assert not await dispatch_push(sink, store, message(graph_id=gid("B")))
        assert (await store.get_user_by_graph_id(gid("B"))).push_token == "token-B"

    @pytest.mark.asyncio
    async def test_logging_sink_accepts(self, store):
        assert await dispatch_push(LoggingDeliverySink(), store, message())


class TestPushBatcher:

    @pytest.mark.asyncio
    async def test_flush_counts(self, store, sink):
        sink.fail_codes["token-bad"] = None
        batcher = PushBatcher(sink, store, batch_size=2)
        for index in range(4):
            batcher.add(message(token=f"token-{index}", notification_id=f"n-{index}"))
        batcher.add(message(token="token-bad", notification_id="n-bad"))

        assert batcher.pending_count == 5
        result = await batcher.flush()

        assert result.success_count == 4
        assert result.failure_count == 1
        assert result.failed_notification_ids == ["n-bad"]
        assert batcher.pending_count == 0
        assert len(sink.messages) == 4

    @pytest.mark.asyncio
    async def test_empty_flush(self, store, sink):
        result = await PushBatcher(sink, store).flush()
        assert result.success_count == 0
        assert result.failure_count == 0
