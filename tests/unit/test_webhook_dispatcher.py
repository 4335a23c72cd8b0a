import json

import httpx
import pytest

from app.core.database import Webhook, WebhookDelivery
from app.core.exceptions import ConflictError, NotFoundError
from app.services.webhooks import WebhookDispatcher, WebhookService, sign_payload, verify_signature
from app.services.webhooks.dispatcher import RESPONSE_BODY_LIMIT, available_events, build_envelope

HOOK_URL = "http://receiver.test/hook"
FAIL_URL = "http://receiver.test/fail"


@pytest.fixture
def webhook_service(session_factory):
    return WebhookService(session_factory=session_factory)


def _mock_dispatcher(handler, session_factory, **kwargs) -> WebhookDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(http_client=client, session_factory=session_factory, max_attempts=3, **kwargs)


async def _delivery(session_factory, delivery_id: str) -> WebhookDelivery:
    async with session_factory() as session:
        return await session.get(WebhookDelivery, delivery_id)


class TestEnvelope:
    def test_envelope_is_compact_json(self):
        body = build_envelope("export.completed", {"requestId": "r1"}, "2024-01-01T00:00:00Z")
        assert body == '{"event":"export.completed","timestamp":"2024-01-01T00:00:00Z","data":{"requestId":"r1"}}'

    def test_available_events_lists_catalogue(self):
        events = {e.event for e in available_events()}
        assert {"export.completed", "deletion.completed", "prompt.created"} <= events
        assert "*" not in events


class TestTrigger:
    @pytest.mark.asyncio
    async def test_delivers_signed_body_to_subscriber(self, dispatcher, webhook_service, receiver, ctx):
        webhook = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])

        summary = await dispatcher.trigger("export.completed", {"requestId": "r1"}, ctx.user_id)

        assert summary.triggered == 1
        assert summary.delivered == 1
        assert len(receiver.received) == 1
        request = receiver.received[0]
        assert request["path"] == "/hook"
        assert request["headers"]["content-type"] == "application/json"
        assert request["headers"]["user-agent"] == "PromptForge-Webhooks/1.0"
        assert request["headers"]["x-promptforge-delivery"] == summary.delivery_ids[0]
        assert verify_signature(request["body"], webhook.secret, request["headers"]["x-promptforge-signature"])

        payload = json.loads(request["body"])
        assert payload["event"] == "export.completed"
        assert payload["data"] == {"requestId": "r1"}
        assert payload["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_stored_payload_matches_sent_bytes(
        self, dispatcher, webhook_service, receiver, ctx, session_factory
    ):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {"requestId": "r1"}, ctx.user_id)

        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.payload.encode() == receiver.received[0]["body"]
        assert delivery.signature == receiver.received[0]["headers"]["x-promptforge-signature"]
        assert delivery.status == "success"
        assert delivery.attempt == 1
        assert delivery.response_status == 200
        assert delivery.delivered_at is not None

    @pytest.mark.asyncio
    async def test_unsubscribed_and_disabled_webhooks_are_skipped(
        self, dispatcher, webhook_service, receiver, ctx
    ):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["deletion.completed"])
        disabled = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        await webhook_service.update_webhook(ctx, disabled.id, enabled=False)

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        assert summary.triggered == 0
        assert summary.delivery_ids == []
        assert receiver.received == []

    @pytest.mark.asyncio
    async def test_wildcard_receives_every_event(self, dispatcher, webhook_service, receiver, ctx):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["*"])
        await dispatcher.trigger("prompt.created", {"promptId": "p1"}, ctx.user_id)
        await dispatcher.trigger("export.failed", {"requestId": "r1"}, ctx.user_id)
        assert [r["headers"]["x-promptforge-event"] for r in receiver.received] == [
            "prompt.created",
            "export.failed",
        ]

    @pytest.mark.asyncio
    async def test_other_owners_webhooks_are_not_triggered(
        self, dispatcher, webhook_service, receiver, ctx, other_ctx
    ):
        await webhook_service.register_webhook(other_ctx, HOOK_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)
        assert summary.triggered == 0
        assert receiver.received == []

    @pytest.mark.asyncio
    async def test_one_failing_target_does_not_block_others(
        self, dispatcher, webhook_service, receiver, ctx, session_factory
    ):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        assert summary.triggered == 2
        assert summary.delivered == 1
        statuses = sorted([(await _delivery(session_factory, d)).status for d in summary.delivery_ids])
        assert statuses == ["failed", "success"]

    @pytest.mark.asyncio
    async def test_http_error_status_is_recorded(self, dispatcher, webhook_service, receiver, ctx, session_factory):
        await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.status == "failed"
        assert delivery.response_status == 500
        assert delivery.error_message == "HTTP 500"
        assert "receiver exploded" in delivery.response_body
        assert delivery.delivered_at is None

    @pytest.mark.asyncio
    async def test_trigger_sets_last_triggered_at(self, dispatcher, webhook_service, receiver, ctx):
        webhook = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        assert webhook.last_triggered_at is None
        await dispatcher.trigger("export.completed", {}, ctx.user_id)
        refreshed = await webhook_service.get_webhook(ctx, webhook.id)
        assert refreshed.last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_publish_runs_through_job_queue(self, dispatcher, webhook_service, receiver, job_queue, ctx):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["prompt.deleted"])
        dispatcher.publish("prompt.deleted", {"promptId": "p1"}, ctx.user_id)
        await job_queue.drain()
        assert len(receiver.received) == 1

    def test_publish_without_queue_raises(self, session_factory):
        dispatcher = WebhookDispatcher(http_client=httpx.AsyncClient(), session_factory=session_factory)
        with pytest.raises(RuntimeError):
            dispatcher.publish("prompt.deleted", {}, "user-1")


class TestTransportErrors:
    @pytest.mark.asyncio
    async def test_timeout_is_recorded_as_failure(self, session_factory, webhook_service, ctx):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        dispatcher = _mock_dispatcher(handler, session_factory, timeout_seconds=2.5)
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        assert summary.triggered == 1
        assert summary.delivered == 0
        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.status == "failed"
        assert delivery.response_status is None
        assert delivery.error_message == "Request timed out after 2.5s"

    @pytest.mark.asyncio
    async def test_connection_error_is_recorded_as_failure(self, session_factory, webhook_service, ctx):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = _mock_dispatcher(handler, session_factory)
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.status == "failed"
        assert delivery.error_message == "connection refused"

    @pytest.mark.asyncio
    async def test_long_response_body_is_truncated(self, session_factory, webhook_service, ctx):
        def handler(request):
            return httpx.Response(200, text="x" * (RESPONSE_BODY_LIMIT * 3))

        dispatcher = _mock_dispatcher(handler, session_factory)
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.status == "success"
        assert len(delivery.response_body) == RESPONSE_BODY_LIMIT

    @pytest.mark.asyncio
    async def test_unparseable_url_is_recorded_and_retryable(self, session_factory, webhook_service, ctx):
        def handler(request):
            return httpx.Response(200)

        dispatcher = _mock_dispatcher(handler, session_factory)
        webhook = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        # bypass registration-time URL checks
        async with session_factory() as session:
            row = await session.get(Webhook, webhook.id)
            row.url = "http://exa\tmple.com/hook"
            await session.commit()

        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)

        assert summary.triggered == 1
        assert summary.delivered == 0
        assert len(summary.delivery_ids) == 1
        delivery = await _delivery(session_factory, summary.delivery_ids[0])
        assert delivery.status == "failed"
        assert delivery.error_message.startswith("Invalid URL")

        result = await dispatcher.test_webhook(ctx, webhook.id)
        assert result.success is False
        assert result.error_message.startswith("Invalid URL")

        await webhook_service.update_webhook(ctx, webhook.id, url=HOOK_URL)
        retried = await dispatcher.retry_delivery(ctx, delivery.id)
        assert retried.attempt == 2
        assert retried.status == "success"


class TestTestWebhook:
    @pytest.mark.asyncio
    async def test_sends_test_event(self, dispatcher, webhook_service, receiver, ctx):
        webhook = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])

        result = await dispatcher.test_webhook(ctx, webhook.id)

        assert result.success is True
        assert result.response_status == 200
        payload = json.loads(receiver.received[0]["body"])
        assert payload["event"] == "webhook.test"
        assert payload["data"]["webhookId"] == webhook.id

    @pytest.mark.asyncio
    async def test_reports_failure(self, dispatcher, webhook_service, receiver, ctx):
        webhook = await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])
        result = await dispatcher.test_webhook(ctx, webhook.id)
        assert result.success is False
        assert result.error_message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_other_owner_gets_not_found(self, dispatcher, webhook_service, ctx, other_ctx):
        webhook = await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        with pytest.raises(NotFoundError):
            await dispatcher.test_webhook(other_ctx, webhook.id)


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_resends_identical_signed_body(
        self, dispatcher, webhook_service, receiver, ctx, session_factory
    ):
        webhook = await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {"requestId": "r1"}, ctx.user_id)
        delivery_id = summary.delivery_ids[0]
        original = await _delivery(session_factory, delivery_id)

        # point the webhook at a healthy endpoint; the stored body is resent as-is
        await webhook_service.update_webhook(ctx, webhook.id, url=HOOK_URL)
        retried = await dispatcher.retry_delivery(ctx, delivery_id)

        assert retried.id == delivery_id
        assert retried.attempt == 2
        assert retried.status == "success"
        assert retried.signature == original.signature
        assert retried.payload == original.payload

        first, second = receiver.received
        assert first["body"] == second["body"]
        assert first["headers"]["x-promptforge-signature"] == second["headers"]["x-promptforge-signature"]
        assert second["headers"]["x-promptforge-signature"] == sign_payload(original.payload, webhook.secret)

    @pytest.mark.asyncio
    async def test_successful_delivery_cannot_be_retried(self, dispatcher, webhook_service, receiver, ctx):
        await webhook_service.register_webhook(ctx, HOOK_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)
        with pytest.raises(ConflictError):
            await dispatcher.retry_delivery(ctx, summary.delivery_ids[0])

    @pytest.mark.asyncio
    async def test_attempts_are_capped(self, dispatcher, webhook_service, receiver, ctx):
        await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)
        delivery_id = summary.delivery_ids[0]

        assert (await dispatcher.retry_delivery(ctx, delivery_id)).attempt == 2
        assert (await dispatcher.retry_delivery(ctx, delivery_id)).attempt == 3
        with pytest.raises(ConflictError) as exc_info:
            await dispatcher.retry_delivery(ctx, delivery_id)
        assert exc_info.value.details == {"attempt": 3}
        assert len(receiver.received) == 3

    @pytest.mark.asyncio
    async def test_in_flight_delivery_cannot_be_retried(self, dispatcher, ctx, session_factory):
        async with session_factory() as session:
            session.add(
                Webhook(
                    id="wh_inflight",
                    user_id=ctx.user_id,
                    url=HOOK_URL,
                    secret="whsec_test",
                    event_types_json='["*"]',
                )
            )
            session.add(
                WebhookDelivery(
                    id="whd_inflight",
                    webhook_id="wh_inflight",
                    event_type="export.completed",
                    payload="{}",
                    signature=sign_payload("{}", "whsec_test"),
                    status="pending_retry",
                )
            )
            await session.commit()

        with pytest.raises(ConflictError):
            await dispatcher.retry_delivery(ctx, "whd_inflight")

    @pytest.mark.asyncio
    async def test_other_owner_cannot_retry(self, dispatcher, webhook_service, receiver, ctx, other_ctx):
        await webhook_service.register_webhook(ctx, FAIL_URL, ["export.completed"])
        summary = await dispatcher.trigger("export.completed", {}, ctx.user_id)
        with pytest.raises(NotFoundError):
            await dispatcher.retry_delivery(other_ctx, summary.delivery_ids[0])

    @pytest.mark.asyncio
    async def test_unknown_delivery_is_not_found(self, dispatcher, ctx):
        with pytest.raises(NotFoundError):
            await dispatcher.retry_delivery(ctx, "whd_missing")
