"""Outbound webhook delivery: sign, POST, and record every attempt."""

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.core.database as db_module
from app.config import settings
from app.core.clock import Clock, isoformat_z, utcnow
from app.core.context import RequestContext
from app.core.database import Webhook, WebhookDelivery
from app.core.exceptions import ConflictError, NotFoundError
from app.schemas.webhooks import (
    TriggerSummary,
    WebhookDeliveryResponse,
    WebhookEventInfo,
    WebhookTestResult,
)
from app.services.jobs import JobQueue
from app.services.webhooks.events import EVENT_TYPES, TEST_EVENT, subscribes_to
from app.services.webhooks.service import (
    delivery_to_response,
    get_owned_webhook,
    new_id,
    webhook_event_types,
)
from app.services.webhooks.signing import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    USER_AGENT,
    sign_payload,
)

logger = structlog.get_logger()

RESPONSE_BODY_LIMIT = 1000


@dataclass
class DeliveryOutcome:
    ok: bool
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None


def build_envelope(event_type: str, data: dict[str, Any], timestamp: str) -> str:
    """Serialize the event envelope once; these exact bytes are signed and sent."""
    return json.dumps(
        {"event": event_type, "timestamp": timestamp, "data": data},
        separators=(",", ":"),
        default=str,
    )


def available_events() -> list[WebhookEventInfo]:
    return [WebhookEventInfo(event=k, description=v) for k, v in EVENT_TYPES.items()]


class WebhookDispatcher:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session_factory: async_sessionmaker | None = None,
        job_queue: JobQueue | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        clock: Clock = utcnow,
    ):
        self._http = http_client
        self._session_factory_override = session_factory
        self._queue = job_queue
        self._timeout = timeout_seconds or settings.promptforge_webhook_timeout_seconds
        self._max_attempts = max_attempts or settings.promptforge_webhook_max_attempts
        self._clock = clock

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    # ── HTTP ─────────────────────────────────────────────────────────────────

    async def _send(
        self,
        url: str,
        body: str,
        signature: str,
        event_type: str,
        delivery_id: str,
    ) -> DeliveryOutcome:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: event_type,
            DELIVERY_HEADER: delivery_id,
        }
        try:
            response = await self._http.post(
                url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            return DeliveryOutcome(ok=False, error=f"Request timed out after {self._timeout:g}s")
        except httpx.HTTPError as e:
            return DeliveryOutcome(ok=False, error=str(e) or type(e).__name__)
        # raised while building the request, before any transport is involved
        except (httpx.InvalidURL, ValueError) as e:
            return DeliveryOutcome(ok=False, error=f"Invalid URL: {e}")

        ok = 200 <= response.status_code < 300
        return DeliveryOutcome(
            ok=ok,
            response_status=response.status_code,
            response_body=response.text[:RESPONSE_BODY_LIMIT],
            error=None if ok else f"HTTP {response.status_code}",
        )

    async def _record(self, delivery_id: str, outcome: DeliveryOutcome) -> WebhookDelivery:
        async with self._session_factory() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            delivery.status = "success" if outcome.ok else "failed"
            delivery.response_status = outcome.response_status
            delivery.response_body = outcome.response_body
            delivery.error_message = outcome.error
            delivery.delivered_at = self._clock() if outcome.ok else None
            await session.commit()
            await session.refresh(delivery)
            return delivery

    async def _deliver(self, webhook: Webhook, event_type: str, body: str) -> WebhookDelivery:
        """Insert a delivery row, POST the body, record the outcome."""
        delivery_id = new_id("whd")
        signature = sign_payload(body, webhook.secret)
        async with self._session_factory() as session:
            session.add(
                WebhookDelivery(
                    id=delivery_id,
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=body,
                    signature=signature,
                    attempt=1,
                    status="pending_retry",
                    created_at=self._clock(),
                )
            )
            await session.commit()

        outcome = await self._send(webhook.url, body, signature, event_type, delivery_id)
        delivery = await self._record(delivery_id, outcome)
        if outcome.ok:
            logger.info(
                "webhook_delivered",
                webhook_id=webhook.id,
                delivery_id=delivery_id,
                event_type=event_type,
                status=outcome.response_status,
            )
        else:
            logger.warning(
                "webhook_delivery_failed",
                webhook_id=webhook.id,
                delivery_id=delivery_id,
                event_type=event_type,
                error=outcome.error,
            )
        return delivery

    # ── Operations ───────────────────────────────────────────────────────────

    async def trigger(self, event_type: str, data: dict[str, Any], owner_id: str) -> TriggerSummary:
        """Deliver an event to every enabled, subscribed webhook of the owner.

        Deliveries run concurrently. Failures are recorded on the delivery rows
        and never raised.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Webhook).where(Webhook.user_id == owner_id, Webhook.enabled.is_(True))
            )
            webhooks = [w for w in result.scalars().all() if subscribes_to(webhook_event_types(w), event_type)]

        summary = TriggerSummary(event_type=event_type, triggered=len(webhooks))
        if not webhooks:
            return summary

        now = self._clock()
        body = build_envelope(event_type, data, isoformat_z(now))
        results = await asyncio.gather(
            *(self._deliver(w, event_type, body) for w in webhooks),
            return_exceptions=True,
        )

        for webhook, res in zip(webhooks, results):
            if isinstance(res, BaseException):
                logger.error("webhook_dispatch_error", webhook_id=webhook.id, error=str(res))
                continue
            summary.delivery_ids.append(res.id)
            if res.status == "success":
                summary.delivered += 1

        async with self._session_factory() as session:
            for webhook in webhooks:
                row = await session.get(Webhook, webhook.id)
                if row is not None:
                    row.last_triggered_at = now
            await session.commit()

        logger.info(
            "webhook_event_triggered",
            event_type=event_type,
            user_id=owner_id,
            triggered=summary.triggered,
            delivered=summary.delivered,
        )
        return summary

    def publish(self, event_type: str, data: dict[str, Any], owner_id: str) -> None:
        """Fire-and-forget trigger through the job queue."""
        if self._queue is None:
            raise RuntimeError("No job queue configured for webhook publishing.")
        job_id = f"webhook-event-{uuid.uuid4().hex}"
        self._queue.submit(job_id, "webhook_event", lambda: self.trigger(event_type, data, owner_id))

    async def test_webhook(self, ctx: RequestContext, webhook_id: str) -> WebhookTestResult:
        async with self._session_factory() as session:
            webhook = await get_owned_webhook(session, webhook_id, ctx.user_id)

        data = {
            "test": True,
            "webhookId": webhook.id,
            "message": "This is a test webhook delivery from PromptForge",
        }
        body = build_envelope(TEST_EVENT, data, isoformat_z(self._clock()))
        delivery = await self._deliver(webhook, TEST_EVENT, body)
        return WebhookTestResult(
            success=delivery.status == "success",
            delivery_id=delivery.id,
            response_status=delivery.response_status,
            error_message=delivery.error_message,
        )

    async def retry_delivery(self, ctx: RequestContext, delivery_id: str) -> WebhookDeliveryResponse:
        """Resend a stored delivery body with the same signature."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookDelivery, Webhook)
                .join(Webhook, Webhook.id == WebhookDelivery.webhook_id)
                .where(WebhookDelivery.id == delivery_id, Webhook.user_id == ctx.user_id)
            )
            row = result.one_or_none()
            if row is None:
                raise NotFoundError(f"Delivery {delivery_id} not found.")
            delivery, webhook = row

            if delivery.status == "success":
                raise ConflictError("Delivery already succeeded.")
            if delivery.status == "pending_retry":
                raise ConflictError("Delivery is already in flight.")
            if delivery.attempt >= self._max_attempts:
                raise ConflictError(
                    f"Delivery reached the maximum of {self._max_attempts} attempts.",
                    details={"attempt": delivery.attempt},
                )

            delivery.status = "pending_retry"
            delivery.attempt += 1
            await session.commit()

            body = delivery.payload
            signature = sign_payload(body, webhook.secret)
            url = webhook.url
            event_type = delivery.event_type

        outcome = await self._send(url, body, signature, event_type, delivery_id)
        delivery = await self._record(delivery_id, outcome)
        logger.info(
            "webhook_delivery_retried",
            delivery_id=delivery_id,
            attempt=delivery.attempt,
            status=delivery.status,
        )
        return delivery_to_response(delivery)
