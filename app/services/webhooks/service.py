import json
import secrets

import httpx
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.core.database as db_module
from app.core.clock import isoformat_z
from app.core.context import RequestContext
from app.core.database import Webhook, WebhookDelivery
from app.core.exceptions import NotFoundError, ValidationError
from app.schemas.webhooks import (
    WebhookCreated,
    WebhookDeliveryList,
    WebhookDeliveryResponse,
    WebhookList,
    WebhookResponse,
)
from app.services.webhooks.events import is_known_event

logger = structlog.get_logger()

SECRET_PREFIX = "whsec_"


def generate_webhook_secret() -> str:
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


def _validate_url(url: str) -> str:
    url = str(url)
    if not url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must use http or https.")
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as e:
        raise ValidationError(f"Invalid webhook URL: {e}") from e
    if not parsed.host:
        raise ValidationError("Webhook URL must include a host.")
    return url


def _validate_event_types(event_types: list[str]) -> list[str]:
    if not event_types:
        raise ValidationError("At least one event type is required.")
    unknown = [e for e in event_types if not is_known_event(e)]
    if unknown:
        raise ValidationError(
            f"Unknown event type(s): {', '.join(unknown)}",
            details={"unknown_events": unknown},
        )
    # de-duplicate, keep order
    return list(dict.fromkeys(event_types))


def webhook_event_types(webhook: Webhook) -> list[str]:
    return json.loads(webhook.event_types_json or "[]")


def _row_to_response(webhook: Webhook) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        url=webhook.url,
        event_types=webhook_event_types(webhook),
        enabled=webhook.enabled,
        created_at=isoformat_z(webhook.created_at),
        last_triggered_at=isoformat_z(webhook.last_triggered_at),
    )


def delivery_to_response(delivery: WebhookDelivery) -> WebhookDeliveryResponse:
    return WebhookDeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event_type=delivery.event_type,
        payload=delivery.payload,
        signature=delivery.signature,
        attempt=delivery.attempt,
        status=delivery.status,
        response_status=delivery.response_status,
        response_body=delivery.response_body,
        error_message=delivery.error_message,
        delivered_at=isoformat_z(delivery.delivered_at),
        created_at=isoformat_z(delivery.created_at),
    )


async def get_owned_webhook(session: AsyncSession, webhook_id: str, owner_id: str) -> Webhook:
    result = await session.execute(
        select(Webhook).where(Webhook.id == webhook_id, Webhook.user_id == owner_id)
    )
    webhook = result.scalar_one_or_none()
    if webhook is None:
        raise NotFoundError(f"Webhook {webhook_id} not found.")
    return webhook


class WebhookService:
    """Webhook registration and delivery history, scoped to the caller."""

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory_override = session_factory

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def register_webhook(
        self,
        ctx: RequestContext,
        url: str,
        event_types: list[str],
        name: str | None = None,
    ) -> WebhookCreated:
        webhook = Webhook(
            id=new_id("wh"),
            user_id=ctx.user_id,
            name=name,
            url=_validate_url(url),
            secret=generate_webhook_secret(),
            event_types_json=json.dumps(_validate_event_types(event_types)),
            enabled=True,
        )
        async with self._session_factory() as session:
            session.add(webhook)
            await session.commit()
            await session.refresh(webhook)

        logger.info("webhook_registered", webhook_id=webhook.id, user_id=ctx.user_id)
        return WebhookCreated(**_row_to_response(webhook).model_dump(), secret=webhook.secret)

    async def list_webhooks(self, ctx: RequestContext) -> WebhookList:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Webhook)
                .where(Webhook.user_id == ctx.user_id)
                .order_by(Webhook.created_at.desc())
            )
            webhooks = [_row_to_response(w) for w in result.scalars().all()]
        return WebhookList(webhooks=webhooks, total=len(webhooks))

    async def get_webhook(self, ctx: RequestContext, webhook_id: str) -> WebhookResponse:
        async with self._session_factory() as session:
            webhook = await get_owned_webhook(session, webhook_id, ctx.user_id)
            return _row_to_response(webhook)

    async def update_webhook(
        self,
        ctx: RequestContext,
        webhook_id: str,
        url: str | None = None,
        event_types: list[str] | None = None,
        enabled: bool | None = None,
        name: str | None = None,
    ) -> WebhookResponse:
        async with self._session_factory() as session:
            webhook = await get_owned_webhook(session, webhook_id, ctx.user_id)
            if url is not None:
                webhook.url = _validate_url(url)
            if event_types is not None:
                webhook.event_types_json = json.dumps(_validate_event_types(event_types))
            if enabled is not None:
                webhook.enabled = enabled
            if name is not None:
                webhook.name = name
            await session.commit()
            await session.refresh(webhook)

        logger.info("webhook_updated", webhook_id=webhook_id, user_id=ctx.user_id)
        return _row_to_response(webhook)

    async def delete_webhook(self, ctx: RequestContext, webhook_id: str) -> None:
        async with self._session_factory() as session:
            webhook = await get_owned_webhook(session, webhook_id, ctx.user_id)
            await session.execute(delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook.id))
            await session.delete(webhook)
            await session.commit()

        logger.info("webhook_deleted", webhook_id=webhook_id, user_id=ctx.user_id)

    async def get_webhook_deliveries(
        self, ctx: RequestContext, webhook_id: str, limit: int = 50
    ) -> WebhookDeliveryList:
        limit = max(1, min(limit, 200))
        async with self._session_factory() as session:
            await get_owned_webhook(session, webhook_id, ctx.user_id)
            result = await session.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .order_by(WebhookDelivery.created_at.desc())
                .limit(limit)
            )
            deliveries = [delivery_to_response(d) for d in result.scalars().all()]
        return WebhookDeliveryList(deliveries=deliveries, total=len(deliveries))
