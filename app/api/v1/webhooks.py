from fastapi import APIRouter, Depends, Query

from app.core.context import RequestContext
from app.dependencies import get_dispatcher, get_request_context, get_webhook_service
from app.schemas.webhooks import (
    WebhookCreate,
    WebhookCreated,
    WebhookDeliveryList,
    WebhookDeliveryResponse,
    WebhookEventInfo,
    WebhookList,
    WebhookResponse,
    WebhookTestResult,
    WebhookUpdate,
)
from app.services.webhooks import WebhookDispatcher, WebhookService
from app.services.webhooks.dispatcher import available_events

router = APIRouter()


@router.get("/v1/webhooks/events")
async def list_webhook_events() -> list[WebhookEventInfo]:
    """Event types a webhook can subscribe to (``*`` subscribes to all)."""
    return available_events()


@router.post("/v1/webhooks", status_code=201)
async def register_webhook(
    body: WebhookCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookCreated:
    """Register a webhook. The signing secret is returned only in this response."""
    return await service.register_webhook(ctx, str(body.url), body.event_types, name=body.name)


@router.get("/v1/webhooks")
async def list_webhooks(
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookList:
    return await service.list_webhooks(ctx)


@router.post("/v1/webhooks/deliveries/{delivery_id}/retry")
async def retry_delivery(
    delivery_id: str,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> WebhookDeliveryResponse:
    return await dispatcher.retry_delivery(ctx, delivery_id)


@router.get("/v1/webhooks/{webhook_id}")
async def get_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    return await service.get_webhook(ctx, webhook_id)


@router.patch("/v1/webhooks/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    return await service.update_webhook(
        ctx,
        webhook_id,
        url=str(body.url) if body.url is not None else None,
        event_types=body.event_types,
        enabled=body.enabled,
        name=body.name,
    )


@router.delete("/v1/webhooks/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> None:
    await service.delete_webhook(ctx, webhook_id)


@router.post("/v1/webhooks/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> WebhookTestResult:
    """Send a signed ``webhook.test`` event to this webhook only."""
    return await dispatcher.test_webhook(ctx, webhook_id)


@router.get("/v1/webhooks/{webhook_id}/deliveries")
async def get_webhook_deliveries(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=200),
    ctx: RequestContext = Depends(get_request_context),
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookDeliveryList:
    return await service.get_webhook_deliveries(ctx, webhook_id, limit=limit)
