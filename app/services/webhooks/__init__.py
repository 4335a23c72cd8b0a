"""Webhook registration, signing and delivery."""

from app.services.webhooks.dispatcher import WebhookDispatcher
from app.services.webhooks.service import WebhookService
from app.services.webhooks.signing import sign_payload, verify_signature

__all__ = [
    "WebhookDispatcher",
    "WebhookService",
    "sign_payload",
    "verify_signature",
]
