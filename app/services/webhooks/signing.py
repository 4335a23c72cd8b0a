"""HMAC-SHA256 signatures for outbound webhook bodies."""

import hashlib
import hmac

SIGNATURE_HEADER = "X-PromptForge-Signature"
EVENT_HEADER = "X-PromptForge-Event"
DELIVERY_HEADER = "X-PromptForge-Delivery"
USER_AGENT = "PromptForge-Webhooks/1.0"

_SCHEME = "sha256="


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(body: bytes | str, secret: str) -> str:
    """Return ``sha256=<hex>`` for the exact body bytes. Pure and deterministic."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"{_SCHEME}{digest}"


def verify_signature(body: bytes | str, secret: str, header_value: str | None) -> bool:
    """Receiver-side check of a signature header (constant-time)."""
    if not header_value or not header_value.startswith(_SCHEME):
        return False
    return hmac.compare_digest(sign_payload(body, secret), header_value)
