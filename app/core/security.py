import hashlib
import hmac
import secrets
import string

API_KEY_PREFIX = "pf_sk_"
API_KEY_RANDOM_BYTES = 24  # 24 bytes → 48 hex chars

CONFIRMATION_CODE_LENGTH = 8
_CONFIRMATION_ALPHABET = string.ascii_uppercase + string.digits


def generate_api_key() -> str:
    """Generate a new API key: pf_sk_ + 48 hex chars."""
    random_part = secrets.token_hex(API_KEY_RANDOM_BYTES)
    return f"{API_KEY_PREFIX}{random_part}"


def hash_api_key(key: str) -> str:
    """SHA-256 hash of the full API key."""
    return hashlib.sha256(key.encode()).hexdigest()


def get_key_prefix(key: str) -> str:
    """Return the first 10 chars of the key for display (pf_sk_ + 4 hex)."""
    return key[:10]


def generate_confirmation_code(length: int = CONFIRMATION_CODE_LENGTH) -> str:
    """Random uppercase alphanumeric code, unrelated to any request metadata."""
    return "".join(secrets.choice(_CONFIRMATION_ALPHABET) for _ in range(length))


def codes_match(expected: str, provided: str) -> bool:
    """Constant-time, case-insensitive comparison of confirmation codes."""
    return hmac.compare_digest(expected.strip().upper().encode(), provided.strip().upper().encode())
