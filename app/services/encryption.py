"""Password-based AES-256-GCM encryption for export payloads."""

import base64
import binascii
import json
import os
import re
import secrets

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import settings
from app.core.exceptions import IntegrityError
from app.schemas.encryption import EncryptedPayload, PasswordStrength

logger = structlog.get_logger()

ALGORITHM = "aes-256-gcm"
FORMAT_VERSION = 1
KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12  # 96 bits for GCM
SALT_LENGTH = 32
TAG_LENGTH = 16

EXPORT_PACKAGE_TYPE = "promptforge-encrypted-export"

_PAYLOAD_FIELDS = ("ciphertext", "iv", "salt", "tag")

_PASSWORD_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*()_+-=[]{}|;:,.<>?"


def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    """Derive an AES key from a password using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def encrypt(plaintext: bytes, password: str, iterations: int | None = None) -> EncryptedPayload:
    """Encrypt bytes with a password. A fresh salt and IV are drawn per call."""
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(password, salt, iterations or settings.promptforge_pbkdf2_iterations)

    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return EncryptedPayload(
        ciphertext=_b64(ciphertext),
        iv=_b64(iv),
        salt=_b64(salt),
        tag=_b64(tag),
        version=FORMAT_VERSION,
    )


def decrypt(payload: EncryptedPayload | dict, password: str, iterations: int | None = None) -> bytes:
    """Decrypt a payload. Raises IntegrityError on a wrong password or any tampering."""
    if isinstance(payload, dict):
        if not is_encrypted_payload(payload):
            raise IntegrityError("Value is not an encrypted payload.")
        payload = EncryptedPayload(**{k: payload[k] for k in (*_PAYLOAD_FIELDS, "version")})

    if payload.version != FORMAT_VERSION:
        raise IntegrityError(
            f"Unsupported encryption format version {payload.version}.",
            details={"supported": [FORMAT_VERSION]},
        )

    try:
        ciphertext = _unb64(payload.ciphertext)
        iv = _unb64(payload.iv)
        salt = _unb64(payload.salt)
        tag = _unb64(payload.tag)
    except (binascii.Error, ValueError) as e:
        raise IntegrityError(f"Encrypted payload is malformed: {e}") from e

    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH or not salt:
        raise IntegrityError("Encrypted payload is malformed.")

    key = _derive_key(password, salt, iterations or settings.promptforge_pbkdf2_iterations)
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        logger.debug("decryption_rejected", reason="invalid_tag")
        raise IntegrityError() from e


def is_encrypted_payload(value) -> bool:
    """Structural check for a serialized EncryptedPayload. Never decrypts."""
    if isinstance(value, EncryptedPayload):
        return True
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return False
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return False
    if not isinstance(value, dict):
        return False
    if not all(isinstance(value.get(f), str) for f in _PAYLOAD_FIELDS):
        return False
    version = value.get("version")
    return isinstance(version, int) and not isinstance(version, bool)


def password_strength(password: str) -> PasswordStrength:
    """Score a password 0-100 on length and character variety."""
    feedback: list[str] = []
    score = 0

    if len(password) >= 8:
        score += 20
    else:
        feedback.append("Password should be at least 8 characters")
    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10

    if re.search(r"[a-z]", password):
        score += 10
    else:
        feedback.append("Add lowercase letters")
    if re.search(r"[A-Z]", password):
        score += 10
    else:
        feedback.append("Add uppercase letters")
    if re.search(r"[0-9]", password):
        score += 15
    else:
        feedback.append("Add numbers")
    if re.search(r"[^a-zA-Z0-9]", password):
        score += 15
    else:
        feedback.append("Add special characters")

    if re.fullmatch(r"[a-zA-Z]+", password):
        score -= 10
        feedback.append("Avoid using only letters")
    if re.fullmatch(r"[0-9]+", password):
        score -= 20
        feedback.append("Avoid using only numbers")
    if re.search(r"(.)\1{2,}", password):
        score -= 10
        feedback.append("Avoid repeated characters")

    score = max(0, min(100, score))
    return PasswordStrength(score=score, is_strong=score >= 60, feedback=feedback)


def generate_secure_password(length: int = 16) -> str:
    return "".join(secrets.choice(_PASSWORD_CHARSET) for _ in range(length))


# ── Export packages ──────────────────────────────────────────────────────────


def encrypt_export(content: bytes, password: str) -> str:
    """Wrap export bytes in a self-describing encrypted JSON package."""
    payload = encrypt(content, password)
    package = {"type": EXPORT_PACKAGE_TYPE, "algorithm": ALGORITHM, **payload.model_dump()}
    return json.dumps(package, indent=2)


def is_encrypted_export(content: str | bytes) -> bool:
    try:
        package = json.loads(content)
    except ValueError:
        return False
    return (
        isinstance(package, dict)
        and package.get("type") == EXPORT_PACKAGE_TYPE
        and is_encrypted_payload(package)
    )


def decrypt_export(content: str | bytes, password: str) -> bytes:
    if not is_encrypted_export(content):
        raise IntegrityError("Content is not an encrypted export package.")
    return decrypt(json.loads(content), password)
