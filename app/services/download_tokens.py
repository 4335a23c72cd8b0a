import datetime

import jwt
import structlog

from app.config import settings

logger = structlog.get_logger()

_AUDIENCE = "export-download"


class DownloadTokenService:
    """Create and validate signed, time-limited export download tokens."""

    def __init__(
        self,
        secret_key: str | None = None,
        algorithm: str | None = None,
        ttl_seconds: int | None = None,
    ):
        self._secret_key = secret_key or settings.promptforge_secret_key
        self._algorithm = algorithm or settings.promptforge_download_token_algorithm
        self._ttl_seconds = ttl_seconds or settings.promptforge_download_link_ttl_seconds

    def create_token(
        self,
        request_id: str,
        owner_id: str,
        not_after: datetime.datetime | None = None,
        now: datetime.datetime | None = None,
    ) -> tuple[str, datetime.datetime]:
        """Sign a token for one export. Expiry is capped at ``not_after`` (naive UTC).

        Returns (token, expires_at) with expires_at as naive UTC.
        """
        issued = now or datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
        expires = issued + datetime.timedelta(seconds=self._ttl_seconds)
        if not_after is not None and not_after < expires:
            expires = not_after

        payload = {
            "sub": owner_id,
            "rid": request_id,
            "aud": _AUDIENCE,
            "iat": issued.replace(tzinfo=datetime.timezone.utc),
            "exp": expires.replace(tzinfo=datetime.timezone.utc),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm), expires

    def decode_token(self, token: str) -> dict | None:
        """Decode and validate a token. Returns claims dict or None if invalid/expired."""
        try:
            return jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                audience=_AUDIENCE,
            )
        except jwt.ExpiredSignatureError:
            logger.debug("download_token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug("download_token_invalid", error=str(e))
            return None
