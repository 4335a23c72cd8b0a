import time
import uuid
from datetime import datetime, timezone

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from app.core.database import ApiKey, ApiUsage, async_session
from app.core.exceptions import AuthenticationError
from app.core.security import API_KEY_PREFIX, hash_api_key

logger = structlog.get_logger()

# Paths that skip authentication
PUBLIC_PATHS = {"/v1/health", "/", "/docs", "/openapi.json", "/redoc"}

# Signed download links carry their own token in the path
PUBLIC_PREFIXES = ("/v1/exports/download/",)


class AuthMiddleware(BaseHTTPMiddleware):
    """Validates the Bearer API key on every request except public paths.

    On success the owning user is stored on request.state for the
    request-context dependency.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            error = AuthenticationError("Missing or malformed Authorization header.")
            return JSONResponse(status_code=error.status, content=error.to_dict())

        token = auth_header.removeprefix("Bearer ").strip()
        if not token.startswith(API_KEY_PREFIX):
            error = AuthenticationError("Unsupported token type.")
            return JSONResponse(status_code=error.status, content=error.to_dict())

        return await self._authenticate_api_key(request, call_next, token)

    async def _authenticate_api_key(
        self, request: Request, call_next: RequestResponseEndpoint, token: str
    ) -> Response:
        """Validate an API key token."""
        token_hash = hash_api_key(token)

        from sqlalchemy import select, update

        async with async_session() as session:
            result = await session.execute(
                select(ApiKey).where(ApiKey.key_hash == token_hash, ApiKey.is_active == True)  # noqa: E712
            )
            key_row = result.scalar_one_or_none()

            if key_row is None:
                error = AuthenticationError("Invalid or revoked API key.")
                return JSONResponse(status_code=error.status, content=error.to_dict())

            request.state.user_id = key_row.user_id
            request.state.api_key_id = key_row.id
            request.state.api_key_prefix = key_row.key_prefix

            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_row.id)
                .values(last_used_at=datetime.now(timezone.utc).replace(tzinfo=None))
            )
            await session.commit()

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request as structured JSON and records API usage per key."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - start) * 1000, 1)

        key_prefix = getattr(request.state, "api_key_prefix", None)

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=latency_ms,
            user_key_prefix=key_prefix,
            request_id=request.state.request_id,
        )

        api_key_id = getattr(request.state, "api_key_id", None)
        if api_key_id is None:
            return response

        # Best-effort: usage accounting never breaks a request
        try:
            async with async_session() as session:
                session.add(
                    ApiUsage(
                        api_key_id=api_key_id,
                        user_id=request.state.user_id,
                        endpoint=request.url.path[:255],
                        method=request.method,
                        status_code=response.status_code,
                        response_time_ms=latency_ms,
                    )
                )
                await session.commit()
        except Exception:
            logger.debug("api_usage_write_failed", path=request.url.path)

        return response
