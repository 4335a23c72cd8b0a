import datetime
import json
import uuid

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.core.database as db_module
from app.config import settings
from app.core.clock import Clock, isoformat_z, to_naive_utc, utcnow
from app.core.context import RequestContext
from app.core.database import (
    AnalyticsEvent,
    ApiKey,
    ContextPackage,
    DataExportRequest,
    Evaluation,
    Prompt,
)
from app.core.exceptions import NotFoundError, ValidationError
from app.schemas.exports import (
    DataSummary,
    DownloadUrlResponse,
    ExportCreated,
    ExportHistory,
    ExportStatusResponse,
)
from app.services.download_tokens import DownloadTokenService
from app.services.encryption import password_strength
from app.services.exports.builder import CATEGORIES_BY_TYPE
from app.services.exports.runner import ExportRunner
from app.services.jobs import JobQueue, JobResult
from app.services.storage import LocalBlobStorage
from app.services.webhooks.dispatcher import WebhookDispatcher

logger = structlog.get_logger()

EXPORT_FORMATS = ("json", "csv", "zip")
MAX_HISTORY_LIMIT = 50


def _row_to_response(row: DataExportRequest) -> ExportStatusResponse:
    return ExportStatusResponse(
        id=row.id,
        export_type=row.export_type,
        format=row.format,
        status=row.status,
        progress=row.progress,
        encrypted=row.encrypted,
        file_name=row.file_name,
        file_size=row.file_size,
        included_data=json.loads(row.included_categories_json or "[]"),
        error_message=row.error_message,
        requested_at=isoformat_z(row.requested_at),
        started_at=isoformat_z(row.started_at),
        completed_at=isoformat_z(row.completed_at),
        expires_at=isoformat_z(row.expires_at),
    )


class ExportService:
    """Creates export requests, reports on them and hands out download links."""

    def __init__(
        self,
        storage: LocalBlobStorage,
        job_queue: JobQueue,
        session_factory: async_sessionmaker | None = None,
        token_service: DownloadTokenService | None = None,
        dispatcher: WebhookDispatcher | None = None,
        clock: Clock = utcnow,
        public_base_url: str | None = None,
        ttl_days: int | None = None,
    ):
        self._storage = storage
        self._queue = job_queue
        self._session_factory_override = session_factory
        self._tokens = token_service or DownloadTokenService()
        self._dispatcher = dispatcher
        self._clock = clock
        self._base_url = (public_base_url or settings.promptforge_public_base_url).rstrip("/")
        self._ttl = datetime.timedelta(days=ttl_days or settings.promptforge_export_ttl_days)
        self._runner = ExportRunner(storage, session_factory=session_factory, clock=clock)

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def _get_owned(self, session, request_id: str, owner_id: str) -> DataExportRequest:
        result = await session.execute(
            select(DataExportRequest).where(
                DataExportRequest.id == request_id,
                DataExportRequest.user_id == owner_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Export request {request_id} not found.")
        return row

    # ── Create ───────────────────────────────────────────────────────────────

    async def create_export(
        self,
        ctx: RequestContext,
        export_type: str,
        fmt: str = "json",
        password: str | None = None,
    ) -> ExportCreated:
        """Insert a pending request and schedule its job. Returns immediately."""
        if export_type not in CATEGORIES_BY_TYPE:
            raise ValidationError(f"Unknown export type '{export_type}'.")
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unknown export format '{fmt}'.")
        if password is not None:
            strength = password_strength(password)
            if not strength.is_strong:
                raise ValidationError(
                    "Export password is too weak.",
                    details={"score": strength.score, "feedback": strength.feedback},
                )

        now = self._clock()
        row = DataExportRequest(
            id=str(uuid.uuid4()),
            user_id=ctx.user_id,
            export_type=export_type,
            format=fmt,
            status="pending",
            progress=0,
            encrypted=password is not None,
            requested_at=now,
            expires_at=now + self._ttl,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

        request_id = row.id
        owner_id = ctx.user_id
        self._queue.submit(
            request_id,
            "export",
            lambda: self._runner.run(request_id, owner_id, export_type, fmt, password),
            on_complete=self._on_export_finished,
        )
        logger.info(
            "export_requested",
            request_id=request_id,
            user_id=owner_id,
            export_type=export_type,
            format=fmt,
            encrypted=password is not None,
        )
        return ExportCreated(request_id=request_id, status="pending")

    async def _on_export_finished(self, result: JobResult) -> None:
        if self._dispatcher is None:
            return
        async with self._session_factory() as session:
            row = await session.get(DataExportRequest, result.job_id)
        if row is None:
            return

        event_type = "export.completed" if row.status == "completed" else "export.failed"
        await self._dispatcher.trigger(
            event_type,
            {
                "requestId": row.id,
                "exportType": row.export_type,
                "format": row.format,
                "status": row.status,
                "encrypted": row.encrypted,
                "fileSize": row.file_size,
                "errorMessage": row.error_message,
                "expiresAt": isoformat_z(row.expires_at),
            },
            row.user_id,
        )

    # ── Read ─────────────────────────────────────────────────────────────────

    async def get_export_status(self, ctx: RequestContext, request_id: str) -> ExportStatusResponse:
        async with self._session_factory() as session:
            row = await self._get_owned(session, request_id, ctx.user_id)
            return _row_to_response(row)

    async def get_export_history(self, ctx: RequestContext, limit: int = 20) -> ExportHistory:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataExportRequest)
                .where(DataExportRequest.user_id == ctx.user_id)
                .order_by(DataExportRequest.requested_at.desc())
                .limit(limit)
            )
            exports = [_row_to_response(r) for r in result.scalars().all()]
        return ExportHistory(exports=exports, total=len(exports))

    async def get_data_summary(self, ctx: RequestContext) -> DataSummary:
        async def count(session, model) -> int:
            result = await session.execute(
                select(func.count()).select_from(model).where(model.user_id == ctx.user_id)
            )
            return result.scalar() or 0

        async with self._session_factory() as session:
            return DataSummary(
                prompts=await count(session, Prompt),
                evaluations=await count(session, Evaluation),
                context_packages=await count(session, ContextPackage),
                activity_events=await count(session, AnalyticsEvent),
                api_keys=await count(session, ApiKey),
            )

    # ── Download ─────────────────────────────────────────────────────────────

    async def get_download_url(
        self,
        ctx: RequestContext,
        request_id: str,
        now: datetime.datetime | None = None,
    ) -> DownloadUrlResponse:
        """Signed link for a completed, unexpired export; ``url`` is None otherwise.

        Asking after ``expires_at`` moves the request to ``expired``.
        """
        now = to_naive_utc(now) if now is not None else self._clock()
        async with self._session_factory() as session:
            row = await self._get_owned(session, request_id, ctx.user_id)

            if row.status == "completed" and now > row.expires_at:
                row.status = "expired"
                await session.commit()
                logger.info("export_expired", request_id=request_id, user_id=ctx.user_id)

            if row.status != "completed" or not row.file_key:
                return DownloadUrlResponse(request_id=row.id, status=row.status)

            token, link_expires = self._tokens.create_token(
                row.id, row.user_id, not_after=row.expires_at, now=now
            )

        return DownloadUrlResponse(
            request_id=request_id,
            status="completed",
            url=f"{self._base_url}/v1/exports/download/{token}",
            expires_at=isoformat_z(link_expires),
        )

    async def open_download(self, token: str, now: datetime.datetime | None = None) -> tuple[bytes, str, str]:
        """Resolve a download token to (data, content_type, file_name)."""
        claims = self._tokens.decode_token(token)
        if claims is None:
            raise NotFoundError("Download link is invalid or has expired.")

        now = to_naive_utc(now) if now is not None else self._clock()
        async with self._session_factory() as session:
            row = await self._get_owned(session, claims["rid"], claims["sub"])
            if row.status != "completed" or now > row.expires_at or not row.file_key:
                raise NotFoundError("Export is no longer available.")
            file_key = row.file_key
            file_name = row.file_name or f"{row.id}.bin"

        data, content_type = await self._storage.get(file_key)
        logger.info("export_downloaded", request_id=claims["rid"], size=len(data))
        return data, content_type, file_name

    # ── Maintenance ──────────────────────────────────────────────────────────

    async def expire_overdue(self, now: datetime.datetime | None = None) -> int:
        """Mark every overdue completed export ``expired`` and remove its blob."""
        now = to_naive_utc(now) if now is not None else self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataExportRequest).where(
                    DataExportRequest.status == "completed",
                    DataExportRequest.expires_at < now,
                )
            )
            rows = list(result.scalars().all())
            for row in rows:
                row.status = "expired"
                if row.file_key:
                    await self._storage.delete(row.file_key)
            await session.commit()

        if rows:
            logger.info("exports_expired", count=len(rows))
        return len(rows)
