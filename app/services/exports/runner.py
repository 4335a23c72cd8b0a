"""Background export job: collect, render, optionally encrypt, upload once."""

import asyncio
import json

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.core.database as db_module
from app.core.clock import Clock, isoformat_z, utcnow
from app.core.database import DataExportRequest
from app.schemas.exports import ExportDocument, ExportMetadata
from app.services.encryption import encrypt_export
from app.services.exports.builder import COLLECTORS, categories_for, render_artifact
from app.services.storage import LocalBlobStorage

logger = structlog.get_logger()

PROGRESS_STARTED = 10
PROGRESS_COLLECTED = 90
PROGRESS_UPLOADED = 95


def blob_key(owner_id: str, request_id: str) -> str:
    return f"{owner_id}/{request_id}"


class ExportRunner:
    """Runs one export request to completion or failure.

    Progress writes never lower the stored value, so concurrent readers only
    ever observe it increasing.
    """

    def __init__(
        self,
        storage: LocalBlobStorage,
        session_factory: async_sessionmaker | None = None,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._session_factory_override = session_factory
        self._clock = clock

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def _update(self, request_id: str, **values) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(DataExportRequest).where(DataExportRequest.id == request_id).values(**values)
            )
            await session.commit()

    async def _advance(self, request_id: str, progress: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(DataExportRequest)
                .where(DataExportRequest.id == request_id, DataExportRequest.progress < progress)
                .values(progress=progress)
            )
            await session.commit()

    async def run(
        self,
        request_id: str,
        owner_id: str,
        export_type: str,
        fmt: str,
        password: str | None = None,
    ) -> dict:
        log = logger.bind(request_id=request_id, user_id=owner_id)
        try:
            return await self._run(request_id, owner_id, export_type, fmt, password, log)
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("export_failed", error=message)
            await self._update(request_id, status="failed", error_message=message)
            raise

    async def _run(self, request_id, owner_id, export_type, fmt, password, log) -> dict:
        started = self._clock()
        await self._update(request_id, status="processing", started_at=started)
        await self._advance(request_id, PROGRESS_STARTED)
        log.info("export_started", export_type=export_type, format=fmt)

        categories = categories_for(export_type)
        sections = []
        span = PROGRESS_COLLECTED - PROGRESS_STARTED
        async with self._session_factory() as session:
            for index, category in enumerate(categories, start=1):
                sections.append(await COLLECTORS[category](session, owner_id))
                await self._advance(request_id, PROGRESS_STARTED + span * index // len(categories))

        document = ExportDocument(
            metadata=ExportMetadata(
                export_date=isoformat_z(self._clock()),
                export_type=export_type,
                format=fmt,
                user_id=owner_id,
                included_data=categories,
            ),
            sections=sections,
        )
        base_name = f"promptforge-export-{started.date().isoformat()}"
        data, content_type, file_name = render_artifact(document, fmt, base_name)

        if password:
            package = await asyncio.to_thread(encrypt_export, data, password)
            data = package.encode("utf-8")
            content_type = "application/json"
            file_name = f"{file_name}.enc"

        key = blob_key(owner_id, request_id)
        blob = await self._storage.put(key, data, content_type)
        try:
            await self._advance(request_id, PROGRESS_UPLOADED)
            await self._update(
                request_id,
                status="completed",
                progress=100,
                file_key=blob.key,
                file_url=blob.url,
                file_name=file_name,
                file_size=blob.size,
                included_categories_json=json.dumps(categories),
                completed_at=self._clock(),
            )
        except Exception:
            # never leave a published blob behind a request that is not completed
            await self._storage.delete(key)
            raise

        log.info("export_completed", size=blob.size, categories=len(categories))
        return {"file_key": blob.key, "file_size": blob.size}
