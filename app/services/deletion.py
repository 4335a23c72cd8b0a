import uuid
from typing import Any, Callable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.core.database as db_module
from app.core.clock import Clock, isoformat_z, utcnow
from app.core.context import RequestContext
from app.core.database import (
    AnalyticsEvent,
    ContextPackage,
    DataDeletionRequest,
    Evaluation,
    EvaluationResult,
    LoginActivity,
    Prompt,
    PromptVersion,
)
from app.core.exceptions import InvalidCodeError, NotFoundError, ValidationError
from app.core.security import codes_match, generate_confirmation_code
from app.schemas.deletions import DeletionCreated, DeletionHistory, DeletionResponse
from app.services.jobs import JobQueue, JobResult
from app.services.webhooks.dispatcher import WebhookDispatcher

logger = structlog.get_logger()

MAX_HISTORY_LIMIT = 50

# (model, owner filter) pairs, children before parents.
CASCADE_STEPS: dict[str, list[tuple[Any, Callable[[str], Any]]]] = {
    "prompts": [
        (PromptVersion, lambda owner: PromptVersion.prompt_id.in_(select(Prompt.id).where(Prompt.user_id == owner))),
        (Prompt, lambda owner: Prompt.user_id == owner),
    ],
    "evaluations": [
        (
            EvaluationResult,
            lambda owner: EvaluationResult.evaluation_id.in_(
                select(Evaluation.id).where(Evaluation.user_id == owner)
            ),
        ),
        (Evaluation, lambda owner: Evaluation.user_id == owner),
    ],
    "contextPackages": [
        (ContextPackage, lambda owner: ContextPackage.user_id == owner),
    ],
    "activity": [
        (AnalyticsEvent, lambda owner: AnalyticsEvent.user_id == owner),
        (LoginActivity, lambda owner: LoginActivity.user_id == owner),
    ],
}

DELETION_SCOPES: dict[str, list[str]] = {
    "full": ["prompts", "evaluations", "contextPackages", "activity"],
    "prompts": ["prompts"],
    "evaluations": ["evaluations"],
    "activity": ["activity"],
}


def _row_to_response(row: DataDeletionRequest) -> DeletionResponse:
    return DeletionResponse(
        id=row.id,
        deletion_type=row.deletion_type,
        status=row.status,
        deleted_record_count=row.deleted_record_count or 0,
        error_message=row.error_message,
        requested_at=isoformat_z(row.requested_at),
        confirmed_at=isoformat_z(row.confirmed_at),
        completed_at=isoformat_z(row.completed_at),
    )


class DeletionService:
    """Two-step (request, confirm) deletion of an owner's data.

    Each category is deleted and committed on its own. A failure part way
    through leaves the earlier categories deleted; the request is marked
    ``failed`` with the count removed so far.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        session_factory: async_sessionmaker | None = None,
        dispatcher: WebhookDispatcher | None = None,
        clock: Clock = utcnow,
    ):
        self._queue = job_queue
        self._session_factory_override = session_factory
        self._dispatcher = dispatcher
        self._clock = clock

    @property
    def _session_factory(self) -> async_sessionmaker:
        return self._session_factory_override or db_module.async_session

    async def request_deletion(self, ctx: RequestContext, deletion_type: str) -> DeletionCreated:
        if deletion_type not in DELETION_SCOPES:
            raise ValidationError(f"Unknown deletion type '{deletion_type}'.")

        row = DataDeletionRequest(
            id=str(uuid.uuid4()),
            user_id=ctx.user_id,
            deletion_type=deletion_type,
            status="pending",
            confirmation_code=generate_confirmation_code(),
            deleted_record_count=0,
            requested_at=self._clock(),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

        logger.info("deletion_requested", request_id=row.id, user_id=ctx.user_id, deletion_type=deletion_type)
        return DeletionCreated(request_id=row.id, confirmation_code=row.confirmation_code)

    async def confirm_deletion(self, ctx: RequestContext, request_id: str, code: str) -> DeletionResponse:
        """Check the code and schedule the cascade. A wrong code leaves the request pending."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataDeletionRequest).where(
                    DataDeletionRequest.id == request_id,
                    DataDeletionRequest.user_id == ctx.user_id,
                    DataDeletionRequest.status == "pending",
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"No pending deletion request {request_id}.")

            if not codes_match(row.confirmation_code, code):
                logger.warning("deletion_code_mismatch", request_id=request_id, user_id=ctx.user_id)
                raise InvalidCodeError()

            # claim the request; a concurrent confirm that got here first wins
            claimed = await session.execute(
                update(DataDeletionRequest)
                .where(
                    DataDeletionRequest.id == request_id,
                    DataDeletionRequest.user_id == ctx.user_id,
                    DataDeletionRequest.status == "pending",
                )
                .values(status="processing", confirmed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if claimed.rowcount != 1:
                raise NotFoundError(f"No pending deletion request {request_id}.")

            await session.refresh(row)
            response = _row_to_response(row)
            deletion_type = row.deletion_type

        owner_id = ctx.user_id
        self._queue.submit(
            request_id,
            "deletion",
            lambda: self._run_cascade(request_id, owner_id, deletion_type),
            on_complete=self._on_deletion_finished,
        )
        logger.info("deletion_confirmed", request_id=request_id, user_id=owner_id)
        return response

    async def _run_cascade(self, request_id: str, owner_id: str, deletion_type: str) -> int:
        deleted = 0
        try:
            for category in DELETION_SCOPES[deletion_type]:
                async with self._session_factory() as session:
                    for model, owner_filter in CASCADE_STEPS[category]:
                        result = await session.execute(
                            delete(model).where(owner_filter(owner_id)).execution_options(synchronize_session=False)
                        )
                        deleted += max(result.rowcount or 0, 0)
                    await session.commit()
                logger.debug("deletion_category_done", request_id=request_id, category=category)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("deletion_failed", request_id=request_id, error=message, deleted=deleted)
            await self._finish(request_id, "failed", deleted, error_message=message)
            raise

        await self._finish(request_id, "completed", deleted)
        logger.info("deletion_completed", request_id=request_id, user_id=owner_id, deleted=deleted)
        return deleted

    async def _finish(self, request_id: str, status: str, deleted: int, error_message: str | None = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(DataDeletionRequest)
                .where(DataDeletionRequest.id == request_id, DataDeletionRequest.status == "processing")
                .values(
                    status=status,
                    deleted_record_count=deleted,
                    error_message=error_message,
                    completed_at=self._clock(),
                )
            )
            await session.commit()

    async def _on_deletion_finished(self, result: JobResult) -> None:
        if self._dispatcher is None:
            return
        async with self._session_factory() as session:
            row = await session.get(DataDeletionRequest, result.job_id)
        if row is None:
            return

        event_type = "deletion.completed" if row.status == "completed" else "deletion.failed"
        await self._dispatcher.trigger(
            event_type,
            {
                "requestId": row.id,
                "deletionType": row.deletion_type,
                "status": row.status,
                "deletedRecordCount": row.deleted_record_count,
                "errorMessage": row.error_message,
            },
            row.user_id,
        )

    async def get_deletion_history(self, ctx: RequestContext, limit: int = 20) -> DeletionHistory:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        async with self._session_factory() as session:
            result = await session.execute(
                select(DataDeletionRequest)
                .where(DataDeletionRequest.user_id == ctx.user_id)
                .order_by(DataDeletionRequest.requested_at.desc())
                .limit(limit)
            )
            deletions = [_row_to_response(r) for r in result.scalars().all()]
        return DeletionHistory(deletions=deletions, total=len(deletions))
