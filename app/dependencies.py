from fastapi import Depends, Request

from app.core.context import RequestContext
from app.core.exceptions import AuthenticationError
from app.services.deletion import DeletionService
from app.services.exports import ExportService
from app.services.jobs import JobQueue
from app.services.prompts import PromptService
from app.services.storage import LocalBlobStorage
from app.services.webhooks import WebhookDispatcher, WebhookService


def get_request_context(request: Request) -> RequestContext:
    """Build the caller context from what AuthMiddleware put on request.state."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise AuthenticationError()
    key_prefix = getattr(request.state, "api_key_prefix", None)
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        return RequestContext(user_id=user_id, api_key_prefix=key_prefix)
    return RequestContext(user_id=user_id, request_id=request_id, api_key_prefix=key_prefix)


def get_job_queue(request: Request) -> JobQueue:
    """Return the job queue stored on app state during lifespan."""
    return request.app.state.job_queue


def get_storage(request: Request) -> LocalBlobStorage:
    return request.app.state.storage


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.webhook_dispatcher


def get_export_service(
    request: Request,
    storage: LocalBlobStorage = Depends(get_storage),
    job_queue: JobQueue = Depends(get_job_queue),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> ExportService:
    return ExportService(
        storage=storage,
        job_queue=job_queue,
        token_service=request.app.state.download_tokens,
        dispatcher=dispatcher,
    )


def get_deletion_service(
    job_queue: JobQueue = Depends(get_job_queue),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> DeletionService:
    return DeletionService(job_queue=job_queue, dispatcher=dispatcher)


def get_webhook_service() -> WebhookService:
    return WebhookService()


def get_prompt_service(dispatcher: WebhookDispatcher = Depends(get_dispatcher)) -> PromptService:
    return PromptService(dispatcher=dispatcher)
