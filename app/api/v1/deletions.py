from fastapi import APIRouter, Depends, Query

from app.core.context import RequestContext
from app.dependencies import get_deletion_service, get_request_context
from app.schemas.deletions import (
    DeletionConfirm,
    DeletionCreate,
    DeletionCreated,
    DeletionHistory,
    DeletionResponse,
)
from app.services.deletion import DeletionService

router = APIRouter()


@router.post("/v1/deletions", status_code=201)
async def request_deletion(
    body: DeletionCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: DeletionService = Depends(get_deletion_service),
) -> DeletionCreated:
    """Open a deletion request. Nothing is deleted until it is confirmed with the code."""
    return await service.request_deletion(ctx, body.deletion_type)


@router.post("/v1/deletions/{request_id}/confirm", status_code=202)
async def confirm_deletion(
    request_id: str,
    body: DeletionConfirm,
    ctx: RequestContext = Depends(get_request_context),
    service: DeletionService = Depends(get_deletion_service),
) -> DeletionResponse:
    return await service.confirm_deletion(ctx, request_id, body.confirmation_code)


@router.get("/v1/deletions")
async def get_deletion_history(
    limit: int = Query(20, ge=1, le=50),
    ctx: RequestContext = Depends(get_request_context),
    service: DeletionService = Depends(get_deletion_service),
) -> DeletionHistory:
    return await service.get_deletion_history(ctx, limit=limit)
