from fastapi import APIRouter, Depends, Query

from app.core.context import RequestContext
from app.dependencies import get_prompt_service, get_request_context
from app.schemas.prompts import PromptCreate, PromptList, PromptResponse, PromptUpdate
from app.services.prompts import PromptService

router = APIRouter()


@router.get("/v1/prompts")
async def list_prompts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(get_request_context),
    service: PromptService = Depends(get_prompt_service),
) -> PromptList:
    """List the caller's prompts, most recently updated first."""
    return await service.list_prompts(ctx, limit=limit, offset=offset)


@router.post("/v1/prompts", status_code=201)
async def create_prompt(
    body: PromptCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: PromptService = Depends(get_prompt_service),
) -> PromptResponse:
    return await service.create_prompt(ctx, body)


@router.get("/v1/prompts/{prompt_id}")
async def get_prompt(
    prompt_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: PromptService = Depends(get_prompt_service),
) -> PromptResponse:
    return await service.get_prompt(ctx, prompt_id)


@router.put("/v1/prompts/{prompt_id}")
async def update_prompt(
    prompt_id: str,
    body: PromptUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: PromptService = Depends(get_prompt_service),
) -> PromptResponse:
    """Update a prompt; every update stores a new version."""
    return await service.update_prompt(ctx, prompt_id, body)


@router.delete("/v1/prompts/{prompt_id}", status_code=204)
async def delete_prompt(
    prompt_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: PromptService = Depends(get_prompt_service),
) -> None:
    await service.delete_prompt(ctx, prompt_id)
