from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from app.core.context import RequestContext
from app.dependencies import get_export_service, get_request_context
from app.schemas.encryption import GeneratedPassword, PasswordStrength, PasswordStrengthRequest
from app.schemas.exports import (
    DataSummary,
    DownloadUrlResponse,
    ExportCreate,
    ExportCreated,
    ExportHistory,
    ExportStatusResponse,
)
from app.services.encryption import generate_secure_password, password_strength
from app.services.exports import ExportService

router = APIRouter()


@router.get("/v1/exports/summary")
async def get_data_summary(
    ctx: RequestContext = Depends(get_request_context),
    service: ExportService = Depends(get_export_service),
) -> DataSummary:
    """Counts of the caller's data, for an export preview."""
    return await service.get_data_summary(ctx)


@router.post("/v1/exports/password-strength")
async def check_password_strength(body: PasswordStrengthRequest) -> PasswordStrength:
    return password_strength(body.password)


@router.get("/v1/exports/generate-password")
async def suggest_password(length: int = Query(16, ge=12, le=64)) -> GeneratedPassword:
    """Suggest a random export password."""
    password = generate_secure_password(length)
    return GeneratedPassword(password=password, strength=password_strength(password))


@router.post("/v1/exports", status_code=202)
async def create_export(
    body: ExportCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ExportService = Depends(get_export_service),
) -> ExportCreated:
    """Start an export job. Poll GET /v1/exports/{id} for progress."""
    return await service.create_export(ctx, body.export_type, body.format, password=body.password)


@router.get("/v1/exports")
async def get_export_history(
    limit: int = Query(20, ge=1, le=50),
    ctx: RequestContext = Depends(get_request_context),
    service: ExportService = Depends(get_export_service),
) -> ExportHistory:
    return await service.get_export_history(ctx, limit=limit)


@router.get("/v1/exports/download/{token}")
async def download_export(
    token: str,
    service: ExportService = Depends(get_export_service),
) -> Response:
    """Serve an export artifact from a signed link (no API key needed)."""
    data, content_type, file_name = await service.open_download(token)
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/v1/exports/{request_id}")
async def get_export_status(
    request_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: ExportService = Depends(get_export_service),
) -> ExportStatusResponse:
    return await service.get_export_status(ctx, request_id)


@router.post("/v1/exports/{request_id}/download-url")
async def get_download_url(
    request_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: ExportService = Depends(get_export_service),
) -> DownloadUrlResponse:
    """Signed, time-limited link. ``url`` is null unless the export is completed and unexpired."""
    return await service.get_download_url(ctx, request_id)
