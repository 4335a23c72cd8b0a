from fastapi import APIRouter

from app.api.v1.deletions import router as deletions_router
from app.api.v1.exports import router as exports_router
from app.api.v1.health import router as health_router
from app.api.v1.prompts import router as prompts_router
from app.api.v1.webhooks import router as webhooks_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(prompts_router, tags=["Prompts"])

# Data portability
v1_router.include_router(exports_router, tags=["Exports"])
v1_router.include_router(deletions_router, tags=["Deletions"])
v1_router.include_router(webhooks_router, tags=["Webhooks"])
