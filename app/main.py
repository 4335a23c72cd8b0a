from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import v1_router
from app.config import settings
from app.core.database import close_db, init_db
from app.core.exceptions import PromptForgeError, promptforge_error_handler
from app.core.middleware import AuthMiddleware, RequestLoggingMiddleware
from app.services.download_tokens import DownloadTokenService
from app.services.jobs import JobQueue
from app.services.storage import LocalBlobStorage
from app.services.webhooks import WebhookDispatcher

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.promptforge_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await init_db()

    storage = LocalBlobStorage()
    storage.init_directories()
    app.state.storage = storage

    # Shared client for outbound webhook calls; each call also gets its own bounded timeout
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.promptforge_webhook_timeout_seconds, connect=5.0),
        follow_redirects=False,
    )
    job_queue = JobQueue(max_concurrency=settings.promptforge_job_concurrency)
    app.state.job_queue = job_queue
    app.state.webhook_dispatcher = WebhookDispatcher(http_client=http_client, job_queue=job_queue)
    app.state.download_tokens = DownloadTokenService()

    logger.info(
        "promptforge_backend_starting",
        storage_dir=str(storage.root),
        job_concurrency=settings.promptforge_job_concurrency,
    )
    yield

    await job_queue.shutdown()
    await http_client.aclose()
    await close_db()
    logger.info("promptforge_backend_stopping")


app = FastAPI(
    title="PromptForge Backend",
    description="Data portability API for PromptForge: exports, deletions and webhooks",
    version="0.1.0",
    lifespan=lifespan,
)

# Exception handler
app.add_exception_handler(PromptForgeError, promptforge_error_handler)

# Middleware (Starlette: last-added = outermost. Execution order top to bottom.)
# 1. RequestLogging (outermost): logs all requests including auth rejections
# 2. CORS: handles preflight before auth
# 3. Auth: Bearer API key validation (innermost)
app.add_middleware(AuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.promptforge_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "promptforge-backend", "version": "0.1.0"}
