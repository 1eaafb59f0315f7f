"""
HTTP API for upload intake, media reads, webhook management and health.

Run with: python -m api.app (or uvicorn "api.app:create_app" --factory)

All /api/v1 routes require an API key (X-API-Key or Authorization: Bearer).
Two background tasks run for the lifetime of the app: the stale job
reclaimer and the webhook delivery worker.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from databases import Database
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api import assets as asset_store
from api import webhook_service
from api.api_keys import AuthContext, require_permission
from api.common import RequestIDMiddleware, rate_limit_exceeded_handler
from api.database import create_database
from api.errors import PipelineError
from api.health import get_worker_health
from api.intake import MediaIntake
from api.job_queue import JobQueue
from api.models import MediaAsset, Webhook
from api.rate_limit import KeyRateLimiter, create_ip_limiter
from api.reclaimer import StaleJobReclaimer
from api.schemas import (
    MediaDetailResponse,
    MediaListResponse,
    MediaResponse,
    TranscriptSegmentResponse,
    UploadCompleteRequest,
    UploadRequest,
    UploadResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
    WebhookUpdate,
)
from api.storage import ObjectStore
from api.webhook_service import WebhookDispatcher
from config import Settings, configure_logging, load_settings

logger = logging.getLogger(__name__)


def media_response(asset: MediaAsset, store: ObjectStore, detail: bool = False) -> MediaResponse:
    fields = dict(
        id=asset.id,
        type=asset.media_kind,
        title=asset.title,
        status=asset.status,
        mime_type=asset.mime_type,
        size=asset.size_bytes,
        original_filename=asset.original_filename,
        hls_url=store.public_object_url(asset.hls_key),
        thumbnail_url=store.public_object_url(asset.thumbnail_key),
        duration=asset.duration_seconds,
        width=asset.width,
        height=asset.height,
        transcription_status=asset.transcription_status,
        transcript_language=asset.transcript_language,
        error_message=asset.error_message,
        metadata=asset.custom_metadata,
        created_at=asset.created_at,
        uploaded_at=asset.uploaded_at,
        processed_at=asset.processed_at,
    )
    if not detail:
        return MediaResponse(**fields)
    return MediaDetailResponse(
        **fields,
        transcript_text=asset.transcript_text,
        transcript_vtt=asset.transcript_vtt,
        transcript_segments=[TranscriptSegmentResponse(**s.to_dict()) for s in asset.transcript_segments],
    )


def webhook_response(webhook: Webhook) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        url=webhook.url,
        events=webhook.events,
        active=webhook.active,
        failure_count=webhook.failure_count,
        last_triggered_at=webhook.last_triggered_at,
        created_at=webhook.created_at,
    )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    store: Optional[ObjectStore] = None,
    dispatcher: Optional[WebhookDispatcher] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    """
    Build the API application.

    Collaborators default to ones built from ``settings``; tests pass their
    own database, store and dispatcher.
    """
    settings = settings or load_settings()
    database = database or create_database(settings.database_url)
    store = store or ObjectStore(settings)
    dispatcher = dispatcher or WebhookDispatcher(database, settings)
    queue = JobQueue(
        database,
        max_attempts=settings.max_attempts,
        stale_threshold_seconds=settings.stale_threshold_seconds,
    )
    reclaimer = StaleJobReclaimer(database, queue, dispatcher, settings.stale_check_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if settings.rate_limit_enabled and settings.rate_limit_storage_url == "memory://":
            logger.warning(
                "Rate limiting is using in-memory storage. "
                "For deployments with multiple instances, configure a shared store: "
                "ALLVIDEO_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
            )
        if not database.is_connected:
            await database.connect()
        if run_background_tasks:
            reclaimer.start()
            dispatcher.start()
        try:
            yield
        finally:
            await reclaimer.stop()
            await dispatcher.stop()
            await store.close()
            await database.disconnect()

    app = FastAPI(title="allvideo", description="Media processing pipeline", lifespan=lifespan)

    app.state.settings = settings
    app.state.database = database
    app.state.store = store
    app.state.queue = queue
    app.state.dispatcher = dispatcher
    app.state.intake = MediaIntake(database, store, queue, dispatcher)
    app.state.limiter = create_ip_limiter(settings)
    app.state.key_rate_limiter = KeyRateLimiter(settings.rate_limit_storage_url, enabled=settings.rate_limit_enabled)

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error(f"Unhandled pipeline error on {request.url.path}: {exc.message}")
            return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    # =========================================================================
    # Upload
    # =========================================================================

    @app.post("/api/v1/upload", response_model=UploadResponse)
    async def begin_upload(data: UploadRequest, auth: AuthContext = Depends(require_permission("write"))):
        """Create an asset and return a pre-signed URL to PUT the bytes to."""
        ticket = await app.state.intake.begin_upload(
            auth.owner_id,
            data.filename,
            data.size,
            mime_type=data.mime_type,
            title=data.title,
            metadata=data.metadata,
        )
        return UploadResponse(
            id=ticket.asset.id,
            type=ticket.asset.media_kind,
            upload_url=ticket.upload_url,
            expires_in=ticket.expires_in,
            metadata=ticket.asset.custom_metadata,
        )

    @app.post("/api/v1/upload/complete", response_model=MediaResponse)
    async def complete_upload(data: UploadCompleteRequest, auth: AuthContext = Depends(require_permission("write"))):
        asset = await app.state.intake.complete_upload(auth.owner_id, data.id)
        return media_response(asset, store)

    # =========================================================================
    # Media
    # =========================================================================

    @app.get("/api/v1/media", response_model=MediaListResponse)
    async def list_media(
        type: Optional[str] = Query(default=None),
        status: Optional[str] = Query(default=None),
        limit: int = Query(default=asset_store.DEFAULT_PAGE_SIZE, ge=1, le=asset_store.MAX_PAGE_SIZE),
        offset: int = Query(default=0, ge=0),
        auth: AuthContext = Depends(require_permission("read")),
    ):
        assets = await asset_store.list_assets(
            database, auth.owner_id, media_kind=type, status=status, limit=limit, offset=offset
        )
        return MediaListResponse(media=[media_response(a, store) for a in assets], limit=limit, offset=offset)

    @app.get("/api/v1/media/{asset_id}", response_model=MediaDetailResponse)
    async def get_media(asset_id: str, auth: AuthContext = Depends(require_permission("read"))):
        asset = await asset_store.get_asset(database, asset_id, auth.owner_id)
        return media_response(asset, store, detail=True)

    @app.delete("/api/v1/media/{asset_id}", status_code=204)
    async def delete_media(asset_id: str, auth: AuthContext = Depends(require_permission("delete"))):
        await app.state.intake.delete_media(auth.owner_id, asset_id)

    # =========================================================================
    # Webhooks
    # =========================================================================

    @app.get("/api/v1/webhooks", response_model=List[WebhookResponse])
    async def list_webhooks(auth: AuthContext = Depends(require_permission("write"))):
        hooks = await webhook_service.list_webhooks(database, auth.owner_id)
        return [webhook_response(w) for w in hooks]

    @app.post("/api/v1/webhooks", response_model=WebhookCreatedResponse, status_code=201)
    async def create_webhook(data: WebhookCreate, auth: AuthContext = Depends(require_permission("write"))):
        webhook = await webhook_service.create_webhook(database, auth.owner_id, data.name, data.url, data.events)
        return WebhookCreatedResponse(**webhook_response(webhook).model_dump(), secret=webhook.secret)

    @app.patch("/api/v1/webhooks/{webhook_id}", response_model=WebhookResponse)
    async def update_webhook(
        webhook_id: str, data: WebhookUpdate, auth: AuthContext = Depends(require_permission("write"))
    ):
        webhook = await webhook_service.update_webhook(
            database,
            webhook_id,
            auth.owner_id,
            name=data.name,
            url=data.url,
            events=data.events,
            active=data.active,
        )
        return webhook_response(webhook)

    @app.delete("/api/v1/webhooks/{webhook_id}", status_code=204)
    async def delete_webhook(webhook_id: str, auth: AuthContext = Depends(require_permission("write"))):
        await webhook_service.delete_webhook(database, webhook_id, auth.owner_id)

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/api/health")
    async def health_check():
        """Liveness probe: the process is up and the database answers."""
        try:
            await database.fetch_val("SELECT 1")
        except Exception as e:
            logger.warning(f"Health check database query failed: {e}")
            return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unreachable"})
        return {"status": "healthy", "database": "ok"}

    @app.get("/api/health/worker")
    async def worker_health():
        health = await get_worker_health(queue)
        return JSONResponse(status_code=health.http_status, content=health.to_dict())

    return app


def main():
    """Entry point for the API server."""
    import uvicorn

    settings = load_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
