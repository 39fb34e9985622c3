import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.domain.signed_urls import SignedUrlService
from src.media.storage import MediaStorage
from src.observability import log_event, metrics_snapshot
from src.realtime.broadcaster import Broadcaster
from src.routers import media, realtime, webhooks


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    signer = SignedUrlService.from_settings(settings)
    signer.assert_configured()
    MediaStorage.from_settings(settings, signer=signer).ensure_media_directories()
    log_event(
        "service_started",
        media_root=settings.media_storage_root,
        signed_urls_required=settings.signed_urls_required,
        webhook_signature_enforced=bool(settings.meta_app_secret),
    )
    yield


app = FastAPI(title="WhatsApp Inbox Ingestion", version="0.1.0", lifespan=lifespan)
app.state.broadcaster = Broadcaster()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(webhooks.router)
app.include_router(media.router)
app.include_router(realtime.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "wa-inbox-ingestion"}


@app.get("/health")
async def health():
    storage = MediaStorage.from_settings(settings)
    media_root_writable = storage.root.is_dir() and os.access(storage.root, os.W_OK)
    store_configured = bool(settings.supabase_url and settings.supabase_service_role_key)
    return {
        "status": "healthy" if media_root_writable else "degraded",
        "media_root_writable": media_root_writable,
        "store_configured": store_configured,
        "realtime_subscribers": app.state.broadcaster.subscriber_count(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics")
async def metrics():
    return {"counters": metrics_snapshot()}
