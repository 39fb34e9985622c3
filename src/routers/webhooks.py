from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from src.dependencies import get_webhook_handler
from src.ingestion.meta_webhook import MetaWebhookHandler
from src.models.webhooks import WebhookResult


router = APIRouter(prefix="/webhook", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _to_response(result: WebhookResult) -> Response:
    if isinstance(result.content, dict):
        return JSONResponse(status_code=result.status_code, content=result.content)
    return PlainTextResponse(status_code=result.status_code, content=result.content)


@router.get("/meta")
async def verify_meta_webhook(
    request: Request,
    handler: MetaWebhookHandler = Depends(get_webhook_handler),
):
    result = handler.handle_verification_challenge(
        dict(request.query_params),
        dict(request.headers),
        request_id=_request_id(request),
    )
    return _to_response(result)


@router.post("/meta")
async def ingest_meta_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    handler: MetaWebhookHandler = Depends(get_webhook_handler),
):
    raw_body = await request.body()
    result = handler.handle_event_delivery(
        dict(request.headers),
        raw_body,
        dict(request.query_params),
        dispatch=background_tasks.add_task,
        request_id=_request_id(request),
    )
    return _to_response(result)
