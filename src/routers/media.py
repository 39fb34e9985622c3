from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse

from src.dependencies import get_media_storage
from src.domain.mime import get_mime_type
from src.media.storage import MEDIA_ROUTE_PREFIX, MediaPathError, MediaStorage
from src.observability import incr_metric, log_event


router = APIRouter(prefix=MEDIA_ROUTE_PREFIX, tags=["media"])

MEDIA_CACHE_CONTROL = "private, max-age=60"


@router.get("/{relative_path:path}")
async def serve_media(
    relative_path: str,
    request: Request,
    media_storage: MediaStorage = Depends(get_media_storage),
):
    req_id = getattr(request.state, "request_id", None)
    validation = media_storage.signer.verify(request.url.path, request.query_params)
    if not validation.valid:
        incr_metric("media.serve.rejected", status=validation.status)
        log_event(
            "media_serve_rejected",
            level=logging.WARNING,
            request_id=req_id,
            path=relative_path,
            status=validation.status,
            reason=validation.message,
        )
        raise HTTPException(status_code=validation.status, detail=validation.message)

    try:
        absolute = media_storage.resolve_absolute_path(relative_path)
    except MediaPathError:
        log_event("media_serve_rejected", level=logging.WARNING, request_id=req_id, path=relative_path, status=400)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")

    if not absolute.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    incr_metric("media.serve.ok")
    return FileResponse(
        absolute,
        media_type=get_mime_type(absolute.name),
        headers={
            "Cache-Control": MEDIA_CACHE_CONTROL,
            "Content-Disposition": f'inline; filename="{absolute.name}"',
        },
    )
