from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from src.domain.mime import MediaType


class MediaDescriptor(BaseModel):
    provider: str = "meta"
    type: MediaType = "unknown"
    media_id: str | None = None
    url: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    sha256: str | None = None
    size_bytes: int | None = None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    page_count: int | None = None
    preview_url: str | None = None
    thumbnail_url: str | None = None
    metadata: dict[str, Any] | None = None


class IncomingMessageEvent(BaseModel):
    sender: str
    body: str | None = None
    media: MediaDescriptor | None = None
    provider_message_id: str | None = None
    reply_to_provider_message_id: str | None = None
    timestamp: str | None = None
    raw: Any = None


class StatusUpdate(BaseModel):
    provider_message_id: str
    status: str
    timestamp: str | None = None
    recipient_id: str | None = None
    raw: Any = None


class MetaMediaMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    url: str | None = None
    mime_type: str | None = None
    sha256: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    voice: bool | None = None
    messaging_product: str | None = None
    name: str | None = None
