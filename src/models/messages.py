from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.domain.mime import MediaType
from src.domain.normalization import MediaProcessingStatus


class MediaStorageInfo(BaseModel):
    original_path: str | None = None
    thumbnail_path: str | None = None
    preview_path: str | None = None


class MessageMedia(BaseModel):
    origin: Literal["whatsapp", "upload", "system", "unknown"] = "whatsapp"
    type: MediaType = "unknown"
    status: MediaProcessingStatus = "pending"
    provider: str | None = None
    provider_media_id: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    extension: str | None = None
    size_bytes: int | None = None
    checksum: str | None = None
    width: int | None = None
    height: int | None = None
    duration_seconds: float | None = None
    page_count: int | None = None
    url: str | None = None
    thumbnail_url: str | None = None
    preview_url: str | None = None
    placeholder_url: str | None = None
    storage: MediaStorageInfo | None = None
    download_attempts: int = 0
    download_error: str | None = None
    downloaded_at: datetime | None = None
    thumbnail_generated_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    direction: Literal["inbound", "outbound"]
    body: str | None = None
    media: MessageMedia | None = None
    provider_message_id: str | None = None
    status: str | None = None
    reply_to_message_id: str | None = None
    raw: Any = None
    created_at: datetime | None = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    phone: str
    display_name: str | None = None
    archived: bool = False
    unread_count: int = Field(default=0, ge=0)
    last_at: datetime | None = None
    created_at: datetime | None = None
