from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class WebhookResult(BaseModel):
    status_code: int
    content: str | dict[str, Any]


class WebhookAuditRecord(BaseModel):
    provider_slug: Literal["meta"] = "meta"
    event_type: Literal["verification", "delivery", "message"]
    status_code: int
    headers: dict[str, Any] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    response: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    request_id: str | None = None
    created_at: datetime | None = None


class WebhookDeliverySummary(BaseModel):
    messages_recorded: int = 0
    messages_duplicate: int = 0
    messages_failed: int = 0
    statuses_applied: int = 0
    media_enqueued: int = 0
