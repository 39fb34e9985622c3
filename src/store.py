from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.models.messages import Conversation, Message, MessageMedia
from src.models.webhooks import WebhookAuditRecord
from src.observability import log_event


class DuplicateMessageError(Exception):
    """Raised when a message with the same provider message id already exists."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(exc: Exception) -> bool:
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text or "23505" in text


class MessageStore:
    """Conversations, messages and webhook audit rows over the Supabase table API."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def _first(self, table: str, column: str, value: Any) -> dict[str, Any] | None:
        result = self._client.table(table).select("*").eq(column, value).execute()
        return result.data[0] if result.data else None

    def _update(self, table: str, row_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        result = self._client.table(table).update(payload).eq("id", row_id).execute()
        return result.data[0] if result.data else None

    # Messages

    def get_message_by_id(self, message_id: str) -> Message | None:
        row = self._first("messages", "id", message_id)
        return Message.model_validate(row) if row else None

    def get_message_by_provider_message_id(self, provider_message_id: str) -> Message | None:
        row = self._first("messages", "provider_message_id", provider_message_id)
        return Message.model_validate(row) if row else None

    def create_message(
        self,
        *,
        conversation_id: str,
        direction: str,
        body: str | None,
        media: MessageMedia | None,
        provider_message_id: str | None,
        status: str,
        raw: Any = None,
        reply_to_message_id: str | None = None,
    ) -> Message:
        row = {
            "conversation_id": conversation_id,
            "direction": direction,
            "body": body,
            "media": media.model_dump(mode="json") if media else None,
            "provider_message_id": provider_message_id,
            "status": status,
            "raw": raw,
            "reply_to_message_id": reply_to_message_id,
            "created_at": _now_iso(),
        }
        try:
            created = self._client.table("messages").insert(row).execute()
        except Exception as exc:
            if provider_message_id and _is_unique_violation(exc):
                raise DuplicateMessageError(provider_message_id) from exc
            raise
        if not created.data:
            raise RuntimeError("Message insert returned no row")
        return Message.model_validate(created.data[0])

    def update_message_media(self, message_id: str, media: MessageMedia | None) -> Message | None:
        row = self._update(
            "messages",
            message_id,
            {"media": media.model_dump(mode="json") if media else None},
        )
        return Message.model_validate(row) if row else None

    def update_message_status(self, message_id: str, status: str) -> Message | None:
        row = self._update("messages", message_id, {"status": status})
        return Message.model_validate(row) if row else None

    # Conversations

    def get_conversation_by_phone(self, phone: str) -> Conversation | None:
        row = self._first("conversations", "phone", phone)
        return Conversation.model_validate(row) if row else None

    def create_conversation(self, *, phone: str, display_name: str | None = None) -> Conversation:
        now_iso = _now_iso()
        created = self._client.table("conversations").insert(
            {
                "phone": phone,
                "display_name": display_name,
                "archived": False,
                "unread_count": 0,
                "last_at": None,
                "created_at": now_iso,
                "updated_at": now_iso,
            }
        ).execute()
        if not created.data:
            raise RuntimeError("Conversation insert returned no row")
        return Conversation.model_validate(created.data[0])

    def toggle_conversation_archive(self, conversation_id: str, archived: bool) -> Conversation:
        row = self._update("conversations", conversation_id, {"archived": archived, "updated_at": _now_iso()})
        if not row:
            raise LookupError(f"Conversation not found: {conversation_id}")
        return Conversation.model_validate(row)

    def update_conversation_last_at(self, conversation_id: str) -> None:
        now_iso = _now_iso()
        self._update("conversations", conversation_id, {"last_at": now_iso, "updated_at": now_iso})

    def increment_conversation_unread(self, conversation_id: str) -> int:
        # Single UPDATE ... RETURNING in Postgres; see scripts/create_tables.py.
        result = self._client.rpc("increment_conversation_unread", {"target_id": conversation_id}).execute()
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("increment_conversation_unread")
        if data is None:
            raise LookupError(f"Conversation not found: {conversation_id}")
        return int(data)

    # Audit

    def log_webhook_event(self, record: WebhookAuditRecord) -> None:
        payload = record.model_dump(mode="json", exclude={"created_at"})
        payload["created_at"] = _now_iso()
        try:
            self._client.table("webhook_events").insert(payload).execute()
        except Exception as exc:
            log_event(
                "webhook_audit_persist_failed",
                level=logging.ERROR,
                request_id=record.request_id,
                event_type=record.event_type,
                status_code=record.status_code,
                error=str(exc),
            )
