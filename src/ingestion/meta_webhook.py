from __future__ import annotations

import json
import logging
import time
import traceback
from collections.abc import Callable, Mapping
from typing import Any

from src.domain.normalization import should_update_message_status
from src.media.pipeline import MediaIngestionPipeline
from src.media.storage import MediaStorage
from src.models.inbound import IncomingMessageEvent, MediaDescriptor, StatusUpdate
from src.models.messages import Message, MessageMedia
from src.models.webhooks import WebhookAuditRecord, WebhookDeliverySummary, WebhookResult
from src.observability import incr_metric, log_event
from src.providers.meta.client import MetaProvider
from src.realtime.broadcaster import Broadcaster
from src.store import DuplicateMessageError, MessageStore


Dispatch = Callable[..., Any]

ENDPOINT_ONLINE_TEXT = (
    "Meta webhook endpoint is online. To verify, Meta will call this URL with "
    "hub.mode=subscribe, hub.verify_token, and hub.challenge query parameters."
)

def create_pending_media(descriptor: MediaDescriptor | None) -> MessageMedia | None:
    if descriptor is None:
        return None
    return MessageMedia(
        origin="whatsapp",
        type=descriptor.type,
        status="pending",
        provider=descriptor.provider,
        provider_media_id=descriptor.media_id,
        mime_type=descriptor.mime_type,
        filename=descriptor.filename,
        size_bytes=descriptor.size_bytes,
        checksum=descriptor.sha256,
        width=descriptor.width,
        height=descriptor.height,
        duration_seconds=descriptor.duration_seconds,
        page_count=descriptor.page_count,
        preview_url=descriptor.preview_url,
        thumbnail_url=descriptor.thumbnail_url,
        download_attempts=0,
        metadata={"whatsapp": descriptor.metadata} if descriptor.metadata else None,
    )


def _headers_dict(headers: Mapping[str, Any] | None) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in (headers or {}).items()}


class MetaWebhookHandler:
    """Verification challenge and event delivery for the Meta webhook endpoint.

    Status updates are applied before message events. Each message event is
    processed on its own: one failing event is logged and skipped while the rest
    of the batch is still recorded. Media ingestion is handed to the caller's
    ``dispatch`` (FastAPI ``BackgroundTasks.add_task``) and never awaited.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        provider: MetaProvider,
        media_storage: MediaStorage,
        pipeline: MediaIngestionPipeline,
        broadcaster: Broadcaster,
        verify_token: str | None,
        app_secret: str | None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.media_storage = media_storage
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self.verify_token = verify_token
        self.app_secret = app_secret

    # Verification

    def handle_verification_challenge(
        self,
        query: Mapping[str, Any],
        headers: Mapping[str, Any] | None = None,
        *,
        request_id: str | None = None,
    ) -> WebhookResult:
        mode = str(query.get("hub.mode") or "")
        token = query.get("hub.verify_token")
        challenge = query.get("hub.challenge")

        if mode.lower() != "subscribe" or challenge is None:
            return WebhookResult(status_code=200, content=ENDPOINT_ONLINE_TEXT)

        if not self.verify_token:
            log_event("webhook_verification_misconfigured", level=logging.WARNING, request_id=request_id)
            result = WebhookResult(status_code=500, content="Verify token is not configured. Set META_VERIFY_TOKEN.")
            self._audit("verification", result, headers=headers, query=query, request_id=request_id,
                        error="Missing verify token configuration")
            return result

        if token != self.verify_token:
            incr_metric("webhook.events.rejected", provider_slug="meta", reason="verify_token")
            log_event("webhook_verification_rejected", level=logging.WARNING, request_id=request_id)
            result = WebhookResult(status_code=403, content="Forbidden")
            self._audit("verification", result, headers=headers, query=query, request_id=request_id)
            return result

        log_event("webhook_verification_accepted", request_id=request_id)
        result = WebhookResult(status_code=200, content=str(challenge))
        self._audit("verification", result, headers=headers, query=query, request_id=request_id)
        return result

    # Delivery

    def handle_event_delivery(
        self,
        headers: Mapping[str, Any],
        raw_body: bytes,
        query: Mapping[str, Any] | None = None,
        *,
        dispatch: Dispatch,
        request_id: str | None = None,
    ) -> WebhookResult:
        started = time.monotonic()
        query = query or {}
        incr_metric("webhook.events.received", provider_slug="meta")
        log_event("webhook_received", request_id=request_id, provider_slug="meta", body_bytes=len(raw_body))

        payload: Any = None
        try:
            if self.app_secret and not self.provider.verify_webhook_signature(headers, raw_body):
                incr_metric("webhook.events.rejected", provider_slug="meta", reason="signature")
                log_event("webhook_signature_invalid", level=logging.WARNING, request_id=request_id)
                result = WebhookResult(status_code=401, content="Invalid signature")
                self._audit("delivery", result, headers=headers, query=query, body=_body_for_audit(raw_body),
                            request_id=request_id)
                return result

            malformed_json = False
            try:
                payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
            except (UnicodeDecodeError, json.JSONDecodeError):
                malformed_json = True
                payload = {"raw_body": raw_body.decode("utf-8", errors="replace"), "malformed_json": True}

            events = [] if malformed_json else self.provider.parse_incoming(payload)
            statuses = [] if malformed_json else self.provider.parse_status_updates(payload)

            if not events and not statuses:
                log_event("webhook_no_events", request_id=request_id, malformed_json=malformed_json)
                result = WebhookResult(status_code=200, content="ok - no events")
                self._audit("delivery", result, headers=headers, query=query, body=payload, request_id=request_id)
                return result

            summary = WebhookDeliverySummary()
            for update in statuses:
                if self._apply_status_update(update, request_id=request_id):
                    summary.statuses_applied += 1

            for event in events:
                self._process_message_event(
                    event,
                    summary,
                    headers=headers,
                    query=query,
                    dispatch=dispatch,
                    request_id=request_id,
                )
        except Exception as exc:
            incr_metric("webhook.events.failed", provider_slug="meta")
            log_event(
                "webhook_failed",
                level=logging.ERROR,
                request_id=request_id,
                error=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
                exc_info=True,
            )
            result = WebhookResult(status_code=500, content={"error": str(exc)})
            self._audit(
                "delivery",
                result,
                headers=headers,
                query=query,
                body=payload if payload is not None else _body_for_audit(raw_body),
                error=traceback.format_exc(),
                request_id=request_id,
            )
            return result

        incr_metric("webhook.events.processed", provider_slug="meta")
        log_event(
            "webhook_processed",
            request_id=request_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            **summary.model_dump(),
        )
        result = WebhookResult(status_code=200, content="ok")
        self._audit(
            "delivery",
            result,
            headers=headers,
            query=query,
            body=payload,
            response_extra={"summary": summary.model_dump()},
            request_id=request_id,
        )
        return result

    def _apply_status_update(self, update: StatusUpdate, *, request_id: str | None) -> bool:
        message = self.store.get_message_by_provider_message_id(update.provider_message_id)
        if message is None or message.direction != "outbound":
            incr_metric("webhook.statuses.skipped", reason="not_outbound" if message else "not_found")
            log_event(
                "webhook_status_skipped",
                level=logging.DEBUG,
                request_id=request_id,
                provider_message_id=update.provider_message_id,
                reason="not_outbound" if message else "not_found",
            )
            return False

        if not should_update_message_status(message.status, update.status):
            incr_metric("webhook.statuses.skipped", reason="policy")
            log_event(
                "webhook_status_skipped",
                level=logging.DEBUG,
                request_id=request_id,
                provider_message_id=update.provider_message_id,
                current_status=message.status,
                incoming_status=update.status,
                reason="policy",
            )
            return False

        updated = self.store.update_message_status(message.id, update.status)
        if updated is None:
            return False

        incr_metric("webhook.statuses.applied", status=update.status)
        log_event(
            "webhook_status_applied",
            request_id=request_id,
            message_id=updated.id,
            provider_message_id=update.provider_message_id,
            previous_status=message.status,
            status=updated.status,
        )
        self.broadcaster.broadcast(
            "message_status",
            {
                "id": updated.id,
                "conversation_id": updated.conversation_id,
                "status": updated.status,
                "provider_message_id": updated.provider_message_id,
            },
        )
        return True

    def _process_message_event(
        self,
        event: IncomingMessageEvent,
        summary: WebhookDeliverySummary,
        *,
        headers: Mapping[str, Any],
        query: Mapping[str, Any],
        dispatch: Dispatch,
        request_id: str | None,
    ) -> None:
        conversation_id: str | None = None
        try:
            if event.provider_message_id:
                existing = self.store.get_message_by_provider_message_id(event.provider_message_id)
                if existing is not None:
                    self._record_duplicate(event, existing.id, request_id=request_id)
                    summary.messages_duplicate += 1
                    return

            if not event.sender:
                raise ValueError("Inbound message has no sender")

            conversation = self.store.get_conversation_by_phone(event.sender)
            if conversation is None:
                conversation = self.store.create_conversation(phone=event.sender)
            conversation_id = conversation.id
            if conversation.archived:
                conversation = self.store.toggle_conversation_archive(conversation.id, False)

            reply_to_id: str | None = None
            if event.reply_to_provider_message_id:
                target = self.store.get_message_by_provider_message_id(event.reply_to_provider_message_id)
                if target is not None and target.conversation_id == conversation.id:
                    reply_to_id = target.id

            try:
                message = self.store.create_message(
                    conversation_id=conversation.id,
                    direction="inbound",
                    body=event.body,
                    media=create_pending_media(event.media),
                    provider_message_id=event.provider_message_id,
                    status="received",
                    raw=event.raw,
                    reply_to_message_id=reply_to_id,
                )
            except DuplicateMessageError:
                self._record_duplicate(event, None, request_id=request_id)
                summary.messages_duplicate += 1
                return

            summary.messages_recorded += 1
            incr_metric("webhook.messages.recorded", provider_slug="meta")
            log_event(
                "webhook_message_recorded",
                request_id=request_id,
                message_id=message.id,
                conversation_id=conversation.id,
                provider_message_id=event.provider_message_id,
                has_media=event.media is not None,
            )
            self._audit(
                "message",
                WebhookResult(status_code=200, content="ok"),
                headers=headers,
                query=query,
                body=event.raw if event.raw is not None else event.model_dump(mode="json"),
                response_extra={"message_id": message.id},
                request_id=request_id,
            )

            # Row is persisted; broadcast and media dispatch run regardless of the counters.
            try:
                self.store.update_conversation_last_at(conversation.id)
                self.store.increment_conversation_unread(conversation.id)
            except Exception as exc:
                incr_metric("webhook.conversations.update_failed", provider_slug="meta")
                log_event(
                    "webhook_conversation_update_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    conversation_id=conversation.id,
                    message_id=message.id,
                    error=str(exc),
                    exc_info=True,
                )
            self.broadcaster.broadcast("message_incoming", self._signed_payload(message))

            if event.media is not None:
                dispatch(
                    self.run_media_ingestion,
                    message_id=message.id,
                    conversation_id=conversation.id,
                    descriptor=event.media,
                    provider_message_id=event.provider_message_id,
                )
                summary.media_enqueued += 1
        except Exception as exc:
            summary.messages_failed += 1
            incr_metric("webhook.messages.failed", provider_slug="meta")
            log_event(
                "webhook_message_failed",
                level=logging.ERROR,
                request_id=request_id,
                conversation_id=conversation_id,
                provider_message_id=event.provider_message_id,
                error=str(exc),
                exc_info=True,
            )

    def run_media_ingestion(
        self,
        *,
        message_id: str,
        conversation_id: str,
        descriptor: MediaDescriptor,
        provider_message_id: str | None = None,
    ) -> None:
        """Detached entry point for media work; nothing escapes it."""

        def _on_status_change(updated: Message | None) -> None:
            if updated is None:
                return
            self.broadcaster.broadcast("message_media_updated", self._signed_payload(updated))

        try:
            self.pipeline.ingest(
                message_id=message_id,
                conversation_id=conversation_id,
                descriptor=descriptor,
                provider=self.provider,
                on_status_change=_on_status_change,
            )
        except Exception as exc:
            log_event(
                "media_ingest_crashed",
                level=logging.ERROR,
                message_id=message_id,
                conversation_id=conversation_id,
                provider_message_id=provider_message_id,
                error=str(exc),
                exc_info=True,
            )

    def _signed_payload(self, message: Message) -> dict[str, Any]:
        return self.media_storage.sign_message_media(message).model_dump(mode="json")

    def _record_duplicate(self, event: IncomingMessageEvent, existing_id: str | None, *, request_id: str | None) -> None:
        incr_metric("webhook.messages.duplicate", provider_slug="meta")
        log_event(
            "webhook_duplicate_ignored",
            request_id=request_id,
            provider_message_id=event.provider_message_id,
            existing_message_id=existing_id,
        )

    def _audit(
        self,
        event_type: str,
        result: WebhookResult,
        *,
        headers: Mapping[str, Any] | None,
        query: Mapping[str, Any] | None,
        body: Any = None,
        error: str | None = None,
        response_extra: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        response: dict[str, Any] = {"status": result.status_code, "body": result.content}
        if response_extra:
            response.update(response_extra)
        self.store.log_webhook_event(
            WebhookAuditRecord(
                event_type=event_type,
                status_code=result.status_code,
                headers=_headers_dict(headers),
                query=dict(query or {}),
                body=body,
                response=response,
                error=error,
                request_id=request_id,
            )
        )


def _body_for_audit(raw_body: bytes) -> Any:
    text = raw_body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw_body": text}
