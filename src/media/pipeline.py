from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol, TypeVar

from src.config import Settings
from src.domain.mime import (
    DEFAULT_MIME,
    extension_to_media_type,
    get_extension_from_mime,
    get_mime_type_from_extension,
    guess_extension_from_file_name,
    is_supported_extension,
    normalize_mime_type,
)
from src.domain.normalization import can_transition_media_status
from src.media.storage import MediaStorage, build_media_file_name, to_relative_media_path, to_url_path
from src.media.thumbnails import THUMBNAIL_EXTENSION, render_thumbnail
from src.models.inbound import MediaDescriptor, MetaMediaMetadata
from src.models.messages import MediaStorageInfo, Message, MessageMedia
from src.observability import incr_metric, log_event
from src.providers.meta.client import MediaDownload, MediaTooLargeError
from src.store import MessageStore


T = TypeVar("T")

StatusCallback = Callable[[Message | None], None]


class MediaProviderClient(Protocol):
    def fetch_media_metadata(self, media_id: str) -> MetaMediaMetadata: ...

    def download_media(self, url: str, max_bytes: int | None = None) -> MediaDownload: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _guess_extension(filename: str | None) -> str | None:
    guessed = guess_extension_from_file_name(filename)
    return guessed if guessed and is_supported_extension(guessed) else None


def _resolve_media_type(existing: MessageMedia | None, descriptor: MediaDescriptor) -> str:
    if descriptor.type and descriptor.type != "unknown":
        return descriptor.type
    if existing is not None and existing.type and existing.type != "unknown":
        return existing.type
    return extension_to_media_type(
        _guess_extension(descriptor.filename) or get_extension_from_mime(descriptor.mime_type)
    )


def merge_media(existing: MessageMedia | None, descriptor: MediaDescriptor) -> MessageMedia:
    """Fold a fresh descriptor into the stored media record and mark it processing."""
    existing_metadata = dict(existing.metadata or {}) if existing else {}
    previous_whatsapp = existing_metadata.get("whatsapp")
    existing_metadata["whatsapp"] = descriptor.metadata if descriptor.metadata is not None else previous_whatsapp
    return MessageMedia(
        origin=existing.origin if existing else "whatsapp",
        type=_resolve_media_type(existing, descriptor),
        status="processing",
        provider=descriptor.provider or (existing.provider if existing else "meta"),
        provider_media_id=descriptor.media_id or (existing.provider_media_id if existing else None),
        mime_type=normalize_mime_type(descriptor.mime_type) or (existing.mime_type if existing else None),
        filename=(existing.filename if existing else None) or descriptor.filename,
        extension=existing.extension if existing else None,
        size_bytes=descriptor.size_bytes if descriptor.size_bytes is not None else (existing.size_bytes if existing else None),
        checksum=descriptor.sha256 or (existing.checksum if existing else None),
        width=descriptor.width if descriptor.width is not None else (existing.width if existing else None),
        height=descriptor.height if descriptor.height is not None else (existing.height if existing else None),
        duration_seconds=(
            descriptor.duration_seconds
            if descriptor.duration_seconds is not None
            else (existing.duration_seconds if existing else None)
        ),
        page_count=descriptor.page_count if descriptor.page_count is not None else (existing.page_count if existing else None),
        url=existing.url if existing else None,
        thumbnail_url=existing.thumbnail_url if existing else None,
        preview_url=existing.preview_url if existing else None,
        placeholder_url=existing.placeholder_url if existing else None,
        storage=existing.storage if existing else None,
        download_attempts=(existing.download_attempts if existing else 0) + 1,
        download_error=None,
        downloaded_at=existing.downloaded_at if existing else None,
        thumbnail_generated_at=existing.thumbnail_generated_at if existing else None,
        metadata=existing_metadata,
    )


class MediaIngestionPipeline:
    """Download, store and thumbnail one message's media, reporting ready/failed.

    ``ingest`` never raises: every failure ends in a persisted ``failed`` media
    status on an otherwise untouched message.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        media_storage: MediaStorage,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.75,
        max_original_bytes: int = 25 * 1024 * 1024,
        thumbnail_max_width: int = 512,
        thumbnail_max_height: int = 512,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.media_storage = media_storage
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self.max_original_bytes = max_original_bytes
        self.thumbnail_max_width = thumbnail_max_width
        self.thumbnail_max_height = thumbnail_max_height
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, *, store: MessageStore, media_storage: MediaStorage) -> "MediaIngestionPipeline":
        return cls(
            store=store,
            media_storage=media_storage,
            max_attempts=settings.media_download_max_attempts,
            retry_delay_seconds=settings.media_download_retry_delay_ms / 1000.0,
            max_original_bytes=settings.media_max_original_bytes,
            thumbnail_max_width=settings.media_thumbnail_max_width,
            thumbnail_max_height=settings.media_thumbnail_max_height,
        )

    def ingest(
        self,
        *,
        message_id: str,
        conversation_id: str,
        descriptor: MediaDescriptor,
        provider: MediaProviderClient,
        on_status_change: StatusCallback | None = None,
    ) -> None:
        try:
            message = self.store.get_message_by_id(message_id)
        except Exception as exc:
            log_event(
                "media_ingest_failed",
                level=logging.ERROR,
                message_id=message_id,
                conversation_id=conversation_id,
                stage="load_message",
                error=str(exc),
            )
            return
        if message is None:
            log_event("media_ingest_aborted", level=logging.WARNING, message_id=message_id, conversation_id=conversation_id, reason="message_missing")
            return

        existing = message.media
        if existing is not None and not can_transition_media_status(existing.status, "processing"):
            same_descriptor = existing.provider_media_id == descriptor.media_id
            if existing.status != "ready" or same_descriptor:
                log_event(
                    "media_ingest_aborted",
                    message_id=message_id,
                    conversation_id=conversation_id,
                    reason=f"media_{existing.status}",
                )
                return

        working = merge_media(existing, descriptor)
        log_event(
            "media_ingest_started",
            message_id=message_id,
            conversation_id=conversation_id,
            media_id=descriptor.media_id,
            media_type=working.type,
            attempt=working.download_attempts,
        )
        try:
            self._persist_and_notify(message_id, working, on_status_change)
            final = self._process(message, descriptor, working, provider)
        except Exception as exc:
            incr_metric("media.ingest.failed", media_type=working.type)
            log_event(
                "media_ingest_failed",
                level=logging.ERROR,
                message_id=message_id,
                conversation_id=conversation_id,
                media_id=descriptor.media_id,
                provider_message_id=message.provider_message_id,
                mime_type=descriptor.mime_type,
                error=str(exc),
            )
            failed = working.model_copy(
                update={"status": "failed", "download_error": str(exc) or "Unknown media ingestion error."}
            )
            try:
                self._persist_and_notify(message_id, failed, on_status_change)
            except Exception as persist_exc:
                log_event(
                    "media_ingest_failed",
                    level=logging.ERROR,
                    message_id=message_id,
                    conversation_id=conversation_id,
                    stage="persist_failure",
                    error=str(persist_exc),
                )
            return

        try:
            self._persist_and_notify(message_id, final, on_status_change)
        except Exception as exc:
            log_event(
                "media_ingest_failed",
                level=logging.ERROR,
                message_id=message_id,
                conversation_id=conversation_id,
                stage="persist_ready",
                error=str(exc),
            )
            return
        incr_metric("media.ingest.ready", media_type=final.type)
        log_event(
            "media_ingest_ready",
            message_id=message_id,
            conversation_id=conversation_id,
            original_path=final.storage.original_path if final.storage else None,
            size_bytes=final.size_bytes,
            has_thumbnail=bool(final.storage and final.storage.thumbnail_path),
        )

    def _process(
        self,
        message: Message,
        descriptor: MediaDescriptor,
        working: MessageMedia,
        provider: MediaProviderClient,
    ) -> MessageMedia:
        metadata = self._fetch_metadata(provider, descriptor.media_id)

        declared_size = descriptor.size_bytes
        if declared_size is None and metadata is not None:
            declared_size = metadata.file_size
        if declared_size is None and message.media is not None:
            declared_size = message.media.size_bytes
        if declared_size and declared_size > self.max_original_bytes:
            raise MediaTooLargeError(
                f"Media exceeds configured size limit ({declared_size} bytes > {self.max_original_bytes})"
            )

        download_url = (metadata.url if metadata else None) or descriptor.url
        if not download_url:
            raise ValueError("No media download URL available.")
        download = self._with_retry(
            lambda: provider.download_media(download_url, max_bytes=self.max_original_bytes),
            operation="download",
            media_id=descriptor.media_id,
        )
        content = download.content
        if not content:
            raise ValueError("Downloaded media is empty.")
        if len(content) > self.max_original_bytes:
            raise MediaTooLargeError(
                f"Downloaded media exceeds configured size limit ({len(content)} bytes > {self.max_original_bytes})"
            )

        extension = (
            get_extension_from_mime(descriptor.mime_type)
            or get_extension_from_mime(download.content_type)
            or get_extension_from_mime(metadata.mime_type if metadata else None)
            or _guess_extension(descriptor.filename)
            or working.extension
            or "bin"
        )
        effective_mime = (
            normalize_mime_type(descriptor.mime_type)
            or normalize_mime_type(download.content_type)
            or normalize_mime_type(metadata.mime_type if metadata else None)
            or working.mime_type
            or get_mime_type_from_extension(extension)
            or DEFAULT_MIME
        )
        file_name = build_media_file_name(
            media_id=descriptor.media_id or (metadata.id if metadata else None) or message.provider_message_id or message.id,
            original_file_name=working.filename or descriptor.filename or (metadata.name if metadata else None),
            extension=extension,
            prefix=working.type or "media",
        )

        original_path = to_relative_media_path("incoming", "original", message.id, file_name)
        self.media_storage.write_file(original_path, content)

        thumbnail_path: str | None = None
        width, height, page_count = working.width, working.height, working.page_count
        thumbnail = render_thumbnail(
            content,
            media_type=working.type,
            extension=extension,
            max_width=self.thumbnail_max_width,
            max_height=self.thumbnail_max_height,
        )
        if thumbnail is not None:
            thumb_name = build_media_file_name(
                original_file_name=f"{message.id}-{file_name}-thumb.{THUMBNAIL_EXTENSION}",
                extension=THUMBNAIL_EXTENSION,
                prefix="thumb",
            )
            thumbnail_path = to_relative_media_path("incoming", "thumbnails", thumb_name)
            self.media_storage.write_file(thumbnail_path, thumbnail.content)
            width = thumbnail.width or width
            height = thumbnail.height or height
            page_count = thumbnail.page_count or page_count

        finished_at = _now()
        stored = working.storage.model_dump() if working.storage else {}
        stored.update(original_path=original_path, thumbnail_path=thumbnail_path, preview_path=thumbnail_path)
        merged_metadata = dict(working.metadata or {})
        merged_metadata["whatsapp"] = {**(merged_metadata.get("whatsapp") or {}), **(descriptor.metadata or {})}
        merged_metadata["provider"] = metadata.model_dump(exclude_none=True) if metadata else None

        return working.model_copy(
            update={
                "status": "ready",
                "mime_type": effective_mime,
                "filename": file_name,
                "extension": extension,
                "size_bytes": len(content),
                "checksum": (metadata.sha256 if metadata else None) or working.checksum,
                "width": width,
                "height": height,
                "page_count": page_count,
                "storage": MediaStorageInfo(**stored),
                "url": to_url_path(original_path),
                "thumbnail_url": to_url_path(thumbnail_path) if thumbnail_path else working.thumbnail_url,
                "preview_url": to_url_path(thumbnail_path) if thumbnail_path else working.preview_url,
                "downloaded_at": finished_at,
                "thumbnail_generated_at": finished_at if thumbnail_path else working.thumbnail_generated_at,
                "download_error": None,
                "metadata": merged_metadata,
            }
        )

    def _fetch_metadata(self, provider: MediaProviderClient, media_id: str | None) -> MetaMediaMetadata | None:
        if not media_id:
            return None
        return self._with_retry(
            lambda: provider.fetch_media_metadata(media_id),
            operation="metadata",
            media_id=media_id,
        )

    def _with_retry(self, call: Callable[[], T], *, operation: str, media_id: str | None) -> T:
        """Linear backoff up to ``max_attempts``; terminal provider errors stop at once."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except Exception as exc:
                retryable = getattr(exc, "retryable", True)
                incr_metric("media.ingest.retry", operation=operation)
                log_event(
                    "media_ingest_retry",
                    level=logging.WARNING,
                    operation=operation,
                    media_id=media_id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    retryable=retryable,
                    error=str(exc),
                )
                if not retryable or attempt >= self.max_attempts:
                    raise
                self._sleep(self.retry_delay_seconds * attempt)

    def _persist_and_notify(self, message_id: str, media: MessageMedia, on_status_change: StatusCallback | None) -> None:
        self.store.update_message_media(message_id, media)
        if on_status_change is not None:
            on_status_change(self.store.get_message_by_id(message_id))
