from __future__ import annotations

import hashlib
import hmac
import logging
import math
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.domain.mime import MediaType
from src.domain.normalization import normalize_message_status
from src.models.inbound import IncomingMessageEvent, MediaDescriptor, StatusUpdate
from src.observability import log_event


SIGNATURE_HEADER = "x-hub-signature-256"
_SIGNATURE_PREFIX = "sha256="


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACTS = "contacts"
    INTERACTIVE = "interactive"
    BUTTON = "button"
    REACTION = "reaction"
    ORDER = "order"
    SYSTEM = "system"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_wire(cls, value: Any) -> "MessageKind":
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.UNSUPPORTED


def _header_value(headers: Mapping[str, Any], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if str(key).lower() == name:
                value = candidate
                break
    return str(value) if value is not None else None


def verify_webhook_signature(headers: Mapping[str, Any], raw_body: bytes, app_secret: str | None) -> bool:
    if not app_secret:
        return True
    signature = _header_value(headers, SIGNATURE_HEADER)
    if not signature:
        log_event("webhook_signature_missing", level=logging.WARNING, header=SIGNATURE_HEADER)
        return False
    provided = signature.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8"))


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _first_text(*values: Any) -> str | None:
    for value in values:
        text = _text(value)
        if text:
            return text
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _epoch_to_iso(value: Any) -> str | None:
    seconds = _as_float(value)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _iter_change_values(payload: Any) -> Iterator[dict[str, Any]]:
    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(change).get("value")
            if isinstance(value, dict):
                yield value


def build_media_descriptor(media_type: MediaType, payload: Any) -> MediaDescriptor | None:
    if not isinstance(payload, dict):
        return None
    return MediaDescriptor(
        provider="meta",
        type=media_type,
        media_id=_first_text(payload.get("id"), payload.get("media_id")),
        url=_text(payload.get("link")),
        mime_type=_first_text(payload.get("mime_type"), payload.get("mimetype")),
        filename=_text(payload.get("filename")),
        sha256=_text(payload.get("sha256")),
        size_bytes=_as_int(payload.get("file_size") if payload.get("file_size") is not None else payload.get("filesize")),
        width=_as_int(payload.get("width")),
        height=_as_int(payload.get("height")),
        duration_seconds=_as_float(payload.get("duration")),
        page_count=_as_int(payload.get("page_count")),
        preview_url=_text(payload.get("preview_url")),
        thumbnail_url=_text(payload.get("thumbnail_url")),
        metadata=payload,
    )


def _format_coordinate(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _parse_text(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    return _text(_as_dict(msg.get("text")).get("body")), None


def _captioned_media(media_type: MediaType) -> Callable[[dict[str, Any]], tuple[str | None, MediaDescriptor | None]]:
    def _parse(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
        payload = msg.get(media_type)
        caption = _first_text(_as_dict(payload).get("caption"), msg.get("caption"))
        return caption, build_media_descriptor(media_type, payload)

    return _parse


def _parse_audio(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    return None, build_media_descriptor("audio", msg.get("audio"))


def _parse_sticker(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    sticker = msg.get("sticker")
    emoji = _text(_as_dict(sticker).get("emoji"))
    return (f"Sticker {emoji}" if emoji else "Sticker"), build_media_descriptor("image", sticker)


def _parse_location(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    location = _as_dict(msg.get("location"))
    lines: list[str] = []
    for key in ("name", "address"):
        text = _text(location.get(key))
        if text:
            lines.append(text)
    lat = _as_float(location.get("latitude"))
    lng = _as_float(location.get("longitude"))
    if lat is not None and lng is not None:
        lines.append(f"https://maps.google.com/?q={_format_coordinate(lat)},{_format_coordinate(lng)}")
    return ("\n".join(lines) if lines else "Shared a location"), None


def _parse_contacts(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    names: list[str] = []
    for contact in _as_list(msg.get("contacts")):
        name = _as_dict(_as_dict(contact).get("name"))
        display = _first_text(name.get("formatted_name"), name.get("first_name"))
        if display:
            names.append(display)
    return (f"Contact: {', '.join(names)}" if names else "Shared a contact"), None


def _parse_interactive(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    interactive = _as_dict(msg.get("interactive"))
    interactive_type = _text(interactive.get("type"))
    if interactive_type == "button_reply":
        reply = _as_dict(interactive.get("button_reply"))
        return _first_text(reply.get("title"), reply.get("id")) or "Button reply", None
    if interactive_type == "list_reply":
        reply = _as_dict(interactive.get("list_reply"))
        return _first_text(reply.get("title"), reply.get("id")) or "List reply", None
    if interactive_type == "nfm_reply":
        return _text(_as_dict(interactive.get("nfm_reply")).get("body")) or "Flow reply", None
    return (f"Interactive: {interactive_type}" if interactive_type else "Interactive message"), None


def _parse_button(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    return _text(_as_dict(msg.get("button")).get("text")) or "Button response", None


def _parse_reaction(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    emoji = _text(_as_dict(msg.get("reaction")).get("emoji"))
    return (f"Reaction {emoji}" if emoji else "Reaction"), None


def _parse_order(_msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    return "Order received", None


def _parse_system(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    return _text(_as_dict(msg.get("system")).get("body")) or "System message", None


def _parse_unsupported(msg: dict[str, Any]) -> tuple[str | None, MediaDescriptor | None]:
    log_event("meta_webhook_unknown_message_type", level=logging.DEBUG, message_type=msg.get("type"))
    return None, None


_MESSAGE_PARSERS: dict[MessageKind, Callable[[dict[str, Any]], tuple[str | None, MediaDescriptor | None]]] = {
    MessageKind.TEXT: _parse_text,
    MessageKind.IMAGE: _captioned_media("image"),
    MessageKind.VIDEO: _captioned_media("video"),
    MessageKind.DOCUMENT: _captioned_media("document"),
    MessageKind.AUDIO: _parse_audio,
    MessageKind.STICKER: _parse_sticker,
    MessageKind.LOCATION: _parse_location,
    MessageKind.CONTACTS: _parse_contacts,
    MessageKind.INTERACTIVE: _parse_interactive,
    MessageKind.BUTTON: _parse_button,
    MessageKind.REACTION: _parse_reaction,
    MessageKind.ORDER: _parse_order,
    MessageKind.SYSTEM: _parse_system,
    MessageKind.UNSUPPORTED: _parse_unsupported,
}


def parse_message(msg: dict[str, Any]) -> IncomingMessageEvent:
    kind = MessageKind.from_wire(msg.get("type"))
    body, media = _MESSAGE_PARSERS[kind](msg)

    if not body:
        body = _first_text(
            _as_dict(msg.get("text")).get("body"),
            msg.get("caption"),
            msg.get("body"),
            msg.get("title"),
            msg.get("name"),
        )
    if not body and media is None:
        body = f"Unsupported message type: {_text(msg.get('type')) or 'unknown'}"

    context = _as_dict(msg.get("context"))
    return IncomingMessageEvent(
        sender=str(msg.get("from") or ""),
        body=body,
        media=media,
        provider_message_id=_text(msg.get("id")),
        reply_to_provider_message_id=_text(context.get("id")),
        timestamp=_epoch_to_iso(msg.get("timestamp")) or datetime.now(timezone.utc).isoformat(),
        raw=msg,
    )


def parse_incoming(payload: Any) -> list[IncomingMessageEvent]:
    events: list[IncomingMessageEvent] = []
    if not isinstance(payload, dict) or not isinstance(payload.get("entry"), list):
        log_event(
            "meta_webhook_payload_missing_entry",
            level=logging.WARNING,
            payload_keys=sorted(payload.keys()) if isinstance(payload, dict) else [],
        )
        return events

    for value in _iter_change_values(payload):
        for msg in _as_list(value.get("messages")):
            if not isinstance(msg, dict):
                continue
            events.append(parse_message(msg))

    log_event("meta_webhook_events_parsed", level=logging.DEBUG, event_count=len(events))
    return events


def parse_status_updates(payload: Any) -> list[StatusUpdate]:
    updates: list[StatusUpdate] = []
    for value in _iter_change_values(payload):
        for item in _as_list(value.get("statuses")):
            status_item = _as_dict(item)
            raw_id = _first_text(status_item.get("id"), status_item.get("message_id"), status_item.get("messageId"))
            normalized_status = normalize_message_status(_text(status_item.get("status")))
            if not raw_id or not normalized_status:
                continue
            updates.append(
                StatusUpdate(
                    provider_message_id=raw_id.strip(),
                    status=normalized_status,
                    timestamp=_epoch_to_iso(status_item.get("timestamp")),
                    recipient_id=_text(status_item.get("recipient_id")),
                    raw=item,
                )
            )
    return updates
