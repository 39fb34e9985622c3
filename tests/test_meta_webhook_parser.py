import hashlib
import hmac
import json

import pytest

from src.providers.meta.webhook import (
    MessageKind,
    parse_incoming,
    parse_status_updates,
    verify_webhook_signature,
)


def _payload(messages=None, statuses=None) -> dict:
    value = {"messaging_product": "whatsapp", "metadata": {"phone_number_id": "pn-1"}}
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {"object": "whatsapp_business_account", "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}]}


def _single(msg: dict):
    base = {"from": "15550001111", "id": "wamid.1", "timestamp": "1700000000"}
    base.update(msg)
    events = parse_incoming(_payload([base]))
    assert len(events) == 1
    return events[0]


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "not-a-dict",
        [],
        {},
        {"entry": "nope"},
        {"entry": [{}]},
        {"entry": [{"changes": [{"value": None}]}]},
        {"entry": [{"changes": [{"value": {"messages": "x"}}]}]},
        {"entry": [None, {"changes": None}]},
    ],
)
def test_unrecognized_shapes_yield_empty_results(payload):
    assert parse_incoming(payload) == []
    assert parse_status_updates(payload) == []


def test_text_message_fields():
    event = _single({"type": "text", "text": {"body": "Hello there"}, "context": {"id": "wamid.parent"}})

    assert event.sender == "15550001111"
    assert event.body == "Hello there"
    assert event.media is None
    assert event.provider_message_id == "wamid.1"
    assert event.reply_to_provider_message_id == "wamid.parent"
    assert event.timestamp.startswith("2023-11-14T22:13:20")
    assert event.raw["type"] == "text"


def test_image_message_builds_descriptor_with_caption():
    event = _single(
        {
            "type": "image",
            "image": {"id": "media-1", "mime_type": "image/jpeg", "sha256": "abc", "caption": "Look", "file_size": 2048},
        }
    )

    assert event.body == "Look"
    assert event.media.type == "image"
    assert event.media.media_id == "media-1"
    assert event.media.mime_type == "image/jpeg"
    assert event.media.size_bytes == 2048
    assert event.media.provider == "meta"
    assert event.media.metadata["sha256"] == "abc"


@pytest.mark.parametrize("kind", ["video", "document", "audio"])
def test_other_media_types_produce_descriptors(kind):
    event = _single({"type": kind, kind: {"id": f"{kind}-1", "mime_type": "application/octet-stream", "filename": "f.bin"}})

    assert event.media is not None
    assert event.media.type == kind
    assert event.media.media_id == f"{kind}-1"


def test_document_filename_is_kept():
    event = _single({"type": "document", "document": {"id": "d-1", "filename": "Invoice.pdf", "mime_type": "application/pdf"}})
    assert event.media.filename == "Invoice.pdf"
    assert event.body is None


def test_sticker_is_image_media_with_emoji_caption():
    event = _single({"type": "sticker", "sticker": {"id": "st-1", "mime_type": "image/webp", "emoji": "😀"}})
    assert event.media.type == "image"
    assert event.body == "Sticker 😀"

    plain = _single({"type": "sticker", "sticker": {"id": "st-2"}})
    assert plain.body == "Sticker"


def test_location_summary_with_map_link():
    event = _single(
        {
            "type": "location",
            "location": {"latitude": 52.52, "longitude": 13.4, "name": "Office", "address": "Main St 1"},
        }
    )
    assert event.body == "Office\nMain St 1\nhttps://maps.google.com/?q=52.52,13.4"

    bare = _single({"type": "location", "location": {}})
    assert bare.body == "Shared a location"


def test_contacts_summary():
    event = _single(
        {
            "type": "contacts",
            "contacts": [{"name": {"formatted_name": "Ada Lovelace"}}, {"name": {"first_name": "Alan"}}],
        }
    )
    assert event.body == "Contact: Ada Lovelace, Alan"
    assert _single({"type": "contacts", "contacts": []}).body == "Shared a contact"


def test_interactive_replies_and_fallbacks():
    button = _single({"type": "interactive", "interactive": {"type": "button_reply", "button_reply": {"id": "b1", "title": "Yes"}}})
    assert button.body == "Yes"
    button_id_only = _single({"type": "interactive", "interactive": {"type": "button_reply", "button_reply": {"id": "b1"}}})
    assert button_id_only.body == "b1"
    assert _single({"type": "interactive", "interactive": {"type": "button_reply"}}).body == "Button reply"

    listed = _single({"type": "interactive", "interactive": {"type": "list_reply", "list_reply": {"title": "Option 2"}}})
    assert listed.body == "Option 2"
    assert _single({"type": "interactive", "interactive": {"type": "list_reply"}}).body == "List reply"

    flow = _single({"type": "interactive", "interactive": {"type": "nfm_reply", "nfm_reply": {"body": "Sent"}}})
    assert flow.body == "Sent"
    assert _single({"type": "interactive", "interactive": {"type": "nfm_reply"}}).body == "Flow reply"

    assert _single({"type": "interactive", "interactive": {"type": "product"}}).body == "Interactive: product"
    assert _single({"type": "interactive"}).body == "Interactive message"


def test_button_reaction_order_and_system():
    assert _single({"type": "button", "button": {"text": "Stop promotions"}}).body == "Stop promotions"
    assert _single({"type": "button"}).body == "Button response"
    assert _single({"type": "reaction", "reaction": {"emoji": "👍", "message_id": "wamid.0"}}).body == "Reaction 👍"
    assert _single({"type": "reaction", "reaction": {}}).body == "Reaction"
    assert _single({"type": "order", "order": {"catalog_id": "c"}}).body == "Order received"
    assert _single({"type": "system", "system": {"body": "User changed number"}}).body == "User changed number"
    assert _single({"type": "system"}).body == "System message"


def test_unknown_type_is_never_dropped():
    event = _single({"type": "ephemeral"})
    assert event.body == "Unsupported message type: ephemeral"

    untyped = _single({})
    assert untyped.body == "Unsupported message type: unknown"


def test_unknown_type_uses_fallback_ladder_before_unsupported():
    assert _single({"type": "future_kind", "caption": "From caption"}).body == "From caption"
    assert _single({"type": "future_kind", "title": "A title"}).body == "A title"
    assert _single({"type": "future_kind", "name": "A name"}).body == "A name"


def test_every_dispatch_kind_yields_body_or_media():
    samples = {
        MessageKind.TEXT: {"text": {"body": "x"}},
        MessageKind.IMAGE: {"image": {"id": "i"}},
        MessageKind.VIDEO: {"video": {"id": "v"}},
        MessageKind.AUDIO: {"audio": {"id": "a"}},
        MessageKind.DOCUMENT: {"document": {"id": "d"}},
        MessageKind.STICKER: {"sticker": {"id": "s"}},
        MessageKind.LOCATION: {"location": {}},
        MessageKind.CONTACTS: {"contacts": []},
        MessageKind.INTERACTIVE: {"interactive": {}},
        MessageKind.BUTTON: {"button": {}},
        MessageKind.REACTION: {"reaction": {}},
        MessageKind.ORDER: {"order": {}},
        MessageKind.SYSTEM: {"system": {}},
        MessageKind.UNSUPPORTED: {},
    }
    for kind, fields in samples.items():
        msg = {"type": kind.value, **fields}
        event = _single(msg)
        assert event.body or event.media is not None, kind


def test_multiple_entries_and_changes_are_flattened():
    payload = {
        "entry": [
            {"changes": [{"value": {"messages": [{"from": "1", "id": "a", "type": "text", "text": {"body": "one"}}]}}]},
            {"changes": [{"value": {"messages": [{"from": "2", "id": "b", "type": "text", "text": {"body": "two"}}]}}]},
        ]
    }
    assert [event.body for event in parse_incoming(payload)] == ["one", "two"]


def test_status_updates_parse_ids_and_timestamps():
    updates = parse_status_updates(
        _payload(
            statuses=[
                {"id": "wamid.1", "status": "READ", "timestamp": "1700000000", "recipient_id": "1555"},
                {"message_id": " wamid.2 ", "status": "delivered"},
                {"messageId": "wamid.3", "status": "sent"},
                {"status": "read"},
                {"id": "wamid.4"},
            ]
        )
    )

    assert [(u.provider_message_id, u.status) for u in updates] == [
        ("wamid.1", "read"),
        ("wamid.2", "delivered"),
        ("wamid.3", "sent"),
    ]
    assert updates[0].timestamp.startswith("2023-11-14T22:13:20")
    assert updates[0].recipient_id == "1555"
    assert updates[1].timestamp is None


def test_signature_verification():
    body = json.dumps(_payload([{"from": "1", "id": "a", "type": "text", "text": {"body": "hi"}}])).encode()
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    assert verify_webhook_signature({"X-Hub-Signature-256": f"sha256={digest}"}, body, "app-secret") is True
    assert verify_webhook_signature({"x-hub-signature-256": digest}, body, "app-secret") is True
    assert verify_webhook_signature({"x-hub-signature-256": f"sha256={digest}"}, body + b" ", "app-secret") is False
    assert verify_webhook_signature({"x-hub-signature-256": "sha256=deadbeef"}, body, "app-secret") is False
    assert verify_webhook_signature({}, body, "app-secret") is False
    assert verify_webhook_signature({}, body, None) is True
