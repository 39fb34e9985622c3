from __future__ import annotations

from typing import Literal


MediaProcessingStatus = Literal["pending", "processing", "ready", "failed"]

# Statuses that a later status notice must not move backwards from.
_BLOCKED_BY: dict[str, set[str]] = {
    "read": set(),
    "delivered": {"read"},
    "sent": {"delivered", "read"},
    "queued": {"sent", "delivered", "read"},
    "failed": {"delivered", "read"},
}

_MEDIA_TRANSITIONS: dict[str | None, set[str]] = {
    None: {"pending", "processing"},
    "pending": {"processing"},
    "processing": {"ready", "failed"},
    "failed": {"processing"},
    "ready": set(),
}


def normalize_message_status(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None


def should_update_message_status(current: str | None, incoming: str | None) -> bool:
    current_status = normalize_message_status(current)
    next_status = normalize_message_status(incoming)

    if not next_status:
        return False
    if not current_status:
        return True
    if current_status == next_status:
        return False
    if current_status == "failed":
        return False
    blocked = _BLOCKED_BY.get(next_status)
    if blocked is None:
        return True
    return current_status not in blocked


def can_transition_media_status(current: str | None, incoming: str) -> bool:
    return incoming in _MEDIA_TRANSITIONS.get(current, set())
