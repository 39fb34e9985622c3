from src.domain.normalization import (
    can_transition_media_status,
    normalize_message_status,
    should_update_message_status,
)


def test_message_status_normalization_contract():
    assert normalize_message_status(" READ ") == "read"
    assert normalize_message_status("Delivered") == "delivered"
    assert normalize_message_status("") is None
    assert normalize_message_status(None) is None


def test_status_accepted_when_current_status_absent():
    for incoming in ("queued", "sent", "delivered", "read", "failed"):
        assert should_update_message_status(None, incoming) is True


def test_status_never_moves_backwards():
    assert should_update_message_status("delivered", "sent") is False
    assert should_update_message_status("read", "delivered") is False
    assert should_update_message_status("read", "sent") is False
    assert should_update_message_status("sent", "queued") is False
    assert should_update_message_status("delivered", "queued") is False


def test_status_forward_progress_is_accepted():
    assert should_update_message_status("queued", "sent") is True
    assert should_update_message_status("sent", "delivered") is True
    assert should_update_message_status("delivered", "read") is True
    assert should_update_message_status("sent", "read") is True
    assert should_update_message_status("queued", "read") is True


def test_same_status_is_a_noop():
    for status in ("queued", "sent", "delivered", "read"):
        assert should_update_message_status(status, status) is False


def test_failed_is_terminal():
    for incoming in ("queued", "sent", "delivered", "read", "failed"):
        assert should_update_message_status("failed", incoming) is False


def test_late_failure_does_not_overwrite_known_delivery():
    assert should_update_message_status("sent", "failed") is True
    assert should_update_message_status("queued", "failed") is True
    assert should_update_message_status("delivered", "failed") is False
    assert should_update_message_status("read", "failed") is False


def test_empty_incoming_status_is_rejected():
    assert should_update_message_status("sent", None) is False
    assert should_update_message_status("sent", "  ") is False


def test_media_status_transitions():
    assert can_transition_media_status(None, "pending") is True
    assert can_transition_media_status("pending", "processing") is True
    assert can_transition_media_status("processing", "ready") is True
    assert can_transition_media_status("processing", "failed") is True
    assert can_transition_media_status("failed", "processing") is True
    assert can_transition_media_status("ready", "processing") is False
    assert can_transition_media_status("processing", "processing") is False
    assert can_transition_media_status("pending", "ready") is False
