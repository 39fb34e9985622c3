from __future__ import annotations

import httpx
import pytest

from src.providers.meta import client as meta_client


class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_fetch_media_metadata_uses_versioned_graph_path(monkeypatch):
    calls: list[tuple[str, str, dict[str, str]]] = []

    def _fake_request(**kwargs):
        calls.append((kwargs["method"], kwargs["url"], kwargs["headers"]))
        return _FakeResponse(
            200,
            {"id": "media-1", "url": "https://lookaside.example/m1", "mime_type": "image/jpeg", "file_size": 1234},
        )

    monkeypatch.setattr(meta_client, "_request", _fake_request)
    provider = meta_client.MetaProvider(access_token="tok", graph_version="v20.0", base_url="https://graph.example/")

    metadata = provider.fetch_media_metadata("media-1")

    assert calls == [("GET", "https://graph.example/v20.0/media-1", {"Authorization": "Bearer tok"})]
    assert metadata.url == "https://lookaside.example/m1"
    assert metadata.file_size == 1234


def _mock_transport(monkeypatch, handler):
    monkeypatch.setattr(
        meta_client,
        "_open_client",
        lambda timeout_seconds: httpx.Client(transport=httpx.MockTransport(handler), timeout=timeout_seconds),
    )


def test_download_media_returns_bytes_and_content_type(monkeypatch):
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    _mock_transport(monkeypatch, _handler)
    download = meta_client.MetaProvider(access_token="tok").download_media("https://lookaside.example/m1")

    assert download.content == b"\x89PNG"
    assert download.content_type == "image/png"


def test_download_stops_reading_once_body_exceeds_ceiling(monkeypatch):
    produced: list[int] = []

    def _body():
        for index in range(8):
            produced.append(index)
            yield b"x" * 512

    _mock_transport(monkeypatch, lambda _request: httpx.Response(200, content=_body()))

    with pytest.raises(meta_client.MediaTooLargeError) as exc_info:
        meta_client.download_media("tok", "https://lookaside.example/m1", max_bytes=1024)

    assert "size limit" in str(exc_info.value)
    assert exc_info.value.retryable is False
    assert len(produced) < 8


def test_download_rejects_declared_length_over_ceiling(monkeypatch):
    _mock_transport(monkeypatch, lambda _request: httpx.Response(200, content=b"x" * 2048))

    with pytest.raises(meta_client.MediaTooLargeError):
        meta_client.download_media("tok", "https://lookaside.example/m1", max_bytes=1024)


def test_download_http_errors_map_to_provider_errors(monkeypatch):
    _mock_transport(monkeypatch, lambda _request: httpx.Response(404, text="gone"))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.download_media("tok", "https://lookaside.example/m1")

    assert exc_info.value.category == "terminal"
    assert exc_info.value.retryable is False


@pytest.mark.parametrize(
    ("status_code", "message", "category"),
    [
        (401, "invalid meta access token", "terminal"),
        (404, "not found", "terminal"),
        (503, "http 503", "transient"),
        (429, "http 429", "transient"),
        (400, "http 400", "unknown"),
    ],
)
def test_http_failures_map_to_provider_errors(monkeypatch, status_code, message, category):
    monkeypatch.setattr(meta_client, "_request", lambda **_kwargs: _FakeResponse(status_code, {"error": "x"}))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.fetch_media_metadata("tok", "media-1")

    assert message in str(exc_info.value).lower()
    assert exc_info.value.category == category


def test_connectivity_errors_are_transient(monkeypatch):
    def _boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _mock_transport(monkeypatch, _boom)

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.download_media("tok", "https://lookaside.example/m1")

    assert exc_info.value.retryable is True


def test_missing_token_is_terminal_without_network(monkeypatch):
    def _unexpected(**_kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(meta_client, "_request", _unexpected)

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.fetch_media_metadata(None, "media-1")

    assert exc_info.value.category == "terminal"


def test_non_json_metadata_is_terminal(monkeypatch):
    monkeypatch.setattr(meta_client, "_request", lambda **_kwargs: _FakeResponse(200, None))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.fetch_media_metadata("tok", "media-1")

    assert exc_info.value.category == "terminal"


def test_provider_from_settings_binds_credentials():
    from src.config import Settings

    provider = meta_client.MetaProvider.from_settings(
        Settings(_env_file=None, meta_token="tok", meta_app_secret="sec", meta_graph_version="v21.0")
    )

    assert provider.access_token == "tok"
    assert provider.app_secret == "sec"
    assert provider.graph_version == "v21.0"
