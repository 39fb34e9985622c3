from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from src.config import Settings
from src.models.inbound import IncomingMessageEvent, MetaMediaMetadata, StatusUpdate
from src.providers.meta import webhook


META_GRAPH_API_BASE = "https://graph.facebook.com"
DEFAULT_GRAPH_VERSION = "v19.0"


class MetaProviderError(Exception):
    """Provider-level exception for Meta Graph API failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "invalid meta access token" in message
            or "not configured" in message
            or "not found" in message
            or "non-json" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category != "terminal"


class MediaTooLargeError(MetaProviderError):
    """Raised when media exceeds the configured original byte ceiling."""

    @property
    def category(self) -> str:
        return "terminal"


@dataclass(frozen=True)
class MediaDownload:
    content: bytes
    content_type: str | None = None


def _build_base_url(base_url: str | None) -> str:
    return (base_url or META_GRAPH_API_BASE).rstrip("/")


def _auth_headers(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _open_client(timeout_seconds: float) -> httpx.Client:
    return httpx.Client(timeout=timeout_seconds, follow_redirects=True)


def _request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
) -> httpx.Response:
    with _open_client(timeout_seconds) as client:
        return client.request(method=method, url=url, headers=headers)


def _read_capped(response: httpx.Response, max_bytes: int | None) -> bytes:
    declared = response.headers.get("content-length")
    if max_bytes is not None and declared and declared.isdigit() and int(declared) > max_bytes:
        raise MediaTooLargeError(f"Media exceeds configured size limit ({declared} bytes > {max_bytes})")

    chunks: list[bytes] = []
    total = 0
    for chunk in response.iter_bytes():
        total += len(chunk)
        if max_bytes is not None and total > max_bytes:
            raise MediaTooLargeError(f"Downloaded media exceeds configured size limit (over {max_bytes} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.status_code in {401, 403}:
        raise MetaProviderError("Invalid Meta access token")
    if response.status_code == 404:
        raise MetaProviderError(f"Meta {what} not found")
    if response.status_code >= 400:
        raise MetaProviderError(f"Meta API returned HTTP {response.status_code}: {response.text[:200]}")


def fetch_media_metadata(
    access_token: str | None,
    media_id: str,
    graph_version: str = DEFAULT_GRAPH_VERSION,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> MetaMediaMetadata:
    if not access_token:
        raise MetaProviderError("Meta access token is not configured")

    url = f"{_build_base_url(base_url)}/{graph_version}/{media_id}"
    try:
        response = _request(method="GET", url=url, headers=_auth_headers(access_token), timeout_seconds=timeout_seconds)
    except httpx.HTTPError as exc:
        raise MetaProviderError(f"Meta connectivity error: {exc}") from exc

    _raise_for_status(response, f"media {media_id}")
    try:
        data = response.json()
    except ValueError as exc:
        raise MetaProviderError("Meta returned non-JSON media metadata") from exc
    if not isinstance(data, dict):
        raise MetaProviderError("Meta returned non-JSON media metadata")
    return MetaMediaMetadata.model_validate(data)


def download_media(
    access_token: str | None,
    url: str,
    timeout_seconds: float = 60.0,
    max_bytes: int | None = None,
) -> MediaDownload:
    """Stream the media body, aborting as soon as it grows past ``max_bytes``."""
    if not access_token:
        raise MetaProviderError("Meta access token is not configured")

    try:
        with _open_client(timeout_seconds) as client:
            with client.stream("GET", url, headers=_auth_headers(access_token)) as response:
                if response.status_code >= 400:
                    response.read()
                    _raise_for_status(response, "media download")
                content = _read_capped(response, max_bytes)
                content_type = response.headers.get("content-type")
    except httpx.HTTPError as exc:
        raise MetaProviderError(f"Meta connectivity error: {exc}") from exc

    return MediaDownload(content=content, content_type=content_type)


class MetaProvider:
    """Credential-bound facade over the Graph API helpers and the webhook parser."""

    def __init__(
        self,
        *,
        access_token: str | None,
        app_secret: str | None = None,
        verify_token: str | None = None,
        phone_number_id: str | None = None,
        graph_version: str = DEFAULT_GRAPH_VERSION,
        base_url: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.access_token = access_token
        self.app_secret = app_secret
        self.verify_token = verify_token
        self.phone_number_id = phone_number_id
        self.graph_version = graph_version
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "MetaProvider":
        return cls(
            access_token=settings.meta_token,
            app_secret=settings.meta_app_secret,
            verify_token=settings.meta_verify_token,
            phone_number_id=settings.meta_phone_number_id,
            graph_version=settings.meta_graph_version,
            base_url=settings.meta_api_base_url,
            timeout_seconds=settings.meta_http_timeout_seconds,
        )

    def fetch_media_metadata(self, media_id: str) -> MetaMediaMetadata:
        return fetch_media_metadata(
            self.access_token,
            media_id,
            graph_version=self.graph_version,
            base_url=self.base_url,
            timeout_seconds=self.timeout_seconds,
        )

    def download_media(self, url: str, max_bytes: int | None = None) -> MediaDownload:
        return download_media(self.access_token, url, timeout_seconds=self.timeout_seconds, max_bytes=max_bytes)

    def verify_webhook_signature(self, headers: Mapping[str, Any], raw_body: bytes) -> bool:
        return webhook.verify_webhook_signature(headers, raw_body, self.app_secret)

    def parse_incoming(self, payload: Any) -> list[IncomingMessageEvent]:
        return webhook.parse_incoming(payload)

    def parse_status_updates(self, payload: Any) -> list[StatusUpdate]:
        return webhook.parse_status_updates(payload)
