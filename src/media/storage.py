from __future__ import annotations

import re
import time
import uuid
from pathlib import Path
from threading import Lock
from urllib.parse import unquote, urlsplit

from src.config import Settings
from src.domain.signed_urls import SignedUrlService
from src.models.messages import Message


MEDIA_ROUTE_PREFIX = "/media"

REQUIRED_DIRECTORIES = (
    "",
    "incoming",
    "incoming/original",
    "incoming/thumbnails",
    "incoming/previews",
    "outbound",
    "outbound/original",
    "outbound/thumbnails",
    "cache",
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_UNSAFE_EXTENSION_CHARS = re.compile(r"[^a-z0-9]")


class MediaPathError(ValueError):
    """Raised when a relative media path resolves outside the media root."""


def sanitize_file_name(filename: str | None, fallback_base: str) -> str:
    base = (filename or "").replace("\\", "/").split("/")[-1]
    normalized = _UNSAFE_FILENAME_CHARS.sub("-", base.strip())
    normalized = re.sub(r"-+", "-", normalized)
    normalized = normalized.lstrip(".").lower()
    return normalized or f"{fallback_base}-{uuid.uuid4()}"


def build_media_file_name(
    *,
    media_id: str | None = None,
    original_file_name: str | None = None,
    extension: str | None = None,
    prefix: str | None = None,
) -> str:
    raw_extension = extension
    if raw_extension is None and original_file_name and "." in original_file_name:
        raw_extension = original_file_name.rsplit(".", 1)[-1]
    clean_extension = _UNSAFE_EXTENSION_CHARS.sub("", (raw_extension or "").lower())
    safe_extension = f".{clean_extension}" if clean_extension else ""
    safe_prefix = prefix or "media"

    if original_file_name:
        sanitized = sanitize_file_name(original_file_name, safe_prefix)
        if safe_extension and not sanitized.endswith(safe_extension):
            stem = re.sub(r"\.[^.]+$", "", sanitized)
            return f"{stem}{safe_extension}"
        return sanitized

    if media_id:
        return f"{safe_prefix}-{sanitize_file_name(media_id, safe_prefix)}{safe_extension}"

    return f"{safe_prefix}-{int(time.time() * 1000)}-{uuid.uuid4()}{safe_extension}"


def to_relative_media_path(*parts: str) -> str:
    segments: list[str] = []
    for part in parts:
        segments.extend(segment for segment in part.replace("\\", "/").split("/") if segment)
    return "/".join(segments)


def to_url_path(relative_path: str) -> str:
    normalized = relative_path.replace("\\", "/").lstrip("/")
    return f"{MEDIA_ROUTE_PREFIX}/{normalized}"


def extract_relative_media_path(input_url: str | None) -> str | None:
    if not input_url:
        return None
    path = unquote(urlsplit(input_url).path or "")
    if path != MEDIA_ROUTE_PREFIX and not path.startswith(f"{MEDIA_ROUTE_PREFIX}/"):
        return None
    return path[len(MEDIA_ROUTE_PREFIX):].lstrip("/") or None


class MediaStorage:
    """Filesystem layout for media under a single root directory."""

    def __init__(
        self,
        root: str | Path,
        *,
        signer: SignedUrlService,
        default_ttl_seconds: int = 900,
    ) -> None:
        root_path = Path(root)
        if not root_path.is_absolute():
            root_path = Path.cwd() / root_path
        self.root = root_path.resolve()
        self.signer = signer
        self.default_ttl_seconds = default_ttl_seconds
        self._ensured: set[Path] = set()
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings, signer: SignedUrlService | None = None) -> "MediaStorage":
        return cls(
            settings.media_storage_root,
            signer=signer or SignedUrlService.from_settings(settings),
            default_ttl_seconds=settings.media_signed_url_ttl_seconds,
        )

    def ensure_directory(self, relative_dir: str) -> Path:
        absolute = self.resolve_absolute_path(relative_dir) if relative_dir else self.root
        with self._lock:
            if absolute not in self._ensured:
                absolute.mkdir(parents=True, exist_ok=True)
                self._ensured.add(absolute)
        return absolute

    def ensure_media_directories(self) -> None:
        for relative_dir in REQUIRED_DIRECTORIES:
            self.ensure_directory(relative_dir)

    def resolve_absolute_path(self, relative_path: str) -> Path:
        normalized = relative_path.replace("\\", "/").lstrip("/")
        absolute = (self.root / normalized).resolve()
        if absolute != self.root and not absolute.is_relative_to(self.root):
            raise MediaPathError("Attempted to resolve media path outside of root")
        return absolute

    def write_file(self, relative_path: str, content: bytes) -> Path:
        absolute = self.resolve_absolute_path(relative_path)
        parent = absolute.parent.relative_to(self.root).as_posix()
        self.ensure_directory("" if parent == "." else parent)
        absolute.write_bytes(content)
        return absolute

    def build_signed_media_path(self, relative_path: str, ttl_seconds: int | None = None) -> str:
        unsigned = to_url_path(relative_path)
        return self.signer.build_signed_path(unsigned, ttl_seconds or self.default_ttl_seconds)

    def _sign_reference(self, storage_path: str | None, url: str | None, ttl_seconds: int | None) -> str | None:
        if storage_path:
            return self.build_signed_media_path(storage_path, ttl_seconds)
        relative = extract_relative_media_path(url)
        if relative:
            return self.build_signed_media_path(relative, ttl_seconds)
        return url

    def sign_message_media(self, message: Message, ttl_seconds: int | None = None) -> Message:
        """Return a copy of ``message`` whose media URLs are signed for browser use."""
        if message.media is None:
            return message
        media = message.media
        stored = media.storage
        signed = media.model_copy(
            update={
                "url": self._sign_reference(stored.original_path if stored else None, media.url, ttl_seconds),
                "thumbnail_url": self._sign_reference(
                    stored.thumbnail_path if stored else None, media.thumbnail_url, ttl_seconds
                ),
                "preview_url": self._sign_reference(
                    stored.preview_path if stored else None, media.preview_url, ttl_seconds
                ),
            }
        )
        return message.model_copy(update={"media": signed})
