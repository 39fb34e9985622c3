from __future__ import annotations

from typing import Literal


MediaType = Literal["image", "video", "audio", "document", "unknown"]

DEFAULT_MIME = "application/octet-stream"

MIME_MAP: dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv",
    "txt": "text/plain",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "gif": "image/gif",
    "heic": "image/heic",
    "heif": "image/heif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "m4v": "video/mp4",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
    "amr": "audio/amr",
    "zip": "application/zip",
    "rar": "application/vnd.rar",
    "7z": "application/x-7z-compressed",
}

# First extension listed for a mime type wins (image/jpeg -> jpg, video/mp4 -> mp4).
EXTENSION_MAP: dict[str, str] = {}
for _ext, _mime in MIME_MAP.items():
    EXTENSION_MAP.setdefault(_mime, _ext)

_MEDIA_TYPE_EXTENSIONS: dict[str, set[str]] = {
    "image": {"jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "svg"},
    "video": {"mp4", "mov", "m4v", "webm", "avi", "mkv"},
    "audio": {"mp3", "wav", "m4a", "ogg", "aac", "amr"},
    "document": {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "csv", "zip", "rar", "7z"},
}


def normalize_extension(value: str) -> str:
    normalized = value.strip().lower()
    if "." in normalized:
        return normalized.rsplit(".", 1)[-1]
    return normalized


def normalize_mime_type(mime: str | None) -> str | None:
    if not mime:
        return None
    normalized = str(mime).split(";", 1)[0].strip().lower()
    return normalized or None


def get_mime_type(filename_or_ext: str) -> str:
    return MIME_MAP.get(normalize_extension(filename_or_ext), DEFAULT_MIME)


def get_mime_type_from_extension(filename_or_ext: str | None) -> str | None:
    if not filename_or_ext:
        return None
    return MIME_MAP.get(normalize_extension(filename_or_ext))


def get_extension_from_mime(mime: str | None) -> str | None:
    normalized = normalize_mime_type(mime)
    if not normalized:
        return None
    return EXTENSION_MAP.get(normalized)


def is_supported_extension(ext_or_filename: str) -> bool:
    return normalize_extension(ext_or_filename) in MIME_MAP


def guess_extension_from_file_name(filename: str | None) -> str | None:
    if not filename or "." not in filename:
        return None
    guessed = filename.rsplit(".", 1)[-1].strip().lower()
    return guessed or None


def extension_to_media_type(extension: str | None) -> MediaType:
    if not extension:
        return "unknown"
    key = extension.lstrip(".").lower()
    for media_type, extensions in _MEDIA_TYPE_EXTENSIONS.items():
        if key in extensions:
            return media_type  # type: ignore[return-value]
    return "unknown"
