from src.domain.mime import (
    DEFAULT_MIME,
    extension_to_media_type,
    get_extension_from_mime,
    get_mime_type,
    get_mime_type_from_extension,
    guess_extension_from_file_name,
    is_supported_extension,
    normalize_mime_type,
)


def test_mime_lookup_by_extension_and_filename():
    assert get_mime_type("pdf") == "application/pdf"
    assert get_mime_type(".PNG") == "image/png"
    assert get_mime_type("invoice.final.PDF") == "application/pdf"
    assert get_mime_type("archive.unknownext") == DEFAULT_MIME
    assert get_mime_type_from_extension("clip.mov") == "video/quicktime"
    assert get_mime_type_from_extension("nope") is None
    assert get_mime_type_from_extension(None) is None


def test_extension_lookup_prefers_canonical_extension():
    assert get_extension_from_mime("image/jpeg") == "jpg"
    assert get_extension_from_mime("video/mp4") == "mp4"
    assert get_extension_from_mime("audio/ogg; codecs=opus") == "ogg"
    assert get_extension_from_mime("IMAGE/WEBP") == "webp"
    assert get_extension_from_mime("application/x-unknown") is None
    assert get_extension_from_mime(None) is None


def test_mime_parameters_are_stripped():
    assert normalize_mime_type("audio/ogg; codecs=opus") == "audio/ogg"
    assert normalize_mime_type("  Text/Plain ") == "text/plain"
    assert normalize_mime_type("") is None


def test_supported_extensions_and_guessing():
    assert is_supported_extension("docx") is True
    assert is_supported_extension("report.xlsx") is True
    assert is_supported_extension("exe") is False
    assert guess_extension_from_file_name("Scan.JPEG") == "jpeg"
    assert guess_extension_from_file_name("README") is None
    assert guess_extension_from_file_name(None) is None


def test_extension_to_media_type_classification():
    assert extension_to_media_type("jpg") == "image"
    assert extension_to_media_type(".MP4") == "video"
    assert extension_to_media_type("amr") == "audio"
    assert extension_to_media_type("pdf") == "document"
    assert extension_to_media_type("exe") == "unknown"
    assert extension_to_media_type(None) == "unknown"
