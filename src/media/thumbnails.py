from __future__ import annotations

import io
from dataclasses import dataclass

import fitz  # PyMuPDF
from PIL import Image, ImageOps


PDF_RASTER_DPI = 160
THUMBNAIL_FORMAT = "WEBP"
THUMBNAIL_EXTENSION = "webp"
THUMBNAIL_QUALITY = 80


@dataclass(frozen=True)
class RenderedThumbnail:
    content: bytes
    width: int | None
    height: int | None
    page_count: int | None = None


def wants_thumbnail(media_type: str, extension: str | None) -> bool:
    return media_type == "image" or (media_type == "document" and extension == "pdf")


def rasterize_pdf_first_page(content: bytes, dpi: int = PDF_RASTER_DPI) -> tuple[Image.Image, int]:
    with fitz.open(stream=content, filetype="pdf") as doc:
        if doc.page_count < 1:
            raise ValueError("PDF has no pages to render")
        pix = doc.load_page(0).get_pixmap(dpi=dpi)
        image = Image.open(io.BytesIO(pix.tobytes("png")))
        image.load()
        return image, doc.page_count


def render_thumbnail(
    content: bytes,
    *,
    media_type: str,
    extension: str | None,
    max_width: int,
    max_height: int,
) -> RenderedThumbnail | None:
    """Decode, orient and shrink an image (or a PDF's first page) into a WebP thumbnail.

    Returns ``None`` for media types that do not get thumbnails. The reported
    width/height are those of the decoded source, not of the thumbnail.
    """
    if not content or not wants_thumbnail(media_type, extension):
        return None

    page_count: int | None = None
    if media_type == "document":
        image, page_count = rasterize_pdf_first_page(content)
    else:
        image = Image.open(io.BytesIO(content))
        image.load()

    image = ImageOps.exif_transpose(image)
    width, height = image.size

    if image.mode not in ("RGB", "RGBA"):
        has_alpha = image.mode in ("LA", "PA") or (image.mode == "P" and "transparency" in image.info)
        image = image.convert("RGBA" if has_alpha else "RGB")

    image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format=THUMBNAIL_FORMAT, quality=THUMBNAIL_QUALITY)
    return RenderedThumbnail(content=buffer.getvalue(), width=width, height=height, page_count=page_count)
