"""
Codec Helpers
=============
Container sniffing and decoding shared by the classifier and formatter.
Images are handled with Pillow, PDFs with PyMuPDF (fitz).

All helpers raise ValueError on unreadable input; each stage converts
that into its own error type.
"""

from __future__ import annotations

import io
import logging
from typing import Optional

import fitz  # PyMuPDF
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Magic-byte signatures, checked in order
_SIGNATURES: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"%PDF-", "pdf"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"BM", "bmp"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
]

# Aliases used when matching against an exam's accepted input formats
FORMAT_ALIASES: dict[str, tuple[str, ...]] = {
    "jpeg": ("jpeg", "jpg"),
    "png": ("png",),
    "pdf": ("pdf",),
    "gif": ("gif",),
    "bmp": ("bmp",),
    "tiff": ("tiff", "tif"),
    "webp": ("webp",),
}

_DECODE_ERRORS = (
    UnidentifiedImageError,
    OSError,
    ValueError,
    SyntaxError,
    Image.DecompressionBombError,
)


def sniff_format(content: bytes) -> Optional[str]:
    """Identify the container from its leading bytes."""
    head = content[:16]
    for magic, name in _SIGNATURES:
        if head.startswith(magic):
            return name
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    # Some PDFs carry a short preamble before the header
    if b"%PDF-" in content[:1024]:
        return "pdf"
    return None


def is_accepted(detected: str, allowed: tuple[str, ...]) -> bool:
    return any(alias in allowed for alias in FORMAT_ALIASES.get(detected, ()))


# ─── Images ───────────────────────────────────────────────────────────────────


def flatten(image: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any transparency onto white."""
    has_alpha = image.mode in ("RGBA", "LA") or (
        image.mode == "P" and "transparency" in image.info
    )
    if has_alpha:
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def open_image(content: bytes) -> Image.Image:
    """
    Fully decode an image into an upright RGB Pillow image.

    Raises:
        ValueError: If the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(content)) as img:
            img.load()
            upright = ImageOps.exif_transpose(img)
            return flatten(upright)
    except _DECODE_ERRORS as e:
        raise ValueError(f"Unreadable image: {e}") from e


# ─── PDFs ─────────────────────────────────────────────────────────────────────


def open_pdf(content: bytes) -> fitz.Document:
    """
    Open a PDF from memory. Caller closes the document.

    Raises:
        ValueError: If the PDF cannot be opened, is encrypted or has no pages.
    """
    try:
        doc = fitz.open(stream=content, filetype="pdf")
    except Exception as e:
        raise ValueError(f"Unreadable PDF: {e}") from e

    if doc.needs_pass:
        doc.close()
        raise ValueError("PDF is password protected")
    if doc.page_count == 0:
        doc.close()
        raise ValueError("PDF has no pages")
    return doc


def render_page(page: fitz.Page, dpi: int) -> Image.Image:
    """Rasterize one PDF page to an RGB Pillow image."""
    pix = page.get_pixmap(dpi=dpi, alpha=False)
    return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


def render_first_page(content: bytes, dpi: int = 150) -> Image.Image:
    doc = open_pdf(content)
    try:
        return render_page(doc[0], dpi)
    finally:
        doc.close()


def pdf_page_count(content: bytes) -> int:
    doc = open_pdf(content)
    try:
        return doc.page_count
    finally:
        doc.close()
