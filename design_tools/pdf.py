"""
Blocking PyMuPDF helpers. Callers in async code run these via asyncio.to_thread.
"""
import io
from typing import Iterable

import pymupdf
from PIL import Image, UnidentifiedImageError

from .errors import PostProcessingFailure, ValidationError


RENDER_SCALE = 2.0


def _open(pdf_bytes: bytes) -> pymupdf.Document:
    try:
        return pymupdf.open(stream=pdf_bytes, filetype="pdf")
    except (pymupdf.FileDataError, RuntimeError, ValueError) as e:
        raise ValidationError(f"Could not read PDF: {e}") from e


def page_count(pdf_bytes: bytes) -> int:
    with _open(pdf_bytes) as doc:
        return doc.page_count


def render_page_png(pdf_bytes: bytes, page_number: int, scale: float = RENDER_SCALE) -> bytes:
    """
    page_number is 1-based.
    """
    with _open(pdf_bytes) as doc:
        if not 1 <= page_number <= doc.page_count:
            raise ValidationError(f"Page {page_number} out of range (1-{doc.page_count})")
        page = doc.load_page(page_number - 1)
        pix = page.get_pixmap(matrix=pymupdf.Matrix(scale, scale))
        return pix.tobytes("png")


def images_to_pdf(images: Iterable[bytes]) -> bytes:
    """
    One page per image, each page sized to its image in pixels.
    """
    out = pymupdf.open()
    try:
        for i, img_bytes in enumerate(images, start=1):
            try:
                with Image.open(io.BytesIO(img_bytes)) as im:
                    width, height = im.size
            except (UnidentifiedImageError, OSError) as e:
                raise PostProcessingFailure(f"Could not read image for page {i}: {e}") from e
            page = out.new_page(width=width, height=height)
            try:
                page.insert_image(page.rect, stream=img_bytes)
            except (RuntimeError, ValueError) as e:
                raise PostProcessingFailure(f"Could not embed image for page {i}: {e}") from e
        if out.page_count == 0:
            raise PostProcessingFailure("No pages to assemble")
        return out.tobytes(deflate=True)
    finally:
        out.close()
