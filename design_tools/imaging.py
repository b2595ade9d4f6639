import base64
import binascii
import io
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from .errors import PostProcessingFailure, ValidationError


# Upscaling above this is too expensive to run automatically.
MAX_WIDTH_FOR_UPSCALE = 2048
MAX_HEIGHT_FOR_UPSCALE = 2048
MAX_MEGAPIXELS_FOR_UPSCALE = 4


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int

    @property
    def megapixels(self) -> float:
        return self.width * self.height / 1_000_000

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}


def image_dimensions(img_bytes: bytes) -> Dimensions:
    try:
        with Image.open(io.BytesIO(img_bytes)) as im:
            w, h = im.size
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not read image: {e}") from e
    return Dimensions(width=w, height=h)


def fits_upscale_limits(dims: Dimensions) -> bool:
    return (
        dims.width <= MAX_WIDTH_FOR_UPSCALE
        and dims.height <= MAX_HEIGHT_FOR_UPSCALE
        and dims.megapixels <= MAX_MEGAPIXELS_FOR_UPSCALE
    )


def to_data_url(img_bytes: bytes, media_type: str) -> str:
    b64 = base64.b64encode(img_bytes).decode("ascii")
    return f"data:{media_type};base64,{b64}"


def from_data_url(data_url: str) -> Tuple[bytes, str]:
    """
    Returns (bytes, media_type) for a base64 data URL.
    """
    if not data_url.startswith("data:") or "," not in data_url:
        raise ValueError("not a data URL")
    header, payload = data_url.split(",", 1)
    media_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
    if ";base64" not in header:
        raise ValueError("only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True), media_type
    except binascii.Error as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


async def fetch_image_bytes(url: str, *, timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None) -> Tuple[bytes, str]:
    if url.startswith("data:"):
        return from_data_url(url)
    if client is not None:
        r = await client.get(url, headers={"Accept": "image/*"}, follow_redirects=True)
    else:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as c:
            r = await c.get(url, headers={"Accept": "image/*"})
    r.raise_for_status()
    media_type = r.headers.get("content-type", "image/png").split(";")[0].strip() or "image/png"
    return r.content, media_type


def resize_contain(img_bytes: bytes, target: Dimensions) -> bytes:
    """
    Fit the image inside `target` keeping its aspect ratio, centred on a
    transparent canvas of exactly `target` size. Returns PNG bytes.
    """
    try:
        with Image.open(io.BytesIO(img_bytes)) as im:
            im = im.convert("RGBA")
            scale = min(target.width / im.width, target.height / im.height)
            w = max(1, round(im.width * scale))
            h = max(1, round(im.height * scale))
            resized = im.resize((w, h), Image.LANCZOS)
    except (UnidentifiedImageError, OSError, ZeroDivisionError) as e:
        raise PostProcessingFailure(f"Could not resize image: {e}") from e

    canvas = Image.new("RGBA", (target.width, target.height), (0, 0, 0, 0))
    canvas.paste(resized, ((target.width - w) // 2, (target.height - h) // 2))
    out = io.BytesIO()
    canvas.save(out, format="PNG", optimize=True)
    return out.getvalue()
