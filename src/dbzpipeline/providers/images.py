"""Image encoding for providers that receive pictures inline."""
from __future__ import annotations

import base64
import io
from pathlib import Path

from PIL import Image

DEFAULT_MAX_EDGE = 1600


def compress_image(src: Path, max_edge: int = DEFAULT_MAX_EDGE) -> bytes:
    """Downscale ``src`` so its longest edge is ``max_edge`` and return WEBP bytes."""

    with Image.open(src) as img:
        img = img.convert("RGB") if img.mode in {"P", "RGBA", "LA", "L"} else img
        width, height = img.size
        scale = max(width, height)
        if scale > max_edge:
            ratio = max_edge / float(scale)
            img = img.resize((int(width * ratio), int(height * ratio)), Image.LANCZOS)
        buffer = io.BytesIO()
        img.save(buffer, format="WEBP", quality=85)
    return buffer.getvalue()


def encode_image_base64(src: Path, max_edge: int = DEFAULT_MAX_EDGE) -> str:
    return base64.b64encode(compress_image(src, max_edge)).decode("utf-8")


def image_data_url(src: Path, max_edge: int = DEFAULT_MAX_EDGE) -> str:
    return f"data:image/webp;base64,{encode_image_base64(src, max_edge)}"
