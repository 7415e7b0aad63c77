import base64
import binascii
import io
import logging
from typing import Dict, Union

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("uvicorn.error")


def _size_kb(raw: bytes) -> int:
    return int(round(len(raw) / 1024))


def compress_image(
    content_base64: str, mime_type: str, max_width: int = 1568, quality: int = 85
) -> Dict[str, Union[str, int]]:
    """Downscale to ``max_width`` and re-encode as JPEG (WebP is left in its format).

    Returns the original payload unchanged when the bytes cannot be decoded as an image.
    """
    try:
        raw = base64.b64decode(content_base64)
    except (binascii.Error, ValueError):
        logger.warning("Image payload is not valid base64; sending as-is")
        return {"base64": content_base64, "size_kb": 0, "original_size_kb": 0, "mime_type": mime_type}
    original_kb = _size_kb(raw)
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            if img.width > max_width:
                ratio = max_width / float(img.width)
                img = img.resize((max_width, max(1, int(round(img.height * ratio)))), Image.LANCZOS)
            buf = io.BytesIO()
            if mime_type == "image/webp":
                img.save(buf, format="WEBP")
                out_mime = "image/webp"
            else:
                if img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                img.save(buf, format="JPEG", quality=quality, optimize=True)
                out_mime = "image/jpeg"
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Image compression failed, sending original: %s", exc)
        return {"base64": content_base64, "size_kb": original_kb, "original_size_kb": original_kb, "mime_type": mime_type}
    compressed = buf.getvalue()
    return {
        "base64": base64.b64encode(compressed).decode("ascii"),
        "size_kb": _size_kb(compressed),
        "original_size_kb": original_kb,
        "mime_type": out_mime,
    }


def estimate_image_tokens(content_base64: str) -> int:
    return int(round(len(content_base64) / 4))


def to_data_url(content_base64: str, mime_type: str) -> str:
    return f"data:{mime_type or 'image/jpeg'};base64,{content_base64}"
