import base64
import io

from PIL import Image

from research_agent.image_utils import compress_image, estimate_image_tokens, to_data_url
from tests.fakes import png_base64


def _decode(b64):
    return Image.open(io.BytesIO(base64.b64decode(b64)))


def test_large_png_is_downscaled_to_jpeg():
    result = compress_image(png_base64(3000, 1500), "image/png", max_width=1568, quality=80)
    assert result["mime_type"] == "image/jpeg"
    img = _decode(result["base64"])
    assert img.format == "JPEG"
    assert img.size == (1568, 784)


def test_small_image_keeps_dimensions():
    result = compress_image(png_base64(100, 40), "image/png")
    assert _decode(result["base64"]).size == (100, 40)


def test_webp_stays_webp():
    buf = io.BytesIO()
    Image.new("RGB", (2000, 100), (0, 80, 160)).save(buf, format="WEBP")
    source = base64.b64encode(buf.getvalue()).decode("ascii")
    result = compress_image(source, "image/webp", max_width=500)
    assert result["mime_type"] == "image/webp"
    assert _decode(result["base64"]).size == (500, 25)


def test_rgba_is_flattened_for_jpeg():
    buf = io.BytesIO()
    Image.new("RGBA", (20, 20), (10, 20, 30, 128)).save(buf, format="PNG")
    result = compress_image(base64.b64encode(buf.getvalue()).decode("ascii"), "image/png")
    assert _decode(result["base64"]).mode == "RGB"


def test_undecodable_bytes_are_returned_unchanged():
    garbage = base64.b64encode(b"not an image at all").decode("ascii")
    result = compress_image(garbage, "image/png")
    assert result["base64"] == garbage
    assert result["mime_type"] == "image/png"


def test_token_estimate_and_data_url():
    assert estimate_image_tokens("A" * 400) == 100
    assert to_data_url("QUJD", "image/png") == "data:image/png;base64,QUJD"
    assert to_data_url("QUJD", "") == "data:image/jpeg;base64,QUJD"
