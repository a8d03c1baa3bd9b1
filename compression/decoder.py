"""Source image decoding.

Turns uploaded bytes into a fully loaded Pillow image the encoder can
resample. Only the first frame of animated sources is kept.
"""

import io

from PIL import Image

from exceptions import DecodeError, UnsupportedFormatError
from utils.format_detect import ImageFormat, detect_format

# Modes that carry an alpha channel and must be kept as RGBA
_ALPHA_MODES = ("RGBA", "LA", "PA")

# Integer modes that hold 16-bit samples (16-bit PNG/TIFF grayscale)
_WIDE_INT_MODES = ("I", "I;16", "I;16L", "I;16B", "I;16N")

# Pillow raises a mix of these for corrupt or truncated input
_DECODE_ERRORS = (OSError, EOFError, ValueError, SyntaxError, Image.DecompressionBombError)


def decode_image(data: bytes) -> tuple[Image.Image, ImageFormat]:
    """Decode raw bytes into an RGB/RGBA image.

    Raises:
        DecodeError: If the bytes are not a decodable raster image.
    """
    try:
        fmt = detect_format(data)
    except UnsupportedFormatError as e:
        raise DecodeError(f"Cannot decode image: {e.message}", **e.details)

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except _DECODE_ERRORS as e:
        raise DecodeError(f"Cannot decode {fmt.value} image: {e}", format=fmt.value)

    return _normalize_mode(img), fmt


def read_dimensions(data: bytes) -> tuple[int, int]:
    """Read width/height from the image header without decoding pixels."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except _DECODE_ERRORS as e:
        raise DecodeError(f"Cannot read image dimensions: {e}")


def _normalize_mode(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in _WIDE_INT_MODES:
        # A plain convert clips at 255 instead of rescaling
        img = img.convert("I").point(lambda v: v * (1 / 256)).convert("L")
    if img.mode in _ALPHA_MODES or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")
