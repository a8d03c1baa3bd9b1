from enum import Enum

from exceptions import UnsupportedFormatError


class ImageFormat(str, Enum):
    """Raster formats accepted as compression sources."""

    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"
    GIF = "gif"
    TIFF = "tiff"
    BMP = "bmp"


class OutputFormat(str, Enum):
    """Formats the encoder can produce."""

    JPEG = "jpeg"
    WEBP = "webp"
    PNG = "png"


# MIME type mapping for encoder output
MIME_TYPES = {
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.WEBP: "image/webp",
    OutputFormat.PNG: "image/png",
}


def detect_format(data: bytes) -> ImageFormat:
    """Detect image format from magic bytes.

    Never trusts file extensions or Content-Type headers.

    Args:
        data: Raw image bytes (at least first 12 bytes needed).

    Returns:
        ImageFormat enum value.

    Raises:
        UnsupportedFormatError: If no known raster format matches.
    """
    if len(data) < 4:
        raise UnsupportedFormatError("File too small to identify format")

    # PNG: \x89PNG\r\n\x1a\n
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return ImageFormat.PNG

    # JPEG: \xFF\xD8\xFF
    if data[:3] == b"\xff\xd8\xff":
        return ImageFormat.JPEG

    # GIF: GIF87a or GIF89a
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return ImageFormat.GIF

    # WebP: RIFF....WEBP
    if data[:4] == b"RIFF" and len(data) >= 12 and data[8:12] == b"WEBP":
        return ImageFormat.WEBP

    # BMP: BM
    if data[:2] == b"BM":
        return ImageFormat.BMP

    # TIFF: II*\x00 (little-endian) or MM\x00* (big-endian)
    if data[:4] in (b"II\x2a\x00", b"MM\x00\x2a"):
        return ImageFormat.TIFF

    raise UnsupportedFormatError(
        "Unrecognized file format",
        detected_bytes=data[:16].hex(),
    )


def parse_output_format(value: str | None) -> OutputFormat | None:
    """Parse a user-supplied output format name ("jpg" accepted as JPEG).

    Returns None for empty values and "auto".
    """
    if not value:
        return None
    name = value.strip().lower()
    if name == "auto":
        return None
    if name == "jpg":
        name = "jpeg"
    try:
        return OutputFormat(name)
    except ValueError:
        raise UnsupportedFormatError(
            f"Unsupported output format: {value}",
            supported=[f.value for f in OutputFormat],
        )
