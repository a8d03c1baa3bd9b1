"""In-memory encoder: one (width, height, quality, format) point -> bytes.

Quality is a float in [0, 1]. It is mapped onto Pillow's integer quality
scale for lossy formats and ignored for PNG.
"""

import io

from PIL import Image

from exceptions import EncodeError
from schemas import CandidateAttempt, EncodeOutcome
from utils.format_detect import OutputFormat

# Pillow quality range per format (None = no quality control)
QUALITY_RANGES: dict[OutputFormat, tuple[int, int] | None] = {
    OutputFormat.JPEG: (1, 100),
    OutputFormat.WEBP: (0, 100),
    OutputFormat.PNG: None,
}

JPEG_BACKGROUND = (255, 255, 255)


def clamp_quality(quality: float, fmt: OutputFormat) -> int | None:
    """Map a [0, 1] quality onto the format's Pillow quality scale."""
    bounds = QUALITY_RANGES[fmt]
    if bounds is None:
        return None
    low, high = bounds
    scaled = round(min(max(quality, 0.0), 1.0) * 100)
    return min(max(scaled, low), high)


def prepare_frame(
    pixels: Image.Image,
    width: int,
    height: int,
    fmt: OutputFormat,
) -> Image.Image:
    """Resample to (width, height) and convert to a mode the format accepts.

    Returns `pixels` unchanged when nothing needs to happen, so a frame
    prepared once can be re-encoded at many qualities cheaply.
    """
    if width < 1 or height < 1:
        raise EncodeError(
            f"Cannot rasterize at {width}x{height}",
            width=width,
            height=height,
        )

    frame = pixels
    if frame.size != (width, height):
        frame = frame.resize((width, height), Image.Resampling.LANCZOS)

    if fmt == OutputFormat.JPEG and frame.mode != "RGB":
        if frame.mode == "RGBA":
            background = Image.new("RGB", frame.size, JPEG_BACKGROUND)
            background.paste(frame, mask=frame.getchannel("A"))
            frame = background
        else:
            frame = frame.convert("RGB")
    elif frame.mode not in ("RGB", "RGBA"):
        frame = frame.convert("RGB")

    return frame


def encode(
    pixels: Image.Image,
    width: int,
    height: int,
    quality: float,
    fmt: OutputFormat,
) -> EncodeOutcome:
    """Encode `pixels` at the given dimensions, quality and format.

    Raises:
        EncodeError: On non-positive dimensions, unknown format, or a
            Pillow failure.
    """
    try:
        fmt = OutputFormat(fmt)
    except ValueError:
        raise EncodeError(f"Unsupported output format: {fmt}", format=str(fmt))

    frame = prepare_frame(pixels, width, height, fmt)
    pillow_quality = clamp_quality(quality, fmt)

    save_kwargs: dict = {"format": fmt.value.upper()}
    if fmt == OutputFormat.JPEG:
        save_kwargs["quality"] = pillow_quality
        save_kwargs["optimize"] = True
    elif fmt == OutputFormat.WEBP:
        save_kwargs["quality"] = pillow_quality
        save_kwargs["method"] = 4  # Good compression, 2-3x faster than method=6
    else:
        save_kwargs["optimize"] = True

    buf = io.BytesIO()
    try:
        frame.save(buf, **save_kwargs)
    except (OSError, ValueError) as e:
        raise EncodeError(
            f"{fmt.value} encode failed at {width}x{height}: {e}",
            format=fmt.value,
            width=width,
            height=height,
        )

    data = buf.getvalue()
    # Record the quality actually used, not the requested one
    effective_quality = 1.0 if pillow_quality is None else pillow_quality / 100
    return EncodeOutcome(
        attempt=CandidateAttempt(
            width=width,
            height=height,
            quality=effective_quality,
            format=fmt,
        ),
        data=data,
        byte_size=len(data),
    )
