"""Pick the output format by probing each candidate once at a capped size."""

import threading

from PIL import Image

from compression.encoder import encode
from config import settings
from exceptions import EncodeError
from utils.concurrency import raise_if_cancelled
from utils.format_detect import OutputFormat
from utils.logging import get_logger

logger = get_logger("compression.format_selector")

# First entry is the default: most broadly compatible
DEFAULT_CANDIDATES = (OutputFormat.JPEG, OutputFormat.WEBP)


def probe_dimensions(original_width: int, original_height: int) -> tuple[int, int]:
    """Probe resolution: each side capped independently."""
    return (
        min(original_width, settings.probe_max_width),
        min(original_height, settings.probe_max_height),
    )


def select_format(
    pixels: Image.Image,
    original_width: int,
    original_height: int,
    candidates: tuple[OutputFormat, ...] = DEFAULT_CANDIDATES,
    cancel: threading.Event | None = None,
) -> OutputFormat:
    """Return the candidate that compresses best at the probe settings.

    A challenger replaces the default (first) candidate only when its probe
    is smaller than dominance_ratio times the default's probe. Exactly one
    encode per candidate, always at the capped probe resolution.

    Raises:
        EncodeError: If every candidate's probe failed.
    """
    if not candidates:
        raise ValueError("No candidate formats given")
    if len(candidates) == 1:
        return candidates[0]

    width, height = probe_dimensions(original_width, original_height)
    sizes: dict[OutputFormat, int] = {}
    for fmt in candidates:
        raise_if_cancelled(cancel)
        try:
            outcome = encode(pixels, width, height, settings.probe_quality, fmt)
        except EncodeError as e:
            logger.warning(
                f"Format probe failed for {fmt.value}: {e.message}",
                extra={"context": {"format": fmt.value, **e.details}},
            )
            continue
        sizes[fmt] = outcome.byte_size

    if not sizes:
        raise EncodeError(
            "All format probes failed",
            candidates=[fmt.value for fmt in candidates],
        )

    default = candidates[0]
    if default not in sizes:
        return min(sizes, key=sizes.get)

    challengers = {fmt: size for fmt, size in sizes.items() if fmt != default}
    if not challengers:
        return default

    challenger = min(challengers, key=challengers.get)
    chosen = default
    if challengers[challenger] < sizes[default] * settings.dominance_ratio:
        chosen = challenger

    logger.debug(
        f"Selected {chosen.value}",
        extra={"context": {"probe_sizes": {f.value: s for f, s in sizes.items()}}},
    )
    return chosen
