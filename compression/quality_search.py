"""Binary search over the quality axis at fixed dimensions."""

import threading

from PIL import Image
from pydantic import BaseModel

from compression.encoder import clamp_quality, encode, prepare_frame
from config import settings
from schemas import EncodeOutcome
from utils.concurrency import raise_if_cancelled
from utils.format_detect import OutputFormat
from utils.logging import get_logger

logger = get_logger("compression.quality_search")


class SearchOutcome(BaseModel):
    """Best outcome of one search plus bookkeeping."""

    model_config = {"frozen": True}

    outcome: EncodeOutcome
    met: bool
    encoder_calls: int


def search_quality(
    pixels: Image.Image,
    width: int,
    height: int,
    fmt: OutputFormat,
    target_byte_size: int,
    min_quality: float,
    max_quality: float = 1.0,
    max_iterations: int | None = None,
    threshold: float | None = None,
    cancel: threading.Event | None = None,
) -> SearchOutcome:
    """Find the highest quality whose encoded size fits the target.

    Pipeline:
    1. Encode once at max_quality. If it fits, nothing better exists.
       Formats without a quality knob stop here: every probe would be
       byte-identical.
    2. Bisect [min_quality, max_quality]: too large moves hi down, fitting
       moves lo up and becomes the current best.
    3. Stop when hi - lo < threshold or after max_iterations probes.
    4. If nothing fit, encode at min_quality so the best-effort answer is
       the floor itself, then return the smallest outcome observed.

    At most max_iterations + 2 encoder calls.

    Raises:
        EncodeError: Propagated from the encoder.
        CompressionCancelledError: cancel was set between encoder calls.
    """
    if max_iterations is None:
        max_iterations = settings.coarse_max_iterations
    if threshold is None:
        threshold = settings.coarse_threshold
    min_quality = min(max(min_quality, 0.0), 1.0)
    max_quality = min(max(max_quality, min_quality), 1.0)

    raise_if_cancelled(cancel)
    # Resample once, re-encode many times
    frame = prepare_frame(pixels, width, height, fmt)

    seed = encode(frame, width, height, max_quality, fmt)
    calls = 1
    if seed.byte_size <= target_byte_size:
        return SearchOutcome(outcome=seed, met=True, encoder_calls=calls)
    if clamp_quality(max_quality, fmt) is None:
        return SearchOutcome(outcome=seed, met=False, encoder_calls=calls)

    best: EncodeOutcome | None = None
    smallest = seed
    lo, hi = min_quality, max_quality
    iterations = 0

    while hi - lo >= threshold and iterations < max_iterations:
        raise_if_cancelled(cancel)
        mid = (lo + hi) / 2
        outcome = encode(frame, width, height, mid, fmt)
        calls += 1
        iterations += 1

        if outcome.byte_size > target_byte_size:
            hi = mid
        else:
            lo = mid
            best = outcome

        if outcome.byte_size < smallest.byte_size:
            smallest = outcome

    if best is None:
        raise_if_cancelled(cancel)
        floor = encode(frame, width, height, min_quality, fmt)
        calls += 1
        if floor.byte_size <= target_byte_size:
            best = floor
        elif floor.byte_size < smallest.byte_size:
            smallest = floor

    logger.debug(
        f"Quality search at {width}x{height} {fmt.value}: {calls} encodes",
        extra={
            "context": {
                "target": target_byte_size,
                "met": best is not None,
                "size": (best or smallest).byte_size,
                "quality": (best or smallest).attempt.quality,
            }
        },
    )

    if best is not None:
        return SearchOutcome(outcome=best, met=True, encoder_calls=calls)
    return SearchOutcome(outcome=smallest, met=False, encoder_calls=calls)
