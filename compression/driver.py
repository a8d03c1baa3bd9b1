"""Progressive strategy driver.

Walks a fixed ladder of (shrink factor, quality floor) strategies from
least to most aggressive, running a quality search at each rung. The first
rung that meets the target wins; otherwise the smallest result seen is
refined once with a wider quality floor and returned as best effort.
"""

import threading

from PIL import Image

from compression.dimensions import plan_initial_dimensions, scale_dimensions
from compression.encoder import encode
from compression.quality_search import search_quality
from config import settings
from exceptions import EncodeError
from schemas import CompressionResult, EncodeOutcome, Strategy
from utils.concurrency import raise_if_cancelled
from utils.format_detect import OutputFormat
from utils.logging import get_logger

logger = get_logger("compression.driver")

STRATEGIES = (
    Strategy(width_factor=0.9, height_factor=0.9, min_quality=0.8),
    Strategy(width_factor=0.8, height_factor=0.8, min_quality=0.6),
    Strategy(width_factor=0.7, height_factor=0.7, min_quality=0.4),
    Strategy(width_factor=0.6, height_factor=0.6, min_quality=0.2),
)


def compress_to_target(
    pixels: Image.Image,
    original_width: int,
    original_height: int,
    target_byte_size: int,
    fmt: OutputFormat,
    strategies: tuple[Strategy, ...] = STRATEGIES,
    cancel: threading.Event | None = None,
) -> CompressionResult:
    """Compress to at most target_byte_size, or as close as possible.

    Encoder calls are bounded by
    1 + len(strategies) * (coarse_max_iterations + 2) + refine_max_iterations + 2.

    Raises:
        EncodeError: Only if every candidate failed to encode.
        CompressionCancelledError: cancel was set between encoder calls.
    """
    if target_byte_size <= 0:
        raise ValueError(f"Target must be positive, got {target_byte_size}")

    width, height = plan_initial_dimensions(original_width, original_height)
    calls = 0
    best: EncodeOutcome | None = None

    # Best case: high quality at the planned size already fits
    raise_if_cancelled(cancel)
    try:
        best = encode(pixels, width, height, settings.initial_quality, fmt)
        calls += 1
    except EncodeError as e:
        _log_skipped("initial", e)

    if best is not None and best.byte_size <= target_byte_size:
        return _build_result(best, target_byte_size, calls)

    met = False
    for index, strategy in enumerate(strategies):
        test_width, test_height = scale_dimensions(
            width, height, strategy.width_factor, strategy.height_factor
        )
        if test_width < settings.min_dimension or test_height < settings.min_dimension:
            logger.debug(
                f"Strategy {index} skipped: {test_width}x{test_height} below minimum",
            )
            continue

        try:
            search = search_quality(
                pixels,
                test_width,
                test_height,
                fmt,
                target_byte_size,
                min_quality=strategy.min_quality,
                max_quality=1.0,
                max_iterations=settings.coarse_max_iterations,
                threshold=settings.coarse_threshold,
                cancel=cancel,
            )
        except EncodeError as e:
            _log_skipped(f"strategy {index}", e)
            continue
        calls += search.encoder_calls

        if search.met:
            best = search.outcome
            met = True
            break

        if best is None or search.outcome.byte_size < best.byte_size:
            best = search.outcome

    if best is None:
        raise EncodeError(
            "All compression candidates failed",
            width=width,
            height=height,
            format=OutputFormat(fmt).value,
        )

    if not met:
        best, calls = _refine(pixels, best, target_byte_size, fmt, calls, cancel)

    return _build_result(best, target_byte_size, calls)


def _refine(
    pixels: Image.Image,
    best: EncodeOutcome,
    target_byte_size: int,
    fmt: OutputFormat,
    calls: int,
    cancel: threading.Event | None,
) -> tuple[EncodeOutcome, int]:
    """Second, finer search at the best-so-far dimensions.

    Works from the original pixels so no generational loss is added.
    """
    try:
        refined = search_quality(
            pixels,
            best.attempt.width,
            best.attempt.height,
            fmt,
            target_byte_size,
            min_quality=settings.refine_min_quality,
            max_quality=1.0,
            max_iterations=settings.refine_max_iterations,
            threshold=settings.refine_threshold,
            cancel=cancel,
        )
    except EncodeError as e:
        _log_skipped("refinement", e)
        return best, calls

    calls += refined.encoder_calls
    if refined.outcome.byte_size < best.byte_size:
        return refined.outcome, calls
    return best, calls


def _build_result(
    outcome: EncodeOutcome,
    target_byte_size: int,
    calls: int,
) -> CompressionResult:
    attempt = outcome.attempt
    result = CompressionResult(
        data=outcome.data,
        achieved_byte_size=outcome.byte_size,
        target_byte_size=target_byte_size,
        final_width=attempt.width,
        final_height=attempt.height,
        final_quality=attempt.quality,
        final_format=attempt.format,
        target_met=outcome.byte_size <= target_byte_size,
        encoder_calls=calls,
    )
    if not result.target_met:
        logger.info(
            "Target unreachable, returning best effort",
            extra={
                "context": {
                    "target": target_byte_size,
                    "achieved": outcome.byte_size,
                    "width": attempt.width,
                    "height": attempt.height,
                }
            },
        )
    return result


def _log_skipped(stage: str, error: EncodeError) -> None:
    logger.warning(
        f"Skipping {stage}: {error.message}",
        extra={"context": error.details},
    )
