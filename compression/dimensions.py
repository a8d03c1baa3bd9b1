import math

from config import settings


def plan_initial_dimensions(
    original_width: int,
    original_height: int,
    max_dimension: int | None = None,
) -> tuple[int, int]:
    """Fit the image inside a max_dimension square, preserving aspect ratio.

    Only downscales. The longer side becomes exactly max_dimension and the
    shorter side is rounded half up.
    """
    if max_dimension is None:
        max_dimension = settings.max_dimension
    if original_width <= 0 or original_height <= 0:
        raise ValueError(f"Invalid dimensions {original_width}x{original_height}")

    if original_width <= max_dimension and original_height <= max_dimension:
        return original_width, original_height

    if original_width > original_height:
        short = _round_half_up(max_dimension * original_height / original_width)
        return max_dimension, max(1, short)
    short = _round_half_up(max_dimension * original_width / original_height)
    return max(1, short), max_dimension


def scale_dimensions(
    width: int,
    height: int,
    width_factor: float,
    height_factor: float,
) -> tuple[int, int]:
    """Apply shrink factors to a base size (rounded, never cumulative)."""
    return _round_half_up(width * width_factor), _round_half_up(height * height_factor)


def _round_half_up(value: float) -> int:
    # Builtin round() goes to even on .5
    return math.floor(value + 0.5)
