"""
Coordinate conversion between model space and physical screen space.

The reasoning model sees a resized screenshot, so every coordinate it emits
is relative to that image. The backend captured at `scale_factor` of the
logical screen, which itself sits at `display_scale_factor` of the physical
pixels (HiDPI).
"""

import math
from typing import Sequence, Tuple


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_screen_coordinate(
    coordinate: Sequence[float],
    scale_factor: float,
    display_scale_factor: float = 1.0,
) -> Tuple[int, int]:
    """
    Map a model-space coordinate to a screen coordinate.

    Args:
        coordinate: (x, y) on the resized screenshot
        scale_factor: Resize ratio applied to the capture (resized / original)
        display_scale_factor: OS display scaling (e.g. 2.0 on Retina)

    Returns:
        (x, y) in screen space
    """
    x, y = coordinate[0], coordinate[1]
    ratio = scale_factor * display_scale_factor
    if ratio <= 0:
        raise ValueError(f"Invalid scale ratio: {ratio}")
    return (_round_half_up(x / ratio), _round_half_up(y / ratio))


def to_model_coordinate(
    coordinate: Sequence[float],
    scale_factor: float,
    display_scale_factor: float = 1.0,
) -> Tuple[int, int]:
    """Inverse of to_screen_coordinate."""
    x, y = coordinate[0], coordinate[1]
    ratio = scale_factor * display_scale_factor
    return (_round_half_up(x * ratio), _round_half_up(y * ratio))
