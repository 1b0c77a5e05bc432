"""
Screen change detection.

Compares consecutive screenshots on a small grayscale grid so that cursor
blink, clock ticks and compression jitter do not count as progress.
"""

import base64
import binascii
import hashlib
import io
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from uitest_agent.config import ScreenChangeConfig
from uitest_agent.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ScreenChange:
    """Difference between two screenshots."""

    changed: bool
    diff_ratio: float
    is_noise: bool

    @property
    def significant(self) -> bool:
        """Changed enough to invalidate cached coordinates."""
        return self.changed and not self.is_noise


def hash_screenshot(image_base64: str) -> str:
    """
    Content hash of a screenshot payload.

    Uses MD5 for speed - not cryptographic use.
    """
    return hashlib.md5(image_base64.encode("ascii", errors="ignore")).hexdigest()


class ScreenshotComparer:
    """
    Perceptual comparison of base64 screenshots.

    Both images are decoded, converted to grayscale and resized to a fixed
    grid; the diff ratio is the share of grid cells whose brightness moved
    by more than `pixel_tolerance`.
    """

    def __init__(self, config: Optional[ScreenChangeConfig] = None):
        self.config = config or ScreenChangeConfig()

    def _to_grid(self, image_base64: str) -> np.ndarray:
        raw = base64.b64decode(image_base64, validate=False)
        with Image.open(io.BytesIO(raw)) as img:
            gray = img.convert("L").resize(
                (self.config.sample_width, self.config.sample_height),
                Image.Resampling.BILINEAR,
            )
            return np.asarray(gray, dtype=np.int16)

    def diff_ratio(self, previous_base64: str, current_base64: str) -> float:
        """
        Fraction of sampled pixels that differ.

        Falls back to an exact content comparison when either payload
        cannot be decoded as an image.
        """
        if hash_screenshot(previous_base64) == hash_screenshot(current_base64):
            return 0.0

        try:
            before = self._to_grid(previous_base64)
            after = self._to_grid(current_base64)
        except (binascii.Error, UnidentifiedImageError, OSError, ValueError) as e:
            logger.debug("Screenshot decode failed, using hash comparison", error=str(e))
            return 1.0

        changed = np.abs(after - before) > self.config.pixel_tolerance
        return float(np.count_nonzero(changed)) / changed.size

    def compare(self, previous_base64: str, current_base64: str) -> ScreenChange:
        """
        Classify the change between two screenshots.

        Args:
            previous_base64: Earlier screenshot
            current_base64: Newer screenshot

        Returns:
            ScreenChange with the ratio and its classification
        """
        ratio = self.diff_ratio(previous_base64, current_base64)
        changed = ratio >= self.config.min_diff_ratio
        is_noise = 0.0 < ratio <= self.config.noise_threshold
        return ScreenChange(changed=changed, diff_ratio=ratio, is_noise=is_noise)
