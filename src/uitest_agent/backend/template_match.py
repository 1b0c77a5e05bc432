"""
Template matching for hint images.

Uses OpenCV normalized cross-correlation to locate hint images on the
(already resized) screenshot. Every template gets its own result entry, in
request order; per-template problems are reported as error codes instead of
failing the whole batch.
"""

import base64
import binascii
import io
import math
from typing import Any, Dict, List, Optional, Sequence

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from uitest_agent.logging import get_logger
from uitest_agent.state import HintMatchResult, MatchErrorCode

logger = get_logger(__name__)

# Templates whose mean alpha is below this carry too little signal to match
MIN_OPACITY = 0.1

# Below this pixel standard deviation a template is flat and cannot be localised
MIN_TEMPLATE_STDDEV = 1e-6


class TemplateDecodeError(Exception):
    """A screenshot or template could not be turned into pixels."""

    def __init__(self, message: str, code: MatchErrorCode):
        super().__init__(message)
        self.code = code


def _decode_base64(data: str, code: MatchErrorCode) -> bytes:
    if "," in data and data.lstrip().startswith("data:"):
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TemplateDecodeError(f"Invalid base64 data: {e}", code) from e


def _open_image(raw: bytes, code: MatchErrorCode) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise TemplateDecodeError(f"Cannot decode image: {e}", code) from e
    return image


def decode_screenshot(image_base64: str) -> np.ndarray:
    """Base64 screenshot to a grayscale array."""
    raw = _decode_base64(image_base64, MatchErrorCode.SCREENSHOT_DECODE_ERROR)
    image = _open_image(raw, MatchErrorCode.SCREENSHOT_DECODE_ERROR)
    return np.asarray(image.convert("L"), dtype=np.uint8)


def decode_template(image_base64: str, scale_factor: float = 1.0) -> Dict[str, Any]:
    """
    Base64 template to a grayscale array on the screenshot's scale.

    Transparent pixels are composited onto white.

    Returns:
        {"gray": ndarray, "opacity": mean alpha in [0, 1]}
    """
    raw = _decode_base64(image_base64, MatchErrorCode.TEMPLATE_BASE64_DECODE_ERROR)
    image = _open_image(raw, MatchErrorCode.TEMPLATE_IMAGE_DECODE_ERROR).convert("RGBA")

    if 0 < scale_factor < 1:
        width = max(1, round(image.width * scale_factor))
        height = max(1, round(image.height * scale_factor))
        image = image.resize((width, height), Image.Resampling.LANCZOS)

    alpha = np.asarray(image.getchannel("A"), dtype=np.float32) / 255.0
    background = Image.new("RGBA", image.size, (255, 255, 255, 255))
    flattened = Image.alpha_composite(background, image).convert("L")
    return {
        "gray": np.asarray(flattened, dtype=np.uint8),
        "opacity": float(alpha.mean()) if alpha.size else 0.0,
    }


def match_template(
    screenshot: np.ndarray,
    template: np.ndarray,
    threshold: float,
) -> HintMatchResult:
    """
    Best match of one template in one screenshot.

    Coordinates are the match centre in screenshot pixels.
    """
    height, width = template.shape[:2]
    if height > screenshot.shape[0] or width > screenshot.shape[1]:
        return HintMatchResult(
            found=False,
            template_width=width,
            template_height=height,
            error=(
                f"Template {width}x{height} larger than screenshot "
                f"{screenshot.shape[1]}x{screenshot.shape[0]}"
            ),
            error_code=MatchErrorCode.TEMPLATE_TOO_LARGE,
        )

    # TM_CCOEFF_NORMED scores a flat template as a perfect match anywhere
    if float(template.std()) < MIN_TEMPLATE_STDDEV:
        return HintMatchResult(
            found=False,
            template_width=width,
            template_height=height,
            error="Template has insufficient variance (single colour)",
            error_code=MatchErrorCode.NON_FINITE_CONFIDENCE,
        )

    scores = cv2.matchTemplate(screenshot, template, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(scores)
    confidence = float(max_val)

    if not math.isfinite(confidence):
        return HintMatchResult(
            found=False,
            confidence=confidence,
            template_width=width,
            template_height=height,
            error="Match score is not finite (template has no contrast)",
            error_code=MatchErrorCode.NON_FINITE_CONFIDENCE,
        )

    if confidence < threshold:
        return HintMatchResult(
            found=False,
            confidence=confidence,
            template_width=width,
            template_height=height,
        )

    return HintMatchResult(
        found=True,
        center_x=max_loc[0] + width // 2,
        center_y=max_loc[1] + height // 2,
        confidence=confidence,
        template_width=width,
        template_height=height,
    )


def match_templates(
    screenshot_base64: str,
    templates: Sequence[Dict[str, str]],
    scale_factor: float = 1.0,
    threshold: float = 0.7,
) -> List[Dict[str, Any]]:
    """
    Match a batch of templates against one screenshot.

    Args:
        screenshot_base64: Resized screenshot
        templates: [{"imageData": ..., "fileName": ...}] in request order
        scale_factor: Resize ratio applied to the screenshot
        threshold: Minimum confidence for found=True

    Returns:
        [{"fileName": ..., "matchResult": {...}}], one per template, same order
    """
    screenshot: Optional[np.ndarray] = None
    screenshot_error: Optional[TemplateDecodeError] = None
    try:
        screenshot = decode_screenshot(screenshot_base64)
    except TemplateDecodeError as e:
        logger.warning("Screenshot decode failed", error=str(e))
        screenshot_error = e

    results = []
    for template in templates:
        file_name = template.get("fileName", "")
        if screenshot is None:
            result = HintMatchResult(
                found=False,
                error=str(screenshot_error),
                error_code=screenshot_error.code,
            )
        else:
            result = _match_one(screenshot, template.get("imageData", ""), scale_factor, threshold)
        logger.debug(
            "Template matched",
            file_name=file_name,
            found=result.found,
            confidence=result.confidence,
            error_code=result.error_code.value if result.error_code else None,
        )
        results.append({"fileName": file_name, "matchResult": result.to_dict()})
    return results


def _match_one(
    screenshot: np.ndarray,
    image_base64: str,
    scale_factor: float,
    threshold: float,
) -> HintMatchResult:
    try:
        decoded = decode_template(image_base64, scale_factor)
    except TemplateDecodeError as e:
        return HintMatchResult(found=False, error=str(e), error_code=e.code)

    gray = decoded["gray"]
    if decoded["opacity"] < MIN_OPACITY:
        return HintMatchResult(
            found=False,
            template_width=gray.shape[1],
            template_height=gray.shape[0],
            error=f"Template is almost fully transparent (opacity {decoded['opacity']:.2f})",
            error_code=MatchErrorCode.INSUFFICIENT_OPACITY,
        )
    return match_template(screenshot, gray, threshold)
