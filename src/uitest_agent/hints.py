"""
Hint image matching and re-match policy.

Hint images are located on every screenshot through the backend's template
matcher. Which images get resubmitted depends on the previous outcome:

- no previous result, or not found without error: always retried
- permanent error (degenerate confidence, too transparent): never retried
- transient error (decode failure, template larger than screen) or found:
  retried only when the screen changed significantly

Requests and results are paired strictly by position because several hint
images may share a file name.
"""

import base64
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from uitest_agent.backend.base import AutomationBackend, CaptureResult
from uitest_agent.config import HintConfig
from uitest_agent.logging import get_logger
from uitest_agent.state import HintImage, HintMatchResult, MatchErrorCode

logger = get_logger(__name__)

ALLOWED_MIME_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/gif",
    "image/webp",
})

PERMANENT_ERROR_CODES = frozenset({
    MatchErrorCode.NON_FINITE_CONFIDENCE,
    MatchErrorCode.INSUFFICIENT_OPACITY,
})

# Used only when the backend reports an error string without a code
PERMANENT_ERROR_MARKERS = (
    "non-finite",
    "insufficient opacity",
    "insufficient variance",
)


class MatchErrorClass(str, Enum):
    """Retry classification of a match result."""

    NONE = "none"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_match_error(result: HintMatchResult) -> MatchErrorClass:
    """
    Classify a match result for the retry policy.

    Args:
        result: Previous match result

    Returns:
        NONE for clean results, otherwise TRANSIENT or PERMANENT
    """
    if result.error_code in PERMANENT_ERROR_CODES:
        return MatchErrorClass.PERMANENT
    if not result.has_finite_confidence:
        return MatchErrorClass.PERMANENT
    if result.error_code is not None:
        return MatchErrorClass.TRANSIENT
    if result.error:
        message = result.error.lower()
        if any(marker in message for marker in PERMANENT_ERROR_MARKERS):
            return MatchErrorClass.PERMANENT
        return MatchErrorClass.TRANSIENT
    return MatchErrorClass.NONE


def is_rematch_candidate(previous: Optional[HintMatchResult], screen_changed: bool) -> bool:
    """
    Decide whether an image is resubmitted this iteration.

    Args:
        previous: Last known result (None if unknown)
        screen_changed: Significant screen change detected this iteration
    """
    if previous is None:
        return True

    error_class = classify_match_error(previous)
    if error_class == MatchErrorClass.PERMANENT:
        return False
    if error_class == MatchErrorClass.TRANSIENT:
        return screen_changed
    if previous.found:
        return screen_changed
    return True


@dataclass
class MatchRound:
    """What happened to hint matching in one iteration."""

    candidates: List[int] = field(default_factory=list)
    attempted: bool = False
    failed: bool = False
    newly_found: List[int] = field(default_factory=list)

    @property
    def has_updates(self) -> bool:
        return self.attempted and not self.failed and bool(self.newly_found)


class HintImageMatcher:
    """
    Per-run hint image state and re-match driver.

    Results are kept per image position; images that are not resubmitted
    keep their last result, coordinates included.
    """

    def __init__(
        self,
        backend: AutomationBackend,
        hint_images: Sequence[HintImage],
        confidence_threshold: float = 0.7,
    ):
        """
        Initialize matcher.

        Args:
            backend: Backend exposing match_hint_images
            hint_images: Hint images in display order
            confidence_threshold: Minimum score for a match
        """
        self.backend = backend
        self.hint_images = list(hint_images)
        self.confidence_threshold = confidence_threshold
        self.results: List[Optional[HintMatchResult]] = [None] * len(self.hint_images)

    def select_candidates(self, screen_changed: bool) -> List[int]:
        """Positions of images to submit this iteration, in original order."""
        return [
            i for i, previous in enumerate(self.results)
            if is_rematch_candidate(previous, screen_changed)
        ]

    async def rematch(self, capture: CaptureResult, screen_changed: bool) -> MatchRound:
        """
        Run one matching round against the current screenshot.

        At most one backend call is made. A failing call clears the
        submitted images back to unknown and never raises.

        Args:
            capture: Current screenshot
            screen_changed: Significant change since the previous screenshot

        Returns:
            MatchRound describing the call
        """
        candidates = self.select_candidates(screen_changed)
        match_round = MatchRound(candidates=candidates)
        if not candidates:
            return match_round

        request = [
            {
                "imageData": self.hint_images[i].image_data,
                "fileName": self.hint_images[i].file_name,
            }
            for i in candidates
        ]
        match_round.attempted = True

        try:
            raw_results = await self.backend.match_hint_images(
                capture.image_base64,
                request,
                capture.scale_factor,
                self.confidence_threshold,
            )
        except Exception as e:
            logger.warning(
                "Hint matching failed, continuing without coordinates",
                error=str(e),
                candidates=len(candidates),
            )
            for i in candidates:
                self.results[i] = None
            match_round.failed = True
            return match_round

        if len(raw_results) != len(candidates):
            logger.warning(
                "Hint match result count mismatch",
                requested=len(candidates),
                received=len(raw_results),
            )

        for position, i in enumerate(candidates):
            if position >= len(raw_results):
                self.results[i] = None
                continue
            entry = raw_results[position] or {}
            result = HintMatchResult.from_dict(entry.get("matchResult") or {})
            self.results[i] = result
            if result.error:
                logger.info(
                    "Hint match error",
                    image=i + 1,
                    file_name=self.hint_images[i].file_name,
                    error=result.error,
                    error_class=classify_match_error(result).value,
                )
            elif result.found and result.center is not None:
                match_round.newly_found.append(i)

        logger.info(
            "Hint matching completed",
            submitted=len(candidates),
            found=len(match_round.newly_found),
            errors=sum(1 for i in candidates if self.results[i] and self.results[i].error),
        )
        return match_round

    def located(self) -> List[Tuple[int, HintImage, HintMatchResult]]:
        """Images with a usable location, in original order."""
        located = []
        for i, result in enumerate(self.results):
            if result and result.found and not result.error and result.center is not None:
                located.append((i, self.hint_images[i], result))
        return located

    def coordinates_text(self) -> str:
        """
        Summary of every located image in original order.

        e.g. "image1(btn.png): 200,150 / image3(ok.png): 10,20"
        """
        entries = [
            f"image{i + 1}({image.file_name}): {result.center_x},{result.center_y}"
            for i, image, result in self.located()
        ]
        return " / ".join(entries)


@dataclass
class HintValidationResult:
    """Outcome of hint image validation."""

    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_hint_images(
    images: Sequence[HintImage],
    config: Optional[HintConfig] = None,
) -> HintValidationResult:
    """
    Check hint images against type, size and count limits.

    Sizes are estimated from the base64 length.
    """
    config = config or HintConfig()
    errors: List[str] = []

    if len(images) > config.max_image_count:
        errors.append(f"Too many hint images: {len(images)} (max {config.max_image_count})")

    total = 0
    for image in images:
        if image.mime_type.lower() not in ALLOWED_MIME_TYPES:
            errors.append(f"{image.file_name}: unsupported type {image.mime_type}")
        size = image.estimated_size
        if size > config.max_file_size_bytes:
            errors.append(
                f"{image.file_name}: {size} bytes exceeds {config.max_file_size_bytes} bytes"
            )
        total += size

    if total > config.max_total_size_bytes:
        errors.append(f"Total hint image size {total} bytes exceeds {config.max_total_size_bytes} bytes")

    return HintValidationResult(valid=not errors, errors=errors)


def trim_hint_images_to_limit(
    images: Sequence[HintImage],
    config: Optional[HintConfig] = None,
) -> Tuple[List[HintImage], int]:
    """
    Keep images in order until a count or size limit would be exceeded.

    Returns:
        (kept images, number dropped)
    """
    config = config or HintConfig()
    kept: List[HintImage] = []
    total = 0

    for image in sorted(images, key=lambda img: img.order_index):
        size = image.estimated_size
        if image.mime_type.lower() not in ALLOWED_MIME_TYPES or size > config.max_file_size_bytes:
            continue
        if len(kept) >= config.max_image_count or total + size > config.max_total_size_bytes:
            break
        kept.append(image)
        total += size

    dropped = len(images) - len(kept)
    if dropped:
        logger.warning("Hint images trimmed to limits", kept=len(kept), dropped=dropped)
    return kept, dropped


def load_hint_image(path: Path, scenario_id: str, order_index: int = 0) -> HintImage:
    """Read an image file into a HintImage."""
    mime_type, _ = mimetypes.guess_type(path.name)
    return HintImage(
        id=f"{scenario_id}-hint-{order_index + 1}",
        scenario_id=scenario_id,
        image_data=base64.b64encode(path.read_bytes()).decode("ascii"),
        mime_type=mime_type or "application/octet-stream",
        file_name=path.name,
        order_index=order_index,
    )
