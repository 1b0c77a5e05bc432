"""
Automation backend contract.

The loop never touches the OS directly: screen capture, input injection and
template matching all go through an object satisfying AutomationBackend.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, runtime_checkable


@dataclass
class CaptureResult:
    """One screenshot as handed to the reasoning model."""

    image_base64: str  # PNG
    original_width: int
    original_height: int
    resized_width: int
    resized_height: int
    scale_factor: float  # resized / original
    display_scale_factor: float = 1.0
    monitor_id: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureResult":
        """Parse the backend's camelCase capture response."""
        return cls(
            image_base64=data.get("imageBase64") or data["image"],
            original_width=int(data["originalWidth"]),
            original_height=int(data["originalHeight"]),
            resized_width=int(data["resizedWidth"]),
            resized_height=int(data["resizedHeight"]),
            scale_factor=float(data["scaleFactor"]),
            display_scale_factor=float(data.get("displayScaleFactor", 1.0)),
            monitor_id=int(data.get("monitorId", 0)),
        )


@runtime_checkable
class AutomationBackend(Protocol):
    """Screen capture, template matching and input primitives."""

    async def capture_screen(self) -> CaptureResult: ...

    async def match_hint_images(
        self,
        screenshot: str,
        template_images: List[Dict[str, str]],
        scale_factor: float,
        confidence_threshold: float,
    ) -> List[Dict[str, Any]]:
        """
        Locate templates in a screenshot.

        Args:
            screenshot: Base64 screenshot (already resized)
            template_images: [{"imageData": ..., "fileName": ...}] in request order
            scale_factor: Resize ratio to apply to templates
            confidence_threshold: Minimum score for found=True

        Returns:
            [{"index", "fileName", "matchResult": {...}}], one per template, same order
        """
        ...

    async def is_stop_requested(self) -> bool: ...

    async def mouse_move(self, x: int, y: int) -> None: ...

    async def left_click(self, x: int, y: int) -> None: ...

    async def right_click(self, x: int, y: int) -> None: ...

    async def middle_click(self, x: int, y: int) -> None: ...

    async def double_click(self, x: int, y: int) -> None: ...

    async def triple_click(self, x: int, y: int) -> None: ...

    async def left_click_drag(self, start_x: int, start_y: int, end_x: int, end_y: int) -> None: ...

    async def left_mouse_down(self) -> None: ...

    async def left_mouse_up(self) -> None: ...

    async def scroll(self, x: int, y: int, direction: str, amount: int) -> None: ...

    async def type_text(self, text: str) -> None: ...

    async def key(self, keys: str) -> None: ...

    async def hold_key(self, key: str, hold: bool) -> None: ...
