"""
Automation backend - capture, template matching and input primitives.

- base: backend contract and capture result
- actions: computer-use action decoding and dispatch
- template_match: OpenCV template matching with per-image error codes
- desktop: local desktop backend (mss, pyautogui, pynput)
"""

from uitest_agent.backend.base import AutomationBackend, CaptureResult
from uitest_agent.backend.actions import (
    ActionError,
    ActionExecutor,
    ActionResult,
    ActionType,
    ComputerAction,
    format_action_details,
)

__all__ = [
    "AutomationBackend",
    "CaptureResult",
    "ActionError",
    "ActionExecutor",
    "ActionResult",
    "ActionType",
    "ComputerAction",
    "format_action_details",
]
