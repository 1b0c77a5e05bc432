"""
Computer-use action decoding and dispatch.

Turns the reasoning model's tool input into backend primitive calls, with
coordinates converted from model space to screen space.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from uitest_agent.backend.base import AutomationBackend, CaptureResult
from uitest_agent.coordinates import to_screen_coordinate
from uitest_agent.logging import get_logger

logger = get_logger(__name__)


class ActionType(str, Enum):
    """Actions of the computer-use tool."""

    KEY = "key"
    TYPE = "type"
    MOUSE_MOVE = "mouse_move"
    LEFT_CLICK = "left_click"
    LEFT_CLICK_DRAG = "left_click_drag"
    RIGHT_CLICK = "right_click"
    MIDDLE_CLICK = "middle_click"
    DOUBLE_CLICK = "double_click"
    TRIPLE_CLICK = "triple_click"
    LEFT_MOUSE_DOWN = "left_mouse_down"
    LEFT_MOUSE_UP = "left_mouse_up"
    SCROLL = "scroll"
    HOLD_KEY = "hold_key"
    WAIT = "wait"
    SCREENSHOT = "screenshot"
    ZOOM = "zoom"


CLICK_ACTIONS = frozenset({
    ActionType.LEFT_CLICK,
    ActionType.RIGHT_CLICK,
    ActionType.MIDDLE_CLICK,
    ActionType.DOUBLE_CLICK,
    ActionType.TRIPLE_CLICK,
})

# Actions that are not expected to move the UI forward on their own
NON_PROGRESSIVE_ACTIONS = frozenset({
    ActionType.WAIT,
    ActionType.SCREENSHOT,
    ActionType.MOUSE_MOVE,
    ActionType.SCROLL,
})

# Actions whose effect is often a focus ring or caret only
SUBTLE_CHANGE_ACTIONS = frozenset({
    ActionType.LEFT_CLICK,
    ActionType.TRIPLE_CLICK,
})

MAX_DESCRIPTION_TEXT = 50


class ActionError(Exception):
    """Raised for tool input that cannot be dispatched."""


# Required parameters per action, checked before anything reaches the backend
POINTER_ACTIONS = CLICK_ACTIONS | {ActionType.MOUSE_MOVE, ActionType.SCROLL}
TEXT_ACTIONS = frozenset({ActionType.TYPE, ActionType.KEY, ActionType.HOLD_KEY})


def _as_point(value: Any) -> Optional[Tuple[int, int]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ActionError(f"Invalid coordinate: {value!r}")
    try:
        return (int(value[0]), int(value[1]))
    except (TypeError, ValueError, OverflowError) as e:
        raise ActionError(f"Invalid coordinate: {value!r}") from e


def _as_number(value: Any, kind: type, name: str) -> Any:
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ActionError(f"Invalid {name}: {value!r}") from e


@dataclass
class ComputerAction:
    """One computer-use tool request."""

    action: str
    coordinate: Optional[Tuple[int, int]] = None
    start_coordinate: Optional[Tuple[int, int]] = None
    text: Optional[str] = None
    scroll_direction: Optional[str] = None
    scroll_amount: Optional[int] = None
    duration: Optional[float] = None  # seconds

    @classmethod
    def from_tool_input(cls, data: Dict[str, Any]) -> "ComputerAction":
        """
        Decode and validate a tool_use input mapping.

        Raises:
            ActionError: If the action is missing or unknown, a parameter is
                malformed, or a required coordinate or text is absent
        """
        if not isinstance(data, dict):
            raise ActionError(f"Tool input is not an object: {data!r}")
        name = data.get("action")
        if not name:
            raise ActionError("Tool input has no action")
        text = data.get("text")
        if text is not None and not isinstance(text, str):
            raise ActionError(f"Invalid text: {text!r}")
        action = cls(
            action=str(name),
            coordinate=_as_point(data.get("coordinate")),
            start_coordinate=_as_point(data.get("start_coordinate")),
            text=text,
            scroll_direction=data.get("scroll_direction"),
            scroll_amount=_as_number(data.get("scroll_amount"), int, "scroll_amount"),
            duration=_as_number(data.get("duration"), float, "duration"),
        )

        kind = action.action_type
        if kind is None:
            raise ActionError(f"Unknown action: {action.action}")
        if kind in POINTER_ACTIONS and action.coordinate is None:
            raise ActionError(f"{action.action} requires a coordinate")
        if kind == ActionType.LEFT_CLICK_DRAG and (
            action.coordinate is None or action.start_coordinate is None
        ):
            raise ActionError("left_click_drag requires start_coordinate and coordinate")
        if kind in TEXT_ACTIONS and not action.text:
            raise ActionError(f"{action.action} requires text")
        return action


    @property
    def action_type(self) -> Optional[ActionType]:
        try:
            return ActionType(self.action)
        except ValueError:
            return None

    @property
    def is_click(self) -> bool:
        return self.action_type in CLICK_ACTIONS

    @property
    def is_non_progressive(self) -> bool:
        return self.action_type in NON_PROGRESSIVE_ACTIONS

    @property
    def expects_subtle_change(self) -> bool:
        return self.action_type in SUBTLE_CHANGE_ACTIONS

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"action": self.action}
        if self.coordinate is not None:
            data["coordinate"] = list(self.coordinate)
        if self.start_coordinate is not None:
            data["start_coordinate"] = list(self.start_coordinate)
        for key in ("text", "scroll_direction", "scroll_amount", "duration"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class ActionResult:
    """Result of an action execution."""

    success: bool
    action: str
    description: str
    error: Optional[str] = None
    duration_ms: int = 0


def format_action_details(action: ComputerAction, capture: CaptureResult) -> str:
    """
    Human-readable description for the action log.

    Example: "left_click at Model(400, 300) -> Screen(800, 600)"
    """
    parts = [action.action]

    def point(coordinate: Tuple[int, int]) -> str:
        screen = to_screen_coordinate(
            coordinate, capture.scale_factor, capture.display_scale_factor
        )
        return f"Model({coordinate[0]}, {coordinate[1]}) -> Screen({screen[0]}, {screen[1]})"

    if action.start_coordinate is not None:
        parts.append(f"from {point(action.start_coordinate)}")
    if action.coordinate is not None:
        parts.append(f"{'to' if action.start_coordinate else 'at'} {point(action.coordinate)}")
    if action.text:
        text = action.text
        if len(text) > MAX_DESCRIPTION_TEXT:
            text = text[:MAX_DESCRIPTION_TEXT] + "..."
        parts.append(f'"{text}"')
    if action.action_type == ActionType.SCROLL:
        parts.append(f"{action.scroll_direction or 'down'} x{action.scroll_amount or 3}")
    if action.duration is not None:
        parts.append(f"{action.duration}s")
    return " ".join(parts)


class ActionExecutor:
    """
    Executes computer-use actions on an automation backend.

    Every backend failure is caught and reported through ActionResult so the
    loop can record it and carry on.
    """

    DEFAULT_SCROLL_DIRECTION = "down"
    DEFAULT_SCROLL_AMOUNT = 3
    DEFAULT_WAIT_SECONDS = 1.0
    DEFAULT_HOLD_SECONDS = 0.5

    def __init__(self, backend: AutomationBackend, poll_interval: float = 0.1):
        """
        Initialize ActionExecutor.

        Args:
            backend: Automation backend receiving the primitives
            poll_interval: Stop-flag polling interval during waits (seconds)
        """
        self.backend = backend
        self.poll_interval = poll_interval

    def _screen_point(
        self, coordinate: Optional[Tuple[int, int]], capture: CaptureResult, action: str
    ) -> Tuple[int, int]:
        if coordinate is None:
            raise ActionError(f"{action} requires a coordinate")
        return to_screen_coordinate(
            coordinate, capture.scale_factor, capture.display_scale_factor
        )

    async def execute(self, action: ComputerAction, capture: CaptureResult) -> ActionResult:
        """
        Dispatch one action.

        Args:
            action: Decoded tool request
            capture: Screenshot the model was looking at (for scaling)

        Returns:
            ActionResult, success=False with an error message on any failure
        """
        start = time.time()
        description = format_action_details(action, capture)

        try:
            await self._dispatch(action, capture)
        except Exception as e:
            logger.warning("Action failed", action=action.action, error=str(e))
            return ActionResult(
                success=False,
                action=action.action,
                description=description,
                error=str(e) or type(e).__name__,
                duration_ms=int((time.time() - start) * 1000),
            )

        logger.info("Action executed", action=description)
        return ActionResult(
            success=True,
            action=action.action,
            description=description,
            duration_ms=int((time.time() - start) * 1000),
        )

    async def _dispatch(self, action: ComputerAction, capture: CaptureResult) -> None:
        kind = action.action_type
        if kind is None:
            raise ActionError(f"Unknown action: {action.action}")

        if kind in CLICK_ACTIONS or kind == ActionType.MOUSE_MOVE:
            x, y = self._screen_point(action.coordinate, capture, action.action)
            primitive = getattr(self.backend, kind.value)
            await primitive(x, y)

        elif kind == ActionType.LEFT_CLICK_DRAG:
            start_x, start_y = self._screen_point(action.start_coordinate, capture, action.action)
            end_x, end_y = self._screen_point(action.coordinate, capture, action.action)
            await self.backend.left_click_drag(start_x, start_y, end_x, end_y)

        elif kind == ActionType.LEFT_MOUSE_DOWN:
            await self.backend.left_mouse_down()

        elif kind == ActionType.LEFT_MOUSE_UP:
            await self.backend.left_mouse_up()

        elif kind == ActionType.TYPE:
            if not action.text:
                raise ActionError("type requires text")
            await self.backend.type_text(action.text)

        elif kind == ActionType.KEY:
            if not action.text:
                raise ActionError("key requires text")
            await self.backend.key(action.text)

        elif kind == ActionType.SCROLL:
            x, y = self._screen_point(action.coordinate, capture, action.action)
            await self.backend.scroll(
                x,
                y,
                action.scroll_direction or self.DEFAULT_SCROLL_DIRECTION,
                action.scroll_amount or self.DEFAULT_SCROLL_AMOUNT,
            )

        elif kind == ActionType.HOLD_KEY:
            if not action.text:
                raise ActionError("hold_key requires text")
            await self.backend.hold_key(action.text, True)
            try:
                await self._wait(action.duration or self.DEFAULT_HOLD_SECONDS)
            finally:
                await self.backend.hold_key(action.text, False)

        elif kind == ActionType.WAIT:
            completed = await self._wait(
                action.duration if action.duration is not None else self.DEFAULT_WAIT_SECONDS
            )
            if not completed:
                raise ActionError("Wait cancelled")

        # screenshot and zoom need no backend call: every iteration captures anyway

    async def _wait(self, seconds: float) -> bool:
        """Sleep while polling the stop flag. Returns False if stopped early."""
        end_time = time.time() + seconds
        while time.time() < end_time:
            if await self.backend.is_stop_requested():
                return False
            remaining = end_time - time.time()
            await asyncio.sleep(min(self.poll_interval, max(0.0, remaining)))
        return True
