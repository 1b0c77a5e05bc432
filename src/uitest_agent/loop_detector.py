"""
Loop detection over the recent action history.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from uitest_agent.backend.actions import ComputerAction
from uitest_agent.config import StuckDetectionConfig
from uitest_agent.logging import get_logger

logger = get_logger(__name__)


def hash_action(action: ComputerAction) -> str:
    """Identity of an action: same hash means the model asked for the same thing."""
    parts = [
        action.action,
        ",".join(str(c) for c in action.coordinate) if action.coordinate else "",
        action.text or "",
        ",".join(str(c) for c in action.start_coordinate) if action.start_coordinate else "",
        action.scroll_direction or "",
        str(action.scroll_amount) if action.scroll_amount is not None else "",
        str(action.duration) if action.duration is not None else "",
    ]
    return "|".join(parts)


@dataclass
class ActionRecord:
    """Entry in the loop detector's rolling window."""

    action_type: str
    hash: str
    coordinate: Optional[Tuple[int, int]] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_action(cls, action: ComputerAction) -> "ActionRecord":
        return cls(action_type=action.action, hash=hash_action(action), coordinate=action.coordinate)


def count_recent_repeats(history: List[ActionRecord], window: int) -> int:
    """How many of the last `window` actions share the newest action's hash."""
    if not history:
        return 0
    latest = history[-1].hash
    return sum(1 for record in history[-window:] if record.hash == latest)


def detect_loop(
    history: List[ActionRecord],
    unchanged_count: int,
    config: Optional[StuckDetectionConfig] = None,
) -> bool:
    """
    Decide whether the agent is looping.

    Both conditions must hold: the newest action repeats at least
    `loop_detection_threshold` times within the window, and the screen has
    stayed unchanged for at least `max_unchanged_screenshots` captures.

    Args:
        history: Action records, oldest first
        unchanged_count: Consecutive unchanged screenshots so far
        config: Thresholds

    Returns:
        True if the run should stop as stuck
    """
    config = config or StuckDetectionConfig()
    repeats = count_recent_repeats(history, config.loop_detection_window)
    return (
        repeats >= config.loop_detection_threshold
        and unchanged_count >= config.max_unchanged_screenshots
    )


class LoopDetector:
    """Rolling action history with loop detection."""

    def __init__(self, config: Optional[StuckDetectionConfig] = None):
        self.config = config or StuckDetectionConfig()
        self.history: List[ActionRecord] = []

    def record(self, action: ComputerAction) -> ActionRecord:
        record = ActionRecord.from_action(action)
        self.history.append(record)
        return record

    @property
    def repeat_count(self) -> int:
        return count_recent_repeats(self.history, self.config.loop_detection_window)

    def detect_loop(self, unchanged_count: int) -> bool:
        looping = detect_loop(self.history, unchanged_count, self.config)
        if looping:
            logger.warning(
                "Action loop detected",
                action=self.history[-1].action_type,
                repeats=self.repeat_count,
                unchanged=unchanged_count,
            )
        return looping

    def reset(self) -> None:
        self.history.clear()
