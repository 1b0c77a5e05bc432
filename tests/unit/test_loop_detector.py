"""
Tests for loop detection.
"""

from uitest_agent.backend.actions import ComputerAction
from uitest_agent.config import StuckDetectionConfig
from uitest_agent.loop_detector import (
    ActionRecord,
    LoopDetector,
    count_recent_repeats,
    detect_loop,
    hash_action,
)


def click(x=100, y=200):
    return ComputerAction(action="left_click", coordinate=(x, y))


class TestHashAction:
    """Tests for action identity."""

    def test_same_action_same_hash(self):
        assert hash_action(click()) == hash_action(click())

    def test_coordinates_matter(self):
        assert hash_action(click(1, 2)) != hash_action(click(2, 1))

    def test_text_matters(self):
        a = ComputerAction(action="type", text="abc")
        b = ComputerAction(action="type", text="abd")
        assert hash_action(a) != hash_action(b)


class TestDetectLoop:
    """Tests for detect_loop."""

    def history(self, *actions):
        return [ActionRecord.from_action(a) for a in actions]

    def test_needs_repeats_and_unchanged_screen(self):
        history = self.history(click(), click(), click())
        assert detect_loop(history, unchanged_count=5)
        assert not detect_loop(history, unchanged_count=4)

    def test_repeats_outside_window_ignored(self):
        config = StuckDetectionConfig(loop_detection_window=3, loop_detection_threshold=3)
        history = self.history(click(), click(), click(5, 5), click())
        assert count_recent_repeats(history, 3) == 2
        assert not detect_loop(history, unchanged_count=10, config=config)

    def test_empty_history(self):
        assert not detect_loop([], unchanged_count=10)


class TestLoopDetector:
    """Tests for LoopDetector."""

    def test_record_and_detect(self):
        detector = LoopDetector()
        for _ in range(3):
            detector.record(click())
        assert detector.repeat_count == 3
        assert detector.detect_loop(unchanged_count=5)

    def test_varied_actions(self):
        detector = LoopDetector()
        for x in range(5):
            detector.record(click(x, x))
        assert detector.repeat_count == 1
        assert not detector.detect_loop(unchanged_count=20)

    def test_reset(self):
        detector = LoopDetector()
        detector.record(click())
        detector.reset()
        assert detector.history == []
        assert detector.repeat_count == 0
