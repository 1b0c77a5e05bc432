"""
Tests for result classification and progress checks.
"""

import asyncio

import pytest

from conftest import FAILURE_TEXT, SUCCESS_TEXT, ScriptedModel, encode_png, model_reply, screen_image, tool_use
from uitest_agent.backend.actions import ComputerAction
from uitest_agent.config import JudgeConfig, StuckDetectionConfig
from uitest_agent.judge import (
    analyze_response,
    check_progress,
    create_test_result,
    extract_result_json,
    map_execution_error_to_failure_reason,
    map_model_failure_reason,
    parse_json_object,
    record_action,
    record_screenshot,
    verify_fallback_completion,
)
from uitest_agent.model.base import ModelCallError
from uitest_agent.screen import ScreenChange
from uitest_agent.state import (
    ExpectedAction,
    FailureReason,
    ProgressTracker,
    TestResultStatus,
    utc_now,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def checklist(*completed: bool):
    return [ExpectedAction(description=f"step {i}", completed=c) for i, c in enumerate(completed)]


class TestExtractResultJson:
    """Tests for extract_result_json."""

    def test_fenced_block(self):
        result = extract_result_json(SUCCESS_TEXT)
        assert result.status == "success"
        assert result.message == "Scenario completed"

    def test_bare_object(self):
        result = extract_result_json('All good {"status": "in_progress", "currentStep": "2"}')
        assert result.status == "in_progress"
        assert result.current_step == "2"

    def test_last_report_wins(self):
        text = (
            '```json\n{"status": "failure", "message": "first"}\n```\n'
            'retrying...\n```json\n{"status": "success", "message": "second"}\n```'
        )
        assert extract_result_json(text).message == "second"

    def test_no_report(self):
        assert extract_result_json("Clicking the button now.") is None
        assert extract_result_json("") is None

    def test_invalid_json_ignored(self):
        assert extract_result_json('```json\n{"status": "success",}\n```') is None


class TestFailureReasonMapping:
    """Tests for failure reason mapping."""

    @pytest.mark.parametrize("value,expected", [
        ("element_not_found", FailureReason.ELEMENT_NOT_FOUND),
        ("  Stuck_In_Loop ", FailureReason.STUCK_IN_LOOP),
        ("Could not find the OK button", FailureReason.ELEMENT_NOT_FOUND),
        ("click had no effect", FailureReason.ACTION_NO_EFFECT),
        ("an unexpected dialog", FailureReason.UNEXPECTED_STATE),
        ("gremlins", FailureReason.UNKNOWN),
        (None, FailureReason.UNKNOWN),
    ])
    def test_model_reason(self, value, expected):
        assert map_model_failure_reason(value) == expected

    def test_execution_error(self):
        assert map_execution_error_to_failure_reason("Element not found") == FailureReason.ELEMENT_NOT_FOUND
        assert map_execution_error_to_failure_reason("xdotool crashed") == FailureReason.ACTION_EXECUTION_ERROR
        assert map_execution_error_to_failure_reason(None) == FailureReason.ACTION_EXECUTION_ERROR


class TestAnalyzeResponse:
    """Tests for the completion decision table."""

    def test_tool_use_keeps_going(self):
        analysis = analyze_response(model_reply("Clicking", tool_use("left_click", coordinate=[1, 1])), checklist(False))
        assert not analysis.is_complete

    def test_success_with_checklist_done(self):
        analysis = analyze_response(model_reply(SUCCESS_TEXT), checklist(True, True))
        assert analysis.is_complete and analysis.is_success
        assert analysis.failure_reason is None
        assert analysis.result_output.status == "success"

    def test_success_with_empty_checklist(self):
        analysis = analyze_response(model_reply(SUCCESS_TEXT), [])
        assert analysis.is_success

    def test_success_with_pending_actions(self):
        analysis = analyze_response(model_reply(SUCCESS_TEXT), checklist(True, False))
        assert analysis.is_complete
        assert not analysis.is_success
        assert analysis.failure_reason == FailureReason.INCOMPLETE_ACTIONS
        assert "1/2" in analysis.failure_details

    def test_success_with_pending_actions_and_tool_use(self):
        reply = model_reply(SUCCESS_TEXT, tool_use("screenshot"))
        assert not analyze_response(reply, checklist(False)).is_complete

    def test_fallback_success_report_trusted(self):
        """An explicit success stands even though the heuristic checklist is open."""
        analysis = analyze_response(model_reply(SUCCESS_TEXT), checklist(False), is_from_fallback=True)
        assert analysis.is_complete
        assert analysis.is_success
        assert not analysis.needs_verification
        assert not analysis.success_by_progress

    def test_failure_report(self):
        analysis = analyze_response(model_reply(FAILURE_TEXT), checklist(False))
        assert analysis.is_complete and not analysis.is_success
        assert analysis.failure_reason == FailureReason.ELEMENT_NOT_FOUND
        assert analysis.failure_details == "Button missing"

    def test_progress_overrides_failure(self):
        analysis = analyze_response(model_reply(FAILURE_TEXT), checklist(True))
        assert analysis.is_success
        assert analysis.success_by_progress

    def test_failure_kept_when_override_disabled(self):
        config = JudgeConfig(progress_overrides_failure=False)
        analysis = analyze_response(model_reply(FAILURE_TEXT), checklist(True), config=config)
        assert not analysis.is_success
        assert analysis.failure_reason == FailureReason.ELEMENT_NOT_FOUND

    def test_no_report_checklist_done(self):
        analysis = analyze_response(model_reply("I think we are done."), checklist(True))
        assert analysis.is_success
        assert analysis.success_by_progress

    def test_no_report_no_checklist(self):
        analysis = analyze_response(model_reply("Hmm."), [])
        assert analysis.failure_reason == FailureReason.INVALID_RESULT_FORMAT

    def test_no_report_pending(self):
        analysis = analyze_response(model_reply("Stopping here."), checklist(False))
        assert analysis.failure_reason == FailureReason.INCOMPLETE_ACTIONS

    def test_no_report_fallback(self):
        reply = model_reply("Stopping here.")
        assert analyze_response(reply, checklist(False), is_from_fallback=True).needs_verification

        verified = analyze_response(reply, checklist(False), True, fallback_verified=True)
        assert verified.is_success
        assert verified.success_by_progress

    def test_no_report_fallback_not_verified(self):
        reply = model_reply("Stopping here.")
        analysis = analyze_response(reply, checklist(False), True, fallback_verified=False)
        assert not analysis.is_success
        assert analysis.failure_reason == FailureReason.VERIFICATION_FAILED


class TestProgressTracking:
    """Tests for progress counters and stuck checks."""

    def test_record_screenshot(self):
        tracker = ProgressTracker()
        record_screenshot(tracker, "h1", None)
        assert tracker.unchanged_count == 0
        assert tracker.last_screenshot_hash == "h1"

        unchanged = ScreenChange(diff_ratio=0.0, changed=False, is_noise=False)
        record_screenshot(tracker, "h1", unchanged)
        record_screenshot(tracker, "h1", unchanged)
        assert tracker.unchanged_count == 2

        record_screenshot(tracker, "h2", ScreenChange(diff_ratio=0.5, changed=True, is_noise=False))
        assert tracker.unchanged_count == 0

    def test_record_action(self):
        tracker = ProgressTracker()
        click = ComputerAction(action="left_click", coordinate=(5, 5))
        record_action(tracker, click)
        record_action(tracker, click)
        assert tracker.same_action_count == 2
        assert tracker.last_coordinate == (5, 5)

        record_action(tracker, ComputerAction(action="type", text="x"))
        assert tracker.same_action_count == 1
        assert tracker.last_action_type == "type"
        assert tracker.last_coordinate == (5, 5)

    def test_stuck_in_loop(self):
        tracker = ProgressTracker(same_action_count=3, unchanged_count=5)
        check = check_progress(tracker, ComputerAction(action="key", text="enter"))
        assert check.is_stuck
        assert check.reason == FailureReason.STUCK_IN_LOOP

    def test_non_progressive_gets_more_repeats(self):
        tracker = ProgressTracker(same_action_count=3, unchanged_count=5)
        assert not check_progress(tracker, ComputerAction(action="wait")).is_stuck
        tracker.same_action_count = 10
        assert check_progress(tracker, ComputerAction(action="wait")).is_stuck

    def test_no_effect(self):
        config = StuckDetectionConfig(max_no_effect_actions=4, max_unchanged_screenshots=50)
        tracker = ProgressTracker(same_action_count=1, unchanged_count=4)
        check = check_progress(tracker, ComputerAction(action="key", text="tab"), config)
        assert check.reason == FailureReason.ACTION_NO_EFFECT

    def test_subtle_actions_get_more_allowance(self):
        config = StuckDetectionConfig(max_no_effect_actions=4, max_unchanged_screenshots=50)
        tracker = ProgressTracker(same_action_count=1, unchanged_count=4)
        click = ComputerAction(action="left_click", coordinate=(1, 1))
        assert not check_progress(tracker, click, config).is_stuck
        tracker.unchanged_count = 8
        assert check_progress(tracker, click, config).is_stuck

    def test_healthy(self):
        assert not check_progress(ProgressTracker(), ComputerAction(action="type", text="a")).is_stuck


class TestCreateTestResult:
    """Tests for create_test_result."""

    def test_failure_details_default_from_reason(self):
        result = create_test_result(
            TestResultStatus.FAILURE, utc_now(), failure_reason=FailureReason.STUCK_IN_LOOP
        )
        assert result.failure_details == "stuck in loop"
        assert result.completed_at >= result.started_at

    def test_success_has_no_details(self):
        result = create_test_result(TestResultStatus.SUCCESS, utc_now(), completed_steps=2)
        assert result.failure_details == ""
        assert result.completed_steps == 2


class TestVerifyFallbackCompletion:
    """Tests for verify_fallback_completion."""

    screenshot = encode_png(screen_image())

    def verify(self, reply, min_confidence="medium"):
        model = ScriptedModel([], verification=reply)
        result = run_async(verify_fallback_completion(model, "Open settings", "Done", self.screenshot, min_confidence))
        return model, result

    def test_verified(self):
        model, result = self.verify('{"verified": true, "reason": "Settings visible", "confidence": "high"}')
        assert result.verified
        assert result.reason == "Settings visible"
        assert model.asked_kinds() == ["verification"]

    def test_low_confidence_rejected(self):
        _, result = self.verify('{"verified": true, "confidence": "low"}')
        assert not result.verified
        assert result.confidence == "low"

    def test_low_confidence_accepted_when_allowed(self):
        _, result = self.verify('{"verified": true, "confidence": "low"}', min_confidence="low")
        assert result.verified

    def test_unparseable(self):
        _, result = self.verify("yes, looks fine")
        assert not result.verified

    def test_call_failure(self):
        _, result = self.verify(ModelCallError("rate limited"))
        assert not result.verified
        assert "rate limited" in result.reason


class TestParseJsonObject:
    """Tests for parse_json_object."""

    def test_fenced(self):
        assert parse_json_object('Sure:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_bare(self):
        assert parse_json_object('answer {"isCompleted": true} end') == {"isCompleted": True}

    def test_none(self):
        assert parse_json_object("nothing") is None
        assert parse_json_object("[1, 2]") is None
