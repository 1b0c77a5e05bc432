"""
Unit tests for the data model.
"""

from datetime import timedelta

import pytest

from uitest_agent.state import (
    ExecutedAction,
    ExpectedAction,
    FailureReason,
    HintImage,
    HintMatchResult,
    LoopOutcome,
    MatchErrorCode,
    ModelResultOutput,
    Scenario,
    TestResult,
    TestResultStatus,
    normalize_media_type,
    to_iso,
    utc_now,
)


class TestScenario:
    """Tests for Scenario.from_dict."""

    def test_description(self):
        scenario = Scenario.from_dict({"id": "login", "title": "Log in", "description": "Click Login"})
        assert (scenario.id, scenario.title, scenario.description) == ("login", "Log in", "Click Login")

    def test_steps_become_numbered_lines(self):
        scenario = Scenario.from_dict({"steps": ["Open Chrome", "Search for cats"]})
        assert scenario.description == "1. Open Chrome\n2. Search for cats"
        assert scenario.id == "scenario-1"


class TestHintImage:
    """Tests for HintImage helpers."""

    def test_jpg_alias_normalized(self):
        assert normalize_media_type("image/jpg") == "image/jpeg"
        assert normalize_media_type("IMAGE/JPG") == "image/jpeg"
        assert normalize_media_type("image/png") == "image/png"

    def test_estimated_size(self):
        image = HintImage("h1", "s1", "A" * 400, "image/png", "a.png")
        assert image.estimated_size == 300


class TestMatchErrorCode:
    """Tests for MatchErrorCode.parse."""

    @pytest.mark.parametrize("value,expected", [
        ("insufficient_opacity", MatchErrorCode.INSUFFICIENT_OPACITY),
        ("nonFiniteConfidence", MatchErrorCode.NON_FINITE_CONFIDENCE),
        ("templateTooLarge", MatchErrorCode.TEMPLATE_TOO_LARGE),
        ("something_else", None),
        (None, None),
    ])
    def test_parse(self, value, expected):
        assert MatchErrorCode.parse(value) == expected


class TestHintMatchResult:
    """Tests for HintMatchResult parsing."""

    def test_camel_case(self):
        result = HintMatchResult.from_dict({
            "found": True, "centerX": 200, "centerY": 150, "confidence": 0.91,
            "templateWidth": 40, "templateHeight": 20,
        })
        assert result.center == (200, 150)
        assert result.template_width == 40

    def test_snake_case_with_error(self):
        result = HintMatchResult.from_dict({
            "found": False, "error": "too big", "error_code": "template_too_large",
        })
        assert result.center is None
        assert result.error_code == MatchErrorCode.TEMPLATE_TOO_LARGE

    def test_non_finite_confidence(self):
        assert not HintMatchResult(found=False, confidence=float("nan")).has_finite_confidence
        assert HintMatchResult(found=False).has_finite_confidence

    def test_to_dict_uses_wire_names(self):
        data = HintMatchResult(found=True, center_x=1, center_y=2).to_dict()
        assert data["centerX"] == 1
        assert data["errorCode"] is None


class TestExpectedAction:
    """Tests for ExpectedAction."""

    def test_from_dict(self):
        action = ExpectedAction.from_dict({
            "description": "Click Chrome",
            "keywords": ["Chrome"],
            "targetElements": ["dock icon"],
            "expectedToolAction": "left_click",
        })
        assert action.keywords == ["Chrome"]
        assert action.target_elements == ["dock icon"]
        assert action.expected_tool_action == "left_click"
        assert not action.completed

    def test_completion_is_one_way(self):
        action = ExpectedAction(description="x")
        action.mark_completed()
        action.mark_completed()
        assert action.completed


class TestResults:
    """Tests for TestResult and LoopOutcome."""

    def make_result(self, status=TestResultStatus.SUCCESS, reason=None):
        started = utc_now()
        return TestResult(
            status=status,
            started_at=started,
            completed_at=started + timedelta(milliseconds=1500),
            failure_reason=reason,
            result_output=ModelResultOutput(status="success", message="ok"),
        )

    def test_duration(self):
        assert self.make_result().duration_ms == 1500

    def test_to_dict(self):
        data = self.make_result(TestResultStatus.FAILURE, FailureReason.STUCK_IN_LOOP).to_dict()
        assert data["status"] == "failure"
        assert data["failureReason"] == "stuck_in_loop"
        assert data["resultOutput"]["message"] == "ok"
        assert data["startedAt"].endswith("Z")

    def test_completed_action_count(self):
        outcome = LoopOutcome(
            success=True,
            iterations=2,
            test_result=self.make_result(),
            executed_actions=[
                ExecutedAction(0, "left_click", "left_click at ...", True),
                ExecutedAction(1, "type", 'type "x"', False, error="boom"),
            ],
        )
        assert outcome.completed_action_count == 1
        assert outcome.to_dict()["executedActions"][1]["error"] == "boom"

    def test_to_iso_none(self):
        assert to_iso(None) is None
