"""
Progress tracking and result classification.

Decides from the model's reply, the expected-action checklist and the
screen history whether a run is finished, and how.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional, Sequence

from uitest_agent.backend.actions import ComputerAction
from uitest_agent.config import JudgeConfig, ScreenChangeConfig, StuckDetectionConfig
from uitest_agent.logging import get_logger
from uitest_agent.loop_detector import hash_action
from uitest_agent.model.base import ModelCallError, ModelResponse, ReasoningModel
from uitest_agent.model.prompts import build_verify_completion_prompt, image_block
from uitest_agent.screen import ScreenChange, ScreenshotComparer
from uitest_agent.state import (
    ExpectedAction,
    FailureReason,
    ModelResultOutput,
    ProgressTracker,
    TestResult,
    TestResultStatus,
    utc_now,
)

logger = get_logger(__name__)

# Ordered from most to least specific
_RESULT_PATTERNS = (
    re.compile(r"```json\s*(\{[\s\S]*?\"status\"\s*:\s*\"(?:success|failure)\"[\s\S]*?\})\s*```"),
    re.compile(r"(\{[^{}]*\"status\"\s*:\s*\"(?:success|failure|in_progress)\"[^{}]*\})"),
    re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```"),
)

_FAILURE_REASON_MARKERS = (
    (("not found", "not_found", "cannot find", "could not find"), FailureReason.ELEMENT_NOT_FOUND),
    (("no effect", "no_effect", "did not respond", "nothing happened"), FailureReason.ACTION_NO_EFFECT),
    (("unexpected",), FailureReason.UNEXPECTED_STATE),
)

_CONFIDENCE_RANK = {"low": 0, "medium": 1, "high": 2}


def _candidate_json(text: str) -> Iterator[str]:
    for pattern in _RESULT_PATTERNS:
        # The report goes at the end of the reply, so prefer later matches
        for match in reversed(pattern.findall(text)):
            yield match


def extract_result_json(text: str) -> Optional[ModelResultOutput]:
    """
    Find the structured result report in a model reply.

    Args:
        text: Assistant text

    Returns:
        Parsed report, or None when the reply carries none
    """
    if not text:
        return None
    for candidate in _candidate_json(text):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and "status" in data:
            return ModelResultOutput.from_dict(data)
    return None


def map_model_failure_reason(reason: Optional[str]) -> FailureReason:
    """Map the model's free-form failureReason onto the closed enumeration."""
    if not reason:
        return FailureReason.UNKNOWN
    lowered = reason.strip().lower()
    try:
        return FailureReason(lowered)
    except ValueError:
        pass
    for markers, failure_reason in _FAILURE_REASON_MARKERS:
        if any(marker in lowered for marker in markers):
            return failure_reason
    return FailureReason.UNKNOWN


def map_execution_error_to_failure_reason(error: Optional[str]) -> FailureReason:
    """Classify an action dispatch error message."""
    lowered = (error or "").lower()
    if "not found" in lowered or "element" in lowered:
        return FailureReason.ELEMENT_NOT_FOUND
    return FailureReason.ACTION_EXECUTION_ERROR


@dataclass
class ResponseAnalysis:
    """Verdict on one model reply."""

    is_complete: bool
    is_success: bool
    analysis: str
    success_by_progress: bool = False
    failure_reason: Optional[FailureReason] = None
    failure_details: str = ""
    result_output: Optional[ModelResultOutput] = None
    needs_verification: bool = False


def analyze_response(
    response: ModelResponse,
    expected_actions: Sequence[ExpectedAction],
    is_from_fallback: bool = False,
    fallback_verified: Optional[bool] = None,
    config: Optional[JudgeConfig] = None,
) -> ResponseAnalysis:
    """
    Classify a model reply as in-progress, success or failure.

    Args:
        response: Model reply
        expected_actions: Checklist, with completion flags up to date
        is_from_fallback: Checklist came from the heuristic fallback
        fallback_verified: Outcome of verify_fallback_completion, None if not run yet
        config: Classification policy

    Returns:
        ResponseAnalysis; needs_verification=True asks the caller to run
        verify_fallback_completion and analyze again
    """
    config = config or JudgeConfig()
    text = response.text
    result = extract_result_json(text)
    has_tool_use = response.has_tool_use

    total = len(expected_actions)
    done = sum(1 for a in expected_actions if a.completed)
    all_done = total > 0 and done == total
    progress = f"{done}/{total} expected actions completed"

    def finish(success: bool, reason: Optional[FailureReason] = None, details: str = "",
               by_progress: bool = False) -> ResponseAnalysis:
        return ResponseAnalysis(
            is_complete=True,
            is_success=success,
            analysis=text,
            success_by_progress=by_progress,
            failure_reason=None if success else reason,
            failure_details=details,
            result_output=result,
        )

    def keep_going() -> ResponseAnalysis:
        return ResponseAnalysis(
            is_complete=False, is_success=False, analysis=text, result_output=result
        )

    def verify() -> ResponseAnalysis:
        return ResponseAnalysis(
            is_complete=False, is_success=False, analysis=text,
            result_output=result, needs_verification=True,
        )

    status = result.status if result else None

    if status == "success":
        # A heuristic checklist cannot contradict an explicit report
        if total == 0 or all_done or is_from_fallback:
            return finish(True)
        if has_tool_use:
            return keep_going()
        return finish(
            False, FailureReason.INCOMPLETE_ACTIONS,
            f"Model reported success with {progress}",
        )

    if status == "failure":
        if all_done and config.progress_overrides_failure:
            logger.info("Model reported failure but all expected actions completed")
            return finish(True, by_progress=True)
        return finish(
            False,
            map_model_failure_reason(result.failure_reason),
            result.message or "Model reported failure",
        )

    if has_tool_use:
        return keep_going()

    if is_from_fallback:
        if fallback_verified is None:
            return verify()
        if fallback_verified:
            return finish(True, by_progress=True)
        return finish(
            False, FailureReason.VERIFICATION_FAILED,
            "Run ended without a result report and the screen did not confirm completion",
        )
    if all_done:
        return finish(True, by_progress=True)
    if total == 0:
        return finish(False, FailureReason.INVALID_RESULT_FORMAT, "Reply had neither an action nor a result report")
    return finish(False, FailureReason.INCOMPLETE_ACTIONS, f"Reply ended the run with {progress}")


def has_significant_screen_change(
    previous_base64: str,
    current_base64: str,
    config: Optional[ScreenChangeConfig] = None,
) -> ScreenChange:
    """Compare two screenshots with the perceptual comparer."""
    return ScreenshotComparer(config).compare(previous_base64, current_base64)


def record_screenshot(
    tracker: ProgressTracker,
    screenshot_hash: str,
    change: Optional[ScreenChange],
) -> None:
    """
    Update the unchanged-screenshot counter.

    Noise-level differences count as unchanged. The first screenshot of a run
    (change is None) only sets the baseline.
    """
    if change is not None:
        if change.significant:
            tracker.unchanged_count = 0
        else:
            tracker.unchanged_count += 1
    tracker.last_screenshot_hash = screenshot_hash


def record_action(tracker: ProgressTracker, action: ComputerAction) -> None:
    """Update the consecutive identical-action counter."""
    action_hash = hash_action(action)
    if action_hash == tracker.last_action_hash:
        tracker.same_action_count += 1
    else:
        tracker.same_action_count = 1
        tracker.last_action_hash = action_hash
    tracker.last_action_type = action.action
    if action.coordinate is not None:
        tracker.last_coordinate = action.coordinate


@dataclass
class ProgressCheck:
    """Outcome of a progress check."""

    is_stuck: bool
    reason: Optional[FailureReason] = None
    details: str = ""


def check_progress(
    tracker: ProgressTracker,
    action: ComputerAction,
    config: Optional[StuckDetectionConfig] = None,
) -> ProgressCheck:
    """
    Flag runs that stopped making progress.

    stuck_in_loop: the same action keeps being requested while the screen
    stays unchanged. action_no_effect: progressive actions keep leaving the
    screen unchanged. Non-progressive actions get a larger repeat allowance,
    subtle-change actions a larger no-effect allowance.
    """
    config = config or StuckDetectionConfig()

    max_repeats = config.max_same_action_repeats
    if action.is_non_progressive:
        max_repeats = max(config.max_same_action_repeats * 2, 10)

    if (
        tracker.same_action_count >= max_repeats
        and tracker.unchanged_count >= config.max_unchanged_screenshots
    ):
        return ProgressCheck(
            is_stuck=True,
            reason=FailureReason.STUCK_IN_LOOP,
            details=f"Same action repeated {tracker.same_action_count} times with no screen change",
        )

    if not action.is_non_progressive:
        limit = config.max_no_effect_actions
        if action.expects_subtle_change:
            limit *= 2
        if tracker.unchanged_count >= limit:
            return ProgressCheck(
                is_stuck=True,
                reason=FailureReason.ACTION_NO_EFFECT,
                details=f"Screen unchanged for {tracker.unchanged_count} consecutive screenshots",
            )

    return ProgressCheck(is_stuck=False)


def create_test_result(
    status: TestResultStatus,
    started_at: datetime,
    failure_reason: Optional[FailureReason] = None,
    failure_details: str = "",
    completed_steps: int = 0,
    completed_action_index: int = 0,
    total_expected_steps: Optional[int] = None,
    last_action: Optional[str] = None,
    model_analysis: str = "",
    result_output: Optional[ModelResultOutput] = None,
) -> TestResult:
    """Build the terminal TestResult, stamping completion time now."""
    if status != TestResultStatus.SUCCESS and not failure_details:
        failure_details = failure_reason.value.replace("_", " ") if failure_reason else status.value
    return TestResult(
        status=status,
        started_at=started_at,
        completed_at=utc_now(),
        failure_reason=failure_reason,
        failure_details=failure_details,
        completed_steps=completed_steps,
        completed_action_index=completed_action_index,
        total_expected_steps=total_expected_steps,
        last_action=last_action,
        model_analysis=model_analysis,
        result_output=result_output,
    )


@dataclass
class FallbackVerification:
    """Screen-based confirmation of a claimed completion."""

    verified: bool
    reason: str = ""
    confidence: str = "low"


async def verify_fallback_completion(
    model: ReasoningModel,
    scenario: str,
    final_message: str,
    screenshot_base64: str,
    min_confidence: str = "medium",
) -> FallbackVerification:
    """
    Ask the model whether the screen confirms a claimed completion.

    Used when the expected-action checklist came from the fallback heuristic
    and cannot be trusted on its own. Low-confidence answers and failed calls
    count as not verified.
    """
    prompt = build_verify_completion_prompt(scenario, final_message)
    try:
        reply = await model.ask(prompt, images=[image_block(screenshot_base64)])
    except ModelCallError as e:
        logger.warning("Completion verification call failed", error=str(e))
        return FallbackVerification(verified=False, reason=f"Verification call failed: {e}")

    data = parse_json_object(reply)
    if data is None:
        logger.warning("Completion verification reply unparseable", reply=reply[:200])
        return FallbackVerification(verified=False, reason="Unparseable verification reply")

    confidence = str(data.get("confidence", "low")).lower()
    verified = bool(data.get("verified")) and (
        _CONFIDENCE_RANK.get(confidence, 0) >= _CONFIDENCE_RANK.get(min_confidence, 1)
    )
    logger.info("Completion verification", verified=verified, confidence=confidence)
    return FallbackVerification(
        verified=verified,
        reason=str(data.get("reason", "")),
        confidence=confidence,
    )


def parse_json_object(text: str) -> Optional[dict]:
    """First JSON object in a reply, fenced or bare."""
    for pattern in (r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", r"(\{[\s\S]*\})"):
        match = re.search(pattern, text or "")
        if not match:
            continue
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None

