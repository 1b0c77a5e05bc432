"""
Run state: scenarios, hint images, progress tracking and results.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Any, Dict, Tuple
from dataclasses import dataclass, field


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as an ISO string with a Z suffix."""
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


class ScenarioStatus(str, Enum):
    """Scenario lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    SKIPPED = "skipped"


class TestResultStatus(str, Enum):
    """Terminal status of one loop run."""

    __test__ = False

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    STOPPED = "stopped"
    ERROR = "error"


class FailureReason(str, Enum):
    """Why a run did not succeed."""

    ELEMENT_NOT_FOUND = "element_not_found"
    ACTION_NO_EFFECT = "action_no_effect"
    ACTION_EXECUTION_ERROR = "action_execution_error"
    STUCK_IN_LOOP = "stuck_in_loop"
    UNEXPECTED_STATE = "unexpected_state"
    ACTION_MISMATCH = "action_mismatch"
    INCOMPLETE_ACTIONS = "incomplete_actions"
    VERIFICATION_FAILED = "verification_failed"
    EXTRACTION_FAILED = "extraction_failed"
    INVALID_RESULT_FORMAT = "invalid_result_format"
    MAX_ITERATIONS = "max_iterations"
    API_ERROR = "api_error"
    USER_STOPPED = "user_stopped"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


class MatchErrorCode(str, Enum):
    """Per-image template matching error classes reported by the backend."""

    SCREENSHOT_DECODE_ERROR = "screenshot_decode_error"
    TEMPLATE_BASE64_DECODE_ERROR = "template_base64_decode_error"
    TEMPLATE_IMAGE_DECODE_ERROR = "template_image_decode_error"
    INSUFFICIENT_OPACITY = "insufficient_opacity"
    NON_FINITE_CONFIDENCE = "non_finite_confidence"
    TEMPLATE_TOO_LARGE = "template_too_large"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MatchErrorCode"]:
        """Parse a backend code, tolerating camelCase and unknown values."""
        if not value:
            return None
        normalized = "".join(
            f"_{c.lower()}" if c.isupper() else c for c in value
        ).lstrip("_")
        try:
            return cls(normalized)
        except ValueError:
            return None


@dataclass
class Scenario:
    """A natural-language test scenario."""

    id: str
    title: str
    description: str
    status: ScenarioStatus = ScenarioStatus.PENDING
    error: Optional[str] = None
    result: Optional["TestResult"] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_id: str = "scenario-1") -> "Scenario":
        """Create from a plain mapping (YAML scenario files)."""
        description = data.get("description") or data.get("steps") or ""
        if isinstance(description, list):
            description = "\n".join(
                f"{i}. {step}" for i, step in enumerate(description, start=1)
            )
        return cls(
            id=str(data.get("id", default_id)),
            title=data.get("title", default_id),
            description=description,
        )


@dataclass
class HintImage:
    """Reference image of a UI element the agent should look for."""

    id: str
    scenario_id: str
    image_data: str  # base64
    mime_type: str
    file_name: str
    order_index: int = 0

    @property
    def media_type(self) -> str:
        """Media type safe to send to the reasoning model."""
        return normalize_media_type(self.mime_type)

    @property
    def estimated_size(self) -> int:
        """Decoded size in bytes, estimated from the base64 length."""
        return int(len(self.image_data) * 0.75)


def normalize_media_type(mime_type: str) -> str:
    """Rewrite the non-standard image/jpg alias to image/jpeg."""
    if mime_type.lower() == "image/jpg":
        return "image/jpeg"
    return mime_type


@dataclass
class HintMatchResult:
    """Template match outcome for one hint image on one screenshot."""

    found: bool
    center_x: Optional[int] = None
    center_y: Optional[int] = None
    confidence: Optional[float] = None
    template_width: int = 0
    template_height: int = 0
    error: Optional[str] = None
    error_code: Optional[MatchErrorCode] = None

    @property
    def center(self) -> Optional[Tuple[int, int]]:
        """Get center point of a successful match."""
        if self.center_x is None or self.center_y is None:
            return None
        return (self.center_x, self.center_y)

    @property
    def has_finite_confidence(self) -> bool:
        return self.confidence is None or math.isfinite(self.confidence)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HintMatchResult":
        """Parse a backend matchResult mapping (camelCase or snake_case)."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        confidence = pick("confidence")
        return cls(
            found=bool(pick("found")),
            center_x=pick("centerX", "center_x"),
            center_y=pick("centerY", "center_y"),
            confidence=float(confidence) if confidence is not None else None,
            template_width=pick("templateWidth", "template_width") or 0,
            template_height=pick("templateHeight", "template_height") or 0,
            error=pick("error"),
            error_code=MatchErrorCode.parse(pick("errorCode", "error_code")),
        )

    def to_dict(self) -> dict:
        """Convert to the backend wire shape."""
        return {
            "found": self.found,
            "centerX": self.center_x,
            "centerY": self.center_y,
            "confidence": self.confidence,
            "templateWidth": self.template_width,
            "templateHeight": self.template_height,
            "error": self.error,
            "errorCode": self.error_code.value if self.error_code else None,
        }


@dataclass
class ProgressTracker:
    """Per-run progress state, owned by the loop controller."""

    last_screenshot_hash: str = ""
    unchanged_count: int = 0
    last_action_type: str = ""
    last_action_hash: str = ""
    same_action_count: int = 0
    last_coordinate: Optional[Tuple[int, int]] = None


@dataclass
class ExpectedAction:
    """One checklist step derived from the scenario description."""

    description: str
    keywords: List[str] = field(default_factory=list)
    target_elements: List[str] = field(default_factory=list)
    expected_tool_action: Optional[str] = None
    verification_text: Optional[str] = None
    completed: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpectedAction":
        """Parse one entry of the extraction response."""
        return cls(
            description=str(data.get("description", "")),
            keywords=[str(k) for k in data.get("keywords") or []],
            target_elements=[str(t) for t in data.get("targetElements") or []],
            expected_tool_action=data.get("expectedToolAction") or None,
            verification_text=data.get("verificationText") or None,
        )

    def mark_completed(self) -> None:
        """Completion is one-way; entries are never un-completed."""
        self.completed = True


@dataclass
class ModelResultOutput:
    """Structured terminal output the model appends to its final message."""

    status: str  # success | failure | in_progress
    message: str = ""
    failure_reason: Optional[str] = None
    current_step: Optional[str] = None
    next_expected_action: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelResultOutput":
        return cls(
            status=str(data.get("status", "")),
            message=str(data.get("message", "")),
            failure_reason=data.get("failureReason"),
            current_step=data.get("currentStep"),
            next_expected_action=data.get("nextExpectedAction"),
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "message": self.message,
            "failureReason": self.failure_reason,
            "currentStep": self.current_step,
            "nextExpectedAction": self.next_expected_action,
        }


@dataclass
class TestResult:
    """Terminal record of one loop run."""

    __test__ = False

    status: TestResultStatus
    started_at: datetime
    completed_at: datetime
    failure_reason: Optional[FailureReason] = None
    failure_details: str = ""
    completed_steps: int = 0
    completed_action_index: int = 0
    total_expected_steps: Optional[int] = None
    last_action: Optional[str] = None
    model_analysis: str = ""
    result_output: Optional[ModelResultOutput] = None

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def is_success(self) -> bool:
        return self.status == TestResultStatus.SUCCESS

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "failureReason": self.failure_reason.value if self.failure_reason else None,
            "failureDetails": self.failure_details,
            "completedSteps": self.completed_steps,
            "completedActionIndex": self.completed_action_index,
            "totalExpectedSteps": self.total_expected_steps,
            "lastAction": self.last_action,
            "modelAnalysis": self.model_analysis,
            "resultOutput": self.result_output.to_dict() if self.result_output else None,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "durationMs": self.duration_ms,
        }


@dataclass
class ExecutedAction:
    """Audit trail entry for one dispatched action."""

    index: int
    action: str
    description: str
    success: bool
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "action": self.action,
            "description": self.description,
            "success": self.success,
            "timestamp": to_iso(self.timestamp),
            "error": self.error,
        }


@dataclass
class LoopOutcome:
    """What a loop run hands back to its caller."""

    success: bool
    iterations: int
    test_result: TestResult
    executed_actions: List[ExecutedAction] = field(default_factory=list)
    expected_actions: List[ExpectedAction] = field(default_factory=list)
    is_from_fallback: bool = False
    error: Optional[str] = None
    failed_at_action: Optional[str] = None
    last_successful_action: Optional[str] = None

    @property
    def completed_action_count(self) -> int:
        return sum(1 for a in self.executed_actions if a.success)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "iterations": self.iterations,
            "testResult": self.test_result.to_dict(),
            "executedActions": [a.to_dict() for a in self.executed_actions],
            "failedAtAction": self.failed_at_action,
            "lastSuccessfulAction": self.last_successful_action,
            "completedActionCount": self.completed_action_count,
        }
