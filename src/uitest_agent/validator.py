"""
Expected-action checklist: extraction and validation.

At scenario start the description is turned into an ordered checklist of
expected actions. Every dispatched tool action is then cross-checked against
the current checklist entry; confident matches with a visible effect advance
the checklist, ambiguous ones may be confirmed by the model.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from uitest_agent.backend.actions import ActionType, ComputerAction, NON_PROGRESSIVE_ACTIONS
from uitest_agent.config import LoopConfig
from uitest_agent.judge import parse_json_object
from uitest_agent.logging import get_logger
from uitest_agent.model.base import ModelCallError, ReasoningModel
from uitest_agent.model.prompts import EXTRACT_ACTIONS_PROMPT, build_confirm_action_prompt, image_block
from uitest_agent.state import ExpectedAction

logger = get_logger(__name__)

_NUMBERED_ITEM = re.compile(r"^\s*\d+[.)]\s+", re.MULTILINE)

_STEP_COUNT_PATTERNS = (
    re.compile(r"(\d+)\s*steps?\b", re.IGNORECASE),
    re.compile(r"(\d+)\s*actions?\b", re.IGNORECASE),
)

_SEQUENCE_WORDS = (
    re.compile(r"\bthen\b", re.IGNORECASE),
    re.compile(r"\bafter that\b", re.IGNORECASE),
    re.compile(r"\bnext,", re.IGNORECASE),
    re.compile(r"\bfinally\b", re.IGNORECASE),
)

APP_NAMES = (
    "chrome", "safari", "firefox", "edge", "vscode", "terminal", "finder",
    "explorer", "notepad", "excel", "word", "powerpoint", "slack", "discord", "zoom",
)

ACTION_KEYWORDS = (
    "click", "double-click", "type", "enter", "open", "launch", "search",
    "scroll", "wait", "select", "drag", "press", "close", "save",
)

# Share of the step-count hint the extraction must reach
MIN_EXTRACTION_RATIO = 0.5


def extract_step_count_hint(description: str) -> Optional[int]:
    """
    Estimate how many steps a scenario describes.

    Looks for a numbered list, an explicit "N steps" phrase, then sequencing
    words (each one separates two steps).
    """
    numbered = _NUMBERED_ITEM.findall(description)
    if len(numbered) >= 2:
        return len(numbered)

    for pattern in _STEP_COUNT_PATTERNS:
        match = pattern.search(description)
        if match:
            return int(match.group(1))

    sequence_words = sum(len(p.findall(description)) for p in _SEQUENCE_WORDS)
    if sequence_words:
        return sequence_words + 1
    return None


def validate_expected_actions_count(
    expected_actions: Sequence[ExpectedAction],
    description: str,
) -> Tuple[bool, Optional[int]]:
    """
    Check the extracted checklist is not much shorter than the scenario suggests.

    Returns:
        (plausible, step count hint)
    """
    hint = extract_step_count_hint(description)
    if hint is None:
        return True, None
    return len(expected_actions) >= hint * MIN_EXTRACTION_RATIO, hint


def extract_basic_keywords(description: str) -> List[str]:
    """Application names and action verbs mentioned in a scenario."""
    lowered = description.lower()
    keywords = [app for app in APP_NAMES if app in lowered]
    keywords.extend(word for word in ACTION_KEYWORDS if word in lowered)
    for quoted in re.findall(r"[\"']([^\"']{2,40})[\"']", description):
        keywords.append(quoted)
    return keywords


def fallback_expected_actions(description: str) -> List[ExpectedAction]:
    """Single checklist entry covering the whole scenario."""
    return [
        ExpectedAction(
            description=description.strip(),
            keywords=extract_basic_keywords(description),
        )
    ]


@dataclass
class ExtractionResult:
    """Checklist derived from a scenario."""

    expected_actions: List[ExpectedAction]
    is_from_fallback: bool = False
    step_count_hint: Optional[int] = None


async def extract_expected_actions(model: ReasoningModel, description: str) -> ExtractionResult:
    """
    Ask the model for the scenario's expected actions.

    Falls back to a single whole-scenario entry when the call fails or the
    reply has no usable list.
    """
    try:
        reply = await model.ask(EXTRACT_ACTIONS_PROMPT + description, max_tokens=2048)
    except ModelCallError as e:
        logger.warning("Expected action extraction failed, using fallback", error=str(e))
        return ExtractionResult(fallback_expected_actions(description), is_from_fallback=True)

    data = parse_json_object(reply) or {}
    raw_actions = data.get("expectedActions")
    if not isinstance(raw_actions, list) or not raw_actions:
        logger.warning("Expected action reply had no actions, using fallback", reply=reply[:200])
        return ExtractionResult(fallback_expected_actions(description), is_from_fallback=True)

    actions = [ExpectedAction.from_dict(a) for a in raw_actions if isinstance(a, dict)]
    plausible, hint = validate_expected_actions_count(actions, description)
    if not plausible:
        logger.warning(
            "Fewer expected actions than the scenario suggests",
            extracted=len(actions),
            step_count_hint=hint,
        )

    logger.info("Expected actions extracted", count=len(actions))
    return ExtractionResult(actions, is_from_fallback=False, step_count_hint=hint)


@dataclass
class ActionValidation:
    """How well one tool action matches the current checklist entry."""

    confidence: str  # high | medium | low
    should_advance: bool = False
    needs_model_verification: bool = False
    requires_screen_change: bool = False
    expects_subtle_change: bool = False


def _count_mentions(terms: Sequence[str], haystack: str) -> int:
    lowered = haystack.lower()
    return sum(1 for term in terms if term and term.lower() in lowered)


def _type_match(expected_type: Optional[str], actual_type: str) -> Tuple[bool, bool]:
    """(matches, strict) for expected vs actual tool action types."""
    if not expected_type:
        return True, False
    expected_type = expected_type.lower()
    actual_type = actual_type.lower()
    if expected_type == "click" and "click" in actual_type:
        return True, False
    if expected_type == actual_type:
        return True, True
    if "click" in expected_type and "click" in actual_type:
        return True, False
    return False, False


def validate_action(
    action: ComputerAction,
    expected_actions: Sequence[ExpectedAction],
    current_index: int,
    context_text: str = "",
    screen_changed: bool = False,
) -> ActionValidation:
    """
    Cross-check a dispatched action against the current checklist entry.

    Args:
        action: Dispatched action
        expected_actions: Checklist
        current_index: Index of the first uncompleted entry
        context_text: Model text that accompanied the action
        screen_changed: Significant screen change after the action

    Returns:
        ActionValidation
    """
    if not expected_actions:
        return ActionValidation(confidence="low")
    if current_index >= len(expected_actions):
        return ActionValidation(confidence="medium")

    expected = expected_actions[current_index]
    non_progressive = action.action_type in NON_PROGRESSIVE_ACTIONS
    pointer_action = "click" in action.action or action.action_type in (
        ActionType.MOUSE_MOVE,
        ActionType.LEFT_MOUSE_DOWN,
        ActionType.LEFT_MOUSE_UP,
    )

    keyword_source = action.text or context_text
    keyword_hits = _count_mentions(expected.keywords, keyword_source) if keyword_source else 0
    target_hits = _count_mentions(expected.target_elements, context_text) if context_text else 0
    type_matches, type_strict = _type_match(expected.expected_tool_action, action.action)

    high = (
        keyword_hits >= 2
        or (keyword_hits >= 1 and type_strict)
        or (target_hits >= 1 and type_strict)
        or (non_progressive and type_strict)
    )

    if high:
        requires_change = not non_progressive
        return ActionValidation(
            confidence="high",
            should_advance=not requires_change or screen_changed,
            requires_screen_change=requires_change,
            expects_subtle_change=action.expects_subtle_change,
        )

    if keyword_hits >= 1 or target_hits >= 1 or type_matches:
        return ActionValidation(
            confidence="medium",
            needs_model_verification=pointer_action,
            requires_screen_change=not non_progressive,
        )

    return ActionValidation(confidence="low", requires_screen_change=not non_progressive)


@dataclass
class ActionCompletionCheck:
    """Model's answer on whether a checklist entry is done."""

    is_completed: bool
    reason: str = ""


async def ask_model_for_action_completion(
    model: ReasoningModel,
    scenario: str,
    expected: ExpectedAction,
    tool_uses: Sequence[str],
    screenshot_base64: str,
) -> ActionCompletionCheck:
    """Ask whether the current screen shows the expected action as done."""
    prompt = build_confirm_action_prompt(scenario, expected, tool_uses)
    try:
        reply = await model.ask(prompt, images=[image_block(screenshot_base64)], max_tokens=512)
    except ModelCallError as e:
        logger.warning("Action completion check failed", error=str(e))
        return ActionCompletionCheck(is_completed=False, reason=str(e))

    data = parse_json_object(reply) or {}
    return ActionCompletionCheck(
        is_completed=data.get("isCompleted") is True,
        reason=str(data.get("reason", "")),
    )


@dataclass
class ValidationOutcome:
    """Effect of one observed action on the checklist."""

    validation: ActionValidation
    advanced: bool = False
    mismatch: bool = False


@dataclass
class ExpectedActionTracker:
    """
    Checklist state across a run.

    Entries only ever move from pending to completed, in order.
    """

    expected_actions: List[ExpectedAction]
    model: ReasoningModel
    scenario: str
    config: LoopConfig = field(default_factory=LoopConfig)
    is_from_fallback: bool = False
    completed_index: int = 0
    medium_confidence_count: int = 0
    mismatch_count: int = 0
    tool_use_descriptions: List[str] = field(default_factory=list)

    @property
    def all_completed(self) -> bool:
        return bool(self.expected_actions) and all(a.completed for a in self.expected_actions)

    @property
    def completed_count(self) -> int:
        return sum(1 for a in self.expected_actions if a.completed)

    @property
    def current(self) -> Optional[ExpectedAction]:
        if self.completed_index < len(self.expected_actions):
            return self.expected_actions[self.completed_index]
        return None

    def _advance(self, how: str) -> None:
        entry = self.expected_actions[self.completed_index]
        entry.mark_completed()
        logger.info("Expected action completed", description=entry.description, how=how)
        self.completed_index += 1
        self.medium_confidence_count = 0
        self.mismatch_count = 0

    async def observe(
        self,
        action: ComputerAction,
        description: str,
        context_text: str,
        screen_changed: bool,
        screenshot_base64: str,
    ) -> ValidationOutcome:
        """
        Record the observed effect of a dispatched action.

        Args:
            action: Dispatched action
            description: Log description of the action
            context_text: Model text accompanying the action
            screen_changed: Significant screen change after the action
            screenshot_base64: Screenshot taken after the action
        """
        validation = validate_action(
            action, self.expected_actions, self.completed_index, context_text, screen_changed
        )
        outcome = ValidationOutcome(validation=validation)

        if validation.should_advance and self.current is not None:
            self._advance("high confidence")
            outcome.advanced = True

        elif validation.confidence == "high":
            self.medium_confidence_count += 1

        elif validation.confidence == "medium":
            self.medium_confidence_count += 1
            if (
                self.medium_confidence_count >= self.config.medium_confidence_check_threshold
                and self.current is not None
                and validation.needs_model_verification
            ):
                check = await ask_model_for_action_completion(
                    self.model,
                    self.scenario,
                    self.current,
                    self.tool_use_descriptions + [description],
                    screenshot_base64,
                )
                if check.is_completed and screen_changed:
                    self._advance("model confirmed")
                    outcome.advanced = True

            if not outcome.advanced and validation.requires_screen_change and not screen_changed:
                self.mismatch_count += 1

        elif validation.requires_screen_change and not screen_changed:
            self.mismatch_count += 1

        self.tool_use_descriptions.append(description)
        outcome.mismatch = self.mismatch_count >= self.config.action_mismatch_threshold
        return outcome
