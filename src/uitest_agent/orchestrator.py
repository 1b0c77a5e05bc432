"""
Agent loop orchestrator.

Drives one scenario through the capture -> match -> reason -> act cycle:

1. Check cancellation (caller signal, backend stop flag)
2. Capture the screen once
3. Score the effect of last iteration's actions (screen change, checklist)
4. Re-match hint images according to the retry policy
5. Send the new turn to the reasoning model
6. Either finish with a verdict or dispatch the requested actions
7. Stop on stuck/loop conditions, repeated dispatch failures or max iterations
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from uitest_agent.backend.actions import ActionError, ActionExecutor, ComputerAction
from uitest_agent.backend.base import AutomationBackend, CaptureResult
from uitest_agent.config import AgentConfig
from uitest_agent.hints import (
    HintImageMatcher,
    MatchRound,
    trim_hint_images_to_limit,
    validate_hint_images,
)
from uitest_agent.history import estimate_token_count, purge_old_images, should_purge
from uitest_agent.judge import (
    ResponseAnalysis,
    analyze_response,
    check_progress,
    create_test_result,
    has_significant_screen_change,
    map_execution_error_to_failure_reason,
    record_action,
    record_screenshot,
    verify_fallback_completion,
)
from uitest_agent.logging import bind_run_context, clear_run_context, get_logger
from uitest_agent.loop_detector import LoopDetector
from uitest_agent.model.base import Message, ModelResponse, ReasoningModel
from uitest_agent.model.prompts import (
    SYSTEM_PROMPT,
    build_computer_tool,
    build_followup_turn,
    build_initial_turn,
    build_tool_result,
)
from uitest_agent.screen import hash_screenshot
from uitest_agent.state import (
    ExecutedAction,
    FailureReason,
    HintImage,
    LoopOutcome,
    ModelResultOutput,
    ProgressTracker,
    Scenario,
    TestResultStatus,
    utc_now,
)
from uitest_agent.validator import ExpectedActionTracker, extract_expected_actions

logger = get_logger(__name__)


class CancelSignal(Protocol):
    """Anything with is_set(), e.g. asyncio.Event or threading.Event."""

    def is_set(self) -> bool: ...


@dataclass
class PendingToolResult:
    """A tool call from the last reply, waiting for its tool_result turn."""

    tool_use_id: str
    text: str
    is_error: bool = False
    action: Optional[ComputerAction] = None
    description: str = ""


@dataclass
class LoopRun:
    """Mutable state of one run. Only the orchestrator touches it."""

    scenario: Scenario
    started_at: datetime
    checklist: ExpectedActionTracker
    hint_images: List[HintImage] = field(default_factory=list)
    matcher: Optional[HintImageMatcher] = None
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    loop_detector: LoopDetector = field(default_factory=LoopDetector)
    messages: List[Message] = field(default_factory=list)
    executed_actions: List[ExecutedAction] = field(default_factory=list)
    pending: List[PendingToolResult] = field(default_factory=list)
    iteration: int = 0
    previous_capture: Optional[CaptureResult] = None
    last_model_text: str = ""
    last_action: Optional[str] = None
    last_successful_action: Optional[str] = None
    failed_at_action: Optional[str] = None
    consecutive_failures: int = 0


class AgentLoop:
    """
    Runs one scenario to a verdict.

    The backend and model are injected, so both can be replaced by
    deterministic fakes in tests.
    """

    def __init__(
        self,
        backend: AutomationBackend,
        model: ReasoningModel,
        config: Optional[AgentConfig] = None,
        executor: Optional[ActionExecutor] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the loop.

        Args:
            backend: Automation backend (capture, match, input)
            model: Reasoning model
            config: Agent configuration
            executor: Action executor (default: one over `backend`)
            on_iteration: Called with the iteration number at each start
            on_log: Called with human-readable progress lines
        """
        self.backend = backend
        self.model = model
        self.config = config or AgentConfig()
        self.executor = executor or ActionExecutor(backend)
        self.on_iteration = on_iteration
        self.on_log = on_log

    def _log(self, message: str) -> None:
        if self.on_log:
            self.on_log(message)

    async def run(
        self,
        scenario: Scenario,
        hint_images: Sequence[HintImage] = (),
        cancel_signal: Optional[CancelSignal] = None,
    ) -> LoopOutcome:
        """
        Run a scenario until success, failure, stop or max iterations.

        Args:
            scenario: Scenario to execute
            hint_images: Hint images in display order
            cancel_signal: Caller-side cancellation, checked every iteration

        Returns:
            LoopOutcome carrying exactly one TestResult
        """
        bind_run_context(scenario_id=scenario.id)
        try:
            return await self._run_scenario(scenario, hint_images, cancel_signal)
        finally:
            clear_run_context("scenario_id")

    async def _run_scenario(
        self,
        scenario: Scenario,
        hint_images: Sequence[HintImage],
        cancel_signal: Optional[CancelSignal],
    ) -> LoopOutcome:
        started_at = utc_now()
        logger.info("Agent loop starting", title=scenario.title)
        self._log(f"Starting scenario: {scenario.title}")

        images = self._prepare_hint_images(hint_images)
        extraction = await extract_expected_actions(self.model, scenario.description)
        run = LoopRun(
            scenario=scenario,
            started_at=started_at,
            checklist=ExpectedActionTracker(
                expected_actions=extraction.expected_actions,
                model=self.model,
                scenario=scenario.description,
                config=self.config.loop,
                is_from_fallback=extraction.is_from_fallback,
            ),
            hint_images=images,
            matcher=(
                HintImageMatcher(self.backend, images, self.config.hints.confidence_threshold)
                if images else None
            ),
            loop_detector=LoopDetector(self.config.stuck),
        )

        while run.iteration < self.config.loop.max_iterations:
            stop = await self._check_stop(cancel_signal)
            if stop:
                reason, details = stop
                return self._finish(run, TestResultStatus.STOPPED, reason, details)

            run.iteration += 1
            if self.on_iteration:
                self.on_iteration(run.iteration)
            logger.debug("Iteration starting", iteration=run.iteration)

            outcome = await self._run_iteration(run, cancel_signal)
            if outcome is not None:
                return outcome

        return self._finish(
            run,
            TestResultStatus.TIMEOUT,
            FailureReason.MAX_ITERATIONS,
            f"No verdict after {self.config.loop.max_iterations} iterations",
        )

    def _prepare_hint_images(self, hint_images: Sequence[HintImage]) -> List[HintImage]:
        if not hint_images:
            return []
        validation = validate_hint_images(hint_images, self.config.hints)
        if validation.valid:
            return sorted(hint_images, key=lambda img: img.order_index)
        for error in validation.errors:
            logger.warning("Hint image rejected", error=error)
        images, _ = trim_hint_images_to_limit(hint_images, self.config.hints)
        return images

    async def _check_stop(
        self, cancel_signal: Optional[CancelSignal]
    ) -> Optional[Tuple[FailureReason, str]]:
        if cancel_signal is not None and cancel_signal.is_set():
            return FailureReason.ABORTED, "Run cancelled by caller"
        try:
            if await self.backend.is_stop_requested():
                return FailureReason.USER_STOPPED, "Stop requested"
        except Exception as e:
            logger.warning("Stop flag check failed", error=str(e))
        return None

    async def _run_iteration(
        self, run: LoopRun, cancel_signal: Optional[CancelSignal]
    ) -> Optional[LoopOutcome]:
        """One iteration. Returns an outcome when the run is over."""
        try:
            capture = await self.backend.capture_screen()
        except Exception as e:
            logger.error("Screen capture failed", error=str(e))
            return self._finish(
                run, TestResultStatus.ERROR, FailureReason.ACTION_EXECUTION_ERROR,
                f"Screen capture failed: {e}",
            )

        change = None
        if run.previous_capture is not None:
            change = has_significant_screen_change(
                run.previous_capture.image_base64, capture.image_base64, self.config.screen
            )
        record_screenshot(run.tracker, hash_screenshot(capture.image_base64), change)
        screen_changed = change.significant if change else False
        run.previous_capture = capture

        outcome = await self._observe_pending(run, capture, screen_changed)
        if outcome is not None:
            return outcome

        if run.checklist.all_completed and not run.checklist.is_from_fallback:
            logger.info("All expected actions completed")
            return self._finish(run, TestResultStatus.SUCCESS)

        match_round = MatchRound()
        if run.matcher is not None:
            match_round = await run.matcher.rematch(capture, screen_changed)

        self._append_turn(run, capture, match_round)

        try:
            response = await self.model.next_step(
                SYSTEM_PROMPT,
                run.messages,
                [build_computer_tool(capture, self.config.model)],
            )
        except Exception as e:
            logger.error("Model call failed", error=str(e), iteration=run.iteration)
            return self._finish(
                run, TestResultStatus.ERROR, FailureReason.API_ERROR,
                f"Model call failed: {e}",
            )

        run.messages.append(response.to_message())
        run.last_model_text = response.text

        analysis = await self._analyze(run, response, capture)
        if analysis.is_complete:
            status = TestResultStatus.SUCCESS if analysis.is_success else TestResultStatus.FAILURE
            return self._finish(
                run, status, analysis.failure_reason, analysis.failure_details,
                result_output=analysis.result_output,
            )

        outcome = await self._dispatch(run, response, capture, cancel_signal)
        if outcome is not None:
            return outcome

        if run.pending and self.config.loop.action_delay_ms:
            await asyncio.sleep(self.config.loop.action_delay_ms / 1000.0)
        return None

    async def _observe_pending(
        self, run: LoopRun, capture: CaptureResult, screen_changed: bool
    ) -> Optional[LoopOutcome]:
        """Score last iteration's actions against the checklist."""
        for pending in run.pending:
            if pending.action is None or pending.is_error:
                continue
            outcome = await run.checklist.observe(
                pending.action,
                pending.description,
                run.last_model_text,
                screen_changed,
                capture.image_base64,
            )
            if outcome.mismatch:
                return self._finish(
                    run, TestResultStatus.FAILURE, FailureReason.ACTION_MISMATCH,
                    f"{run.checklist.mismatch_count} consecutive actions did not match "
                    "the expected steps",
                )
        return None

    def _append_turn(self, run: LoopRun, capture: CaptureResult, match_round: MatchRound) -> None:
        """Add this iteration's user turn and keep the transcript bounded."""
        if run.iteration == 1:
            coordinates = ""
            if run.matcher is not None and not match_round.failed:
                coordinates = run.matcher.coordinates_text()
            turn = build_initial_turn(run.scenario.description, capture, run.hint_images, coordinates)
        else:
            last = len(run.pending) - 1
            results = [
                build_tool_result(
                    p.tool_use_id, p.text, capture if i == last else None, p.is_error
                )
                for i, p in enumerate(run.pending)
            ]
            coordinates = ""
            if run.matcher is not None and match_round.has_updates:
                coordinates = run.matcher.coordinates_text()
            turn = build_followup_turn(results, coordinates)

        run.pending = []
        run.messages.append(turn)

        if should_purge(run.messages, self.config.history.purge_after_messages):
            run.messages = purge_old_images(run.messages, self.config.history.keep_recent_turns)
            logger.debug(
                "Transcript purged",
                messages=len(run.messages),
                estimated_tokens=estimate_token_count(run.messages),
            )

    async def _analyze(
        self, run: LoopRun, response: ModelResponse, capture: CaptureResult
    ) -> ResponseAnalysis:
        checklist = run.checklist
        analysis = analyze_response(
            response,
            checklist.expected_actions,
            is_from_fallback=checklist.is_from_fallback,
            config=self.config.judge,
        )
        if not analysis.needs_verification:
            return analysis

        message = analysis.result_output.message if analysis.result_output else response.text
        verification = await verify_fallback_completion(
            self.model,
            run.scenario.description,
            message,
            capture.image_base64,
            self.config.judge.fallback_min_confidence,
        )
        return analyze_response(
            response,
            checklist.expected_actions,
            is_from_fallback=True,
            fallback_verified=verification.verified,
            config=self.config.judge,
        )

    async def _dispatch(
        self,
        run: LoopRun,
        response: ModelResponse,
        capture: CaptureResult,
        cancel_signal: Optional[CancelSignal],
    ) -> Optional[LoopOutcome]:
        """Execute the requested tool actions in order."""
        for block in response.tool_uses:
            stop = await self._check_stop(cancel_signal)
            if stop:
                reason, details = stop
                return self._finish(run, TestResultStatus.STOPPED, reason, details)

            tool_use_id = block.get("id", "")
            tool_input = block.get("input") or {}
            try:
                action = ComputerAction.from_tool_input(tool_input)
            except ActionError as e:
                logger.warning("Malformed tool input", error=str(e), tool_input=tool_input)
                run.pending.append(PendingToolResult(tool_use_id, f"Error: {e}", is_error=True))
                run.consecutive_failures += 1
                if run.consecutive_failures >= self.config.loop.max_consecutive_action_failures:
                    return self._finish(
                        run, TestResultStatus.FAILURE, FailureReason.ACTION_EXECUTION_ERROR,
                        f"Malformed tool input: {e}",
                    )
                continue

            result = await self.executor.execute(action, capture)
            run.executed_actions.append(
                ExecutedAction(
                    index=len(run.executed_actions),
                    action=action.action,
                    description=result.description,
                    success=result.success,
                    error=result.error,
                )
            )
            run.last_action = result.description
            self._log(f"[{run.iteration}] {result.description}")

            run.loop_detector.record(action)
            record_action(run.tracker, action)

            if result.success:
                run.consecutive_failures = 0
                run.last_successful_action = result.description
                run.pending.append(PendingToolResult(
                    tool_use_id, f"Executed: {result.description}",
                    action=action, description=result.description,
                ))
            else:
                run.consecutive_failures += 1
                run.failed_at_action = result.description
                run.pending.append(PendingToolResult(
                    tool_use_id, f"Error: {result.error}", is_error=True,
                    action=action, description=result.description,
                ))
                if run.consecutive_failures >= self.config.loop.max_consecutive_action_failures:
                    return self._finish(
                        run,
                        TestResultStatus.FAILURE,
                        map_execution_error_to_failure_reason(result.error),
                        f"{run.consecutive_failures} consecutive action failures, last: {result.error}",
                    )

            if run.loop_detector.detect_loop(run.tracker.unchanged_count):
                return self._finish(
                    run, TestResultStatus.FAILURE, FailureReason.STUCK_IN_LOOP,
                    f"Action repeated {run.loop_detector.repeat_count} times "
                    f"with {run.tracker.unchanged_count} unchanged screenshots",
                )

            progress = check_progress(run.tracker, action, self.config.stuck)
            if progress.is_stuck:
                return self._finish(
                    run, TestResultStatus.FAILURE, progress.reason, progress.details
                )

        return None

    def _finish(
        self,
        run: LoopRun,
        status: TestResultStatus,
        reason: Optional[FailureReason] = None,
        details: str = "",
        result_output: Optional[ModelResultOutput] = None,
    ) -> LoopOutcome:
        """Build the single TestResult and outcome for this run."""
        success = status == TestResultStatus.SUCCESS
        test_result = create_test_result(
            status=status,
            started_at=run.started_at,
            failure_reason=None if success else reason,
            failure_details=details,
            completed_steps=run.iteration,
            completed_action_index=run.checklist.completed_index,
            total_expected_steps=len(run.checklist.expected_actions),
            last_action=run.last_action,
            model_analysis=run.last_model_text or details,
            result_output=result_output,
        )

        logger.info(
            "Agent loop finished",
            status=status.value,
            failure_reason=reason.value if reason and not success else None,
            iterations=run.iteration,
            actions=len(run.executed_actions),
            duration_ms=test_result.duration_ms,
        )
        self._log(f"Finished: {status.value}" + (f" ({details})" if details and not success else ""))

        return LoopOutcome(
            success=success,
            iterations=run.iteration,
            test_result=test_result,
            executed_actions=list(run.executed_actions),
            expected_actions=list(run.checklist.expected_actions),
            is_from_fallback=run.checklist.is_from_fallback,
            error=None if success else test_result.failure_details,
            failed_at_action=run.failed_at_action,
            last_successful_action=run.last_successful_action,
        )


async def run_agent_loop(
    scenario: Scenario,
    backend: AutomationBackend,
    model: ReasoningModel,
    hint_images: Sequence[HintImage] = (),
    cancel_signal: Optional[CancelSignal] = None,
    config: Optional[AgentConfig] = None,
) -> LoopOutcome:
    """Convenience wrapper running a single scenario."""
    loop = AgentLoop(backend=backend, model=model, config=config)
    return await loop.run(scenario, hint_images, cancel_signal)
