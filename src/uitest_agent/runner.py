"""
Batch runner.

Runs scenarios strictly one after another, one loop instance at a time,
and maps each loop outcome onto the scenario's lifecycle status.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from uitest_agent.backend.base import AutomationBackend
from uitest_agent.config import AgentConfig
from uitest_agent.logging import get_logger
from uitest_agent.model.base import ReasoningModel
from uitest_agent.orchestrator import AgentLoop
from uitest_agent.state import (
    HintImage,
    LoopOutcome,
    Scenario,
    ScenarioStatus,
    TestResultStatus,
    utc_now,
)

logger = get_logger(__name__)

STATUS_MAP = {
    TestResultStatus.SUCCESS: ScenarioStatus.COMPLETED,
    TestResultStatus.FAILURE: ScenarioStatus.FAILED,
    TestResultStatus.ERROR: ScenarioStatus.FAILED,
    TestResultStatus.TIMEOUT: ScenarioStatus.FAILED,
    TestResultStatus.STOPPED: ScenarioStatus.STOPPED,
}


def scenario_status_for(status: TestResultStatus) -> ScenarioStatus:
    return STATUS_MAP[status]


@dataclass
class BatchResult:
    """Summary of one batch run."""

    scenarios: List[Scenario]
    outcomes: Dict[str, LoopOutcome] = field(default_factory=dict)
    stopped: bool = False

    def count(self, status: ScenarioStatus) -> int:
        return sum(1 for s in self.scenarios if s.status == status)

    @property
    def passed(self) -> int:
        return self.count(ScenarioStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(ScenarioStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(ScenarioStatus.SKIPPED)

    @property
    def all_passed(self) -> bool:
        return bool(self.scenarios) and self.passed == len(self.scenarios)

    def to_dict(self) -> dict:
        return {
            "total": len(self.scenarios),
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "stopped": self.stopped,
            "scenarios": [
                {
                    "id": s.id,
                    "title": s.title,
                    "status": s.status.value,
                    "error": s.error,
                    "result": s.result.to_dict() if s.result else None,
                }
                for s in self.scenarios
            ],
        }


class ScenarioRunner:
    """
    Sequential scenario runner.

    stop() cancels the scenario in flight and skips the rest; with
    stop_on_failure the first failed scenario skips the rest.
    """

    def __init__(
        self,
        backend: AutomationBackend,
        model: ReasoningModel,
        config: Optional[AgentConfig] = None,
        on_scenario_start: Optional[Callable[[Scenario], None]] = None,
        on_scenario_complete: Optional[Callable[[Scenario, LoopOutcome], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ):
        self.backend = backend
        self.model = model
        self.config = config or AgentConfig()
        self.on_scenario_start = on_scenario_start
        self.on_scenario_complete = on_scenario_complete
        self.on_log = on_log
        self._cancel = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Cancel the current scenario and skip the remaining ones."""
        logger.info("Batch stop requested")
        self._cancel.set()

    async def run(
        self,
        scenarios: Sequence[Scenario],
        hint_images: Optional[Mapping[str, Sequence[HintImage]]] = None,
    ) -> BatchResult:
        """
        Run scenarios in order.

        Args:
            scenarios: Scenarios to run (statuses are updated in place)
            hint_images: Hint images keyed by scenario id

        Returns:
            BatchResult
        """
        hint_images = hint_images or {}
        result = BatchResult(scenarios=list(scenarios))
        self._cancel.clear()
        self._running = True
        logger.info("Batch starting", scenarios=len(result.scenarios))

        try:
            for position, scenario in enumerate(result.scenarios):
                if self._cancel.is_set():
                    result.stopped = True
                    self._skip(result.scenarios[position:], "Batch stopped")
                    break

                outcome = await self._run_one(scenario, hint_images.get(scenario.id, ()))
                result.outcomes[scenario.id] = outcome

                if scenario.status == ScenarioStatus.STOPPED:
                    result.stopped = True
                    self._skip(result.scenarios[position + 1:], "Batch stopped")
                    break
                if scenario.status == ScenarioStatus.FAILED and self.config.runner.stop_on_failure:
                    self._skip(result.scenarios[position + 1:], f"Skipped after failure of {scenario.id}")
                    break
        finally:
            self._running = False

        logger.info(
            "Batch finished",
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
            stopped=result.stopped,
        )
        return result

    async def _run_one(self, scenario: Scenario, hint_images: Sequence[HintImage]) -> LoopOutcome:
        scenario.status = ScenarioStatus.RUNNING
        scenario.started_at = utc_now()
        scenario.error = None
        if self.on_scenario_start:
            self.on_scenario_start(scenario)

        loop = AgentLoop(self.backend, self.model, self.config, on_log=self.on_log)
        outcome = await loop.run(scenario, hint_images, cancel_signal=self._cancel)

        scenario.result = outcome.test_result
        scenario.status = scenario_status_for(outcome.test_result.status)
        scenario.error = outcome.error
        scenario.completed_at = utc_now()
        logger.info(
            "Scenario finished",
            scenario_id=scenario.id,
            status=scenario.status.value,
            iterations=outcome.iterations,
        )
        if self.on_scenario_complete:
            self.on_scenario_complete(scenario, outcome)
        return outcome

    def _skip(self, scenarios: Sequence[Scenario], reason: str) -> None:
        for scenario in scenarios:
            scenario.status = ScenarioStatus.SKIPPED
            scenario.error = reason
        if scenarios:
            logger.info("Scenarios skipped", count=len(scenarios), reason=reason)
