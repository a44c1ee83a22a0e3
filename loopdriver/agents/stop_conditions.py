"""
Stop Conditions
===============
Decides when a run must end regardless of task success.

Priority (hard contract, first match wins):
    1. max_iterations  — iterations >= max_iterations
    2. max_duration    — now - started_at >= max_duration_ms
    3. no_progress     — no_progress_count >= no_progress_threshold

A higher-priority condition always shadows the lower ones when several are
true at once.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from loopdriver.agents.progress_detector import HeuristicProgressDetector, ProgressDetector
from loopdriver.core.config import LoopConfig
from loopdriver.core.constants import (
    REASON_MAX_DURATION,
    REASON_MAX_ITERATIONS,
    REASON_NO_PROGRESS,
)
from loopdriver.models.loop_run import LoopRun, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopConditions:
    max_iterations: int = 10
    max_duration_ms: int = 1_800_000
    no_progress_threshold: int = 3

    def __post_init__(self) -> None:
        for name in ("max_iterations", "max_duration_ms", "no_progress_threshold"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


DEFAULT_STOP_CONDITIONS = StopConditions()


@dataclass
class LoopRunState:
    iterations: int
    started_at: datetime
    no_progress_count: int = 0


@dataclass
class StopReason:
    reason: str
    details: str


def should_stop(
    state: LoopRunState,
    conditions: StopConditions,
    now: Optional[datetime] = None,
) -> Optional[StopReason]:
    """Return the highest-priority StopReason that applies, or None."""
    if state.iterations >= conditions.max_iterations:
        return StopReason(
            REASON_MAX_ITERATIONS,
            f"Reached maximum iterations ({state.iterations}/{conditions.max_iterations})",
        )

    elapsed_ms = ((now or utc_now()) - state.started_at).total_seconds() * 1000
    if elapsed_ms >= conditions.max_duration_ms:
        elapsed_min = int(elapsed_ms // 60_000)
        max_min = conditions.max_duration_ms // 60_000
        return StopReason(
            REASON_MAX_DURATION,
            f"Reached maximum duration ({elapsed_min}min/{max_min}min)",
        )

    if state.no_progress_count >= conditions.no_progress_threshold:
        return StopReason(
            REASON_NO_PROGRESS,
            f"No progress detected for {state.no_progress_count} consecutive iterations",
        )
    return None


def load_stop_conditions(loop_config: Optional[LoopConfig] = None) -> StopConditions:
    """Build StopConditions from the configuration layer."""
    loop_config = loop_config or LoopConfig()
    return StopConditions(
        max_iterations=loop_config.max_iterations,
        max_duration_ms=loop_config.max_duration_ms,
        no_progress_threshold=loop_config.no_progress_threshold,
    )


def loop_run_to_state(run: LoopRun) -> LoopRunState:
    # no_progress_count lives only in memory; a persisted run starts at 0
    return LoopRunState(iterations=run.iterations, started_at=run.started_at)


class StopConditionManager:
    """
    Per-run tracker of iterations, elapsed time and consecutive iterations
    without progress. Only the most recent output is retained.
    """

    def __init__(
        self,
        conditions: StopConditions = DEFAULT_STOP_CONDITIONS,
        progress_detector: Optional[ProgressDetector] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        self.conditions = conditions
        self.progress_detector = progress_detector or HeuristicProgressDetector()
        self._state = LoopRunState(iterations=0, started_at=started_at or utc_now())
        self._last_output: Optional[str] = None

    def get_state(self) -> LoopRunState:
        return replace(self._state)

    async def record_iteration(self, output: Optional[str] = None) -> int:
        """
        Count one iteration and, when ``output`` is given, update the
        no-progress counter against the previous output.

        Returns
        -------
        int
            The no-progress count after this iteration.
        """
        self._state.iterations += 1

        if output is None:
            return self._state.no_progress_count

        if self._last_output is not None:
            progressed = await self.progress_detector.detect_progress(self._last_output, output)
            if progressed:
                self._state.no_progress_count = 0
            else:
                self._state.no_progress_count += 1
                logger.debug("No progress on iteration %d (%d consecutive)",
                             self._state.iterations, self._state.no_progress_count)

        self._last_output = output
        return self._state.no_progress_count

    def should_stop(self, now: Optional[datetime] = None) -> Optional[StopReason]:
        return should_stop(self._state, self.conditions, now)

    def reset_no_progress_count(self) -> None:
        self._state.no_progress_count = 0
