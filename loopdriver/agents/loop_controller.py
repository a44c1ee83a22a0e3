"""
Loop Controller
===============
Drives one task through repeated iterations until it succeeds, a stop
condition fires, or the iteration callback raises.

State Machine:
    idle → running → success | failed | stopped   (terminal, immutable)

Pass Structure (one per iteration):
    1. Stop requested?            → stopped
    2. Stop condition fired?      → failed (max_duration / no_progress)
    3. Increment + persist the iteration counter
    4. Fire iteration-start hooks
    5. Invoke the iteration callback, then evaluate criteria if configured
    6. Fire iteration-end hooks
    7. Success?                   → success
    8. Record last error and progress, cooldown, next pass
    Budget exhausted              → failed (max_iterations)
    Callback raised               → failed (error)

Cancellation:
    stop() is cooperative. It marks the running record stopped right away,
    wakes a pending cooldown, and lets an in-flight iteration finish. The
    flag is honoured at the top of the next pass, and a stop always wins
    over the outcome of the iteration that was in flight.

One controller per scope. All mutable state lives on the instance.
"""
import uuid
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from loopdriver.agents.criteria_evaluator import CriteriaEvaluator, EvaluationOptions, EvaluationResult
from loopdriver.agents.progress_detector import ProgressDetector
from loopdriver.agents.snapshot_manager import SnapshotManager
from loopdriver.agents.stop_conditions import StopConditionManager, StopConditions
from loopdriver.core.config import LoopConfig
from loopdriver.core.constants import (
    REASON_ERROR,
    REASON_MAX_ITERATIONS,
    REASON_STOPPED,
    REASON_SUCCESS,
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_SUCCESS,
)
from loopdriver.core.exceptions import (
    AlreadyRunningError,
    ConfigurationError,
    IterationError,
    LoopDriverError,
)
from loopdriver.models.loop_run import LoopResult, LoopRun, Observation, utc_now
from loopdriver.models.success_criteria import SuccessCriteria, validate_criteria
from loopdriver.services.run_store import InMemoryRunStore, RunStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Callback payloads
# ---------------------------------------------------------------------------
@dataclass
class IterationContext:
    iteration: int
    task: str
    run_id: str


@dataclass
class IterationResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class LoopHookContext:
    run_id: str
    iteration: int


@dataclass
class LoopOptions:
    """
    Per-run overrides. Any field left as None falls back to the
    controller's LoopConfig.

    Fields
    ------
    criteria : list[SuccessCriteria] | None
        Success checks; evaluated after every iteration when the controller
        has an evaluator.
    max_iterations / cooldown_ms / max_duration_ms / no_progress_threshold
        Budget and pacing.
    evaluation : EvaluationOptions | None
        Passed through to the evaluator (cwd, env, timeout).
    snapshot : bool
        Snapshot the working tree before the first iteration.
    restore_on_failure : bool
        Restore that snapshot when the run ends failed.
    """
    criteria: Optional[List[SuccessCriteria]] = None
    max_iterations: Optional[int] = None
    cooldown_ms: Optional[int] = None
    max_duration_ms: Optional[int] = None
    no_progress_threshold: Optional[int] = None
    evaluation: Optional[EvaluationOptions] = None
    snapshot: bool = False
    restore_on_failure: bool = False


IterationCallback = Callable[[IterationContext], Union[Awaitable[IterationResult], IterationResult]]
Hook = Callable[..., Any]

_STATUS_TEXT = {
    STATUS_SUCCESS: "Succeeded",
    STATUS_FAILED: "Failed",
    STATUS_STOPPED: "Stopped",
}


def _evaluation_error(evaluation: EvaluationResult) -> str:
    lines = [evaluation.reason]
    if evaluation.suggestions:
        lines.append("Suggestions:")
        lines.extend(f"- {s}" for s in evaluation.suggestions)
    return "\n".join(lines)


def _criteria_verdict(callback_result: IterationResult, evaluation: EvaluationResult) -> IterationResult:
    """Criteria decide success; the callback's own output and error are kept ahead of theirs."""
    output = "\n\n".join(t for t in (callback_result.output, evaluation.output) if t)
    error = None
    if not evaluation.success:
        error = "\n".join(t for t in (callback_result.error, _evaluation_error(evaluation)) if t)
    return IterationResult(success=evaluation.success, output=output or None, error=error)


class LoopController:
    """
    Iterate-until-success driver for a single scope.

    Usage:
        controller = LoopController("session-1")
        controller.on_iteration(do_work)
        result = await controller.start("fix the failing tests")
    """

    def __init__(
        self,
        scope_id: str,
        store: Optional[RunStore] = None,
        config: Optional[LoopConfig] = None,
        evaluator: Optional[CriteriaEvaluator] = None,
        progress_detector: Optional[ProgressDetector] = None,
        snapshot_manager: Optional[SnapshotManager] = None,
    ) -> None:
        self.scope_id = scope_id
        self.store = store or InMemoryRunStore()
        self.config = config or LoopConfig()
        self.evaluator = evaluator
        self.progress_detector = progress_detector
        self.snapshot_manager = snapshot_manager

        self._iteration_callback: Optional[IterationCallback] = None
        self._start_hooks: List[Hook] = []
        self._end_hooks: List[Hook] = []
        self._complete_hooks: List[Hook] = []
        self._hook_tasks: set[asyncio.Future] = set()

        self._run: Optional[LoopRun] = None
        self._active = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._restore_on_failure = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def on_iteration(self, callback: IterationCallback) -> None:
        """Register the unit of work. Replaces any previous callback."""
        self._iteration_callback = callback

    @staticmethod
    def _subscribe(hooks: List[Hook], hook: Hook) -> Callable[[], None]:
        hooks.append(hook)

        def unsubscribe() -> None:
            if hook in hooks:
                hooks.remove(hook)

        return unsubscribe

    def on_iteration_start(self, hook: Hook) -> Callable[[], None]:
        """hook(IterationContext). Returns an unsubscribe callable."""
        return self._subscribe(self._start_hooks, hook)

    def on_iteration_end(self, hook: Hook) -> Callable[[], None]:
        """hook(IterationContext, IterationResult). Returns an unsubscribe callable."""
        return self._subscribe(self._end_hooks, hook)

    def on_complete(self, hook: Hook) -> Callable[[], None]:
        """hook(LoopResult). Returns an unsubscribe callable."""
        return self._subscribe(self._complete_hooks, hook)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def is_running(self) -> bool:
        return self._run is not None and self._run.status == STATUS_RUNNING

    def get_current_run(self) -> Optional[LoopRun]:
        return self._run.model_copy(deep=True) if self._run else None

    def get_loop_context(self) -> Optional[LoopHookContext]:
        """Run id and iteration of the running run, else None."""
        if not self.is_running():
            return None
        return LoopHookContext(run_id=self._run.id, iteration=self._run.iterations)

    def record_observation(
        self,
        content: str,
        type: str = "note",
        importance: float = 0.5,
    ) -> Observation:
        """Append an observation, tagged with the loop context when running."""
        context = self.get_loop_context()
        observation = Observation(
            scope_id=self.scope_id,
            type=type,
            content=content,
            importance=importance,
            loop_run_id=context.run_id if context else None,
            iteration=context.iteration if context else None,
        )
        return self.store.add_observation(observation)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def stop(self) -> None:
        """
        Request a cooperative stop.

        Must be called on the event loop thread; use
        loop.call_soon_threadsafe(controller.stop) from elsewhere.
        """
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

        if self.is_running():
            self._run.status = STATUS_STOPPED
            self._run.ended_at = utc_now()
            self.store.update_run(self._run)
            logger.info("Stop requested | run=%s | iteration=%d",
                        self._run.id, self._run.iterations)

    def _resolve_conditions(self, options: LoopOptions) -> tuple[List[SuccessCriteria], StopConditions, int]:
        if self._iteration_callback is None:
            raise ConfigurationError("No iteration callback registered. Call on_iteration() first.")

        criteria = list(options.criteria) if options.criteria is not None else list(self.config.success_criteria)
        validate_criteria(criteria)

        def pick(value: Optional[int], default: int) -> int:
            return value if value is not None else default

        max_iterations = pick(options.max_iterations, self.config.max_iterations)
        cooldown_ms = pick(options.cooldown_ms, self.config.cooldown_ms)
        if max_iterations <= 0:
            raise ConfigurationError("max_iterations must be greater than 0")
        if cooldown_ms < 0:
            raise ConfigurationError("cooldown_ms must not be negative")
        if (options.snapshot or options.restore_on_failure) and self.snapshot_manager is None:
            raise ConfigurationError("Snapshots requested but no snapshot manager configured")

        try:
            conditions = StopConditions(
                max_iterations=max_iterations,
                max_duration_ms=pick(options.max_duration_ms, self.config.max_duration_ms),
                no_progress_threshold=pick(options.no_progress_threshold, self.config.no_progress_threshold),
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        return criteria, conditions, cooldown_ms

    async def start(self, task: str, options: Optional[LoopOptions] = None) -> LoopResult:
        """
        Run ``task`` to completion.

        Raises
        ------
        ConfigurationError
            Missing callback, empty task, invalid criteria or budgets.
        AlreadyRunningError
            A run is already active for this scope.

        Once the run record exists, every outcome is returned as a
        LoopResult; callers branch on ``reason``.
        """
        options = options or LoopOptions()
        if not task or not task.strip():
            raise ConfigurationError("Task must not be empty")
        criteria, conditions, cooldown_ms = self._resolve_conditions(options)

        if self._active and self._run is not None:
            raise AlreadyRunningError(self.scope_id, self._run.id)

        run = self.store.begin_run(LoopRun(
            id=str(uuid.uuid4()),
            scope_id=self.scope_id,
            task=task,
            criteria=criteria,
            max_iterations=conditions.max_iterations,
        ))

        self._run = run
        self._active = True
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._restore_on_failure = options.restore_on_failure

        manager = StopConditionManager(conditions, self.progress_detector, started_at=run.started_at)
        logger.info("Loop started | run=%s | scope=%s | max_iterations=%d | criteria=%s",
                    run.id, self.scope_id, conditions.max_iterations,
                    [c.type for c in criteria] or "none")

        try:
            return await self._loop(manager, criteria, cooldown_ms, options)
        except asyncio.CancelledError:
            logger.warning("Loop task cancelled | run=%s", run.id)
            await self._finish(STATUS_STOPPED, REASON_STOPPED, "Loop task cancelled")
            raise
        finally:
            self._active = False

    # ------------------------------------------------------------------
    # Loop body
    # ------------------------------------------------------------------
    async def _loop(
        self,
        manager: StopConditionManager,
        criteria: List[SuccessCriteria],
        cooldown_ms: int,
        options: LoopOptions,
    ) -> LoopResult:
        run = self._run
        last_error: Optional[str] = None

        try:
            if options.snapshot:
                run.snapshot_path = await asyncio.to_thread(self.snapshot_manager.create, run.id)
                self.store.update_run(run)

            while run.iterations < run.max_iterations:
                if self._stop_requested:
                    return await self._finish(STATUS_STOPPED, REASON_STOPPED, last_error)

                stop_reason = manager.should_stop()
                if stop_reason is not None:
                    logger.warning("Stop condition fired | run=%s | %s", run.id, stop_reason.details)
                    return await self._finish(STATUS_FAILED, stop_reason.reason, last_error,
                                        details=stop_reason.details)

                run.iterations += 1
                self.store.update_run(run)
                iteration = run.iterations
                ctx = IterationContext(iteration=iteration, task=run.task, run_id=run.id)
                logger.info("Iteration %d/%d | run=%s", iteration, run.max_iterations, run.id)

                self._fire(self._start_hooks, ctx)
                callback_result = await self._invoke(ctx)
                self._fire(self._end_hooks, ctx, callback_result)
                result = callback_result
                if self.evaluator is not None and criteria:
                    evaluation = await self.evaluator.evaluate_all(criteria, options.evaluation)
                    result = _criteria_verdict(callback_result, evaluation)

                if self._stop_requested:
                    continue
                if result.success:
                    return await self._finish(STATUS_SUCCESS, REASON_SUCCESS)

                if result.error:
                    last_error = result.error
                    run.last_error = result.error
                    self.store.update_run(run)

                text = result.output or result.error
                await manager.record_iteration(text if text else None)

                if iteration < run.max_iterations and not self._stop_requested:
                    await self._cooldown(cooldown_ms)

            if self._stop_requested:
                return await self._finish(STATUS_STOPPED, REASON_STOPPED, last_error)
            return await self._finish(
                STATUS_FAILED, REASON_MAX_ITERATIONS, last_error,
                details=f"Reached maximum iterations ({run.iterations}/{run.max_iterations})",
            )

        except Exception as e:
            logger.error("Loop aborted | run=%s | %s", run.id, e)
            return await self._finish(STATUS_FAILED, REASON_ERROR, str(e) or type(e).__name__)

    async def _invoke(self, ctx: IterationContext) -> IterationResult:
        try:
            outcome = self._iteration_callback(ctx)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            raise IterationError(str(e) or type(e).__name__) from e

        if not isinstance(outcome, IterationResult):
            raise IterationError(
                f"Iteration callback must return IterationResult, got {type(outcome).__name__}"
            )
        return outcome

    async def _cooldown(self, cooldown_ms: int) -> None:
        if cooldown_ms <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=cooldown_ms / 1000)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    async def _finish(
        self,
        status: str,
        reason: str,
        error: Optional[str] = None,
        details: Optional[str] = None,
    ) -> LoopResult:
        run = self._run

        # A stop() that landed mid-iteration already made the record terminal
        if run.status == STATUS_STOPPED:
            status, reason = STATUS_STOPPED, REASON_STOPPED
        else:
            run.status = status
            run.ended_at = utc_now()
        if error:
            run.last_error = error
        self.store.update_run(run)

        if status == STATUS_FAILED and self._restore_on_failure and run.snapshot_path:
            await self._restore_snapshot(run)

        result = LoopResult(
            success=status == STATUS_SUCCESS,
            iterations=run.iterations,
            reason=reason,
            run_id=run.id,
            error=error,
            details=details,
        )
        logger.info("Loop finished | run=%s | status=%s | reason=%s | iterations=%d",
                    run.id, status, reason, run.iterations)

        self._write_summary(run, status, reason, error)
        self._fire(self._complete_hooks, result)
        return result

    async def _restore_snapshot(self, run: LoopRun) -> None:
        try:
            restored = await asyncio.to_thread(self.snapshot_manager.restore, run.snapshot_path)
            logger.info("Restored %d file(s) after failed run %s", len(restored), run.id)
        except (LoopDriverError, OSError) as e:
            logger.error("Snapshot restore failed for run %s: %s", run.id, e)

    def _write_summary(self, run: LoopRun, status: str, reason: str, error: Optional[str]) -> None:
        status_text = _STATUS_TEXT.get(status, status)
        if status == STATUS_FAILED:
            status_text = f"{status_text} ({reason})"

        lines = [
            "Loop run complete",
            f"Task: {run.task}",
            f"Status: {status_text}",
            f"Iterations: {run.iterations}/{run.max_iterations}",
        ]
        if error:
            lines.append(f"Error: {error}")

        succeeded = status == STATUS_SUCCESS
        try:
            self.store.add_observation(Observation(
                scope_id=self.scope_id,
                type="success" if succeeded else "note",
                content="\n".join(lines),
                importance=0.9 if succeeded else 0.7,
                loop_run_id=run.id,
                iteration=run.iterations,
            ))
        except OSError as e:
            logger.error("Could not write loop summary for run %s: %s", run.id, e)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    def _fire(self, hooks: List[Hook], *args: Any) -> None:
        for hook in list(hooks):
            try:
                outcome = hook(*args)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._hook_tasks.add(task)
                    task.add_done_callback(self._hook_done)
            except Exception as e:
                logger.warning("Loop hook %s failed: %s", getattr(hook, "__name__", hook), e)

    def _hook_done(self, task: asyncio.Future) -> None:
        self._hook_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async loop hook failed: %s", task.exception())
