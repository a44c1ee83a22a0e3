"""
Loop Registry
=============
Owns one LoopController per scope for the HTTP service and runs each loop
as a background asyncio task.

Each iteration runs the request's ``work_command`` (if any) in the project
root with the loop context in the environment:

    LOOP_TASK       — task text
    LOOP_ITERATION  — 1-based iteration number
    LOOP_RUN_ID     — run id

Success is decided by the success criteria after every iteration.
"""
import asyncio
import logging
from functools import partial
from typing import Dict, Optional

from fastapi import Request

from loopdriver.agents.criteria_evaluator import CriteriaEvaluator
from loopdriver.agents.loop_controller import (
    IterationContext,
    IterationResult,
    LoopController,
    LoopOptions,
)
from loopdriver.agents.progress_detector import ProgressDetector
from loopdriver.agents.snapshot_manager import SnapshotManager
from loopdriver.core.config import LoopConfig, load_loop_config
from loopdriver.core.exceptions import AlreadyRunningError
from loopdriver.executor.command_runner import create_log_excerpt, run_command
from loopdriver.models.loop_run import LoopResult, LoopRun
from loopdriver.services.run_store import RunStore, build_run_store

logger = logging.getLogger(__name__)


class CommandIteration:
    """Iteration callback that runs one shell command per pass."""

    def __init__(
        self,
        work_command: Optional[str],
        cwd: str,
        timeout_ms: int,
        runner=run_command,
    ) -> None:
        self.work_command = work_command
        self.cwd = cwd
        self.timeout_ms = timeout_ms
        self.runner = runner

    async def __call__(self, ctx: IterationContext) -> IterationResult:
        if not self.work_command:
            # Work happens elsewhere; this pass only re-checks the criteria
            return IterationResult(success=False)

        result = await self.runner(
            self.work_command,
            cwd=self.cwd,
            timeout_seconds=self.timeout_ms / 1000,
            env={
                "LOOP_TASK": ctx.task,
                "LOOP_ITERATION": str(ctx.iteration),
                "LOOP_RUN_ID": ctx.run_id,
            },
        )

        if result.timed_out:
            error = f"Work command timed out after {self.timeout_ms}ms"
        elif result.exit_code != 0:
            error = f"Work command failed with exit code {result.exit_code}"
        else:
            error = None
        return IterationResult(
            success=error is None,
            output=create_log_excerpt(result.output),
            error=error,
        )


class LoopRegistry:
    """Per-scope controllers and their background tasks."""

    def __init__(
        self,
        project_root: str,
        store: Optional[RunStore] = None,
        loop_config: Optional[LoopConfig] = None,
        progress_detector: Optional[ProgressDetector] = None,
        runner=run_command,
    ) -> None:
        self.project_root = project_root
        self.store = store or build_run_store()
        self.loop_config = loop_config or load_loop_config(project_root)
        self.progress_detector = progress_detector
        self.runner = runner
        self.evaluator = CriteriaEvaluator(runner)
        self.snapshot_manager = SnapshotManager(project_root)

        self._controllers: Dict[str, LoopController] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.last_results: Dict[str, LoopResult] = {}

    def controller(self, scope_id: str) -> LoopController:
        if scope_id not in self._controllers:
            controller = LoopController(
                scope_id,
                store=self.store,
                config=self.loop_config,
                evaluator=self.evaluator,
                progress_detector=self.progress_detector,
                snapshot_manager=self.snapshot_manager,
            )
            controller.on_complete(partial(self._record_result, scope_id))
            self._controllers[scope_id] = controller
        return self._controllers[scope_id]

    def get_controller(self, scope_id: str) -> Optional[LoopController]:
        """Existing controller for the scope, without creating one."""
        return self._controllers.get(scope_id)

    def _record_result(self, scope_id: str, result: LoopResult) -> None:
        self.last_results[scope_id] = result

    def is_busy(self, scope_id: str) -> bool:
        task = self._tasks.get(scope_id)
        return task is not None and not task.done()

    def any_busy(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def launch(
        self,
        scope_id: str,
        task: str,
        options: LoopOptions,
        work_command: Optional[str] = None,
        iteration_timeout_ms: Optional[int] = None,
    ) -> LoopRun:
        """
        Start a loop in the background and return its run record.

        Raises
        ------
        AlreadyRunningError
            The scope still has a loop task in flight.
        ConfigurationError
            Raised by LoopController.start() before the run exists.
        """
        controller = self.controller(scope_id)
        if self.is_busy(scope_id):
            current = controller.get_current_run()
            raise AlreadyRunningError(scope_id, current.id if current else "unknown")

        controller.on_iteration(CommandIteration(
            work_command,
            cwd=self.project_root,
            timeout_ms=iteration_timeout_ms or self.loop_config.max_duration_ms,
            runner=self.runner,
        ))

        loop_task = asyncio.create_task(controller.start(task, options), name=f"loop-{scope_id}")
        self._tasks[scope_id] = loop_task
        loop_task.add_done_callback(partial(self._task_done, scope_id))

        # start() validates and creates the run before its first suspension
        await asyncio.sleep(0)
        if loop_task.done() and not loop_task.cancelled() and loop_task.exception() is not None:
            raise loop_task.exception()

        run = controller.get_current_run()
        logger.info("Launched loop | scope=%s | run=%s", scope_id, run.id if run else "?")
        return run

    def _task_done(self, scope_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(scope_id) is task:
            del self._tasks[scope_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Loop task for %s ended with %r", scope_id, task.exception())

    def stop(self, scope_id: str) -> bool:
        """Request a cooperative stop; False when nothing is running."""
        controller = self.get_controller(scope_id)
        if controller is None or not self.is_busy(scope_id):
            return False
        controller.stop()
        return True

    async def shutdown(self) -> None:
        """Stop every loop and wait for the tasks to unwind."""
        for scope_id in list(self._tasks):
            self.stop(scope_id)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def get_loop_registry(request: Request) -> LoopRegistry:
    """FastAPI dependency: the registry created at application start-up."""
    return request.app.state.loop_registry
