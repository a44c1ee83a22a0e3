"""
Loop Endpoints
==============
Start, inspect and stop command-driven loops, one per scope.

Routes:
    POST /loops/{scope_id}/run     — start in the background (202)
    GET  /loops/{scope_id}/status  — running flag, loop context, run record
    POST /loops/{scope_id}/stop    — cooperative stop
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from loopdriver.agents.criteria_evaluator import EvaluationOptions
from loopdriver.agents.loop_controller import LoopOptions
from loopdriver.core.exceptions import AlreadyRunningError, ConfigurationError
from loopdriver.models.loop_run import LoopResult, LoopRun
from loopdriver.models.success_criteria import SuccessCriteria
from loopdriver.services.loop_registry import LoopRegistry, get_loop_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/loops", tags=["Loops"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class RunLoopRequest(BaseModel):
    task: str
    work_command: Optional[str] = None
    criteria: Optional[List[SuccessCriteria]] = None
    max_iterations: Optional[int] = Field(default=None, gt=0)
    cooldown_ms: Optional[int] = Field(default=None, ge=0)
    max_duration_ms: Optional[int] = Field(default=None, gt=0)
    no_progress_threshold: Optional[int] = Field(default=None, gt=0)
    criteria_timeout_ms: Optional[int] = Field(default=None, gt=0)
    iteration_timeout_ms: Optional[int] = Field(default=None, gt=0)
    snapshot: bool = False
    restore_on_failure: bool = False

    @field_validator("task")
    @classmethod
    def task_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("task must not be empty")
        return v

    @field_validator("criteria")
    @classmethod
    def custom_needs_command(cls, v: Optional[List[SuccessCriteria]]) -> Optional[List[SuccessCriteria]]:
        for index, criterion in enumerate(v or []):
            if criterion.type == "custom" and not criterion.has_command:
                raise ValueError(f"Custom criteria requires a command (criteria #{index + 1})")
        return v


class RunLoopResponse(BaseModel):
    scope_id: str
    run_id: str
    status: str


class LoopContextOut(BaseModel):
    run_id: str
    iteration: int


class LoopStatusResponse(BaseModel):
    scope_id: str
    running: bool
    context: Optional[LoopContextOut] = None
    run: Optional[LoopRun] = None
    last_result: Optional[LoopResult] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/{scope_id}/run", response_model=RunLoopResponse, status_code=202)
async def run_loop(
    scope_id: str,
    request: RunLoopRequest,
    registry: LoopRegistry = Depends(get_loop_registry),
):
    options = LoopOptions(
        criteria=request.criteria,
        max_iterations=request.max_iterations,
        cooldown_ms=request.cooldown_ms,
        max_duration_ms=request.max_duration_ms,
        no_progress_threshold=request.no_progress_threshold,
        evaluation=EvaluationOptions(
            timeout=request.criteria_timeout_ms or registry.loop_config.criteria_timeout_ms,
            cwd=registry.project_root,
        ),
        snapshot=request.snapshot,
        restore_on_failure=request.restore_on_failure,
    )

    try:
        run = await registry.launch(
            scope_id,
            request.task,
            options,
            work_command=request.work_command,
            iteration_timeout_ms=request.iteration_timeout_ms,
        )
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return RunLoopResponse(scope_id=scope_id, run_id=run.id, status=run.status)


@router.get("/{scope_id}/status", response_model=LoopStatusResponse)
async def loop_status(scope_id: str, registry: LoopRegistry = Depends(get_loop_registry)):
    controller = registry.get_controller(scope_id)
    context = controller.get_loop_context() if controller else None
    current = controller.get_current_run() if controller else None
    return LoopStatusResponse(
        scope_id=scope_id,
        running=controller is not None and controller.is_running(),
        context=LoopContextOut(run_id=context.run_id, iteration=context.iteration) if context else None,
        run=current or registry.store.get_active_run(scope_id),
        last_result=registry.last_results.get(scope_id),
    )


@router.post("/{scope_id}/stop")
async def stop_loop(scope_id: str, registry: LoopRegistry = Depends(get_loop_registry)):
    if not registry.stop(scope_id):
        raise HTTPException(status_code=404, detail=f"No running loop for scope {scope_id}")
    logger.info("Stop requested via API | scope=%s", scope_id)
    return {"scope_id": scope_id, "stop_requested": True}
