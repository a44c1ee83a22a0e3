"""
Loop Run Models
===============
Pydantic models for the persisted side of a loop.

LoopRun      — one execution of the control loop; mutated by the controller
               once per pass, immutable once its status is terminal.
Observation  — append-only note written to the run store, optionally tagged
               with the run id and iteration that produced it.
LoopResult   — what LoopController.start() resolves with.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from loopdriver.core.constants import TERMINAL_STATUSES
from loopdriver.models.success_criteria import SuccessCriteria

LoopStatus = Literal["running", "success", "failed", "stopped"]
LoopReason = Literal[
    "success", "max_iterations", "max_duration", "no_progress", "stopped", "error"
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoopRun(BaseModel):
    id: str
    scope_id: str
    task: str
    criteria: List[SuccessCriteria] = []
    status: LoopStatus = "running"
    iterations: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=10, gt=0)
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    snapshot_path: Optional[str] = None
    last_error: Optional[str] = None

    @field_validator("task")
    @classmethod
    def task_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("task must not be empty")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Observation(BaseModel):
    scope_id: str
    type: str = "note"
    content: str
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    loop_run_id: Optional[str] = None
    iteration: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class LoopResult(BaseModel):
    success: bool
    iterations: int
    reason: LoopReason
    run_id: str
    error: Optional[str] = None
    details: Optional[str] = None   # human-readable stop-condition detail
