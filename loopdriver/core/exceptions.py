"""
Exceptions
==========
Error taxonomy for the loop driver.

Only configuration problems, concurrent starts and snapshot restore
failures surface as exceptions. Command timeouts and failed checks are
structured EvaluationResults, and a raising iteration callback is turned
into a terminal LoopResult with reason "error".
"""


class LoopDriverError(Exception):
    """Base class for all loop driver errors."""


class ConfigurationError(LoopDriverError):
    """Invalid or missing configuration detected before any state changed."""


class AlreadyRunningError(LoopDriverError):
    """A running loop already exists for the scope."""

    def __init__(self, scope_id: str, run_id: str) -> None:
        self.scope_id = scope_id
        self.run_id = run_id
        super().__init__(
            f"Loop already running: {run_id} (scope {scope_id}). Stop it first with stop()."
        )


class IterationError(LoopDriverError):
    """The iteration callback misbehaved; aborts the run at the loop boundary."""


class SnapshotNotFoundError(LoopDriverError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Snapshot not found: {path}")


class InvalidSnapshotError(LoopDriverError):
    def __init__(self, path: str, detail: str = "missing metadata") -> None:
        self.path = path
        super().__init__(f"Invalid snapshot: {detail} at {path}")
