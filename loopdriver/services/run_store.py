"""
Run Store
=========
Persistence collaborator for loop runs and observations.

Backends:
    InMemoryRunStore  — process-local, lost on exit (default)
    JsonlRunStore     — append-only JSON lines file, replayed on start-up

Guarantees:
    - begin_run() checks for a running run in the scope and creates the new
      one under a single lock (atomic check-then-create).
    - Updates to a run that is already terminal are ignored.
    - The store hands out copies; callers never share mutable records.

The loop controller only writes here. Nothing read back from the store
feeds a control decision.
"""
import os
import json
import logging
import threading
from typing import Dict, List, Optional

from loopdriver.core import config
from loopdriver.core.constants import STATUS_FAILED, STATUS_RUNNING
from loopdriver.core.exceptions import AlreadyRunningError
from loopdriver.models.loop_run import LoopRun, Observation, utc_now

logger = logging.getLogger(__name__)


class RunStore:
    """In-memory implementation; subclasses add durability via _append()."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, LoopRun] = {}
        self._active: Dict[str, str] = {}   # scope_id → run_id
        self._observations: List[Observation] = []

    # ------------------------------------------------------------------
    # Durability hook
    # ------------------------------------------------------------------
    def _append(self, kind: str, record: LoopRun | Observation) -> None:
        """Called under the lock after every accepted write."""

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def begin_run(self, run: LoopRun) -> LoopRun:
        """
        Persist ``run`` as the scope's running run.

        Raises
        ------
        AlreadyRunningError
            When the scope already has a running run; nothing is written.
        """
        with self._lock:
            active_id = self._active.get(run.scope_id)
            if active_id is not None and self._runs[active_id].status == STATUS_RUNNING:
                raise AlreadyRunningError(run.scope_id, active_id)

            stored = run.model_copy(deep=True)
            self._runs[stored.id] = stored
            self._active[stored.scope_id] = stored.id
            self._append("run", stored)
            return stored.model_copy(deep=True)

    def update_run(self, run: LoopRun) -> LoopRun:
        """Store ``run`` unless the stored record is already terminal."""
        with self._lock:
            current = self._runs.get(run.id)
            if current is not None and current.is_terminal:
                logger.debug("Ignoring update to terminal run %s (%s)", run.id, current.status)
                return current.model_copy(deep=True)

            stored = run.model_copy(deep=True)
            self._runs[stored.id] = stored
            if stored.is_terminal and self._active.get(stored.scope_id) == stored.id:
                del self._active[stored.scope_id]
            self._append("run", stored)
            return stored.model_copy(deep=True)

    def get_run(self, run_id: str) -> Optional[LoopRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def get_active_run(self, scope_id: str) -> Optional[LoopRun]:
        with self._lock:
            run_id = self._active.get(scope_id)
            if run_id is None:
                return None
            return self._runs[run_id].model_copy(deep=True)

    def list_runs(self, scope_id: Optional[str] = None) -> List[LoopRun]:
        with self._lock:
            return [
                r.model_copy(deep=True) for r in self._runs.values()
                if scope_id is None or r.scope_id == scope_id
            ]

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------
    def add_observation(self, observation: Observation) -> Observation:
        with self._lock:
            stored = observation.model_copy()
            self._observations.append(stored)
            self._append("observation", stored)
            return stored

    def list_observations(self, run_id: Optional[str] = None) -> List[Observation]:
        with self._lock:
            return [
                o.model_copy() for o in self._observations
                if run_id is None or o.loop_run_id == run_id
            ]


class InMemoryRunStore(RunStore):
    pass


class JsonlRunStore(RunStore):
    """
    Append-only JSON lines file: one ``{"kind": ..., "data": ...}`` per write.

    On start-up the file is replayed; the last record per run id wins.
    Runs left ``running`` by a previous process are closed as failed so the
    scope is not blocked forever.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._replay()

    def _append(self, kind: str, record: LoopRun | Observation) -> None:
        line = json.dumps({"kind": kind, "data": record.model_dump(mode="json")})
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _replay(self) -> None:
        if not os.path.isfile(self.path):
            return

        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                    if entry["kind"] == "run":
                        run = LoopRun.model_validate(entry["data"])
                        self._runs[run.id] = run
                    elif entry["kind"] == "observation":
                        self._observations.append(Observation.model_validate(entry["data"]))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Skipping unreadable line %d in %s: %s", lineno, self.path, e)

        with self._lock:
            for run in self._runs.values():
                if run.status == STATUS_RUNNING:
                    run.status = STATUS_FAILED
                    run.ended_at = utc_now()
                    run.last_error = "Interrupted: service exited while the run was active"
                    self._append("run", run)
                    logger.warning("Closed interrupted run %s (scope %s)", run.id, run.scope_id)

        logger.info("Replayed %d run(s) and %d observation(s) from %s",
                    len(self._runs), len(self._observations), self.path)


def build_run_store(path: Optional[str] = None) -> RunStore:
    """JSON lines store when a path is configured, in-memory otherwise."""
    path = path if path is not None else config.LOOP_STORE_PATH
    if path:
        return JsonlRunStore(path)
    return InMemoryRunStore()
