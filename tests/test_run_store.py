"""
Run Store Tests
===============
Atomic begin, terminal immutability, observations and JSON lines replay.
"""
import json
import threading

import pytest

from loopdriver.core.exceptions import AlreadyRunningError
from loopdriver.models.loop_run import LoopRun, Observation
from loopdriver.services.run_store import (
    InMemoryRunStore,
    JsonlRunStore,
    build_run_store,
)


def _run(run_id="r1", scope="s1", **kwargs):
    return LoopRun(id=run_id, scope_id=scope, task="fix tests", **kwargs)


class TestInMemoryRunStore:

    def test_second_running_run_in_scope_rejected(self):
        store = InMemoryRunStore()
        store.begin_run(_run("r1"))
        with pytest.raises(AlreadyRunningError, match="Loop already running: r1"):
            store.begin_run(_run("r2"))
        assert store.get_run("r2") is None

    def test_other_scopes_are_independent(self):
        store = InMemoryRunStore()
        store.begin_run(_run("r1", scope="a"))
        store.begin_run(_run("r2", scope="b"))
        assert store.get_active_run("a").id == "r1"
        assert store.get_active_run("b").id == "r2"

    def test_terminal_run_frees_scope_and_is_immutable(self):
        store = InMemoryRunStore()
        run = store.begin_run(_run("r1"))
        run.status = "stopped"
        store.update_run(run)

        run.status = "success"
        run.iterations = 7
        stored = store.update_run(run)

        assert stored.status == "stopped"
        assert stored.iterations == 0
        assert store.get_active_run("s1") is None
        store.begin_run(_run("r2"))

    def test_returns_copies(self):
        store = InMemoryRunStore()
        run = store.begin_run(_run("r1"))
        run.iterations = 5
        assert store.get_run("r1").iterations == 0

    def test_concurrent_begin_admits_exactly_one(self):
        store = InMemoryRunStore()
        errors = []
        barrier = threading.Barrier(8)

        def attempt(i):
            barrier.wait()
            try:
                store.begin_run(_run(f"r{i}"))
            except AlreadyRunningError as e:
                errors.append(e)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 7

    def test_observations_filtered_by_run(self):
        store = InMemoryRunStore()
        store.add_observation(Observation(scope_id="s1", content="a", loop_run_id="r1", iteration=1))
        store.add_observation(Observation(scope_id="s1", content="b"))
        assert [o.content for o in store.list_observations("r1")] == ["a"]
        assert len(store.list_observations()) == 2


class TestJsonlRunStore:

    def test_appends_and_replays(self, tmp_path):
        path = tmp_path / "state" / "runs.jsonl"
        store = JsonlRunStore(str(path))
        run = store.begin_run(_run("r1"))
        run.iterations = 2
        run.status = "failed"
        store.update_run(run)
        store.add_observation(Observation(scope_id="s1", content="done", loop_run_id="r1"))

        kinds = [json.loads(line)["kind"] for line in path.read_text().splitlines()]
        assert kinds == ["run", "run", "observation"]

        reloaded = JsonlRunStore(str(path))
        assert reloaded.get_run("r1").status == "failed"
        assert reloaded.get_run("r1").iterations == 2
        assert reloaded.list_observations("r1")[0].content == "done"

    def test_interrupted_runs_closed_on_replay(self, tmp_path):
        path = tmp_path / "runs.jsonl"
        JsonlRunStore(str(path)).begin_run(_run("r1"))

        reloaded = JsonlRunStore(str(path))

        run = reloaded.get_run("r1")
        assert run.status == "failed"
        assert run.last_error.startswith("Interrupted")
        reloaded.begin_run(_run("r2"))

    def test_unreadable_lines_skipped(self, tmp_path):
        path = tmp_path / "runs.jsonl"
        path.write_text("not json\n\n" + json.dumps({"kind": "observation", "data": {
            "scope_id": "s1", "content": "kept"}}) + "\n")
        store = JsonlRunStore(str(path))
        assert [o.content for o in store.list_observations()] == ["kept"]


def test_build_run_store_selects_backend(tmp_path):
    assert isinstance(build_run_store(""), InMemoryRunStore)
    assert isinstance(build_run_store(str(tmp_path / "r.jsonl")), JsonlRunStore)
