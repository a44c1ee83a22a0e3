"""
Criteria Evaluator Tests
========================
Command resolution, timeout precedence, short-circuiting and judged
evaluation. A fake runner records every command instead of spawning it;
one test exercises a real shell timeout.
"""
import os
import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from loopdriver.agents.criteria_evaluator import (
    CriteriaEvaluator,
    CriteriaJudgment,
    EvaluationOptions,
    JudgedCriteriaEvaluator,
    TIMEOUT_SUGGESTION,
)
from loopdriver.executor.command_resolver import resolve_command
from loopdriver.executor.command_runner import CommandResult
from loopdriver.models.success_criteria import SuccessCriteria


class FakeRunner:
    """Returns canned results keyed by command and records calls."""

    def __init__(self, results=None, default=None):
        self.results = results or {}
        self.default = default or CommandResult(exit_code=0, stdout="ok\n")
        self.calls = []

    async def __call__(self, command, cwd=None, timeout_seconds=120.0, env=None):
        self.calls.append({"command": command, "cwd": cwd, "timeout": timeout_seconds, "env": env})
        return self.results.get(command, self.default)


# ---------------------------------------------------------------------------
# 1. Command resolution
# ---------------------------------------------------------------------------
class TestResolveCommand:

    def test_explicit_command_wins(self):
        criterion = SuccessCriteria(type="test_pass", command="  pytest -q ")
        assert resolve_command(criterion, "node") == "pytest -q"

    @pytest.mark.parametrize("ctype,expected", [
        ("test_pass", "npm test"),
        ("build_success", "npm run build"),
        ("lint_clean", "npm run lint"),
        ("type_check", "npx tsc --noEmit"),
    ])
    def test_default_table(self, ctype, expected):
        assert resolve_command(SuccessCriteria(type=ctype)) == expected

    def test_project_type_table(self):
        assert resolve_command(SuccessCriteria(type="test_pass"), "python") == "pytest"
        assert resolve_command(SuccessCriteria(type="type_check"), "rust") == "cargo check"

    def test_unknown_project_type_falls_back(self):
        assert resolve_command(SuccessCriteria(type="test_pass"), "cobol") == "npm test"

    def test_custom_without_command(self):
        assert resolve_command(SuccessCriteria(type="custom")) is None


# ---------------------------------------------------------------------------
# 2. evaluate()
# ---------------------------------------------------------------------------
class TestEvaluate:

    def test_pass(self):
        runner = FakeRunner()
        result = asyncio.run(CriteriaEvaluator(runner).evaluate(SuccessCriteria(type="test_pass")))
        assert result.success is True
        assert result.reason == "test_pass passed"
        assert result.exit_code == 0
        assert result.suggestions == []
        assert runner.calls[0]["command"] == "npm test"

    def test_failure_carries_exit_code_and_suggestions(self):
        runner = FakeRunner(default=CommandResult(
            exit_code=1,
            stdout="FAILED tests/test_a.py::test_one - assert 1 == 2\n",
        ))
        result = asyncio.run(CriteriaEvaluator(runner).evaluate(
            SuccessCriteria(type="test_pass", command="pytest")))
        assert result.success is False
        assert result.reason == "test_pass failed with exit code 1"
        assert result.suggestions == ["Fix failing tests: tests/test_a.py::test_one"]

    def test_expected_exit_code(self):
        runner = FakeRunner(default=CommandResult(exit_code=3))
        criterion = SuccessCriteria(type="custom", command="./check.sh", expected_exit_code=3)
        assert asyncio.run(CriteriaEvaluator(runner).evaluate(criterion)).success is True

    def test_custom_without_command_is_structured_failure(self):
        runner = FakeRunner()
        result = asyncio.run(CriteriaEvaluator(runner).evaluate(SuccessCriteria(type="custom")))
        assert result.success is False
        assert result.reason == "Custom criteria requires a command"
        assert runner.calls == []

    def test_timeout_is_structured(self):
        runner = FakeRunner(default=CommandResult(exit_code=-1, stdout="partial", timed_out=True))
        result = asyncio.run(CriteriaEvaluator(runner).evaluate(SuccessCriteria(type="build_success")))
        assert result.success is False
        assert result.exit_code == -1
        assert result.reason == "Command timed out"
        assert result.suggestions == [TIMEOUT_SUGGESTION]
        assert len(runner.calls) == 1

    def test_timeout_precedence(self):
        async def run_test():
            runner = FakeRunner()
            evaluator = CriteriaEvaluator(runner)
            await evaluator.evaluate(SuccessCriteria(type="test_pass", timeout=500),
                                     EvaluationOptions(timeout=2000))
            await evaluator.evaluate(SuccessCriteria(type="test_pass"), EvaluationOptions(timeout=2000))
            with patch("loopdriver.core.config.CRITERIA_TIMEOUT_MS", 7000):
                await evaluator.evaluate(SuccessCriteria(type="test_pass"))
            return [c["timeout"] for c in runner.calls]

        assert asyncio.run(run_test()) == [0.5, 2.0, 7.0]

    def test_project_type_detected_from_cwd(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project]\n")
        runner = FakeRunner()
        asyncio.run(CriteriaEvaluator(runner).evaluate(
            SuccessCriteria(type="lint_clean"), EvaluationOptions(cwd=str(tmp_path))))
        assert runner.calls[0]["command"] == "ruff check ."
        assert runner.calls[0]["cwd"] == str(tmp_path)


# ---------------------------------------------------------------------------
# 3. evaluate_all()
# ---------------------------------------------------------------------------
class TestEvaluateAll:

    def test_empty_list_succeeds(self):
        result = asyncio.run(CriteriaEvaluator(FakeRunner()).evaluate_all([]))
        assert result.success is True

    def test_short_circuits_on_second_failure(self):
        runner = FakeRunner(results={
            "check-one": CommandResult(exit_code=0, stdout="one ok"),
            "check-two": CommandResult(exit_code=2, stdout="two broke"),
            "check-three": CommandResult(exit_code=0, stdout="three ok"),
        })
        criteria = [
            SuccessCriteria(type="custom", command="check-one"),
            SuccessCriteria(type="build_success", command="check-two"),
            SuccessCriteria(type="test_pass", command="check-three"),
        ]

        result = asyncio.run(CriteriaEvaluator(runner).evaluate_all(criteria))

        assert result.success is False
        assert [c["command"] for c in runner.calls] == ["check-one", "check-two"]
        assert result.output.count("[") == 2
        assert result.output == "[custom]\none ok\n\n[build_success]\ntwo broke"
        assert result.reason == "build_success failed with exit code 2"

    def test_type_check_failure_skips_tests(self):
        runner = FakeRunner(results={
            "npx tsc --noEmit": CommandResult(exit_code=2, stdout="src/a.ts(1,1): error TS2304: Cannot find name 'x'.\n"),
        })
        criteria = [SuccessCriteria(type="type_check"), SuccessCriteria(type="test_pass")]

        result = asyncio.run(CriteriaEvaluator(runner).evaluate_all(criteria))

        assert result.success is False
        assert result.reason.startswith("type_check failed")
        assert result.suggestions == ["Fix TypeScript errors: TS2304"]
        assert all(c["command"] != "npm test" for c in runner.calls)

    def test_all_pass(self):
        result = asyncio.run(CriteriaEvaluator(FakeRunner()).evaluate_all(
            [SuccessCriteria(type="lint_clean"), SuccessCriteria(type="test_pass")]))
        assert result.success is True
        assert result.reason == "All 2 criteria passed"


# ---------------------------------------------------------------------------
# 4. Judged evaluation
# ---------------------------------------------------------------------------
class TestJudgedEvaluator:

    def test_judge_overrides_exit_code(self):
        judge = AsyncMock(return_value=CriteriaJudgment(success=True, reason="only flaky test failed"))
        runner = FakeRunner(default=CommandResult(exit_code=1, stdout="1 flaky"))
        result = asyncio.run(JudgedCriteriaEvaluator(judge, runner).evaluate(SuccessCriteria(type="test_pass")))
        assert result.success is True
        assert result.reason == "only flaky test failed"

    def test_timeout_bypasses_judge(self):
        judge = AsyncMock()
        runner = FakeRunner(default=CommandResult(exit_code=-1, timed_out=True))
        result = asyncio.run(JudgedCriteriaEvaluator(judge, runner).evaluate(SuccessCriteria(type="test_pass")))
        assert result.reason == "Command timed out"
        judge.assert_not_called()

    def test_judge_error_falls_back(self):
        judge = AsyncMock(side_effect=RuntimeError("judge down"))
        runner = FakeRunner(default=CommandResult(exit_code=1))
        result = asyncio.run(JudgedCriteriaEvaluator(judge, runner).evaluate(SuccessCriteria(type="test_pass")))
        assert result.success is False
        assert result.reason == "test_pass failed with exit code 1"


# ---------------------------------------------------------------------------
# 5. Real process timeout
# ---------------------------------------------------------------------------
@pytest.mark.skipif(os.name != "posix", reason="needs a POSIX shell")
def test_real_command_is_killed_at_deadline():
    criterion = SuccessCriteria(type="custom", command="echo started; sleep 30", timeout=1000)
    result = asyncio.run(CriteriaEvaluator().evaluate(criterion))
    assert result.success is False
    assert result.exit_code == -1
    assert result.reason == "Command timed out"
    assert "started" in result.output
    assert result.duration_seconds < 10
