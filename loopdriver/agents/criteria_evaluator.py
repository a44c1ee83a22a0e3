"""
Criteria Evaluator
==================
Runs success checks as timeout-bounded shell commands and turns each one
into a structured pass/fail verdict.

Evaluation Flow (per criterion):
    1. Resolve the command (explicit → project type → default table)
    2. Run it under a deadline (criterion → options → CRITERIA_TIMEOUT_MS)
    3. Compare the exit code with expected_exit_code (default 0)
    4. On failure, extract suggestions from the output

Failure Semantics:
    - A timeout is a result (exit_code=-1), never an exception, never retried.
    - A custom criterion without a command is a result, never an exception.
    - evaluate_all() stops at the first failing criterion; later criteria
      are not executed and contribute no output block.
"""
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from loopdriver.core import config
from loopdriver.executor.command_resolver import resolve_command
from loopdriver.executor.command_runner import CommandResult, run_command
from loopdriver.executor.project_detector import detect_project_type
from loopdriver.models.success_criteria import SuccessCriteria
from loopdriver.parser.suggestions import extract_suggestions

logger = logging.getLogger(__name__)

TIMEOUT_SUGGESTION = "Increase timeout or optimize the command"

CommandRunner = Callable[..., Awaitable[CommandResult]]


@dataclass
class EvaluationOptions:
    """
    Per-call evaluation settings.

    Fields
    ------
    timeout : int | None
        Default timeout in milliseconds for criteria without their own.
    cwd : str | None
        Directory commands run in; also used for project-type detection.
    project_type : str | None
        Forces the default-command table; detected from ``cwd`` when None.
    env : dict | None
        Extra environment variables for every command.
    """
    timeout: Optional[int] = None
    cwd: Optional[str] = None
    project_type: Optional[str] = None
    env: Optional[Dict[str, str]] = None


@dataclass
class EvaluationResult:
    """Verdict for one criterion, or for a whole list via evaluate_all()."""
    success: bool
    output: str = ""
    reason: str = ""
    exit_code: Optional[int] = None
    suggestions: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class CriteriaEvaluator:
    """
    Evaluates SuccessCriteria by running their commands.

    The command runner is injectable so tests and embedders can observe or
    replace process execution without patching module globals.
    """

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self.runner = runner or run_command

    def _project_type(self, options: EvaluationOptions) -> Optional[str]:
        if options.project_type:
            return options.project_type
        if options.cwd:
            return detect_project_type(options.cwd)
        return None

    @staticmethod
    def _timeout_ms(criterion: SuccessCriteria, options: EvaluationOptions) -> int:
        if criterion.timeout:
            return criterion.timeout
        if options.timeout:
            return options.timeout
        return config.CRITERIA_TIMEOUT_MS

    async def evaluate(
        self,
        criterion: SuccessCriteria,
        options: Optional[EvaluationOptions] = None,
    ) -> EvaluationResult:
        """
        Run one success check.

        Returns
        -------
        EvaluationResult
            Never raises for timeouts, non-zero exits or missing commands.
        """
        options = options or EvaluationOptions()

        if criterion.type == "custom" and not criterion.has_command:
            return EvaluationResult(
                success=False,
                reason="Custom criteria requires a command",
                suggestions=["Add a command to the custom criterion"],
            )

        command = resolve_command(criterion, self._project_type(options))
        if not command:
            return EvaluationResult(success=False, reason="No command specified")

        timeout_ms = self._timeout_ms(criterion, options)
        logger.info("Evaluating %s | command=%s | timeout=%dms",
                    criterion.type, command, timeout_ms)

        result = await self.runner(
            command,
            cwd=options.cwd,
            timeout_seconds=timeout_ms / 1000,
            env=options.env,
        )

        if result.timed_out:
            logger.warning("%s timed out after %dms", criterion.type, timeout_ms)
            return EvaluationResult(
                success=False,
                output=result.output,
                reason="Command timed out",
                exit_code=-1,
                suggestions=[TIMEOUT_SUGGESTION],
                duration_seconds=result.execution_time_seconds,
            )

        expected = criterion.expected_exit_code if criterion.expected_exit_code is not None else 0
        success = result.exit_code == expected

        if success:
            reason = f"{criterion.type} passed"
            suggestions: List[str] = []
        else:
            reason = f"{criterion.type} failed with exit code {result.exit_code}"
            suggestions = extract_suggestions(criterion.type, result.stdout, result.stderr)

        logger.info("%s | exit=%d | time=%.2fs",
                    reason, result.exit_code, result.execution_time_seconds)

        return EvaluationResult(
            success=success,
            output=result.output,
            reason=reason,
            exit_code=result.exit_code,
            suggestions=suggestions,
            duration_seconds=result.execution_time_seconds,
        )

    async def evaluate_all(
        self,
        criteria: List[SuccessCriteria],
        options: Optional[EvaluationOptions] = None,
    ) -> EvaluationResult:
        """
        Evaluate ``criteria`` in order, stopping at the first failure.

        The combined output holds one ``[type]`` block per criterion that
        actually ran. An empty list succeeds.
        """
        if not criteria:
            return EvaluationResult(success=True, reason="No criteria to evaluate")

        blocks: List[str] = []
        total_duration = 0.0

        for criterion in criteria:
            result = await self.evaluate(criterion, options)
            blocks.append(f"[{criterion.type}]\n{result.output}")
            total_duration += result.duration_seconds

            if not result.success:
                return EvaluationResult(
                    success=False,
                    output="\n\n".join(blocks),
                    reason=result.reason,
                    exit_code=result.exit_code,
                    suggestions=result.suggestions,
                    duration_seconds=round(total_duration, 3),
                )

        return EvaluationResult(
            success=True,
            output="\n\n".join(blocks),
            reason=f"All {len(criteria)} criteria passed",
            exit_code=0,
            duration_seconds=round(total_duration, 3),
        )


# ---------------------------------------------------------------------------
# Judged evaluation
# ---------------------------------------------------------------------------
@dataclass
class CriteriaJudgment:
    """What an external judge decided about a finished check."""
    success: bool
    reason: str = ""
    suggestions: List[str] = field(default_factory=list)


CriteriaJudge = Callable[[SuccessCriteria, str, int], Awaitable[CriteriaJudgment]]


class JudgedCriteriaEvaluator(CriteriaEvaluator):
    """
    Lets an injected async judge classify a finished command.

    The judge sees (criterion, output, exit_code). Timeouts and criteria that
    never produced an exit code keep the base verdict, and a judge that
    raises falls back to the base verdict as well.
    """

    def __init__(self, judge: CriteriaJudge, runner: Optional[CommandRunner] = None) -> None:
        super().__init__(runner)
        self.judge = judge

    async def evaluate(
        self,
        criterion: SuccessCriteria,
        options: Optional[EvaluationOptions] = None,
    ) -> EvaluationResult:
        base = await super().evaluate(criterion, options)
        if base.exit_code is None or base.exit_code == -1:
            return base

        try:
            judgment = await self.judge(criterion, base.output, base.exit_code)
        except Exception as e:
            logger.warning("Criteria judge failed for %s, using exit code: %s",
                           criterion.type, e)
            return base

        return EvaluationResult(
            success=judgment.success,
            output=base.output,
            reason=judgment.reason or base.reason,
            exit_code=base.exit_code,
            suggestions=judgment.suggestions or ([] if judgment.success else base.suggestions),
            duration_seconds=base.duration_seconds,
        )
