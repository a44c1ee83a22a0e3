"""
Success Criteria Model
======================
Pydantic model describing one external success check.

Fields:
    type                — test_pass / build_success / lint_clean / type_check / custom
    command             — explicit shell command; overrides the per-type default
    timeout             — per-criterion timeout in milliseconds
    expected_exit_code  — exit code that counts as a pass (default 0)

A custom criterion without a command is accepted by the model so that the
evaluator can report it as a structured failure; configuration loading and
LoopController.start() reject it up front via validate_criteria().
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from loopdriver.core.exceptions import ConfigurationError

CriteriaType = Literal["test_pass", "build_success", "lint_clean", "type_check", "custom"]


class SuccessCriteria(BaseModel):
    type: CriteriaType
    command: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    expected_exit_code: Optional[int] = None

    @property
    def has_command(self) -> bool:
        return bool(self.command and self.command.strip())


def validate_criteria(criteria: List[SuccessCriteria]) -> None:
    """Raise ConfigurationError for custom criteria that carry no command."""
    for index, criterion in enumerate(criteria):
        if criterion.type == "custom" and not criterion.has_command:
            raise ConfigurationError(
                f"Custom criteria requires a command (criteria #{index + 1})"
            )
