"""
Command Resolver
================
Maps a success-criteria type to the shell command that checks it.

Resolution order:
    1. The criterion's explicit ``command``
    2. The project-type table, when a project type is known
    3. The fixed default table (npm / tsc)

Resolver never executes commands; it only returns strings.
Custom criteria have no default; resolve_command() returns None for them.
"""
from dataclasses import dataclass
from typing import Optional

from loopdriver.models.success_criteria import SuccessCriteria


@dataclass(frozen=True)
class ProjectCommands:
    """
    Immutable per-toolchain command set.

    Fields
    ------
    project_type : str
        Toolchain these commands belong to.
    test_command / build_command / lint_command / type_check_command : str
        Command used for test_pass / build_success / lint_clean / type_check.
    """
    project_type: str
    test_command: str
    build_command: str
    lint_command: str
    type_check_command: str

    def for_type(self, criteria_type: str) -> Optional[str]:
        return {
            "test_pass": self.test_command,
            "build_success": self.build_command,
            "lint_clean": self.lint_command,
            "type_check": self.type_check_command,
        }.get(criteria_type)


# Fixed defaults used when no project type is known
DEFAULT_COMMANDS = ProjectCommands(
    project_type="default",
    test_command="npm test",
    build_command="npm run build",
    lint_command="npm run lint",
    type_check_command="npx tsc --noEmit",
)

_COMMAND_MAP: dict[str, ProjectCommands] = {
    "node": DEFAULT_COMMANDS,
    "python": ProjectCommands(
        project_type="python",
        test_command="pytest",
        build_command="pip install -e .",
        lint_command="ruff check .",
        type_check_command="mypy .",
    ),
    "go": ProjectCommands(
        project_type="go",
        test_command="go test ./...",
        build_command="go build ./...",
        lint_command="go vet ./...",
        type_check_command="go vet ./...",
    ),
    "rust": ProjectCommands(
        project_type="rust",
        test_command="cargo test",
        build_command="cargo build",
        lint_command="cargo clippy -- -D warnings",
        type_check_command="cargo check",
    ),
    "java": ProjectCommands(
        project_type="java",
        test_command="mvn test",
        build_command="mvn compile",
        lint_command="mvn checkstyle:check",
        type_check_command="mvn compile",
    ),
}


def resolve_command(
    criterion: SuccessCriteria,
    project_type: Optional[str] = None,
) -> Optional[str]:
    """
    Return the command for ``criterion``, or None when nothing applies.

    Parameters
    ----------
    criterion : SuccessCriteria
        The check to resolve.
    project_type : str | None
        Detected toolchain; unknown values fall back to DEFAULT_COMMANDS.
    """
    if criterion.has_command:
        return criterion.command.strip()
    if criterion.type == "custom":
        return None

    commands = _COMMAND_MAP.get(project_type or "", DEFAULT_COMMANDS)
    return commands.for_type(criterion.type)

