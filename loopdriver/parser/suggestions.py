"""
Failure Suggestions
===================
Turns the combined output of a failed success check into a short list of
actionable hints.

Contract:
    - DETERMINISTIC: same output → same suggestions.
    - Regex and substring matching only, keyed by criteria type.
    - Best-effort: never raises; a parsing problem yields fewer hints.
"""
import re
import logging
from typing import List

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
_MAX_NAMES = 3


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
# pytest: FAILED tests/test_foo.py::TestClass::test_method - AssertionError
_PYTEST_FAILED = re.compile(r"^FAILED\s+(\S+::\S+)", re.MULTILINE)

# jest / vitest: FAIL src/foo.test.ts
_JEST_FAIL = re.compile(r"^[ \t]*FAIL[ \t]+([\w./\\-]+)", re.MULTILINE)

# go test: --- FAIL: TestName (0.00s)
_GO_FAIL = re.compile(r"^--- FAIL:\s+(\S+)", re.MULTILINE)

_RUNTIME_ERROR_MARKERS = ("TypeError", "ReferenceError", "AttributeError", "NameError")

_MISSING_MODULE = re.compile(
    r"Cannot find module ['\"]([^'\"]+)['\"]"
    r"|No module named ['\"]([^'\"]+)['\"]"
)

_SYNTAX_ERROR = re.compile(r"\bSyntaxError\b")

# tsc: src/a.ts(3,7): error TS2322: Type ...
_TS_CODE = re.compile(r"\b(TS\d{3,5}):")

# mypy: src/a.py:3: error: Incompatible types ...  [assignment]
_MYPY_CODE = re.compile(r":\s*error:.*\[([a-z][a-z0-9-]*)\]\s*$", re.MULTILINE)

# eslint "✖ 5 problems (3 errors, 2 warnings)", ruff "Found 3 errors."
_ERROR_COUNT = re.compile(r"\b(\d+)\s+errors?\b", re.IGNORECASE)
_WARNING_COUNT = re.compile(r"\b(\d+)\s+warnings?\b", re.IGNORECASE)
_ERROR_WORD = re.compile(r"\berror\b", re.IGNORECASE)
_WARNING_WORD = re.compile(r"\bwarning\b", re.IGNORECASE)


def _unique(items: List[str]) -> List[str]:
    seen: set[str] = set()
    ordered = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def _max_count(pattern: re.Pattern, output: str) -> int:
    counts = [int(m) for m in pattern.findall(output)]
    return max(counts) if counts else 0


# ---------------------------------------------------------------------------
# Per-type extractors
# ---------------------------------------------------------------------------
def _test_suggestions(output: str) -> List[str]:
    suggestions = []
    failed = _unique(
        _PYTEST_FAILED.findall(output)
        + _JEST_FAIL.findall(output)
        + _GO_FAIL.findall(output)
    )
    if failed:
        suggestions.append(f"Fix failing tests: {', '.join(failed[:_MAX_NAMES])}")
    if any(marker in output for marker in _RUNTIME_ERROR_MARKERS):
        suggestions.append("Check for runtime errors in test files")
    suggestions.extend(_missing_module_suggestions(output))
    return suggestions


def _missing_module_suggestions(output: str) -> List[str]:
    modules = _unique([a or b for a, b in _MISSING_MODULE.findall(output)])
    if not modules:
        return []
    return [f"Install missing dependencies: {', '.join(modules[:_MAX_NAMES])}"]


def _build_suggestions(output: str) -> List[str]:
    suggestions = _missing_module_suggestions(output)
    if _SYNTAX_ERROR.search(output):
        suggestions.append("Fix syntax errors in source files")
    return suggestions


def _type_check_suggestions(output: str) -> List[str]:
    suggestions = []
    ts_codes = _unique(_TS_CODE.findall(output))
    if ts_codes:
        suggestions.append(f"Fix TypeScript errors: {', '.join(ts_codes[:_MAX_NAMES])}")
    mypy_codes = _unique(_MYPY_CODE.findall(output))
    if mypy_codes:
        suggestions.append(f"Fix type errors: {', '.join(mypy_codes[:_MAX_NAMES])}")
    return suggestions


def _lint_suggestions(output: str) -> List[str]:
    suggestions = []
    errors = _max_count(_ERROR_COUNT, output)
    warnings = _max_count(_WARNING_COUNT, output)

    if errors:
        suggestions.append(f"Fix {errors} linting error(s)")
    elif _ERROR_WORD.search(output) and not _ERROR_COUNT.search(output):
        suggestions.append("Fix linting errors")

    if warnings:
        suggestions.append(f"Consider fixing {warnings} linting warning(s)")
    elif _WARNING_WORD.search(output) and not _WARNING_COUNT.search(output):
        suggestions.append("Consider fixing linting warnings")
    return suggestions


_EXTRACTORS = {
    "test_pass": _test_suggestions,
    "build_success": _build_suggestions,
    "type_check": _type_check_suggestions,
    "lint_clean": _lint_suggestions,
}


def extract_suggestions(criteria_type: str, stdout: str, stderr: str = "") -> List[str]:
    """
    Derive hints from a failed check's output.

    Parameters
    ----------
    criteria_type : str
        Criteria type that produced the output; custom criteria get none.
    stdout, stderr : str
        Raw streams; matched as one combined string.

    Returns
    -------
    list[str]
        At most MAX_SUGGESTIONS hints, possibly empty.
    """
    extractor = _EXTRACTORS.get(criteria_type)
    if extractor is None:
        return []

    try:
        suggestions = extractor((stdout or "") + (stderr or ""))
    except Exception as e:
        logger.debug("Suggestion extraction failed for %s: %s", criteria_type, e)
        return []
    return _unique(suggestions)[:MAX_SUGGESTIONS]
