"""
Suggestion Extraction Tests
===========================
Pattern matching over real-looking tool output, per criteria type.
"""
import pytest
from unittest.mock import MagicMock, patch

from loopdriver.parser.suggestions import MAX_SUGGESTIONS, extract_suggestions


class TestTestPass:

    def test_pytest_failures_first_three(self):
        output = "\n".join([
            "FAILED tests/test_a.py::test_one - assert False",
            "FAILED tests/test_a.py::test_two - assert False",
            "FAILED tests/test_b.py::TestX::test_three - KeyError",
            "FAILED tests/test_b.py::TestX::test_four - KeyError",
        ])
        assert extract_suggestions("test_pass", output) == [
            "Fix failing tests: tests/test_a.py::test_one, tests/test_a.py::test_two, "
            "tests/test_b.py::TestX::test_three"
        ]

    def test_jest_failure_and_runtime_error(self):
        output = " FAIL  src/app.test.js\n  TypeError: Cannot read properties of undefined\n"
        assert extract_suggestions("test_pass", output) == [
            "Fix failing tests: src/app.test.js",
            "Check for runtime errors in test files",
        ]

    def test_go_failures(self):
        assert extract_suggestions("test_pass", "--- FAIL: TestParse (0.00s)\nFAIL\n") == [
            "Fix failing tests: TestParse"
        ]

    def test_clean_output_has_no_suggestions(self):
        assert extract_suggestions("test_pass", "5 passed in 0.12s") == []


class TestBuild:

    def test_missing_modules_from_both_ecosystems(self):
        stderr = (
            "Error: Cannot find module 'express'\n"
            "ModuleNotFoundError: No module named 'requests'\n"
        )
        assert extract_suggestions("build_success", "", stderr) == [
            "Install missing dependencies: express, requests"
        ]

    def test_syntax_error(self):
        assert extract_suggestions("build_success", "SyntaxError: invalid syntax") == [
            "Fix syntax errors in source files"
        ]


class TestTypeCheck:

    def test_typescript_codes_unique(self):
        output = (
            "src/a.ts(1,5): error TS2322: Type 'string' is not assignable.\n"
            "src/b.ts(9,1): error TS2322: Type 'number' is not assignable.\n"
            "src/c.ts(2,2): error TS7006: Parameter 'x' implicitly has an 'any' type.\n"
        )
        assert extract_suggestions("type_check", output) == ["Fix TypeScript errors: TS2322, TS7006"]

    def test_mypy_codes(self):
        output = (
            'app/x.py:3: error: Incompatible return value type  [return-value]\n'
            'app/y.py:8: error: Name "foo" is not defined  [name-defined]\n'
            "Found 2 errors in 2 files (checked 4 source files)\n"
        )
        assert extract_suggestions("type_check", output) == [
            "Fix type errors: return-value, name-defined"
        ]


class TestLint:

    def test_eslint_summary_counts(self):
        output = "✖ 5 problems (3 errors, 2 warnings)\n"
        assert extract_suggestions("lint_clean", output) == [
            "Fix 3 linting error(s)",
            "Consider fixing 2 linting warning(s)",
        ]

    def test_ruff_summary(self):
        assert extract_suggestions("lint_clean", "Found 4 errors.\n") == ["Fix 4 linting error(s)"]

    def test_word_fallbacks(self):
        output = "src/a.js: error no-unused-vars\nsrc/b.js: warning eqeqeq\n"
        assert extract_suggestions("lint_clean", output) == [
            "Fix linting errors",
            "Consider fixing linting warnings",
        ]


class TestContract:

    def test_custom_criteria_get_nothing(self):
        assert extract_suggestions("custom", "FAILED a::b") == []

    def test_never_raises(self):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        with patch.dict("loopdriver.parser.suggestions._EXTRACTORS", {"test_pass": failing}):
            assert extract_suggestions("test_pass", "anything") == []

    def test_capped(self):
        # Patterns for every extractor at once still yields at most MAX_SUGGESTIONS
        output = "FAILED a::b\nTypeError\nCannot find module 'x'\n"
        assert len(extract_suggestions("test_pass", output)) <= MAX_SUGGESTIONS

    @pytest.mark.parametrize("ctype", ["test_pass", "build_success", "type_check", "lint_clean"])
    def test_empty_output(self, ctype):
        assert extract_suggestions(ctype, "", "") == []
