"""
Progress Detector
=================
Decides whether the current iteration's output moved forward compared with
the previous one.

Implementations:
    HeuristicProgressDetector  — regex counting, no I/O
    DelegatedProgressDetector  — asks an injected async judge, falls back to
                                 the heuristic whenever the judge fails

Heuristic Rules (first match wins):
    1. Identical output                 → no progress
    2. Current empty, previous not      → no progress (regression)
    3. Fewer error markers              → progress
    4. More error markers               → no progress
    5. Success marker newly present     → progress
    6. Regression marker newly present  → no progress
    7. Output merely differs            → progress
"""
import re
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

ERROR_PATTERNS: List[re.Pattern] = [
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bfail(?:ed|ure|s)?\b", re.IGNORECASE),
    re.compile(r"\bexception\b", re.IGNORECASE),
    re.compile(r"\bstack trace\b", re.IGNORECASE),
    re.compile(r"✗"),
    re.compile(r"✘"),
]

PROGRESS_PATTERNS: List[re.Pattern] = [
    re.compile(r"\bpassed?\b", re.IGNORECASE),
    re.compile(r"\bsuccess\b", re.IGNORECASE),
    re.compile(r"\bfixed\b", re.IGNORECASE),
    re.compile(r"\bresolved\b", re.IGNORECASE),
    re.compile(r"\bcompleted?\b", re.IGNORECASE),
    re.compile(r"\bworking\b", re.IGNORECASE),
    re.compile(r"✓"),
    re.compile(r"✔"),
]

REGRESSION_PATTERNS: List[re.Pattern] = [
    re.compile(r"\bfailed?\b", re.IGNORECASE),
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bexception\b", re.IGNORECASE),
    re.compile(r"✗"),
    re.compile(r"✘"),
]


def count_matches(text: str, patterns: List[re.Pattern]) -> int:
    return sum(len(p.findall(text)) for p in patterns)


def count_errors(text: str) -> int:
    """Number of error-indicating markers in ``text``."""
    return count_matches(text, ERROR_PATTERNS)


def heuristic_progress(previous: str, current: str) -> bool:
    """Synchronous heuristic shared by both detectors."""
    if previous == current:
        return False
    if not current.strip() and previous.strip():
        return False

    prev_errors = count_errors(previous)
    curr_errors = count_errors(current)
    if curr_errors < prev_errors:
        return True
    if curr_errors > prev_errors:
        return False

    # Marker presence, pattern by pattern; the first newly present marker decides
    for pattern in PROGRESS_PATTERNS:
        if pattern.search(current) and not pattern.search(previous):
            return True
    for pattern in REGRESSION_PATTERNS:
        if pattern.search(current) and not pattern.search(previous):
            return False

    # Different output with no signal either way
    return True


class ProgressDetector(ABC):
    """Swappable progress judgment used by the stop-condition manager."""

    @abstractmethod
    async def detect_progress(self, previous: str, current: str) -> bool:
        ...


class HeuristicProgressDetector(ProgressDetector):
    async def detect_progress(self, previous: str, current: str) -> bool:
        return heuristic_progress(previous, current)


ProgressJudge = Callable[[str, str], Awaitable[bool]]


class DelegatedProgressDetector(ProgressDetector):
    """
    Delegates the judgment to an async callable, e.g. a model endpoint.

    Identical outputs never reach the judge. Any judge error is logged and
    answered by the fallback detector so the loop keeps running.
    """

    def __init__(
        self,
        judge: ProgressJudge,
        fallback: Optional[ProgressDetector] = None,
    ) -> None:
        self.judge = judge
        self.fallback = fallback or HeuristicProgressDetector()

    async def detect_progress(self, previous: str, current: str) -> bool:
        if previous == current:
            return False
        try:
            return bool(await self.judge(previous, current))
        except Exception as e:
            logger.warning("Progress judge failed, using heuristic: %s", e)
            return await self.fallback.detect_progress(previous, current)
