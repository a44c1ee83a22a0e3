"""
LLM Prompts
===========
Prompts for the model-backed progress judge.

Prompt Design Rules:
    - The model only compares two outputs; it never sees the task history.
    - Answer format is fixed JSON: {"progress": true|false}
    - Long outputs are abbreviated to head + tail before sending.
"""
from loopdriver.executor.command_runner import create_log_excerpt

PROGRESS_SYSTEM_PROMPT = (
    "You compare the output of two consecutive attempts at the same task "
    "(test runs, builds, linters, type checkers). Decide whether the CURRENT "
    "output shows forward progress over the PREVIOUS one: fewer failures, "
    "new passing checks, or errors that moved further along. Identical or "
    "worse output is not progress.\n"
    'Reply with JSON only: {"progress": true} or {"progress": false}.'
)


def build_progress_prompt(previous: str, current: str) -> str:
    return (
        "PREVIOUS OUTPUT:\n"
        f"{create_log_excerpt(previous)}\n\n"
        "CURRENT OUTPUT:\n"
        f"{create_log_excerpt(current)}\n"
    )
