"""
Progress Judge
==============
Async judge for DelegatedProgressDetector backed by an OpenAI-compatible
chat completions endpoint.

Failure Handling:
    - HTTP errors, timeouts and unparsable replies raise.
    - The delegated detector catches them and falls back to the heuristic,
      so a flaky endpoint never stops a loop.
"""
import re
import json
import logging
from typing import Optional

import httpx

from loopdriver.agents.progress_detector import (
    DelegatedProgressDetector,
    HeuristicProgressDetector,
    ProgressDetector,
)
from loopdriver.core import config
from loopdriver.llm.prompts import PROGRESS_SYSTEM_PROMPT, build_progress_prompt

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```[a-zA-Z]*\n?|```$")
_YES = {"yes", "true", "progress"}
_NO = {"no", "false", "no progress"}


def parse_progress_verdict(raw: str) -> bool:
    """
    Read a yes/no progress verdict from a model reply.

    Accepts ``{"progress": bool}`` JSON (optionally fenced) or a bare
    yes / no / true / false.

    Raises
    ------
    ValueError
        When the reply holds no usable verdict.
    """
    cleaned = _FENCE.sub("", (raw or "").strip()).strip()
    if not cleaned:
        raise ValueError("Empty verdict")

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        word = cleaned.lower().rstrip(".!")
        if word in _YES:
            return True
        if word in _NO:
            return False
        raise ValueError(f"Unrecognised verdict: {cleaned[:80]!r}")

    if isinstance(data, dict) and isinstance(data.get("progress"), bool):
        return data["progress"]
    if isinstance(data, bool):
        return data
    raise ValueError(f"Verdict JSON lacks a boolean 'progress': {cleaned[:80]!r}")


class HttpProgressJudge:
    """
    Callable judge: ``await judge(previous, current) -> bool``.

    Usage:
        judge = HttpProgressJudge("https://api.groq.com/openai/v1", "llama-3.1-8b-instant", key)
        detector = DelegatedProgressDetector(judge)
        ...
        await judge.close()
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        """Lazy-initialise the HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    async def __call__(self, previous: str, current: str) -> bool:
        http = await self._get_http()
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": PROGRESS_SYSTEM_PROMPT},
                {"role": "user", "content": build_progress_prompt(previous, current)},
            ],
            "temperature": 0.0,
            "max_tokens": 16,
        }

        resp = await http.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()

        try:
            content = data["choices"][0]["message"]["content"]
        except (IndexError, KeyError, TypeError) as e:
            raise ValueError("Malformed chat completion response") from e

        verdict = parse_progress_verdict(content)
        logger.debug("Progress judge verdict: %s", verdict)
        return verdict


def build_progress_detector() -> ProgressDetector:
    """Delegated detector when PROGRESS_JUDGE_URL is set, heuristic otherwise."""
    if not config.PROGRESS_JUDGE_URL:
        return HeuristicProgressDetector()
    logger.info("Using model-backed progress judge at %s (%s)",
                config.PROGRESS_JUDGE_URL, config.PROGRESS_JUDGE_MODEL)
    judge = HttpProgressJudge(
        config.PROGRESS_JUDGE_URL,
        config.PROGRESS_JUDGE_MODEL,
        config.PROGRESS_JUDGE_API_KEY,
    )
    return DelegatedProgressDetector(judge)
