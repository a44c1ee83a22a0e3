"""
Command Runner
==============
Runs one shell command with a hard deadline and returns a structured result.

BOUNDARY RULES:
    - Runner ONLY observes execution.
    - Runner NEVER interprets output; suggestions are the parser's job.
    - Runner NEVER retries. A timeout is reported and the caller decides.

TIMEOUT STRATEGY:
    - The command is started in its own session (POSIX) so the shell and
      everything it spawned can be killed as one process group.
    - On deadline: SIGKILL the group, report exit_code=-1, timed_out=True.
    - Output produced before the deadline is kept.
"""
import os
import time
import signal
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"

# Seconds to wait for pipes to drain once the process has exited
_DRAIN_GRACE_SECONDS = 5.0
_READ_CHUNK = 65536


# ---------------------------------------------------------------------------
# Command Result
# ---------------------------------------------------------------------------
@dataclass
class CommandResult:
    """
    Structured output from a single command execution.

    Fields
    ------
    exit_code : int
        Process exit code; -1 when the deadline was hit.
    stdout / stderr : str
        Captured streams, decoded as UTF-8 with replacement.
    timed_out : bool
        True when the process was killed at the deadline.
    execution_time_seconds : float
        Wall clock duration.
    error : str | None
        Set when the process could not be spawned at all.
    """
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    execution_time_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def output(self) -> str:
        """Combined stdout + stderr."""
        return self.stdout + self.stderr


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 20
_EXCERPT_TAIL_LINES = 40


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Abbreviate a log to its first ``head`` and last ``tail`` lines.
    Short logs are returned unchanged.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"... ({omitted} lines omitted) ..."]
        + lines[-tail:]
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
async def _drain(stream: Optional[asyncio.StreamReader], sink: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.append(chunk)


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Force-terminate the process (group on POSIX)."""
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def run_command(
    command: str,
    cwd: Optional[str] = None,
    timeout_seconds: float = 120.0,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """
    Execute ``command`` through the shell under a deadline.

    Parameters
    ----------
    command : str
        Shell command line; quoting is the caller's responsibility.
    cwd : str | None
        Working directory (defaults to the current one).
    timeout_seconds : float
        Deadline after which the process group is killed.
    env : dict | None
        Extra environment variables layered over os.environ.

    Returns
    -------
    CommandResult
        Always returned; spawn failures become exit_code=1 with ``error`` set.
    """
    result = CommandResult()
    start_time = time.monotonic()

    proc_env = None
    if env:
        proc_env = {**os.environ, **env}

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=proc_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,
        )
    except OSError as e:
        result.exit_code = 1
        result.error = f"Failed to start command: {e}"
        result.stderr = str(e)
        result.execution_time_seconds = round(time.monotonic() - start_time, 3)
        logger.error("%s | command=%s", result.error, command)
        return result

    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    drain = asyncio.gather(
        _drain(proc.stdout, out_chunks),
        _drain(proc.stderr, err_chunks),
    )

    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            result.timed_out = True
            logger.warning("Command timed out after %.1fs, killing | command=%s",
                           timeout_seconds, command)
            _kill(proc)
            await proc.wait()

        try:
            await asyncio.wait_for(drain, timeout=_DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            # A detached grandchild is still holding the pipes open
            logger.warning("Output pipes still open after exit | command=%s", command)
    except asyncio.CancelledError:
        logger.warning("Command cancelled, killing | command=%s", command)
        _kill(proc)
        drain.cancel()
        await asyncio.gather(proc.wait(), drain, return_exceptions=True)
        raise

    result.stdout = b"".join(out_chunks).decode("utf-8", errors="replace")
    result.stderr = b"".join(err_chunks).decode("utf-8", errors="replace")
    if result.timed_out:
        result.exit_code = -1
    else:
        result.exit_code = proc.returncode if proc.returncode is not None else 1
    result.execution_time_seconds = round(time.monotonic() - start_time, 3)

    logger.info(
        "Command complete | exit=%d | time=%.2fs | command=%s",
        result.exit_code, result.execution_time_seconds, command,
    )
    return result
