"""
Command Runner Tests
====================
Real shell execution: exit codes, stream capture, environment, deadline
kill and spawn failures.
"""
import os
import asyncio

import pytest

from loopdriver.executor.command_runner import CommandResult, create_log_excerpt, run_command

posix_only = pytest.mark.skipif(os.name != "posix", reason="needs a POSIX shell")


class TestLogExcerpt:

    def test_short_log_unchanged(self):
        log = "\n".join(f"line {i}" for i in range(10))
        assert create_log_excerpt(log) == log

    def test_long_log_keeps_head_and_tail(self):
        log = "\n".join(f"line {i}" for i in range(100))
        excerpt = create_log_excerpt(log, head=2, tail=3)
        assert excerpt.splitlines() == [
            "line 0", "line 1", "... (95 lines omitted) ...", "line 97", "line 98", "line 99",
        ]


class TestCommandResult:

    def test_output_combines_streams(self):
        assert CommandResult(stdout="a", stderr="b").output == "ab"


@posix_only
class TestRunCommand:

    def test_captures_exit_code_and_streams(self):
        result = asyncio.run(run_command("echo out; echo err 1>&2; exit 3"))
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.timed_out is False

    def test_runs_in_cwd_with_extra_env(self, tmp_path):
        result = asyncio.run(run_command(
            'pwd; echo "$LOOP_TASK"', cwd=str(tmp_path), env={"LOOP_TASK": "fix it"}))
        lines = result.stdout.splitlines()
        assert os.path.realpath(lines[0]) == os.path.realpath(str(tmp_path))
        assert lines[1] == "fix it"

    def test_timeout_kills_process_group(self):
        result = asyncio.run(run_command("sleep 30 & sleep 30; wait", timeout_seconds=0.5))
        assert result.timed_out is True
        assert result.exit_code == -1
        assert result.execution_time_seconds < 10

    def test_cancellation_kills_child(self, tmp_path):
        pid_file = tmp_path / "pid"

        async def run_test():
            task = asyncio.create_task(run_command(
                f'echo $$ > "{pid_file}"; exec sleep 30', timeout_seconds=60))
            for _ in range(200):
                if pid_file.exists() and pid_file.read_text().strip():
                    break
                await asyncio.sleep(0.02)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return int(pid_file.read_text().strip())

        pid = asyncio.run(run_test())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    def test_missing_cwd_reports_spawn_failure(self, tmp_path):
        result = asyncio.run(run_command("true", cwd=str(tmp_path / "missing")))
        assert result.exit_code == 1
        assert result.error.startswith("Failed to start command")
