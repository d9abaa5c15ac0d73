"""Tests for patchfleet.utils.async_subprocess module."""

import asyncio
import subprocess
import sys
import time

import pytest

from patchfleet.utils.async_subprocess import run_command, terminate_process


class TestRunCommand:
    """Test basic functionality of run_command."""

    @pytest.mark.asyncio
    async def test_run_simple_command(self):
        stdout, stderr, returncode = await run_command("echo", "hello")

        assert stdout.strip() == "hello"
        assert stderr == ""
        assert returncode == 0

    @pytest.mark.asyncio
    async def test_captures_stderr(self):
        stdout, stderr, returncode = await run_command("sh", "-c", "echo error >&2")

        assert stderr.strip() == "error"

    @pytest.mark.asyncio
    async def test_non_zero_exit_check_false(self):
        stdout, stderr, returncode = await run_command("false", check=False)

        assert returncode != 0

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self):
        with pytest.raises(subprocess.CalledProcessError) as exc_info:
            await run_command("sh", "-c", "echo boom >&2; exit 3")

        assert exc_info.value.returncode == 3
        assert "boom" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_cwd_respected(self, tmp_path):
        stdout, _, _ = await run_command("pwd", cwd=tmp_path)

        assert stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(FileNotFoundError):
            await run_command("patchfleet-no-such-binary")

    @pytest.mark.asyncio
    async def test_invalid_utf8_replaced(self):
        stdout, _, _ = await run_command(sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'ok\\xff')")

        assert stdout.startswith("ok")
        assert "\ufffd" in stdout


class TestTimeouts:
    """A timed-out or cancelled command never outlives its caller."""

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        started = time.monotonic()

        with pytest.raises(TimeoutError):
            await run_command("sleep", "10", timeout=0.2, kill_grace=0.5)

        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self):
        script = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)"
        started = time.monotonic()

        with pytest.raises(TimeoutError):
            await run_command(sys.executable, "-c", script, timeout=0.5, kill_grace=0.2)

        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_cancellation_stops_child(self):
        task = asyncio.create_task(run_command("sleep", "10", kill_grace=0.5))
        await asyncio.sleep(0.1)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_terminate_finished_process_is_noop(self):
        process = await asyncio.create_subprocess_exec("true")
        await process.wait()

        await terminate_process(process, kill_grace=0.1)

        assert process.returncode == 0
