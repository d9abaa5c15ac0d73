"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts. Git
commands run through ``run_command`` so a hung remote never stalls the event
loop.

Timeouts escalate: when ``timeout`` elapses the process is sent SIGTERM, and
if it has not exited ``kill_grace`` seconds later it is sent SIGKILL. The
same escalation applies when the awaiting task is cancelled (for example by a
watchdog), so no child process outlives its caller.

Example:
    >>> from patchfleet.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)
"""

import asyncio
import subprocess
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

DEFAULT_KILL_GRACE = 5.0


async def terminate_process(process: asyncio.subprocess.Process, kill_grace: float = DEFAULT_KILL_GRACE) -> None:
    """Stop a child process: SIGTERM first, SIGKILL after ``kill_grace`` seconds."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=kill_grace)
    except TimeoutError:
        log.warning("process_kill_escalated", pid=process.pid, grace=kill_grace)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    kill_grace: float = DEFAULT_KILL_GRACE,
    env: dict[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings
        cwd: Working directory for command execution
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code
        timeout: Maximum seconds to wait for completion. None waits forever.
        kill_grace: Seconds between SIGTERM and SIGKILL once the timeout fires
        env: Environment for the child process; inherits ours when None

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
        TimeoutError: If timeout is exceeded; the process is stopped first
        FileNotFoundError: If the executable is not found
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        log.warning("command_timed_out", command=args[:2], timeout=timeout)
        await terminate_process(process, kill_grace)
        raise
    except asyncio.CancelledError:
        await terminate_process(process, kill_grace)
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0
