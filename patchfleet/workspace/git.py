"""Thin async wrapper around the git CLI.

Remote-touching subcommands (clone, fetch, pull, push, ls-remote) run under
the ``git-operations`` resilience policy with a hard timeout that escalates
from SIGTERM to SIGKILL. Their failures are classified from stderr: network
trouble becomes ``NetworkError`` (retried, counted by the circuit breaker),
everything else is a ``GitOperationError`` that propagates immediately.
"""

import os
from pathlib import Path

import structlog

from patchfleet.config.settings import HardeningConfig
from patchfleet.exceptions import GitOperationError, NetworkError
from patchfleet.resilience.layer import GIT_OPERATIONS, ResilienceLayer, ResiliencePolicy, build_layer, default_policies
from patchfleet.utils.async_subprocess import DEFAULT_KILL_GRACE, run_command

log = structlog.get_logger(__name__)

NETWORK_COMMANDS = frozenset({"clone", "fetch", "pull", "push", "ls-remote"})

NETWORK_ERROR_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "unable to access",
    "ssl",
    "failed to connect",
    "could not read from remote repository",
    "the remote end hung up unexpectedly",
)


def is_network_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in NETWORK_ERROR_MARKERS)


class GitRunner:
    """Runs git commands, routing network commands through the resilience layer."""

    def __init__(
        self,
        resilience: ResilienceLayer | None = None,
        policy: ResiliencePolicy | None = None,
        network_timeout: float = 300.0,
        kill_grace: float = DEFAULT_KILL_GRACE,
        local_timeout: float = 120.0,
    ) -> None:
        self.resilience = resilience or build_layer(HardeningConfig())
        self.policy = policy or default_policies(HardeningConfig())[GIT_OPERATIONS]
        self.network_timeout = network_timeout
        self.kill_grace = kill_grace
        self.local_timeout = local_timeout
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}

    async def run(self, *args: str, cwd: Path | str | None = None) -> str:
        """Run ``git *args`` and return stdout.

        Raises:
            NetworkError: A remote command failed for network reasons or timed out
            GitOperationError: Any other failure
        """
        if args and args[0] in NETWORK_COMMANDS:
            return await self.resilience.execute(lambda: self._exec(args, cwd, network=True), self.policy)
        return await self._exec(args, cwd, network=False)

    async def succeeds(self, *args: str, cwd: Path | str | None = None) -> bool:
        """Run a local git command and report whether it exited 0."""
        _, _, code = await self._spawn(args, cwd, self.local_timeout)
        return code == 0

    async def _exec(self, args: tuple[str, ...], cwd: Path | str | None, network: bool) -> str:
        timeout = self.network_timeout if network else self.local_timeout
        try:
            stdout, stderr, code = await self._spawn(args, cwd, timeout)
        except TimeoutError as e:
            message = f"git {args[0]} timed out after {timeout:g}s"
            if network:
                raise NetworkError(message) from e
            raise GitOperationError(message, command=list(args)) from e

        if code == 0:
            return stdout

        stderr = stderr.strip()
        if network and is_network_failure(stderr):
            log.warning("git_network_failure", command=args[0], stderr=stderr[:500])
            raise NetworkError(f"git {args[0]} failed: {stderr}")
        raise GitOperationError(f"git {' '.join(args[:2])} failed: {stderr}", command=list(args), stderr=stderr)

    async def _spawn(self, args: tuple[str, ...], cwd: Path | str | None, timeout: float) -> tuple[str, str, int]:
        if cwd is not None and not Path(cwd).is_dir():
            raise GitOperationError(f"Working directory does not exist: {cwd}", command=list(args))
        try:
            return await run_command(
                "git",
                *args,
                cwd=cwd,
                check=False,
                timeout=timeout,
                kill_grace=self.kill_grace,
                env=self._env,
            )
        except FileNotFoundError as e:
            raise GitOperationError(
                "git executable not found",
                command=list(args),
                hint="Install git and make sure it is on PATH",
            ) from e
