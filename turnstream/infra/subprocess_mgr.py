"""Subprocess manager: piped agent spawning + termination."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import sys

from turnstream.models.agent import CommandSpec

logger = logging.getLogger(__name__)

# Agents may print whole transcripts as a single JSON line.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


def describe_exit(program: str, returncode: int | None) -> str:
    """Human-readable exit description, naming the signal when there is one."""
    name = os.path.basename(program)
    if returncode is not None and returncode < 0:
        try:
            sig = signal.Signals(-returncode).name
        except ValueError:
            sig = str(-returncode)
        return f"{name} exec exited with code {returncode} (signal {sig})"
    return f"{name} exec exited with code {returncode}"


class SubprocessManager:
    """Spawns agent processes with captured output and stops them."""

    def __init__(self, terminate_grace: float = 3.0) -> None:
        self.terminate_grace = terminate_grace

    async def spawn(self, command: CommandSpec) -> asyncio.subprocess.Process:
        """Spawn with stdout/stderr piped and stdin closed.

        The child environment is the current process environment merged
        with ``command.env``; ``os.environ`` itself is left untouched.
        Raises OSError when the executable cannot be started.
        """
        env = os.environ.copy()
        if command.env:
            env.update(command.env)

        if sys.platform == "win32":
            # .cmd shims only resolve through the shell
            proc = await asyncio.create_subprocess_shell(
                subprocess.list2cmdline([command.program, *command.args]),
                cwd=command.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                cwd=command.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        logger.debug("Spawned %s (pid=%s)", command.program, proc.pid)
        return proc

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait for the grace period, then SIGKILL."""
        if proc.returncode is not None:
            return

        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM, killing", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
