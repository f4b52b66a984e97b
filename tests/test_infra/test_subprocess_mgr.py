"""Tests for the subprocess manager."""

import os
import signal
import sys

import pytest

from turnstream.infra.subprocess_mgr import SubprocessManager, describe_exit
from turnstream.models.agent import CommandSpec


class TestDescribeExit:
    def test_exit_code(self):
        assert describe_exit("/usr/bin/droid", 2) == "droid exec exited with code 2"

    def test_signal(self):
        message = describe_exit("droid", -signal.SIGKILL)
        assert message == f"droid exec exited with code {-signal.SIGKILL} (signal SIGKILL)"


@pytest.mark.skipif(sys.platform == "win32", reason="posix commands")
class TestSubprocessManager:
    @pytest.mark.asyncio
    async def test_spawn_merges_env(self, tmp_path):
        mgr = SubprocessManager()
        proc = await mgr.spawn(CommandSpec(
            program="/bin/sh",
            args=("-c", 'printf "%s" "$SPAWN_MARKER"'),
            env={"SPAWN_MARKER": "seen"},
            cwd=str(tmp_path),
        ))
        out = await proc.stdout.read()
        await proc.wait()
        assert out == b"seen"
        assert "SPAWN_MARKER" not in os.environ

    @pytest.mark.asyncio
    async def test_spawn_missing_program(self, tmp_path):
        with pytest.raises(OSError):
            await SubprocessManager().spawn(CommandSpec(program=str(tmp_path / "nope")))

    @pytest.mark.asyncio
    async def test_terminate_escalates_to_kill(self):
        mgr = SubprocessManager(terminate_grace=0.2)
        proc = await mgr.spawn(CommandSpec(
            program="/bin/sh", args=("-c", "trap '' TERM; echo ready; while :; do sleep 0.05; done"),
        ))
        await proc.stdout.readline()
        await mgr.terminate(proc)
        assert proc.returncode == -signal.SIGKILL
