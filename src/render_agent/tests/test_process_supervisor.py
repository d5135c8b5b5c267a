"""Tests for the render process supervisor, using real child processes."""

import asyncio
import sys

import psutil
import pytest

from src.render_agent.errors import SpawnError
from src.render_agent.process_supervisor import (
    LineBuffer,
    ProcessSupervisor,
    SignalTerminator,
    TreeTerminator,
    kill_tree,
    select_terminator,
)

from .conftest import python_command, wait_until


class TestLineBuffer:
    """Test chunk to line splitting."""

    def test_keeps_partial_fragment(self):
        buffer = LineBuffer()
        assert buffer.feed("Fra:1 Mem") == []
        assert buffer.feed(":10M\nFra:2") == ["Fra:1 Mem:10M"]
        assert buffer.feed("\n") == ["Fra:2"]

    def test_strips_carriage_return(self):
        buffer = LineBuffer()
        assert buffer.feed("a\r\nb\r\n") == ["a", "b"]

    def test_flush_returns_tail(self):
        buffer = LineBuffer()
        buffer.feed("done\nno newline")
        assert buffer.flush() == ["no newline"]
        assert buffer.flush() == []


class TestSelectTerminator:
    def test_windows_uses_tree_kill(self):
        assert isinstance(select_terminator("win32"), TreeTerminator)

    def test_posix_uses_signals(self):
        terminator = select_terminator("linux", terminate_timeout=2.5)
        assert isinstance(terminator, SignalTerminator)
        assert terminator.grace_period == 2.5


class Recorder:
    """Collects callbacks from one supervised process."""

    def __init__(self):
        self.lines = []
        self.exits = []

    def on_line(self, line, stream):
        self.lines.append((stream, line))

    def on_exit(self, result):
        self.exits.append(result)


class TestProcessSupervisor:
    """Test spawning, streaming and termination."""

    @pytest.mark.asyncio
    async def test_streams_lines_then_reports_exit(self):
        supervisor = ProcessSupervisor()
        recorder = Recorder()
        code = (
            "import sys\n"
            "print('Fra:1 Mem:10M (Peak 12M)')\n"
            "sys.stdout.write('partial')\n"
            "sys.stdout.flush()\n"
            "sys.stdout.write(' line\\n')\n"
            "sys.stderr.write('warning text\\n')\n"
            "sys.stdout.write('tail without newline')\n"
        )

        pid = await supervisor.start(python_command(code), recorder.on_line, recorder.on_exit, job_id="job-1")
        assert pid > 0
        assert await supervisor.wait(pid, timeout=10)

        stdout = [line for stream, line in recorder.lines if stream == "stdout"]
        assert stdout == ["Fra:1 Mem:10M (Peak 12M)", "partial line", "tail without newline"]
        assert ("stderr", "warning text") in recorder.lines

        assert len(recorder.exits) == 1
        result = recorder.exits[0]
        assert result.pid == pid
        assert result.exit_code == 0
        assert result.cancelled is False
        assert result.job_id == "job-1"
        assert not supervisor.has_active()

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_reported_not_raised(self):
        supervisor = ProcessSupervisor()
        recorder = Recorder()

        pid = await supervisor.start(python_command("import sys; sys.exit(3)"), on_exit=recorder.on_exit)
        await supervisor.wait(pid, timeout=10)

        assert recorder.exits[0].exit_code == 3
        assert recorder.exits[0].cancelled is False

    @pytest.mark.asyncio
    async def test_missing_program_raises_spawn_error(self):
        supervisor = ProcessSupervisor()

        with pytest.raises(SpawnError) as exc_info:
            await supervisor.start("/definitely/not/a/blender -b scene.blend")

        assert "Failed to start Blender" in exc_info.value.message
        assert supervisor.active_pids() == []

    @pytest.mark.asyncio
    async def test_invalid_command(self):
        supervisor = ProcessSupervisor()
        with pytest.raises(SpawnError):
            await supervisor.start("   ")

    @pytest.mark.asyncio
    async def test_stop_marks_cancelled(self):
        supervisor = ProcessSupervisor(terminate_timeout=0.5)
        recorder = Recorder()

        pid = await supervisor.start(
            python_command("import time; print('started', flush=True); time.sleep(30)"),
            recorder.on_line,
            recorder.on_exit,
        )
        assert await wait_until(lambda: recorder.lines, timeout=10)
        assert supervisor.get_handle(pid) is not None

        assert await supervisor.stop(pid) is True
        await supervisor.wait(pid, timeout=10)

        assert recorder.exits[0].cancelled is True
        assert supervisor.get_handle(pid) is None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        supervisor = ProcessSupervisor(terminate_timeout=0.5)

        pid = await supervisor.start(python_command("import time; time.sleep(30)"))
        assert await supervisor.stop(pid) is True
        await supervisor.wait(pid, timeout=10)

        assert await supervisor.stop(pid) is False
        assert await supervisor.stop(999999) is False

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal escalation")
    async def test_escalates_to_kill(self):
        supervisor = ProcessSupervisor(terminate_timeout=0.3)
        recorder = Recorder()
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )

        pid = await supervisor.start(python_command(code), recorder.on_line, recorder.on_exit)
        assert await wait_until(lambda: recorder.lines, timeout=10)

        assert await supervisor.stop(pid) is True
        await supervisor.wait(pid, timeout=10)

        assert recorder.exits[0].cancelled is True
        assert recorder.exits[0].exit_code != 0

    @pytest.mark.asyncio
    async def test_async_callbacks_and_stop_all(self):
        supervisor = ProcessSupervisor(terminate_timeout=0.5)
        exits = []

        async def on_exit(result):
            await asyncio.sleep(0)
            exits.append(result)

        for _ in range(2):
            await supervisor.start(python_command("import time; time.sleep(30)"), on_exit=on_exit)

        assert len(supervisor.active_pids()) == 2
        assert await supervisor.stop_all() == 2
        assert len(exits) == 2
        assert all(result.cancelled for result in exits)


def _alive(pid):
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class TestTreeTerminator:
    """Test the recursive tree kill on the current platform."""

    @pytest.mark.asyncio
    async def test_kills_grandchildren(self):
        supervisor = ProcessSupervisor(terminator=TreeTerminator(wait_timeout=5.0))
        recorder = Recorder()
        code = (
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'],"
            " stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)\n"
            "print(child.pid, flush=True)\n"
            "time.sleep(30)\n"
        )

        pid = await supervisor.start(python_command(code), recorder.on_line, recorder.on_exit)
        assert await wait_until(lambda: recorder.lines, timeout=10)
        grandchild = int(recorder.lines[0][1])
        assert _alive(grandchild)

        assert await supervisor.stop(pid) is True
        await supervisor.wait(pid, timeout=10)

        assert recorder.exits[0].cancelled is True
        assert await wait_until(lambda: not _alive(grandchild), timeout=5)
        assert not _alive(pid)
        assert await supervisor.stop(pid) is False

    def test_kill_tree_of_missing_process(self):
        process = psutil.Popen([sys.executable, "-c", "pass"])
        process.wait()

        assert kill_tree(process.pid) is False
