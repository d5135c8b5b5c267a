"""
Render Process Supervisor.

Spawns one engine process per render attempt, streams its stdout/stderr
line by line to a callback, and terminates it on demand. Termination goes
through a platform backend: on Windows Blender may leave child processes
behind, so the whole process tree is killed; elsewhere a graceful signal is
sent first and escalated to a kill after a short grace period.
"""
import asyncio
import codecs
import inspect
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import psutil

from .command import split_command
from .errors import SpawnError
from .models import ProcessHandle

logger = logging.getLogger(__name__)


# ======================== Process Management Constants ========================

# Graceful termination window before SIGKILL
DEFAULT_TERMINATE_TIMEOUT_SEC = 1.0

# How long to wait for a killed process tree to be reaped
TREE_KILL_WAIT_SEC = 5.0

READ_CHUNK_SIZE = 4096


LineCallback = Callable[[str, str], Any]


@dataclass(frozen=True)
class ProcessExit:
    """Terminal notification for one supervised process."""
    pid: int
    exit_code: Optional[int]
    cancelled: bool
    job_id: Optional[str] = None


ExitCallback = Callable[[ProcessExit], Any]


class LineBuffer:
    """Splits text chunks into lines, keeping the trailing fragment for the next chunk."""

    def __init__(self) -> None:
        self._partial = ""

    def feed(self, chunk: str) -> List[str]:
        parts = (self._partial + chunk).split("\n")
        self._partial = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> List[str]:
        """Return the unterminated tail at end of stream, if any."""
        tail, self._partial = self._partial.rstrip("\r"), ""
        return [tail] if tail else []


def kill_tree(pid: int) -> bool:
    """Kill a process and all its children (process tree)"""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)

        # Kill children first
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

        # Then kill parent
        try:
            parent.kill()
        except psutil.NoSuchProcess:
            pass
        return True

    except psutil.NoSuchProcess:
        return False
    except Exception as e:
        logger.warning(f"Error killing process tree {pid}: {e}")
        return False


# ======================== Termination Backends ========================

class Terminator:
    """Ends one process; returns once the OS reports it gone or the backend gives up."""

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        raise NotImplementedError


class TreeTerminator(Terminator):
    """Recursive tree kill, for platforms where the engine spawns uncontrolled children."""

    def __init__(self, wait_timeout: float = TREE_KILL_WAIT_SEC):
        self.wait_timeout = wait_timeout

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        if not kill_tree(process.pid):
            # Parent already gone; still reap it below
            logger.info(f"Process {process.pid} exited before tree kill")
        try:
            await asyncio.wait_for(process.wait(), self.wait_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Process tree {process.pid} still alive after {self.wait_timeout}s")


class SignalTerminator(Terminator):
    """SIGTERM, wait the grace period, then SIGKILL."""

    def __init__(self, grace_period: float = DEFAULT_TERMINATE_TIMEOUT_SEC):
        self.grace_period = grace_period

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), self.grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} did not exit gracefully, killing...")

        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def select_terminator(
    platform: Optional[str] = None,
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT_SEC,
) -> Terminator:
    """Pick the termination backend for the target OS."""
    platform = platform or sys.platform
    if platform == "win32":
        return TreeTerminator()
    return SignalTerminator(grace_period=terminate_timeout)


# ======================== Supervisor ========================

async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Render process callback failed")


class ProcessSupervisor:
    """
    Owns every engine process spawned by this agent.

    Features:
    - One handle per live process, keyed by OS pid
    - Concurrent stdout/stderr line streaming with partial-line buffering
    - Exit reported through a callback after all output was delivered
    - Cancellation flagged on the handle, never encoded in the exit code
    """

    def __init__(
        self,
        terminator: Optional[Terminator] = None,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT_SEC,
        env: Optional[Dict[str, str]] = None,
    ):
        self.terminator = terminator or select_terminator(terminate_timeout=terminate_timeout)
        self._env = env
        self._handles: Dict[int, ProcessHandle] = {}
        self._watchers: Dict[int, asyncio.Task] = {}

    async def start(
        self,
        command: str,
        on_line: Optional[LineCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        job_id: Optional[str] = None,
    ) -> int:
        """
        Spawn a process for `command` and start streaming its output.

        Returns the OS pid. Raises SpawnError if the program cannot be
        started; no handle is registered in that case.
        """
        try:
            argv = split_command(command)
        except ValueError as e:
            raise SpawnError(f"Invalid command: {e}", command=command) from e
        if not argv:
            raise SpawnError("Invalid command: empty", command=command)

        spawn_env = os.environ.copy()
        if self._env:
            spawn_env.update(self._env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=spawn_env,
                # Don't create a new console window on Windows
                creationflags=subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn render process for job {job_id}: {e}")
            raise SpawnError(f"Failed to start Blender: {e}", command=command) from e

        handle = ProcessHandle(pid=process.pid, command=command, job_id=job_id, process=process)
        self._handles[process.pid] = handle
        self._watchers[process.pid] = asyncio.create_task(
            self._watch(handle, on_line, on_exit),
            name=f"render-process-{process.pid}",
        )

        logger.info(f"[RENDER-PROCESS] Spawned PID {process.pid} (job={job_id})")
        logger.info(f"[CMD] {command}")
        return process.pid

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        name: str,
        on_line: Optional[LineCallback],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(decoder.decode(chunk)):
                await _invoke(on_line, line, name)

        for line in buffer.feed(decoder.decode(b"", final=True)) + buffer.flush():
            await _invoke(on_line, line, name)

    async def _watch(
        self,
        handle: ProcessHandle,
        on_line: Optional[LineCallback],
        on_exit: Optional[ExitCallback],
    ) -> None:
        process = handle.process
        exit_code: Optional[int] = None
        try:
            try:
                await asyncio.gather(
                    self._pump(process.stdout, "stdout", on_line),
                    self._pump(process.stderr, "stderr", on_line),
                )
                exit_code = await process.wait()
            finally:
                self._handles.pop(handle.pid, None)

            logger.info(
                f"[RENDER-PROCESS] PID {handle.pid} exited with code {exit_code}"
                + (" (stopped by user)" if handle.cancelled else "")
            )
            await _invoke(
                on_exit,
                ProcessExit(pid=handle.pid, exit_code=exit_code, cancelled=handle.cancelled, job_id=handle.job_id),
            )
        finally:
            # wait() covers the exit callback too
            self._watchers.pop(handle.pid, None)

    async def stop(self, pid: int) -> bool:
        """
        Terminate a supervised process.

        Returns True once the process was asked to exit and the OS confirmed
        it (or the backend timed out). Unknown or already-exited pids return
        False.
        """
        handle = self._handles.get(pid)
        if handle is None or handle.process.returncode is not None:
            logger.info(f"Process {pid} is not running, nothing to stop")
            return False

        handle.cancelled = True
        logger.info(f"Stopping render process {pid} (job={handle.job_id})")
        try:
            await self.terminator.terminate(handle.process)
        except (OSError, psutil.Error) as e:
            logger.error(f"Failed to stop render process {pid}: {e}")
            return False
        return True

    async def wait(self, pid: int, timeout: Optional[float] = None) -> bool:
        """Wait until the exit callback for `pid` has run. False on timeout."""
        watcher = self._watchers.get(pid)
        if watcher is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(watcher), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop_all(self) -> int:
        """Stop every live process; returns how many were stopped."""
        stopped = 0
        for pid in list(self._handles.keys()):
            if await self.stop(pid):
                stopped += 1
        for pid in list(self._watchers.keys()):
            await self.wait(pid, timeout=TREE_KILL_WAIT_SEC)
        return stopped

    def get_handle(self, pid: int) -> Optional[ProcessHandle]:
        return self._handles.get(pid)

    def active_pids(self) -> List[int]:
        return list(self._handles.keys())

    def has_active(self) -> bool:
        return bool(self._handles)
