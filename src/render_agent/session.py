"""
Render Session: one job execution.

Pairs a process started through the shared ProcessSupervisor with its own
ProgressParser, and republishes what they produce on per-session topics:

- progress  - partial ProgressSnapshot fields
- log       - every raw output line, before parsing
- error     - error text seen in the output (critical or not)
- hint      - the engine announced it is quitting (advisory)
- complete  - terminal outcome; always the last event of a session

Every subscription made through `RenderSession.subscribe` is released when
the session completes.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .command import frame_range_from_command
from .errors import SpawnError
from .events import EventBus, EventCallback, Subscription, SubscriptionGroup
from .models import ProgressSnapshot, utc_now
from .process_supervisor import ProcessExit, ProcessSupervisor
from .progress_parser import ErrorDetected, LogNoise, ProgressParser, ProgressUpdate, QuitHint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionOutcome:
    """How a render session ended."""
    job_id: str
    pid: Optional[int]
    exit_code: Optional[int]
    cancelled: bool
    snapshot: ProgressSnapshot
    started_at: datetime
    ended_at: datetime
    error: Optional[str] = None
    # Command as actually spawned, after output-path rewriting
    command: Optional[str] = None

    @property
    def spawn_failed(self) -> bool:
        return self.pid is None

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.exit_code == 0

    @property
    def duration(self) -> float:
        return max((self.ended_at - self.started_at).total_seconds(), 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "error": self.error,
            "command": self.command,
            "progress": self.snapshot.to_dict(),
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration": self.duration,
        }


class RenderSession:
    """Supervised process + progress parser for a single job run."""

    def __init__(
        self,
        job_id: str,
        command: str,
        supervisor: ProcessSupervisor,
        bus: EventBus,
        frame_range: Optional[Tuple[int, int]] = None,
    ):
        self.job_id = job_id
        self.command = command
        self.supervisor = supervisor
        self.bus = bus
        self.session_id = uuid.uuid4().hex

        start_frame, end_frame = frame_range or frame_range_from_command(command)
        self.parser = ProgressParser(start_frame, end_frame)

        self.pid: Optional[int] = None
        self.started_at: Optional[datetime] = None
        self.outcome: Optional[SessionOutcome] = None

        self._subscriptions = SubscriptionGroup(bus)
        self._finished = asyncio.Event()
        self._critical_error: Optional[str] = None

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self.parser.snapshot

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def topic(self, kind: str) -> str:
        return f"{kind}-{self.session_id}"

    def subscribe(self, kind: str, callback: EventCallback) -> Subscription:
        """Listen to one event kind for the lifetime of this session."""
        return self._subscriptions.subscribe(self.topic(kind), callback)

    def _publish(self, kind: str, data: Dict[str, Any]) -> None:
        payload = {"job_id": self.job_id, "session_id": self.session_id, "pid": self.pid}
        payload.update(data)
        self.bus.publish(self.topic(kind), payload)

    async def start(self) -> Optional[int]:
        """
        Start the engine process.

        Returns the pid, or None when the spawn failed; in that case the
        session has already completed with an error outcome.
        """
        if self.started_at is not None:
            raise RuntimeError(f"Session {self.session_id} was already started")

        self.started_at = utc_now()
        snapshot = self.parser.snapshot
        self._publish("progress", {
            "current_frame": snapshot.current_frame,
            "total_frames": snapshot.total_frames,
            "percentage": 0.0,
        })

        try:
            self.pid = await self.supervisor.start(
                self.command,
                on_line=self._on_line,
                on_exit=self._on_exit,
                job_id=self.job_id,
            )
        except SpawnError as e:
            logger.error(f"Render session for job {self.job_id} could not start: {e.message}")
            self._publish("error", {"message": e.message, "critical": True, "stream": "spawn"})
            self._finish(exit_code=None, cancelled=False, error=e.message)
            return None

        logger.info(f"[RENDER-SESSION] Job {self.job_id} running as PID {self.pid}")
        return self.pid

    async def stop(self) -> bool:
        """Ask the supervisor to terminate this session's process."""
        if self.pid is None or self.finished:
            return False
        return await self.supervisor.stop(self.pid)

    async def wait(self, timeout: Optional[float] = None) -> Optional[SessionOutcome]:
        """Wait for the terminal outcome; None if the timeout elapsed first."""
        try:
            await asyncio.wait_for(self._finished.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.outcome

    def _on_line(self, line: str, stream: str) -> None:
        self._publish("log", {"line": line, "stream": stream})

        for event in self.parser.feed(line, stream):
            if isinstance(event, ProgressUpdate):
                self._publish("progress", dict(event.fields))
            elif isinstance(event, ErrorDetected):
                if event.critical:
                    self._critical_error = event.message
                self._publish("error", {
                    "message": event.message,
                    "critical": event.critical,
                    "stream": event.stream,
                })
            elif isinstance(event, LogNoise):
                logger.debug(f"[{self.job_id}] stderr: {event.message}")
            elif isinstance(event, QuitHint):
                # Exit code stays authoritative; this only informs listeners
                logger.info(f"Job {self.job_id} engine reported quit, waiting for process exit")
                self._publish("hint", {"line": event.line})

    def _on_exit(self, result: ProcessExit) -> None:
        error = None
        if not result.cancelled and result.exit_code != 0:
            error = self._critical_error or f"Process exited with code {result.exit_code}"
        self._finish(exit_code=result.exit_code, cancelled=result.cancelled, error=error)

    def _finish(self, exit_code: Optional[int], cancelled: bool, error: Optional[str]) -> None:
        if self.outcome is not None:
            return

        self.outcome = SessionOutcome(
            job_id=self.job_id,
            pid=self.pid,
            exit_code=exit_code,
            cancelled=cancelled,
            snapshot=self.parser.snapshot,
            started_at=self.started_at or utc_now(),
            ended_at=utc_now(),
            error=error,
            command=self.command,
        )
        try:
            self._publish("complete", self.outcome.to_dict())
        finally:
            self._subscriptions.close()
            self._finished.set()
