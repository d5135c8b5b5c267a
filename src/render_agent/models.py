"""
Data models for the Render Agent.

Job, progress and history state with status transitions.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, fields


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStatus(str, Enum):
    """Job lifecycle status"""
    PENDING = "pending"      # Queued, waiting for dependencies / a free slot
    SCHEDULED = "scheduled"  # Waiting for its earliest start time
    RUNNING = "running"      # Engine process alive
    COMPLETED = "completed"  # Process exited with code 0
    FAILED = "failed"        # Spawn failure or abnormal exit


class HistoryStatus(str, Enum):
    """Terminal outcome recorded in render history"""
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"      # Cancelled by user


# Statuses in which the UI layer may still edit a job
EDITABLE_STATUSES = (JobStatus.PENDING, JobStatus.SCHEDULED)


@dataclass
class ProgressSnapshot:
    """Live progress of one render session, derived from engine output."""
    current_frame: int = 0
    start_frame: int = 1
    total_frames: int = 1
    current_sample: int = 0
    total_samples: int = 0
    memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    in_compositing: bool = False
    compositing_operation: str = ""
    percentage: float = 0.0

    @classmethod
    def for_range(cls, start_frame: int, end_frame: int) -> "ProgressSnapshot":
        return cls(current_frame=start_frame, start_frame=start_frame, total_frames=end_frame)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProgressSnapshot":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Job:
    """
    A queued render request.

    Status and progress are owned by the scheduler; command, priority,
    dependencies and schedule time may be edited while the job is waiting.
    """
    job_id: str
    name: str
    command: str
    priority: int = 0
    dependencies: List[str] = field(default_factory=list)
    scheduled_time: Optional[datetime] = None
    status: JobStatus = JobStatus.PENDING

    # Cancelled jobs stay out of dispatch until released or reset
    held: bool = False

    parameters: Dict[str, Any] = field(default_factory=dict)
    output_path: str = ""
    progress: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    error: Optional[str] = None

    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        command: str,
        name: str = "",
        priority: int = 0,
        dependencies: Optional[List[str]] = None,
        scheduled_time: Optional[datetime] = None,
        parameters: Optional[Dict[str, Any]] = None,
        output_path: str = "",
    ) -> "Job":
        """Create a new job with generated ID"""
        job_id = str(uuid.uuid4())
        now = utc_now()
        return cls(
            job_id=job_id,
            name=name or f"render-{job_id[:8]}",
            command=command,
            priority=priority,
            dependencies=list(dict.fromkeys(dependencies or [])),
            scheduled_time=scheduled_time,
            status=JobStatus.SCHEDULED if scheduled_time else JobStatus.PENDING,
            parameters=dict(parameters or {}),
            output_path=output_path,
            created_at=now,
            updated_at=now,
        )

    def touch(self) -> None:
        self.updated_at = utc_now()

    def reset_progress(self) -> None:
        self.progress = ProgressSnapshot()
        self.error = None
        self.started_at = None

    def to_dict(self) -> Dict[str, Any]:
        """Full serialization for persistence and API responses"""
        return {
            "job_id": self.job_id,
            "name": self.name,
            "command": self.command,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "scheduled_time": _iso(self.scheduled_time),
            "status": self.status.value,
            "held": self.held,
            "parameters": dict(self.parameters),
            "output_path": self.output_path,
            "progress": self.progress.to_dict(),
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["job_id"],
            name=data.get("name", ""),
            command=data.get("command", ""),
            priority=int(data.get("priority", 0)),
            dependencies=list(data.get("dependencies") or []),
            scheduled_time=_parse_iso(data.get("scheduled_time")),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            held=bool(data.get("held", False)),
            parameters=dict(data.get("parameters") or {}),
            output_path=data.get("output_path", ""),
            progress=ProgressSnapshot.from_dict(data.get("progress")),
            error=data.get("error"),
            created_at=_parse_iso(data.get("created_at")) or utc_now(),
            updated_at=_parse_iso(data.get("updated_at")) or utc_now(),
            started_at=_parse_iso(data.get("started_at")),
        )


@dataclass
class ProcessHandle:
    """One live engine process, owned by the process supervisor."""
    pid: int
    command: str
    job_id: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)

    # Set before termination so the exit is reported as a cancellation
    cancelled: bool = False

    process: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "command": self.command,
            "job_id": self.job_id,
            "started_at": _iso(self.started_at),
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class HistoryRecord:
    """Immutable terminal snapshot of a finished job."""
    record_id: str
    name: str
    command: str
    status: HistoryStatus
    start_time: Optional[datetime]
    end_time: datetime
    duration: float
    progress: float = 0.0
    current_frame: int = 0
    total_frames: int = 0
    current_sample: int = 0
    total_samples: int = 0
    error: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the desktop UI reads"""
        data = {
            "id": self.record_id,
            "jobId": self.job_id,
            "name": self.name,
            "command": self.command,
            "status": self.status.value,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "duration": self.duration,
            "progress": self.progress,
            "currentFrame": self.current_frame,
            "totalFrames": self.total_frames,
            "currentSample": self.current_sample,
            "totalSamples": self.total_samples,
            "parameters": dict(self.parameters),
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            record_id=data["id"],
            job_id=data.get("jobId"),
            name=data.get("name", ""),
            command=data.get("command", ""),
            status=HistoryStatus(data.get("status", HistoryStatus.FAILED.value)),
            start_time=_parse_iso(data.get("startTime")),
            end_time=_parse_iso(data.get("endTime")) or utc_now(),
            duration=float(data.get("duration", 0.0)),
            progress=float(data.get("progress", 0.0)),
            current_frame=int(data.get("currentFrame", 0)),
            total_frames=int(data.get("totalFrames", 0)),
            current_sample=int(data.get("currentSample", 0)),
            total_samples=int(data.get("totalSamples", 0)),
            error=data.get("error"),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class QueueSettings:
    """User-editable queue settings, persisted alongside the jobs."""
    auto_start: bool = False
    max_concurrent: int = 1
    default_priority: int = 0
    default_output_path: str = ""

    def __post_init__(self) -> None:
        try:
            max_concurrent = int(self.max_concurrent)
        except (TypeError, ValueError):
            raise ValueError(f"max_concurrent must be an integer, got {self.max_concurrent!r}") from None
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        self.max_concurrent = max_concurrent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_start": self.auto_start,
            "max_concurrent": self.max_concurrent,
            "default_priority": self.default_priority,
            "default_output_path": self.default_output_path,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueueSettings":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
