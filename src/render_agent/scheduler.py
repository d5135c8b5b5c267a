"""
Queue Scheduler.

Owns the job collection and decides which job renders next:

- A job is eligible when it is pending, not held, its schedule time (if
  any) has arrived and every dependency has completed
- The eligible job with the highest priority wins; ties go to the job
  created first
- At most `settings.max_concurrent` jobs run at once

A single asyncio task re-evaluates the queue every `poll_interval`
seconds, or as soon as a mutation or a finished render wakes it. All job
mutations happen on the event loop that runs that task.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .command import ensure_unique_output
from .errors import DependencyError, JobNotFoundError, JobStateError, PersistenceError
from .events import (
    TOPIC_HISTORY,
    TOPIC_JOB_ERROR,
    TOPIC_JOB_FINISHED,
    TOPIC_JOB_LOG,
    TOPIC_JOB_PROGRESS,
    TOPIC_JOB_UPDATED,
    Event,
    EventBus,
)
from .history import RenderHistory, record_from_outcome
from .models import EDITABLE_STATUSES, Job, JobStatus, QueueSettings, utc_now
from .process_supervisor import ProcessSupervisor
from .session import RenderSession
from .store import CoalescingFlusher, KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)


QUEUE_KEY = "queue"

DEFAULT_POLL_INTERVAL_SEC = 1.0

# Upper bound for a cancelled session to report its exit
CANCEL_WAIT_SEC = 10.0

# Fields the UI layer may change through update_job
EDITABLE_FIELDS = (
    "name",
    "command",
    "priority",
    "dependencies",
    "scheduled_time",
    "parameters",
    "output_path",
)

# Fields where an explicit None has a meaning (clear the schedule, empty list/dict)
NULLABLE_FIELDS = ("dependencies", "scheduled_time", "parameters")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QueueScheduler:
    """
    Dependency- and priority-aware render queue with bounded concurrency.

    Terminal transitions:
    - exit code 0        -> completed
    - cancelled by user  -> pending, held until released or reset
    - anything else      -> failed (spawn failures included)

    Each terminal transition is recorded in history and published on the
    `job_finished` topic.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        store: Optional[KeyValueStore] = None,
        bus: Optional[EventBus] = None,
        history: Optional[RenderHistory] = None,
        settings: Optional[QueueSettings] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        flush_delay: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.supervisor = supervisor
        self.store = store if store is not None else MemoryStore()
        self.bus = bus or EventBus()
        self.history = history or RenderHistory(self.store)
        self.settings = settings or QueueSettings()
        self.poll_interval = poll_interval
        self.clock = clock

        self._jobs: Dict[str, Job] = {}
        self._sessions: Dict[str, RenderSession] = {}
        # Jobs whose cancellation should requeue them without a hold
        self._requeue_on_cancel: Set[str] = set()

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self.processing = False

        self._flusher = CoalescingFlusher(self._write_state, delay=flush_delay, name="queue")

    # ======================== Persistence ========================

    def to_state(self) -> Dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in self._jobs.values()],
            "settings": self.settings.to_dict(),
        }

    def _write_state(self) -> None:
        self.store.set(QUEUE_KEY, self.to_state())

    def load(self) -> None:
        """
        Restore jobs and settings from the store.

        A missing or unreadable state leaves an empty queue with default
        settings. Jobs saved while running are requeued as pending.
        """
        try:
            state = self.store.get(QUEUE_KEY, None)
        except PersistenceError as e:
            logger.error(f"Error loading queue state, starting empty: {e}")
            state = None

        jobs: Dict[str, Job] = {}
        settings = QueueSettings()

        if isinstance(state, dict):
            try:
                settings = QueueSettings.from_dict(state.get("settings"))
            except (TypeError, ValueError) as e:
                logger.error(f"Invalid queue settings, using defaults: {e}")

            for item in state.get("jobs") or []:
                try:
                    job = Job.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed job in queue state: {e}")
                    continue

                if job.status == JobStatus.RUNNING:
                    logger.info(f"Job {job.job_id} was running when the agent stopped, requeueing")
                    job.status = JobStatus.PENDING
                    job.reset_progress()
                jobs[job.job_id] = job
        elif state is not None:
            logger.error("Queue state is not an object, starting empty")

        self._jobs = jobs
        self.settings = settings
        self.history.load()
        logger.info(f"Loaded {len(jobs)} job(s) from store")

    def flush(self) -> bool:
        """Write pending queue changes now."""
        return self._flusher.flush()

    def _changed(self, job: Optional[Job] = None) -> None:
        if job is not None:
            job.touch()
            self.bus.publish(TOPIC_JOB_UPDATED, {"job_id": job.job_id, "job": job.to_dict()})
        self._flusher.mark_dirty()
        self._wake.set()

    # ======================== Queries ========================

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _require_editable(self, job_id: str, operation: str) -> Job:
        job = self._require(job_id)
        if job.status not in EDITABLE_STATUSES:
            raise JobStateError(job_id, job.status.value, operation)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def running_count(self) -> int:
        return len(self._sessions)

    def is_eligible(self, job: Job, now: Optional[datetime] = None) -> bool:
        if job.status != JobStatus.PENDING or job.held:
            return False
        if job.job_id in self._sessions:
            return False

        if job.scheduled_time is not None:
            now = now or self.clock()
            if now < job.scheduled_time:
                return False

        for dep_id in job.dependencies:
            dep = self._jobs.get(dep_id)
            if dep is None or dep.status != JobStatus.COMPLETED:
                return False
        return True

    def select_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Highest priority eligible job; earliest created wins ties."""
        now = now or self.clock()
        best: Optional[Job] = None
        # dict order is insertion order, so the first of equal jobs is kept
        for job in self._jobs.values():
            if not self.is_eligible(job, now):
                continue
            if best is None:
                best = job
            elif job.priority > best.priority:
                best = job
            elif job.priority == best.priority and job.created_at < best.created_at:
                best = job
        return best

    def queue_status(self) -> Dict[str, Any]:
        jobs = list(self._jobs.values())
        counts = {status.value: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status.value] += 1

        return {
            "processing": self.processing,
            "total": len(jobs),
            "held": len([j for j in jobs if j.held]),
            "jobs": counts,
            "running": self.running_count(),
            "max_concurrent": self.settings.max_concurrent,
            "active_pids": self.supervisor.active_pids(),
        }

    # ======================== Mutations ========================

    def _check_dependencies(self, job_id: Optional[str], dependencies: List[str]) -> None:
        for dep_id in dependencies:
            if dep_id == job_id:
                raise DependencyError(job_id, dep_id, "a job cannot depend on itself")
            if dep_id not in self._jobs:
                raise DependencyError(job_id, dep_id, "unknown job")
            if job_id is not None and self._depends_on(dep_id, job_id):
                raise DependencyError(job_id, dep_id, "dependency would create a cycle")

    def _depends_on(self, job_id: str, target_id: str) -> bool:
        """True if `job_id` transitively depends on `target_id`."""
        stack = [job_id]
        seen: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == target_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            job = self._jobs.get(current)
            if job is not None:
                stack.extend(job.dependencies)
        return False

    def add_job(
        self,
        command: str,
        name: str = "",
        priority: Optional[int] = None,
        dependencies: Optional[List[str]] = None,
        scheduled_time: Optional[datetime] = None,
        parameters: Optional[Dict[str, Any]] = None,
        output_path: Optional[str] = None,
    ) -> Job:
        """Queue a new job. Unset priority/output path fall back to the queue settings."""
        if not command or not command.strip():
            raise ValueError("command must not be empty")

        dependencies = list(dict.fromkeys(dependencies or []))
        self._check_dependencies(None, dependencies)

        job = Job.create(
            command=command,
            name=name,
            priority=self.settings.default_priority if priority is None else int(priority),
            dependencies=dependencies,
            scheduled_time=_as_utc(scheduled_time) if scheduled_time else None,
            parameters=parameters,
            output_path=self.settings.default_output_path if output_path is None else output_path,
        )
        self._jobs[job.job_id] = job
        logger.info(f"Job {job.job_id} added to queue (name={job.name}, priority={job.priority})")
        self._changed(job)

        if self.settings.auto_start and not self.processing:
            self._start_if_loop_running()
        return job

    def remove_job(self, job_id: str) -> Job:
        """Drop a job that is not running and that no other job depends on."""
        job = self._require(job_id)
        if job.status == JobStatus.RUNNING:
            raise JobStateError(job_id, job.status.value, "remove")

        dependents = [other.job_id for other in self._jobs.values() if job_id in other.dependencies]
        if dependents:
            raise DependencyError(
                dependents[0], job_id, "job is still required by other jobs",
                details={"dependents": dependents},
            )

        del self._jobs[job_id]
        logger.info(f"Job {job_id} removed from queue")
        self.bus.publish(TOPIC_JOB_UPDATED, {"job_id": job_id, "removed": True})
        self._changed()
        return job

    def update_job(self, job_id: str, **changes: Any) -> Job:
        """Edit a pending or scheduled job. Only EDITABLE_FIELDS are accepted."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        nulls = [key for key, value in changes.items() if value is None and key not in NULLABLE_FIELDS]
        if nulls:
            raise ValueError(f"Field(s) cannot be null: {', '.join(sorted(nulls))}")

        job = self._require_editable(job_id, "update")

        if "command" in changes and not (changes["command"] or "").strip():
            raise ValueError("command must not be empty")

        if "dependencies" in changes:
            dependencies = list(dict.fromkeys(changes["dependencies"] or []))
            self._check_dependencies(job_id, dependencies)
            changes["dependencies"] = dependencies

        if "priority" in changes:
            changes["priority"] = int(changes["priority"])

        if "parameters" in changes:
            changes["parameters"] = dict(changes["parameters"] or {})

        scheduling = "scheduled_time" in changes
        scheduled_time = changes.pop("scheduled_time", None)

        for key, value in changes.items():
            setattr(job, key, value)

        if scheduling:
            self._apply_schedule(job, scheduled_time)

        self._changed(job)
        return job

    def set_priority(self, job_id: str, priority: int) -> Job:
        return self.update_job(job_id, priority=priority)

    def add_dependency(self, job_id: str, dependency_id: str) -> Job:
        job = self._require_editable(job_id, "add a dependency to")
        if dependency_id in job.dependencies:
            return job

        self._check_dependencies(job_id, [dependency_id])
        job.dependencies.append(dependency_id)
        self._changed(job)
        return job

    def remove_dependency(self, job_id: str, dependency_id: str) -> Job:
        job = self._require_editable(job_id, "remove a dependency from")
        if dependency_id in job.dependencies:
            job.dependencies.remove(dependency_id)
            self._changed(job)
        return job

    def _apply_schedule(self, job: Job, when: Optional[datetime]) -> None:
        if when is None:
            job.scheduled_time = None
            job.status = JobStatus.PENDING
        else:
            job.scheduled_time = _as_utc(when)
            job.status = JobStatus.SCHEDULED

    def schedule_job(self, job_id: str, when: datetime) -> Job:
        job = self._require_editable(job_id, "schedule")
        self._apply_schedule(job, when)
        logger.info(f"Job {job_id} scheduled for {job.scheduled_time.isoformat()}")
        self._changed(job)
        return job

    def cancel_schedule(self, job_id: str) -> Job:
        job = self._require_editable(job_id, "unschedule")
        self._apply_schedule(job, None)
        self._changed(job)
        return job

    def reset_job(self, job_id: str) -> Job:
        """Put a completed, failed or held job back in the queue with cleared progress."""
        job = self._require(job_id)
        if job.status == JobStatus.RUNNING:
            raise JobStateError(job_id, job.status.value, "reset")

        job.reset_progress()
        job.held = False
        if job.scheduled_time is not None and job.scheduled_time > self.clock():
            job.status = JobStatus.SCHEDULED
        else:
            job.status = JobStatus.PENDING
        logger.info(f"Job {job_id} reset to {job.status.value}")
        self._changed(job)
        return job

    def reset_all(self) -> int:
        """Reset every finished or held job; returns how many were reset."""
        count = 0
        for job in list(self._jobs.values()):
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED) or job.held:
                self.reset_job(job.job_id)
                count += 1
        return count

    def release_job(self, job_id: str) -> Job:
        job = self._require(job_id)
        if job.status == JobStatus.RUNNING:
            raise JobStateError(job_id, job.status.value, "release")
        if job.held:
            job.held = False
            self._changed(job)
        return job

    def update_settings(self, **changes: Any) -> QueueSettings:
        known = set(QueueSettings().to_dict())
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        nulls = [key for key, value in changes.items() if value is None]
        if nulls:
            raise ValueError(f"Setting(s) cannot be null: {', '.join(sorted(nulls))}")

        merged = self.settings.to_dict()
        merged.update(changes)
        self.settings = QueueSettings(**merged)
        logger.info(f"Queue settings updated: {changes}")
        self._changed()
        return self.settings

    # ======================== Processing ========================

    def _start_if_loop_running(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.start_processing()

    def start_processing(self) -> bool:
        """Start the dispatch loop. Returns False if it was already running."""
        if self.processing and self._loop_task is not None and not self._loop_task.done():
            self._wake.set()
            return False

        self.processing = True
        self._wake.set()
        self._loop_task = asyncio.create_task(self._run(), name="render-queue")
        logger.info(f"[RENDER-QUEUE] Processing started (max_concurrent={self.settings.max_concurrent})")
        return True

    async def stop_processing(self) -> int:
        """
        Stop dispatching and terminate every running session.

        Stopped jobs go back to pending without a hold so the next
        `start_processing()` picks them up again. Returns how many
        sessions were stopped.
        """
        self.processing = False
        self._wake.set()

        task, self._loop_task = self._loop_task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

        stopped = 0
        for job_id in list(self._sessions.keys()):
            self._requeue_on_cancel.add(job_id)
            try:
                await self.cancel(job_id)
                stopped += 1
            except JobStateError:
                # Finished on its own while we were stopping
                self._requeue_on_cancel.discard(job_id)

        logger.info(f"[RENDER-QUEUE] Processing stopped ({stopped} session(s) terminated)")
        return stopped

    async def _run(self) -> None:
        while self.processing:
            self._wake.clear()
            try:
                await self._evaluate()
            except Exception as e:
                logger.error(f"Error in queue evaluation: {e}")

            try:
                await asyncio.wait_for(self._wake.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _promote_scheduled(self, now: datetime) -> None:
        for job in self._jobs.values():
            if job.status == JobStatus.SCHEDULED and job.scheduled_time is not None and job.scheduled_time <= now:
                job.status = JobStatus.PENDING
                logger.info(f"Job {job.job_id} reached its scheduled time")
                self._changed(job)

    async def _evaluate(self) -> int:
        """Dispatch eligible jobs until the concurrency bound is reached."""
        dispatched = 0
        async with self._lock:
            if not self.processing:
                return 0

            now = self.clock()
            self._promote_scheduled(now)

            while self.running_count() < self.settings.max_concurrent:
                job = self.select_next(now)
                if job is None:
                    break
                await self._dispatch(job)
                dispatched += 1
        return dispatched

    async def _dispatch(self, job: Job) -> None:
        command = ensure_unique_output(job.command)
        session = RenderSession(job.job_id, command, self.supervisor, self.bus)

        # Mark running before the spawn so the job can never be selected twice
        job.reset_progress()
        job.progress = replace(session.snapshot)
        job.status = JobStatus.RUNNING
        job.started_at = self.clock()
        self._sessions[job.job_id] = session
        self._changed(job)

        session.subscribe("progress", lambda event: self._on_session_progress(job.job_id, session))
        session.subscribe("log", lambda event: self._forward(TOPIC_JOB_LOG, event))
        session.subscribe("error", lambda event: self._on_session_error(job.job_id, event))
        session.subscribe("complete", lambda event: self._on_session_complete(job.job_id, session))

        logger.info(f"[RENDER-QUEUE] Dispatching job {job.job_id} ({job.name})")
        await session.start()

    def _forward(self, topic: str, event: Event) -> None:
        self.bus.publish(topic, event.data)

    def _on_session_progress(self, job_id: str, session: RenderSession) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.progress = replace(session.snapshot)
        self.bus.publish(TOPIC_JOB_PROGRESS, {"job_id": job_id, "progress": job.progress.to_dict()})

    def _on_session_error(self, job_id: str, event: Event) -> None:
        job = self._jobs.get(job_id)
        if job is not None and event.data.get("critical"):
            job.error = event.data.get("message")
        self._forward(TOPIC_JOB_ERROR, event)

    def _on_session_complete(self, job_id: str, session: RenderSession) -> None:
        self._sessions.pop(job_id, None)
        requeue = job_id in self._requeue_on_cancel
        self._requeue_on_cancel.discard(job_id)

        job = self._jobs.get(job_id)
        outcome = session.outcome
        if job is None or outcome is None:
            return

        job.progress = replace(outcome.snapshot)
        if outcome.cancelled:
            job.status = JobStatus.PENDING
            job.held = not requeue
            job.error = None
        elif outcome.succeeded:
            job.status = JobStatus.COMPLETED
            job.error = None
        else:
            job.status = JobStatus.FAILED
            job.error = outcome.error

        record = record_from_outcome(job, outcome)
        self.history.add(record)

        logger.info(
            f"[RENDER-QUEUE] Job {job_id} finished: {job.status.value}"
            + (f" ({job.error})" if job.error else "")
        )
        self.bus.publish(TOPIC_JOB_FINISHED, {
            "job_id": job_id,
            "status": job.status.value,
            "held": job.held,
            "outcome": outcome.to_dict(),
        })
        self.bus.publish(TOPIC_HISTORY, record.to_dict())
        self._changed(job)

    async def cancel(self, job_id: str) -> Job:
        """Stop a running job and wait until it is back in pending."""
        job = self._require(job_id)
        session = self._sessions.get(job_id)
        if job.status != JobStatus.RUNNING or session is None:
            raise JobStateError(job_id, job.status.value, "cancel")

        async with self._lock:
            logger.info(f"Cancelling job {job_id}")
            await session.stop()
            if await session.wait(CANCEL_WAIT_SEC) is None:
                logger.warning(f"Job {job_id} did not report its exit within {CANCEL_WAIT_SEC}s")
        return job

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no session is running. False on timeout."""
        async def _idle() -> None:
            while self._sessions:
                sessions = list(self._sessions.values())
                await asyncio.gather(*(s.wait() for s in sessions))
        try:
            await asyncio.wait_for(_idle(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def shutdown(self) -> None:
        """Stop processing, terminate running renders and flush state."""
        logger.info("Shutting down render queue...")
        await self.stop_processing()
        await self.supervisor.stop_all()
        self.flush()
        logger.info("Render queue shutdown complete")
