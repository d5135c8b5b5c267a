"""Tests for the queue scheduler."""

import asyncio
from datetime import timedelta

import pytest

from src.render_agent.errors import DependencyError, JobNotFoundError, JobStateError, PersistenceError
from src.render_agent.events import TOPIC_JOB_FINISHED, TOPIC_JOB_UPDATED, EventBus
from src.render_agent.models import HistoryStatus, Job, JobStatus, QueueSettings, utc_now
from src.render_agent.process_supervisor import ProcessSupervisor
from src.render_agent.scheduler import QUEUE_KEY, QueueScheduler
from src.render_agent.store import MemoryStore

from .conftest import python_command, wait_until

QUICK = python_command("print('Fra:1', flush=True)")
SHORT = python_command("import time; time.sleep(0.2)")
LONG = python_command("import time; print('Fra:1', flush=True); time.sleep(30)")

FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED)


class FakeClock:
    def __init__(self):
        self.now = utc_now()

    def __call__(self):
        return self.now


class BrokenStore(MemoryStore):
    def get(self, key, default=None):
        raise PersistenceError("disk unavailable", key=key)

    def set(self, key, value):
        raise PersistenceError("disk unavailable", key=key)


def make_scheduler(store=None, clock=None, **settings):
    return QueueScheduler(
        supervisor=ProcessSupervisor(terminate_timeout=0.5),
        store=store if store is not None else MemoryStore(),
        bus=EventBus(),
        settings=QueueSettings(**settings),
        poll_interval=0.05,
        flush_delay=0.05,
        clock=clock or utc_now,
    )


def started_order(scheduler):
    """Record job ids in the order they are marked running."""
    order = []

    def on_update(event):
        job = event.data.get("job") or {}
        if job.get("status") == JobStatus.RUNNING.value:
            order.append(job["job_id"])

    scheduler.bus.subscribe(TOPIC_JOB_UPDATED, on_update)
    return order


class TestSelection:
    """Test eligibility and selection without running anything."""

    def test_highest_priority_first(self):
        scheduler = make_scheduler()
        low = scheduler.add_job(QUICK, priority=1)
        high = scheduler.add_job(QUICK, priority=5)

        assert scheduler.select_next().job_id == high.job_id
        assert low.job_id != high.job_id

    def test_priority_tie_goes_to_earliest(self):
        scheduler = make_scheduler()
        first = scheduler.add_job(QUICK, priority=2)
        scheduler.add_job(QUICK, priority=2)
        scheduler.add_job(QUICK, priority=2)

        assert scheduler.select_next().job_id == first.job_id

    def test_tie_uses_created_at(self):
        scheduler = make_scheduler()
        later = scheduler.add_job(QUICK)
        earlier = scheduler.add_job(QUICK)
        earlier.created_at = later.created_at - timedelta(seconds=5)

        assert scheduler.select_next().job_id == earlier.job_id

    def test_dependencies_must_complete(self):
        scheduler = make_scheduler()
        parent = scheduler.add_job(QUICK)
        child = scheduler.add_job(QUICK, priority=10, dependencies=[parent.job_id])

        assert not scheduler.is_eligible(child)
        assert scheduler.select_next().job_id == parent.job_id

        parent.status = JobStatus.FAILED
        assert not scheduler.is_eligible(child)

        parent.status = JobStatus.COMPLETED
        assert scheduler.is_eligible(child)

    def test_held_and_scheduled_jobs_not_eligible(self):
        clock = FakeClock()
        scheduler = make_scheduler(clock=clock)
        held = scheduler.add_job(QUICK)
        held.held = True
        later = scheduler.add_job(QUICK, scheduled_time=clock.now + timedelta(hours=1))

        assert later.status == JobStatus.SCHEDULED
        assert not scheduler.is_eligible(held)
        assert not scheduler.is_eligible(later)
        assert scheduler.select_next() is None

    def test_defaults_from_settings(self):
        scheduler = make_scheduler(default_priority=3, default_output_path="/renders")
        job = scheduler.add_job(QUICK)

        assert job.priority == 3
        assert job.output_path == "/renders"
        assert scheduler.add_job(QUICK, priority=0).priority == 0

    def test_queue_status(self):
        scheduler = make_scheduler(max_concurrent=2)
        scheduler.add_job(QUICK)
        done = scheduler.add_job(QUICK)
        done.status = JobStatus.COMPLETED

        status = scheduler.queue_status()
        assert status["total"] == 2
        assert status["jobs"]["pending"] == 1
        assert status["jobs"]["completed"] == 1
        assert status["max_concurrent"] == 2
        assert status["processing"] is False


class TestMutations:
    """Test job edits and their state rules."""

    @pytest.fixture
    def scheduler(self):
        return make_scheduler()

    def test_empty_command_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.add_job("  ")

    def test_dependency_validation(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK, dependencies=[a.job_id])

        with pytest.raises(DependencyError):
            scheduler.add_dependency(a.job_id, a.job_id)
        with pytest.raises(DependencyError):
            scheduler.add_dependency(a.job_id, "missing")
        with pytest.raises(DependencyError):
            scheduler.add_dependency(a.job_id, b.job_id)
        with pytest.raises(JobNotFoundError):
            scheduler.add_dependency("missing", a.job_id)
        with pytest.raises(DependencyError):
            scheduler.add_job(QUICK, dependencies=["missing"])

    def test_add_and_remove_dependency(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK)

        scheduler.add_dependency(b.job_id, a.job_id)
        scheduler.add_dependency(b.job_id, a.job_id)
        assert b.dependencies == [a.job_id]

        scheduler.remove_dependency(b.job_id, a.job_id)
        assert b.dependencies == []

    def test_indirect_cycle_rejected(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK, dependencies=[a.job_id])
        c = scheduler.add_job(QUICK, dependencies=[b.job_id])

        with pytest.raises(DependencyError):
            scheduler.update_job(a.job_id, dependencies=[c.job_id])

    def test_update_only_while_waiting(self, scheduler):
        job = scheduler.add_job(QUICK)
        scheduler.update_job(job.job_id, name="renamed", priority="7")
        assert job.name == "renamed"
        assert job.priority == 7

        job.status = JobStatus.COMPLETED
        with pytest.raises(JobStateError):
            scheduler.set_priority(job.job_id, 1)

    def test_update_unknown_field(self, scheduler):
        job = scheduler.add_job(QUICK)
        with pytest.raises(ValueError):
            scheduler.update_job(job.job_id, status="completed")

    def test_schedule_and_unschedule(self, scheduler):
        job = scheduler.add_job(QUICK)
        when = utc_now() + timedelta(minutes=10)

        scheduler.schedule_job(job.job_id, when)
        assert job.status == JobStatus.SCHEDULED
        assert job.scheduled_time == when

        scheduler.cancel_schedule(job.job_id)
        assert job.status == JobStatus.PENDING
        assert job.scheduled_time is None

    def test_naive_schedule_time_is_utc(self, scheduler):
        job = scheduler.add_job(QUICK)
        when = utc_now().replace(tzinfo=None) + timedelta(minutes=1)

        scheduler.update_job(job.job_id, scheduled_time=when)
        assert job.scheduled_time.tzinfo is not None
        assert job.status == JobStatus.SCHEDULED

    def test_remove_job(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK, dependencies=[a.job_id])

        scheduler.remove_job(b.job_id)
        scheduler.remove_job(a.job_id)

        assert scheduler.get_job(a.job_id) is None
        assert scheduler.list_jobs() == []
        with pytest.raises(JobNotFoundError):
            scheduler.remove_job(a.job_id)

    def test_remove_required_job_rejected(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK, dependencies=[a.job_id])

        with pytest.raises(DependencyError) as exc_info:
            scheduler.remove_job(a.job_id)

        assert exc_info.value.details["dependents"] == [b.job_id]
        assert scheduler.get_job(a.job_id) is a
        assert b.dependencies == [a.job_id]
        # The dependent stays blocked behind its upstream job
        assert scheduler.select_next().job_id == a.job_id
        assert not scheduler.is_eligible(b)

    def test_remove_after_dependency_dropped(self, scheduler):
        a = scheduler.add_job(QUICK)
        b = scheduler.add_job(QUICK, dependencies=[a.job_id])

        scheduler.remove_dependency(b.job_id, a.job_id)
        scheduler.remove_job(a.job_id)

        assert scheduler.select_next().job_id == b.job_id

    def test_update_rejects_null_fields(self, scheduler):
        job = scheduler.add_job(QUICK, name="shot", priority=3)

        for field in ("name", "command", "priority", "output_path"):
            with pytest.raises(ValueError):
                scheduler.update_job(job.job_id, **{field: None})

        assert job.name == "shot"
        assert job.priority == 3
        assert job.command == QUICK

    def test_update_accepts_null_schedule_and_lists(self, scheduler):
        job = scheduler.add_job(QUICK, parameters={"samples": 8})
        scheduler.schedule_job(job.job_id, utc_now() + timedelta(minutes=5))

        scheduler.update_job(job.job_id, scheduled_time=None, dependencies=None, parameters=None)

        assert job.status == JobStatus.PENDING
        assert job.scheduled_time is None
        assert job.dependencies == []
        assert job.parameters == {}

    def test_remove_running_job_rejected(self, scheduler):
        job = scheduler.add_job(QUICK)
        job.status = JobStatus.RUNNING
        with pytest.raises(JobStateError):
            scheduler.remove_job(job.job_id)

    def test_reset_and_release(self, scheduler):
        failed = scheduler.add_job(QUICK)
        failed.status = JobStatus.FAILED
        failed.error = "Process exited with code 1"
        held = scheduler.add_job(QUICK)
        held.held = True
        scheduler.add_job(QUICK)

        scheduler.reset_job(failed.job_id)
        assert failed.status == JobStatus.PENDING
        assert failed.error is None

        scheduler.release_job(held.job_id)
        assert held.held is False

        held.held = True
        assert scheduler.reset_all() == 1
        assert held.held is False

    def test_update_settings(self, scheduler):
        settings = scheduler.update_settings(max_concurrent=3, auto_start=False)
        assert settings.max_concurrent == 3

        with pytest.raises(ValueError):
            scheduler.update_settings(max_concurrent=0)
        with pytest.raises(ValueError):
            scheduler.update_settings(unknown=True)
        with pytest.raises(ValueError):
            scheduler.update_settings(max_concurrent=None)
        with pytest.raises(ValueError):
            scheduler.update_settings(auto_start=None)
        with pytest.raises(ValueError):
            scheduler.update_settings(max_concurrent="many")
        assert scheduler.settings.max_concurrent == 3
        assert scheduler.settings.auto_start is False


class TestPersistence:
    """Test queue state round-trips through the store."""

    def test_round_trip(self):
        store = MemoryStore()
        original = make_scheduler(store=store)
        a = original.add_job(QUICK, name="a", parameters={"samples": 32})
        b = original.add_job(QUICK, name="b", priority=4, dependencies=[a.job_id])
        original.schedule_job(b.job_id, utc_now() + timedelta(days=1))
        original.update_settings(max_concurrent=2, default_priority=1, default_output_path="/out")
        original.flush()

        restored = make_scheduler(store=store)
        restored.load()

        assert [j.to_dict() for j in restored.list_jobs()] == [j.to_dict() for j in original.list_jobs()]
        assert restored.settings == original.settings

    def test_running_jobs_restored_as_pending(self):
        job = Job.create(QUICK)
        job.status = JobStatus.RUNNING
        store = MemoryStore({QUEUE_KEY: {"jobs": [job.to_dict()], "settings": {"max_concurrent": 4}}})

        scheduler = make_scheduler(store=store)
        scheduler.load()

        restored = scheduler.get_job(job.job_id)
        assert restored.status == JobStatus.PENDING
        assert scheduler.settings.max_concurrent == 4

    def test_unreadable_store_falls_back_to_defaults(self):
        scheduler = make_scheduler(store=BrokenStore(), max_concurrent=3)
        scheduler.load()

        assert scheduler.list_jobs() == []
        assert scheduler.settings == QueueSettings()

        # Mutations keep working in memory
        job = scheduler.add_job(QUICK)
        assert scheduler.get_job(job.job_id) is job
        assert scheduler.flush() is False

    def test_malformed_entries_skipped(self):
        good = Job.create(QUICK)
        store = MemoryStore({QUEUE_KEY: {
            "jobs": [{"name": "no id"}, good.to_dict()],
            "settings": {"max_concurrent": 0},
        }})

        scheduler = make_scheduler(store=store)
        scheduler.load()

        assert [j.job_id for j in scheduler.list_jobs()] == [good.job_id]
        assert scheduler.settings == QueueSettings()


class TestProcessing:
    """Test the dispatch loop with real child processes."""

    @pytest.mark.asyncio
    async def test_dependency_ordering(self):
        scheduler = make_scheduler(max_concurrent=2)
        order = started_order(scheduler)
        parent = scheduler.add_job(SHORT, name="parent")
        child = scheduler.add_job(QUICK, name="child", priority=10, dependencies=[parent.job_id])

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: child.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert order == [parent.job_id, child.job_id]
        assert parent.status == JobStatus.COMPLETED
        assert child.status == JobStatus.COMPLETED
        assert child.started_at >= parent.started_at

    @pytest.mark.asyncio
    async def test_priority_order(self):
        scheduler = make_scheduler(max_concurrent=1)
        order = started_order(scheduler)
        low = scheduler.add_job(QUICK, priority=0)
        high = scheduler.add_job(QUICK, priority=5)

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: low.status in FINISHED and high.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert order == [high.job_id, low.job_id]

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        scheduler = make_scheduler(max_concurrent=2)
        peak = []
        scheduler.bus.subscribe(TOPIC_JOB_UPDATED, lambda e: peak.append(scheduler.running_count()))
        jobs = [scheduler.add_job(python_command("import time; time.sleep(0.3)")) for _ in range(4)]

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: all(j.status in FINISHED for j in jobs), timeout=20)
        finally:
            await scheduler.shutdown()

        assert max(peak) == 2
        assert all(j.status == JobStatus.COMPLETED for j in jobs)
        assert len(scheduler.history.records()) == 4

    @pytest.mark.asyncio
    async def test_failed_exit_recorded(self):
        scheduler = make_scheduler()
        finished = []
        scheduler.bus.subscribe(TOPIC_JOB_FINISHED, lambda e: finished.append(e.data))
        job = scheduler.add_job(python_command("import sys; sys.exit(4)"))

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: job.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert job.status == JobStatus.FAILED
        assert job.error == "Process exited with code 4"
        assert finished[0]["status"] == "failed"
        record = scheduler.history.records()[0]
        assert record.status == HistoryStatus.FAILED
        assert record.job_id == job.job_id

    @pytest.mark.asyncio
    async def test_history_keeps_rewritten_command(self, tmp_path):
        base = tmp_path / "shot"
        (tmp_path / "shot0001.png").write_text("x")
        command = f"{QUICK} -o {base} -f 1"

        scheduler = make_scheduler()
        job = scheduler.add_job(command)

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: job.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert job.status == JobStatus.COMPLETED
        # The stored job keeps its original command; history shows what ran
        assert job.command == command
        record = scheduler.history.records()[0]
        assert f'-o "{base}_1"' in record.command
        assert record.command != job.command

    @pytest.mark.asyncio
    async def test_spawn_failure_marks_failed_and_continues(self):
        scheduler = make_scheduler()
        broken = scheduler.add_job("/no/such/blender -b scene.blend -a", priority=5)
        good = scheduler.add_job(QUICK)

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: good.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert broken.status == JobStatus.FAILED
        assert broken.error.startswith("Failed to start Blender")
        assert good.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_returns_job_to_pending(self):
        scheduler = make_scheduler()
        job = scheduler.add_job(LONG)

        try:
            scheduler.start_processing()
            assert await wait_until(lambda: job.status == JobStatus.RUNNING and scheduler.supervisor.has_active())

            await scheduler.cancel(job.job_id)

            assert job.status == JobStatus.PENDING
            assert job.held is True
            assert scheduler.running_count() == 0
            assert scheduler.history.records()[0].status == HistoryStatus.STOPPED

            # Held jobs are not dispatched again
            await asyncio.sleep(0.3)
            assert job.status == JobStatus.PENDING

            with pytest.raises(JobStateError):
                await scheduler.cancel(job.job_id)
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_stop_processing_requeues_running(self):
        scheduler = make_scheduler()
        job = scheduler.add_job(LONG)

        scheduler.start_processing()
        assert await wait_until(lambda: job.status == JobStatus.RUNNING and scheduler.supervisor.has_active())

        stopped = await scheduler.stop_processing()

        assert stopped == 1
        assert scheduler.processing is False
        assert job.status == JobStatus.PENDING
        assert job.held is False
        assert not scheduler.supervisor.has_active()
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_scheduled_job_waits_for_its_time(self):
        clock = FakeClock()
        scheduler = make_scheduler(clock=clock)
        job = scheduler.add_job(QUICK, scheduled_time=clock.now + timedelta(hours=1))

        try:
            scheduler.start_processing()
            await asyncio.sleep(0.3)
            assert job.status == JobStatus.SCHEDULED

            clock.now += timedelta(hours=2)
            assert await wait_until(lambda: job.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_auto_start_on_add(self):
        scheduler = make_scheduler(auto_start=True)
        try:
            job = scheduler.add_job(QUICK)
            assert scheduler.processing is True
            assert await wait_until(lambda: job.status in FINISHED, timeout=15)
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_flushes_state(self):
        store = MemoryStore()
        scheduler = make_scheduler(store=store)
        scheduler.flush()
        job = scheduler.add_job(QUICK, name="persist-me")

        await scheduler.shutdown()

        saved = store.get(QUEUE_KEY)
        assert [j["job_id"] for j in saved["jobs"]] == [job.job_id]
