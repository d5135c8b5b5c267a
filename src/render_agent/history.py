"""
Render history: one immutable record per finished job run.
"""
import logging
import uuid
from typing import List, Optional

from .errors import PersistenceError
from .models import HistoryRecord, HistoryStatus, Job
from .session import SessionOutcome
from .store import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "renderHistory"


def record_from_outcome(job: Job, outcome: SessionOutcome) -> HistoryRecord:
    """Build the terminal record for a job from its session outcome."""
    if outcome.cancelled:
        status = HistoryStatus.STOPPED
    elif outcome.succeeded:
        status = HistoryStatus.COMPLETED
    else:
        status = HistoryStatus.FAILED

    snapshot = outcome.snapshot
    return HistoryRecord(
        record_id=str(uuid.uuid4()),
        job_id=job.job_id,
        name=job.name,
        command=outcome.command or job.command,
        status=status,
        start_time=outcome.started_at,
        end_time=outcome.ended_at,
        duration=outcome.duration,
        progress=snapshot.percentage,
        current_frame=snapshot.current_frame,
        total_frames=snapshot.total_frames,
        current_sample=snapshot.current_sample,
        total_samples=snapshot.total_samples,
        error=outcome.error,
        parameters=dict(job.parameters),
    )


class RenderHistory:
    """Append-only list of HistoryRecords persisted under one store key."""

    def __init__(self, store: KeyValueStore, limit: int = 500, key: str = HISTORY_KEY):
        self.store = store
        self.limit = limit
        self.key = key
        self._records: List[HistoryRecord] = []

    def load(self) -> List[HistoryRecord]:
        try:
            raw = self.store.get(self.key, [])
        except PersistenceError as e:
            logger.error(f"Error loading history: {e}")
            raw = []

        records: List[HistoryRecord] = []
        for item in raw or []:
            try:
                records.append(HistoryRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed history record: {e}")

        self._records = records[-self.limit:]
        return list(self._records)

    def _save(self) -> None:
        try:
            self.store.set(self.key, [r.to_dict() for r in self._records])
        except PersistenceError as e:
            logger.error(f"Error saving history: {e}")

    def add(self, record: HistoryRecord) -> None:
        self._records.append(record)
        if len(self._records) > self.limit:
            self._records = self._records[-self.limit:]
        self._save()

    def get(self, record_id: str) -> Optional[HistoryRecord]:
        return next((r for r in self._records if r.record_id == record_id), None)

    def records(self, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Most recent first"""
        ordered = list(reversed(self._records))
        return ordered[:limit] if limit is not None else ordered

    def clear(self) -> None:
        self._records = []
        self._save()
