from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.models import Job, JobStatus, as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_PROGRESS_CHARS = 255


class JobNotFound(Exception):
    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidJobTransition(Exception):
    pass


class JobWriterConflict(Exception):
    pass


@dataclass(frozen=True)
class JobSnapshot:
    id: int
    assignment_id: int
    user_id: str
    kind: str
    status: JobStatus
    progress: str
    percentage: Optional[int]
    result: Optional[str]
    created_at: datetime
    updated_at: datetime
    version: int
    partial_result: Any = None  # streamed only, never persisted

    @property
    def done(self) -> bool:
        return self.status.terminal

    def parsed_result(self) -> Any:
        return json.loads(self.result) if self.result is not None else None


class JobWatcher:
    """One consumer's view of a job: the snapshot at attach time plus every later change, in order."""

    def __init__(self, store: "JobStore", snapshot: JobSnapshot):
        self.job_id = snapshot.id
        self.initial = snapshot
        self._store = store
        self._queue: asyncio.Queue[JobSnapshot] = asyncio.Queue()
        self._closed = False
        # last change pushed to this watcher, partial result included
        self.latest: Optional[JobSnapshot] = None

    def _push(self, snapshot: JobSnapshot) -> None:
        if not self._closed:
            self.latest = snapshot
            self._queue.put_nowait(snapshot)

    async def next(self, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        """Wait for the next change; None when nothing arrived within timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store.detach(self)


class JobWriter:
    """Exclusive write handle for one job record."""

    def __init__(self, store: "JobStore", job_id: int):
        self.job_id = job_id
        self._store = store
        self._released = False

    def _write(self, status: JobStatus, **fields) -> JobSnapshot:
        if self._released:
            raise JobWriterConflict(f"Writer for job {self.job_id} has been released")
        return self._store._write(self.job_id, status, **fields)

    def start(self, progress: str = "Job started") -> JobSnapshot:
        return self._write(JobStatus.IN_PROGRESS, progress=progress)

    def report(self, percentage: Optional[int], progress: str, partial: Any = None) -> JobSnapshot:
        return self._write(JobStatus.IN_PROGRESS, progress=progress, percentage=percentage, partial=partial)

    def complete(self, result: Any, progress: str = "Job completed") -> JobSnapshot:
        snapshot = self._write(JobStatus.COMPLETED, progress=progress, percentage=100, result=result)
        self.release()
        return snapshot

    def fail(self, message: str) -> JobSnapshot:
        try:
            return self._write(JobStatus.FAILED, progress=message)
        finally:
            self.release()

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._store._release(self.job_id)


class JobStore:
    def __init__(self, engine: Engine, retention_seconds: float = 3600):
        self._engine = engine
        self._retention = timedelta(seconds=retention_seconds)
        self._watchers: Dict[int, Set[JobWatcher]] = {}
        self._writers: Set[int] = set()
        self._versions: Dict[int, int] = {}

    def _snapshot(self, job: Job, partial: Any = None) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            assignment_id=job.assignment_id,
            user_id=job.user_id,
            kind=job.kind,
            status=JobStatus(job.status),
            progress=job.progress,
            percentage=job.percentage,
            result=job.result,
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
            version=self._versions.get(job.id, 0),
            partial_result=partial,
        )

    # ----- reads -----
    def create(self, assignment_id: int, user_id: str, kind: str = "publish") -> JobSnapshot:
        with Session(self._engine) as s:
            job = Job(assignment_id=assignment_id, user_id=user_id, kind=kind)
            s.add(job)
            s.commit()
            s.refresh(job)
            self._versions[job.id] = 0
            snapshot = self._snapshot(job)
        logger.info("Created %s job %s for assignment %s", kind, snapshot.id, assignment_id)
        return snapshot

    def get(self, job_id: int) -> JobSnapshot:
        with Session(self._engine) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return self._snapshot(job)

    def watch(self, job_id: int) -> JobWatcher:
        # No await between the read and the registration, so no write can slip in between.
        watcher = JobWatcher(self, self.get(job_id))
        self._watchers.setdefault(job_id, set()).add(watcher)
        return watcher

    def detach(self, watcher: JobWatcher) -> None:
        watchers = self._watchers.get(watcher.job_id)
        if watchers is None:
            return
        watchers.discard(watcher)
        if not watchers:
            del self._watchers[watcher.job_id]

    def watcher_count(self, job_id: int) -> int:
        return len(self._watchers.get(job_id, ()))

    # ----- writes -----
    def claim(self, job_id: int) -> JobWriter:
        snapshot = self.get(job_id)
        if snapshot.done:
            raise InvalidJobTransition(f"Job {job_id} is already {snapshot.status.value}")
        if job_id in self._writers:
            raise JobWriterConflict(f"Job {job_id} already has a writer")
        self._writers.add(job_id)
        return JobWriter(self, job_id)

    def _release(self, job_id: int) -> None:
        self._writers.discard(job_id)

    def _write(
        self,
        job_id: int,
        status: JobStatus,
        progress: Optional[str] = None,
        percentage: Optional[int] = None,
        result: Any = None,
        partial: Any = None,
    ) -> JobSnapshot:
        if status is JobStatus.PENDING:
            raise InvalidJobTransition("A job cannot move back to Pending")
        if (status is JobStatus.COMPLETED) != (result is not None):
            raise InvalidJobTransition("A result is stored if and only if the job is Completed")

        with Session(self._engine) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            current = JobStatus(job.status)
            if current.terminal:
                raise InvalidJobTransition(f"Job {job_id} is already {current.value}")

            job.status = status
            if progress is not None:
                job.progress = progress[:MAX_PROGRESS_CHARS]
            if percentage is not None:
                pct = max(0, min(100, int(percentage)))
                job.percentage = pct if job.percentage is None else max(job.percentage, pct)
            if result is not None:
                job.result = json.dumps(result)
            job.updated_at = utcnow()
            s.add(job)
            s.commit()
            s.refresh(job)
            self._versions[job_id] = self._versions.get(job_id, 0) + 1
            snapshot = self._snapshot(job, partial)

        for watcher in list(self._watchers.get(job_id, ())):
            watcher._push(snapshot)
        return snapshot

    # ----- retention -----
    def reap(self, now: Optional[datetime] = None) -> int:
        """Delete terminal jobs past the retention window that nobody is watching."""
        cutoff = (now or utcnow()) - self._retention
        removed = []
        with Session(self._engine) as s:
            stmt = select(Job).where(
                col(Job.status).in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                col(Job.updated_at) < cutoff,
            )
            for job in s.exec(stmt).all():
                if self.watcher_count(job.id):
                    continue
                removed.append(job.id)
                s.delete(job)
            s.commit()
        for job_id in removed:
            self._versions.pop(job_id, None)
        if removed:
            logger.info("Reaped %d finished jobs", len(removed))
        return len(removed)
