import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from app.job_store import JobNotFound, JobSnapshot, JobStore, JobWatcher
from app.models import JobStatus
from app.schemas import StatusEvent

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _event(snapshot: JobSnapshot, percentage: Optional[int], message: Optional[str] = None) -> dict:
    result = None
    if snapshot.done:
        result = snapshot.result
    elif snapshot.partial_result is not None:
        result = json.dumps(snapshot.partial_result)
    event = StatusEvent(
        status=snapshot.status.value,
        progress=snapshot.progress,
        percentage=percentage,
        result=result,
        done=snapshot.done,
        timestamp=_timestamp(),
        message=message,
    )
    return event.model_dump(exclude_none=True)


class EventStream:
    """Async iterator of SSE frames whose aclose() always detaches from the store, once."""

    def __init__(self, watcher: JobWatcher, frames: AsyncIterator[str]):
        self.job_id = watcher.job_id
        self._watcher = watcher
        self._frames = frames

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        return await self._frames.__anext__()

    async def aclose(self) -> None:
        self._watcher.close()
        await self._frames.aclose()


class StatusStreamPublisher:
    def __init__(self, store: JobStore, heartbeat_seconds: float = 1.0):
        self._store = store
        self._heartbeat = heartbeat_seconds

    def open_stream(self, job_id: int) -> EventStream:
        """Attach to a job. Raises JobNotFound right away for unknown ids."""
        watcher = self._store.watch(job_id)
        logger.info("Stream opened for job %s", job_id)
        return EventStream(watcher, self._frames(watcher))

    async def _frames(self, watcher: JobWatcher) -> AsyncIterator[str]:
        job_id = watcher.job_id
        sent_pct: Optional[int] = None
        last_version = watcher.initial.version

        def monotonic(pct: Optional[int]) -> Optional[int]:
            nonlocal sent_pct
            if pct is None:
                return sent_pct
            sent_pct = pct if sent_pct is None else max(sent_pct, pct)
            return sent_pct

        def terminal(snapshot: JobSnapshot):
            yield format_sse("finalize", _event(snapshot, monotonic(snapshot.percentage)))
            yield format_sse("close", {"message": "Stream completed"})

        try:
            snapshot = watcher.initial
            if snapshot.done:
                for frame in terminal(snapshot):
                    yield frame
                return
            yield format_sse(
                "update",
                _event(snapshot, monotonic(snapshot.percentage), "Connecting to job status stream..."),
            )

            while True:
                snapshot = await watcher.next(self._heartbeat)
                if snapshot is None:
                    # Idle: re-read in case the record changed without a push.
                    try:
                        snapshot = self._store.get(job_id)
                    except JobNotFound:
                        snapshot = _missing(watcher.initial)
                        for frame in terminal(snapshot):
                            yield frame
                        return
                    if snapshot.version <= last_version:
                        yield KEEPALIVE
                        continue
                    latest = watcher.latest
                    if latest is not None and latest.version == snapshot.version:
                        snapshot = latest
                if snapshot.version <= last_version:
                    continue
                last_version = snapshot.version

                if snapshot.done:
                    for frame in terminal(snapshot):
                        yield frame
                    return
                yield format_sse("update", _event(snapshot, monotonic(snapshot.percentage)))
        finally:
            watcher.close()
            logger.info("Stream closed for job %s", job_id)


def _missing(last: JobSnapshot) -> JobSnapshot:
    return JobSnapshot(
        id=last.id,
        assignment_id=last.assignment_id,
        user_id=last.user_id,
        kind=last.kind,
        status=JobStatus.FAILED,
        progress="Job not found",
        percentage=last.percentage,
        result=None,
        created_at=last.created_at,
        updated_at=last.updated_at,
        version=last.version + 1,
    )
