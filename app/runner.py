import asyncio
import logging
from typing import Any, Callable, Optional, Set

from app.generators import ContentGenerator
from app.job_store import JobSnapshot, JobStore, JobWriter
from app.repository import AssignmentRepository

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Starts jobs in the background and relays generator progress into the job store.
    The request path never awaits the work: run_job() spawns a task and returns.
    """

    def __init__(self, store: JobStore, repository: AssignmentRepository):
        self._store = store
        self._repository = repository
        self._tasks: Set[asyncio.Task] = set()

    def create_job(self, resource_id: int, requester_id: str, kind: str = "publish") -> JobSnapshot:
        return self._store.create(resource_id, requester_id, kind)

    def run_job(
        self,
        job_id: int,
        work: Any,
        generator: ContentGenerator,
        persist: bool = True,
        after_save: Optional[Callable[[Any], None]] = None,
    ) -> asyncio.Task:
        # Claim synchronously so a double start fails in the caller, not silently in the task.
        writer = self._store.claim(job_id)
        resource_id = self._store.get(job_id).assignment_id
        task = asyncio.create_task(
            self._run(writer, resource_id, work, generator, persist, after_save),
            name=f"job-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, writer: JobWriter, resource_id: int, work, generator, persist, after_save) -> None:
        job_id = writer.job_id
        try:
            writer.start()
            logger.info("Job %s started", job_id)

            def on_progress(percentage: int, text: str, partial: Any = None) -> None:
                logger.debug("Job %s: %s%% %s", job_id, percentage, text)
                writer.report(percentage, text, partial)

            result = await generator.generate(work, on_progress)
            if persist:
                result = self._repository.save(resource_id, result)
                if after_save is not None:
                    after_save(result)
            writer.complete(result)
            logger.info("Job %s completed", job_id)
        except asyncio.CancelledError:
            self._fail(writer, "Job cancelled by server shutdown")
            raise
        except Exception as e:
            logger.exception("Job %s failed: %s", job_id, e)
            self._fail(writer, str(e) or e.__class__.__name__)

    def _fail(self, writer: JobWriter, message: str) -> None:
        try:
            writer.fail(message)
        except Exception:
            # Nothing left to report to: the caller got its job id long ago.
            logger.exception("Could not mark job %s as failed", writer.job_id)

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
