import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from app.sse import ServerSentEvent, iter_sse

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[int, Optional[str]], None]
ResultHandler = Callable[[Any], None]


class JobStreamError(Exception):
    pass


class JobNotFoundError(JobStreamError):
    pass


class JobFailedError(JobStreamError):
    pass


class MalformedEventError(JobStreamError):
    pass


class StreamConnectionError(JobStreamError):
    pass


class SubscriptionTimeout(JobStreamError):
    pass


class SubscriptionCancelled(JobStreamError):
    pass


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CONNECTION_ERROR = "connection_error"
    CANCELLED = "cancelled"


class JobSubscription:
    """Follows one job's status stream. Settles exactly once; every later signal is ignored."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        job_id: int,
        on_progress: Optional[ProgressHandler] = None,
        on_result: Optional[ResultHandler] = None,
        connect_timeout: float = 30.0,
        processing_timeout: float = 300.0,
    ):
        self.job_id = job_id
        self.state = SubscriptionState.CONNECTING
        self.result: Any = None
        self.error: Optional[str] = None
        self._http = http
        self._url = url
        self._on_progress = on_progress
        self._on_result = on_result
        self._connect_timeout = connect_timeout
        self._processing_timeout = processing_timeout
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._settled = False
        self._released = False

    @property
    def settled(self) -> bool:
        return self._settled

    def start(self) -> "JobSubscription":
        self._timer = self._loop.call_later(self._connect_timeout, self._expire, "Connection timeout")
        self._task = asyncio.create_task(self._consume(), name=f"job-stream-{self.job_id}")
        return self

    async def wait(self) -> Tuple[bool, Any]:
        """(True, result) on Completed, (False, result) on Failed; raises JobStreamError otherwise."""
        try:
            return await asyncio.shield(self._future)
        except asyncio.CancelledError:
            if self._future.cancelled():
                raise SubscriptionCancelled(f"Subscription to job {self.job_id} was cancelled") from None
            raise

    def cancel(self) -> None:
        if self._settled:
            return
        self._settled = True
        self.state = SubscriptionState.CANCELLED
        self._cleanup()
        self._future.cancel()

    # ----- stream consumption -----
    async def _consume(self) -> None:
        try:
            async with self._http.stream(
                "GET",
                self._url,
                params={"_": int(time.time() * 1000)},
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=httpx.Timeout(self._connect_timeout, read=None),
            ) as response:
                if response.status_code == 404:
                    self._fail(SubscriptionState.FAILED, JobNotFoundError(f"Job {self.job_id} not found"))
                    return
                if response.status_code >= 400:
                    self._fail(
                        SubscriptionState.CONNECTION_ERROR,
                        StreamConnectionError(f"Status stream refused with HTTP {response.status_code}"),
                    )
                    return
                self._opened()
                async for event in iter_sse(response.aiter_lines()):
                    self._dispatch(event)
                    if self._settled:
                        return
            self._fail(SubscriptionState.CONNECTION_ERROR, StreamConnectionError("Connection closed unexpectedly"))
        except (httpx.HTTPError, httpx.StreamError) as e:
            self._fail(SubscriptionState.CONNECTION_ERROR, StreamConnectionError(f"Connection error: {e}"))
        except Exception as e:
            logger.exception("Status stream handler for job %s failed", self.job_id)
            self._fail(SubscriptionState.FAILED, JobStreamError(f"Status stream handler failed: {e}"))

    def _opened(self) -> None:
        if self._settled:
            return
        logger.debug("Status stream for job %s established", self.job_id)
        self.state = SubscriptionState.OPEN
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._processing_timeout, self._expire, "Job processing timeout")

    def _dispatch(self, event: ServerSentEvent) -> None:
        if self._settled or event.event == "close":
            return
        if event.event not in ("update", "finalize", "message"):
            return
        terminal_name = event.event == "finalize"
        try:
            data = json.loads(event.data)
            if not isinstance(data, dict):
                raise ValueError("event payload is not an object")
        except ValueError:
            if terminal_name:
                self._fail(SubscriptionState.FAILED, MalformedEventError("Invalid finalize event response"))
            else:
                logger.warning("Skipping unparseable %s event for job %s", event.event, self.job_id)
            return

        terminal = terminal_name or bool(data.get("done"))
        status = data.get("status")
        percentage = data.get("percentage")
        if not terminal and percentage is not None and self._on_progress is not None:
            self._on_progress(percentage, data.get("progress"))

        raw = data.get("result")
        if raw is not None:
            try:
                result = json.loads(raw) if isinstance(raw, str) else raw
            except ValueError:
                self._fail(SubscriptionState.FAILED, MalformedEventError("Invalid result payload"))
                return
            self.result = result
            if self._on_result is not None:
                self._on_result(result)

        if terminal:
            if status == "Completed":
                self._settle(SubscriptionState.COMPLETED, (True, self.result))
            else:
                self.error = data.get("progress") or "Job failed"
                self._settle(SubscriptionState.FAILED, (False, self.result))
        elif status == "Failed":
            self._fail(SubscriptionState.FAILED, JobFailedError(data.get("progress") or "Job failed"))

    def _expire(self, message: str) -> None:
        self._fail(SubscriptionState.TIMED_OUT, SubscriptionTimeout(message))

    # ----- settlement -----
    def _settle(self, state: SubscriptionState, value: Tuple[bool, Any]) -> None:
        if self._settled:
            return
        self._settled = True
        self.state = state
        self._cleanup()
        self._future.set_result(value)

    def _fail(self, state: SubscriptionState, error: JobStreamError) -> None:
        if self._settled:
            return
        self._settled = True
        self.state = state
        self.error = self.error or str(error)
        logger.warning("Subscription to job %s ended: %s", self.job_id, error)
        self._cleanup()
        self._future.set_exception(error)

    def _cleanup(self) -> None:
        if self._released:
            return
        self._released = True
        self._release_resources()

    def _release_resources(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # From inside the stream task the `async with` closes the response on the way out.
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()


class JobStatusClient:
    """Thin async client for the assignment job endpoints."""

    def __init__(
        self,
        base_url: str,
        http: Optional[httpx.AsyncClient] = None,
        auth: Optional[Tuple[str, str]] = None,
        connect_timeout: float = 30.0,
        processing_timeout: float = 300.0,
    ):
        self._base = base_url.rstrip("/") + "/api/assignments"
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(auth=auth, timeout=httpx.Timeout(10.0))
        self._connect_timeout = connect_timeout
        self._processing_timeout = processing_timeout

    @classmethod
    def from_settings(cls, settings, http: Optional[httpx.AsyncClient] = None) -> "JobStatusClient":
        return cls(
            settings.API_BASE_URL,
            http=http,
            auth=(settings.BASIC_USER, settings.BASIC_PASS),
            connect_timeout=settings.CLIENT_CONNECT_TIMEOUT_SECONDS,
            processing_timeout=settings.CLIENT_PROCESSING_TIMEOUT_SECONDS,
        )

    async def __aenter__(self) -> "JobStatusClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ----- job streaming -----
    def open(
        self,
        job_id: int,
        on_progress: Optional[ProgressHandler] = None,
        on_result: Optional[ResultHandler] = None,
    ) -> JobSubscription:
        return JobSubscription(
            self._http,
            f"{self._base}/jobs/{job_id}/status-stream",
            job_id,
            on_progress,
            on_result,
            self._connect_timeout,
            self._processing_timeout,
        ).start()

    async def subscribe(
        self,
        job_id: int,
        on_progress: Optional[ProgressHandler] = None,
        on_result: Optional[ResultHandler] = None,
    ) -> Tuple[bool, Any]:
        subscription = self.open(job_id, on_progress, on_result)
        try:
            return await subscription.wait()
        finally:
            # no-op once settled; covers the caller being cancelled mid-wait
            subscription.cancel()

    # ----- REST helpers -----
    async def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._http.request(method, f"{self._base}{path}", **kwargs)
        if response.status_code == 404 and path.startswith("/jobs/"):
            raise JobNotFoundError(response.json().get("detail", "Job not found"))
        response.raise_for_status()
        return response.json()

    async def create_assignment(self, name: str, introduction: Optional[str] = None) -> Dict[str, Any]:
        return await self._json("POST", "", json={"name": name, "introduction": introduction})

    async def get_assignment(self, assignment_id: int) -> Dict[str, Any]:
        return await self._json("GET", f"/{assignment_id}")

    async def publish_assignment(self, assignment_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("PUT", f"/{assignment_id}/publish", json=payload)

    async def generate_questions(self, assignment_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/{assignment_id}/generate-questions", json=payload)

    async def get_job_status(self, job_id: int) -> Dict[str, Any]:
        return await self._json("GET", f"/jobs/{job_id}/status")
