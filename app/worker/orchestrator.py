# worker/orchestrator.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Optional
import asyncio
import logging

from api.models import Failed, JobRequest, JobState, Succeeded, is_terminal
from worker.errors import JobError, JobTimeoutError, TransportError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 2.0
DEFAULT_MAX_POLL_FAILURES = 3
DEFAULT_JOB_TIMEOUT_SEC = 300.0
SUBSCRIBER_BACKLOG = 16

_END = object()

class JobStream:
    """
    Async iterator over published JobState snapshots.
    Ends once the orchestrator closes it (terminal state, supersede, cancel)
    or the consumer calls close().
    With a backlog limit, a slow consumer loses its oldest snapshots first.
    """

    def __init__(self, on_close: Optional[Callable[["JobStream"], None]] = None, backlog: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._backlog = backlog
        self._ended = False
        self._on_close = on_close

    @property
    def ended(self) -> bool:
        return self._ended

    def _push(self, state: JobState) -> None:
        if self._ended:
            return
        if self._backlog and self._queue.qsize() >= self._backlog:
            self._queue.get_nowait()
        self._queue.put_nowait(state)

    def _end(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    def close(self) -> None:
        self._end()
        if self._on_close is not None:
            self._on_close(self)
            self._on_close = None

    def __aiter__(self) -> "JobStream":
        return self

    async def __anext__(self) -> JobState:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)  # sticky
            raise StopAsyncIteration
        return item

@dataclass(frozen=True)
class CompletedJob:
    job_id: Optional[str]
    request: JobRequest
    state: JobState

class _Run:
    def __init__(self, request: JobRequest):
        self.request = request
        self.stream = JobStream()
        self.job_id: Optional[str] = None
        self.last: Optional[JobState] = None

class JobOrchestrator:
    """
    Owns the lifecycle of one generation job at a time:
      idle -> submitting -> polling -> terminal (succeeded|failed) -> idle
    A new submit() supersedes the active job; its task is cancelled at the
    next suspension point and anything it still produces is discarded.

    Only this object mutates the current-job slot. Client calls are blocking
    (requests) and run in a worker thread.
    """

    def __init__(
        self,
        client,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        max_poll_failures: int = DEFAULT_MAX_POLL_FAILURES,
        job_timeout: Optional[float] = DEFAULT_JOB_TIMEOUT_SEC,
    ):
        self._client = client
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures
        self.job_timeout = job_timeout
        self._run: Optional[_Run] = None
        self._task: Optional[asyncio.Task] = None
        self._phase = "idle"
        self._state: Optional[JobState] = None
        self._last_result: Optional[CompletedJob] = None
        self._subscribers: List[JobStream] = []

    # --- read-only views ---

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def job_id(self) -> Optional[str]:
        return self._run.job_id if self._run else None

    @property
    def state(self) -> Optional[JobState]:
        """Latest published snapshot (kept after the job ends, cleared on submit/cancel)."""
        return self._state

    @property
    def last_result(self) -> Optional[CompletedJob]:
        return self._last_result

    def artifact_urls(self) -> List[str]:
        if self._last_result and isinstance(self._last_result.state, Succeeded):
            return list(self._last_result.state.outputs)
        return []

    # --- control ---

    def subscribe(self) -> JobStream:
        stream = JobStream(on_close=self._subscribers.remove, backlog=SUBSCRIBER_BACKLOG)
        self._subscribers.append(stream)
        return stream

    def submit(self, request: JobRequest) -> JobStream:
        if not request.prompt.strip():
            raise ValidationError("Prompt must not be empty")
        loop = asyncio.get_running_loop()

        if self._run is not None:
            logger.info("Superseding job %s", self._run.job_id or "<submitting>")
            self._teardown()

        run = _Run(request)
        self._run = run
        self._phase = "submitting"
        self._task = loop.create_task(self._execute(run))
        return run.stream

    def cancel(self) -> bool:
        if self._run is None:
            return False
        logger.info("Cancelling job %s", self._run.job_id or "<submitting>")
        self._teardown()
        return True

    async def aclose(self) -> None:
        task = self._task
        self.cancel()
        for stream in list(self._subscribers):
            stream.close()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # --- internals ---

    def _teardown(self) -> None:
        run, task = self._run, self._task
        self._run = None
        self._task = None
        self._phase = "idle"
        self._state = None
        if task is not None and not task.done():
            task.cancel()
        if run is not None:
            run.stream._end()

    def _publish(self, run: _Run, state: JobState) -> None:
        if run is not self._run or state == run.last:
            return
        run.last = state
        self._state = state
        run.stream._push(state)
        for stream in self._subscribers:
            stream._push(state)
        logger.info("Job %s: %s", run.job_id, state.status)

    def _finish(self, run: _Run, state: JobState) -> None:
        self._publish(run, state)
        if run is self._run:
            self._last_result = CompletedJob(run.job_id, run.request, state)
            self._run = None
            self._task = None
            self._phase = "idle"
        run.stream._end()

    async def _execute(self, run: _Run) -> None:
        try:
            if self.job_timeout:
                await asyncio.wait_for(self._drive(run), self.job_timeout)
            else:
                await self._drive(run)
        except asyncio.TimeoutError:
            err = JobTimeoutError("timeout")
            logger.warning("Job %s exceeded %.0fs", run.job_id, self.job_timeout)
            self._finish(run, Failed(reason=str(err), code=err.code))
        except Exception as e:
            logger.exception("Job %s crashed", run.job_id)
            self._finish(run, Failed(reason=f"{type(e).__name__}: {e}", code=JobError.code))
        finally:
            run.stream._end()

    async def _drive(self, run: _Run) -> None:
        try:
            job_id, state = await asyncio.to_thread(self._client.create, run.request)
        except JobError as e:
            # create is not idempotent: no retry
            logger.warning("Submission failed: %s", e)
            self._finish(run, Failed(reason=str(e), code=e.code))
            return

        run.job_id = job_id
        logger.info("Submitted job %s", job_id)
        if is_terminal(state):
            self._finish(run, state)
            return

        self._phase = "polling"
        self._publish(run, state)

        failures = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                state = await asyncio.to_thread(self._client.fetch_status, job_id)
            except TransportError as e:
                failures += 1
                logger.warning("Polling job %s failed (%d/%d): %s",
                               job_id, failures, self.max_poll_failures, e)
                if failures > self.max_poll_failures:
                    self._finish(run, Failed(reason="polling unavailable", code=e.code))
                    return
                continue
            except JobError as e:
                self._finish(run, Failed(reason=str(e), code=e.code))
                return

            failures = 0
            if is_terminal(state):
                self._finish(run, state)
                return
            self._publish(run, state)
