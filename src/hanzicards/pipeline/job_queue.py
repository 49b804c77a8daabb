"""In-process job queues with worker pools, retries and parking.

Each ``JobQueue`` owns an ``asyncio.Queue`` of job ids and a fixed number of
worker tasks. Handlers run one job at a time per worker. Transient errors are
retried with exponential backoff; ``JobParked`` moves a job aside until
``resume()`` puts it back.
"""

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, Type

from hanzicards.exceptions import JobParked, NotFoundError, ProviderError, StorageError
from hanzicards.models.job import Job, JobPayload, JobState, JobStatus, JobType

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Optional[Dict[str, Any]]]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]

SETTLED_STATES = {JobState.PARKED, JobState.COMPLETED, JobState.FAILED}


class JobRegistry:
    """Shared job table with per-queue retention of finished jobs."""

    def __init__(self, keep_completed: int = 100, keep_failed: int = 50):
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._jobs: Dict[str, Job] = {}
        self._settled: Dict[str, asyncio.Event] = {}
        self._finished: Dict[Tuple[str, JobState], Deque[str]] = defaultdict(deque)
        self._sequence = itertools.count(1)

    def next_sequence(self) -> int:
        return next(self._sequence)

    def add(self, job: Job) -> None:
        self._jobs[job.id] = job
        self._settled[job.id] = asyncio.Event()

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def jobs(self, queue: Optional[str] = None, state: Optional[JobState] = None) -> List[Job]:
        return [
            job
            for job in self._jobs.values()
            if (queue is None or job.queue == queue) and (state is None or job.state == state)
        ]

    def set_state(self, job: Job, state: JobState) -> None:
        job.state = state
        job.touch()
        event = self._settled.get(job.id)
        if event is None:
            return
        if state in SETTLED_STATES:
            event.set()
        else:
            event.clear()

    def record_finished(self, job: Job) -> None:
        """Remember a finished job and trim the oldest beyond the retention limit."""
        job.finished_at = datetime.now(UTC)
        limit = self.keep_completed if job.state == JobState.COMPLETED else self.keep_failed
        finished = self._finished[(job.queue, job.state)]
        finished.append(job.id)
        while len(finished) > limit:
            expired = finished.popleft()
            self._jobs.pop(expired, None)
            self._settled.pop(expired, None)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """Wait until a job completes, fails or parks."""
        job = self.get(job_id)
        event = self._settled[job_id]
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return job.to_status()


class JobHandle:
    """Caller-side handle for one enqueued job."""

    def __init__(self, registry: JobRegistry, job_id: str):
        self.registry = registry
        self.id = job_id

    def get_state(self) -> JobState:
        return self.registry.get(self.id).state

    def get_progress(self) -> Dict[str, Any]:
        return dict(self.registry.get(self.id).progress)

    def get_result(self) -> Optional[Dict[str, Any]]:
        job = self.registry.get(self.id)
        return dict(job.result) if job.result is not None else None

    def get_status(self) -> JobStatus:
        return self.registry.get(self.id).to_status()

    async def wait(self, timeout: Optional[float] = None) -> JobStatus:
        return await self.registry.wait(self.id, timeout)

    def __repr__(self) -> str:
        return f"JobHandle({self.id})"


class JobQueue:
    """A named queue with a worker pool."""

    def __init__(
        self,
        name: str,
        job_type: JobType,
        handler: Handler,
        registry: JobRegistry,
        concurrency: int = 1,
        max_attempts: int = 1,
        backoff_seconds: float = 5.0,
        retryable: Tuple[Type[BaseException], ...] = (ProviderError, StorageError),
        on_failed: Optional[FailureHook] = None,
    ):
        self.name = name
        self.job_type = job_type
        self.handler = handler
        self.registry = registry
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.retryable = retryable
        self.on_failed = on_failed

        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._accepting = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Queue {self.name} started with {self.concurrency} workers")

    @property
    def is_idle(self) -> bool:
        return self._idle.is_set()

    async def join(self) -> None:
        """Wait until no job is waiting, running or delayed. Parked jobs do not count."""
        await self._idle.wait()

    async def shutdown(self, drain: bool = True) -> None:
        """Stop the workers.

        Args:
            drain: Finish queued, running and delayed jobs first; otherwise
                cancel pending retries and stop after the running jobs
        """
        self._accepting = False
        if drain:
            await self.join()
        else:
            for timer in list(self._timers):
                timer.cancel()

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"Queue {self.name} stopped")

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        payload: JobPayload,
        max_attempts: Optional[int] = None,
        delay: float = 0.0,
    ) -> JobHandle:
        """Add a job to the queue.

        Args:
            payload: Job payload
            max_attempts: Override the queue's attempt limit
            delay: Seconds to wait before the job becomes runnable

        Returns:
            JobHandle for the new job
        """
        if not self._accepting:
            raise RuntimeError(f"Queue {self.name} is shut down")

        job = Job(
            type=self.job_type,
            queue=self.name,
            payload=payload,
            max_attempts=max_attempts or self.max_attempts,
            sequence=self.registry.next_sequence(),
        )
        self.registry.add(job)
        self._add_outstanding()
        if delay > 0:
            self._schedule(job, delay)
        else:
            self._queue.put_nowait(job.id)
        logger.debug(f"Enqueued {job.type.value} job {job.id} on {self.name} (seq {job.sequence})")
        return JobHandle(self.registry, job.id)

    def resume(self, job_id: str, payload: Optional[JobPayload] = None) -> JobHandle:
        """Put a parked job back in the queue, optionally with an updated payload.

        The job gets a new sequence number since it now acts on newer input.
        """
        job = self.registry.get(job_id)
        if job.state != JobState.PARKED:
            raise ValueError(f"Job {job_id} is {job.state.value}, not parked")
        if payload is not None:
            job.payload = payload
        job.parked_reason = None
        job.sequence = self.registry.next_sequence()
        self.registry.set_state(job, JobState.WAITING)
        self._add_outstanding()
        self._queue.put_nowait(job.id)
        logger.info(f"Resumed parked job {job_id} on {self.name}")
        return JobHandle(self.registry, job.id)

    def discard_parked(self, job_id: str, reason: str) -> None:
        """Fail a parked job that can no longer be resumed."""
        job = self.registry.get(job_id)
        if job.state != JobState.PARKED:
            return
        job.error = reason
        job.parked_reason = None
        self.registry.set_state(job, JobState.FAILED)
        self.registry.record_finished(job)
        logger.info(f"Discarded parked job {job_id} on {self.name}: {reason}")

    def handle(self, job_id: str) -> JobHandle:
        return JobHandle(self.registry, job_id)

    def parked_jobs(self) -> List[Job]:
        return self.registry.jobs(queue=self.name, state=JobState.PARKED)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _add_outstanding(self) -> None:
        self._outstanding += 1
        self._idle.clear()

    def _done_outstanding(self) -> None:
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    def _schedule(self, job: Job, delay: float) -> None:
        self.registry.set_state(job, JobState.DELAYED)
        timer = asyncio.create_task(self._release_later(job.id, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._on_timer_done)

    def _on_timer_done(self, timer: asyncio.Task) -> None:
        self._timers.discard(timer)
        if timer.cancelled():
            # A cancelled retry will never run
            self._done_outstanding()

    async def _release_later(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        job = self.registry.get(job_id)
        self.registry.set_state(job, JobState.WAITING)
        self._queue.put_nowait(job_id)

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            if job_id is None:
                break
            try:
                await self._run(self.registry.get(job_id))
            except Exception:
                # _run handles job errors; anything here is a bug in the queue itself
                logger.exception(f"Worker {self.name}-{index} crashed on job {job_id}")
                self._done_outstanding()

    async def _run(self, job: Job) -> None:
        job.attempts += 1
        job.error = None
        self.registry.set_state(job, JobState.ACTIVE)

        try:
            result = await self.handler(job)
        except JobParked as parked:
            job.parked_reason = parked.reason
            self.registry.set_state(job, JobState.PARKED)
            logger.info(f"Parked job {job.id} on {self.name}: {parked.reason}")
            self._done_outstanding()
            return
        except Exception as e:
            await self._handle_error(job, e)
            return

        job.result = result or {}
        self.registry.set_state(job, JobState.COMPLETED)
        self.registry.record_finished(job)
        self._done_outstanding()

    async def _handle_error(self, job: Job, error: Exception) -> None:
        job.error = str(error)

        if isinstance(error, self.retryable) and job.attempts < job.max_attempts:
            delay = self.backoff_seconds * (2 ** (job.attempts - 1))
            logger.warning(
                f"Job {job.id} on {self.name} failed (attempt {job.attempts}/{job.max_attempts}): "
                f"{error}. Retrying in {delay:.1f}s..."
            )
            self._schedule(job, delay)
            return

        if isinstance(error, self.retryable):
            logger.error(f"✗ Job {job.id} on {self.name} failed after {job.attempts} attempts: {error}")
        elif getattr(error, "retryable", None) is None:
            logger.exception(f"✗ Job {job.id} on {self.name} crashed: {error}")
        else:
            logger.error(f"✗ Job {job.id} on {self.name} failed: {error}")

        if self.on_failed is not None:
            try:
                await self.on_failed(job, error)
            except Exception:
                logger.exception(f"Failure hook for job {job.id} raised")
        self.registry.set_state(job, JobState.FAILED)
        self.registry.record_finished(job)
        self._done_outstanding()
