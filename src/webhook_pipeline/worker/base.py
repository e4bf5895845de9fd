import asyncio
import gc
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Set

from loguru import logger
from pydantic import BaseModel

from webhook_pipeline.common.metrics import measure_time, metrics
from webhook_pipeline.common.models import Job
from webhook_pipeline.common.queue import QueueBackend

Processor = Callable[[Job], Awaitable[Any]]
CompletedHook = Callable[[Job, Any], Any]
FailedHook = Callable[[Job, Exception], Any]


class Worker:
    """Consumes one queue with up to ``concurrency`` jobs in flight.

    A slot is taken before each fetch, so a worker never holds more jobs than
    its concurrency. Handler exceptions are reported to the backend, which
    decides between retry and the failed set. Hook exceptions are logged and
    never change a job's outcome.
    """

    def __init__(
        self,
        queue_name: str,
        processor: Processor,
        backend: QueueBackend,
        concurrency: int = 1,
        on_completed: Optional[CompletedHook] = None,
        on_failed: Optional[FailedHook] = None,
        poll_interval: float = 1.0,
        lock_duration: int = 30,
        stalled_interval: int = 30,
        gc_after_job: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue_name = queue_name
        self.processor = processor
        self.backend = backend
        self.concurrency = concurrency
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.poll_interval = poll_interval
        self.lock_duration = lock_duration
        self.stalled_interval = stalled_interval
        self.gc_after_job = gc_after_job

        self._slots = asyncio.Semaphore(concurrency)
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._stop = asyncio.Event()
        self._closing = False
        self._task: Optional[asyncio.Task] = None
        self._active: Set[asyncio.Task] = set()
        self._last_stalled_check = 0.0

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"worker:{self.queue_name}")
        return self._task

    async def run(self):
        logger.info(f"Starting {self.queue_name} worker (concurrency={self.concurrency})")

        while not self._closing:
            await self._resumed.wait()
            await self._slots.acquire()
            if self._closing or self.is_paused:
                self._slots.release()
                continue

            try:
                await self._check_stalled()
                job = await self.backend.fetch_job(self.queue_name, self.lock_duration)
            except Exception as e:
                self._slots.release()
                logger.error(f"Error fetching from {self.queue_name} queue: {e}")
                await self._sleep(5)
                continue

            if job is None:
                self._slots.release()
                await self._sleep(self.poll_interval)
                continue

            logger.debug(f"Received job {job.name} ({job.id}) from {self.queue_name}")
            task = asyncio.create_task(self._process(job))
            self._active.add(task)
            task.add_done_callback(self._active.discard)

        logger.info(f"{self.queue_name} worker stopped")

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _check_stalled(self):
        now = time.monotonic()
        if now - self._last_stalled_check < self.stalled_interval:
            return
        self._last_stalled_check = now
        recovered = await self.backend.recover_stalled(self.queue_name)
        if recovered:
            metrics.job_stalled_total.labels(queue=self.queue_name).inc(recovered)

    async def _renew_lock(self, job: Job):
        while True:
            await asyncio.sleep(self.lock_duration / 2)
            try:
                if not await self.backend.extend_lock(job, self.lock_duration):
                    logger.error(
                        f"Lost lock on job {job.id} in {self.queue_name}, "
                        "it may be redelivered while still running"
                    )
            except Exception as e:
                logger.warning(f"Could not extend lock on job {job.id}: {e}")

    @measure_time(metrics.job_duration, lambda self: {"queue": self.queue_name})
    async def _execute(self, job: Job) -> Any:
        return await self.processor(job)

    async def _process(self, job: Job):
        renewer = asyncio.create_task(self._renew_lock(job))
        try:
            try:
                result = await self._execute(job)
            except Exception as e:
                renewer.cancel()
                await self._handle_failure(job, e)
            else:
                renewer.cancel()
                await self._handle_success(job, result)
        finally:
            renewer.cancel()
            self._slots.release()

    async def _handle_success(self, job: Job, result: Any):
        payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
        try:
            await self.backend.complete_job(job, payload)
        except Exception as e:
            # Left active without a lock, the job is redelivered as stalled
            logger.error(f"Could not mark job {job.id} completed in {self.queue_name}: {e}")
            return

        metrics.job_completed_total.labels(queue=self.queue_name).inc()
        await self._call_hook("completed", self.on_completed, job, result)

        if self.gc_after_job:
            gc.collect(0)

    async def _handle_failure(self, job: Job, error: Exception):
        metrics.job_failed_total.labels(queue=self.queue_name).inc()
        logger.error(f"Job {job.name} ({job.id}) in {self.queue_name} raised: {error!r}")
        try:
            await self.backend.fail_job(job, str(error) or type(error).__name__)
        except Exception as e:
            logger.error(f"Could not record failure of job {job.id}: {e}")
        await self._call_hook("failed", self.on_failed, job, error)

    async def _call_hook(self, name: str, hook, job: Job, value: Any):
        if hook is None:
            return
        try:
            outcome = hook(job, value)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Error in {name} hook for job {job.id} in {self.queue_name}: {e}")

    async def pause(self):
        """Stop taking new jobs. Jobs already running continue."""
        self._resumed.clear()
        logger.info(f"Paused {self.queue_name} worker ({self.active_count} jobs in flight)")

    async def resume(self):
        self._resumed.set()
        logger.info(f"Resumed {self.queue_name} worker")

    async def close(self):
        """Stop the loop and wait for in-flight jobs to finish."""
        self._closing = True
        self._stop.set()
        self._resumed.set()
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.error(f"{self.queue_name} worker loop had crashed: {e!r}")
        if self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)
        logger.info(f"Closed {self.queue_name} worker")

    def abort(self):
        """Cancel the loop and every in-flight job."""
        self._closing = True
        if self._task is not None:
            self._task.cancel()
        for task in list(self._active):
            task.cancel()
