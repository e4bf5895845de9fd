"""Worker process lifecycle.

The supervisor owns the shared queue backend, registers the recurring jobs,
starts one worker per queue and drains them on shutdown. Shutdown can be
requested from a signal, a crashed worker or the memory check, and only the
first request does anything.
"""

import asyncio
import gc
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import psutil
from loguru import logger

from webhook_pipeline.common.collaborators import Database, RulesEngine
from webhook_pipeline.common.config import WorkerConfig
from webhook_pipeline.common.metrics import metrics
from webhook_pipeline.common.models import Job, ScheduleSpec
from webhook_pipeline.common.queue import JobQueue, QueueBackend, default_job_options
from webhook_pipeline.common.schedules import (
    DELETION_QUEUE,
    MAINTENANCE_QUEUE,
    WORKFLOW_QUEUE,
    default_schedules,
    register_schedules,
)
from webhook_pipeline.worker.base import Worker
from webhook_pipeline.worker.clients import HeartbeatClient, ResendEmailClient
from webhook_pipeline.worker.deletion import create_deletion_worker
from webhook_pipeline.worker.maintenance import create_maintenance_worker
from webhook_pipeline.worker.workflow import create_workflow_worker

MB = 1024 * 1024


class SupervisorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"
    FORCED_EXIT = "forced_exit"


def sample_memory() -> Dict[str, float]:
    info = psutil.Process().memory_info()
    return {"rss_mb": info.rss / MB, "vms_mb": info.vms / MB}


class Supervisor:
    def __init__(
        self,
        config: WorkerConfig,
        backend: QueueBackend,
        db: Database,
        rules_engine: RulesEngine,
        email_client: Optional[ResendEmailClient] = None,
        heartbeat: Optional[HeartbeatClient] = None,
        schedules: Optional[Iterable[ScheduleSpec]] = None,
        memory_sampler: Callable[[], Dict[str, float]] = sample_memory,
    ):
        self.config = config
        self.backend = backend
        self.db = db
        self.rules_engine = rules_engine
        self.email_client = email_client
        self.heartbeat = heartbeat or HeartbeatClient(config.heartbeat_url)
        self.schedules = list(
            schedules if schedules is not None else default_schedules(config.log_retention_days)
        )
        self.memory_sampler = memory_sampler

        self.state = SupervisorState.STARTING
        self.exit_code: Optional[int] = None
        self.shutdown_reason: Optional[str] = None

        options = default_job_options(config.retry)
        self.queues: Dict[str, JobQueue] = {
            name: JobQueue(name, backend, options)
            for name in (MAINTENANCE_QUEUE, DELETION_QUEUE, WORKFLOW_QUEUE)
        }
        self.workers: List[Worker] = self._build_workers()

        self._health_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    def _build_workers(self) -> List[Worker]:
        options = dict(
            on_completed=self._on_completed,
            on_failed=self._on_failed,
            poll_interval=self.config.poll_interval,
            lock_duration=self.config.lock_duration,
            stalled_interval=self.config.stalled_interval,
            gc_after_job=self.config.gc_after_job,
        )
        return [
            create_maintenance_worker(self.backend, self.db, **options),
            create_deletion_worker(
                self.backend,
                self.db,
                self.config.app_url,
                email_client=self.email_client,
                push=self.config.push,
                **options,
            ),
            create_workflow_worker(
                self.backend,
                self.rules_engine,
                concurrency=self.config.workflow_concurrency,
                **options,
            ),
        ]

    def _on_completed(self, job: Job, result: Any):
        logger.info(f"Job {job.name} ({job.id}) in {job.queue_name} completed")

    def _on_failed(self, job: Job, error: Exception):
        logger.warning(
            f"Job {job.name} ({job.id}) in {job.queue_name} failed on attempt "
            f"{job.attempts_made}: {error}"
        )

    async def start(self):
        logger.info("Starting worker supervisor")
        if not await self.backend.ping():
            raise RuntimeError("Queue backend did not answer ping")

        # Schedules go in before any worker can consume
        registered = await register_schedules(self.queues, self.schedules)
        logger.info(f"Registered {registered} recurring jobs")

        for worker in self.workers:
            task = worker.start()
            task.add_done_callback(self._on_worker_done)

        self._health_task = asyncio.create_task(self._health_loop(), name="health-check")
        metrics.up.labels(component="worker").set(1)
        self.state = SupervisorState.RUNNING
        logger.info(f"Worker supervisor running {len(self.workers)} workers")

    def _on_worker_done(self, task: asyncio.Task):
        if task.cancelled() or self.state != SupervisorState.RUNNING:
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Worker {task.get_name()} crashed: {error!r}")
        else:
            logger.error(f"Worker {task.get_name()} exited unexpectedly")
        self.request_shutdown("uncaught-exception")

    async def check_health(self) -> Dict[str, float]:
        """Sample memory, send the heartbeat and react to memory pressure.

        Thresholds apply to RSS. CPython keeps most freed memory in its own
        allocator, so RSS rarely drops after ``gc.collect()``: the collection
        only helps when cycles are pinning memory, and a process that stays
        above ``memory_threshold_mb * memory_critical_factor`` is shut down
        for its process manager to restart.
        """
        usage = self.memory_sampler()
        metrics.memory_rss_bytes.set(usage["rss_mb"] * MB)
        logger.info(
            f"Health: rss={usage['rss_mb']:.1f}MB vms={usage['vms_mb']:.1f}MB "
            f"gc={gc.get_count()}"
        )
        await self.heartbeat.ping()

        threshold = self.config.memory_threshold_mb
        if usage["rss_mb"] > threshold:
            logger.warning(f"Memory above {threshold}MB, running garbage collection")
            collected = gc.collect()
            usage = self.memory_sampler()
            metrics.memory_rss_bytes.set(usage["rss_mb"] * MB)
            logger.info(f"Collected {collected} objects, rss now {usage['rss_mb']:.1f}MB")

            critical = threshold * self.config.memory_critical_factor
            if usage["rss_mb"] > critical:
                logger.error(
                    f"Memory {usage['rss_mb']:.1f}MB above critical {critical:.0f}MB, shutting down"
                )
                self.request_shutdown("memory-critical")

        return usage

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Health check failed: {e}")

    def request_shutdown(self, reason: str) -> asyncio.Task:
        """Start a graceful shutdown unless one is already running."""
        if self._shutdown_task is None:
            logger.info(f"Shutdown requested: {reason}")
            self._shutdown_task = asyncio.create_task(self.shutdown(reason))
        return self._shutdown_task

    async def shutdown(self, reason: str = "requested") -> int:
        if self.shutdown_reason is not None:
            await self._stopped.wait()
            return self.exit_code
        self.shutdown_reason = reason
        self.state = SupervisorState.DRAINING
        logger.info(f"Draining workers ({reason})")

        if self._health_task is not None:
            self._health_task.cancel()

        for worker in self.workers:
            await worker.pause()

        try:
            await asyncio.wait_for(
                asyncio.gather(*(worker.close() for worker in self.workers)),
                timeout=self.config.shutdown_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Workers did not drain within {self.config.shutdown_timeout}s, "
                "abandoning in-flight jobs"
            )
            for worker in self.workers:
                worker.abort()
            self.state = SupervisorState.FORCED_EXIT
            self.exit_code = 1
        else:
            await self._close_resources()
            self.state = SupervisorState.CLOSED
            self.exit_code = 0

        metrics.up.labels(component="worker").set(0)
        logger.info(f"Worker supervisor stopped ({self.state.value})")
        self._stopped.set()
        return self.exit_code

    async def _close_resources(self):
        try:
            await self.backend.close()
        except Exception as e:
            logger.error(f"Error closing queue backend: {e}")
        try:
            await self.db.close()
        except Exception as e:
            logger.error(f"Error closing database: {e}")

    async def run(self) -> int:
        try:
            await self.start()
        except Exception as e:
            logger.error(f"Worker supervisor failed to start: {e}")
            await self.shutdown("startup-failure")
            return 1

        await self._stopped.wait()
        return self.exit_code

    def handle_loop_exception(self, loop, context: dict):
        error = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        logger.error(f"{message}: {error!r}" if error else message)
