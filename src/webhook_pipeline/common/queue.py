import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from croniter import croniter
from loguru import logger
from redis import asyncio as aioredis

from webhook_pipeline.common.config import RedisConfig, RetryConfig
from webhook_pipeline.common.metrics import metrics
from webhook_pipeline.common.models import (
    Job,
    JobOptions,
    JobState,
    ScheduleSpec,
    utcnow,
)


DEDUPE_TTL = 7 * 24 * 60 * 60


class QueueError(Exception):
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def next_run_ms(pattern: str, after_ms: int) -> int:
    """Next cron occurrence strictly after ``after_ms``."""
    base = datetime.fromtimestamp(after_ms / 1000, tz=timezone.utc)
    return int(croniter(pattern, base).get_next(float) * 1000)


class QueueBackend(ABC):
    """Durable job storage shared by every named queue.

    Retry and repeat policy lives here; subclasses only provide storage
    primitives. A job id is unique per queue: adding a job whose id already
    exists returns the stored job instead of creating a second one.
    """

    def __init__(self, keep_completed: int = 100):
        self.keep_completed = keep_completed

    async def ping(self) -> bool:
        return True

    async def add_job(
        self,
        queue_name: str,
        name: str,
        data: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Job:
        options = options or JobOptions()
        job_id = options.job_id or await self._next_id(queue_name)
        delay_ms = int(options.delay * 1000)
        created_at = utcnow()
        job = Job(
            id=job_id,
            queue_name=queue_name,
            name=name,
            data=data,
            options=options,
            state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            created_at=created_at,
            scheduled_for=(
                created_at + timedelta(milliseconds=delay_ms) if delay_ms > 0 else None
            ),
        )

        existing = await self._create(job, delay_ms)
        if existing is not None:
            logger.debug(f"Job {job_id} already present in {queue_name}, not re-adding")
            return existing

        logger.debug(f"Added job {name} ({job_id}) to {queue_name}")
        return job

    async def add_repeatable(
        self, spec: ScheduleSpec, options: Optional[JobOptions] = None
    ) -> Job:
        """Register a recurring job and queue its next occurrence.

        Safe to call on every start: the occurrence id is derived from the
        stable id and the run time, so it dedupes against what is stored.
        """
        if not croniter.is_valid(spec.pattern):
            raise ValueError(f"Invalid cron pattern for {spec.job_id}: {spec.pattern}")
        await self._store_repeatable(spec)
        return await self._schedule_occurrence(spec, options or JobOptions(), now_ms())

    async def complete_job(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        await self._mark_completed(job, result)
        await self._repeat(job)

    async def fail_job(self, job: Job, error: str) -> JobState:
        """Record a failed attempt. Returns DELAYED when a retry is scheduled."""
        job.attempts_made += 1
        if job.attempts_made < job.options.attempts:
            delay = job.options.backoff_for(job.attempts_made)
            await self._mark_retry(job, error, int(delay * 1000))
            logger.info(
                f"Job {job.name} ({job.id}) in {job.queue_name} will retry in {delay}s "
                f"(attempt {job.attempts_made}/{job.options.attempts})"
            )
            return JobState.DELAYED

        await self._mark_failed(job, error)
        metrics.job_dead_total.labels(queue=job.queue_name).inc()
        logger.error(
            f"Job {job.name} ({job.id}) in {job.queue_name} failed permanently "
            f"after {job.attempts_made} attempts: {error}"
        )
        await self._repeat(job)
        return JobState.FAILED

    async def _schedule_occurrence(
        self, spec: ScheduleSpec, base_options: JobOptions, after_ms: int
    ) -> Job:
        run_at = next_run_ms(spec.pattern, after_ms)
        options = base_options.model_copy(
            update={
                "job_id": f"repeat:{spec.job_id}:{run_at}",
                "delay": max(run_at - now_ms(), 0) / 1000,
                "repeat_key": spec.job_id,
                "repeat_pattern": spec.pattern,
            }
        )
        return await self.add_job(spec.queue_name, spec.job_name, spec.data, options)

    async def _repeat(self, job: Job) -> None:
        if not job.options.repeat_key:
            return
        specs = await self.get_repeatables(job.queue_name)
        spec = next((s for s in specs if s.job_id == job.options.repeat_key), None)
        if spec is None:
            logger.info(f"Schedule {job.options.repeat_key} was removed, not repeating")
            return
        after = now_ms()
        if job.scheduled_for is not None:
            after = max(after, to_ms(job.scheduled_for))
        await self._schedule_occurrence(spec, job.options, after)

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def get_repeatables(self, queue_name: str) -> List[ScheduleSpec]:
        pass

    @abstractmethod
    async def fetch_job(self, queue_name: str, lock_duration: int) -> Optional[Job]:
        """Move the next due job to active and lock it, or return None."""

    @abstractmethod
    async def extend_lock(self, job: Job, lock_duration: int) -> bool:
        pass

    @abstractmethod
    async def recover_stalled(self, queue_name: str) -> int:
        """Move active jobs whose lock expired back to wait."""

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def _next_id(self, queue_name: str) -> str:
        pass

    @abstractmethod
    async def _create(self, job: Job, delay_ms: int) -> Optional[Job]:
        """Store a new job; return the existing one if the id is taken."""

    @abstractmethod
    async def _store_repeatable(self, spec: ScheduleSpec) -> None:
        pass

    @abstractmethod
    async def _mark_completed(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def _mark_retry(self, job: Job, error: str, delay_ms: int) -> None:
        pass

    @abstractmethod
    async def _mark_failed(self, job: Job, error: str) -> None:
        pass


class RedisQueueBackend(QueueBackend):
    """Redis storage: one key namespace per queue under a shared prefix.

    ``wait`` and ``active`` are lists, ``delayed``/``completed``/``failed``
    are sorted sets scored by epoch millis, each job is a JSON string and each
    active job holds a ``lock`` key with a TTL.

    Every state change runs as one WATCH/MULTI transaction, so a job id is
    always in exactly one of the lists or sets, and an id in ``active``
    always got its lock in the same transaction that moved it there. Jobs
    trimmed from ``completed`` keep their key for ``dedupe_ttl`` seconds so a
    late redelivery of the same id still finds them.
    """

    def __init__(
        self,
        client,
        prefix: str = "webhook-pipeline",
        keep_completed: int = 100,
        dedupe_ttl: int = DEDUPE_TTL,
    ):
        super().__init__(keep_completed=keep_completed)
        self.redis = client
        self.prefix = prefix
        self.dedupe_ttl = dedupe_ttl
        self.token = uuid.uuid4().hex

        logger.info(f"Initialized Redis queue backend with prefix {prefix}")

    @classmethod
    def from_config(
        cls, config: RedisConfig, retry: Optional[RetryConfig] = None
    ) -> "RedisQueueBackend":
        client = aioredis.from_url(config.url, decode_responses=True)
        retry = retry or RetryConfig()
        return cls(
            client,
            prefix=config.prefix,
            keep_completed=retry.keep_completed,
            dedupe_ttl=retry.dedupe_ttl,
        )

    def _key(self, queue_name: str, *parts: str) -> str:
        return ":".join((self.prefix, queue_name) + parts)

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        raw = await self.redis.get(self._key(queue_name, "job", job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def get_repeatables(self, queue_name: str) -> List[ScheduleSpec]:
        entries = await self.redis.hgetall(self._key(queue_name, "repeat"))
        return [ScheduleSpec.model_validate_json(raw) for raw in entries.values()]

    async def count(self, queue_name: str, state: JobState) -> int:
        key = self._key(queue_name, "wait" if state == JobState.WAITING else state.value)
        if state in (JobState.WAITING, JobState.ACTIVE):
            return await self.redis.llen(key)
        return await self.redis.zcard(key)

    async def _next_id(self, queue_name: str) -> str:
        return str(await self.redis.incr(self._key(queue_name, "id")))

    async def _create(self, job: Job, delay_ms: int) -> Optional[Job]:
        job_key = self._key(job.queue_name, "job", job.id)

        async def create(pipe):
            raw = await pipe.get(job_key)
            if raw is not None:
                return Job.model_validate_json(raw)
            pipe.multi()
            pipe.set(job_key, job.model_dump_json())
            if delay_ms > 0:
                pipe.zadd(self._key(job.queue_name, "delayed"), {job.id: now_ms() + delay_ms})
            else:
                pipe.lpush(self._key(job.queue_name, "wait"), job.id)
            return None

        return await self.redis.transaction(create, job_key, value_from_callable=True)

    async def _store_repeatable(self, spec: ScheduleSpec) -> None:
        await self.redis.hset(
            self._key(spec.queue_name, "repeat"), spec.job_id, spec.model_dump_json()
        )

    async def _promote_delayed(self, queue_name: str) -> int:
        delayed = self._key(queue_name, "delayed")
        if not await self.redis.zcount(delayed, 0, now_ms()):
            return 0

        async def promote(pipe):
            due = await pipe.zrangebyscore(delayed, 0, now_ms())
            if due:
                pipe.multi()
                pipe.zrem(delayed, *due)
                pipe.lpush(self._key(queue_name, "wait"), *due)
            return len(due)

        return await self.redis.transaction(promote, delayed, value_from_callable=True)

    async def fetch_job(self, queue_name: str, lock_duration: int) -> Optional[Job]:
        await self._promote_delayed(queue_name)
        wait = self._key(queue_name, "wait")

        async def claim(pipe):
            job_id = await pipe.lindex(wait, -1)
            if job_id is None:
                return None
            job_key = self._key(queue_name, "job", job_id)
            raw = await pipe.get(job_key)
            pipe.multi()
            if raw is None:
                pipe.rpop(wait)
                return job_id, None
            job = Job.model_validate_json(raw)
            job.state = JobState.ACTIVE
            pipe.lmove(wait, self._key(queue_name, "active"), "RIGHT", "LEFT")
            pipe.set(self._key(queue_name, "lock", job_id), self.token, px=lock_duration * 1000)
            pipe.set(job_key, job.model_dump_json())
            return job_id, job

        claimed = await self.redis.transaction(claim, wait, value_from_callable=True)
        if claimed is None:
            return None
        job_id, job = claimed
        if job is None:
            logger.warning(f"Dropped missing job {job_id} from {queue_name}")
        return job

    async def extend_lock(self, job: Job, lock_duration: int) -> bool:
        return bool(
            await self.redis.set(
                self._key(job.queue_name, "lock", job.id),
                self.token,
                px=lock_duration * 1000,
                xx=True,
            )
        )

    async def recover_stalled(self, queue_name: str) -> int:
        recovered = 0
        for job_id in await self.redis.lrange(self._key(queue_name, "active"), 0, -1):
            if await self._requeue_stalled(queue_name, job_id):
                recovered += 1
                logger.warning(f"Recovered stalled job {job_id} in {queue_name}")
        return recovered

    async def _requeue_stalled(self, queue_name: str, job_id: str) -> bool:
        active = self._key(queue_name, "active")
        lock = self._key(queue_name, "lock", job_id)
        job_key = self._key(queue_name, "job", job_id)

        async def requeue(pipe):
            if await pipe.exists(lock) or await pipe.lpos(active, job_id) is None:
                return False
            raw = await pipe.get(job_key)
            pipe.multi()
            pipe.lrem(active, 1, job_id)
            if raw is not None:
                job = Job.model_validate_json(raw)
                job.state = JobState.WAITING
                pipe.set(job_key, job.model_dump_json())
                # RPUSH puts it at the consuming end of the wait list
                pipe.rpush(self._key(queue_name, "wait"), job_id)
            return True

        return await self.redis.transaction(requeue, active, lock, value_from_callable=True)

    async def _finish(self, job: Job, target: str, score_ms: int) -> None:
        """Take ``job`` out of active, store it and add it to ``target``."""
        active = self._key(job.queue_name, "active")

        async def finish(pipe):
            if await pipe.lpos(active, job.id) is None:
                raise QueueError(f"Job {job.id} is not active in {job.queue_name}")
            pipe.multi()
            pipe.lrem(active, 1, job.id)
            pipe.delete(self._key(job.queue_name, "lock", job.id))
            pipe.set(self._key(job.queue_name, "job", job.id), job.model_dump_json())
            pipe.zadd(self._key(job.queue_name, target), {job.id: score_ms})

        await self.redis.transaction(finish, active)

    async def _mark_completed(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        job.state = JobState.COMPLETED
        job.return_value = result
        job.finished_at = utcnow()
        await self._finish(job, "completed", now_ms())
        await self._trim_completed(job.queue_name)

    async def _trim_completed(self, queue_name: str) -> None:
        completed = self._key(queue_name, "completed")
        overflow = await self.redis.zcard(completed) - self.keep_completed
        if overflow <= 0:
            return
        stale = await self.redis.zrange(completed, 0, overflow - 1)
        if not stale:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(completed, *stale)
            for job_id in stale:
                pipe.expire(self._key(queue_name, "job", job_id), self.dedupe_ttl)
            await pipe.execute()

    async def _mark_retry(self, job: Job, error: str, delay_ms: int) -> None:
        job.state = JobState.DELAYED
        job.failed_reason = error
        job.scheduled_for = utcnow() + timedelta(milliseconds=delay_ms)
        await self._finish(job, "delayed", now_ms() + delay_ms)

    async def _mark_failed(self, job: Job, error: str) -> None:
        job.state = JobState.FAILED
        job.failed_reason = error
        job.finished_at = utcnow()
        await self._finish(job, "failed", now_ms())

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Closed Redis queue backend connection")


class JobQueue:
    """A named queue over the shared backend."""

    def __init__(
        self,
        name: str,
        backend: QueueBackend,
        default_options: Optional[JobOptions] = None,
    ):
        self.name = name
        self.backend = backend
        self.default_options = default_options or JobOptions()

    async def add(
        self,
        job_name: str,
        data: Dict[str, Any],
        job_id: Optional[str] = None,
        delay: float = 0,
    ) -> Job:
        options = self.default_options.model_copy(update={"job_id": job_id, "delay": delay})
        try:
            job = await self.backend.add_job(self.name, job_name, data, options)
        except Exception as e:
            metrics.queue_publish_errors.labels(queue=self.name).inc()
            logger.error(f"Error adding job {job_name} to {self.name}: {e}")
            raise
        metrics.queue_publish_total.labels(queue=self.name).inc()
        return job

    async def add_repeatable(self, spec: ScheduleSpec) -> Job:
        if spec.queue_name != self.name:
            raise ValueError(f"Schedule {spec.job_id} belongs to {spec.queue_name}, not {self.name}")
        return await self.backend.add_repeatable(spec, self.default_options)


def create_queue_backend(
    redis_config: Optional[RedisConfig],
    retry_config: Optional[RetryConfig] = None,
) -> QueueBackend:
    if not redis_config:
        raise ValueError("No queue backend configured: redis.url is required")
    return RedisQueueBackend.from_config(redis_config, retry_config)


def default_job_options(retry_config: RetryConfig) -> JobOptions:
    return JobOptions(attempts=retry_config.attempts, backoff_delay=retry_config.backoff_delay)
