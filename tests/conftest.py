import asyncio
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from webhook_pipeline.collector.handlers import WebhookRouter
from webhook_pipeline.collector.server import create_app
from webhook_pipeline.common.collaborators import Database, RulesEngine
from webhook_pipeline.common.config import (
    CollectorConfig,
    MetricsConfig,
    RedisConfig,
    WorkerConfig,
)
from webhook_pipeline.common.emitter import EventEmitter
from webhook_pipeline.common.models import (
    DeletionRequest,
    Job,
    JobState,
    NormalizedEvent,
    ScheduleSpec,
    UserRecord,
    WorkflowJobResult,
)
from webhook_pipeline.common.queue import JobQueue, QueueBackend, QueueError, now_ms
from webhook_pipeline.common.schedules import WORKFLOW_QUEUE


class InMemoryQueueBackend(QueueBackend):
    """Mock implementation of QueueBackend for testing."""

    def __init__(self, keep_completed: int = 100):
        super().__init__(keep_completed=keep_completed)
        self.jobs: Dict[tuple, Job] = {}
        self.waiting = defaultdict(deque)
        self.delayed = defaultdict(dict)
        self.active = defaultdict(list)
        self.completed = defaultdict(list)
        self.failed = defaultdict(list)
        self.repeatables = defaultdict(dict)
        self.locks = set()
        self.close_calls = 0
        self.healthy = True
        self._ids = defaultdict(int)

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def jobs_in(self, queue_name: str) -> List[Job]:
        """Helper method to list every stored job of a queue."""
        return [job for (queue, _), job in self.jobs.items() if queue == queue_name]

    async def ping(self) -> bool:
        return self.healthy

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        return self.jobs.get((queue_name, job_id))

    async def get_repeatables(self, queue_name: str) -> List[ScheduleSpec]:
        return list(self.repeatables[queue_name].values())

    async def fetch_job(self, queue_name: str, lock_duration: int) -> Optional[Job]:
        now = now_ms()
        for job_id, run_at in list(self.delayed[queue_name].items()):
            if run_at <= now:
                del self.delayed[queue_name][job_id]
                self.waiting[queue_name].append(job_id)

        if not self.waiting[queue_name]:
            return None
        job_id = self.waiting[queue_name].popleft()
        job = self.jobs[(queue_name, job_id)]
        self.active[queue_name].append(job_id)
        self.locks.add((queue_name, job_id))
        job.state = JobState.ACTIVE
        return job

    async def extend_lock(self, job: Job, lock_duration: int) -> bool:
        return (job.queue_name, job.id) in self.locks

    async def recover_stalled(self, queue_name: str) -> int:
        recovered = 0
        for job_id in list(self.active[queue_name]):
            if (queue_name, job_id) in self.locks:
                continue
            self.active[queue_name].remove(job_id)
            self.jobs[(queue_name, job_id)].state = JobState.WAITING
            self.waiting[queue_name].append(job_id)
            recovered += 1
        return recovered

    async def close(self) -> None:
        self.close_calls += 1

    async def _next_id(self, queue_name: str) -> str:
        self._ids[queue_name] += 1
        return str(self._ids[queue_name])

    async def _create(self, job: Job, delay_ms: int) -> Optional[Job]:
        key = (job.queue_name, job.id)
        if key in self.jobs:
            return self.jobs[key]
        self.jobs[key] = job
        if delay_ms > 0:
            self.delayed[job.queue_name][job.id] = now_ms() + delay_ms
        else:
            self.waiting[job.queue_name].append(job.id)
        return None

    async def _store_repeatable(self, spec: ScheduleSpec) -> None:
        self.repeatables[spec.queue_name][spec.job_id] = spec

    def _release(self, job: Job):
        self.locks.discard((job.queue_name, job.id))
        if job.id not in self.active[job.queue_name]:
            raise QueueError(f"Job {job.id} is not active in {job.queue_name}")
        self.active[job.queue_name].remove(job.id)

    async def _mark_completed(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        self._release(job)
        job.state = JobState.COMPLETED
        job.return_value = result
        self.completed[job.queue_name].append(job.id)

    async def _mark_retry(self, job: Job, error: str, delay_ms: int) -> None:
        self._release(job)
        job.state = JobState.DELAYED
        job.failed_reason = error
        self.delayed[job.queue_name][job.id] = now_ms() + delay_ms

    async def _mark_failed(self, job: Job, error: str) -> None:
        self._release(job)
        job.state = JobState.FAILED
        job.failed_reason = error
        self.failed[job.queue_name].append(job.id)


class FakeDatabase(Database):
    """Mock implementation of Database backed by plain collections."""

    def __init__(self):
        self.organizations = {"org_123": {"id": "org_123", "name": "Acme"}}
        self.users: Dict[str, UserRecord] = {}
        self.deletions: List[DeletionRequest] = []
        self.deleted_users: List[str] = []
        self.completed_deletions: Dict[str, datetime] = {}
        self.reminders: List[tuple] = []
        self.log_cutoffs: List[datetime] = []
        self.logs_to_delete = 0
        self.closed = False

    async def find_organization(self, organization_id):
        return self.organizations.get(organization_id)

    async def delete_automation_logs_before(self, cutoff):
        self.log_cutoffs.append(cutoff)
        return self.logs_to_delete

    def _pending(self):
        return [d for d in self.deletions if d.id not in self.completed_deletions]

    async def find_due_deletions(self, now):
        return [d for d in self._pending() if d.scheduled_deletion_at <= now]

    async def find_deletions_scheduled_between(self, start, end, exclude_reminder):
        return [
            d
            for d in self._pending()
            if start <= d.scheduled_deletion_at <= end
            and exclude_reminder not in d.reminders_sent
        ]

    async def find_user(self, user_id):
        return self.users.get(user_id)

    async def delete_user_data(self, user_id):
        self.deleted_users.append(user_id)
        self.users.pop(user_id, None)

    async def mark_deletion_completed(self, request_id, completed_at):
        self.completed_deletions[request_id] = completed_at

    async def record_reminder_sent(self, request_id, reminder):
        self.reminders.append((request_id, reminder))
        for deletion in self.deletions:
            if deletion.id == request_id:
                deletion.reminders_sent.append(reminder)

    async def close(self):
        self.closed = True


class FakeRulesEngine(RulesEngine):
    """Mock implementation of RulesEngine that records every event."""

    def __init__(self, delay: float = 0, error: Optional[Exception] = None):
        self.delay = delay
        self.error = error
        self.events: List[NormalizedEvent] = []

    async def evaluate(self, event):
        self.events.append(event)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return WorkflowJobResult(rules_evaluated=2, rules_matched=1)


@pytest.fixture
def memory_backend():
    """Fixture that provides an in-memory queue backend."""
    return InMemoryQueueBackend()


@pytest.fixture
def fake_db():
    """Fixture that provides a fake persistence collaborator."""
    return FakeDatabase()


@pytest.fixture
def rules_engine():
    """Fixture that provides a fake rules engine."""
    return FakeRulesEngine()


@pytest.fixture
def stripe_event():
    """Fixture that provides a sample Stripe event."""
    return {
        "id": "evt_123",
        "type": "checkout.session.completed",
        "data": {"object": {"metadata": {"organization_id": "org_123"}}},
    }


@pytest.fixture
def asaas_event():
    """Fixture that provides a sample Asaas event."""
    return {
        "id": "evt_asaas_1",
        "event": "PAYMENT_RECEIVED",
        "payment": {"id": "pay_1", "externalReference": "org_123"},
    }


@pytest.fixture
def collector_config():
    """Fixture that provides a sample collector configuration."""
    return CollectorConfig(
        host="0.0.0.0",
        port=8000,
        log_level="INFO",
        redis=RedisConfig(url="redis://localhost:6379/0"),
        metrics=MetricsConfig(enabled=False),
        webhook_sources=[
            {"name": "stripe", "secret": "whsec_test"},
            {"name": "asaas", "secret": "asaas-token-secret"},
            {"name": "custom", "secret": "custom-secret"},
        ],
    )


@pytest.fixture
def worker_config():
    """Fixture that provides a sample worker configuration."""
    return WorkerConfig(
        log_level="INFO",
        redis=RedisConfig(url="redis://localhost:6379/0"),
        metrics=MetricsConfig(enabled=False),
        database_factory="acme.persistence:create_database",
        rules_engine_factory="acme.rules:create_engine",
        app_url="https://app.example.com",
        poll_interval=0.01,
        shutdown_timeout=5,
    )


@pytest.fixture
def webhook_router(collector_config, memory_backend, fake_db):
    """Fixture that provides a webhook router writing to the in-memory backend."""
    queue = JobQueue(WORKFLOW_QUEUE, memory_backend)
    return WebhookRouter(collector_config, EventEmitter(queue), fake_db)


@pytest.fixture
def collector_app(collector_config, webhook_router, memory_backend, fake_db):
    """Fixture that provides a configured collector FastAPI app."""
    return create_app(collector_config, webhook_router, backend=memory_backend, db=fake_db)


@pytest.fixture
def collector_client(collector_app):
    """Fixture that provides a test client for the collector API."""
    return TestClient(collector_app)


@pytest.fixture
def wait_until():
    """Fixture that provides a helper polling a condition until it holds."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(interval)

    return _wait


@pytest.fixture
def make_rules_engine():
    """Fixture that provides the fake rules engine class for custom behaviour."""
    return FakeRulesEngine


@pytest.fixture
def make_backend():
    """Fixture that provides the in-memory backend class for custom settings."""
    return InMemoryQueueBackend
