from typing import Optional

from loguru import logger

from webhook_pipeline.common.collaborators import RulesEngine
from webhook_pipeline.common.models import Job, NormalizedEvent, WorkflowJobResult
from webhook_pipeline.common.queue import QueueBackend
from webhook_pipeline.common.schedules import WEBHOOK_RECEIVED, WORKFLOW_QUEUE
from webhook_pipeline.worker.base import CompletedHook, FailedHook, Worker

DEFAULT_WORKFLOW_CONCURRENCY = 5


def create_workflow_processor(rules_engine: RulesEngine):
    async def process(job: Job) -> WorkflowJobResult:
        if job.name != WEBHOOK_RECEIVED:
            raise ValueError(f"Unknown workflow job type: {job.name}")

        event = NormalizedEvent.model_validate(job.data)
        result = await rules_engine.evaluate(event)
        logger.debug(
            f"Evaluated {event.event_type} for {event.organization_id}: "
            f"{result.rules_matched}/{result.rules_evaluated} rules matched"
        )
        return result

    return process


def create_workflow_worker(
    backend: QueueBackend,
    rules_engine: RulesEngine,
    concurrency: int = DEFAULT_WORKFLOW_CONCURRENCY,
    on_completed: Optional[CompletedHook] = None,
    on_failed: Optional[FailedHook] = None,
    **options,
) -> Worker:
    return Worker(
        WORKFLOW_QUEUE,
        create_workflow_processor(rules_engine),
        backend,
        concurrency=concurrency,
        on_completed=on_completed,
        on_failed=on_failed,
        **options,
    )
