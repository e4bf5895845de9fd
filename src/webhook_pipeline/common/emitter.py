from typing import Any, Dict, Optional

from loguru import logger

from webhook_pipeline.common.config import Provider
from webhook_pipeline.common.models import Job, NormalizedEvent
from webhook_pipeline.common.queue import JobQueue
from webhook_pipeline.common.schedules import WEBHOOK_RECEIVED, WORKFLOW_QUEUE


class EventEmitter:
    """Turns verified webhooks into jobs on the workflow queue."""

    def __init__(self, queue: JobQueue):
        if queue.name != WORKFLOW_QUEUE:
            raise ValueError(f"EventEmitter expects the {WORKFLOW_QUEUE} queue, got {queue.name}")
        self.queue = queue

    async def emit(
        self,
        organization_id: str,
        provider: Provider,
        event_type: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        event_id: Optional[str] = None,
    ) -> Job:
        event = NormalizedEvent(
            organization_id=organization_id,
            provider=provider,
            event_type=event_type,
            payload=payload,
            headers=headers,
        )
        # Provider event ids make redeliveries collapse onto the same job
        job_id = f"{provider.value}:{event_id}" if event_id else None
        job = await self.queue.add(
            WEBHOOK_RECEIVED, event.model_dump(mode="json"), job_id=job_id
        )
        logger.info(
            f"Queued {provider.value} event {event_type} for organization "
            f"{organization_id} as job {job.id}"
        )
        return job
