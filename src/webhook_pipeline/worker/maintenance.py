from datetime import timedelta
from typing import Optional

from loguru import logger

from webhook_pipeline.common.collaborators import Database
from webhook_pipeline.common.models import (
    Job,
    MaintenanceJobData,
    MaintenanceJobResult,
    utcnow,
)
from webhook_pipeline.common.queue import QueueBackend
from webhook_pipeline.common.schedules import CLEANUP_AUTOMATION_LOGS, MAINTENANCE_QUEUE
from webhook_pipeline.worker.base import CompletedHook, FailedHook, Worker


def create_maintenance_processor(db: Database):
    async def process(job: Job) -> MaintenanceJobResult:
        if job.name != CLEANUP_AUTOMATION_LOGS:
            raise ValueError(f"Unknown maintenance job type: {job.name}")

        data = MaintenanceJobData.model_validate(job.data)
        cutoff = utcnow() - timedelta(days=data.retention_days)
        deleted = await db.delete_automation_logs_before(cutoff)
        logger.info(f"Deleted {deleted} automation logs older than {cutoff.isoformat()}")
        return MaintenanceJobResult(deleted_count=deleted)

    return process


def create_maintenance_worker(
    backend: QueueBackend,
    db: Database,
    on_completed: Optional[CompletedHook] = None,
    on_failed: Optional[FailedHook] = None,
    **options,
) -> Worker:
    # Bulk deletes on shared tables: never run two at once
    return Worker(
        MAINTENANCE_QUEUE,
        create_maintenance_processor(db),
        backend,
        concurrency=1,
        on_completed=on_completed,
        on_failed=on_failed,
        **options,
    )
