"""Queue names and the recurring jobs registered at worker startup."""

from typing import Iterable, List

from loguru import logger

from webhook_pipeline.common.models import ScheduleSpec
from webhook_pipeline.common.queue import JobQueue

WORKFLOW_QUEUE = "workflow"
MAINTENANCE_QUEUE = "maintenance"
DELETION_QUEUE = "deletion"

WEBHOOK_RECEIVED = "webhook.received"
CLEANUP_AUTOMATION_LOGS = "cleanup-automation-logs"
PROCESS_DELETIONS = "process-deletions"
SEND_REMINDERS = "send-reminders"


def default_schedules(log_retention_days: int = 7) -> List[ScheduleSpec]:
    return [
        ScheduleSpec(
            queue_name=MAINTENANCE_QUEUE,
            job_name=CLEANUP_AUTOMATION_LOGS,
            job_id="cleanup-automation-logs-daily",
            pattern="0 3 * * *",
            data={"type": CLEANUP_AUTOMATION_LOGS, "retention_days": log_retention_days},
        ),
        ScheduleSpec(
            queue_name=DELETION_QUEUE,
            job_name=PROCESS_DELETIONS,
            job_id="process-deletions-daily",
            pattern="0 2 * * *",
            data={"type": PROCESS_DELETIONS},
        ),
        ScheduleSpec(
            queue_name=DELETION_QUEUE,
            job_name=SEND_REMINDERS,
            job_id="send-reminders-daily",
            pattern="0 10 * * *",
            data={"type": SEND_REMINDERS},
        ),
    ]


async def register_schedules(
    queues: dict, schedules: Iterable[ScheduleSpec]
) -> int:
    """Register every schedule on its queue in one pass."""
    registered = 0
    for spec in schedules:
        queue: JobQueue = queues[spec.queue_name]
        job = await queue.add_repeatable(spec)
        logger.info(
            f"Registered schedule {spec.job_id} ({spec.pattern}) on {spec.queue_name}, "
            f"next run {job.scheduled_for}"
        )
        registered += 1
    return registered
