"""Account deletion jobs.

``process-deletions`` removes accounts whose grace period has elapsed and
``send-reminders`` warns users 7 days and 1 day before their account goes.
E-mail is optional: without a client, deletions still run and reminders are
skipped.
"""

from datetime import datetime, time, timedelta
from typing import Optional

from loguru import logger

from webhook_pipeline.common.collaborators import Database
from webhook_pipeline.common.config import PushConfig
from webhook_pipeline.common.models import (
    DeletionJobData,
    DeletionJobResult,
    Job,
    utcnow,
)
from webhook_pipeline.common.queue import QueueBackend
from webhook_pipeline.common.schedules import DELETION_QUEUE, PROCESS_DELETIONS, SEND_REMINDERS
from webhook_pipeline.worker.base import CompletedHook, FailedHook, Worker
from webhook_pipeline.worker.clients import ResendEmailClient

REMINDERS = ((7, "7_day"), (1, "1_day"))
DEFAULT_USER_NAME = "there"


def day_bounds(day: datetime):
    start = datetime.combine(day.date(), time.min, tzinfo=day.tzinfo)
    end = datetime.combine(day.date(), time.max, tzinfo=day.tzinfo)
    return start, end


class DeletionProcessor:
    def __init__(
        self,
        db: Database,
        email_client: Optional[ResendEmailClient],
        app_url: str,
        push: Optional[PushConfig] = None,
    ):
        self.db = db
        self.email_client = email_client
        self.cancel_url = f"{app_url.rstrip('/')}/settings/profile"
        self.push = push

    async def process_scheduled_deletions(self, now: datetime) -> DeletionJobResult:
        processed = 0
        emails_sent = 0

        for deletion in await self.db.find_due_deletions(now):
            try:
                user = await self.db.find_user(deletion.user_id)
                if user is None:
                    # Already gone; just close the request
                    await self.db.mark_deletion_completed(deletion.id, utcnow())
                    continue

                await self.db.delete_user_data(deletion.user_id)
                await self.db.mark_deletion_completed(deletion.id, utcnow())

                if self.email_client and user.email:
                    try:
                        await self.email_client.send_deletion_completed(
                            user.email, user.name or DEFAULT_USER_NAME
                        )
                        emails_sent += 1
                    except Exception as e:
                        logger.error(f"Failed to send deletion completed e-mail: {e}")

                processed += 1
            except Exception as e:
                logger.error(f"Failed to process deletion for user {deletion.user_id}: {e}")

        return DeletionJobResult(processed_count=processed, emails_sent=emails_sent)

    async def send_deletion_reminders(self, now: datetime) -> DeletionJobResult:
        if self.email_client is None:
            logger.info("E-mail disabled, skipping deletion reminders")
            return DeletionJobResult()

        candidates = 0
        emails_sent = 0

        for days, reminder in REMINDERS:
            start, end = day_bounds(now + timedelta(days=days))
            deletions = await self.db.find_deletions_scheduled_between(start, end, reminder)
            candidates += len(deletions)

            for deletion in deletions:
                if reminder in deletion.reminders_sent:
                    continue
                user = await self.db.find_user(deletion.user_id)
                if user is None or not user.email:
                    continue
                try:
                    await self.email_client.send_deletion_reminder(
                        user.email,
                        user.name or DEFAULT_USER_NAME,
                        days,
                        self.cancel_url,
                    )
                    await self.db.record_reminder_sent(deletion.id, reminder)
                    emails_sent += 1
                except Exception as e:
                    logger.error(f"Failed to send {reminder} reminder to {deletion.user_id}: {e}")

        return DeletionJobResult(processed_count=candidates, emails_sent=emails_sent)

    async def __call__(self, job: Job) -> DeletionJobResult:
        data = DeletionJobData.model_validate(job.data)
        now = utcnow()
        if data.type == PROCESS_DELETIONS:
            result = await self.process_scheduled_deletions(now)
        elif data.type == SEND_REMINDERS:
            result = await self.send_deletion_reminders(now)
        else:
            raise ValueError(f"Unknown deletion job type: {data.type}")
        logger.info(
            f"{data.type}: processed {result.processed_count}, sent {result.emails_sent} e-mails"
        )
        return result


def create_deletion_worker(
    backend: QueueBackend,
    db: Database,
    app_url: str,
    email_client: Optional[ResendEmailClient] = None,
    push: Optional[PushConfig] = None,
    on_completed: Optional[CompletedHook] = None,
    on_failed: Optional[FailedHook] = None,
    **options,
) -> Worker:
    if push is not None and push.configured:
        logger.info("Push notification keys configured for the deletion worker")
    return Worker(
        DELETION_QUEUE,
        DeletionProcessor(db, email_client, app_url, push=push),
        backend,
        concurrency=1,
        on_completed=on_completed,
        on_failed=on_failed,
        **options,
    )
