import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from webhook_pipeline.common.models import JobOptions, JobState, WorkflowJobResult
from webhook_pipeline.worker.base import Worker

QUEUE = "maintenance"


def make_worker(backend, processor, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return Worker(QUEUE, processor, backend, **kwargs)


class TestWorker:

    def test_concurrency_must_be_positive(self, memory_backend):
        with pytest.raises(ValueError, match="concurrency must be at least 1"):
            Worker(QUEUE, AsyncMock(), memory_backend, concurrency=0)

    @pytest.mark.asyncio
    async def test_processes_job(self, memory_backend, wait_until):
        """Test that a job is processed and its result stored."""
        completed = []
        processor = AsyncMock(return_value=WorkflowJobResult(rules_evaluated=3, rules_matched=2))
        worker = make_worker(
            memory_backend, processor, on_completed=lambda job, result: completed.append(result)
        )
        job = await memory_backend.add_job(QUEUE, "cleanup-automation-logs", {})

        worker.start()
        await wait_until(lambda: job.state == JobState.COMPLETED)
        await worker.close()

        processor.assert_awaited_once_with(job)
        assert job.return_value == {"rules_evaluated": 3, "rules_matched": 2}
        assert completed == [WorkflowJobResult(rules_evaluated=3, rules_matched=2)]

    @pytest.mark.asyncio
    async def test_concurrency_one_never_interleaves(self, memory_backend, wait_until):
        """Test that a single-slot worker runs jobs strictly one at a time."""
        running = 0
        peak = 0
        order = []

        async def processor(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            order.append(("start", job.id))
            await asyncio.sleep(0.02)
            order.append(("end", job.id))
            running -= 1

        worker = make_worker(memory_backend, processor, concurrency=1)
        jobs = [await memory_backend.add_job(QUEUE, "job", {}) for _ in range(4)]

        worker.start()
        await wait_until(lambda: all(j.state == JobState.COMPLETED for j in jobs))
        await worker.close()

        assert peak == 1
        for i in range(0, len(order), 2):
            assert order[i][0] == "start"
            assert order[i + 1] == ("end", order[i][1])

    @pytest.mark.asyncio
    async def test_runs_jobs_concurrently(self, memory_backend, wait_until):
        running = 0
        peak = 0

        async def processor(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1

        worker = make_worker(memory_backend, processor, concurrency=3)
        jobs = [await memory_backend.add_job(QUEUE, "job", {}) for _ in range(3)]

        worker.start()
        await wait_until(lambda: all(j.state == JobState.COMPLETED for j in jobs))
        await worker.close()

        assert peak == 3

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, memory_backend, wait_until):
        """Test that a raising handler is reported and retried by the backend."""
        failures = []
        worker = make_worker(
            memory_backend,
            AsyncMock(side_effect=RuntimeError("db unavailable")),
            on_failed=lambda job, error: failures.append(error),
        )
        job = await memory_backend.add_job(QUEUE, "job", {}, JobOptions(attempts=3))

        worker.start()
        await wait_until(lambda: job.state == JobState.DELAYED)
        await worker.close()

        assert job.attempts_made == 1
        assert job.failed_reason == "db unavailable"
        assert len(failures) == 1
        assert isinstance(failures[0], RuntimeError)

    @pytest.mark.asyncio
    async def test_failure_without_message_uses_type_name(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, AsyncMock(side_effect=KeyError()))
        job = await memory_backend.add_job(QUEUE, "job", {}, JobOptions(attempts=1))

        worker.start()
        await wait_until(lambda: job.state == JobState.FAILED)
        await worker.close()

        assert job.failed_reason == "KeyError"

    @pytest.mark.asyncio
    async def test_hook_errors_do_not_fail_job(self, memory_backend, wait_until):
        """Test that an exception in on_completed leaves the job completed."""

        def broken_hook(job, result):
            raise RuntimeError("hook exploded")

        worker = make_worker(memory_backend, AsyncMock(return_value=None), on_completed=broken_hook)
        job = await memory_backend.add_job(QUEUE, "job", {})

        worker.start()
        await wait_until(lambda: job.state == JobState.COMPLETED)
        await asyncio.sleep(0.02)
        await worker.close()

        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_async_hooks_are_awaited(self, memory_backend, wait_until):
        hook = AsyncMock()
        worker = make_worker(memory_backend, AsyncMock(return_value=None), on_completed=hook)
        job = await memory_backend.add_job(QUEUE, "job", {})

        worker.start()
        await wait_until(lambda: hook.await_count == 1)
        await worker.close()

        hook.assert_awaited_once_with(job, None)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, AsyncMock(return_value=None))
        worker.start()
        await worker.pause()
        assert worker.is_paused

        job = await memory_backend.add_job(QUEUE, "job", {})
        await asyncio.sleep(0.05)
        assert job.state == JobState.WAITING

        await worker.resume()
        await wait_until(lambda: job.state == JobState.COMPLETED)
        await worker.close()

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_job(self, memory_backend, wait_until):
        """Test that closing lets a running job finish."""

        async def slow(job):
            await asyncio.sleep(0.1)
            return {"done": True}

        worker = make_worker(memory_backend, slow)
        job = await memory_backend.add_job(QUEUE, "job", {})
        worker.start()
        await wait_until(lambda: job.state == JobState.ACTIVE)

        await worker.close()

        assert job.state == JobState.COMPLETED
        assert not worker.is_running
        assert worker.active_count == 0

    @pytest.mark.asyncio
    async def test_abort_cancels_in_flight_job(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, lambda job: asyncio.sleep(10))
        job = await memory_backend.add_job(QUEUE, "job", {})
        worker.start()
        await wait_until(lambda: worker.active_count == 1)

        worker.abort()
        await asyncio.sleep(0.01)

        assert job.state == JobState.ACTIVE
        assert worker.active_count == 0

    @pytest.mark.asyncio
    async def test_fetch_errors_do_not_stop_loop(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, AsyncMock(return_value=None))
        memory_backend.fetch_job = AsyncMock(side_effect=ConnectionError("redis down"))

        worker.start()
        await wait_until(lambda: memory_backend.fetch_job.await_count >= 1)
        await asyncio.sleep(0.05)

        # Backing off for 5 seconds, not crashed
        assert worker.is_running
        assert memory_backend.fetch_job.await_count == 1
        await worker.close()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_stalled_jobs_are_recovered(self, memory_backend, wait_until):
        job = await memory_backend.add_job(QUEUE, "job", {})
        await memory_backend.fetch_job(QUEUE, 30)
        memory_backend.locks.clear()

        worker = make_worker(memory_backend, AsyncMock(return_value=None), stalled_interval=0)
        worker.start()
        await wait_until(lambda: job.state == JobState.COMPLETED)
        await worker.close()

    @pytest.mark.asyncio
    async def test_lost_lock_is_logged_as_error(self, memory_backend, wait_until):
        """Test that a job whose lock disappears mid-run is reported at error level."""

        async def lose_lock(job):
            memory_backend.locks.clear()
            await asyncio.sleep(0.1)

        worker = make_worker(memory_backend, lose_lock, lock_duration=0.02)
        job = await memory_backend.add_job(QUEUE, "job", {})

        with patch("webhook_pipeline.worker.base.logger") as mock_logger:
            worker.start()
            await wait_until(lambda: job.state == JobState.COMPLETED)
            await worker.close()

        messages = [c.args[0] for c in mock_logger.error.call_args_list]
        assert any(m.startswith(f"Lost lock on job {job.id} in {QUEUE}") for m in messages)

    @pytest.mark.asyncio
    async def test_gc_after_job(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, AsyncMock(return_value=None), gc_after_job=True)
        job = await memory_backend.add_job(QUEUE, "job", {})

        with patch("webhook_pipeline.worker.base.gc.collect") as mock_collect:
            worker.start()
            await wait_until(lambda: job.state == JobState.COMPLETED)
            await wait_until(lambda: mock_collect.called)
            await worker.close()

        mock_collect.assert_called_with(0)

    @pytest.mark.asyncio
    async def test_completion_error_is_logged(self, memory_backend, wait_until):
        worker = make_worker(memory_backend, AsyncMock(return_value=None))
        job = await memory_backend.add_job(QUEUE, "job", {})
        memory_backend.complete_job = AsyncMock(side_effect=ConnectionError("lost"))
        hook = MagicMock()
        worker.on_completed = hook

        worker.start()
        await wait_until(lambda: memory_backend.complete_job.await_count == 1)
        await worker.close()

        hook.assert_not_called()
        assert job.state == JobState.ACTIVE
