"""Unit tests for the in-process job queue."""

import pytest

from hanzicards.exceptions import JobParked, NotFoundError, ProviderError
from hanzicards.models.card import PronunciationSelection
from hanzicards.models.job import JobPayload, JobState, JobType
from hanzicards.pipeline.job_queue import JobQueue, JobRegistry


def make_queue(handler, registry=None, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_seconds", 0)
    return JobQueue(
        name="test",
        job_type=JobType.CARD_ENRICHMENT,
        handler=handler,
        registry=registry or JobRegistry(),
        **kwargs,
    )


class TestJobQueue:
    @pytest.mark.asyncio
    async def test_completes_job_with_result(self):
        async def handler(job):
            return {"card_id": job.payload.card_id}

        queue = make_queue(handler)
        await queue.start()
        handle = queue.enqueue(JobPayload(card_id="c1"))

        status = await handle.wait(timeout=5)
        await queue.shutdown()

        assert status.state == JobState.COMPLETED
        assert status.result == {"card_id": "c1"}
        assert status.attempts == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        async def handler(job):
            calls.append(job.attempts)
            if len(calls) < 3:
                raise ProviderError("fake", "temporarily down")
            return {}

        queue = make_queue(handler)
        await queue.start()
        status = await queue.enqueue(JobPayload()).wait(timeout=5)
        await queue.shutdown()

        assert status.state == JobState.COMPLETED
        assert calls == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self):
        failures = []

        async def handler(job):
            raise ProviderError("fake", "down")

        async def on_failed(job, error):
            failures.append((job.state, str(error)))

        queue = make_queue(handler, max_attempts=2, on_failed=on_failed)
        await queue.start()
        status = await queue.enqueue(JobPayload()).wait(timeout=5)
        await queue.shutdown()

        assert status.state == JobState.FAILED
        assert status.attempts == 2
        assert "down" in status.error
        # The hook runs before the job is marked failed
        assert failures == [(JobState.ACTIVE, "fake: down")]

    @pytest.mark.asyncio
    async def test_terminal_errors_are_not_retried(self):
        async def handler(job):
            raise NotFoundError("no entry")

        queue = make_queue(handler)
        await queue.start()
        status = await queue.enqueue(JobPayload()).wait(timeout=5)
        await queue.shutdown()

        assert status.state == JobState.FAILED
        assert status.attempts == 1

    @pytest.mark.asyncio
    async def test_park_and_resume(self):
        async def handler(job):
            if job.payload.selection is None:
                raise JobParked("needs a reading")
            return {"pronunciation": job.payload.selection.pronunciation}

        queue = make_queue(handler)
        await queue.start()
        handle = queue.enqueue(JobPayload(card_id="c1"))

        parked = await handle.wait(timeout=5)
        assert parked.state == JobState.PARKED
        assert parked.parked_reason == "needs a reading"
        assert queue.is_idle
        assert [job.id for job in queue.parked_jobs()] == [handle.id]

        first_sequence = queue.registry.get(handle.id).sequence
        payload = JobPayload(card_id="c1", selection=PronunciationSelection(pronunciation="lei4"))
        queue.resume(handle.id, payload)
        status = await handle.wait(timeout=5)
        await queue.shutdown()

        assert status.state == JobState.COMPLETED
        assert status.result == {"pronunciation": "lei4"}
        assert queue.registry.get(handle.id).sequence > first_sequence

    @pytest.mark.asyncio
    async def test_resume_requires_parked_job(self):
        async def handler(job):
            return {}

        queue = make_queue(handler)
        await queue.start()
        handle = queue.enqueue(JobPayload())
        await handle.wait(timeout=5)

        with pytest.raises(ValueError):
            queue.resume(handle.id)
        await queue.shutdown()

    @pytest.mark.asyncio
    async def test_discard_parked(self):
        async def handler(job):
            raise JobParked("waiting")

        queue = make_queue(handler)
        await queue.start()
        handle = queue.enqueue(JobPayload())
        await handle.wait(timeout=5)

        queue.discard_parked(handle.id, "card deleted")
        await queue.shutdown()

        assert handle.get_state() == JobState.FAILED
        assert handle.get_status().error == "card deleted"

    @pytest.mark.asyncio
    async def test_retention_trims_oldest_completed(self):
        async def handler(job):
            return {}

        registry = JobRegistry(keep_completed=2)
        queue = make_queue(handler, registry=registry)
        await queue.start()
        handles = [queue.enqueue(JobPayload()) for _ in range(4)]
        await queue.join()
        await queue.shutdown()

        assert len(registry.jobs(queue=queue.name, state=JobState.COMPLETED)) == 2
        with pytest.raises(NotFoundError):
            handles[0].get_state()
        assert handles[-1].get_state() == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_sequences_increase(self):
        async def handler(job):
            return {}

        queue = make_queue(handler)
        first = queue.enqueue(JobPayload())
        second = queue.enqueue(JobPayload())

        assert queue.registry.get(second.id).sequence > queue.registry.get(first.id).sequence
        await queue.start()
        await queue.shutdown()

    @pytest.mark.asyncio
    async def test_enqueue_after_shutdown_is_rejected(self):
        async def handler(job):
            return {}

        queue = make_queue(handler)
        await queue.start()
        await queue.shutdown()

        with pytest.raises(RuntimeError):
            queue.enqueue(JobPayload())
