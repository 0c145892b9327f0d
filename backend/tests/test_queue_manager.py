"""
Tests for the queue manager.

These drive a real QueueManager over a private fakeredis server. rq burst
workers run on a helper thread and hand every job back to the test's event
loop; handlers are plain coroutines that record what they saw.
"""

import asyncio

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from rq.job import Job as RQJob
from sqlalchemy import select

from fakes import drain, work_once
from trustbrief.errors import InvalidJobPayloadError, QueueNotFoundError, TransientError, ValidationFailure
from trustbrief.models.job import JobRecord
from trustbrief.observability import get_correlation_id
from trustbrief.services.queue import (
    DiscoverPayload,
    Job,
    JobOptions,
    JobRecorder,
    JobStatus,
    QueueManager,
    RetryPolicy,
)
from trustbrief.services.queue.jobs import BackoffType


def _payload(run_id: str = "run-1") -> DiscoverPayload:
    return DiscoverPayload(run_id=run_id, correlation_id=f"cid-{run_id}")


@pytest_asyncio.fixture
async def queues(redis_connection, worker_runtime):
    manager = QueueManager(redis_connection, default_retry=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0))
    worker_runtime(manager)
    yield manager


async def _work_until(queues, predicate, timeout: float = 5.0) -> None:
    async def _wait():
        while not predicate():
            await work_once(queues)
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_wait(), timeout=timeout)


# =============================================================================
# ENQUEUE VALIDATION
# =============================================================================

@pytest.mark.asyncio
async def test_malformed_payload_is_rejected_and_nothing_enqueued(queues):
    with pytest.raises(InvalidJobPayloadError):
        await queues.enqueue("discover", {"run_id": "", "correlation_id": "cid"})
    with pytest.raises(InvalidJobPayloadError):
        await queues.enqueue("discover", {"run_id": "r", "correlation_id": "cid", "surprise": 1})
    with pytest.raises(InvalidJobPayloadError):
        await queues.enqueue("enrich", _payload())

    assert queues.metrics("discover").waiting == 0
    assert queues.metrics("enrich").waiting == 0


@pytest.mark.asyncio
async def test_unknown_queue_is_rejected(queues):
    with pytest.raises(QueueNotFoundError):
        await queues.enqueue("nope", _payload())
    with pytest.raises(QueueNotFoundError):
        queues.pause("nope")
    with pytest.raises(QueueNotFoundError):
        queues.listen_order(["discover", "nope"])


def test_invalid_options_are_rejected():
    with pytest.raises(ValidationFailure) as exc_info:
        JobOptions(priority=11, delay=-1)
    assert len(exc_info.value.reasons) == 2


@pytest.mark.asyncio
async def test_dict_payload_gets_the_queue_kind(queues):
    job = await queues.enqueue("discover", {"run_id": "r", "correlation_id": "cid", "terms": ["carbon levy"]})
    assert job.payload.kind == "discover"
    assert job.payload.terms == ["carbon levy"]

    stored = queues.get_job(job.id)
    assert stored.payload == job.payload
    assert stored.status == JobStatus.WAITING


@pytest.mark.asyncio
async def test_same_idempotency_key_yields_one_job(queues):
    first = await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))
    second = await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))
    other = await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:1"))

    assert first.id == second.id
    assert other.id != first.id
    assert queues.metrics("discover").waiting == 2


@pytest.mark.asyncio
async def test_idempotency_holds_across_processes_sharing_redis(queues, redis_connection):
    api_side = QueueManager(redis_connection)

    first = await api_side.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))
    second = await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))

    assert second.id == first.id
    assert queues.metrics("discover").waiting == 1


@pytest.mark.asyncio
async def test_unreachable_redis_is_transient_and_releases_the_key(queues, monkeypatch):
    def refuse(*args, **kwargs):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(queues, "_put", refuse)
    with pytest.raises(TransientError):
        await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))
    monkeypatch.undo()

    # The key was released, so a retry really enqueues
    job = await queues.enqueue("discover", _payload(), JobOptions(idempotency_key="run-1:discover:0"))
    assert queues.get_job(job.id) is not None
    assert queues.metrics("discover").waiting == 1


# =============================================================================
# DISPATCH
# =============================================================================

@pytest.mark.asyncio
async def test_higher_priority_runs_first_fifo_among_equals(queues):
    seen = []

    async def handler(job):
        seen.append(job.payload.run_id)

    for run_id, priority in [("low", 1), ("high-a", 9), ("default", 5), ("high-b", 9)]:
        await queues.enqueue("discover", _payload(run_id), JobOptions(priority=priority))
    queues.register_worker("discover", handler, concurrency=1)
    await drain(queues)

    assert seen == ["high-a", "high-b", "default", "low"]


def test_workers_listen_to_every_high_band_first(redis_connection):
    queues = QueueManager(redis_connection)

    assert queues.listen_order(["discover", "enrich"]) == [
        "discover-high",
        "enrich-high",
        "discover",
        "enrich",
        "discover-low",
        "enrich-low",
    ]


def test_concurrency_is_the_worker_process_count(redis_connection):
    queues = QueueManager(redis_connection, default_concurrency=4)

    async def handler(job):
        return None

    queues.register_worker("discover", handler, concurrency=2)
    queues.register_worker("enrich", handler)

    assert queues.concurrency("discover") == 2
    assert queues.concurrency("enrich") == 4
    assert queues.concurrency("verify") == 4


@pytest.mark.asyncio
async def test_handler_runs_with_the_jobs_correlation_id(queues):
    seen = []

    async def handler(job):
        seen.append(get_correlation_id())

    queues.register_worker("discover", handler)
    await queues.enqueue("discover", _payload("abc"))
    await drain(queues)

    assert seen == ["cid-abc"]
    assert queues.metrics("discover").completed == 1


@pytest.mark.asyncio
async def test_delayed_job_waits(queues):
    seen = []

    async def handler(job):
        seen.append(job.id)

    queues.register_worker("discover", handler)
    job = await queues.enqueue("discover", _payload(), JobOptions(delay=2))
    assert job.status == JobStatus.DELAYED
    assert queues.metrics("discover").delayed == 1

    await work_once(queues)
    assert seen == []

    await drain(queues)
    assert seen == [job.id]
    assert queues.metrics("discover").delayed == 0


# =============================================================================
# RETRIES AND DEAD LETTERS
# =============================================================================

@pytest.mark.asyncio
async def test_transient_failure_is_retried(queues):
    calls = []

    async def handler(job):
        calls.append(job.attempts)
        if job.attempts == 1:
            raise TransientError("source search unavailable")

    queues.register_worker("discover", handler)
    job = await queues.enqueue("discover", _payload())
    await drain(queues)

    assert calls == [1, 2]
    assert queues.get_job(job.id).status == JobStatus.COMPLETED
    metrics = queues.metrics("discover")
    assert metrics.failed == 1
    assert metrics.completed == 1
    assert metrics.dead_lettered == 0


@pytest.mark.asyncio
async def test_exhausted_job_is_dead_lettered_and_hook_called(queues):
    hooked = []

    async def handler(job):
        raise RuntimeError("boom")

    async def on_dead_letter(job, error):
        hooked.append((job.id, job.attempts, str(error)))

    queues.register_worker("discover", handler)
    queues.set_dead_letter_hook(on_dead_letter)
    job = await queues.enqueue(
        "discover",
        _payload(),
        JobOptions(retry=RetryPolicy(max_attempts=3, backoff=BackoffType.FIXED, base_delay=0.0)),
    )
    await drain(queues)

    stored = queues.get_job(job.id)
    assert stored.attempts == 3
    assert stored.status == JobStatus.DEAD_LETTERED
    assert stored.last_error == "RuntimeError: boom"
    assert hooked == [(job.id, 3, "boom")]

    dead = queues.dead_letters("discover")
    assert [entry.job.id for entry in dead] == [job.id]
    assert dead[0].error == "RuntimeError: boom"
    assert queues.metrics("discover").failed == 3


@pytest.mark.asyncio
async def test_non_retryable_error_skips_retries(queues):
    calls = []

    async def handler(job):
        calls.append(job.attempts)
        raise ValidationFailure("run question is empty")

    queues.register_worker("discover", handler)
    job = await queues.enqueue("discover", _payload())
    await drain(queues)

    assert calls == [1]
    assert queues.get_job(job.id).status == JobStatus.DEAD_LETTERED
    assert queues.metrics("discover").dead_lettered == 1


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(base_delay=2.0, max_delay=10.0, jitter=0.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_jitter_only_ever_adds_delay():
    policy = RetryPolicy(max_attempts=4, base_delay=2.0, max_delay=5.0, jitter=0.5)

    assert policy.intervals(rand=lambda: 0.0) == [2.0, 4.0, 5.0]
    assert policy.intervals(rand=lambda: 1.0) == [3.0, 6.0, 7.5]


@pytest.mark.asyncio
async def test_retry_intervals_are_handed_to_rq(queues, redis_connection):
    policy = RetryPolicy(max_attempts=4, base_delay=2.0, max_delay=5.0, jitter=0.0)

    job = await queues.enqueue("discover", _payload(), JobOptions(retry=policy))
    single = await queues.enqueue("discover", _payload(), JobOptions(retry=RetryPolicy(max_attempts=1)))

    rq_job = RQJob.fetch(job.id, connection=redis_connection)
    assert rq_job.retries_left == 3
    assert rq_job.retry_intervals == [2.0, 4.0, 5.0]
    assert RQJob.fetch(single.id, connection=redis_connection).retries_left is None


# =============================================================================
# PAUSE / RESUME
# =============================================================================

@pytest.mark.asyncio
async def test_paused_queue_holds_jobs_until_resumed(queues):
    seen = []

    async def handler(job):
        seen.append(job.payload.run_id)

    queues.register_worker("discover", handler)
    await queues.enqueue("discover", _payload("before"))
    queues.pause("discover")
    await queues.enqueue("discover", _payload("during"))
    await work_once(queues)

    metrics = queues.metrics("discover")
    assert seen == []
    assert metrics.paused
    assert metrics.waiting == 2

    queues.resume("discover")
    await drain(queues)
    assert seen == ["before", "during"]
    assert not queues.metrics("discover").paused


@pytest.mark.asyncio
async def test_scheduled_job_is_parked_on_a_paused_queue(queues):
    seen = []

    async def handler(job):
        seen.append(job.id)

    queues.register_worker("discover", handler)
    job = await queues.enqueue("discover", _payload(), JobOptions(delay=1))
    queues.pause("discover")

    # Comes due while paused
    await _work_until(queues, lambda: queues.metrics("discover").delayed == 0)
    assert seen == []
    assert queues.metrics("discover").waiting == 1

    queues.resume("discover")
    await drain(queues)
    assert seen == [job.id]
    assert queues.metrics("discover").completed == 1


# =============================================================================
# JOB RECORDS
# =============================================================================

@pytest.mark.asyncio
async def test_racing_job_records_land_on_one_row(session_factory):
    recorder = JobRecorder(session_factory)
    job = Job(queue="discover", payload=_payload(), id="job-1", status=JobStatus.ACTIVE, attempts=1, max_attempts=2)

    await asyncio.gather(*(recorder(job) for _ in range(5)))
    job.status = JobStatus.COMPLETED
    await recorder(job)

    async with session_factory() as session:
        rows = (await session.execute(select(JobRecord))).scalars().all()
    assert [(row.id, row.status, row.attempts) for row in rows] == [("job-1", "completed", 1)]
    assert rows[0].run_id == "run-1"
