"""
Queue Manager - Redis-backed (rq) job queues for the pipeline stages.

WHAT THIS DOES:
One named queue per pipeline stage (plus a signal-scan queue). Producers
enqueue validated payloads; rq workers (see trustbrief.worker) run them
through the handler registered for the queue, retrying with backoff and
dead-lettering what keeps failing.

HOW IT WORKS:
1. enqueue() validates the payload against the queue's variant, claims the
   idempotency key (SET NX EX) and puts an rq job on the queue's priority
   band, or schedules it when it has a delay
2. Every rq job calls tasks.run_job(), which hands it back to process()
   here on the worker's event loop with the correlation id bound
3. Failure:
   - retryable and attempts left → rq re-queues it after the interval drawn
     at enqueue time: base × 2^(attempt-1) (capped) plus jitter
   - otherwise → retries are cancelled, the on_dead_letter hook runs and rq
     files the job in the queue's FailedJobRegistry (the dead-letter list)
4. pause() parks waiting jobs on a hold list; resume() puts them back

IDEMPOTENCY:
Two enqueues with the same key inside the window yield one job. The key
maps to the job id in Redis, so it holds across API and worker processes.

USAGE:
    queues = QueueManager(redis.from_url(settings.redis_url))
    queues.register_worker("discover", handle_discover, concurrency=5)
    queues.set_dead_letter_hook(mark_run_failed)
    await queues.enqueue("discover", DiscoverPayload(run_id=..., correlation_id=...),
                         JobOptions(idempotency_key=f"{run_id}:discover"))
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob

from trustbrief.errors import QueueNotFoundError, TransientError, is_retryable
from trustbrief.observability import bind_correlation_id
from trustbrief.services.queue.connection import (
    DEFAULT_JOB_TIMEOUT,
    band_name,
    band_names,
    get_queue,
    listen_order,
)
from trustbrief.services.queue.jobs import (
    DEFAULT_PRIORITY,
    BackoffType,
    DeadLetterEntry,
    Job,
    JobOptions,
    JobStatus,
    QueueMetrics,
    RetryPolicy,
)
from trustbrief.services.queue.payloads import QUEUE_NAMES, validate_payload
from trustbrief.services.queue.tasks import run_job

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[None]]
DeadLetterHook = Callable[[Job, BaseException], Awaitable[None]]
JobRecorderFn = Callable[[Job], Awaitable[None]]

KEY_PREFIX = "trustbrief"

_RQ_STATUS = {
    "queued": JobStatus.WAITING,
    "deferred": JobStatus.DELAYED,
    "scheduled": JobStatus.DELAYED,
    "started": JobStatus.ACTIVE,
    "finished": JobStatus.COMPLETED,
    "failed": JobStatus.DEAD_LETTERED,
}


class QueueManager:
    def __init__(
        self,
        connection: redis.Redis,
        default_retry: Optional[RetryPolicy] = None,
        default_concurrency: int = 5,
        idempotency_window: int = 24 * 3600,
        job_timeout: int = DEFAULT_JOB_TIMEOUT,
        recorder: Optional[JobRecorderFn] = None,
    ):
        self.connection = connection
        self.default_retry = default_retry or RetryPolicy()
        self.default_concurrency = default_concurrency
        self.idempotency_window = idempotency_window
        self.recorder = recorder
        self.on_dead_letter: Optional[DeadLetterHook] = None

        self._bands: dict[str, dict[str, Queue]] = {
            name: {band: get_queue(band, connection, timeout=job_timeout) for band in band_names(name)}
            for name in QUEUE_NAMES
        }
        self._handlers: dict[str, Handler] = {}
        self._concurrency: dict[str, int] = {}

    def _queue_bands(self, queue_name: str) -> dict[str, Queue]:
        if queue_name not in self._bands:
            raise QueueNotFoundError(queue_name)
        return self._bands[queue_name]

    def _band(self, rq_name: str) -> Queue:
        for bands in self._bands.values():
            if rq_name in bands:
                return bands[rq_name]
        raise QueueNotFoundError(rq_name)

    @property
    def queue_names(self) -> list[str]:
        return list(self._bands)

    def listen_order(self, queue_names: Optional[list[str]] = None) -> list[str]:
        names = queue_names or self.queue_names
        for name in names:
            self._queue_bands(name)
        return listen_order(names)

    def set_dead_letter_hook(self, hook: DeadLetterHook) -> None:
        self.on_dead_letter = hook

    # -------------------------------------------------------------------------
    # Redis keys
    # -------------------------------------------------------------------------

    @staticmethod
    def _idempotency_key(key: str) -> str:
        return f"{KEY_PREFIX}:idempotency:{key}"

    @staticmethod
    def _paused_key(queue_name: str) -> str:
        return f"{KEY_PREFIX}:paused:{queue_name}"

    @staticmethod
    def _hold_key(queue_name: str) -> str:
        return f"{KEY_PREFIX}:held:{queue_name}"

    @staticmethod
    def _failed_key(queue_name: str) -> str:
        return f"{KEY_PREFIX}:failed:{queue_name}"

    def _claim(self, key: str, job_id: str) -> Optional[str]:
        """Claim key for job_id. Returns the id that already holds the key, or None if claimed now."""
        name = self._idempotency_key(key)
        if self.connection.set(name, job_id, nx=True, ex=self.idempotency_window):
            return None
        existing = self.connection.get(name)
        return existing.decode() if existing else job_id

    def is_paused(self, queue_name: str) -> bool:
        return bool(self.connection.exists(self._paused_key(queue_name)))

    # -------------------------------------------------------------------------
    # Producing
    # -------------------------------------------------------------------------

    async def enqueue(self, queue_name: str, payload: Any, options: Optional[JobOptions] = None) -> Job:
        """
        Validate and enqueue a job. Raises immediately on an unknown queue,
        malformed payload or invalid options; nothing is enqueued then.
        """
        bands = self._queue_bands(queue_name)
        options = options or JobOptions()
        parsed = validate_payload(queue_name, payload)
        retry = options.retry or self.default_retry

        job = Job(
            queue=queue_name,
            payload=parsed,
            id=str(uuid.uuid4()),
            priority=options.priority,
            idempotency_key=options.idempotency_key,
            status=JobStatus.DELAYED if options.delay > 0 else JobStatus.WAITING,
            max_attempts=retry.max_attempts,
            backoff=retry.backoff,
        )

        try:
            if options.idempotency_key:
                existing_id = self._claim(options.idempotency_key, job.id)
                if existing_id is not None:
                    logger.info(f"Duplicate enqueue on {queue_name} (key {options.idempotency_key}); returning job {existing_id}")
                    existing = self.get_job(existing_id)
                    if existing is not None:
                        return existing
                    # Claimed but not (yet) stored: hand back a reference, nothing is queued here
                    job.id = existing_id
                    return job
            try:
                self._put(bands[band_name(queue_name, job.priority)], job, retry, options.delay)
            except RedisError:
                if options.idempotency_key:
                    self.connection.delete(self._idempotency_key(options.idempotency_key))
                raise
        except RedisError as e:
            raise TransientError(f"Queue store unavailable: {e}") from e

        logger.debug(f"Enqueued {job!r} (priority {job.priority})")
        await self._record(job)
        return job

    def _put(self, queue: Queue, job: Job, retry: RetryPolicy, delay: float) -> None:
        spec = dict(
            args=(job.queue, job.payload.model_dump(mode="json")),
            job_id=job.id,
            retry=Retry(max=retry.max_attempts - 1, interval=retry.intervals()) if retry.max_attempts > 1 else None,
            result_ttl=self.idempotency_window,
            description=f"{job.queue} for run {job.payload.run_id}",
            meta={
                "run_id": job.payload.run_id,
                "correlation_id": job.payload.correlation_id,
                "priority": job.priority,
                "idempotency_key": job.idempotency_key,
                "max_attempts": job.max_attempts,
                "backoff": job.backoff.value,
                "attempts": 0,
            },
        )
        if delay > 0:
            queue.enqueue_in(timedelta(seconds=delay), run_job, *spec.pop("args"), **spec)
        elif self.is_paused(job.queue):
            rq_job = queue.create_job(run_job, **spec)
            rq_job.save()
            self.connection.rpush(self._hold_key(job.queue), job.id)
        else:
            queue.enqueue(run_job, *spec.pop("args"), **spec)

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            rq_job = RQJob.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None
        return self._view(rq_job)

    def _view(self, rq_job: RQJob) -> Job:
        queue_name, data = rq_job.args
        meta = rq_job.meta
        status = rq_job.get_status(refresh=False)
        return Job(
            queue=queue_name,
            payload=validate_payload(queue_name, data),
            id=rq_job.id,
            priority=meta.get("priority", DEFAULT_PRIORITY),
            idempotency_key=meta.get("idempotency_key"),
            status=_RQ_STATUS.get(getattr(status, "value", status), JobStatus.WAITING),
            attempts=meta.get("attempts", 0),
            max_attempts=meta.get("max_attempts", 1),
            backoff=BackoffType(meta.get("backoff", BackoffType.EXPONENTIAL.value)),
            last_error=meta.get("last_error"),
            created_at=rq_job.created_at,
        )

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    def register_worker(self, queue_name: str, handler: Handler, concurrency: Optional[int] = None) -> None:
        """
        Route queue_name's jobs to handler. concurrency is the number of
        worker processes started for the queue (each runs one job at a time).
        """
        self._queue_bands(queue_name)
        self._handlers[queue_name] = handler
        self._concurrency[queue_name] = concurrency or self.default_concurrency
        logger.info(f"Worker registered on {queue_name} (concurrency {self._concurrency[queue_name]})")

    def concurrency(self, queue_name: str) -> int:
        self._queue_bands(queue_name)
        return self._concurrency.get(queue_name, self.default_concurrency)

    async def process(self, queue_name: str, data: dict, rq_job: Optional[RQJob] = None) -> None:
        """
        Run one delivery of an rq job. Called by tasks.run_job on the worker's
        event loop; re-raises the handler's error so rq can retry or dead-letter.
        """
        handler = self._handlers.get(queue_name)
        if handler is None:
            raise QueueNotFoundError(queue_name)

        if rq_job is not None and self.is_paused(queue_name):
            # Scheduled jobs still land on a paused queue; park them until resume
            self.connection.rpush(self._hold_key(queue_name), rq_job.id)
            rq_job.meta["parked"] = True
            rq_job.save_meta()
            logger.info(f"Parked {queue_name}:{rq_job.id[:8]} while the queue is paused")
            return

        job = self._view(rq_job) if rq_job is not None else Job(
            queue=queue_name, payload=validate_payload(queue_name, data), id=str(uuid.uuid4())
        )
        job.status = JobStatus.ACTIVE
        if rq_job is not None and rq_job.retries_left is not None:
            job.attempts = job.max_attempts - rq_job.retries_left
        else:
            job.attempts = job.max_attempts
        if rq_job is not None:
            rq_job.meta["attempts"] = job.attempts
            rq_job.save_meta()

        with bind_correlation_id(job.payload.correlation_id):
            await self._record(job)
            try:
                await handler(job)
            except Exception as e:
                await self._handle_failure(job, rq_job, e)
                raise
            job.status = JobStatus.COMPLETED
            logger.info(f"Job {queue_name}:{job.id[:8]} completed (attempt {job.attempts})")
            await self._record(job)

    async def _handle_failure(self, job: Job, rq_job: Optional[RQJob], error: Exception) -> None:
        job.last_error = f"{type(error).__name__}: {error}"
        self.connection.incr(self._failed_key(job.queue))

        retryable = is_retryable(error)
        if rq_job is not None:
            if not retryable:
                # rq reads this off the same job object when it handles the failure
                rq_job.retries_left = 0
            rq_job.meta["last_error"] = job.last_error
            rq_job.save_meta()

        if retryable and job.attempts < job.max_attempts:
            logger.warning(
                f"Job {job.queue}:{job.id[:8]} failed (attempt {job.attempts}/{job.max_attempts}), "
                f"will be retried: {job.last_error}"
            )
            job.status = JobStatus.DELAYED
            await self._record(job)
            return

        job.status = JobStatus.DEAD_LETTERED
        logger.error(
            f"Job {job.queue}:{job.id[:8]} dead-lettered after {job.attempts} attempt(s): {job.last_error}",
            exc_info=error if not retryable else None,
        )
        await self._record(job)

        if self.on_dead_letter is not None:
            try:
                await self.on_dead_letter(job, error)
            except Exception:
                logger.exception(f"Dead-letter hook failed for job {job.id}")

    async def _record(self, job: Job) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder(job)
        except Exception as e:
            # Job bookkeeping is best-effort and must never fail a job
            logger.warning(f"Could not record job {job.id}: {e}")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def pause(self, queue_name: str) -> None:
        bands = self._queue_bands(queue_name)
        self.connection.set(self._paused_key(queue_name), 1)
        held = 0
        for queue in bands.values():
            for job_id in queue.get_job_ids():
                queue.remove(job_id)
                self.connection.rpush(self._hold_key(queue_name), job_id)
                held += 1
        logger.info(f"Queue {queue_name} paused ({held} waiting job(s) held)")

    def resume(self, queue_name: str) -> None:
        self._queue_bands(queue_name)
        self.connection.delete(self._paused_key(queue_name))
        released = 0
        while (raw_id := self.connection.lpop(self._hold_key(queue_name))) is not None:
            try:
                rq_job = RQJob.fetch(raw_id.decode(), connection=self.connection)
            except NoSuchJobError:
                continue
            queue = self._band(rq_job.origin)
            if rq_job.meta.pop("parked", False):
                queue.finished_job_registry.remove(rq_job)
                rq_job.save_meta()
            queue.enqueue_job(rq_job)
            released += 1
        logger.info(f"Queue {queue_name} resumed ({released} job(s) released)")

    def metrics(self, queue_name: str) -> QueueMetrics:
        bands = list(self._queue_bands(queue_name).values())
        failed = self.connection.get(self._failed_key(queue_name))
        return QueueMetrics(
            queue=queue_name,
            waiting=sum(q.count for q in bands) + self.connection.llen(self._hold_key(queue_name)),
            delayed=sum(q.scheduled_job_registry.count for q in bands),
            active=sum(q.started_job_registry.count for q in bands),
            completed=sum(q.finished_job_registry.count for q in bands),
            failed=int(failed or 0),
            dead_lettered=sum(q.failed_job_registry.count for q in bands),
            paused=self.is_paused(queue_name),
        )

    def all_metrics(self) -> list[QueueMetrics]:
        return [self.metrics(name) for name in self._bands]

    def dead_letters(self, queue_name: str) -> list[DeadLetterEntry]:
        entries = []
        for queue in self._queue_bands(queue_name).values():
            for job_id in queue.failed_job_registry.get_job_ids():
                try:
                    rq_job = RQJob.fetch(job_id, connection=self.connection)
                except NoSuchJobError:
                    continue
                job = self._view(rq_job)
                entries.append(
                    DeadLetterEntry(job=job, error=job.last_error or "", failed_at=rq_job.ended_at or rq_job.created_at)
                )
        return sorted(entries, key=lambda entry: entry.failed_at)

    def is_idle(self) -> bool:
        """True when no queue has waiting, held, delayed or running jobs."""
        for name, bands in self._bands.items():
            if self.connection.llen(self._hold_key(name)):
                return False
            for queue in bands.values():
                if queue.count or queue.scheduled_job_registry.count or queue.started_job_registry.count:
                    return False
        return True
