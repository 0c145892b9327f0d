"""
Pipeline Orchestrator - drives runs through the stage queues.

WHAT THIS DOES:
Owns the run lifecycle. It is the only writer of `run.status` and
`run.decision_log`.

    submit_run()      validate, honour the idempotency key, create the run
                      PENDING, enqueue DISCOVER
    handle_stage()    worker for every stage queue:
                        1. load the run; ignore stale or duplicate deliveries,
                           re-enqueue the hand-off of a stage whose result
                           was committed but whose next job never got queued
                        2. StageRunner does the stage and returns a Decision
                        3. transition(stage, decision) → next status
                        4. append the decision log entry, commit
                        5. enqueue the next stage's job (or a signal scan
                           after PUBLISHED)
    on_dead_letter()  a stage job that keeps failing marks its run FAILED
    handle_signals()  signal scan over a published run's sources

ORDERING:
Within a run stages are strictly sequential: the next job is only enqueued
after the current stage's result is committed. Across runs there is no
ordering at all.

USAGE:
    orchestrator = PipelineOrchestrator(session_factory, queues, runner)
    orchestrator.register_workers()          # in the worker process
    run, created = await orchestrator.submit_run(RunSubmission(question="..."))
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustbrief.models.run import AnalysisRun
from trustbrief.models.schemas import RunSubmission
from trustbrief.observability import bind_correlation_id, new_correlation_id
from trustbrief.services.gateway import CostLedger
from trustbrief.services.pipeline.decisions import (
    AdversarialResynthesis,
    Decision,
    DeepenExtraction,
    Fail,
    Reject,
    Rediscover,
    decision_from_entry,
    log_entry,
    transition,
)
from trustbrief.services.pipeline.stages import StageRunner
from trustbrief.services.pipeline.states import STAGE_ORDER, RunStatus, stage_for_queue
from trustbrief.services.queue import (
    DiscoverPayload,
    ExtractPayload,
    Job,
    JobOptions,
    QueueManager,
    SignalScanPayload,
    SynthesizePayload,
    validate_payload,
)
from trustbrief.services.run_store import RunStore
from trustbrief.services.signals import SignalDetector

logger = logging.getLogger(__name__)

SIGNALS_QUEUE = "signals"


def next_payload(next_status: RunStatus, run: AnalysisRun, decision: Decision):
    """The job payload for the stage a decision leads to."""
    base = {"run_id": run.id, "correlation_id": run.correlation_id}
    if isinstance(decision, Rediscover):
        return DiscoverPayload(**base, broadened=True, terms=list(decision.terms))
    if isinstance(decision, DeepenExtraction):
        return ExtractPayload(**base, deep_source_ids=list(decision.source_ids))
    if isinstance(decision, AdversarialResynthesis):
        return SynthesizePayload(**base, adversarial=True, focus=list(decision.focus))
    return validate_payload(next_status.queue, base)


class PipelineOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queues: QueueManager,
        runner: StageRunner,
        ledger: Optional[CostLedger] = None,
        signal_detector: Optional[SignalDetector] = None,
        default_max_sources: int = 12,
    ):
        self.session_factory = session_factory
        self.queues = queues
        self.runner = runner
        self.ledger = ledger
        self.signal_detector = signal_detector or SignalDetector()
        self.default_max_sources = default_max_sources

    def register_workers(self, concurrency: Optional[int] = None) -> None:
        for stage in STAGE_ORDER:
            self.queues.register_worker(stage.queue, self._stage_worker(stage), concurrency)
        self.queues.register_worker(SIGNALS_QUEUE, self.handle_signals, concurrency)
        self.queues.set_dead_letter_hook(self.on_dead_letter)

    def _stage_worker(self, stage: RunStatus):
        async def worker(job: Job) -> None:
            await self.handle_stage(stage, job)

        return worker

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit_run(
        self,
        submission: RunSubmission,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> tuple[AnalysisRun, bool]:
        """
        Create a run and queue its first stage. Returns (run, created).

        A repeated idempotency key returns the original run and queues nothing.
        """
        correlation_id = correlation_id or new_correlation_id()
        async with self.session_factory() as session:
            store = RunStore(session)
            run, created = await store.create_run(
                AnalysisRun(
                    correlation_id=correlation_id,
                    idempotency_key=idempotency_key,
                    question=submission.question.strip(),
                    mode=submission.mode,
                    providers=list(submission.providers),
                    max_sources=submission.max_sources or self.default_max_sources,
                    status=RunStatus.PENDING.value,
                    decision_log=[],
                )
            )

        if not created:
            logger.info(f"Duplicate submission (key {idempotency_key}); returning run {run.id}")
            return run, False

        with bind_correlation_id(run.correlation_id):
            await self.queues.enqueue(
                RunStatus.DISCOVER.queue,
                DiscoverPayload(run_id=run.id, correlation_id=run.correlation_id),
                JobOptions(idempotency_key=f"{run.id}:discover:0"),
            )
            logger.info(f"Run {run.id} submitted: '{run.question[:60]}' ({run.mode})")
        return run, True

    # -------------------------------------------------------------------------
    # Stage workers
    # -------------------------------------------------------------------------

    async def handle_stage(self, stage: RunStatus, job: Job) -> None:
        payload = job.payload
        async with self.session_factory() as session:
            store = RunStore(session)
            run = await store.get_run(payload.run_id)
            current = RunStatus(run.status)

            committed = self._committed_decision(run, stage, current, payload)
            first_discover = stage == RunStatus.DISCOVER and current == RunStatus.PENDING
            if committed is not None:
                # This stage's result is already in the log; only its hand-off may be missing
                logger.warning(
                    f"{stage.value} job {job.id[:8]} for run {run.id[:8]} redelivered after commit; "
                    f"re-enqueueing the hand-off to {current.value}"
                )
                await self._hand_off(run, current, committed)
                return
            if current.is_terminal or (current != stage and not first_discover):
                logger.info(f"Ignoring stale {stage.value} job {job.id[:8]} for run {run.id[:8]} in {current.value}")
                return

            run.status = stage.value
            if job.attempts > 1:
                run.retry_count += 1

            outcome = await self.runner.run(stage, store, run, payload)
            next_status = transition(stage, outcome.decision)

            run.decision_log = [
                *(run.decision_log or []),
                log_entry(stage, outcome.decision, next_status, **outcome.details),
            ]
            run.status = next_status.value
            if self.ledger is not None:
                run.total_cost_usd = round(self.ledger.total_for(run.correlation_id), 6)
            if next_status.is_terminal:
                run.completed_at = datetime.utcnow()
                if isinstance(outcome.decision, (Reject, Fail)):
                    run.last_error = outcome.decision.reason
            await session.commit()

        await self._hand_off(run, next_status, outcome.decision)

    @staticmethod
    def _committed_decision(run: AnalysisRun, stage: RunStatus, current: RunStatus, payload) -> Optional[Decision]:
        """
        The decision this stage already committed for the run, when the job
        being delivered is the one that committed it. None otherwise.

        The last log entry must come from this stage and lead to the run's
        current status. For a stage that loops onto itself, the delivery of
        the follow-up job (which carries the loop's payload) is not a
        redelivery.
        """
        log = run.decision_log or []
        if not log:
            return None
        last = log[-1]
        if last["stage"] != stage.value or last["next_status"] != current.value:
            return None
        decision = decision_from_entry(last)
        if current == stage and payload == next_payload(current, run, decision):
            return None
        return decision

    async def _hand_off(self, run: AnalysisRun, next_status: RunStatus, decision: Decision) -> None:
        """Enqueue whatever follows a committed decision. Keys make a repeat a no-op."""
        if next_status == RunStatus.PUBLISHED:
            logger.info(f"Run {run.id[:8]} published (trust {run.trust_score})")
            await self.queues.enqueue(
                SIGNALS_QUEUE,
                SignalScanPayload(run_id=run.id, correlation_id=run.correlation_id, source_ids=list(run.source_ids)),
                JobOptions(idempotency_key=f"{run.id}:signals", priority=1),
            )
        elif next_status.is_terminal:
            logger.warning(f"Run {run.id[:8]} ended {next_status.value}: {run.last_error}")
        else:
            await self.queues.enqueue(
                next_status.queue,
                next_payload(next_status, run, decision),
                JobOptions(idempotency_key=f"{run.id}:{next_status.queue}:{len(run.decision_log)}"),
            )

    async def on_dead_letter(self, job: Job, error: BaseException) -> None:
        stage = stage_for_queue(job.queue)
        if stage is None:
            logger.error(f"{job.queue} job {job.id[:8]} for run {job.payload.run_id[:8]} dead-lettered: {job.last_error}")
            return

        async with self.session_factory() as session:
            store = RunStore(session)
            run = await store.get_run(job.payload.run_id)
            if RunStatus(run.status).is_terminal:
                return
            reason = f"{stage.value} job failed after {job.attempts} attempt(s): {job.last_error}"
            run.decision_log = [
                *(run.decision_log or []),
                log_entry(stage, Fail(reason), RunStatus.FAILED, job_id=job.id),
            ]
            run.status = RunStatus.FAILED.value
            run.last_error = reason
            # Retries of a stage that never succeeded were rolled back with it
            run.retry_count += job.attempts - 1
            run.completed_at = datetime.utcnow()
            if self.ledger is not None:
                run.total_cost_usd = round(self.ledger.total_for(run.correlation_id), 6)
            await session.commit()
        logger.error(f"Run {job.payload.run_id[:8]} FAILED: {reason}")

    async def handle_signals(self, job: Job) -> None:
        payload: SignalScanPayload = job.payload
        async with self.session_factory() as session:
            store = RunStore(session)
            sources = [s for s in await store.sources_for_run(payload.run_id) if s.id in set(payload.source_ids)]
            signals = self.signal_detector.detect(payload.run_id, sources)
            if signals:
                await store.save_signals(signals)
                await session.commit()
