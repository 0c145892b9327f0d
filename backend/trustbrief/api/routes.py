"""
API Routes - submit runs, poll them, read their claims, operate the queues.

ENDPOINTS:
- POST /api/runs                      → Submit a question (202, runs in the background)
- GET  /api/runs/{run_id}             → Status, metrics, decision log, rendered brief
- GET  /api/runs/{run_id}/claims      → Claims with their evidence spans
- GET  /api/queues                    → Metrics per queue
- POST /api/queues/{name}/pause       → Stop dispatching a queue
- POST /api/queues/{name}/resume      → Restart it
- GET  /api/signals                   → Top signals by priority

FLOW:
1. POST /api/runs with your question (optionally an Idempotency-Key header)
2. Poll GET /api/runs/{run_id} until status is PUBLISHED, REJECTED or FAILED
3. GET /api/runs/{run_id}/claims for the verified claims and their evidence
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from trustbrief.models.schemas import (
    ClaimResponse,
    QueueMetricsResponse,
    RunAccepted,
    RunStatusResponse,
    RunSubmission,
    SignalResponse,
)
from trustbrief.observability import get_correlation_id
from trustbrief.services.factory import Services
from trustbrief.services.run_store import RunStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


def get_services(request: Request) -> Services:
    """The wired services built at startup (see main.lifespan)."""
    return request.app.state.services


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency that yields a database session."""
    async with request.app.state.session_factory() as session:
        yield session


# =============================================================================
# RUNS
# =============================================================================

@router.post("/runs", response_model=RunAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_run(
    submission: RunSubmission,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
) -> RunAccepted:
    """
    Submit a question for analysis.

    The run is created PENDING and DISCOVER is queued; the pipeline runs in
    the background. Re-sending the same Idempotency-Key returns the original
    run instead of starting a new one.

    Example:
        POST /api/runs
        {"question": "What are the economic impacts of carbon taxes?"}

        202 {"run_id": "...", "correlation_id": "...", "status": "PENDING"}
    """
    run, created = await services.orchestrator.submit_run(
        submission,
        idempotency_key=idempotency_key,
        correlation_id=get_correlation_id(),
    )
    if created:
        logger.info(f"Accepted run {run.id}")
    return RunAccepted(run_id=run.id, correlation_id=run.correlation_id, status=run.status)


@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)) -> RunStatusResponse:
    run = await RunStore(db).get_run(run_id)
    return RunStatusResponse.model_validate(run)


@router.get("/runs/{run_id}/claims", response_model=list[ClaimResponse])
async def get_run_claims(
    run_id: str,
    include_superseded: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> list[ClaimResponse]:
    store = RunStore(db)
    await store.get_run(run_id)
    claims = await store.list_claims(run_id, include_superseded=include_superseded)
    return [ClaimResponse.model_validate(c) for c in claims]


# =============================================================================
# QUEUES
# =============================================================================

@router.get("/queues", response_model=list[QueueMetricsResponse])
async def list_queues(services: Services = Depends(get_services)) -> list[QueueMetricsResponse]:
    return [QueueMetricsResponse(**vars(m)) for m in services.queues.all_metrics()]


@router.post("/queues/{name}/pause", response_model=QueueMetricsResponse)
async def pause_queue(name: str, services: Services = Depends(get_services)) -> QueueMetricsResponse:
    services.queues.pause(name)
    return QueueMetricsResponse(**vars(services.queues.metrics(name)))


@router.post("/queues/{name}/resume", response_model=QueueMetricsResponse)
async def resume_queue(name: str, services: Services = Depends(get_services)) -> QueueMetricsResponse:
    services.queues.resume(name)
    return QueueMetricsResponse(**vars(services.queues.metrics(name)))


# =============================================================================
# SIGNALS
# =============================================================================

@router.get("/signals", response_model=list[SignalResponse])
async def list_signals(
    limit: int = Query(default=10, ge=1, le=100),
    topic: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> list[SignalResponse]:
    signals = await RunStore(db).top_signals(limit=limit, topic=topic)
    return [SignalResponse.model_validate(s) for s in signals]
