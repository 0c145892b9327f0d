"""
Run Store - storage and retrieval for runs, sources, claims and signals.

WHAT THIS DOES:
One place for the database reads and writes the stage handlers and the API
routes share:
- Runs: create (honouring the idempotency key), load
- Sources: save search results with per-run deduplication, load in
  [SRC-n] order
- Claims: supersede a generation, save a new one with its evidence spans
- Signals: save and list by priority

WHY THIS EXISTS:
- DRY: the API and every stage handler need the same queries
- Single responsibility: SQL in one place, stage logic elsewhere
- Testable: runs against any async SQLAlchemy session
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trustbrief.errors import RunNotFoundError
from trustbrief.models.claim import Claim, ClaimStatus, EvidenceSpan
from trustbrief.models.run import AnalysisRun
from trustbrief.models.signal import Signal
from trustbrief.models.source import Source
from trustbrief.services.source_search import SourceRecord

logger = logging.getLogger(__name__)


class RunStore:
    """
    Database operations for one session.

    The caller owns the transaction: methods flush but don't commit, except
    create_run(), which must commit to learn whether the idempotency key
    was free.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def create_run(self, run: AnalysisRun) -> tuple[AnalysisRun, bool]:
        """
        Insert a run. Returns (run, created).

        If another run already holds the idempotency key, that run is
        returned with created=False and nothing is written.
        """
        if run.idempotency_key:
            existing = await self.get_run_by_idempotency_key(run.idempotency_key)
            if existing is not None:
                return existing, False

        self.db.add(run)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent submission using the same key
            await self.db.rollback()
            existing = await self.get_run_by_idempotency_key(run.idempotency_key)
            if existing is None:
                raise
            return existing, False
        return run, True

    async def get_run(self, run_id: str) -> AnalysisRun:
        run = await self.db.get(AnalysisRun, run_id, populate_existing=True)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def get_run_by_idempotency_key(self, key: Optional[str]) -> Optional[AnalysisRun]:
        if not key:
            return None
        result = await self.db.execute(select(AnalysisRun).where(AnalysisRun.idempotency_key == key))
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------

    async def save_sources(self, run_id: str, records: list[SourceRecord]) -> int:
        """
        Save search results for a run, skipping ones it already has
        (same provider + external id). Returns the number of new sources.
        """
        result = await self.db.execute(
            select(Source.provider, Source.external_id).where(Source.run_id == run_id)
        )
        seen = {(provider, external_id) for provider, external_id in result.all()}

        saved_count = 0
        for record in records:
            key = (record.provider, record.external_id)
            if key in seen:
                continue
            seen.add(key)
            self.db.add(
                Source(
                    run_id=run_id,
                    provider=record.provider,
                    external_id=record.external_id,
                    doi=record.doi,
                    url=record.url,
                    title=record.title,
                    abstract=record.abstract,
                    year=record.year,
                    citation_count=record.citation_count,
                    open_access=record.open_access,
                    raw=record.raw,
                )
            )
            saved_count += 1

        await self.db.flush()
        if saved_count > 0:
            logger.info(f"Saved {saved_count} new sources for run {run_id[:8]}")
        return saved_count

    async def sources_for_run(self, run_id: str, include_duplicates: bool = True) -> list[Source]:
        query = select(Source).where(Source.run_id == run_id)
        if not include_duplicates:
            query = query.where(Source.duplicate_of.is_(None))
        result = await self.db.execute(query.order_by(Source.created_at, Source.id))
        return list(result.scalars().all())

    async def count_sources(self, run_id: str) -> int:
        return len(await self.sources_for_run(run_id))

    async def consumed_sources(self, run: AnalysisRun) -> list[Source]:
        """The run's selected sources in [SRC-n] order (run.source_ids order)."""
        if not run.source_ids:
            return []
        result = await self.db.execute(select(Source).where(Source.id.in_(run.source_ids)))
        by_id = {s.id: s for s in result.scalars().all()}
        return [by_id[source_id] for source_id in run.source_ids if source_id in by_id]

    # -------------------------------------------------------------------------
    # Claims
    # -------------------------------------------------------------------------

    async def supersede_claims(self, run_id: str) -> int:
        """Mark every live claim of the run superseded. Claims are never deleted."""
        result = await self.db.execute(
            update(Claim)
            .where(Claim.run_id == run_id, Claim.verification_status != ClaimStatus.SUPERSEDED)
            .values(verification_status=ClaimStatus.SUPERSEDED, superseded_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Superseded {result.rowcount} claims for run {run_id[:8]}")
        return result.rowcount or 0

    async def add_claim(self, claim: Claim, spans: list[EvidenceSpan]) -> Claim:
        claim.evidence = spans
        self.db.add(claim)
        await self.db.flush()
        return claim

    async def list_claims(self, run_id: str, include_superseded: bool = False) -> list[Claim]:
        query = select(Claim).where(Claim.run_id == run_id)
        if not include_superseded:
            query = query.where(Claim.verification_status != ClaimStatus.SUPERSEDED)
        result = await self.db.execute(
            query.order_by(Claim.created_at, Claim.span_start, Claim.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    async def save_signals(self, signals: list[Signal]) -> int:
        self.db.add_all(signals)
        await self.db.flush()
        return len(signals)

    async def top_signals(self, limit: int = 10, topic: Optional[str] = None) -> list[Signal]:
        query = select(Signal)
        if topic:
            query = query.where(Signal.topic == topic)
        result = await self.db.execute(query.order_by(Signal.priority_score.desc(), Signal.created_at.desc()).limit(limit))
        return list(result.scalars().all())
