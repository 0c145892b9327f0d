"""
SQLAlchemy model for the analysis_runs table.

One row per submitted question. The pipeline orchestrator is the only writer
of `status` and `decision_log`; stage handlers write the metric columns.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from trustbrief.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class AnalysisRun(Base):
    """
    A single question's journey through the pipeline.

    `status` is one of services.pipeline.states.RunStatus. Terminal values
    (PUBLISHED, REJECTED, FAILED) are never left.
    """

    __tablename__ = "analysis_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    correlation_id: Mapped[str] = mapped_column(String(64), index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    # Request
    question: Mapped[str] = mapped_column(Text)
    mode: Mapped[str] = mapped_column(String(20), default="brief")
    providers: Mapped[list] = mapped_column(JSON, default=list)
    max_sources: Mapped[int] = mapped_column(Integer, default=12)

    status: Mapped[str] = mapped_column(String(20), index=True, default="PENDING")

    # Run-level metrics (filled by VERIFY)
    trust_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    evidence_strength: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    contradiction_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    citation_integrity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    claim_count: Mapped[int] = mapped_column(Integer, default=0)
    evidence_count: Mapped[int] = mapped_column(Integer, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    # Gate bookkeeping: each corrective loop runs at most once
    discover_attempts: Mapped[int] = mapped_column(Integer, default=0)
    deep_extraction_done: Mapped[bool] = mapped_column(Boolean, default=False)
    adversarial_passes: Mapped[int] = mapped_column(Integer, default=0)

    # Sources the synthesis consumed (set by SELECT), in [SRC-n] order
    source_ids: Mapped[list] = mapped_column(JSON, default=list)
    search_terms: Mapped[list] = mapped_column(JSON, default=list)
    analysis_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rendered_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Append-only. Always assign a new list, never mutate in place,
    # so SQLAlchemy sees the change.
    decision_log: Mapped[list] = mapped_column(JSON, default=list)

    total_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<AnalysisRun id={self.id} status={self.status}>"
