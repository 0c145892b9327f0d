"""
SQLAlchemy models for claims and the evidence spans that support them.

Claims are never deleted. A re-synthesis marks the previous generation
SUPERSEDED and extracts a new one. Evidence spans are immutable.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trustbrief.database import Base


class ClaimStatus:
    PENDING = "pending"
    VERIFIED = "verified"
    UNSUPPORTED = "unsupported"
    SUPERSEDED = "superseded"
    PUBLISHED = "published"


class Claim(Base):
    __tablename__ = "claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id: Mapped[str] = mapped_column(ForeignKey("analysis_runs.id"), index=True)

    text: Mapped[str] = mapped_column(Text)
    # Character offsets into the run's analysis_text (-1 when the LLM paraphrased)
    span_start: Mapped[int] = mapped_column(Integer, default=-1)
    span_end: Mapped[int] = mapped_column(Integer, default=-1)

    claim_type: Mapped[str] = mapped_column(String(20), default="factual")
    category: Mapped[str] = mapped_column(String(20), default="general")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    extracted_by: Mapped[str] = mapped_column(String(20), default="pattern")
    cited_source_ids: Mapped[list] = mapped_column(JSON, default=list)
    citation_verdicts: Mapped[list] = mapped_column(JSON, default=list)

    trust_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    evidence_count: Mapped[int] = mapped_column(Integer, default=0)
    has_contradiction: Mapped[bool] = mapped_column(Boolean, default=False)
    contradicted_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    verification_status: Mapped[str] = mapped_column(String(20), default=ClaimStatus.PENDING, index=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    evidence: Mapped[list["EvidenceSpan"]] = relationship(
        back_populates="claim", lazy="selectin", order_by="desc(EvidenceSpan.strength_score)"
    )

    def __repr__(self) -> str:
        return f"<Claim {self.id[:8]} trust={self.trust_score} text={self.text[:50]}...>"


class EvidenceSpan(Base):
    __tablename__ = "evidence_spans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    claim_id: Mapped[str] = mapped_column(ForeignKey("claims.id"), index=True)
    source_id: Mapped[str] = mapped_column(ForeignKey("sources.id"), index=True)

    # Offsets into Source.text
    start_pos: Mapped[int] = mapped_column(Integer)
    end_pos: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    context_before: Mapped[str] = mapped_column(Text, default="")
    context_after: Mapped[str] = mapped_column(Text, default="")

    relevance_score: Mapped[float] = mapped_column(Float)
    strength_score: Mapped[float] = mapped_column(Float)
    evidence_type: Mapped[str] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    claim: Mapped[Claim] = relationship(back_populates="evidence")
