"""
SQLAlchemy model for the sources table.

Papers and articles returned by the source-search collaborator for a run.
Content fields are written once at DISCOVER; ENRICH fills the scores and
EXTRACT fills `extraction`.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from trustbrief.database import Base


class Source(Base):
    __tablename__ = "sources"
    __table_args__ = (UniqueConstraint("run_id", "provider", "external_id", name="uq_source_per_run"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id: Mapped[str] = mapped_column(ForeignKey("analysis_runs.id"), index=True)

    provider: Mapped[str] = mapped_column(String(50))
    external_id: Mapped[str] = mapped_column(String(255))
    doi: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    title: Mapped[str] = mapped_column(Text)
    abstract: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    full_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    citation_count: Mapped[int] = mapped_column(Integer, default=0)
    open_access: Mapped[bool] = mapped_column(Boolean, default=False)

    # 0-1, set by ENRICH
    quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    novelty_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Normalised DOI, or title+year when there is no DOI
    identity_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, index=True)
    duplicate_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    selected: Mapped[bool] = mapped_column(Boolean, default=False)

    # {"findings": [...], "methods": str, "results": str}
    extraction: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    deep_extracted: Mapped[bool] = mapped_column(Boolean, default=False)

    raw: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def text(self) -> str:
        """Best available body: full text when fetched, else the abstract."""
        return self.full_text or self.abstract or ""

    def __repr__(self) -> str:
        return f"<Source {self.provider}:{self.external_id} title={self.title[:50]}...>"
