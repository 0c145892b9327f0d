"""
Pydantic schemas for API request/response validation.

These define the shape of data that goes in and out of the HTTP API.
Internal job payloads have their own schemas in services/queue/payloads.py.

FLOW OVERVIEW:
==============
1. Client sends RunSubmission to POST /api/runs → RunAccepted (202)
2. Pipeline runs in the background, stage by stage
3. Client polls GET /api/runs/{id} → RunStatusResponse
4. Once PUBLISHED, GET /api/runs/{id}/claims → ClaimResponse[] with evidence
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# RUN SCHEMAS
# =============================================================================

class RunSubmission(BaseModel):
    """
    Request body for POST /api/runs.

    Example:
        POST /api/runs
        Idempotency-Key: 7f3c...
        {"question": "What are the economic impacts of carbon taxes?", "mode": "brief"}
    """
    question: str = Field(
        min_length=10,
        max_length=2000,
        description="The research question to analyse",
    )
    mode: Literal["brief", "council"] = Field(
        default="brief",
        description="brief = single synthesis, council = multi-perspective synthesis",
    )
    providers: list[str] = Field(
        default_factory=list,
        description="Source providers to search (empty = collaborator defaults)",
    )
    max_sources: int | None = Field(
        default=None,
        ge=1, le=50,
        description="Upper bound on sources consumed by synthesis",
    )


class RunAccepted(BaseModel):
    run_id: str
    correlation_id: str
    status: str = "PENDING"


class DecisionLogEntry(BaseModel):
    stage: str
    decision: str
    reason: str = ""
    next_status: str
    details: dict = Field(default_factory=dict)
    at: str


class RunStatusResponse(BaseModel):
    """
    Full view of a run.

    USED BY: GET /api/runs/{run_id}
    Metrics are None until VERIFY has run.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    correlation_id: str
    question: str
    mode: str
    status: str
    trust_score: float | None = None
    quality_score: float | None = None
    evidence_strength: float | None = None
    contradiction_rate: float | None = None
    citation_integrity: float | None = None
    claim_count: int = 0
    evidence_count: int = 0
    source_ids: list[str] = Field(default_factory=list)
    last_error: str | None = None
    total_cost_usd: float = 0.0
    decision_log: list[DecisionLogEntry] = Field(default_factory=list)
    rendered_output: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


# =============================================================================
# CLAIM / EVIDENCE SCHEMAS
# =============================================================================

class EvidenceSpanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source_id: str
    start_pos: int
    end_pos: int
    text: str
    relevance_score: float = Field(ge=0, le=1)
    strength_score: float = Field(ge=0, le=1)
    evidence_type: str


class ClaimResponse(BaseModel):
    """
    A claim with the evidence that supports it.

    USED BY: GET /api/runs/{run_id}/claims
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    text: str
    claim_type: str
    category: str
    confidence: float
    trust_score: float | None = None
    has_contradiction: bool
    verification_status: str
    cited_source_ids: list[str] = Field(default_factory=list)
    evidence: list[EvidenceSpanResponse] = Field(default_factory=list)


# =============================================================================
# QUEUE / SIGNAL / ERROR SCHEMAS
# =============================================================================

class QueueMetricsResponse(BaseModel):
    queue: str
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    dead_lettered: int
    paused: bool


class SignalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    run_id: str
    signal_type: str
    topic: str
    title: str
    summary: str
    source_ids: list[str]
    priority_score: float


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""
    code: str
    message: str
    correlation_id: str | None = None
    reasons: list[str] = Field(default_factory=list)
