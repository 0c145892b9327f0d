"""
Trust Scorer.

WHAT THIS DOES:
Computes a trust score (0-1) for each claim and aggregates run-level metrics.
Trust is NOT the model's confidence in its own words. It is built only from
the evidence the binder found, the quality of the sources that evidence came
from, whether the claim cites anything, and whether anything contradicts it.

FORMULA:
    base  = 0.45 × evidence_strength + 0.35 × source_quality + 0.20 × cited
    trust = PRIOR + (1 - PRIOR) × base
    trust = trust × 0.4                      if the claim has a contradiction

Where:
- evidence_strength = mean span strength × coverage factor
  (coverage ramps from 0.7 to 1.0 as the span count reaches MIN_SPANS_FOR_FULL_CREDIT)
- source_quality = mean quality score of the sources the spans come from
- cited = 1 if the claim carries at least one valid citation, else 0
- PRIOR keeps every score strictly positive, so a contradiction always
  lowers it (multiplying 0 by 0.4 would change nothing)

EXAMPLE:
    2 spans (strength 0.9, 0.8), sources of quality 0.7 and 0.8, cited, no contradiction
    evidence_strength = 0.85 × 1.0 = 0.85
    base  = 0.45 × 0.85 + 0.35 × 0.75 + 0.20 × 1 = 0.845
    trust = 0.05 + 0.95 × 0.845 = 0.853

Everything in this module is a pure function of its arguments.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

EVIDENCE_WEIGHT = 0.45
QUALITY_WEIGHT = 0.35
CITATION_WEIGHT = 0.20
PRIOR = 0.05
CONTRADICTION_FACTOR = 0.4
MIN_SPANS_FOR_FULL_CREDIT = 2


@dataclass(frozen=True)
class TrustInputs:
    evidence_strength: float
    source_quality: float
    cited: bool
    has_contradiction: bool


@dataclass(frozen=True)
class ClaimScore:
    """Trust for one claim, with the inputs kept for explanation."""
    trust: float
    inputs: TrustInputs
    evidence_count: int


@dataclass(frozen=True)
class RunMetrics:
    trust_score: float
    quality_score: float
    evidence_strength: float
    contradiction_rate: float
    claim_count: int
    evidence_count: int


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def compute_trust(inputs: TrustInputs) -> float:
    """
    Claim-level trust in [0, 1].

    Non-decreasing in evidence_strength and source_quality; a contradiction
    always lowers the result.
    """
    base = (
        EVIDENCE_WEIGHT * _clamp(inputs.evidence_strength)
        + QUALITY_WEIGHT * _clamp(inputs.source_quality)
        + CITATION_WEIGHT * (1.0 if inputs.cited else 0.0)
    )
    trust = PRIOR + (1.0 - PRIOR) * base
    if inputs.has_contradiction:
        trust *= CONTRADICTION_FACTOR
    return _clamp(trust)


def aggregate_evidence_strength(strengths: list[float], min_spans: int = MIN_SPANS_FOR_FULL_CREDIT) -> float:
    """Mean span strength, discounted when there are fewer spans than min_spans."""
    if not strengths:
        return 0.0
    mean = sum(strengths) / len(strengths)
    coverage = min(len(strengths) / max(min_spans, 1), 1.0)
    return _clamp(mean * (0.7 + 0.3 * coverage))


def aggregate_source_quality(qualities: Iterable[float]) -> float:
    values = [q for q in qualities if q is not None]
    if not values:
        return 0.0
    return _clamp(sum(values) / len(values))


def score_claim(
    span_strengths: list[float],
    source_qualities: list[float],
    cited: bool,
    has_contradiction: bool,
) -> ClaimScore:
    """Build the inputs from raw evidence and score them."""
    inputs = TrustInputs(
        evidence_strength=aggregate_evidence_strength(span_strengths),
        source_quality=aggregate_source_quality(source_qualities),
        cited=cited,
        has_contradiction=has_contradiction,
    )
    return ClaimScore(trust=compute_trust(inputs), inputs=inputs, evidence_count=len(span_strengths))


def score_run(claims: list[ClaimScore]) -> RunMetrics:
    """
    Run-level metrics are plain means over claims.

    A run with no claims has nothing to trust: every score is 0.
    """
    if not claims:
        logger.warning("Scoring a run with no claims")
        return RunMetrics(0.0, 0.0, 0.0, 0.0, 0, 0)

    n = len(claims)
    metrics = RunMetrics(
        trust_score=sum(c.trust for c in claims) / n,
        quality_score=sum(c.inputs.source_quality for c in claims) / n,
        evidence_strength=sum(c.inputs.evidence_strength for c in claims) / n,
        contradiction_rate=sum(1 for c in claims if c.inputs.has_contradiction) / n,
        claim_count=n,
        evidence_count=sum(c.evidence_count for c in claims),
    )
    logger.info(
        f"Run trust {metrics.trust_score:.2f} over {n} claims "
        f"(contradiction rate {metrics.contradiction_rate:.2f})"
    )
    return metrics
