"""
Tests for the trust scorer.

Trust is a pure function of evidence, source quality, citation and
contradiction, so these tests need no fixtures at all.
"""

import pytest

from trustbrief.services.trust.trust_scorer import (
    TrustInputs,
    aggregate_evidence_strength,
    compute_trust,
    score_claim,
    score_run,
)


def _inputs(evidence=0.5, quality=0.5, cited=True, contradicted=False) -> TrustInputs:
    return TrustInputs(evidence_strength=evidence, source_quality=quality, cited=cited, has_contradiction=contradicted)


# =============================================================================
# CLAIM TRUST
# =============================================================================

def test_documented_example():
    """2 spans (0.9, 0.8), qualities 0.7/0.8, cited → 0.853."""
    score = score_claim([0.9, 0.8], [0.7, 0.8], cited=True, has_contradiction=False)
    assert score.trust == pytest.approx(0.85275, abs=1e-4)
    assert score.evidence_count == 2


@pytest.mark.parametrize("evidence", [0.0, 0.3, 0.6, 1.0])
@pytest.mark.parametrize("quality", [0.0, 0.5, 1.0])
@pytest.mark.parametrize("cited", [True, False])
@pytest.mark.parametrize("contradicted", [True, False])
def test_trust_is_bounded(evidence, quality, cited, contradicted):
    trust = compute_trust(_inputs(evidence, quality, cited, contradicted))
    assert 0.0 <= trust <= 1.0


def test_trust_non_decreasing_in_evidence_and_quality():
    evidence_steps = [compute_trust(_inputs(evidence=e / 10)) for e in range(11)]
    quality_steps = [compute_trust(_inputs(quality=q / 10)) for q in range(11)]

    assert evidence_steps == sorted(evidence_steps)
    assert quality_steps == sorted(quality_steps)


def test_contradiction_always_lowers_trust():
    for evidence, quality, cited in [(0.0, 0.0, False), (0.5, 0.5, True), (1.0, 1.0, True)]:
        clean = compute_trust(_inputs(evidence, quality, cited, contradicted=False))
        contradicted = compute_trust(_inputs(evidence, quality, cited, contradicted=True))
        assert contradicted < clean


def test_uncited_claim_with_no_evidence_only_keeps_the_prior():
    score = score_claim([], [], cited=False, has_contradiction=False)
    assert score.trust == pytest.approx(0.05)
    assert score.evidence_count == 0


def test_out_of_range_inputs_are_clamped():
    assert compute_trust(_inputs(evidence=3.0, quality=-1.0)) == compute_trust(_inputs(evidence=1.0, quality=0.0))


# =============================================================================
# AGGREGATION
# =============================================================================

def test_single_span_is_discounted():
    assert aggregate_evidence_strength([1.0]) == pytest.approx(0.85)
    assert aggregate_evidence_strength([1.0, 1.0]) == pytest.approx(1.0)
    assert aggregate_evidence_strength([]) == 0.0


def test_run_metrics_are_means_over_claims():
    claims = [
        score_claim([0.9, 0.9], [0.8], cited=True, has_contradiction=False),
        score_claim([0.5], [0.4], cited=True, has_contradiction=True),
    ]

    metrics = score_run(claims)

    assert metrics.claim_count == 2
    assert metrics.evidence_count == 3
    assert metrics.contradiction_rate == pytest.approx(0.5)
    assert metrics.trust_score == pytest.approx((claims[0].trust + claims[1].trust) / 2)
    assert metrics.quality_score == pytest.approx(0.6)


def test_run_with_no_claims_scores_zero():
    metrics = score_run([])
    assert metrics.trust_score == 0.0
    assert metrics.claim_count == 0
