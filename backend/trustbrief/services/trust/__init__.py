# Evidence & trust: claim extraction, citation checks, evidence binding,
# contradiction detection and trust scoring
from trustbrief.services.trust.citation_verifier import CitationVerifier, VerificationReport
from trustbrief.services.trust.claim_extractor import ClaimExtractor, ExtractedClaim
from trustbrief.services.trust.contradictions import Contradiction, detect_contradictions
from trustbrief.services.trust.evidence_binder import BoundSpan, EvidenceBinder, SourceText
from trustbrief.services.trust.trust_scorer import ClaimScore, RunMetrics, TrustInputs, compute_trust, score_claim, score_run

__all__ = [
    "BoundSpan",
    "CitationVerifier",
    "ClaimExtractor",
    "ClaimScore",
    "Contradiction",
    "EvidenceBinder",
    "ExtractedClaim",
    "RunMetrics",
    "SourceText",
    "TrustInputs",
    "VerificationReport",
    "compute_trust",
    "detect_contradictions",
    "score_claim",
    "score_run",
]
