"""
Citation Verifier Service.

WHAT THIS DOES:
Checks every [SRC-n] marker in the analysis against the source it points to.

WHY THIS MATTERS:
LLMs cite confidently. A citation can be:
1. Invented: [SRC-9] when only 5 sources were consumed
2. Real but wrong: the cited source says nothing of the kind
3. Misattributed: the statement is in the sources, just not in this one
4. Cherry-picked: the source says it, and also says the opposite

VERDICTS (per claim × cited source):
    supported            best sentence overlap ≥ 0.5
    partially_supported  best sentence overlap ≥ 0.3
    misattributed        another consumed source supports it (≥ 0.5) much better
    unsupported          none of the above
    hallucinated         marker points to no consumed source

EXAMPLE:
    Sources consumed: [SRC-1], [SRC-2]
    Claim: "Carbon taxes reduced emissions by 5% [SRC-1][SRC-7]"

    [SRC-1] → supported
    [SRC-7] → hallucinated   ← not one of the sources!

USAGE:
    verifier = CitationVerifier()
    report = verifier.verify(claims, sources)
    if report.hallucinated:
        logger.warning(f"Found hallucinated citations: {report.hallucinated}")
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.trust.claim_extractor import ExtractedClaim
from trustbrief.services.trust.evidence_binder import SourceText
from trustbrief.services.trust.lexical import content_terms, opposed, overlap, split_sentences

logger = logging.getLogger(__name__)

SUPPORTED = "supported"
PARTIALLY_SUPPORTED = "partially_supported"
UNSUPPORTED = "unsupported"
MISATTRIBUTED = "misattributed"
HALLUCINATED = "hallucinated"

SUPPORTED_OVERLAP = 0.5
PARTIAL_OVERLAP = 0.3
# Another source must beat the cited one by this margin to call it misattributed
MISATTRIBUTION_MARGIN = 0.2

VERDICT_CREDIT = {SUPPORTED: 1.0, PARTIALLY_SUPPORTED: 0.5}

ADJUDICATION_PROMPT = """You check whether a source supports a claim.

Answer with one verdict:
- "supported": the source states the claim
- "partially_supported": the source states part of it, or a weaker version
- "unsupported": the source does not state it

OUTPUT FORMAT (JSON):
{"verdict": "supported", "reason": "one sentence"}"""


@dataclass
class CitationCheck:
    claim_index: int
    source_index: int  # 1-based, as written in the marker
    source_id: Optional[str]
    verdict: str
    score: float
    cherry_picking: bool = False
    adjudicated: bool = False


@dataclass
class VerificationReport:
    checks: list[CitationCheck] = field(default_factory=list)

    @property
    def hallucinated(self) -> list[int]:
        return sorted({c.source_index for c in self.checks if c.verdict == HALLUCINATED})

    @property
    def integrity(self) -> float:
        """Share of citations that hold up (partial support counts half). 0 when nothing is cited."""
        if not self.checks:
            return 0.0
        return sum(VERDICT_CREDIT.get(c.verdict, 0.0) for c in self.checks) / len(self.checks)

    def for_claim(self, claim_index: int) -> list[CitationCheck]:
        return [c for c in self.checks if c.claim_index == claim_index]

    def has_valid_citation(self, claim_index: int) -> bool:
        return any(c.verdict != HALLUCINATED for c in self.for_claim(claim_index))


def best_sentence_overlap(claim: str, source_text: str) -> float:
    terms = content_terms(claim)
    best = 0.0
    for sentence in split_sentences(source_text):
        best = max(best, overlap(terms, content_terms(sentence.text)))
    return best


def is_cherry_picked(claim: str, source_text: str) -> bool:
    """Source has a sentence agreeing with the claim and another on the same point disagreeing."""
    terms = content_terms(claim)
    agrees = disagrees = False
    for sentence in split_sentences(source_text):
        if overlap(terms, content_terms(sentence.text)) < SUPPORTED_OVERLAP:
            continue
        if opposed(claim, sentence.text):
            disagrees = True
        else:
            agrees = True
    return agrees and disagrees


class CitationVerifier:
    """
    Verifies citations in the analysis against the consumed sources.

    Pipeline position:
    ClaimExtractor → [CitationVerifier] → EvidenceBinder → TrustScorer

    Runs right after extraction to catch invented citations early.
    """

    def __init__(self, gateway: Optional[CallGateway] = None, max_adjudications: int = 10):
        self.gateway = gateway
        self.max_adjudications = max_adjudications

    def verify(self, claims: list[ExtractedClaim], sources: list[SourceText]) -> VerificationReport:
        """
        Args:
            claims: extracted claims, each with its 1-based cited indices
            sources: consumed sources in [SRC-n] order (index 0 is SRC-1)
        """
        report = VerificationReport()
        for claim_index, claim in enumerate(claims):
            for source_index in claim.cited:
                report.checks.append(self._check(claim_index, claim.text, source_index, sources))

        if report.hallucinated:
            logger.warning(
                f"Detected {len(report.hallucinated)} hallucinated citation(s): "
                f"{[f'SRC-{i}' for i in report.hallucinated]}"
            )
        else:
            logger.info(f"All {len(report.checks)} citations point at consumed sources")
        return report

    def _check(self, claim_index: int, claim: str, source_index: int, sources: list[SourceText]) -> CitationCheck:
        if not 1 <= source_index <= len(sources):
            return CitationCheck(claim_index, source_index, None, HALLUCINATED, 0.0)

        cited = sources[source_index - 1]
        score = best_sentence_overlap(claim, cited.text)
        if score >= SUPPORTED_OVERLAP:
            verdict = SUPPORTED
        elif score >= PARTIAL_OVERLAP:
            verdict = PARTIALLY_SUPPORTED
        else:
            others = [best_sentence_overlap(claim, s.text) for s in sources if s.id != cited.id]
            best_other = max(others, default=0.0)
            if best_other >= SUPPORTED_OVERLAP and best_other - score >= MISATTRIBUTION_MARGIN:
                verdict = MISATTRIBUTED
            else:
                verdict = UNSUPPORTED

        return CitationCheck(
            claim_index,
            source_index,
            cited.id,
            verdict,
            round(score, 4),
            cherry_picking=is_cherry_picked(claim, cited.text),
        )

    async def adjudicate(
        self,
        report: VerificationReport,
        claims: list[ExtractedClaim],
        sources: list[SourceText],
        correlation_id: Optional[str] = None,
    ) -> VerificationReport:
        """
        Ask the LLM about borderline verdicts (partially_supported, unsupported).

        Hallucinated and misattributed verdicts are structural and never
        revisited. If no provider is available the lexical verdicts stand.
        """
        if self.gateway is None:
            return report

        borderline = [c for c in report.checks if c.verdict in (PARTIALLY_SUPPORTED, UNSUPPORTED)]
        for check in borderline[: self.max_adjudications]:
            source = sources[check.source_index - 1]
            try:
                response = await self.gateway.call(
                    LLMRequest.simple(
                        ADJUDICATION_PROMPT,
                        f"CLAIM:\n{claims[check.claim_index].text}\n\nSOURCE:\n{source.text}",
                        json_mode=True,
                        temperature=0.0,
                        max_tokens=300,
                        purpose="citation_check",
                        correlation_id=correlation_id,
                    )
                )
            except AllProvidersFailedError as e:
                logger.warning(f"Citation adjudication unavailable, keeping lexical verdicts: {e}")
                break

            try:
                verdict = response.json().get("verdict")
            except ValueError:
                continue
            if verdict in (SUPPORTED, PARTIALLY_SUPPORTED, UNSUPPORTED) and verdict != check.verdict:
                logger.info(f"Citation SRC-{check.source_index} adjudicated {check.verdict} → {verdict}")
                check.verdict = verdict
                check.adjudicated = True
        return report
