"""
Analysis Synthesizer.

WHAT THIS DOES:
Takes the question + the selected sources (with their extractions) and
writes a cross-source analysis in which every factual statement carries an
inline [SRC-n] citation.

HOW IT WORKS:
1. Sources are numbered in selection order: the first selected source is [SRC-1]
2. Each source is formatted with its title, year, extracted findings and text
3. The LLM writes the analysis, citing only those numbers
4. council mode runs several perspective analysts first (see council.py)
5. adversarial mode rewrites the analysis with weak claims challenged:
   each flagged claim must be backed by a quote-level citation or dropped

CITATION FORMAT:
We use [SRC-n] because:
- Easy to parse with regex: \\[SRC-\\d+\\]
- Stable within a run (selection order never changes after SELECT)
- Provider-neutral

WHAT THIS SERVICE DOESN'T DO (trust chain's job):
- Extract individual claims ← ClaimExtractor
- Check citations point at real sources ← CitationVerifier
- Find the supporting text ← EvidenceBinder
- Score how far to believe each claim ← TrustScorer

USAGE:
    synthesizer = Synthesizer(gateway)
    text = await synthesizer.synthesize(question, sources, mode="brief")
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from trustbrief.services.gateway import CallGateway, LLMRequest

logger = logging.getLogger(__name__)

MAX_SOURCE_CHARS = 3000

SYSTEM_PROMPT = """You are a research analyst who writes decision-ready, evidence-based analyses.

CRITICAL RULES:
1. Use ONLY the provided sources. Do not use outside knowledge.
2. For EVERY factual statement, cite the source using [SRC-n] format.
3. Prefer the sources' own wording and figures; quote numbers exactly.
4. If the sources conflict, say so and cite both sides.
5. If the sources don't support a clear answer, say so.

CITATION FORMAT:
- Use [SRC-n] immediately after each statement, before the full stop
- Example: "Carbon taxes reduced emissions by 5 percent [SRC-1]."
- Multiple sources: "...shown in several studies [SRC-1][SRC-3]."

STRUCTURE:
1. Direct answer to the question
2. Supporting evidence with citations
3. Caveats and limitations"""

ADVERSARIAL_PROMPT = """You are a skeptical reviewer revising a research analysis.

The claims listed under CHALLENGED CLAIMS were found weakly supported or contradicted by the sources.

RULES:
1. Rewrite the analysis using ONLY the provided sources.
2. For each challenged claim: keep it only if a source states it directly, and cite that source with [SRC-n]; otherwise remove it or state the disagreement between sources explicitly.
3. Every factual statement must carry an [SRC-n] citation.
4. Do not introduce new claims that the sources do not state."""


@dataclass
class SynthesisSource:
    """One selected source as the synthesizer sees it."""
    index: int  # n in [SRC-n]
    title: str
    year: Optional[int]
    text: str
    findings: list[str] = field(default_factory=list)


def format_sources(sources: list[SynthesisSource]) -> str:
    """
    Format sources into a context string for the prompt.

    [SRC-1] Effect of carbon taxes on emissions (2021)
    Findings:
    - Emissions fell 5 percent after introduction
    Text: ...
    """
    blocks = []
    for source in sources:
        findings = "\n".join(f"- {f}" for f in source.findings) or "- (none extracted)"
        year = f" ({source.year})" if source.year else ""
        blocks.append(
            f"[SRC-{source.index}] {source.title}{year}\n"
            f"Findings:\n{findings}\n"
            f"Text: {source.text[:MAX_SOURCE_CHARS]}"
        )
    return "\n\n---\n\n".join(blocks)


class Synthesizer:
    """
    Writes the analysis the trust chain then verifies.

    Pipeline position:
    EXTRACT → [Synthesizer] → VERIFY (ClaimExtractor → ... → TrustScorer)
    """

    def __init__(self, gateway: CallGateway, council=None):
        self.gateway = gateway
        self.council = council

    async def synthesize(
        self,
        question: str,
        sources: list[SynthesisSource],
        mode: str = "brief",
        correlation_id: Optional[str] = None,
    ) -> str:
        if not sources:
            return "The available sources do not allow an evidence-based answer to this question."

        context = format_sources(sources)
        perspectives = ""
        if mode == "council" and self.council is not None:
            result = await self.council.deliberate(question, sources, correlation_id=correlation_id)
            perspectives = f"\n\nPERSPECTIVES FROM THE COUNCIL:\n{result.transcript}"

        logger.info(f"Synthesizing {mode} analysis for '{question[:60]}' from {len(sources)} sources")
        response = await self.gateway.call(
            LLMRequest.simple(
                SYSTEM_PROMPT,
                f"SOURCES:\n{context}{perspectives}\n\nQUESTION:\n{question}\n\n"
                "Write the analysis with [SRC-n] citations.",
                temperature=0.3,
                max_tokens=2500,
                purpose="synthesis",
                correlation_id=correlation_id,
            )
        )
        logger.info(f"Generated analysis: {len(response.content)} characters")
        return response.content.strip()

    async def resynthesize_adversarially(
        self,
        question: str,
        sources: list[SynthesisSource],
        previous_text: str,
        challenged: list[str],
        correlation_id: Optional[str] = None,
    ) -> str:
        challenged_block = "\n".join(f"- {c}" for c in challenged) or "- (all claims: overall trust was too low)"
        logger.info(f"Adversarial re-synthesis challenging {len(challenged)} claim(s)")
        response = await self.gateway.call(
            LLMRequest.simple(
                ADVERSARIAL_PROMPT,
                f"SOURCES:\n{format_sources(sources)}\n\nQUESTION:\n{question}\n\n"
                f"PREVIOUS ANALYSIS:\n{previous_text}\n\nCHALLENGED CLAIMS:\n{challenged_block}",
                temperature=0.2,
                max_tokens=2500,
                purpose="adversarial_synthesis",
                correlation_id=correlation_id,
                use_cache=False,
            )
        )
        return response.content.strip()
