"""
Evidence Binder Service.

WHAT THIS DOES:
For each claim, finds the exact spans in the run's sources that support it,
and scores each span for relevance and strength.

WHY THIS MATTERS:
A claim is only as trustworthy as the text behind it. Binding to character
offsets means every published claim can be shown next to the sentence it
came from, and nothing is "supported" by text that doesn't exist.

SCORING (per source sentence):
    relevance = share of the claim's content terms found in the sentence
    type/strength:
        direct_quote  relevance ≥ 0.8                    strength = 0.1 + 0.9 × relevance
        statistical   shares a number, relevance ≥ 0.4   strength = min(1, 0.25 + relevance)
        paraphrase    anything else                      strength = 0.75 × relevance
    opposite polarity (negation / opposite direction) halves the strength
    spans below the relevance or strength floor are dropped
    at most `max_spans` spans per claim, strongest first

INVARIANTS:
- Only the sources passed in are scanned. Callers pass exactly the sources
  the synthesis consumed, so no span can point outside the run.
- Span text is always source.text[start:end]. The optional LLM assist may
  only point at quotes; a quote that is not found verbatim is discarded.
- An LLM quote is widened to the sentence(s) it sits in and rescored
  lexically. Its relevance is the lower of the two scores, so the model
  can never vouch for text that shares too little with the claim.

USAGE:
    binder = EvidenceBinder(gateway)
    spans = await binder.bind(claim.text, sources, correlation_id=run.correlation_id)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.trust.lexical import content_terms, numbers, opposed, overlap, split_sentences

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 100
DIRECT_QUOTE_RELEVANCE = 0.8
STATISTICAL_RELEVANCE = 0.4
LLM_MIN_RELEVANCE = 0.6

BINDING_PROMPT = """You locate supporting evidence for a claim inside numbered sources.

Return quotes copied EXACTLY, character for character, from the sources. Do not paraphrase.
If nothing in the sources supports the claim, return an empty list.

OUTPUT FORMAT (JSON):
{"spans": [{"source": 1, "quote": "exact sentence from source 1", "relevance": 0.8}]}"""


@dataclass(frozen=True)
class SourceText:
    """The slice of a Source the trust services need."""
    id: str
    text: str
    quality: float = 0.0


@dataclass(frozen=True)
class BoundSpan:
    source_id: str
    start: int
    end: int
    text: str
    context_before: str
    context_after: str
    relevance: float
    strength: float
    evidence_type: str  # direct_quote | statistical | paraphrase


def sentence_bounds(text: str, start: int, end: int) -> tuple[int, int]:
    """Widen [start, end) to the whole sentence(s) it overlaps."""
    covering = [s for s in split_sentences(text) if s.start < end and s.end > start]
    if not covering:
        return start, end
    return min(start, covering[0].start), max(end, covering[-1].end)


def score_sentence(claim: str, sentence: str) -> tuple[float, float, str]:
    """(relevance, strength, evidence_type) of one source sentence for one claim."""
    claim_terms = content_terms(claim)
    relevance = overlap(claim_terms, content_terms(sentence))
    if relevance >= DIRECT_QUOTE_RELEVANCE:
        evidence_type, strength = "direct_quote", 0.1 + 0.9 * relevance
    elif relevance >= STATISTICAL_RELEVANCE and numbers(claim) & numbers(sentence):
        evidence_type, strength = "statistical", min(1.0, 0.25 + relevance)
    else:
        evidence_type, strength = "paraphrase", 0.75 * relevance
    if relevance > 0 and opposed(claim, sentence):
        strength *= 0.5
    return round(relevance, 4), round(min(strength, 1.0), 4), evidence_type


class EvidenceBinder:
    """
    Binds claims to evidence spans in consumed sources.

    Pipeline position:
    ClaimExtractor → [EvidenceBinder] → ContradictionDetector → TrustScorer
    """

    def __init__(
        self,
        gateway: Optional[CallGateway] = None,
        min_relevance: float = 0.3,
        min_strength: float = 0.25,
        max_spans: int = 5,
    ):
        self.gateway = gateway
        self.min_relevance = min_relevance
        self.min_strength = min_strength
        self.max_spans = max_spans

    def bind_lexical(self, claim: str, sources: list[SourceText]) -> list[BoundSpan]:
        candidates: list[BoundSpan] = []
        for source in sources:
            for sentence in split_sentences(source.text):
                relevance, strength, evidence_type = score_sentence(claim, sentence.text)
                if relevance < self.min_relevance or strength < self.min_strength:
                    continue
                candidates.append(self._span(source, sentence.start, sentence.end, relevance, strength, evidence_type))

        candidates.sort(key=lambda s: (s.strength, s.relevance), reverse=True)
        return candidates[: self.max_spans]

    async def bind(
        self,
        claim: str,
        sources: list[SourceText],
        correlation_id: Optional[str] = None,
    ) -> list[BoundSpan]:
        spans = self.bind_lexical(claim, sources)
        if spans or self.gateway is None or not sources:
            return spans

        try:
            return await self._bind_with_llm(claim, sources, correlation_id)
        except AllProvidersFailedError as e:
            logger.warning(f"LLM evidence binding unavailable: {e}")
            return []

    async def _bind_with_llm(
        self,
        claim: str,
        sources: list[SourceText],
        correlation_id: Optional[str],
    ) -> list[BoundSpan]:
        numbered = "\n\n".join(f"[{i}] {s.text}" for i, s in enumerate(sources, start=1))
        response = await self.gateway.call(
            LLMRequest.simple(
                BINDING_PROMPT,
                f"CLAIM:\n{claim}\n\nSOURCES:\n{numbered}",
                json_mode=True,
                temperature=0.0,
                max_tokens=1000,
                purpose="evidence_binding",
                correlation_id=correlation_id,
            )
        )
        try:
            items = response.json().get("spans", [])
        except ValueError as e:
            logger.error(f"Failed to parse evidence binding response: {e}")
            return []

        spans: list[BoundSpan] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            index, quote = item.get("source"), item.get("quote")
            if not isinstance(index, int) or not 1 <= index <= len(sources) or not isinstance(quote, str):
                continue
            source = sources[index - 1]
            start = source.text.find(quote.strip())
            if start < 0 or not quote.strip():
                logger.warning(f"Discarding LLM evidence quote not present in source {source.id}")
                continue
            start, end = sentence_bounds(source.text, start, start + len(quote.strip()))
            try:
                llm_relevance = float(item.get("relevance", 0.0))
            except (TypeError, ValueError):
                continue
            llm_relevance = max(0.0, min(1.0, llm_relevance))
            if llm_relevance < max(LLM_MIN_RELEVANCE, self.min_relevance):
                continue
            lexical_relevance, _, evidence_type = score_sentence(claim, source.text[start:end])
            relevance = min(llm_relevance, lexical_relevance)
            if relevance < self.min_relevance:
                logger.info(f"Discarding LLM evidence in source {source.id}: lexical relevance {lexical_relevance}")
                continue
            strength = 0.8 * relevance
            if opposed(claim, source.text[start:end]):
                strength *= 0.5
            if strength < self.min_strength:
                continue
            spans.append(self._span(source, start, end, round(relevance, 4), round(strength, 4), evidence_type))

        spans.sort(key=lambda s: (s.strength, s.relevance), reverse=True)
        logger.info(f"LLM-assisted binding kept {len(spans)} verified span(s)")
        return spans[: self.max_spans]

    def _span(
        self,
        source: SourceText,
        start: int,
        end: int,
        relevance: float,
        strength: float,
        evidence_type: str,
    ) -> BoundSpan:
        return BoundSpan(
            source_id=source.id,
            start=start,
            end=end,
            text=source.text[start:end],
            context_before=source.text[max(0, start - CONTEXT_CHARS):start],
            context_after=source.text[end:end + CONTEXT_CHARS],
            relevance=relevance,
            strength=strength,
            evidence_type=evidence_type,
        )
