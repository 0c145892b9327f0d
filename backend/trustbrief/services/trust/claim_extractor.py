"""
Claim Extractor Service.

WHAT THIS DOES:
Breaks a generated analysis into discrete, verifiable claims.
This is the first step of the trust chain.

WHY THIS MATTERS:
You can't verify a paragraph, only the individual claims in it.
Each claim is bound to evidence and scored on its own.

HOW IT WORKS:
1. Deterministic pass: every sentence carrying a [SRC-n] citation, or using
   result/causal language ("led to", "found that", "reduced"), becomes a claim.
   Cheap, exact offsets, confidence 0.7 (0.75 when cited).
2. If that yields fewer than `min_claims`, or the mean confidence is below
   `min_confidence`, ask the LLM (JSON mode) for a structured extraction.
   Each returned item is validated; malformed items are skipped.
3. Claims are typed (factual / causal / predictive) and categorised.

EXAMPLE:
    Text: "Carbon taxes reduced emissions by 5% [SRC-1]. Revenue recycling
           limits regressive effects [SRC-2]."

    Claims:
    1. "Carbon taxes reduced emissions by 5%"   causal   cited [1]
    2. "Revenue recycling limits regressive effects"  factual  cited [2]

USAGE:
    extractor = ClaimExtractor(gateway)
    claims = await extractor.extract(analysis_text, correlation_id=run.correlation_id)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.trust.lexical import cited_indices, split_sentences, strip_citations

logger = logging.getLogger(__name__)

CAUSAL_RE = re.compile(
    r"\b(causes?|caused|leads? to|led to|results? in|resulted in|due to|because of|therefore|thus|drives?|drove)\b"
)
PREDICTIVE_RE = re.compile(
    r"\b(will|would|is expected to|are expected to|projected|forecasts?|is likely to|are likely to|could)\b"
)
RESULT_RE = re.compile(
    r"\b(found|finds|showed|shows|demonstrated|reported|observed|estimated|reduced|increased|"
    r"decreased|improved|lowered|raised|associated with|correlated)\b"
)

CATEGORY_TERMS = {
    "environmental": ("emission", "climate", "carbon", "pollution", "energy", "temperature", "biodiversity"),
    "economic": ("gdp", "cost", "price", "revenue", "tax", "market", "economic", "income", "employment", "growth"),
    "technical": ("technology", "model", "algorithm", "system", "efficiency", "software", "engineering"),
    "political": ("policy", "government", "regulation", "legislation", "election", "political"),
    "social": ("household", "health", "education", "inequality", "social", "community", "population"),
    "ethical": ("ethical", "fairness", "rights", "moral", "justice", "consent"),
}

DETERMINISTIC_CONFIDENCE = 0.7
CITED_CONFIDENCE = 0.75
MIN_CLAIM_CHARS = 15

EXTRACTION_PROMPT = """You are a claim extraction system. Break the analysis below into atomic, verifiable claims.

RULES:
1. Each claim is a single statement that can be checked against a source
2. Keep the wording close to the original text
3. Keep any [SRC-n] citations that belong to the claim in "cited"
4. Classify claim_type as one of: factual, causal, predictive
5. Classify category as one of: economic, technical, ethical, political, social, environmental
6. Give a confidence 0-1 for how clearly the text asserts the claim

OUTPUT FORMAT (JSON):
{
  "claims": [
    {"text": "...", "claim_type": "causal", "category": "economic", "confidence": 0.85, "cited": [1, 2]}
  ]
}"""


class LLMClaim(BaseModel):
    """One item of the LLM's extraction output."""
    text: str = Field(min_length=MIN_CLAIM_CHARS)
    claim_type: Literal["factual", "causal", "predictive"] = "factual"
    category: str = "general"
    confidence: float = Field(default=0.8, ge=0, le=1)
    cited: list[int] = Field(default_factory=list)


@dataclass
class ExtractedClaim:
    text: str
    span_start: int
    span_end: int
    claim_type: str
    category: str
    confidence: float
    # 1-based [SRC-n] indices
    cited: list[int] = field(default_factory=list)
    extracted_by: str = "pattern"

    def __repr__(self):
        return f"Claim({self.text[:50]}..., cited={self.cited})"


def classify_claim_type(text: str) -> str:
    lower = text.lower()
    if CAUSAL_RE.search(lower):
        return "causal"
    if PREDICTIVE_RE.search(lower):
        return "predictive"
    return "factual"


def classify_category(text: str) -> str:
    lower = text.lower()
    best, best_hits = "general", 0
    for category, terms in CATEGORY_TERMS.items():
        hits = sum(1 for term in terms if term in lower)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


class ClaimExtractor:
    """
    Extracts claims from generated analysis text.

    Pipeline position:
    Synthesis → [ClaimExtractor] → Claims → CitationVerifier / EvidenceBinder → TrustScorer
    """

    def __init__(
        self,
        gateway: Optional[CallGateway] = None,
        min_claims: int = 3,
        min_confidence: float = 0.5,
        max_claims: int = 50,
    ):
        self.gateway = gateway
        self.min_claims = min_claims
        self.min_confidence = min_confidence
        self.max_claims = max_claims

    async def extract(self, text: str, correlation_id: Optional[str] = None) -> list[ExtractedClaim]:
        claims = self.extract_deterministic(text)
        mean_confidence = sum(c.confidence for c in claims) / len(claims) if claims else 0.0

        if len(claims) >= self.min_claims and mean_confidence >= self.min_confidence:
            logger.info(f"Extracted {len(claims)} claims deterministically")
            return claims

        if self.gateway is None:
            return claims

        logger.info(
            f"Deterministic extraction too thin ({len(claims)} claims, mean confidence "
            f"{mean_confidence:.2f}); falling back to LLM extraction"
        )
        try:
            llm_claims = await self._extract_with_llm(text, correlation_id)
        except AllProvidersFailedError as e:
            logger.warning(f"LLM claim extraction unavailable, keeping deterministic claims: {e}")
            return claims

        # Prefer whichever pass found more
        if len(llm_claims) > len(claims):
            return llm_claims
        return claims

    def extract_deterministic(self, text: str) -> list[ExtractedClaim]:
        claims: list[ExtractedClaim] = []
        for sentence in split_sentences(text):
            if sentence.text.lstrip().startswith("#"):
                continue  # markdown heading
            cited = cited_indices(sentence.text)
            clean = strip_citations(sentence.text).rstrip(".!?").strip()
            if len(clean) < MIN_CLAIM_CHARS:
                continue
            if not cited and not (RESULT_RE.search(clean.lower()) or CAUSAL_RE.search(clean.lower())):
                continue
            claims.append(
                ExtractedClaim(
                    text=clean,
                    span_start=sentence.start,
                    span_end=sentence.end,
                    claim_type=classify_claim_type(clean),
                    category=classify_category(clean),
                    confidence=CITED_CONFIDENCE if cited else DETERMINISTIC_CONFIDENCE,
                    cited=cited,
                    extracted_by="pattern",
                )
            )
            if len(claims) >= self.max_claims:
                break
        return claims

    async def _extract_with_llm(self, text: str, correlation_id: Optional[str]) -> list[ExtractedClaim]:
        response = await self.gateway.call(
            LLMRequest.simple(
                EXTRACTION_PROMPT,
                text,
                json_mode=True,
                temperature=0.1,
                max_tokens=2000,
                purpose="claim_extraction",
                correlation_id=correlation_id,
            )
        )
        try:
            items = response.json().get("claims", [])
        except ValueError as e:
            logger.error(f"Failed to parse claim extraction response: {e}")
            return []
        if not isinstance(items, list):
            return []

        claims = []
        for item in items[: self.max_claims]:
            try:
                parsed = LLMClaim.model_validate(item)
            except ValidationError as e:
                logger.debug(f"Skipping malformed claim item: {e.errors()[0]['msg']}")
                continue
            clean = strip_citations(parsed.text)
            start = text.find(clean)
            cited = parsed.cited or cited_indices(parsed.text)
            claims.append(
                ExtractedClaim(
                    text=clean,
                    span_start=start,
                    span_end=start + len(clean) if start >= 0 else -1,
                    claim_type=parsed.claim_type,
                    category=parsed.category if parsed.category in CATEGORY_TERMS else classify_category(clean),
                    confidence=parsed.confidence,
                    cited=cited,
                    extracted_by="llm",
                )
            )
        logger.info(f"LLM extracted {len(claims)} claims")
        return claims


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================

async def extract_claims(text: str, gateway: Optional[CallGateway] = None) -> list[ExtractedClaim]:
    """
    Convenience function to extract claims from analysis text.

    Example:
        claims = await extract_claims("Carbon taxes reduced emissions [SRC-1].")
    """
    extractor = ClaimExtractor(gateway)
    return await extractor.extract(text)
