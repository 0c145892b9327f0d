"""
Query Broadener Service.

WHAT THIS DOES:
When DISCOVER finds too few sources, produces broader search terms for a
single second pass: synonyms, the technical vocabulary papers use, and
wider framings of the same question.

WHY THIS MATTERS:
Users say "carbon tax" but papers say "carbon pricing", "emissions trading"
or "Pigouvian tax". A narrow phrasing can miss most of the literature.

EXAMPLE:
    Input:  "What is the impact of carbon taxes on emissions?"
    Output: ["carbon pricing emissions", "carbon tax CO2 reduction",
             "Pigouvian tax greenhouse gas", "emissions trading effectiveness"]

HOW IT WORKS:
1. Ask the LLM (JSON mode) for {"terms": [...]}
2. If no provider answers or the output is unusable, fall back to the
   question's own key terms, so the second pass always has something to run

USAGE:
    broadener = QueryBroadener(gateway)
    terms = await broadener.broaden(run.question, correlation_id=run.correlation_id)
"""

import logging
from typing import Optional

from trustbrief.errors import AllProvidersFailedError
from trustbrief.services.gateway import CallGateway, LLMRequest
from trustbrief.services.trust.lexical import STOPWORDS, tokenize

logger = logging.getLogger(__name__)

MAX_TERMS = 5

BROADENING_PROMPT = """You are a research search assistant. A literature search for the user's question returned too few results.

Generate broader alternative search queries that would find relevant academic and institutional sources.

RULES:
1. Use the vocabulary researchers use (technical terms, synonyms, abbreviations)
2. Include at least one wider framing of the topic
3. Each query is 2-6 words, no boolean operators
4. Return at most 5 queries

OUTPUT FORMAT (JSON):
{"terms": ["query one", "query two"]}"""

# Question words that never help a search engine
QUESTION_WORDS = frozenset({"what", "how", "does", "impact", "effect", "effects", "role", "influence"})


def fallback_terms(question: str) -> list[str]:
    """Key terms of the question: the whole set, then overlapping pairs."""
    words = [w for w in tokenize(question) if w not in STOPWORDS and w not in QUESTION_WORDS and len(w) > 2]
    if not words:
        return [question.strip()]
    terms = [" ".join(words)]
    terms.extend(" ".join(words[i:i + 2]) for i in range(len(words) - 1))
    return list(dict.fromkeys(terms))[:MAX_TERMS]


class QueryBroadener:
    """
    Broadens a question into alternative search terms.

    Pipeline position:
    DISCOVER (too few sources) → [QueryBroadener] → DISCOVER (broadened)
    """

    def __init__(self, gateway: Optional[CallGateway] = None):
        self.gateway = gateway

    async def broaden(self, question: str, correlation_id: Optional[str] = None) -> list[str]:
        logger.info(f"Broadening query: '{question}'")
        if self.gateway is None:
            return fallback_terms(question)

        try:
            response = await self.gateway.call(
                LLMRequest.simple(
                    BROADENING_PROMPT,
                    question,
                    json_mode=True,
                    temperature=0.3,
                    max_tokens=200,
                    purpose="query_broadening",
                    correlation_id=correlation_id,
                )
            )
            raw_terms = response.json().get("terms", [])
        except (AllProvidersFailedError, ValueError) as e:
            # If broadening fails, fall back to the question's own terms
            logger.error(f"Query broadening failed: {e}. Using question terms.")
            return fallback_terms(question)

        terms = [t.strip() for t in raw_terms if isinstance(t, str) and t.strip()] if isinstance(raw_terms, list) else []
        if not terms:
            return fallback_terms(question)

        terms = list(dict.fromkeys(terms))[:MAX_TERMS]
        logger.info(f"Broadened terms: {terms}")
        return terms


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================

async def broaden_query(question: str, gateway: Optional[CallGateway] = None) -> list[str]:
    """
    Convenience function to broaden a query.

    Example:
        terms = await broaden_query("carbon tax emissions")
    """
    broadener = QueryBroadener(gateway)
    return await broadener.broaden(question)
