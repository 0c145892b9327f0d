"""
Contradiction Detector.

Flags claims that something else in the run disagrees with:

- claim vs claim: two claims about the same thing (term Jaccard ≥ 0.5)
  pointing opposite ways
- claim vs source: a consumed source has a sentence on the same point
  (claim-term overlap ≥ 0.7) that points the opposite way

"Opposite" is lexical.opposed: negation mismatch or opposite direction of
change. A contradicted claim has its trust multiplied down by the scorer.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from trustbrief.services.trust.evidence_binder import SourceText
from trustbrief.services.trust.lexical import content_terms, jaccard, opposed, overlap, split_sentences

logger = logging.getLogger(__name__)

CLAIM_SIMILARITY = 0.5
SOURCE_OVERLAP = 0.7


@dataclass(frozen=True)
class Contradiction:
    claim_index: int
    # Exactly one of these is set
    other_claim_index: Optional[int] = None
    source_id: Optional[str] = None
    text: str = ""


def detect_contradictions(claims: list[str], sources: list[SourceText]) -> list[Contradiction]:
    found: list[Contradiction] = []
    terms = [content_terms(c) for c in claims]

    for i in range(len(claims)):
        for j in range(i + 1, len(claims)):
            if jaccard(terms[i], terms[j]) >= CLAIM_SIMILARITY and opposed(claims[i], claims[j]):
                found.append(Contradiction(i, other_claim_index=j, text=claims[j]))
                found.append(Contradiction(j, other_claim_index=i, text=claims[i]))

    for i, claim in enumerate(claims):
        for source in sources:
            for sentence in split_sentences(source.text):
                if overlap(terms[i], content_terms(sentence.text)) < SOURCE_OVERLAP:
                    continue
                if opposed(claim, sentence.text):
                    found.append(Contradiction(i, source_id=source.id, text=sentence.text))
                    break

    if found:
        logger.info(f"Detected {len({c.claim_index for c in found})} contradicted claim(s)")
    return found
