"""
Source scoring, de-duplication and selection.

WHAT THIS DOES:
- quality: how much a source can be leaned on (recency, citations, open
  access, how much readable content it has)
- novelty: how new and not-yet-mainstream it is (used for signals)
- identity: which sources are the same work returned by different providers
- selection: which sources the synthesis gets to read

QUALITY FORMULA (points, capped at 100, stored as 0-1):
    recency   max(0, 42 - 6 × age_years)
    citations min(34, 16 × log10(citations + 1))
    open access +14
    content   full text +20 | text ≥ 2000 chars +18 | ≥ 1000 +12 | ≥ 500 +6

NOVELTY FORMULA (points, capped at 100, stored as 0-1):
    recency   max(0, 50 - 10 × age_years)
    under-cited 30 if citations < 5 else max(0, 30 - 10 × log10(citations))
    fresh in our store  max(0, 20 - days since discovered)

SELECTION:
    rank by quality desc, then year desc, citation count desc, id asc,
    then interleave providers round-robin so one provider can't crowd
    out the rest, and keep the first `limit`.
"""

import math
import re
import unicodedata
from collections import OrderedDict
from datetime import datetime
from typing import Optional, Protocol

_DOI_PREFIX_RE = re.compile(r"^(https?://(dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class ScorableSource(Protocol):
    id: str
    provider: str
    doi: Optional[str]
    title: str
    abstract: Optional[str]
    full_text: Optional[str]
    year: Optional[int]
    citation_count: int
    open_access: bool
    quality_score: Optional[float]
    created_at: Optional[datetime]


def _age(year: Optional[int], current_year: Optional[int]) -> int:
    now = current_year or datetime.utcnow().year
    return max(0, now - (year or now))


def score_quality(source: ScorableSource, current_year: Optional[int] = None) -> float:
    age = _age(source.year, current_year)
    citations = source.citation_count or 0

    recency = max(0.0, 42 - age * 6)
    cite_score = min(34.0, math.log10(citations + 1) * 16)
    oa_score = 14.0 if source.open_access else 0.0

    content_length = len(source.abstract or "")
    if source.full_text:
        content_bonus = 20.0
    elif content_length >= 2000:
        content_bonus = 18.0
    elif content_length >= 1000:
        content_bonus = 12.0
    elif content_length >= 500:
        content_bonus = 6.0
    else:
        content_bonus = 0.0

    points = min(100.0, recency + cite_score + oa_score + content_bonus)
    return round(points / 100, 4)


def score_novelty(
    source: ScorableSource,
    current_year: Optional[int] = None,
    now: Optional[datetime] = None,
) -> float:
    age = _age(source.year, current_year)
    citations = source.citation_count or 0

    recency = max(0.0, 50 - age * 10)
    under_cited = 30.0 if citations < 5 else max(0.0, 30 - math.log10(citations) * 10)
    ingest = 0.0
    if source.created_at is not None:
        days = ((now or datetime.utcnow()) - source.created_at).total_seconds() / 86400
        ingest = max(0.0, 20 - days)

    return round(min(100.0, recency + under_cited + ingest) / 100, 4)


def normalize_doi(doi: Optional[str]) -> Optional[str]:
    if not doi:
        return None
    doi = _DOI_PREFIX_RE.sub("", doi.strip()).lower()
    return doi or None


def normalize_title(title: str) -> str:
    folded = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode().lower()
    return _NON_ALNUM_RE.sub(" ", folded).strip()


def identity_key(source: ScorableSource) -> str:
    """Same DOI, or same normalised title and year, means same work."""
    doi = normalize_doi(source.doi)
    if doi:
        return f"doi:{doi}"
    return f"title:{normalize_title(source.title)}:{source.year or ''}"


def _rank_key(source: ScorableSource) -> tuple:
    return (
        -(source.quality_score or 0.0),
        -(source.year or 0),
        -(source.citation_count or 0),
        source.id,
    )


def find_duplicates(sources: list[ScorableSource]) -> dict[str, str]:
    """
    Returns duplicate id → kept id. Within each identity group the best
    ranked source is kept; a source with full text wins a quality tie.
    """
    groups: dict[str, list[ScorableSource]] = OrderedDict()
    for source in sources:
        groups.setdefault(identity_key(source), []).append(source)

    duplicates: dict[str, str] = {}
    for members in groups.values():
        if len(members) < 2:
            continue
        members = sorted(members, key=lambda s: (_rank_key(s)[0], not s.full_text, *_rank_key(s)[1:]))
        keeper = members[0]
        for other in members[1:]:
            duplicates[other.id] = keeper.id
    return duplicates


def select_sources(
    sources: list[ScorableSource],
    limit: int,
    min_quality: float = 0.0,
) -> list[ScorableSource]:
    eligible = sorted(
        (s for s in sources if (s.quality_score or 0.0) >= min_quality),
        key=_rank_key,
    )

    # Round-robin across providers, providers ordered by their best source
    by_provider: dict[str, list[ScorableSource]] = OrderedDict()
    for source in eligible:
        by_provider.setdefault(source.provider, []).append(source)

    selected: list[ScorableSource] = []
    while len(selected) < limit and any(by_provider.values()):
        for provider in list(by_provider):
            if by_provider[provider] and len(selected) < limit:
                selected.append(by_provider[provider].pop(0))
    return selected
