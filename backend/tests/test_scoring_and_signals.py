"""
Tests for source scoring, de-duplication, selection and signal detection.

Sources are plain (transient) ORM objects; nothing touches a database.
"""

from datetime import datetime, timedelta

import pytest

from trustbrief.models import Source
from trustbrief.services.scoring import (
    find_duplicates,
    identity_key,
    normalize_doi,
    score_novelty,
    score_quality,
    select_sources,
)
from trustbrief.services.signals import SignalDetector, SignalScores, classify_signal_type, classify_topic

NOW = datetime(2025, 6, 1, 12, 0, 0)


def _source(id, provider="openalex", quality=None, **fields) -> Source:
    defaults = dict(
        title=f"Paper {id}",
        abstract="",
        year=2025,
        citation_count=0,
        open_access=False,
        doi=None,
        full_text=None,
        novelty_score=None,
        created_at=None,
    )
    defaults.update(fields)
    return Source(id=id, provider=provider, external_id=id, quality_score=quality, **defaults)


# =============================================================================
# QUALITY AND NOVELTY
# =============================================================================

def test_quality_rewards_recency_citations_and_open_access():
    fresh = _source("a", year=2025, citation_count=99, open_access=True)
    old = _source("b", year=2020)

    assert score_quality(fresh, current_year=2025) == pytest.approx(0.88)
    assert score_quality(old, current_year=2025) == pytest.approx(0.12)


def test_full_text_earns_the_content_bonus():
    bare = _source("a", year=2019)
    with_text = _source("b", year=2019, full_text="x" * 10)
    long_abstract = _source("c", year=2019, abstract="x" * 1200)

    assert score_quality(with_text, current_year=2025) - score_quality(bare, current_year=2025) == pytest.approx(0.20)
    assert score_quality(long_abstract, current_year=2025) - score_quality(bare, current_year=2025) == pytest.approx(0.12)


def test_quality_is_capped():
    source = _source("a", citation_count=10_000_000, open_access=True, full_text="text")
    assert score_quality(source, current_year=2025) == 1.0


def test_novelty_favours_recent_under_cited_fresh_sources():
    fresh = _source("a", citation_count=2, created_at=NOW - timedelta(days=5))
    established = _source("b", year=2021, citation_count=1000)

    assert score_novelty(fresh, current_year=2025, now=NOW) == pytest.approx(0.95)
    assert score_novelty(established, current_year=2025, now=NOW) == pytest.approx(0.10)


# =============================================================================
# IDENTITY AND DUPLICATES
# =============================================================================

def test_doi_forms_normalise_to_one_identity():
    assert normalize_doi("https://doi.org/10.1000/ABC") == "10.1000/abc"
    assert normalize_doi("doi: 10.1000/abc") == "10.1000/abc"
    assert normalize_doi("") is None

    a = _source("a", doi="https://doi.org/10.1000/ABC")
    b = _source("b", provider="crossref", doi="10.1000/abc")
    assert identity_key(a) == identity_key(b) == "doi:10.1000/abc"


def test_title_and_year_identify_sources_without_doi():
    a = _source("a", title="Carbon Taxes: A Review", year=2022)
    b = _source("b", title="carbon taxes a review", year=2022)
    c = _source("c", title="carbon taxes a review", year=2023)

    assert identity_key(a) == identity_key(b)
    assert identity_key(a) != identity_key(c)


def test_best_ranked_copy_is_kept():
    sources = [
        _source("a", quality=0.4, doi="10.1/x"),
        _source("b", provider="crossref", quality=0.7, doi="10.1/x"),
        _source("c", provider="arxiv", quality=0.7, doi="10.1/x", full_text="body"),
        _source("d", quality=0.9, doi="10.1/other"),
    ]

    assert find_duplicates(sources) == {"a": "c", "b": "c"}


# =============================================================================
# SELECTION
# =============================================================================

def test_selection_interleaves_providers():
    sources = [
        _source("oa1", "openalex", 0.9),
        _source("oa2", "openalex", 0.8),
        _source("oa3", "openalex", 0.7),
        _source("ax1", "arxiv", 0.6),
        _source("cr1", "crossref", 0.5),
    ]

    assert [s.id for s in select_sources(sources, limit=3)] == ["oa1", "ax1", "cr1"]
    assert [s.id for s in select_sources(sources, limit=3, min_quality=0.55)] == ["oa1", "ax1", "oa2"]
    assert select_sources(sources, limit=3, min_quality=0.95) == []


def test_selection_ties_break_on_year_then_citations_then_id():
    sources = [
        _source("z", quality=0.5, year=2024, citation_count=10),
        _source("b", quality=0.5, year=2024, citation_count=10),
        _source("y", quality=0.5, year=2024, citation_count=50),
        _source("x", quality=0.5, year=2025, citation_count=0),
    ]

    assert [s.id for s in select_sources(sources, limit=4)] == ["x", "y", "b", "z"]


# =============================================================================
# SIGNALS
# =============================================================================

CLIMATE_ABSTRACT = "Carbon tax design and emissions outcomes across European industry."


def test_topic_needs_two_keyword_matches():
    assert classify_topic(_source("a", abstract=CLIMATE_ABSTRACT)) == "climate-industry"
    assert classify_topic(_source("b", abstract="A study of carbon fibre bicycles.")) is None


def test_signal_type_by_provider_then_keywords():
    assert classify_signal_type(_source("a", provider="oecd")) == "DATA_RELEASE"
    assert classify_signal_type(_source("b", provider="eu_commission")) == "POLICY_CHANGE"
    assert classify_signal_type(
        _source("c", novelty_score=0.85, abstract="The first study to link permits and prices.")
    ) == "METHODOLOGY_SHIFT"
    assert classify_signal_type(_source("d", novelty_score=0.6, abstract="A breakthrough result.")) == "NEW_EVIDENCE"


def test_priority_weights():
    assert SignalScores(novelty=60, impact=54, confidence=75, urgency=80).priority == 66


def test_detector_groups_qualifying_sources_by_topic_and_type():
    recent = NOW - timedelta(days=1)
    sources = [
        _source("a", quality=0.8, novelty_score=0.6, citation_count=50, created_at=recent,
                title="Carbon tax and emissions in Sweden", abstract=CLIMATE_ABSTRACT),
        _source("b", quality=0.8, novelty_score=0.6, citation_count=50, created_at=recent,
                title="Carbon pricing pass-through", abstract=CLIMATE_ABSTRACT),
        _source("c", provider="oecd", quality=0.8, novelty_score=0.6, citation_count=50, created_at=recent,
                title="OECD carbon rates 2025", abstract=CLIMATE_ABSTRACT),
        _source("low", quality=0.5, novelty_score=0.9, abstract=CLIMATE_ABSTRACT),
        _source("off-topic", quality=0.9, novelty_score=0.9, abstract="Quantum dots in displays."),
    ]

    signals = SignalDetector().detect("run-1", sources, now=NOW)

    assert [(s.topic, s.signal_type) for s in signals] == [
        ("climate-industry", "NEW_EVIDENCE"),
        ("climate-industry", "DATA_RELEASE"),
    ]
    evidence, release = signals
    assert sorted(evidence.source_ids) == ["a", "b"]
    assert evidence.priority_score == 66
    assert evidence.summary.startswith("2 source(s) detected (avg quality: 80/100).")
    assert evidence.title.startswith("New Evidence: ")
    assert release.source_ids == ["c"]
    assert release.priority_score == 72


def test_low_priority_groups_are_dropped():
    source = _source("a", quality=0.8, novelty_score=0.6, abstract=CLIMATE_ABSTRACT)
    assert SignalDetector(min_priority=90).detect("run-1", [source], now=NOW) == []
