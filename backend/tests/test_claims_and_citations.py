"""
Tests for claim extraction, citation verification and contradiction detection.
"""

import json

import pytest

from fakes import CARBON_ANALYSIS, ScriptedProvider, make_gateway
from trustbrief.services.trust import CitationVerifier, ClaimExtractor, SourceText, detect_contradictions
from trustbrief.services.trust.citation_verifier import (
    HALLUCINATED,
    MISATTRIBUTED,
    PARTIALLY_SUPPORTED,
    SUPPORTED,
    UNSUPPORTED,
)
from trustbrief.services.trust.claim_extractor import ExtractedClaim


def _claim(text: str, cited: list[int]) -> ExtractedClaim:
    return ExtractedClaim(text, 0, len(text), "factual", "general", 0.75, cited)


SOURCES = [
    SourceText("s1", "Carbon taxes reduced emissions by 5 percent in the first decade. The panel covers 30 countries."),
    SourceText("s2", "Carbon pricing raised household energy costs by 3 percent on average."),
]


# =============================================================================
# CLAIM EXTRACTION
# =============================================================================

@pytest.mark.asyncio
async def test_cited_sentences_become_claims():
    provider = ScriptedProvider()
    extractor = ClaimExtractor(make_gateway(provider))

    claims = await extractor.extract(CARBON_ANALYSIS)

    assert len(claims) == 4
    assert provider.calls == []  # enough deterministic claims, no LLM
    first = claims[0]
    assert first.text == "Carbon taxes reduced emissions by 5 percent in the first decade"
    assert first.cited == [1]
    assert first.confidence == 0.75
    assert first.category == "environmental"
    assert CARBON_ANALYSIS[first.span_start:first.span_end].startswith("Carbon taxes reduced")
    assert [c.cited for c in claims] == [[1], [3], [2], [2]]


def test_headings_and_filler_are_skipped():
    text = (
        "# Carbon tax brief\n\n"
        "This section gives an overview of the topic. "
        "Carbon taxes caused a shift toward cleaner fuels. "
        "Fuel prices will rise further under the 2030 schedule [SRC-2]."
    )

    claims = ClaimExtractor().extract_deterministic(text)

    assert [c.claim_type for c in claims] == ["causal", "predictive"]
    assert claims[0].cited == []
    assert claims[0].confidence == 0.7
    assert claims[1].cited == [2]


@pytest.mark.asyncio
async def test_thin_text_falls_back_to_llm_extraction():
    answer = {
        "claims": [
            {"text": "Carbon taxes cut emissions [SRC-1]", "claim_type": "factual", "category": "environmental",
             "confidence": 0.8},
            {"text": "Energy bills rose for households", "claim_type": "factual", "category": "economic",
             "confidence": 0.7, "cited": [2]},
            {"text": "", "confidence": 2.0},
            "not an object",
        ]
    }
    provider = ScriptedProvider(responses={"claim_extraction": json.dumps(answer)})
    extractor = ClaimExtractor(make_gateway(provider), min_claims=3)

    claims = await extractor.extract("Carbon taxes cut emissions [SRC-1]. Energy bills rose for households.")

    assert provider.purposes() == ["claim_extraction"]
    assert [c.text for c in claims] == ["Carbon taxes cut emissions", "Energy bills rose for households"]
    assert claims[0].cited == [1]
    assert claims[1].cited == [2]
    assert all(c.extracted_by == "llm" for c in claims)


@pytest.mark.asyncio
async def test_extraction_keeps_deterministic_claims_when_llm_is_down():
    extractor = ClaimExtractor(make_gateway(), min_claims=3)

    claims = await extractor.extract("Carbon taxes cut emissions by 4 percent [SRC-1].")

    assert len(claims) == 1
    assert claims[0].extracted_by == "pattern"


# =============================================================================
# CITATION VERIFICATION
# =============================================================================

def test_verdicts():
    claims = [
        _claim("Carbon taxes reduced emissions by 5 percent in the first decade", [1]),
        _claim("Carbon taxes reduced emissions by 5 percent in the first decade", [3]),
        _claim("Carbon pricing raised household energy costs by 3 percent", [1]),
        _claim("Wind power expanded rapidly in coastal regions", [2]),
    ]

    report = CitationVerifier().verify(claims, SOURCES)

    verdicts = [c.verdict for c in report.checks]
    assert verdicts == [SUPPORTED, HALLUCINATED, MISATTRIBUTED, UNSUPPORTED]
    assert report.hallucinated == [3]
    assert report.checks[1].source_id is None
    assert report.integrity == pytest.approx(0.25)
    assert report.has_valid_citation(0)
    assert not report.has_valid_citation(1)


def test_partial_support():
    claims = [_claim("Carbon taxes boosted exports and wages", [1])]

    report = CitationVerifier().verify(claims, SOURCES)

    assert report.checks[0].verdict == PARTIALLY_SUPPORTED
    assert report.integrity == pytest.approx(0.5)


def test_cherry_picking_is_flagged():
    source = SourceText(
        "s1",
        "Carbon taxes reduced emissions in Nordic countries. "
        "Carbon taxes did not reduce emissions in Nordic countries after 2010.",
    )

    report = CitationVerifier().verify([_claim("Carbon taxes reduced emissions in Nordic countries", [1])], [source])

    assert report.checks[0].verdict == SUPPORTED
    assert report.checks[0].cherry_picking


def test_nothing_cited_means_zero_integrity():
    report = CitationVerifier().verify([_claim("An uncited observation about taxes", [])], SOURCES)
    assert report.checks == []
    assert report.integrity == 0.0


@pytest.mark.asyncio
async def test_adjudication_only_revisits_borderline_verdicts():
    claims = [
        _claim("Wind power expanded rapidly in coastal regions", [2]),
        _claim("Carbon taxes reduced emissions", [9]),
    ]
    provider = ScriptedProvider(responses={"citation_check": '{"verdict": "partially_supported"}'})
    verifier = CitationVerifier(make_gateway(provider))

    report = await verifier.adjudicate(verifier.verify(claims, SOURCES), claims, SOURCES)

    assert provider.purposes() == ["citation_check"]
    assert report.checks[0].verdict == PARTIALLY_SUPPORTED
    assert report.checks[0].adjudicated
    assert report.checks[1].verdict == HALLUCINATED


# =============================================================================
# CONTRADICTIONS
# =============================================================================

def test_opposed_claims_contradict_each_other():
    found = detect_contradictions(
        ["Carbon taxes increased fuel prices in France", "Carbon taxes lowered fuel prices in France"],
        [],
    )

    assert {(c.claim_index, c.other_claim_index) for c in found} == {(0, 1), (1, 0)}


def test_source_sentence_can_contradict_a_claim():
    source = SourceText("s9", "Carbon taxes did not reduce emissions by 5 percent in the first decade.")

    found = detect_contradictions(["Carbon taxes reduced emissions by 5 percent in the first decade"], [source])

    assert len(found) == 1
    assert found[0].source_id == "s9"


def test_agreeing_claims_are_not_contradictions():
    assert detect_contradictions(["Carbon taxes reduced emissions"], SOURCES) == []
