"""
Adaptive quality gates.

Pure functions that look at a stage's outcome and decide what happens
next. Each corrective loop runs at most once per run; the counters that
enforce that live on the AnalysisRun and are passed in.

    after DISCOVER  too few sources       → re-discover once with broadened terms
                    still none            → FAIL "insufficient sources"
    after SELECT    nothing passes quality → FAIL
    after EXTRACT   low mean confidence   → deep (full-text) extraction once
    after VERIFY    low trust / too many contradictions
                                          → one adversarial re-synthesis, then REJECT
"""

from dataclasses import dataclass

from trustbrief.config import Settings
from trustbrief.services.pipeline.decisions import (
    AdversarialResynthesis,
    Decision,
    DeepenExtraction,
    Fail,
    Proceed,
    Reject,
    Rediscover,
)

INSUFFICIENT_SOURCES = "insufficient sources"


@dataclass(frozen=True)
class GateConfig:
    min_sources: int = 3
    extraction_confidence_floor: float = 0.5
    deep_extraction_batch: int = 3
    trust_floor: float = 0.5
    contradiction_ceiling: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "GateConfig":
        return cls(
            min_sources=settings.min_sources,
            extraction_confidence_floor=settings.extraction_confidence_floor,
            deep_extraction_batch=settings.deep_extraction_batch,
            trust_floor=settings.trust_floor,
            contradiction_ceiling=settings.contradiction_ceiling,
        )


def assess_discovery(
    source_count: int,
    discover_attempts: int,
    broadened_terms: list[str],
    config: GateConfig,
) -> Decision:
    """
    Args:
        source_count: sources accepted for the run so far
        discover_attempts: DISCOVER passes already completed, including this one
        broadened_terms: terms to use if another pass is warranted
    """
    if source_count >= config.min_sources:
        return Proceed(f"{source_count} sources found")
    if discover_attempts < 2:
        return Rediscover(
            tuple(broadened_terms),
            f"only {source_count} of {config.min_sources} required sources; broadening search",
        )
    if source_count == 0:
        return Fail(INSUFFICIENT_SOURCES)
    return Proceed(f"continuing with {source_count} sources after broadened search")


def assess_selection(selected_count: int) -> Decision:
    if selected_count == 0:
        return Fail("no source passed the quality threshold")
    return Proceed(f"{selected_count} sources selected")


def assess_extraction(
    confidences: dict[str, float],
    deep_extraction_done: bool,
    config: GateConfig,
) -> Decision:
    """
    Args:
        confidences: source id → extraction confidence
    """
    if not confidences:
        return Proceed("nothing extracted")
    mean = sum(confidences.values()) / len(confidences)
    if mean >= config.extraction_confidence_floor or deep_extraction_done:
        return Proceed(f"mean extraction confidence {mean:.2f}")

    weakest = sorted(confidences, key=lambda source_id: (confidences[source_id], source_id))
    return DeepenExtraction(
        tuple(weakest[: config.deep_extraction_batch]),
        f"mean extraction confidence {mean:.2f} below {config.extraction_confidence_floor:.2f}",
    )


def assess_verification(
    trust_score: float,
    contradiction_rate: float,
    adversarial_passes: int,
    weak_claims: list[str],
    config: GateConfig,
) -> Decision:
    problems = []
    if trust_score < config.trust_floor:
        problems.append(f"trust {trust_score:.2f} below floor {config.trust_floor:.2f}")
    if contradiction_rate > config.contradiction_ceiling:
        problems.append(
            f"contradiction rate {contradiction_rate:.2f} above ceiling {config.contradiction_ceiling:.2f}"
        )
    if not problems:
        return Proceed(f"trust {trust_score:.2f}, contradiction rate {contradiction_rate:.2f}")

    reason = "; ".join(problems)
    if adversarial_passes < 1:
        return AdversarialResynthesis(tuple(weak_claims), reason)
    return Reject(f"{reason} after adversarial re-synthesis")
