"""
Signal Detector.

WHAT THIS DOES:
After a run is published, looks at the sources it consumed and surfaces
"signals": clusters of recent, high-quality, not-yet-mainstream work on one
topic that deserve attention on their own.

HOW IT WORKS:
1. Keep sources with quality ≥ 70 and novelty ≥ 50 (0-100 scale)
2. Classify each into a topic by keyword matches (≥ 2 required)
3. Classify each into a signal type (provider fast path, then keywords)
4. Per (topic, type) group, score novelty / impact / confidence / urgency
5. priority = 0.25·novelty + 0.30·impact + 0.30·confidence + 0.15·urgency
6. Drop groups below MIN_PRIORITY

SCORES (0-100):
    novelty     mean source novelty
    impact      min(avg citations / 100, 1)·30 + 25 if institutional + 0.3·avg quality + 15
    confidence  0.5·avg quality + min(5·sources, 25) + 25
    urgency     60 × share of sources discovered in the last 7 days + 20

USAGE:
    detector = SignalDetector()
    signals = detector.detect(run_id, sources)
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from trustbrief.models.signal import Signal
from trustbrief.models.source import Source

logger = logging.getLogger(__name__)

MIN_QUALITY = 70
MIN_NOVELTY = 50
MIN_TOPIC_MATCHES = 2
MIN_PRIORITY = 50
RECENT_DAYS = 7

INSTITUTIONAL_PROVIDERS = frozenset({"imf", "worldbank", "oecd", "eurostat", "bis", "ecb"})
POLICY_PROVIDERS = frozenset({"eeas", "un", "nato", "eu_commission", "legifrance"})

METHOD_KEYWORDS = ("novel method", "new approach", "innovative technique", "breakthrough", "first study")

TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "eu-policy": (
        "european union", "eu regulation", "directive", "brussels", "european commission",
        "gdpr", "european parliament", "eu policy", "cbam", "green deal",
    ),
    "climate-industry": (
        "climate change", "carbon", "emissions", "decarbonization", "renewable energy",
        "sustainability", "net zero", "green transition", "ipcc", "carbon tax",
    ),
    "ai-labor": (
        "artificial intelligence", "machine learning", "automation", "job displacement",
        "future of work", "ai ethics", "algorithmic", "workforce", "employment impact",
    ),
    "geopolitics": (
        "geopolitical", "international relations", "diplomacy", "security", "conflict",
        "sanctions", "trade war", "nato", "foreign policy", "bilateral",
    ),
    "finance-regulation": (
        "financial regulation", "banking", "monetary policy", "central bank", "fintech",
        "cryptocurrency", "basel", "capital markets", "systemic risk",
    ),
}

TYPE_TITLES = {
    "NEW_EVIDENCE": "New Evidence",
    "DATA_RELEASE": "Data Release",
    "POLICY_CHANGE": "Policy Change",
    "METHODOLOGY_SHIFT": "Methodology Shift",
}


@dataclass
class SignalScores:
    novelty: float
    impact: float
    confidence: float
    urgency: float

    @property
    def priority(self) -> float:
        return round(0.25 * self.novelty + 0.30 * self.impact + 0.30 * self.confidence + 0.15 * self.urgency)


def _percent(value: Optional[float]) -> float:
    return (value or 0.0) * 100


def classify_topic(source: Source) -> Optional[str]:
    text = f"{source.title or ''} {source.abstract or ''}".lower()
    best, best_score = None, 0
    for topic, keywords in TOPIC_KEYWORDS.items():
        score = sum(1 for k in keywords if k in text)
        if score > best_score:
            best, best_score = topic, score
    return best if best_score >= MIN_TOPIC_MATCHES else None


def classify_signal_type(source: Source) -> str:
    provider = (source.provider or "").lower()
    if provider in INSTITUTIONAL_PROVIDERS:
        return "DATA_RELEASE"
    if provider in POLICY_PROVIDERS:
        return "POLICY_CHANGE"
    abstract = (source.abstract or "").lower()
    if _percent(source.novelty_score) >= 80 and any(k in abstract for k in METHOD_KEYWORDS):
        return "METHODOLOGY_SHIFT"
    return "NEW_EVIDENCE"


def compute_scores(sources: list[Source], now: Optional[datetime] = None) -> SignalScores:
    n = len(sources)
    avg_novelty = sum(_percent(s.novelty_score) for s in sources) / n
    avg_quality = sum(_percent(s.quality_score) for s in sources) / n
    avg_citations = sum(s.citation_count or 0 for s in sources) / n

    institutional = 25 if any((s.provider or "").lower() in INSTITUTIONAL_PROVIDERS for s in sources) else 0
    impact = min(min(avg_citations / 100, 1) * 30 + institutional + avg_quality * 0.3 + 15, 100)
    confidence = min(avg_quality * 0.5 + min(n * 5, 25) + 25, 100)

    cutoff = (now or datetime.utcnow()) - timedelta(days=RECENT_DAYS)
    recent = sum(1 for s in sources if s.created_at is not None and s.created_at >= cutoff)
    urgency = recent / n * 60 + 20

    return SignalScores(round(avg_novelty), round(impact), round(confidence), round(urgency))


def _truncate(text: str, max_length: int) -> str:
    if not text or len(text) <= max_length:
        return text or ""
    return text[: max_length - 3] + "..."


class SignalDetector:
    def __init__(self, min_priority: float = MIN_PRIORITY):
        self.min_priority = min_priority

    def detect(self, run_id: str, sources: list[Source], now: Optional[datetime] = None) -> list[Signal]:
        qualifying = [
            s for s in sources
            if _percent(s.quality_score) >= MIN_QUALITY and _percent(s.novelty_score) >= MIN_NOVELTY
        ]
        if not qualifying:
            logger.info(f"No qualifying sources for signals (quality ≥{MIN_QUALITY}, novelty ≥{MIN_NOVELTY})")
            return []

        groups: dict[tuple[str, str], list[Source]] = OrderedDict()
        for source in qualifying:
            topic = classify_topic(source)
            if topic is None:
                continue
            groups.setdefault((topic, classify_signal_type(source)), []).append(source)

        signals = []
        for (topic, signal_type), members in groups.items():
            scores = compute_scores(members, now)
            if scores.priority < self.min_priority:
                logger.info(f"Skipping {signal_type} signal on {topic} (priority {scores.priority} < {self.min_priority})")
                continue

            members = sorted(members, key=lambda s: -(s.quality_score or 0.0))
            top = members[0]
            avg_quality = round(sum(_percent(s.quality_score) for s in members) / len(members))
            signals.append(
                Signal(
                    run_id=run_id,
                    signal_type=signal_type,
                    topic=topic,
                    title=f"{TYPE_TITLES[signal_type]}: {_truncate(top.title, 60)}",
                    summary=(
                        f"{len(members)} source(s) detected (avg quality: {avg_quality}/100). "
                        f"{_truncate(top.abstract or '', 300)}"
                    ),
                    source_ids=[s.id for s in members],
                    novelty_score=scores.novelty,
                    impact_score=scores.impact,
                    confidence_score=scores.confidence,
                    urgency_score=scores.urgency,
                    priority_score=scores.priority,
                )
            )

        logger.info(f"Detected {len(signals)} signal(s) from {len(qualifying)} qualifying sources")
        return signals
