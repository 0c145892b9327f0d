"""
Stage handlers.

WHAT THIS DOES:
One method per pipeline stage. Each does the stage's work against the
run's database session and returns a StageOutcome: the gate's Decision plus
details for the decision log. Handlers never touch `run.status` or
`run.decision_log`; the orchestrator owns both.

    DISCOVER     search the source collaborator, store new sources
    ENRICH       quality / novelty / identity key per source
    DEDUPLICATE  collapse the same work returned by several providers
    SELECT       rank, diversify, keep the top N → run.source_ids
    EXTRACT      findings / methods / results per source (deep: full text)
    SYNTHESIZE   cited analysis (brief, council, or adversarial rewrite)
    VERIFY       claims → citations → evidence → contradictions → trust
    RENDER       markdown brief
    PUBLISH      publish verified claims, refuse unresolvable citations

Errors propagate: the queue retries transient ones and dead-letters the rest.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from trustbrief.errors import SourceSearchError
from trustbrief.models.claim import Claim, ClaimStatus, EvidenceSpan
from trustbrief.models.run import AnalysisRun
from trustbrief.models.source import Source
from trustbrief.services.pipeline.decisions import Decision, Proceed, Reject
from trustbrief.services.pipeline.gates import (
    GateConfig,
    assess_discovery,
    assess_extraction,
    assess_selection,
    assess_verification,
)
from trustbrief.services.pipeline.states import RunStatus
from trustbrief.services.query_broadener import QueryBroadener
from trustbrief.services.queue.payloads import (
    DiscoverPayload,
    ExtractPayload,
    JobPayload,
    SynthesizePayload,
)
from trustbrief.services.renderer import render_brief
from trustbrief.services.run_store import RunStore
from trustbrief.services.scoring import (
    find_duplicates,
    identity_key,
    score_novelty,
    score_quality,
    select_sources,
)
from trustbrief.services.source_reader import ReadableSource, SourceReader
from trustbrief.services.source_search import SourceSearch
from trustbrief.services.synthesizer import SynthesisSource, Synthesizer
from trustbrief.services.trust import (
    CitationVerifier,
    ClaimExtractor,
    Contradiction,
    EvidenceBinder,
    SourceText,
    detect_contradictions,
    score_claim,
    score_run,
)
from trustbrief.services.trust.lexical import cited_indices

logger = logging.getLogger(__name__)

MAX_FOCUS_CLAIMS = 5


@dataclass
class StageOutcome:
    decision: Decision
    details: dict = field(default_factory=dict)


def _source_texts(sources: list[Source]) -> list[SourceText]:
    return [SourceText(id=s.id, text=s.text, quality=s.quality_score or 0.0) for s in sources]


def _synthesis_sources(sources: list[Source]) -> list[SynthesisSource]:
    return [
        SynthesisSource(
            index=i,
            title=s.title,
            year=s.year,
            text=s.text,
            findings=list((s.extraction or {}).get("findings", [])),
        )
        for i, s in enumerate(sources, start=1)
    ]


class StageRunner:
    def __init__(
        self,
        search: SourceSearch,
        broadener: QueryBroadener,
        reader: SourceReader,
        synthesizer: Synthesizer,
        claim_extractor: ClaimExtractor,
        citation_verifier: CitationVerifier,
        evidence_binder: EvidenceBinder,
        gates: Optional[GateConfig] = None,
        min_source_quality: float = 0.2,
    ):
        self.search = search
        self.broadener = broadener
        self.reader = reader
        self.synthesizer = synthesizer
        self.claim_extractor = claim_extractor
        self.citation_verifier = citation_verifier
        self.evidence_binder = evidence_binder
        self.gates = gates or GateConfig()
        self.min_source_quality = min_source_quality

        self._handlers = {
            RunStatus.DISCOVER: self.discover,
            RunStatus.ENRICH: self.enrich,
            RunStatus.DEDUPLICATE: self.deduplicate,
            RunStatus.SELECT: self.select,
            RunStatus.EXTRACT: self.extract,
            RunStatus.SYNTHESIZE: self.synthesize,
            RunStatus.VERIFY: self.verify,
            RunStatus.RENDER: self.render,
            RunStatus.PUBLISH: self.publish,
        }

    async def run(self, stage: RunStatus, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        logger.info(f"Run {run.id[:8]}: {stage.value} starting")
        outcome = await self._handlers[stage](store, run, payload)
        logger.info(f"Run {run.id[:8]}: {stage.value} → {type(outcome.decision).__name__} ({outcome.decision.reason})")
        return outcome

    # -------------------------------------------------------------------------
    # DISCOVER
    # -------------------------------------------------------------------------

    async def discover(self, store: RunStore, run: AnalysisRun, payload: DiscoverPayload) -> StageOutcome:
        queries = list(payload.terms) if payload.broadened and payload.terms else [run.question]

        new_count = 0
        for query in queries:
            records = await self.search.search(query, list(run.providers or []), run.max_sources)
            new_count += await store.save_sources(run.id, records)

        run.discover_attempts += 1
        if payload.broadened:
            run.search_terms = list(queries)
        total = await store.count_sources(run.id)

        broadened_terms: list[str] = []
        if total < self.gates.min_sources and run.discover_attempts < 2:
            broadened_terms = await self.broadener.broaden(run.question, correlation_id=run.correlation_id)

        decision = assess_discovery(total, run.discover_attempts, broadened_terms, self.gates)
        return StageOutcome(decision, {"queries": queries, "new_sources": new_count, "total_sources": total})

    # -------------------------------------------------------------------------
    # ENRICH / DEDUPLICATE / SELECT
    # -------------------------------------------------------------------------

    async def enrich(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        sources = await store.sources_for_run(run.id)
        for source in sources:
            source.quality_score = score_quality(source)
            source.novelty_score = score_novelty(source)
            source.identity_key = identity_key(source)
        return StageOutcome(Proceed(f"scored {len(sources)} sources"), {"scored": len(sources)})

    async def deduplicate(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        sources = await store.sources_for_run(run.id)
        duplicates = find_duplicates(sources)
        for source in sources:
            source.duplicate_of = duplicates.get(source.id)
        unique = len(sources) - len(duplicates)
        return StageOutcome(
            Proceed(f"{len(duplicates)} duplicates collapsed, {unique} unique sources"),
            {"duplicates": len(duplicates), "unique": unique},
        )

    async def select(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        candidates = await store.sources_for_run(run.id, include_duplicates=False)
        selected = select_sources(candidates, run.max_sources, self.min_source_quality)
        chosen = {s.id for s in selected}
        for source in candidates:
            source.selected = source.id in chosen
        run.source_ids = [s.id for s in selected]
        return StageOutcome(
            assess_selection(len(selected)),
            {"candidates": len(candidates), "selected": len(selected), "providers": sorted({s.provider for s in selected})},
        )

    # -------------------------------------------------------------------------
    # EXTRACT
    # -------------------------------------------------------------------------

    async def extract(self, store: RunStore, run: AnalysisRun, payload: ExtractPayload) -> StageOutcome:
        sources = await store.consumed_sources(run)
        deep = bool(payload.deep_source_ids)
        targets = [s for s in sources if s.id in set(payload.deep_source_ids)] if deep else sources

        if deep:
            for source in targets:
                await self._fetch_full_text(source)
                source.deep_extracted = True
            run.deep_extraction_done = True

        extractions = await self.reader.read_many(
            [ReadableSource(id=s.id, title=s.title, text=s.text) for s in targets],
            correlation_id=run.correlation_id,
        )
        by_id = {e.source_id: e for e in extractions}
        for source in targets:
            extraction = by_id[source.id]
            source.extraction = extraction.as_dict()
            source.extraction_confidence = extraction.confidence

        confidences = {s.id: s.extraction_confidence or 0.0 for s in sources}
        decision = assess_extraction(confidences, run.deep_extraction_done, self.gates)
        return StageOutcome(decision, {"extracted": len(targets), "deep": deep})

    async def _fetch_full_text(self, source: Source) -> None:
        if source.full_text:
            return
        try:
            text = await self.search.fetch_full_text(source.provider, source.external_id)
        except SourceSearchError as e:
            logger.warning(f"Full text unavailable for {source.provider}:{source.external_id}, keeping abstract: {e}")
            return
        if text:
            source.full_text = text

    # -------------------------------------------------------------------------
    # SYNTHESIZE
    # -------------------------------------------------------------------------

    async def synthesize(self, store: RunStore, run: AnalysisRun, payload: SynthesizePayload) -> StageOutcome:
        sources = _synthesis_sources(await store.consumed_sources(run))

        if payload.adversarial:
            text = await self.synthesizer.resynthesize_adversarially(
                run.question,
                sources,
                run.analysis_text or "",
                list(payload.focus),
                correlation_id=run.correlation_id,
            )
            run.adversarial_passes += 1
        else:
            text = await self.synthesizer.synthesize(
                run.question, sources, mode=run.mode, correlation_id=run.correlation_id
            )

        run.analysis_text = text
        mode = "adversarial" if payload.adversarial else run.mode
        return StageOutcome(Proceed(f"{mode} analysis written"), {"mode": mode, "characters": len(text)})

    # -------------------------------------------------------------------------
    # VERIFY
    # -------------------------------------------------------------------------

    async def verify(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        cid = run.correlation_id
        await store.supersede_claims(run.id)

        sources = await store.consumed_sources(run)
        texts = _source_texts(sources)
        quality_of = {s.id: s.quality for s in texts}

        extracted = await self.claim_extractor.extract(run.analysis_text or "", correlation_id=cid)
        report = self.citation_verifier.verify(extracted, texts)
        report = await self.citation_verifier.adjudicate(report, extracted, texts, correlation_id=cid)
        if report.hallucinated:
            logger.warning(f"Run {run.id[:8]}: analysis cites unknown sources {report.hallucinated}")

        contradictions = detect_contradictions([c.text for c in extracted], texts)
        contradicted: dict[int, Contradiction] = {}
        for contradiction in contradictions:
            contradicted.setdefault(contradiction.claim_index, contradiction)

        claim_ids = [str(uuid.uuid4()) for _ in extracted]
        scores = []
        weak: list[tuple[float, str]] = []
        for i, claim in enumerate(extracted):
            spans = await self.evidence_binder.bind(claim.text, texts, correlation_id=cid)
            checks = report.for_claim(i)
            qualities = [quality_of[s.source_id] for s in spans]
            if not qualities:
                qualities = [quality_of[c.source_id] for c in checks if c.source_id in quality_of]

            contradiction = contradicted.get(i)
            score = score_claim(
                [s.strength for s in spans],
                qualities,
                cited=report.has_valid_citation(i),
                has_contradiction=contradiction is not None,
            )
            scores.append(score)
            if score.trust < self.gates.trust_floor or contradiction is not None:
                weak.append((score.trust, claim.text))

            other = contradiction.other_claim_index if contradiction is not None else None
            await store.add_claim(
                Claim(
                    id=claim_ids[i],
                    run_id=run.id,
                    text=claim.text,
                    span_start=claim.span_start,
                    span_end=claim.span_end,
                    claim_type=claim.claim_type,
                    category=claim.category,
                    confidence=claim.confidence,
                    extracted_by=claim.extracted_by,
                    cited_source_ids=[c.source_id for c in checks if c.source_id],
                    citation_verdicts=[
                        {"source": f"SRC-{c.source_index}", "verdict": c.verdict, "score": c.score,
                         "cherry_picking": c.cherry_picking}
                        for c in checks
                    ],
                    trust_score=round(score.trust, 4),
                    evidence_count=len(spans),
                    has_contradiction=contradiction is not None,
                    contradicted_by=claim_ids[other] if other is not None else None,
                    verification_status=ClaimStatus.VERIFIED if spans else ClaimStatus.UNSUPPORTED,
                ),
                [
                    EvidenceSpan(
                        source_id=s.source_id,
                        start_pos=s.start,
                        end_pos=s.end,
                        text=s.text,
                        context_before=s.context_before,
                        context_after=s.context_after,
                        relevance_score=round(s.relevance, 4),
                        strength_score=round(s.strength, 4),
                        evidence_type=s.evidence_type,
                    )
                    for s in spans
                ],
            )

        metrics = score_run(scores)
        run.trust_score = round(metrics.trust_score, 4)
        run.quality_score = round(metrics.quality_score, 4)
        run.evidence_strength = round(metrics.evidence_strength, 4)
        run.contradiction_rate = round(metrics.contradiction_rate, 4)
        run.citation_integrity = round(report.integrity, 4)
        run.claim_count = metrics.claim_count
        run.evidence_count = metrics.evidence_count

        focus = [text for _, text in sorted(weak)[:MAX_FOCUS_CLAIMS]]
        decision = assess_verification(
            metrics.trust_score, metrics.contradiction_rate, run.adversarial_passes, focus, self.gates
        )
        return StageOutcome(
            decision,
            {
                "claims": metrics.claim_count,
                "evidence_spans": metrics.evidence_count,
                "trust_score": run.trust_score,
                "contradiction_rate": run.contradiction_rate,
                "citation_integrity": run.citation_integrity,
                "hallucinated_citations": report.hallucinated,
            },
        )

    # -------------------------------------------------------------------------
    # RENDER / PUBLISH
    # -------------------------------------------------------------------------

    async def render(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        claims = await store.list_claims(run.id)
        sources = await store.consumed_sources(run)
        run.rendered_output = render_brief(run, claims, sources)
        return StageOutcome(Proceed("brief rendered"), {"characters": len(run.rendered_output)})

    async def publish(self, store: RunStore, run: AnalysisRun, payload: JobPayload) -> StageOutcome:
        # Every [SRC-n] a reader sees must resolve to a consumed source
        unresolved = [n for n in cited_indices(run.analysis_text or "") if not 1 <= n <= len(run.source_ids or [])]
        if unresolved:
            return StageOutcome(
                Reject(f"analysis cites sources that were not consumed: {', '.join(f'SRC-{n}' for n in unresolved)}"),
                {"unresolved_citations": unresolved},
            )

        published = 0
        for claim in await store.list_claims(run.id):
            if claim.verification_status == ClaimStatus.VERIFIED and claim.evidence:
                claim.verification_status = ClaimStatus.PUBLISHED
                published += 1
        return StageOutcome(Proceed(f"{published} claims published"), {"published_claims": published})
