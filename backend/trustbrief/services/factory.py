"""
Wires the services together from Settings.

    services = build_services(settings, session_factory)
    await services.queues.enqueue(...)        # API process: produce only
    services.orchestrator.register_workers()  # worker process: see trustbrief.worker
    ...
    await services.close()

Tests pass their own providers and source search; production builds the
OpenAI / Anthropic adapters from the configured keys (a provider without a
key is left out), the HTTP source search client and the Redis connection
backing the job queues.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustbrief.config import Settings
from trustbrief.services.council import Council
from trustbrief.services.gateway import (
    AnthropicProvider,
    CallGateway,
    CostLedger,
    HealthRegistry,
    LLMProvider,
    NullCache,
    OpenAIProvider,
    RedisResponseCache,
)
from trustbrief.services.pipeline import GateConfig, PipelineOrchestrator, StageRunner
from trustbrief.services.query_broadener import QueryBroadener
from trustbrief.services.queue import (
    BackoffType,
    JobRecorder,
    QueueManager,
    RetryPolicy,
    get_redis_connection,
)
from trustbrief.services.source_reader import SourceReader
from trustbrief.services.source_search import HttpSourceSearch, SourceSearch
from trustbrief.services.synthesizer import Synthesizer
from trustbrief.services.trust import CitationVerifier, ClaimExtractor, EvidenceBinder

logger = logging.getLogger(__name__)


@dataclass
class Services:
    gateway: CallGateway
    queues: QueueManager
    orchestrator: PipelineOrchestrator
    ledger: CostLedger
    health: HealthRegistry
    _closables: list = field(default_factory=list)

    async def close(self) -> None:
        await self.gateway.drain()
        for resource in self._closables:
            await resource.close()


def build_providers(settings: Settings) -> list[LLMProvider]:
    available = {}
    if settings.openai_api_key:
        available["openai"] = lambda: OpenAIProvider(settings.openai_api_key, settings.openai_model)
    if settings.anthropic_api_key:
        available["anthropic"] = lambda: AnthropicProvider(settings.anthropic_api_key, settings.anthropic_model)

    providers = [available[name]() for name in settings.provider_order if name in available]
    if not providers:
        logger.warning("No LLM provider configured; every LLM call will fail over to deterministic fallbacks")
    return providers


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    providers: Optional[list[LLMProvider]] = None,
    search: Optional[SourceSearch] = None,
    cache=None,
    redis_connection=None,
) -> Services:
    closables = []

    if cache is None:
        if settings.redis_url:
            cache = RedisResponseCache.from_url(settings.redis_url, settings.llm_cache_ttl_seconds)
            closables.append(cache)
        else:
            cache = NullCache()

    ledger = CostLedger()
    health = HealthRegistry(settings.circuit_failure_threshold, settings.circuit_cooldown_seconds)
    gateway = CallGateway(
        providers if providers is not None else build_providers(settings),
        health,
        cache,
        ledger,
        max_attempts=settings.llm_max_attempts,
        backoff_initial=settings.llm_backoff_initial,
        backoff_max=settings.llm_backoff_max,
        timeout_small=settings.llm_timeout_small,
        timeout_large=settings.llm_timeout_large,
        large_request_tokens=settings.llm_large_request_tokens,
    )

    queues = QueueManager(
        redis_connection if redis_connection is not None else get_redis_connection(settings.redis_url),
        default_retry=RetryPolicy(
            max_attempts=settings.queue_max_attempts,
            backoff=BackoffType.EXPONENTIAL,
            base_delay=settings.queue_backoff_base,
            max_delay=settings.queue_backoff_max,
        ),
        default_concurrency=settings.queue_concurrency,
        idempotency_window=settings.queue_idempotency_window,
        job_timeout=settings.queue_job_timeout,
        recorder=JobRecorder(session_factory),
    )

    if search is None:
        search = HttpSourceSearch(settings.source_search_url, settings.source_search_timeout)
        closables.append(search)

    runner = StageRunner(
        search=search,
        broadener=QueryBroadener(gateway),
        reader=SourceReader(gateway, concurrency=settings.queue_concurrency),
        synthesizer=Synthesizer(gateway, council=Council(gateway)),
        claim_extractor=ClaimExtractor(
            gateway,
            min_claims=settings.claims_min_count,
            min_confidence=settings.claims_min_confidence,
            max_claims=settings.claims_max_count,
        ),
        citation_verifier=CitationVerifier(gateway),
        evidence_binder=EvidenceBinder(
            gateway,
            min_relevance=settings.evidence_min_relevance,
            min_strength=settings.evidence_min_strength,
            max_spans=settings.evidence_max_spans,
        ),
        gates=GateConfig.from_settings(settings),
        min_source_quality=settings.min_source_quality,
    )
    orchestrator = PipelineOrchestrator(
        session_factory,
        queues,
        runner,
        ledger=ledger,
        default_max_sources=settings.default_max_sources,
    )
    return Services(gateway, queues, orchestrator, ledger, health, closables)
