"""
Fake collaborators and fixture data shared by the tests.

Nothing here talks to the network: LLM providers are scripted per request
purpose, the source-search collaborator is an in-memory fake and the queues
run on fakeredis, worked by burst workers on a helper thread.
"""

import asyncio
from typing import Callable, Optional, Union

from rq import SimpleWorker
from rq.timeouts import TimerDeathPenalty

from trustbrief.services.gateway import CallGateway, CostLedger, HealthRegistry, ProviderResult
from trustbrief.services.source_search import SourceRecord

Response = Union[str, Callable[[object], str], BaseException]


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class ScriptedProvider:
    """
    LLM provider that answers by request purpose.

    responses: purpose → content, callable(request) → content, or an
    exception to raise. Unknown purposes get "{}".
    failures: exceptions raised (in order) before any response is given.
    """

    def __init__(
        self,
        name: str = "openai",
        responses: Optional[dict[str, Response]] = None,
        model: str = "gpt-4o-mini",
        failures: Optional[list[BaseException]] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.model = model
        self.responses = responses or {}
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = []

    async def complete(self, request) -> ProviderResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        content = self.responses.get(request.purpose, "{}")
        if isinstance(content, BaseException):
            raise content
        if callable(content):
            content = content(request)
        return ProviderResult(content=content, model=self.model, tokens_input=1000, tokens_output=200)

    def purposes(self) -> list[str]:
        return [r.purpose for r in self.calls]


class DictCache:
    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value):
        self.store[key] = value


class FakeSourceSearch:
    """Returns the same records for every query unless `by_query` says otherwise."""

    def __init__(self, records: Optional[list[SourceRecord]] = None, by_query: Optional[dict] = None, full_text=None):
        self.records = records or []
        self.by_query = by_query or {}
        self.full_text = full_text or {}
        self.queries: list[str] = []
        self.full_text_requests: list[tuple[str, str]] = []

    async def search(self, query, providers, limit):
        self.queries.append(query)
        return list(self.by_query.get(query, self.records))[:limit]

    async def fetch_full_text(self, provider, external_id):
        self.full_text_requests.append((provider, external_id))
        return self.full_text.get(external_id)


# =============================================================================
# QUEUE WORKERS
# =============================================================================

class InlineWorker(SimpleWorker):
    """rq burst worker that runs on a helper thread (no signal handlers there)."""

    death_penalty_class = TimerDeathPenalty

    def _install_signal_handlers(self):
        pass


async def work_once(queues) -> None:
    """One burst over every queue: runs what is due now, then returns."""
    worker = InlineWorker(queues.listen_order(), connection=queues.connection)
    # Jobs come back to this loop through the installed WorkerRuntime
    await asyncio.to_thread(worker.work, burst=True, with_scheduler=True)


async def drain(queues, timeout: float = 10.0) -> None:
    """Work the queues until nothing is waiting, held, scheduled or running."""

    async def _drain():
        while not queues.is_idle():
            await work_once(queues)
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_drain(), timeout=timeout)


async def no_sleep(_seconds: float) -> None:
    return None


def make_gateway(*providers, cache=None, health=None, max_attempts=3, timeout_small=30.0) -> CallGateway:
    return CallGateway(
        list(providers),
        health or HealthRegistry(failure_threshold=3, cooldown_seconds=60.0),
        cache,
        CostLedger(),
        max_attempts=max_attempts,
        backoff_initial=0.0,
        backoff_max=0.0,
        timeout_small=timeout_small,
        sleep=no_sleep,
    )


# =============================================================================
# CARBON TAX FIXTURE DATA
# =============================================================================

CARBON_QUESTION = "What are the economic impacts of carbon taxes?"

# Listed in the order selection ranks them, so [SRC-n] follows list order
CARBON_SOURCES = [
    SourceRecord(
        provider="openalex",
        external_id="W1",
        doi="10.1000/carbon.1",
        title="Carbon taxes and emissions in Europe",
        abstract=(
            "We study carbon taxes in European countries using a panel of 30 economies. "
            "Carbon taxes reduced emissions by 5 percent in the first decade. "
            "Revenue from carbon taxes funded lower income taxes in several countries."
        ),
        year=2023,
        citation_count=120,
        open_access=True,
    ),
    SourceRecord(
        provider="arxiv",
        external_id="A3",
        title="Carbon tax revenue recycling",
        abstract=(
            "Revenue recycling through dividends offset the regressive impact of carbon taxes for low income households. "
            "Public support for carbon taxes increased when revenue was returned as dividends."
        ),
        year=2024,
        citation_count=15,
        open_access=True,
    ),
    SourceRecord(
        provider="crossref",
        external_id="C2",
        doi="10.1000/carbon.2",
        title="Economic effects of carbon pricing",
        abstract=(
            "Carbon pricing raised household energy costs by 3 percent on average. "
            "The study uses survey data from 12000 households."
        ),
        year=2022,
        citation_count=80,
        open_access=False,
    ),
]

CARBON_ANALYSIS = (
    "Carbon taxes reduced emissions by 5 percent in the first decade [SRC-1]. "
    "Carbon pricing raised household energy costs by 3 percent on average [SRC-3]. "
    "Revenue recycling through dividends offset the regressive impact of carbon taxes "
    "for low income households [SRC-2]. "
    "Public support for carbon taxes increased when revenue was returned as dividends [SRC-2]."
)

# Cites sources that do not exist and says nothing the sources say
WEAK_ANALYSIS = (
    "Wind turbines caused a large decline in regional bird populations [SRC-7]. "
    "Nuclear plants will double wholesale electricity prices by 2040 [SRC-8]. "
    "Solar subsidies reduced unemployment across rural districts [SRC-9]."
)

EXTRACTION_JSON = (
    '{"findings": ["Carbon taxes reduced emissions"], "methods": "Panel regression", '
    '"results": "Emissions fell", "confidence": 0.8}'
)


def carbon_provider(analysis: str = CARBON_ANALYSIS, **responses) -> ScriptedProvider:
    return ScriptedProvider(
        responses={
            "source_extraction": EXTRACTION_JSON,
            "synthesis": analysis,
            "adversarial_synthesis": analysis,
            **responses,
        }
    )
