"""
Call Gateway - the single entry point for LLM calls.

WHAT THIS DOES:
Takes an LLMRequest and returns an LLMResponse, hiding which provider
answered and how many tries it took.

HOW IT WORKS:
1. Cache lookup (deterministic key). Hit → return immediately, cost 0.
2. For each provider in configured order:
   a. Skip it if its circuit is open
   b. Call it under a timeout (short for small requests, long for large ones)
   c. Retry retryable failures with exponential backoff + jitter (tenacity)
   d. Every failed attempt is recorded in the HealthRegistry
   e. Exhausted or non-retryable → fail over to the next provider
3. Success → record cost in the ledger, write the cache in the background
4. Nothing left → AllProvidersFailedError

USAGE:
    gateway = CallGateway([OpenAIProvider(...), AnthropicProvider(...)], HealthRegistry())
    response = await gateway.call(LLMRequest.simple(system, user, json_mode=True))
    data = response.json()
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from trustbrief.errors import AllProvidersFailedError, ProviderError, ProviderTimeoutError
from trustbrief.services.gateway.cache import NullCache, ResponseCache, build_cache_key
from trustbrief.services.gateway.costs import CostEntry, CostLedger, compute_cost
from trustbrief.services.gateway.health import HealthRegistry
from trustbrief.services.gateway.models import LLMRequest, LLMResponse, ProviderResult
from trustbrief.services.gateway.providers import LLMProvider

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class CallGateway:
    def __init__(
        self,
        providers: list[LLMProvider],
        health: HealthRegistry,
        cache: Optional[ResponseCache] = None,
        ledger: Optional[CostLedger] = None,
        *,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 20.0,
        timeout_small: float = 30.0,
        timeout_large: float = 120.0,
        large_request_tokens: int = 2000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = providers
        self.health = health
        self.cache = cache or NullCache()
        self.ledger = ledger or CostLedger()
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.timeout_small = timeout_small
        self.timeout_large = timeout_large
        self.large_request_tokens = large_request_tokens
        self._sleep = sleep
        self._pending_writes: set[asyncio.Task] = set()

    async def call(self, request: LLMRequest) -> LLMResponse:
        cache_key = build_cache_key(request) if request.use_cache else None
        if cache_key:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"LLM cache hit ({request.purpose})")
                return LLMResponse(**cached, cost_usd=0.0, cached=True, latency_ms=0.0, attempts=0)

        errors: dict[str, str] = {}
        skipped: list[str] = []
        for provider in self.providers:
            if not self.health.try_acquire(provider.name):
                logger.warning(f"Skipping {provider.name}: circuit open")
                errors[provider.name] = "circuit open"
                skipped.append(provider.name)
                continue

            started = time.perf_counter()
            attempts = 0
            try:
                async for attempt in self._retrying(provider):
                    with attempt:
                        attempts += 1
                        result = await self._attempt(provider, request)
            except ProviderError as e:
                logger.warning(f"Provider {provider.name} failed after {attempts} attempt(s): {e}")
                errors[provider.name] = str(e)
                skipped.append(provider.name)
                continue

            response = self._finish(provider, request, result, started, attempts, skipped)
            if cache_key:
                self._write_cache_later(cache_key, response)
            return response

        logger.error(f"All LLM providers failed for {request.purpose}: {errors}")
        raise AllProvidersFailedError(errors)

    def _retrying(self, provider: LLMProvider) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(multiplier=self.backoff_initial, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(provider.name),
            reraise=True,
        )

    def _log_retry(self, provider: str) -> Callable[[RetryCallState], None]:
        def log(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info(f"Retrying {provider} (attempt {state.attempt_number + 1}/{self.max_attempts}) after: {exc}")
        return log

    def timeout_for(self, request: LLMRequest) -> float:
        if request.max_tokens > self.large_request_tokens:
            return self.timeout_large
        return self.timeout_small

    async def _attempt(self, provider: LLMProvider, request: LLMRequest) -> ProviderResult:
        # The circuit may have opened during earlier attempts of this same call
        if self.health.is_open(provider.name):
            raise ProviderError(provider.name, "circuit open", retryable=False)

        timeout = self.timeout_for(request)
        try:
            result = await asyncio.wait_for(provider.complete(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = ProviderTimeoutError(provider.name, timeout)
            self.health.record_failure(provider.name, str(error))
            raise error from e
        except ProviderError as e:
            self.health.record_failure(provider.name, str(e))
            raise

        self.health.record_success(provider.name)
        return result

    def _finish(
        self,
        provider: LLMProvider,
        request: LLMRequest,
        result: ProviderResult,
        started: float,
        attempts: int,
        skipped: list[str],
    ) -> LLMResponse:
        cost = compute_cost(result.model, result.tokens_input, result.tokens_output)
        response = LLMResponse(
            content=result.content,
            provider=provider.name,
            model=result.model,
            tokens_input=result.tokens_input,
            tokens_output=result.tokens_output,
            cost_usd=cost,
            latency_ms=(time.perf_counter() - started) * 1000,
            attempts=attempts,
            skipped_providers=list(skipped),
        )
        self.ledger.record(
            CostEntry(
                correlation_id=request.correlation_id or "-",
                purpose=request.purpose,
                provider=provider.name,
                model=result.model,
                tokens_input=result.tokens_input,
                tokens_output=result.tokens_output,
                cost_usd=cost,
            )
        )
        logger.info(
            f"LLM call ok: {provider.name}/{result.model} {request.purpose} "
            f"({response.latency_ms:.0f}ms, ${cost:.5f})"
        )
        return response

    def _write_cache_later(self, key: str, response: LLMResponse) -> None:
        task = asyncio.create_task(self.cache.set(key, response.to_cache()))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def drain(self) -> None:
        """Wait for background cache writes (shutdown, tests)."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
