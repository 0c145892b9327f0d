"""
Tests for the call gateway: failover, retries, circuit breaking, caching
and cost accounting.

Providers are scripted and backoff sleeps are no-ops, so nothing here
waits on a real clock except the timeout test.
"""

import asyncio
import warnings

import pytest

from fakes import DictCache, ScriptedProvider, make_gateway
from trustbrief.errors import AllProvidersFailedError, ProviderError, RateLimitError
from trustbrief.services.gateway import HealthRegistry, LLMRequest, compute_cost


def _request(**kwargs) -> LLMRequest:
    return LLMRequest.simple("You are terse.", "Say hello.", **kwargs)


# =============================================================================
# FAILOVER AND RETRIES
# =============================================================================

@pytest.mark.asyncio
async def test_non_retryable_error_fails_over_immediately():
    primary = ScriptedProvider("openai", failures=[ProviderError("openai", "bad request", status_code=400, retryable=False)])
    secondary = ScriptedProvider("anthropic", responses={"general": "hello"}, model="claude-3-5-haiku")
    gateway = make_gateway(primary, secondary)

    response = await gateway.call(_request())

    assert response.content == "hello"
    assert response.provider == "anthropic"
    assert response.skipped_providers == ["openai"]
    assert len(primary.calls) == 1


@pytest.mark.asyncio
async def test_retryable_error_is_retried_on_the_same_provider():
    primary = ScriptedProvider("openai", responses={"general": "hello"}, failures=[RateLimitError("openai")])
    gateway = make_gateway(primary)

    response = await gateway.call(_request())

    assert response.provider == "openai"
    assert response.attempts == 2
    assert gateway.health.state("openai").consecutive_failures == 0
    assert gateway.health.state("openai").total_failures == 1


@pytest.mark.asyncio
async def test_exhausted_retries_fail_over_and_only_the_success_is_costed():
    primary = ScriptedProvider("openai", responses={"general": RateLimitError("openai")})
    secondary = ScriptedProvider("anthropic", responses={"general": "hello"}, model="claude-3-5-haiku")
    gateway = make_gateway(primary, secondary, max_attempts=2)

    response = await gateway.call(_request(correlation_id="run-1"))

    assert response.provider == "anthropic"
    assert len(primary.calls) == 2
    assert gateway.ledger.total_for("run-1") == pytest.approx(response.cost_usd)
    assert response.cost_usd > 0


@pytest.mark.asyncio
async def test_all_providers_failing_raises():
    primary = ScriptedProvider("openai", responses={"general": RateLimitError("openai")})
    secondary = ScriptedProvider("anthropic", responses={"general": ProviderError("anthropic", "overloaded")})
    gateway = make_gateway(primary, secondary, max_attempts=2)

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await gateway.call(_request())

    assert set(exc_info.value.errors) == {"openai", "anthropic"}
    assert len(primary.calls) == 2
    assert len(secondary.calls) == 2


@pytest.mark.asyncio
async def test_slow_provider_times_out_and_fails_over():
    slow = ScriptedProvider("openai", responses={"general": "late"}, delay=0.5)
    fast = ScriptedProvider("anthropic", responses={"general": "on time"})
    gateway = make_gateway(slow, fast, max_attempts=1, timeout_small=0.05)

    response = await gateway.call(_request())

    assert response.content == "on time"
    assert "timed out" in gateway.health.state("openai").last_error


def test_large_requests_get_the_long_timeout():
    gateway = make_gateway()
    assert gateway.timeout_for(_request(max_tokens=500)) == gateway.timeout_small
    assert gateway.timeout_for(_request(max_tokens=2500)) == gateway.timeout_large


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

@pytest.mark.asyncio
async def test_circuit_opens_after_consecutive_failures_and_recovers():
    now = [1000.0]
    health = HealthRegistry(failure_threshold=3, cooldown_seconds=60.0, clock=lambda: now[0])
    flaky = ScriptedProvider("openai", failures=[RateLimitError("openai")] * 3, responses={"general": "back"})
    backup = ScriptedProvider("anthropic", responses={"general": "backup"})
    gateway = make_gateway(flaky, backup, health=health, max_attempts=3)

    first = await gateway.call(_request(use_cache=False))
    assert first.provider == "anthropic"
    assert health.snapshot()["openai"]["available"] is False

    # Open circuit: the provider is not even called
    second = await gateway.call(_request(use_cache=False))
    assert second.provider == "anthropic"
    assert len(flaky.calls) == 3

    # After the cooldown one call goes through and closes the circuit
    now[0] += 61
    third = await gateway.call(_request(use_cache=False))
    assert third.provider == "openai"
    assert third.content == "back"
    assert health.snapshot()["openai"]["available"] is True


def test_half_open_circuit_lets_a_single_trial_through():
    now = [1000.0]
    health = HealthRegistry(failure_threshold=2, cooldown_seconds=60.0, clock=lambda: now[0])
    health.record_failure("openai", "rate limited")
    health.record_failure("openai", "rate limited")
    assert not health.try_acquire("openai")

    now[0] += 61
    assert health.try_acquire("openai")
    # Every other caller keeps skipping the provider while the trial is out
    assert not health.try_acquire("openai")
    assert health.snapshot()["openai"]["available"] is False

    health.record_failure("openai", "still down")
    now[0] += 1
    assert not health.try_acquire("openai")

    now[0] += 61
    assert health.try_acquire("openai")
    health.record_success("openai")
    assert health.try_acquire("openai")
    assert health.try_acquire("openai")


def test_unreported_trial_expires_after_a_cooldown():
    now = [1000.0]
    health = HealthRegistry(failure_threshold=1, cooldown_seconds=60.0, clock=lambda: now[0])
    health.record_failure("openai", "timeout")
    now[0] += 61
    assert health.try_acquire("openai")

    now[0] += 30
    assert not health.try_acquire("openai")
    now[0] += 31
    assert health.try_acquire("openai")


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_half_open_trial():
    now = [1000.0]
    health = HealthRegistry(failure_threshold=3, cooldown_seconds=60.0, clock=lambda: now[0])
    for _ in range(3):
        health.record_failure("openai", "rate limited")
    now[0] += 61
    recovering = ScriptedProvider("openai", responses={"general": "back"}, delay=0.05)
    backup = ScriptedProvider("anthropic", responses={"general": "backup"})
    gateway = make_gateway(recovering, backup, health=health)

    responses = await asyncio.gather(*(gateway.call(_request(use_cache=False)) for _ in range(3)))

    assert sorted(r.provider for r in responses) == ["anthropic", "anthropic", "openai"]
    assert len(recovering.calls) == 1
    assert health.snapshot()["openai"]["available"] is True


def test_retry_backoff_uses_current_tenacity_arguments():
    gateway = make_gateway(ScriptedProvider("openai"))

    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        retrying = gateway._retrying(gateway.providers[0])

    assert retrying.stop is not None


# =============================================================================
# CACHE AND COSTS
# =============================================================================

@pytest.mark.asyncio
async def test_identical_request_is_served_from_cache():
    provider = ScriptedProvider("openai", responses={"general": "hello"})
    gateway = make_gateway(provider, cache=DictCache())

    first = await gateway.call(_request(correlation_id="run-1"))
    await gateway.drain()
    second = await gateway.call(_request(correlation_id="run-1"))

    assert not first.cached
    assert second.cached
    assert second.content == "hello"
    assert second.cost_usd == 0.0
    assert len(provider.calls) == 1
    assert gateway.ledger.total_for("run-1") == first.cost_usd


@pytest.mark.asyncio
async def test_cache_can_be_bypassed():
    provider = ScriptedProvider("openai", responses={"general": "hello"})
    gateway = make_gateway(provider, cache=DictCache())

    await gateway.call(_request(use_cache=False))
    await gateway.drain()
    await gateway.call(_request(use_cache=False))

    assert len(provider.calls) == 2
    assert gateway.cache.store == {}


@pytest.mark.asyncio
async def test_costs_are_recorded_per_correlation_id_and_purpose():
    provider = ScriptedProvider("openai", responses={"synthesis": "text", "claim_extraction": "{}"})
    gateway = make_gateway(provider)

    await gateway.call(_request(purpose="synthesis", correlation_id="run-1"))
    await gateway.call(_request(purpose="claim_extraction", correlation_id="run-1"))
    await gateway.call(_request(purpose="synthesis", correlation_id="run-2"))

    # gpt-4o-mini: 1000 input and 200 output tokens per scripted call
    assert gateway.ledger.total_for("run-1") == pytest.approx(0.00054)
    assert set(gateway.ledger.by_purpose("run-1")) == {"synthesis", "claim_extraction"}
    assert gateway.ledger.total_for("run-2") == pytest.approx(0.00027)


def test_dated_model_names_use_the_longest_price_prefix():
    assert compute_cost("gpt-4o-2024-08-06", 1000, 1000) == pytest.approx(0.02)
    assert compute_cost("gpt-4o-mini-2024-07-18", 1000, 1000) == pytest.approx(0.00075)
    assert compute_cost("some-new-model", 1000, 0) == pytest.approx(0.005)
