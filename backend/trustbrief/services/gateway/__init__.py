# Call Gateway: unified, cached, failover-aware LLM access
from trustbrief.services.gateway.cache import NullCache, RedisResponseCache, build_cache_key
from trustbrief.services.gateway.costs import CostLedger, compute_cost
from trustbrief.services.gateway.gateway import CallGateway
from trustbrief.services.gateway.health import HealthRegistry, ProviderHealth
from trustbrief.services.gateway.models import LLMRequest, LLMResponse, Message, ProviderResult
from trustbrief.services.gateway.providers import AnthropicProvider, LLMProvider, OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "CallGateway",
    "CostLedger",
    "HealthRegistry",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "Message",
    "NullCache",
    "OpenAIProvider",
    "ProviderHealth",
    "ProviderResult",
    "RedisResponseCache",
    "build_cache_key",
    "compute_cost",
]
