"""
LLM response cache.

Identical requests (same messages, temperature, max_tokens, JSON flag) return
the stored answer instead of calling a provider again. Keys are SHA-256 of the
canonical JSON of those fields, so they are stable across processes.

Redis is optional. With no Redis URL, or when Redis is unreachable, every
lookup is a miss and the gateway simply calls the provider.
"""

import hashlib
import json
import logging
from typing import Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from trustbrief.services.gateway.models import LLMRequest

logger = logging.getLogger(__name__)

KEY_PREFIX = "llm:v1:"


def build_cache_key(request: LLMRequest) -> str:
    canonical = json.dumps(request.cache_fields(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache(Protocol):
    async def get(self, key: str) -> Optional[dict]:
        ...

    async def set(self, key: str, value: dict) -> None:
        ...


class NullCache:
    """Never stores anything."""

    async def get(self, key: str) -> Optional[dict]:
        return None

    async def set(self, key: str, value: dict) -> None:
        return None


class RedisResponseCache:
    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> "RedisResponseCache":
        return cls(redis.from_url(url, decode_responses=True), ttl_seconds)

    async def get(self, key: str) -> Optional[dict]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding corrupt cache entry {key}")
            return None

    async def set(self, key: str, value: dict) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Cache write failed: {e}")

    async def close(self) -> None:
        await self.client.aclose()
