"""
Request/response types for the call gateway.

Every LLM call in the system goes through CallGateway.call(LLMRequest) and
gets an LLMResponse back, regardless of which provider answered.
"""

import json
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass
class LLMRequest:
    messages: list[Message]
    temperature: float = 0.2
    max_tokens: int = 1500
    # Ask the provider for a single JSON object
    json_mode: bool = False
    # What the call is for ("claim_extraction", "synthesis", ...); used in cost reports
    purpose: str = "general"
    correlation_id: Optional[str] = None
    use_cache: bool = True

    def cache_fields(self) -> dict:
        """The parts of the request that determine the answer."""
        return {
            "messages": [[m.role, m.content] for m in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "json_mode": self.json_mode,
        }

    @classmethod
    def simple(cls, system: str, user: str, **kwargs) -> "LLMRequest":
        return cls(messages=[Message("system", system), Message("user", user)], **kwargs)


@dataclass
class ProviderResult:
    """What a provider adapter returns. The gateway adds cost and timing."""
    content: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0


@dataclass
class LLMResponse:
    content: str
    provider: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0
    cost_usd: float = 0.0
    cached: bool = False
    latency_ms: float = 0.0
    attempts: int = 1
    skipped_providers: list[str] = field(default_factory=list)

    def to_cache(self) -> dict:
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
        }

    def json(self) -> dict:
        """Parse the content as a JSON object. Raises ValueError if it is not one."""
        return parse_json_object(self.content)


def parse_json_object(content: str) -> dict:
    text = content.strip()
    # Some models wrap JSON in a markdown fence even in JSON mode
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"LLM response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("LLM response is JSON but not an object")
    return data
