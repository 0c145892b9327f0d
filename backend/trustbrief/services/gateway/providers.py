"""
LLM provider adapters.

Each adapter turns an LLMRequest into one SDK call and maps SDK exceptions
onto our ProviderError taxonomy. Adapters never retry (SDK retries are
disabled with max_retries=0); retries, failover and circuit breaking are the
gateway's job.

Retryable:      rate limit (429), timeout, connection error, 5xx, 408
Not retryable:  other 4xx (bad request, auth, not found), anything unknown
"""

import logging
from typing import Protocol

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from trustbrief.errors import ProviderError, RateLimitError
from trustbrief.services.gateway.models import LLMRequest, ProviderResult

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "Respond with a single valid JSON object and nothing else."


class LLMProvider(Protocol):
    name: str
    model: str

    async def complete(self, request: LLMRequest) -> ProviderResult:
        ...


def classify_error(provider: str, exc: Exception, sdk) -> ProviderError:
    """
    Map an exception raised by an SDK (openai or anthropic, which share
    their error class names) to a ProviderError.
    """
    if isinstance(exc, sdk.RateLimitError):
        return RateLimitError(provider, str(exc))
    if isinstance(exc, sdk.APITimeoutError):
        return ProviderError(provider, "request timed out", retryable=True)
    if isinstance(exc, sdk.APIConnectionError):
        return ProviderError(provider, f"connection error: {exc}", retryable=True)
    if isinstance(exc, sdk.APIStatusError):
        status = exc.status_code
        return ProviderError(provider, str(exc), status_code=status, retryable=status >= 500 or status == 408)
    return ProviderError(provider, f"{type(exc).__name__}: {exc}", retryable=False)


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o"):
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, max_retries=0)

    async def complete(self, request: LLMRequest) -> ProviderResult:
        kwargs = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise classify_error(self.name, e, openai) from e

        usage = response.usage
        return ProviderResult(
            content=response.choices[0].message.content or "",
            model=response.model or self.model,
            tokens_input=usage.prompt_tokens if usage else 0,
            tokens_output=usage.completion_tokens if usage else 0,
        )


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022"):
        self.model = model
        self.client = AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(self, request: LLMRequest) -> ProviderResult:
        # Anthropic takes the system prompt as a separate argument
        system_parts = [m.content for m in request.messages if m.role == "system"]
        if request.json_mode:
            system_parts.append(JSON_INSTRUCTION)
        kwargs = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in request.messages
                if m.role != "system"
            ],
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise classify_error(self.name, e, anthropic) from e

        content = "".join(block.text for block in response.content if block.type == "text")
        return ProviderResult(
            content=content,
            model=response.model or self.model,
            tokens_input=response.usage.input_tokens,
            tokens_output=response.usage.output_tokens,
        )
