# /lingoflow/services/llm_service.py

import json
import logging
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai
import tenacity
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from lingoflow.config.settings import settings
from lingoflow.utils.circuit_breaker import CircuitBreaker
from lingoflow.utils.metrics import ai_requests_counter
from lingoflow.utils.security import redact_secrets
from lingoflow.workflows.errors import CredentialError

# This service encapsulates all interactions with external text-generation
# providers. Every call is streamed; non-streaming callers just join the chunks.
# OpenAI-compatible providers (DeepSeek, OpenAI, custom endpoints) go through the
# openai SDK, Anthropic through a raw httpx SSE stream.

logger = logging.getLogger(__name__)

DEFAULT_API_URLS: Dict[str, str] = {
    "deepseek": "https://api.deepseek.com/v1",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1/messages",
}

DEFAULT_MODELS: Dict[str, str] = {
    "deepseek": "deepseek-chat",
    "openai": "gpt-4",
    "anthropic": "claude-3-5-sonnet-20241022",
}

ANTHROPIC_VERSION = "2023-06-01"

_CONNECT_ERRORS = (httpx.TransportError, openai.APIConnectionError)


class LLMServiceError(Exception):
    """Provider call failed. The message is always sanitized."""


class ProviderCredentials(BaseModel):
    """Per-request provider settings. Never stored on a flow or a session."""
    provider: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    api_url: Optional[str] = None
    model: Optional[str] = None


class LLMRequest(BaseModel):
    provider: str
    api_key: Optional[str] = Field(default=None, repr=False)
    api_url: Optional[str] = None
    model: Optional[str] = None
    messages: List[Dict[str, str]]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Optional[str] = None


def resolve_endpoint(provider: str, api_url: Optional[str]) -> str:
    url = api_url or DEFAULT_API_URLS.get(provider)
    if not url:
        raise CredentialError(f"No API URL configured for provider: {provider}")
    if provider != "anthropic" and url.rstrip("/").endswith("/chat/completions"):
        # The SDK wants a base URL; accept full endpoint URLs from clients too.
        url = url.rstrip("/")[: -len("/chat/completions")]
    return url


class LLMService:
    def __init__(self, timeout: float):
        self.timeout = timeout
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.breakers: Dict[str, CircuitBreaker] = {}

    def _breaker(self, provider: str) -> CircuitBreaker:
        if provider not in self.breakers:
            self.breakers[provider] = CircuitBreaker(name=f"llm:{provider}")
        return self.breakers[provider]

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(_CONNECT_ERRORS),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=4),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_open(self, provider: str, func, *args, **kwargs):
        """Opens a provider stream. Retries only happen before any chunk exists."""
        return await self._breaker(provider).call(func, *args, **kwargs)

    async def stream_chat(self, request: LLMRequest) -> AsyncIterator[str]:
        """Yields text fragments in the order the provider emits them."""
        secrets = [request.api_key]
        try:
            if request.provider == "anthropic":
                fragments = self._stream_anthropic(request)
            else:
                fragments = self._stream_openai_compatible(request)
            try:
                async for fragment in fragments:
                    yield fragment
            finally:
                await fragments.aclose()
            ai_requests_counter.labels(provider=request.provider, status="success").inc()
        except (LLMServiceError, CredentialError):
            ai_requests_counter.labels(provider=request.provider, status="error").inc()
            raise
        except Exception as e:
            ai_requests_counter.labels(provider=request.provider, status="error").inc()
            message = redact_secrets(f"LLM API error: {e}", secrets)
            logger.error(f"Streaming call to {request.provider} failed: {message}")
            raise LLMServiceError(message) from None

    async def _stream_openai_compatible(self, request: LLMRequest) -> AsyncIterator[str]:
        base_url = resolve_endpoint(request.provider, request.api_url)
        client = AsyncOpenAI(
            api_key=request.api_key or "not-required",
            base_url=base_url,
            timeout=self.timeout,
            max_retries=0,
        )
        kwargs = {
            "model": request.model or DEFAULT_MODELS.get(request.provider, DEFAULT_MODELS["openai"]),
            "messages": request.messages,
            "stream": True,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}

        try:
            stream = await self.resilient_open(request.provider, client.chat.completions.create, **kwargs)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await client.close()

    async def _stream_anthropic(self, request: LLMRequest) -> AsyncIterator[str]:
        url = resolve_endpoint("anthropic", request.api_url)
        system_parts = [m["content"] for m in request.messages if m["role"] == "system"]
        body = {
            "model": request.model or DEFAULT_MODELS["anthropic"],
            "max_tokens": request.max_tokens or 4096,
            "messages": [m for m in request.messages if m["role"] != "system"],
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            body["temperature"] = request.temperature

        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if request.api_key:
            headers["x-api-key"] = request.api_key

        http_request = self.http_client.build_request("POST", url, json=body, headers=headers)
        response = await self.resilient_open("anthropic", self.http_client.send, http_request, stream=True)
        try:
            if response.status_code >= 400:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
                raise LLMServiceError(
                    redact_secrets(f"LLM API error: {response.status_code} {error_text}", [request.api_key])
                )
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data = line[6:]
                if data == "[DONE]":
                    continue
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                text = (parsed.get("delta") or {}).get("text")
                if text:
                    yield text
        finally:
            await response.aclose()

    async def cleanup(self):
        await self.http_client.aclose()


# Globally accessible instance
llm_service = LLMService(settings.llm_request_timeout)
