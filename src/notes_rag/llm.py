"""
Generation backends: Ollama (local), OpenAI, Claude and Groq.

Each backend is one class; the backend is picked once from
``RAGConfig.llm_provider`` by ``build_generation_provider``. All of them
normalize their failures into the shared error taxonomy in ``errors``:

    transport failure / 5xx / auth  -> ProviderUnavailable
    429                             -> RateLimited
    timeout                         -> GenerationTimeout
    malformed payload / other 4xx   -> InvalidResponse

Streaming is exposed as an async generator. Closing the generator (or
cancelling the task iterating it) exits the underlying ``httpx`` stream
context, which closes the HTTP connection and aborts the request upstream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Type

import httpx
import openai
from openai import AsyncOpenAI

from .config import RAGConfig
from .errors import (
    GenerationTimeout,
    InvalidConfig,
    InvalidResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    max_tokens: int = 1024


def translate_http_error(exc: Exception, provider: str) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return GenerationTimeout(f"{provider} request timed out: {exc}", provider)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return RateLimited(f"{provider} rate limit hit (HTTP 429)", provider)
        if status >= 500 or status in (401, 403, 404):
            return ProviderUnavailable(f"{provider} returned HTTP {status}", provider)
        return InvalidResponse(f"{provider} rejected the request (HTTP {status})", provider)
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailable(f"{provider} unreachable: {exc}", provider)
    if isinstance(exc, (ValueError, KeyError, IndexError, TypeError)):
        return InvalidResponse(f"{provider} sent an unreadable response: {exc}", provider)
    return ProviderUnavailable(f"{provider} failed: {exc}", provider)


def translate_openai_error(
    exc: Exception,
    provider: str,
    timeout_cls: Type[ProviderTimeout] = GenerationTimeout,
) -> ProviderError:
    # APITimeoutError subclasses APIConnectionError; check it first.
    if isinstance(exc, openai.APITimeoutError):
        return timeout_cls(f"{provider} request timed out", provider)
    if isinstance(exc, openai.RateLimitError):
        return RateLimited(f"{provider} rate limit hit: {exc}", provider)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderUnavailable(f"{provider} unreachable: {exc}", provider)
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code in (401, 403, 404):
            return ProviderUnavailable(f"{provider} returned HTTP {exc.status_code}", provider)
        return InvalidResponse(f"{provider} rejected the request (HTTP {exc.status_code})", provider)
    return InvalidResponse(f"{provider} failed: {exc}", provider)


class GenerationProvider(ABC):
    """Abstract interface over text generation backends."""

    name: str = ""

    def __init__(
        self,
        model: str,
        timeout: float = 60.0,
        defaults: Optional[GenerationOptions] = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.defaults = defaults or GenerationOptions()

    @abstractmethod
    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        ...

    @abstractmethod
    def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        ...

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        """One-shot generation, bounded by ``timeout``."""
        try:
            return await asyncio.wait_for(
                self._generate(prompt, options or self.defaults), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise GenerationTimeout(
                f"{self.name} generation exceeded {self.timeout:.0f}s", self.name
            ) from exc

    def stream_generate(
        self, prompt: str, options: Optional[GenerationOptions] = None
    ) -> AsyncIterator[str]:
        """Lazy sequence of text deltas. Close it to abort the request."""
        return self._stream(prompt, options or self.defaults)

    async def is_available(self) -> bool:
        return True

    async def close(self) -> None:
        """Release resources. Override if needed."""


class OllamaProvider(GenerationProvider):
    """
    Local model runner using Ollama's HTTP API.

    Requires Ollama to be running locally: https://ollama.ai
    """

    name = "ollama"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        defaults: Optional[GenerationOptions] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model, timeout=timeout, defaults=defaults)
        self._base_url = base_url or "http://localhost:11434"
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    def _payload(self, prompt: str, options: GenerationOptions, stream: bool) -> dict:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
            },
        }

    async def is_available(self) -> bool:
        """Check if Ollama is running and the model is pulled."""
        try:
            resp = await self._client.get("/api/tags")
            resp.raise_for_status()
            names = [m.get("name", "") for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError) as exc:
            LOG.warning("Ollama not reachable at %s: %s", self._base_url, exc)
            return False
        if not any(self.model in name for name in names):
            LOG.warning(
                "Ollama running but model '%s' not found. Pull with: ollama pull %s",
                self.model,
                self.model,
            )
            return False
        return True

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        try:
            resp = await self._client.post("/api/generate", json=self._payload(prompt, options, False))
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise translate_http_error(exc, self.name) from exc
        if data.get("error"):
            raise InvalidResponse(f"ollama error: {data['error']}", self.name)
        text = data.get("response")
        if not isinstance(text, str):
            raise InvalidResponse("ollama response has no text", self.name)
        return text

    async def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST", "/api/generate", json=self._payload(prompt, options, True)
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise InvalidResponse(f"ollama error: {data['error']}", self.name)
                    delta = data.get("response") or ""
                    if delta:
                        yield delta
                    if data.get("done"):
                        return
        except (httpx.HTTPError, ValueError) as exc:
            raise translate_http_error(exc, self.name) from exc

    async def close(self) -> None:
        await self._client.aclose()


class ClaudeProvider(GenerationProvider):
    """Anthropic messages API over httpx, with server-sent-event streaming."""

    name = "claude"
    api_key_env = "ANTHROPIC_API_KEY"
    api_version = "2023-06-01"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        defaults: Optional[GenerationOptions] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model, timeout=timeout, defaults=defaults)
        if client is None:
            key = api_key or os.getenv(self.api_key_env)
            if not key:
                raise InvalidConfig(f"{self.api_key_env} is not set. Put it in a .env file or environment variable.")
            client = httpx.AsyncClient(
                base_url=base_url or "https://api.anthropic.com/v1",
                timeout=timeout,
                headers={
                    "x-api-key": key,
                    "anthropic-version": self.api_version,
                    "content-type": "application/json",
                },
            )
        self._client = client

    def _body(self, prompt: str, options: GenerationOptions, stream: bool) -> dict:
        body = {
            "model": self.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            body["stream"] = True
        return body

    def _error_event(self, event: dict) -> ProviderError:
        error = event.get("error") or {}
        kind = error.get("type", "")
        message = f"claude error: {error.get('message', kind or 'unknown')}"
        if kind == "rate_limit_error":
            return RateLimited(message, self.name)
        if kind in ("overloaded_error", "api_error"):
            return ProviderUnavailable(message, self.name)
        return InvalidResponse(message, self.name)

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        try:
            resp = await self._client.post("/messages", json=self._body(prompt, options, False))
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise translate_http_error(exc, self.name) from exc
        if data.get("type") == "error":
            raise self._error_event(data)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise InvalidResponse("claude response has no content blocks", self.name)
        return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")

    async def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST", "/messages", json=self._body(prompt, options, True)
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload:
                        continue
                    event = json.loads(payload)
                    kind = event.get("type")
                    if kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield delta["text"]
                    elif kind == "message_stop":
                        return
                    elif kind == "error":
                        raise self._error_event(event)
        except (httpx.HTTPError, ValueError) as exc:
            raise translate_http_error(exc, self.name) from exc

    async def close(self) -> None:
        await self._client.aclose()


class OpenAIProvider(GenerationProvider):
    """Chat completions through the OpenAI SDK."""

    name = "openai"
    api_key_env = "OPENAI_API_KEY"
    default_base_url: Optional[str] = None

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        defaults: Optional[GenerationOptions] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        super().__init__(model, timeout=timeout, defaults=defaults)
        if client is None:
            key = api_key or os.getenv(self.api_key_env)
            if not key:
                raise InvalidConfig(f"{self.api_key_env} is not set. Put it in a .env file or environment variable.")
            # Retries are the caller's decision.
            client = AsyncOpenAI(
                api_key=key,
                base_url=base_url or self.default_base_url,
                timeout=timeout,
                max_retries=0,
            )
        self._client = client

    def _request(self, prompt: str, options: GenerationOptions) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        try:
            response = await self._client.chat.completions.create(**self._request(prompt, options))
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, self.name) from exc
        if not response.choices:
            raise InvalidResponse(f"{self.name} returned no choices", self.name)
        content = response.choices[0].message.content
        if content is None:
            raise InvalidResponse(f"{self.name} returned an empty message", self.name)
        return content

    async def _stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                **self._request(prompt, options), stream=True
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, self.name) from exc
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, self.name) from exc
        finally:
            await stream.close()

    async def close(self) -> None:
        await self._client.close()


class GroqProvider(OpenAIProvider):
    """Groq's OpenAI-compatible endpoint."""

    name = "groq"
    api_key_env = "GROQ_API_KEY"
    default_base_url = "https://api.groq.com/openai/v1"


PROVIDERS: Dict[str, Type[GenerationProvider]] = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "groq": GroqProvider,
}


def build_generation_provider(cfg: RAGConfig) -> Optional[GenerationProvider]:
    """
    Factory: create the GenerationProvider selected by ``cfg.llm_provider``.

    Returns None for ``llm_provider: none`` (retrieval-only deployments).

    Raises:
        InvalidConfig: unknown provider or missing API key
    """
    if cfg.llm_provider == "none":
        return None
    try:
        provider_cls = PROVIDERS[cfg.llm_provider]
    except KeyError:
        raise InvalidConfig(
            f"Unknown LLM provider: {cfg.llm_provider!r}. Supported: {sorted(PROVIDERS)}"
        ) from None

    base_url = cfg.llm_base_url
    if provider_cls is OllamaProvider:
        base_url = base_url or cfg.ollama_base_url
    LOG.info("Using %s generation backend (model %s)", cfg.llm_provider, cfg.resolved_llm_model)
    return provider_cls(
        cfg.resolved_llm_model,
        api_key=cfg.api_key,
        base_url=base_url,
        timeout=cfg.request_timeout,
        defaults=GenerationOptions(temperature=cfg.temperature, max_tokens=cfg.max_tokens),
    )


__all__ = [
    "ClaudeProvider",
    "GenerationOptions",
    "GenerationProvider",
    "GroqProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PROVIDERS",
    "build_generation_provider",
    "translate_http_error",
    "translate_openai_error",
]
