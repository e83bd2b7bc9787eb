"""
HTTP clients for chat-completion providers.

Only the request/response contract matters to the engine: send a system and a
user prompt, get text plus token usage back. Transport errors are mapped onto
AIProviderError with a ledger status (``timeout``, ``rate_limited``, ``failed``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .config import AIConfig
from .exceptions import AIProviderError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class Completion:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ChatProvider(Protocol):
    name: str

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: float,
    ) -> Completion: ...


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code == 429:
        raise AIProviderError("Provider rate limit reached", provider, status="rate_limited")
    if response.status_code >= 400:
        snippet = response.text[:300]
        raise AIProviderError(
            f"Provider returned HTTP {response.status_code}: {snippet}", provider, status="failed"
        )


class _HTTPProvider:
    name = "base"

    def __init__(self, api_key: str, base_url: str, transport: httpx.BaseTransport | None = None):
        self.api_key = api_key
        self.base_url = base_url
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _post(self, path: str, body: dict[str, Any], timeout: float) -> dict[str, Any]:
        try:
            with httpx.Client(
                base_url=self.base_url, timeout=timeout, transport=self.transport
            ) as client:
                response = client.post(path, headers=self._headers(), json=body)
        except httpx.TimeoutException as e:
            raise AIProviderError(f"Provider timed out after {timeout:.0f}s", self.name, status="timeout") from e
        except httpx.HTTPError as e:
            raise AIProviderError(f"Provider request failed: {e}", self.name, status="failed") from e

        _raise_for_status(response, self.name)
        try:
            return response.json()
        except ValueError as e:
            raise AIProviderError("Provider returned a non-JSON body", self.name) from e


class OpenAIProvider(_HTTPProvider):
    """OpenAI-compatible ``/chat/completions``."""

    name = "openai"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: float,
    ) -> Completion:
        data = self._post(
            "/chat/completions",
            {
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            },
            timeout,
        )
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AIProviderError("Unexpected completion payload", self.name) from e
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            model=data.get("model") or model,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        )


class AnthropicProvider(_HTTPProvider):
    """Anthropic ``/messages``."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        version: str = "2023-06-01",
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(api_key, base_url, transport)
        self.version = version

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.version,
            "Content-Type": "application/json",
        }

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: float,
    ) -> Completion:
        data = self._post(
            "/messages",
            {
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "system": system,
                "messages": [{"role": "user", "content": prompt}],
            },
            timeout,
        )
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise AIProviderError("Unexpected messages payload", self.name)
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            model=data.get("model") or model,
            prompt_tokens=int(usage.get("input_tokens") or 0),
            completion_tokens=int(usage.get("output_tokens") or 0),
        )


def build_provider(
    name: str, config: AIConfig, transport: httpx.BaseTransport | None = None
) -> ChatProvider:
    """Provider client for ``name`` from settings; missing keys fail like any provider error."""
    api_key = config.api_key_for(name)
    if not api_key:
        raise AIProviderError(f"No API key configured for {name}", name)
    if name == "openai":
        return OpenAIProvider(api_key, config.openai_base_url, transport=transport)
    if name == "anthropic":
        return AnthropicProvider(
            api_key, config.anthropic_base_url, config.anthropic_version, transport=transport
        )
    raise AIProviderError(f"Unsupported provider {name}", name)
