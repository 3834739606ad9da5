from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Protocol

import anthropic
from anthropic.types import TextBlock

from backend.curator.services.errors import LLMProviderError

LOGGER = logging.getLogger("curator.llm")

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_CLIENT_CACHE_SIZE = 32


class LLMClient(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str: ...


LLMClientFactory = Callable[[str], LLMClient]


class ClosableLLMClient(LLMClient, Protocol):
    async def aclose(self) -> None: ...


ClosableLLMClientFactory = Callable[[str], ClosableLLMClient]


class AnthropicLLMClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout_seconds)
        self._model = model

    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        try:
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as exc:
            raise LLMProviderError(f"Claude rate_limit reached: {exc}", is_quota_error=True) from exc
        except anthropic.APIStatusError as exc:
            raise LLMProviderError(
                f"Claude request failed status={exc.status_code}: {exc.message}",
                is_quota_error=_is_quota_status(exc),
            ) from exc
        except anthropic.APIError as exc:
            raise LLMProviderError(f"Claude request failed: {exc}") from exc

        text_parts = [block.text for block in message.content if isinstance(block, TextBlock)]
        if not text_parts:
            raise LLMProviderError("Claude response did not include a text block")
        if message.stop_reason == "max_tokens":
            LOGGER.warning(
                "llm response hit max_tokens model=%s max_tokens=%s",
                self._model,
                max_tokens,
            )
        return "".join(text_parts).strip()

    async def aclose(self) -> None:
        await self._client.close()


def _is_quota_status(exc: anthropic.APIStatusError) -> bool:
    if exc.status_code == 429:
        return True
    message = str(exc.message).lower()
    return "quota" in message or "credit balance" in message


class AnthropicClientCache:
    """
    Hands out one `AnthropicLLMClient` per API key and keeps at most `max_clients`.

    The least recently used client is evicted and closed once the bound is hit.
    `aclose()` closes everything still cached; the app lifespan calls it on shutdown.
    """

    def __init__(self, model: str, *, max_clients: int = DEFAULT_CLIENT_CACHE_SIZE) -> None:
        self._model = model
        self._max_clients = max(1, max_clients)
        self._clients: OrderedDict[str, AnthropicLLMClient] = OrderedDict()
        self._evicted: list[AnthropicLLMClient] = []
        self._closing: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def __call__(self, api_key: str) -> LLMClient:
        client = self._clients.get(api_key)
        if client is not None:
            self._clients.move_to_end(api_key)
            return client

        client = AnthropicLLMClient(api_key, model=self._model)
        self._clients[api_key] = client
        while len(self._clients) > self._max_clients:
            _, evicted = self._clients.popitem(last=False)
            self._close_evicted(evicted)
        return client

    async def aclose(self) -> None:
        clients = [*self._clients.values(), *self._evicted]
        self._clients.clear()
        self._evicted.clear()
        for client in clients:
            await client.aclose()
        if self._closing:
            await asyncio.gather(*self._closing)

    def _close_evicted(self, client: AnthropicLLMClient) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._evicted.append(client)
            return
        task = loop.create_task(client.aclose())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)


def anthropic_client_factory(
    model: str,
    *,
    max_clients: int = DEFAULT_CLIENT_CACHE_SIZE,
) -> AnthropicClientCache:
    return AnthropicClientCache(model, max_clients=max_clients)
