from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.services.errors import LLMProviderError
from backend.curator.services.key_pool import KeyPool
from backend.curator.services.key_selector import KeySelector
from backend.curator.services.key_validation import KeyValidator
from backend.curator.services.video_fetcher import VideoFetcher
from backend.curator.services.youtube_client import YouTubeClient


class _CheckLLM:
    closed: list[str] = []

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        if self._api_key != "good-claude":
            raise LLMProviderError("Anthropic request failed status=401")
        return "OK"

    async def aclose(self) -> None:
        _CheckLLM.closed.append(self._api_key)


def _youtube_handler(request: httpx.Request) -> httpx.Response:
    if request.url.params.get("key") == "good-youtube":
        return httpx.Response(200, json={"items": []})
    return httpx.Response(400, json={"error": {"message": "API key not valid."}})


def _validate(caller_keys: CallerKeyRepository, provider: str, api_key: str) -> bool:
    async def _main() -> bool:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_youtube_handler)) as http_client:
            validator = KeyValidator(
                video_fetcher=VideoFetcher(
                    youtube_client=YouTubeClient(http_client, base_url="https://youtube.test/v3"),
                    key_selector=KeySelector(key_pool=KeyPool(), caller_key_repository=caller_keys),
                ),
                check_client_factory=_CheckLLM,
            )
            return await validator.validate(provider, api_key)

    return asyncio.run(_main())


def test_validate_youtube_key(caller_keys: CallerKeyRepository) -> None:
    assert _validate(caller_keys, "youtube", "good-youtube") is True
    assert _validate(caller_keys, "youtube", "bad-youtube") is False


def test_validate_claude_key(caller_keys: CallerKeyRepository) -> None:
    assert _validate(caller_keys, "claude", "good-claude") is True
    assert _validate(caller_keys, "claude", "bad-claude") is False


def test_validate_rejects_unknown_provider(caller_keys: CallerKeyRepository) -> None:
    with pytest.raises(ValueError):
        _validate(caller_keys, "vimeo", "anything")


def test_validate_claude_key_closes_client(
    caller_keys: CallerKeyRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(_CheckLLM, "closed", [])

    _validate(caller_keys, "claude", "good-claude")
    _validate(caller_keys, "claude", "bad-claude")

    assert _CheckLLM.closed == ["good-claude", "bad-claude"]
