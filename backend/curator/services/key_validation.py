from __future__ import annotations

import logging

from backend.curator.services.errors import LLMProviderError, summarize_exception_message
from backend.curator.services.llm_client import ClosableLLMClientFactory
from backend.curator.services.video_fetcher import VideoFetcher

LOGGER = logging.getLogger("curator.key_validation")


class KeyValidator:
    """
    Checks a caller-supplied key with the cheapest call each provider offers.

    Claude checks use a throwaway client that is closed afterwards, so unverified
    keys never land in the shared client cache.
    """

    def __init__(
        self,
        *,
        video_fetcher: VideoFetcher,
        check_client_factory: ClosableLLMClientFactory,
    ) -> None:
        self._video_fetcher = video_fetcher
        self._check_client_factory = check_client_factory

    async def validate(self, provider: str, api_key: str) -> bool:
        if provider == "youtube":
            return await self._video_fetcher.validate_key(api_key)
        if provider == "claude":
            return await self._validate_claude(api_key)
        raise ValueError(f"Unsupported provider: {provider}")

    async def _validate_claude(self, api_key: str) -> bool:
        client = self._check_client_factory(api_key)
        try:
            await client.complete(
                "Reply with OK.",
                system="Reply with a single word.",
                max_tokens=10,
                temperature=0.0,
            )
        except LLMProviderError as exc:
            LOGGER.info("claude key validation failed error=%s", summarize_exception_message(exc))
            return False
        finally:
            await client.aclose()
        return True
