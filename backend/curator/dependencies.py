from __future__ import annotations

from functools import lru_cache

import httpx

from backend.curator.config import AppSettings, load_settings
from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.repositories.curation_repository import CurationRepository
from backend.curator.repositories.database import Database
from backend.curator.repositories.progress_repository import ProgressRepository
from backend.curator.repositories.quality_score_repository import QualityScoreRepository
from backend.curator.repositories.secret_cipher import cipher_from_settings
from backend.curator.services.batch_curator import BatchCurator
from backend.curator.services.curation_pipeline import CurationPipeline
from backend.curator.services.key_pool import KeyPool
from backend.curator.services.key_selector import KeySelector
from backend.curator.services.key_validation import KeyValidator
from backend.curator.services.llm_client import (
    AnthropicClientCache,
    AnthropicLLMClient,
    ClosableLLMClient,
    anthropic_client_factory,
)
from backend.curator.services.progress_tracker import ProgressTracker
from backend.curator.services.search_strategy import SearchStrategyGenerator
from backend.curator.services.transcript_ranker import TranscriptRanker
from backend.curator.services.video_fetcher import VideoFetcher
from backend.curator.services.youtube_client import YouTubeClient


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_key_pool() -> KeyPool:
    settings = get_settings()
    key_pool = KeyPool(
        error_threshold=settings.key_error_threshold,
        quota_reset_after_seconds=settings.quota_reset_after_seconds,
    )
    key_pool.initialize_all()
    return key_pool


@lru_cache(maxsize=1)
def get_caller_key_repository() -> CallerKeyRepository:
    return CallerKeyRepository(get_database(), cipher=cipher_from_settings(get_settings()))


@lru_cache(maxsize=1)
def get_curation_repository() -> CurationRepository:
    return CurationRepository(get_database())


@lru_cache(maxsize=1)
def get_quality_score_repository() -> QualityScoreRepository:
    return QualityScoreRepository(get_database())


@lru_cache(maxsize=1)
def get_key_selector() -> KeySelector:
    return KeySelector(
        key_pool=get_key_pool(),
        caller_key_repository=get_caller_key_repository(),
        max_attempts=get_settings().credential_max_attempts,
    )


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().http_timeout_seconds)


@lru_cache(maxsize=1)
def get_llm_factory() -> AnthropicClientCache:
    settings = get_settings()
    return anthropic_client_factory(
        settings.anthropic_model,
        max_clients=settings.anthropic_client_cache_size,
    )


@lru_cache(maxsize=1)
def get_video_fetcher() -> VideoFetcher:
    settings = get_settings()
    return VideoFetcher(
        youtube_client=YouTubeClient(get_http_client(), base_url=settings.youtube_api_base_url),
        key_selector=get_key_selector(),
        max_results=settings.search_max_results,
        detail_batch_size=settings.detail_batch_size,
        detail_batch_delay_seconds=settings.detail_batch_delay_seconds,
    )


@lru_cache(maxsize=1)
def get_progress_tracker() -> ProgressTracker:
    return ProgressTracker(
        progress_repository=ProgressRepository(get_database()),
        curation_repository=get_curation_repository(),
    )


@lru_cache(maxsize=1)
def get_key_validator() -> KeyValidator:
    model = get_settings().anthropic_model

    def _check_client(api_key: str) -> ClosableLLMClient:
        return AnthropicLLMClient(api_key, model=model)

    return KeyValidator(video_fetcher=get_video_fetcher(), check_client_factory=_check_client)


@lru_cache(maxsize=1)
def get_curation_pipeline() -> CurationPipeline:
    settings = get_settings()
    key_selector = get_key_selector()
    llm_factory = get_llm_factory()
    return CurationPipeline(
        strategy_generator=SearchStrategyGenerator(
            key_selector=key_selector,
            llm_factory=llm_factory,
        ),
        video_fetcher=get_video_fetcher(),
        batch_curator=BatchCurator(
            key_selector=key_selector,
            llm_factory=llm_factory,
            batch_size=settings.curation_batch_size,
            core_target=settings.core_target,
            additional_target=settings.additional_target,
            depth_target=settings.depth_target,
            max_tokens=settings.curation_max_tokens,
        ),
        transcript_ranker=TranscriptRanker(get_quality_score_repository()),
        curation_repository=get_curation_repository(),
        progress_tracker=get_progress_tracker(),
    )


async def close_http_client() -> None:
    if get_http_client.cache_info().currsize:
        await get_http_client().aclose()
    get_http_client.cache_clear()


async def close_llm_clients() -> None:
    if get_llm_factory.cache_info().currsize:
        await get_llm_factory().aclose()
    get_llm_factory.cache_clear()


def reset_cached_dependencies() -> None:
    get_curation_pipeline.cache_clear()
    get_key_validator.cache_clear()
    get_progress_tracker.cache_clear()
    get_video_fetcher.cache_clear()
    get_llm_factory.cache_clear()
    get_http_client.cache_clear()
    get_key_selector.cache_clear()
    get_quality_score_repository.cache_clear()
    get_curation_repository.cache_clear()
    get_caller_key_repository.cache_clear()
    get_key_pool.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
