from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from backend.curator.repositories.curation_repository import CandidateVideo
from backend.curator.services.errors import (
    DetailFetchError,
    NoCandidatesError,
    YouTubeApiError,
    summarize_exception_message,
)
from backend.curator.services.key_selector import CallerContext, KeySelector
from backend.curator.services.search_strategy import SearchQuery
from backend.curator.services.video_formatting import parse_iso8601_duration_seconds
from backend.curator.services.youtube_client import YouTubeClient, as_dict, as_list

LOGGER = logging.getLogger("curator.video_fetcher")

YOUTUBE_VIDEO_ID_LENGTH = 11
DEFAULT_MAX_RESULTS = 150
DEFAULT_DETAIL_BATCH_SIZE = 50
NO_CANDIDATES_MESSAGE = "No videos found for your search query. Try different keywords."
_THUMBNAIL_PREFERENCE: tuple[str, ...] = ("high", "medium", "default", "standard", "maxres")


def _search_item_video_id(item: dict[str, Any]) -> str | None:
    video_id = as_dict(item.get("id")).get("videoId")
    if isinstance(video_id, str) and len(video_id) == YOUTUBE_VIDEO_ID_LENGTH:
        return video_id
    return None


def _thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = as_dict(snippet.get("thumbnails"))
    for quality in _THUMBNAIL_PREFERENCE:
        url = as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url, str) and url.strip():
            return url
    for payload in thumbnails.values():
        url = as_dict(payload).get("url")
        if isinstance(url, str) and url.strip():
            return url
    return None


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def candidate_from_search_item(item: dict[str, Any], *, source_tag: str | None) -> CandidateVideo | None:
    video_id = _search_item_video_id(item)
    snippet = as_dict(item.get("snippet"))
    title = _optional_str(snippet.get("title"))
    thumbnail = _thumbnail_url(snippet)
    if video_id is None or title is None or thumbnail is None:
        return None
    return CandidateVideo(
        external_id=video_id,
        title=title,
        description=_optional_str(snippet.get("description")),
        thumbnail_url=thumbnail,
        duration_seconds=None,
        channel_name=_optional_str(snippet.get("channelTitle")),
        view_count=None,
        published_at=_optional_str(snippet.get("publishedAt")),
        source_tag=source_tag,
    )


def candidate_from_detail_item(
    item: dict[str, Any],
    *,
    source_tag: str | None,
) -> CandidateVideo | None:
    video_id = item.get("id")
    if not isinstance(video_id, str) or len(video_id) != YOUTUBE_VIDEO_ID_LENGTH:
        return None
    snippet = as_dict(item.get("snippet"))
    title = _optional_str(snippet.get("title"))
    if title is None:
        return None
    content_details = as_dict(item.get("contentDetails"))
    statistics = as_dict(item.get("statistics"))
    return CandidateVideo(
        external_id=video_id,
        title=title,
        description=_optional_str(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet),
        duration_seconds=parse_iso8601_duration_seconds(content_details.get("duration")),
        channel_name=_optional_str(snippet.get("channelTitle")),
        view_count=_optional_int(statistics.get("viewCount")),
        published_at=_optional_str(snippet.get("publishedAt")),
        source_tag=source_tag,
    )


class VideoFetcher:
    def __init__(
        self,
        *,
        youtube_client: YouTubeClient,
        key_selector: KeySelector,
        max_results: int = DEFAULT_MAX_RESULTS,
        detail_batch_size: int = DEFAULT_DETAIL_BATCH_SIZE,
        detail_batch_delay_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._youtube = youtube_client
        self._key_selector = key_selector
        self._max_results = max_results
        self._detail_batch_size = max(1, detail_batch_size)
        self._detail_batch_delay_seconds = detail_batch_delay_seconds
        self._sleep = sleep

    async def search(
        self,
        queries: Sequence[SearchQuery],
        api_key: str,
        *,
        max_results: int | None = None,
    ) -> list[CandidateVideo]:
        """
        Run every query concurrently and merge the hits, first occurrence wins.

        Queries that fail are left out of the merge. When all of them fail, the
        first failure is raised so its classified message reaches the caller.
        """
        if not queries:
            return []
        limit = max_results if max_results is not None else self._max_results
        per_query = math.ceil(limit / len(queries))

        results = await asyncio.gather(
            *(self._youtube.search(query.text, api_key=api_key, max_results=per_query) for query in queries),
            return_exceptions=True,
        )

        failures: list[YouTubeApiError] = []
        seen: set[str] = set()
        merged: list[CandidateVideo] = []
        total_hits = 0
        for query, result in zip(queries, results, strict=True):
            if isinstance(result, YouTubeApiError):
                LOGGER.warning(
                    "search query failed tag=%s query=%r error=%s",
                    query.tag,
                    query.text,
                    summarize_exception_message(result),
                )
                failures.append(result)
                continue
            if isinstance(result, BaseException):
                raise result
            total_hits += len(result)
            for item in result:
                candidate = candidate_from_search_item(item, source_tag=query.tag)
                if candidate is None or candidate.external_id in seen:
                    continue
                seen.add(candidate.external_id)
                merged.append(candidate)

        if failures and len(failures) == len(queries):
            raise failures[0]

        LOGGER.info(
            "search merged queries=%s failed=%s hits=%s unique=%s",
            len(queries),
            len(failures),
            total_hits,
            len(merged),
        )
        return merged[:limit]

    async def fetch_details(
        self,
        candidates: Sequence[CandidateVideo],
        api_key: str,
    ) -> list[CandidateVideo]:
        """
        Enrich candidates with duration and statistics, one batch at a time.

        Batches run sequentially with a short pause in between; a failing batch is
        logged and skipped. Raises `DetailFetchError` when nothing could be fetched.
        """
        tags = {candidate.external_id: candidate.source_tag for candidate in candidates}
        ids = list(tags)
        if not ids:
            return []

        batch_size = self._detail_batch_size
        total_batches = math.ceil(len(ids) / batch_size)
        details: dict[str, CandidateVideo] = {}
        for batch_index in range(total_batches):
            batch = ids[batch_index * batch_size : (batch_index + 1) * batch_size]
            try:
                items = await self._youtube.videos(batch, api_key=api_key)
            except YouTubeApiError as exc:
                LOGGER.warning(
                    "detail batch skipped batch=%s/%s size=%s error=%s",
                    batch_index + 1,
                    total_batches,
                    len(batch),
                    summarize_exception_message(exc),
                )
            else:
                for item in items:
                    video_id = item.get("id")
                    detailed = candidate_from_detail_item(
                        item,
                        source_tag=tags.get(video_id) if isinstance(video_id, str) else None,
                    )
                    if detailed is not None:
                        details[detailed.external_id] = detailed
                LOGGER.debug(
                    "detail batch fetched batch=%s/%s items=%s",
                    batch_index + 1,
                    total_batches,
                    len(items),
                )
            if batch_index + 1 < total_batches and self._detail_batch_delay_seconds > 0:
                await self._sleep(self._detail_batch_delay_seconds)

        if not details:
            raise DetailFetchError("No video details could be fetched from YouTube API")

        LOGGER.info("details fetched requested=%s fetched=%s", len(ids), len(details))
        return [details[video_id] for video_id in ids if video_id in details]

    async def fetch(self, queries: Sequence[SearchQuery], caller: CallerContext) -> list[CandidateVideo]:
        """Search plus detail fetch under one YouTube credential per attempt."""

        async def _search_and_enrich(api_key: str) -> list[CandidateVideo]:
            candidates = await self.search(queries, api_key)
            if not candidates:
                raise NoCandidatesError(NO_CANDIDATES_MESSAGE)
            return await self.fetch_details(candidates, api_key)

        return await self._key_selector.run("youtube", caller, _search_and_enrich)

    async def validate_key(self, api_key: str) -> bool:
        try:
            await self._youtube.search("test", api_key=api_key, max_results=1)
        except YouTubeApiError as exc:
            LOGGER.info("youtube key validation failed error=%s", summarize_exception_message(exc))
            return False
        return True
