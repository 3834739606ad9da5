from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, cast

import httpx

from backend.curator.services.errors import (
    YouTubeAccessDeniedError,
    YouTubeApiError,
    YouTubeApiNotEnabledError,
    YouTubeQuotaExceededError,
)

LOGGER = logging.getLogger("curator.youtube")

YOUTUBE_MAX_PAGE_SIZE = 50
API_NOT_ENABLED_MESSAGE = (
    "YouTube Data API v3 needs to be enabled. Please visit "
    "https://console.developers.google.com/apis and enable the YouTube Data API v3 "
    "for your project."
)
QUOTA_EXCEEDED_MESSAGE = (
    "YouTube API quota exceeded. Please check your API usage limits in the Google Cloud Console."
)
ACCESS_DENIED_MESSAGE = "YouTube API access denied. Please check your API key permissions."
API_NOT_ENABLED_MARKERS: tuple[str, ...] = ("not been used", "not enabled", "is disabled")


class YouTubeClient:
    """Thin async wrapper over the YouTube Data API v3 `search` and `videos` endpoints."""

    def __init__(self, http_client: httpx.AsyncClient, *, base_url: str) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    async def search(self, query: str, *, api_key: str, max_results: int) -> list[dict[str, Any]]:
        params: dict[str, str | int] = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": max(1, min(max_results, YOUTUBE_MAX_PAGE_SIZE)),
            "order": "relevance",
            "videoDuration": "medium",
            "videoDefinition": "high",
            "key": api_key,
        }
        payload = await self._get("search", params, operation=f'search for query "{query}"')
        return [as_dict(item) for item in as_list(payload.get("items"))]

    async def videos(self, video_ids: Sequence[str], *, api_key: str) -> list[dict[str, Any]]:
        if not video_ids:
            return []
        params: dict[str, str | int] = {
            "part": "snippet,contentDetails,statistics",
            "id": ",".join(video_ids),
            "key": api_key,
        }
        payload = await self._get("videos", params, operation="video details")
        return [as_dict(item) for item in as_list(payload.get("items"))]

    async def _get(
        self,
        endpoint: str,
        params: dict[str, str | int],
        *,
        operation: str,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{endpoint}"
        try:
            response = await self._http.get(url, params=params)
        except httpx.RequestError as exc:
            raise YouTubeApiError(f"YouTube {operation} request failed: {exc}") from exc

        if response.is_success:
            return as_dict(_json_or_none(response))

        error_message = _extract_error_message(response)
        LOGGER.warning(
            "youtube api error endpoint=%s status=%s message=%s",
            endpoint,
            response.status_code,
            error_message,
        )
        raise classify_error(
            response.status_code,
            error_message,
            fallback=f"YouTube {operation} failed: {response.reason_phrase or response.status_code}",
        )


def classify_error(status_code: int, error_message: str, *, fallback: str) -> YouTubeApiError:
    normalized = error_message.lower()
    if status_code == 403:
        if any(marker in normalized for marker in API_NOT_ENABLED_MARKERS):
            return YouTubeApiNotEnabledError(API_NOT_ENABLED_MESSAGE, status_code=status_code)
        if "quota" in normalized:
            return YouTubeQuotaExceededError(
                QUOTA_EXCEEDED_MESSAGE,
                status_code=status_code,
                is_quota_error=True,
            )
        return YouTubeAccessDeniedError(ACCESS_DENIED_MESSAGE, status_code=status_code)
    if status_code == 429:
        return YouTubeQuotaExceededError(
            QUOTA_EXCEEDED_MESSAGE,
            status_code=status_code,
            is_quota_error=True,
        )
    return YouTubeApiError(fallback, status_code=status_code)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _extract_error_message(response: httpx.Response) -> str:
    payload = as_dict(_json_or_none(response))
    error = as_dict(payload.get("error"))
    message = error.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    for detail in as_list(error.get("errors")):
        reason = as_dict(detail).get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip()
    return response.text[:400]


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        return {key: item for key, item in raw_dict.items() if isinstance(key, str)}
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
