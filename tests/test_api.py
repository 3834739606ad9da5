from __future__ import annotations

import json
import re
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.curator.dependencies import (
    get_curation_pipeline,
    get_curation_repository,
    get_database,
    get_key_selector,
    get_key_validator,
    get_progress_tracker,
    get_quality_score_repository,
    get_settings,
    reset_cached_dependencies,
)
from backend.curator.repositories.quality_score_repository import QualityScoreRepository
from backend.curator.services.batch_curator import BatchCurator
from backend.curator.services.curation_pipeline import CurationPipeline
from backend.curator.services.errors import MalformedLLMResponseError
from backend.curator.services.key_selector import CallerContext
from backend.curator.services.search_strategy import SearchStrategyGenerator
from backend.curator.services.transcript_ranker import TranscriptRanker
from backend.curator.services.video_fetcher import VideoFetcher
from backend.curator.services.youtube_client import YouTubeClient

OWNER_HEADERS = {"X-Caller-Id": "owner"}
GUEST_HEADERS = {"X-Caller-Id": "guest"}
PROMPT_VIDEO_ID_PATTERN = re.compile(r'"videoId": "(vid\d{8})"')


class _CuratorLLM:
    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        if "coreLearningPath" not in prompt:
            return '["sourdough starter basics"]'
        ids = PROMPT_VIDEO_ID_PATTERN.findall(prompt)
        return json.dumps(
            {
                "coreLearningPath": [
                    {"videoId": video_id, "reasonSelected": "Clear first steps"}
                    for video_id in ids
                ],
                "additionalContent": [],
                "learningPathSummary": "Start with the starter.",
            }
        )


def _youtube_handler(request: httpx.Request) -> httpx.Response:
    snippet = {
        "title": "Sourdough from scratch",
        "channelTitle": "Bakery",
        "publishedAt": "2025-06-01T00:00:00Z",
        "thumbnails": {"high": {"url": "https://img.test/bread.jpg"}},
    }
    if request.url.path.endswith("/search"):
        items = [{"id": {"videoId": f"vid{number:08d}"}, "snippet": snippet} for number in (1, 2)]
        return httpx.Response(200, json={"items": items})
    ids = (request.url.params.get("id") or "").split(",")
    items = [
        {
            "id": video_id,
            "snippet": snippet,
            "contentDetails": {"duration": "PT15M30S"},
            "statistics": {"viewCount": "1300000"},
        }
        for video_id in ids
    ]
    return httpx.Response(200, json={"items": items})


def _install_fake_pipeline(client: TestClient) -> None:
    selector = get_key_selector()
    llm = _CuratorLLM()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_youtube_handler))
    pipeline = CurationPipeline(
        strategy_generator=SearchStrategyGenerator(key_selector=selector, llm_factory=lambda _key: llm),
        video_fetcher=VideoFetcher(
            youtube_client=YouTubeClient(http_client, base_url="https://youtube.test/v3"),
            key_selector=selector,
            detail_batch_delay_seconds=0,
        ),
        batch_curator=BatchCurator(key_selector=selector, llm_factory=lambda _key: llm),
        transcript_ranker=TranscriptRanker(QualityScoreRepository(get_database())),
        curation_repository=get_curation_repository(),
        progress_tracker=get_progress_tracker(),
    )
    client.app.dependency_overrides[get_curation_pipeline] = lambda: pipeline  # type: ignore[attr-defined]


def _curate(client: TestClient, **overrides: Any) -> httpx.Response:
    body = {"interest": "sourdough", "learning_goal": "Learn the essentials", **overrides}
    return client.post("/curations", json=body, headers=OWNER_HEADERS)


class _FailingPipeline:
    def __init__(self, error: Exception) -> None:
        self._error = error

    async def curate(self, **_: Any) -> Any:
        raise self._error

    async def refresh(self, *_: Any, **__: Any) -> Any:
        raise self._error


class _FakeValidator:
    async def validate(self, provider: str, api_key: str) -> bool:
        return api_key.startswith("good")


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_curation_requires_caller_header(client: TestClient) -> None:
    response = client.post("/curations", json={"interest": "sourdough"})

    assert response.status_code == 401


def test_curate_returns_sequenced_videos(client: TestClient) -> None:
    _install_fake_pipeline(client)

    response = _curate(client)

    assert response.status_code == 200
    payload = response.json()
    assert payload["interest"] == "sourdough"
    assert payload["candidate_count"] == 2
    assert payload["summary"] == "Start with the starter."
    assert payload["ranking"]["transcript_intelligence_used"] is False
    videos = payload["videos"]
    assert [video["sequence_order"] for video in videos] == [1, 2]
    assert videos[0]["duration"] == "15:30"
    assert videos[0]["view_count"] == "1.3M"
    assert videos[0]["difficulty_level"] == "beginner"
    assert videos[0]["path_type"] == "core"


def test_curated_videos_include_watch_state(client: TestClient) -> None:
    _install_fake_pipeline(client)
    topic_id = _curate(client).json()["topic_id"]

    watch = client.post(
        f"/progress/{topic_id}/videos/vid00000002",
        json={"watched": True},
        headers=OWNER_HEADERS,
    )
    listed = client.get(f"/curations/{topic_id}/videos", headers=OWNER_HEADERS)

    assert watch.status_code == 200
    assert watch.json()["completed_videos"] == 1
    assert watch.json()["completion_percentage"] == 50
    assert listed.status_code == 200
    assert [video["is_watched"] for video in listed.json()["videos"]] == [False, True]


def test_progress_completion_and_incomplete_listing(client: TestClient) -> None:
    _install_fake_pipeline(client)
    topic_id = _curate(client).json()["topic_id"]

    incomplete = client.get("/progress", headers=OWNER_HEADERS)
    assert [item["topic_id"] for item in incomplete.json()] == [topic_id]

    for video_id in ("vid00000001", "vid00000002"):
        response = client.post(
            f"/progress/{topic_id}/videos/{video_id}",
            json={"watched": True},
            headers=OWNER_HEADERS,
        )

    progress = response.json()
    assert progress["is_completed"] is True
    assert progress["total_watch_minutes"] == 31
    assert client.get("/progress", headers=OWNER_HEADERS).json() == []
    assert client.get(f"/progress/{topic_id}", headers=OWNER_HEADERS).json()["is_completed"] is True


def test_other_callers_cannot_see_topics(client: TestClient) -> None:
    _install_fake_pipeline(client)
    topic_id = _curate(client).json()["topic_id"]

    assert client.get(f"/curations/{topic_id}/videos", headers=GUEST_HEADERS).status_code == 404
    assert client.get(f"/progress/{topic_id}", headers=GUEST_HEADERS).status_code == 404
    assert client.get("/progress", headers=GUEST_HEADERS).json() == []


def test_refresh_unknown_topic_is_not_found(client: TestClient) -> None:
    _install_fake_pipeline(client)

    response = client.post("/curations/topic_missing/refresh", headers=OWNER_HEADERS)

    assert response.status_code == 404


def test_refresh_replaces_curated_list(client: TestClient) -> None:
    _install_fake_pipeline(client)
    topic_id = _curate(client).json()["topic_id"]

    response = client.post(
        f"/curations/{topic_id}/refresh",
        json={"transcript_ranking": "disabled"},
        headers=OWNER_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["topic_id"] == topic_id
    assert len(response.json()["videos"]) == 2


def test_unprivileged_caller_without_key_is_asked_for_one(client: TestClient) -> None:
    _install_fake_pipeline(client)

    response = client.post("/curations", json={"interest": "sourdough"}, headers=GUEST_HEADERS)

    assert response.status_code == 403
    assert response.json()["detail"] == (
        "Please add your own YouTube API key in Settings to use this feature."
    )


def test_unprivileged_caller_with_own_keys_can_curate(client: TestClient) -> None:
    _install_fake_pipeline(client)
    for provider in ("youtube", "claude"):
        saved = client.post(
            "/keys",
            json={"provider": provider, "api_key": f"guest-{provider}", "validate_key": False},
            headers=GUEST_HEADERS,
        )
        assert saved.status_code == 200

    response = client.post("/curations", json={"interest": "sourdough"}, headers=GUEST_HEADERS)

    assert response.status_code == 200
    assert len(response.json()["videos"]) == 2


def test_malformed_llm_response_maps_to_bad_gateway(client: TestClient) -> None:
    error = MalformedLLMResponseError(
        "Batch 2 response was truncated or malformed.",
        response_length=10,
        head="{",
        tail="{",
    )
    client.app.dependency_overrides[get_curation_pipeline] = lambda: _FailingPipeline(error)  # type: ignore[attr-defined]

    response = _curate(client)

    assert response.status_code == 502
    assert response.json()["detail"] == (
        "Batch 2 response was truncated or malformed. Please try again."
    )


def test_curate_rejects_blank_interest(client: TestClient) -> None:
    response = client.post("/curations", json={"interest": ""}, headers=OWNER_HEADERS)

    assert response.status_code == 422


def test_caller_keys_lifecycle(client: TestClient) -> None:
    client.app.dependency_overrides[get_key_validator] = lambda: _FakeValidator()  # type: ignore[attr-defined]

    rejected = client.post(
        "/keys",
        json={"provider": "youtube", "api_key": "bad-key"},
        headers=GUEST_HEADERS,
    )
    saved = client.post(
        "/keys",
        json={"provider": "youtube", "api_key": "good-key"},
        headers=GUEST_HEADERS,
    )
    listed = client.get("/keys", headers=GUEST_HEADERS)
    other = client.get("/keys", headers=OWNER_HEADERS)

    assert rejected.status_code == 400
    assert saved.status_code == 200
    key_id = saved.json()["key_id"]
    assert "api_key" not in saved.json()
    assert [item["key_id"] for item in listed.json()] == [key_id]
    assert other.json() == []
    assert client.delete(f"/keys/{key_id}", headers=OWNER_HEADERS).status_code == 404
    assert client.delete(f"/keys/{key_id}", headers=GUEST_HEADERS).json() == {"deleted": True}
    assert client.get("/keys", headers=GUEST_HEADERS).json() == []


def test_validate_key_endpoint(client: TestClient) -> None:
    client.app.dependency_overrides[get_key_validator] = lambda: _FakeValidator()  # type: ignore[attr-defined]

    response = client.post(
        "/keys/validate",
        json={"provider": "claude", "api_key": "good-1"},
        headers=GUEST_HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"provider": "claude", "valid": True}


def test_validate_key_requires_caller_header(client: TestClient) -> None:
    client.app.dependency_overrides[get_key_validator] = lambda: _FakeValidator()  # type: ignore[attr-defined]

    response = client.post("/keys/validate", json={"provider": "claude", "api_key": "good-1"})

    assert response.status_code == 401


def test_saving_key_without_encryption_secret_is_unavailable(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("CURATOR_ENCRYPTION_SECRET")
    reset_cached_dependencies()

    response = client.post(
        "/keys",
        json={"provider": "youtube", "api_key": "guest-youtube", "validate_key": False},
        headers=GUEST_HEADERS,
    )

    assert get_settings().encryption_secret is None
    assert response.status_code == 503
    assert "CURATOR_ENCRYPTION_SECRET" in response.json()["detail"]


def test_quality_scores_are_loaded_by_privileged_callers(client: TestClient) -> None:
    body = {"scores": [{"video_id": "vid-1", "tqs": 82.5}, {"video_id": "vid-2", "tqs": 40}]}

    assert client.put("/quality-scores", json=body, headers=GUEST_HEADERS).status_code == 403
    response = client.put("/quality-scores", json=body, headers=OWNER_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"stored": 2}
    assert get_quality_score_repository().get_quality_scores(["vid-1", "vid-2"]) == {
        "vid-1": 82.5,
        "vid-2": 40.0,
    }


def test_quality_scores_reject_out_of_range_values(client: TestClient) -> None:
    body = {"scores": [{"video_id": "vid-1", "tqs": 120}]}

    response = client.put("/quality-scores", json=body, headers=OWNER_HEADERS)

    assert response.status_code == 422


def test_pool_endpoints_are_privileged(client: TestClient) -> None:
    assert client.get("/pool/youtube", headers=GUEST_HEADERS).status_code == 403

    status = client.get("/pool/youtube", headers=OWNER_HEADERS)
    assert status.status_code == 200
    assert [key["credential_id"] for key in status.json()["keys"]] == ["youtube_default"]
    assert "pool-youtube-key" not in status.text

    get_key_selector().select("youtube", CallerContext("owner", is_privileged=True))
    reset = client.post("/pool/youtube/reset-quota", headers=OWNER_HEADERS)
    assert reset.json() == {"provider": "youtube", "keys_reset": 0}
    assert client.get("/pool/vimeo", headers=OWNER_HEADERS).status_code == 422
