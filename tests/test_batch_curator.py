from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any

import pytest

from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.repositories.curation_repository import CandidateVideo, CuratedVideo
from backend.curator.services.batch_curator import (
    BatchCurator,
    learning_goal_details,
    merge_selections,
    partition,
    per_batch_target,
)
from backend.curator.services.errors import (
    CurationValidationError,
    LLMProviderError,
    MalformedLLMResponseError,
)
from backend.curator.services.key_pool import KeyPool
from backend.curator.services.key_selector import CallerContext, KeySelector

OWNER = CallerContext("owner", is_privileged=True)
PROMPT_VIDEO_ID_PATTERN = re.compile(r'"videoId": "(vid\d{8})"')
HALLUCINATED_ID = "zzzzzzzzzzz"


class _BatchLLM:
    """Answers every curation prompt by selecting from the ids listed in that prompt."""

    def __init__(self, reply: Callable[[list[str]], Any]) -> None:
        self._reply = reply
        self.prompts: list[str] = []

    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        self.prompts.append(prompt)
        reply = self._reply(PROMPT_VIDEO_ID_PATTERN.findall(prompt))
        return reply if isinstance(reply, str) else json.dumps(reply)


def _candidate(
    number: int,
    *,
    tag: str = "beginner",
    duration_seconds: int | None = 600,
) -> CandidateVideo:
    return CandidateVideo(
        external_id=f"vid{number:08d}",
        title=f"Lesson {number}",
        description="Explains one idea.",
        thumbnail_url=f"https://img.test/{number}.jpg",
        duration_seconds=duration_seconds,
        channel_name="Teaching Channel",
        view_count=12_000,
        published_at="2025-03-01T00:00:00Z",
        source_tag=tag,
    )


def _curator(
    caller_keys: CallerKeyRepository,
    llm: _BatchLLM,
    **kwargs: int,
) -> BatchCurator:
    key_pool = KeyPool()
    key_pool.initialize("claude", {"ANTHROPIC_API_KEY": "pool-claude"})
    selector = KeySelector(key_pool=key_pool, caller_key_repository=caller_keys)
    return BatchCurator(key_selector=selector, llm_factory=lambda _key: llm, **kwargs)


def _selection(video_id: str, **extra: str) -> dict[str, str]:
    return {"videoId": video_id, "reasonSelected": "Clear explanation", **extra}


def _curated(video_id: str, sequence_order: int) -> CuratedVideo:
    return CuratedVideo(
        external_id=video_id,
        title=video_id,
        description=None,
        thumbnail_url=None,
        duration="10:00",
        channel_name=None,
        view_count=None,
        published_at=None,
        reason_selected="",
        sequence_order=sequence_order,
    )


def test_partition_and_per_batch_targets() -> None:
    candidates = [_candidate(number) for number in range(150)]

    batches = partition(candidates, 25)

    assert len(batches) == 6
    assert [len(batch) for batch in batches] == [25] * 6
    assert per_batch_target(30, 6) == 5
    assert per_batch_target(20, 6) == 4
    assert per_batch_target(50, 0) == 0


def test_merge_selections_dedupes_and_renumbers() -> None:
    seen: set[str] = set()
    merged = merge_selections(
        [
            [_curated("a", 1), _curated("b", 2)],
            [_curated("b", 1), _curated("c", 2)],
        ],
        seen=seen,
        start_at=3,
    )

    assert [(video.external_id, video.sequence_order) for video in merged] == [
        ("a", 3),
        ("b", 4),
        ("c", 5),
    ]
    assert seen == {"a", "b", "c"}


def test_curate_multi_level_merges_six_batches(caller_keys: CallerKeyRepository) -> None:
    def _reply(ids: list[str]) -> dict[str, Any]:
        return {
            "coreLearningPath": [_selection(HALLUCINATED_ID)]
            + [_selection(video_id) for video_id in ids[:6]],
            "additionalContent": [_selection(video_id) for video_id in ids[6:11]],
            "learningPathSummary": "Start simple, then go deeper.",
        }

    llm = _BatchLLM(_reply)
    curator = _curator(caller_keys, llm)
    candidates = [_candidate(number) for number in range(150)]

    result = asyncio.run(
        curator.curate_multi_level(
            candidates,
            interest="watercolour painting",
            learning_goal="Learn the essentials",
            caller=OWNER,
        )
    )

    core = [video for video in result.videos if video.path_type == "core"]
    additional = [video for video in result.videos if video.path_type == "additional"]
    assert len(llm.prompts) == 6
    assert result.total_batches == 6
    assert len(core) == 30
    assert result.core_count == 30
    assert len(additional) == 24
    assert [video.sequence_order for video in core] == list(range(1, 31))
    assert [video.sequence_order for video in result.videos] == list(
        range(1, len(result.videos) + 1)
    )
    candidate_ids = {candidate.external_id for candidate in candidates}
    selected_ids = [video.external_id for video in result.videos]
    assert len(selected_ids) == len(set(selected_ids))
    assert set(selected_ids) <= candidate_ids
    assert HALLUCINATED_ID not in selected_ids
    assert len(result.summaries) == 6


def _two_core_one_additional(ids: list[str]) -> dict[str, Any]:
    return {
        "coreLearningPath": [_selection(video_id) for video_id in ids[:2]],
        "additionalContent": [_selection(video_id) for video_id in ids[2:3]],
        "learningPathSummary": "Basics first.",
    }


class _ConcurrentLLM(_BatchLLM):
    def __init__(self, reply: Callable[[list[str]], Any]) -> None:
        super().__init__(reply)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().complete(
                prompt,
                system=system,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        finally:
            self.in_flight -= 1


def test_curate_multi_level_sends_batches_in_parallel(caller_keys: CallerKeyRepository) -> None:
    llm = _ConcurrentLLM(_two_core_one_additional)
    curator = _curator(caller_keys, llm)

    result = asyncio.run(
        curator.curate_multi_level(
            [_candidate(number) for number in range(75)],
            interest="watercolour painting",
            learning_goal="Learn the essentials",
            caller=OWNER,
        )
    )

    assert result.total_batches == 3
    assert len(llm.prompts) == 3
    assert llm.peak_in_flight == 3
    assert llm.in_flight == 0


def test_credential_failure_retries_only_the_failing_batch(
    caller_keys: CallerKeyRepository,
) -> None:
    caller_keys.put_key(caller_id="owner", provider="claude", secret_value="own-key")
    keys_used: list[str] = []
    failing_video_id = _candidate(25).external_id

    class _KeyedLLM(_ConcurrentLLM):
        def __init__(self, api_key: str) -> None:
            super().__init__(_two_core_one_additional)
            self._api_key = api_key

        async def complete(
            self,
            prompt: str,
            *,
            system: str,
            max_tokens: int,
            temperature: float,
        ) -> str:
            if self._api_key == "own-key" and failing_video_id in prompt:
                await asyncio.sleep(0.01)
                raise LLMProviderError("Claude request failed status=401: invalid x-api-key")
            return await super().complete(
                prompt,
                system=system,
                max_tokens=max_tokens,
                temperature=temperature,
            )

    def _factory(api_key: str) -> _KeyedLLM:
        keys_used.append(api_key)
        return _KeyedLLM(api_key)

    key_pool = KeyPool()
    key_pool.initialize("claude", {"ANTHROPIC_API_KEY": "pool-claude"})
    curator = BatchCurator(
        key_selector=KeySelector(key_pool=key_pool, caller_key_repository=caller_keys),
        llm_factory=_factory,
    )

    result = asyncio.run(
        curator.curate_multi_level(
            [_candidate(number) for number in range(75)],
            interest="watercolour painting",
            learning_goal="Learn the essentials",
            caller=OWNER,
        )
    )

    assert sorted(keys_used) == ["own-key", "own-key", "own-key", "pool-claude"]
    assert caller_keys.get_active_key(caller_id="owner", provider="claude") is None
    assert caller_keys.list_keys(caller_id="owner")[0].quota_status == "invalid"
    assert result.total_batches == 3
    assert result.core_count == 6
    assert [video.sequence_order for video in result.videos] == list(range(1, 10))
    assert failing_video_id in {video.external_id for video in result.videos}


def test_candidate_metadata_wins_over_llm_echo(caller_keys: CallerKeyRepository) -> None:
    def _reply(ids: list[str]) -> dict[str, Any]:
        return {
            "coreLearningPath": [
                _selection(ids[0], title="Hallucinated title", difficultyLevel="ADVANCED"),
                _selection(ids[1]),
            ],
            "additionalContent": [],
        }

    curator = _curator(caller_keys, _BatchLLM(_reply))
    candidates = [_candidate(1, tag="intermediate"), _candidate(2, tag="intermediate")]

    result = asyncio.run(
        curator.curate_multi_level(
            candidates,
            interest="chess",
            learning_goal="Quick overview",
            caller=OWNER,
        )
    )

    first, second = result.videos
    assert first.title == "Lesson 1"
    assert first.duration == "10:00"
    assert first.difficulty_level == "advanced"
    assert second.difficulty_level == "intermediate"
    assert first.reason_selected == "Clear explanation"


def test_curate_fails_on_unparseable_batch(caller_keys: CallerKeyRepository) -> None:
    curator = _curator(caller_keys, _BatchLLM(lambda _ids: '{"coreLearningPath": [{"videoId": '))

    with pytest.raises(MalformedLLMResponseError) as exc_info:
        asyncio.run(
            curator.curate_multi_level(
                [_candidate(1)],
                interest="chess",
                learning_goal="Learn the essentials",
                caller=OWNER,
            )
        )

    assert str(exc_info.value) == "Batch 1 response was truncated or malformed."


def test_curate_rejects_videos_without_duration(caller_keys: CallerKeyRepository) -> None:
    def _reply(ids: list[str]) -> dict[str, Any]:
        return {"coreLearningPath": [_selection(video_id) for video_id in ids]}

    curator = _curator(caller_keys, _BatchLLM(_reply))

    with pytest.raises(CurationValidationError):
        asyncio.run(
            curator.curate_multi_level(
                [_candidate(1, duration_seconds=None)],
                interest="chess",
                learning_goal="Learn the essentials",
                caller=OWNER,
            )
        )


def test_llm_duration_fills_in_unknown_candidate_duration(
    caller_keys: CallerKeyRepository,
) -> None:
    def _reply(ids: list[str]) -> dict[str, Any]:
        return {"coreLearningPath": [_selection(video_id, duration="7:30") for video_id in ids]}

    curator = _curator(caller_keys, _BatchLLM(_reply))

    result = asyncio.run(
        curator.curate_multi_level(
            [_candidate(1, duration_seconds=None)],
            interest="chess",
            learning_goal="Learn the essentials",
            caller=OWNER,
        )
    )

    assert result.videos[0].duration == "7:30"


def test_curate_depth_tags_dimensions_and_sequences(caller_keys: CallerKeyRepository) -> None:
    def _reply(ids: list[str]) -> dict[str, Any]:
        selections = [_selection(video_id) for video_id in ids]
        selections[0]["depthDimension"] = "Critical"
        return {"selectedVideos": selections}

    llm = _BatchLLM(_reply)
    curator = _curator(caller_keys, llm, batch_size=25, depth_target=50)
    candidates = [_candidate(number, tag="analytical") for number in range(30)]

    result = asyncio.run(
        curator.curate_depth(
            candidates,
            interest="macroeconomics",
            learning_goal="Deep dive & mastery",
            caller=OWNER,
        )
    )

    assert result.total_batches == 2
    assert len(result.videos) == 30
    assert [video.sequence_order for video in result.videos] == list(range(1, 31))
    assert result.videos[0].depth_dimension == "critical"
    assert result.videos[1].depth_dimension == "analytical"
    assert all(video.path_type is None for video in result.videos)
    assert "Select up to 25 videos" in llm.prompts[0]


def test_unknown_learning_goal_uses_default() -> None:
    assert learning_goal_details("Become famous").name == "Learn the essentials"
    assert learning_goal_details(" Quick overview ").description == "Get the basics"
