from __future__ import annotations

import asyncio
import json
import logging
import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Literal

from backend.curator.repositories.curation_repository import CandidateVideo, CuratedVideo
from backend.curator.services.errors import CurationValidationError
from backend.curator.services.json_repair import parse_llm_json
from backend.curator.services.key_selector import CallerContext, KeySelector
from backend.curator.services.llm_client import LLMClientFactory
from backend.curator.services.search_strategy import DEPTH_DIMENSIONS, SKILL_LEVELS
from backend.curator.services.video_formatting import (
    description_preview,
    duration_minutes,
    format_duration,
    format_upload_date,
    format_view_count,
    recency_label,
)

LOGGER = logging.getLogger("curator.batch_curator")

CurationMode = Literal["quick", "deep"]
DEFAULT_BATCH_SIZE = 25
DEFAULT_CORE_TARGET = 30
DEFAULT_ADDITIONAL_TARGET = 20
DEFAULT_DEPTH_TARGET = 50
DEFAULT_MAX_TOKENS = 6_000
CURATION_TEMPERATURE = 0.3
MISSING_FIELDS_MESSAGE = "Batch processing returned invalid video objects missing required fields"

_QUICK_SYSTEM_PROMPT = (
    "You are an expert educational content curator. Return ONLY valid JSON with no "
    "markdown formatting and no text outside the JSON object."
)
_DEPTH_SYSTEM_PROMPT = (
    "You are an expert in depth-focused learning curation. Prioritise conceptual "
    "understanding over procedure. Return ONLY valid JSON with no markdown formatting."
)


@dataclass(frozen=True)
class LearningGoal:
    name: str
    description: str
    strategy: str


DEFAULT_LEARNING_GOAL = "Learn the essentials"
LEARNING_GOALS: dict[str, LearningGoal] = {
    "Quick overview": LearningGoal(
        name="Quick overview",
        description="Get the basics",
        strategy=(
            "Favour concise, high-level videos that introduce the main ideas efficiently "
            "and give broad coverage without overwhelming detail."
        ),
    ),
    "Learn the essentials": LearningGoal(
        name="Learn the essentials",
        description="Core concepts",
        strategy=(
            "Favour videos that build the core foundational concepts with clear practical "
            "examples."
        ),
    ),
    "Build solid understanding": LearningGoal(
        name="Build solid understanding",
        description="Comprehensive learning",
        strategy=(
            "Favour comprehensive coverage with depth and multiple perspectives, including "
            "detailed explanations and practical application."
        ),
    ),
    "Deep dive & mastery": LearningGoal(
        name="Deep dive & mastery",
        description="Expert-level knowledge",
        strategy=(
            "Favour expert-level material, advanced techniques and professional insight "
            "aimed at mastery."
        ),
    ),
}


def learning_goal_details(goal: str) -> LearningGoal:
    return LEARNING_GOALS.get(goal.strip(), LEARNING_GOALS[DEFAULT_LEARNING_GOAL])


@dataclass(frozen=True)
class BatchResult:
    selected_videos: tuple[CuratedVideo, ...]
    batch_index: int
    total_batches: int
    summary: str | None = None


@dataclass(frozen=True)
class CurationResult:
    videos: list[CuratedVideo]
    total_batches: int
    summaries: list[str]

    @property
    def core_count(self) -> int:
        return sum(1 for video in self.videos if video.path_type == "core")


def partition(candidates: Sequence[CandidateVideo], batch_size: int) -> list[list[CandidateVideo]]:
    size = max(1, batch_size)
    return [list(candidates[start : start + size]) for start in range(0, len(candidates), size)]


def per_batch_target(total_target: int, total_batches: int) -> int:
    if total_batches <= 0:
        return 0
    return math.ceil(total_target / total_batches)


def candidate_prompt_payload(
    candidate: CandidateVideo,
    *,
    now: datetime | None = None,
    tag_key: str,
) -> dict[str, Any]:
    duration = format_duration(candidate.duration_seconds)
    return {
        "videoId": candidate.external_id,
        "title": candidate.title,
        "description": description_preview(candidate.description),
        "duration": duration,
        "durationMinutes": duration_minutes(duration),
        "channelName": candidate.channel_name or "",
        "viewCount": format_view_count(candidate.view_count),
        "uploadDate": format_upload_date(candidate.published_at, now=now),
        "recencyScore": recency_label(candidate.published_at, now=now),
        tag_key: candidate.source_tag,
    }


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _pick_enum(value: object, allowed: Sequence[str]) -> str | None:
    text = _text(value)
    if text is None:
        return None
    normalized = text.lower()
    if normalized in allowed:
        return normalized
    return None


def build_curated_video(
    item: dict[str, Any],
    candidate: CandidateVideo,
    *,
    sequence_order: int,
    path_type: str | None,
    depth_mode: bool,
) -> CuratedVideo:
    """Combine one LLM selection with its candidate; the candidate's metadata wins when present."""
    duration = (
        format_duration(candidate.duration_seconds)
        if candidate.duration_seconds is not None
        else (_text(item.get("duration")) or "")
    )
    difficulty = _pick_enum(item.get("difficultyLevel"), SKILL_LEVELS)
    if difficulty is None and not depth_mode and candidate.source_tag in SKILL_LEVELS:
        difficulty = candidate.source_tag

    depth_dimension = None
    if depth_mode:
        depth_dimension = _pick_enum(item.get("depthDimension"), DEPTH_DIMENSIONS)
        if depth_dimension is None:
            depth_dimension = (
                candidate.source_tag if candidate.source_tag in DEPTH_DIMENSIONS else "conceptual"
            )

    return CuratedVideo(
        external_id=candidate.external_id,
        title=candidate.title or (_text(item.get("title")) or ""),
        description=candidate.description or _text(item.get("description")),
        thumbnail_url=candidate.thumbnail_url or _text(item.get("thumbnailUrl")),
        duration=duration,
        channel_name=candidate.channel_name or _text(item.get("channelName")),
        view_count=candidate.view_count,
        published_at=candidate.published_at,
        reason_selected=_text(item.get("reasonSelected")) or "",
        sequence_order=sequence_order,
        difficulty_level=difficulty,
        depth_dimension=depth_dimension,
        path_type=path_type,
        source_tag=candidate.source_tag,
    )


def merge_selections(
    groups: Sequence[Sequence[CuratedVideo]],
    *,
    seen: set[str],
    start_at: int = 1,
) -> list[CuratedVideo]:
    """Concatenate groups in order, drop ids already in `seen`, and number the rest densely."""
    merged: list[CuratedVideo] = []
    for group in groups:
        for video in group:
            if video.external_id in seen:
                continue
            seen.add(video.external_id)
            merged.append(replace(video, sequence_order=start_at + len(merged)))
    return merged


def validate_curated(videos: Sequence[CuratedVideo]) -> None:
    for video in videos:
        if not video.external_id or not video.title or not video.duration:
            raise CurationValidationError(MISSING_FIELDS_MESSAGE)


class BatchCurator:
    """
    Selects videos with one LLM call per fixed-size batch and merges the batches.

    Batches run concurrently, each inside its own credential envelope. A batch whose
    response cannot be parsed fails the whole curation.
    """

    def __init__(
        self,
        *,
        key_selector: KeySelector,
        llm_factory: LLMClientFactory,
        batch_size: int = DEFAULT_BATCH_SIZE,
        core_target: int = DEFAULT_CORE_TARGET,
        additional_target: int = DEFAULT_ADDITIONAL_TARGET,
        depth_target: int = DEFAULT_DEPTH_TARGET,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._key_selector = key_selector
        self._llm_factory = llm_factory
        self._batch_size = max(1, batch_size)
        self._core_target = core_target
        self._additional_target = additional_target
        self._depth_target = depth_target
        self._max_tokens = max_tokens

    async def curate_multi_level(
        self,
        candidates: Sequence[CandidateVideo],
        *,
        interest: str,
        learning_goal: str,
        caller: CallerContext,
    ) -> CurationResult:
        batches = partition(candidates, self._batch_size)
        total_batches = len(batches)
        if total_batches == 0:
            return CurationResult(videos=[], total_batches=0, summaries=[])

        core_per_batch = per_batch_target(self._core_target, total_batches)
        additional_per_batch = per_batch_target(self._additional_target, total_batches)
        LOGGER.info(
            "curation started mode=quick candidates=%s batches=%s core_per_batch=%s "
            "additional_per_batch=%s",
            len(candidates),
            total_batches,
            core_per_batch,
            additional_per_batch,
        )

        results = await asyncio.gather(
            *(
                self._curate_quick_batch(
                    batch,
                    batch_index=index,
                    total_batches=total_batches,
                    core_target=core_per_batch,
                    additional_target=additional_per_batch,
                    interest=interest,
                    learning_goal=learning_goal,
                    caller=caller,
                )
                for index, batch in enumerate(batches)
            )
        )

        seen: set[str] = set()
        core = merge_selections(
            [[v for v in result.selected_videos if v.path_type == "core"] for result in results],
            seen=seen,
        )
        additional = merge_selections(
            [
                [v for v in result.selected_videos if v.path_type == "additional"]
                for result in results
            ],
            seen=seen,
            start_at=len(core) + 1,
        )
        videos = core + additional
        validate_curated(videos)

        LOGGER.info(
            "curation finished mode=quick batches=%s core=%s additional=%s difficulty=%s",
            total_batches,
            len(core),
            len(additional),
            dict(Counter(video.difficulty_level or "unknown" for video in core)),
        )
        return CurationResult(
            videos=videos,
            total_batches=total_batches,
            summaries=[result.summary for result in results if result.summary],
        )

    async def curate_depth(
        self,
        candidates: Sequence[CandidateVideo],
        *,
        interest: str,
        learning_goal: str,
        caller: CallerContext,
    ) -> CurationResult:
        batches = partition(candidates, self._batch_size)
        total_batches = len(batches)
        if total_batches == 0:
            return CurationResult(videos=[], total_batches=0, summaries=[])

        target_per_batch = per_batch_target(self._depth_target, total_batches)
        LOGGER.info(
            "curation started mode=deep candidates=%s batches=%s target_per_batch=%s",
            len(candidates),
            total_batches,
            target_per_batch,
        )

        results = await asyncio.gather(
            *(
                self._curate_depth_batch(
                    batch,
                    batch_index=index,
                    total_batches=total_batches,
                    target=target_per_batch,
                    interest=interest,
                    learning_goal=learning_goal,
                    caller=caller,
                )
                for index, batch in enumerate(batches)
            )
        )

        videos = merge_selections([result.selected_videos for result in results], seen=set())
        validate_curated(videos)
        LOGGER.info(
            "curation finished mode=deep batches=%s selected=%s dimensions=%s",
            total_batches,
            len(videos),
            dict(Counter(video.depth_dimension or "unknown" for video in videos)),
        )
        return CurationResult(
            videos=videos,
            total_batches=total_batches,
            summaries=[result.summary for result in results if result.summary],
        )

    async def _curate_quick_batch(
        self,
        batch: Sequence[CandidateVideo],
        *,
        batch_index: int,
        total_batches: int,
        core_target: int,
        additional_target: int,
        interest: str,
        learning_goal: str,
        caller: CallerContext,
    ) -> BatchResult:
        goal = learning_goal_details(learning_goal)
        payload = [candidate_prompt_payload(c, tag_key="searchLevel") for c in batch]
        prompt = (
            f'Analyze these YouTube videos for someone who wants to learn "{interest}". '
            f"Their learning goal is '{goal.name}' ({goal.description}). {goal.strategy}\n\n"
            f"This is batch {batch_index + 1} of {total_batches} with {len(batch)} videos.\n"
            f"Select up to {core_target} videos for the core learning path and up to "
            f"{additional_target} videos for additional exploration. Assign each a "
            'difficultyLevel ("beginner", "intermediate" or "advanced") from its actual '
            "content and a reasonSelected of at most 120 characters. Only use videoId "
            "values from the list below.\n\n"
            f"Videos:\n{json.dumps(payload, ensure_ascii=False)}\n\n"
            'Return ONLY a JSON object: {"coreLearningPath": [{"videoId": "...", '
            '"title": "...", "duration": "...", "reasonSelected": "...", '
            '"difficultyLevel": "..."}], "additionalContent": [...same shape...], '
            '"learningPathSummary": "..."}'
        )
        parsed = await self._complete(
            caller,
            prompt=prompt,
            system=_QUICK_SYSTEM_PROMPT,
            context=f"Batch {batch_index + 1}",
        )
        response = parsed if isinstance(parsed, dict) else {}
        by_id = {candidate.external_id: candidate for candidate in batch}
        core = self._select_items(
            response.get("coreLearningPath"),
            by_id,
            limit=core_target,
            path_type="core",
            depth_mode=False,
            batch_index=batch_index,
        )
        additional = self._select_items(
            response.get("additionalContent"),
            by_id,
            limit=additional_target,
            path_type="additional",
            depth_mode=False,
            batch_index=batch_index,
        )
        return BatchResult(
            selected_videos=tuple(core + additional),
            batch_index=batch_index,
            total_batches=total_batches,
            summary=_text(response.get("learningPathSummary")),
        )

    async def _curate_depth_batch(
        self,
        batch: Sequence[CandidateVideo],
        *,
        batch_index: int,
        total_batches: int,
        target: int,
        interest: str,
        learning_goal: str,
        caller: CallerContext,
    ) -> BatchResult:
        goal = learning_goal_details(learning_goal)
        payload = [candidate_prompt_payload(c, tag_key="depthDimension") for c in batch]
        dimensions = ", ".join(DEPTH_DIMENSIONS)
        prompt = (
            f'Select videos that build deep understanding of "{interest}" for a learner '
            f"whose goal is '{goal.name}' ({goal.description}).\n\n"
            f"This is batch {batch_index + 1} of {total_batches} with {len(batch)} videos. "
            f"Select up to {target} videos. Prefer principles, analysis, frameworks, "
            "critical evaluation and historical context over quick tips. Verify each "
            f"video's depthDimension ({dimensions}) against its content, assign a "
            "difficultyLevel and a reasonSelected of at most 120 characters. Only use "
            "videoId values from the list below.\n\n"
            f"Videos:\n{json.dumps(payload, ensure_ascii=False)}\n\n"
            'Return ONLY a JSON object: {"selectedVideos": [{"videoId": "...", '
            '"title": "...", "duration": "...", "reasonSelected": "...", '
            '"depthDimension": "...", "difficultyLevel": "..."}]}'
        )
        parsed = await self._complete(
            caller,
            prompt=prompt,
            system=_DEPTH_SYSTEM_PROMPT,
            context=f"Depth batch {batch_index + 1}",
        )
        response = parsed if isinstance(parsed, dict) else {}
        selected = self._select_items(
            response.get("selectedVideos"),
            {candidate.external_id: candidate for candidate in batch},
            limit=target,
            path_type=None,
            depth_mode=True,
            batch_index=batch_index,
        )
        return BatchResult(
            selected_videos=tuple(selected),
            batch_index=batch_index,
            total_batches=total_batches,
        )

    def _select_items(
        self,
        raw_items: object,
        by_id: dict[str, CandidateVideo],
        *,
        limit: int,
        path_type: str | None,
        depth_mode: bool,
        batch_index: int,
    ) -> list[CuratedVideo]:
        if not isinstance(raw_items, list):
            return []
        selected: list[CuratedVideo] = []
        taken: set[str] = set()
        for raw_item in raw_items:
            if len(selected) >= limit:
                break
            if not isinstance(raw_item, dict):
                continue
            video_id = raw_item.get("videoId")
            candidate = by_id.get(video_id) if isinstance(video_id, str) else None
            if candidate is None:
                LOGGER.warning(
                    "curation dropped unknown video batch=%s video_id=%r",
                    batch_index + 1,
                    video_id,
                )
                continue
            if candidate.external_id in taken:
                continue
            taken.add(candidate.external_id)
            selected.append(
                build_curated_video(
                    raw_item,
                    candidate,
                    sequence_order=len(selected) + 1,
                    path_type=path_type,
                    depth_mode=depth_mode,
                )
            )
        return selected

    async def _complete(
        self,
        caller: CallerContext,
        *,
        prompt: str,
        system: str,
        context: str,
    ) -> Any:
        async def _call(api_key: str) -> str:
            client = self._llm_factory(api_key)
            return await client.complete(
                prompt,
                system=system,
                max_tokens=self._max_tokens,
                temperature=CURATION_TEMPERATURE,
            )

        text = await self._key_selector.run("claude", caller, _call)
        return parse_llm_json(text, context=context)
