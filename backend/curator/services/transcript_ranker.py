from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Literal

from backend.curator.repositories.curation_repository import CuratedVideo
from backend.curator.repositories.quality_score_repository import QualityScoreRepository

LOGGER = logging.getLogger("curator.transcript_ranker")

RankingMode = Literal["enabled", "disabled", "auto"]
SEQUENCE_WEIGHT = 0.6
TRANSCRIPT_WEIGHT = 0.4


@dataclass(frozen=True)
class RankingMetadata:
    transcript_intelligence_used: bool
    videos_with_transcripts: int
    total_videos: int
    average_tqs: int | None = None


@dataclass(frozen=True)
class RankingResult:
    videos: list[CuratedVideo]
    metadata: RankingMetadata


def combined_score(sequence_order: int, tqs: float | None) -> float:
    base = 1 / sequence_order if sequence_order > 0 else 0.0
    if tqs is None:
        return base
    return SEQUENCE_WEIGHT * base + TRANSCRIPT_WEIGHT * (tqs / 100)


def apply_transcript_ranking(
    videos: Sequence[CuratedVideo],
    scores: dict[str, float],
) -> list[CuratedVideo]:
    """Blend the curated order with transcript quality, then renumber 1..N."""
    ordered = sorted(
        videos,
        key=lambda video: (
            -combined_score(video.sequence_order, scores.get(video.external_id)),
            video.sequence_order,
        ),
    )
    return [
        replace(
            video,
            sequence_order=index,
            transcript_quality=scores.get(video.external_id),
        )
        for index, video in enumerate(ordered, start=1)
    ]


class TranscriptRanker:
    def __init__(self, quality_scores: QualityScoreRepository) -> None:
        self._quality_scores = quality_scores

    def rank(self, videos: Sequence[CuratedVideo], mode: RankingMode) -> RankingResult:
        if mode == "disabled" or not videos:
            return RankingResult(
                videos=list(videos),
                metadata=RankingMetadata(
                    transcript_intelligence_used=False,
                    videos_with_transcripts=0,
                    total_videos=len(videos),
                ),
            )

        scores = self._quality_scores.get_quality_scores(video.external_id for video in videos)
        scored_count = sum(1 for video in videos if video.external_id in scores)
        if mode == "auto" and scored_count == 0:
            return RankingResult(
                videos=list(videos),
                metadata=RankingMetadata(
                    transcript_intelligence_used=False,
                    videos_with_transcripts=0,
                    total_videos=len(videos),
                ),
            )

        ranked = apply_transcript_ranking(videos, scores)
        average = round(sum(scores.values()) / len(scores)) if scores else None
        LOGGER.info(
            "transcript ranking applied mode=%s videos=%s scored=%s average_tqs=%s",
            mode,
            len(videos),
            scored_count,
            average,
        )
        return RankingResult(
            videos=ranked,
            metadata=RankingMetadata(
                transcript_intelligence_used=True,
                videos_with_transcripts=scored_count,
                total_videos=len(videos),
                average_tqs=average,
            ),
        )
