from __future__ import annotations

import logging
from dataclasses import dataclass
from time import perf_counter

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.curator.repositories.curation_repository import (
    CandidateVideo,
    CurationRepository,
    CuratedVideo,
    TopicRecord,
)
from backend.curator.services.batch_curator import BatchCurator, CurationMode, CurationResult
from backend.curator.services.errors import NoCandidatesError, TopicNotFoundError
from backend.curator.services.key_selector import CallerContext
from backend.curator.services.progress_tracker import ProgressTracker
from backend.curator.services.search_strategy import (
    SearchStrategyGenerator,
    depth_queries,
    skill_level_queries,
)
from backend.curator.services.transcript_ranker import (
    RankingMetadata,
    RankingMode,
    TranscriptRanker,
)
from backend.curator.services.video_fetcher import NO_CANDIDATES_MESSAGE, VideoFetcher

LOGGER = logging.getLogger("curator.pipeline")

ANONYMOUS_CALLER_ID = "anonymous"


@dataclass(frozen=True)
class CurationOutcome:
    topic: TopicRecord
    videos: list[CuratedVideo]
    ranking: RankingMetadata
    summaries: list[str]
    candidate_count: int
    total_batches: int


class CurationPipeline:
    """interest + goal -> strategies -> search/details -> batch curation -> ranking -> storage."""

    def __init__(
        self,
        *,
        strategy_generator: SearchStrategyGenerator,
        video_fetcher: VideoFetcher,
        batch_curator: BatchCurator,
        transcript_ranker: TranscriptRanker,
        curation_repository: CurationRepository,
        progress_tracker: ProgressTracker,
    ) -> None:
        self._strategies = strategy_generator
        self._fetcher = video_fetcher
        self._curator = batch_curator
        self._ranker = transcript_ranker
        self._repository = curation_repository
        self._progress = progress_tracker

    async def curate(
        self,
        *,
        interest: str,
        learning_goal: str,
        mode: CurationMode,
        caller: CallerContext,
        ranking_mode: RankingMode = "auto",
    ) -> CurationOutcome:
        candidates, result = await self._run(
            interest=interest,
            learning_goal=learning_goal,
            mode=mode,
            caller=caller,
        )
        topic = self._repository.create_topic(
            caller_id=caller.caller_id or ANONYMOUS_CALLER_ID,
            interest=interest,
            learning_goal=learning_goal,
            learning_mode=mode,
        )
        return self._store(
            topic,
            candidates=candidates,
            result=result,
            ranking_mode=ranking_mode,
            prune_progress=False,
        )

    async def refresh(
        self,
        topic_id: str,
        *,
        caller: CallerContext,
        ranking_mode: RankingMode = "auto",
    ) -> CurationOutcome:
        topic = self._repository.get_topic(topic_id)
        if topic is None or topic.caller_id != (caller.caller_id or ANONYMOUS_CALLER_ID):
            raise TopicNotFoundError(f"Topic not found: {topic_id}")

        candidates, result = await self._run(
            interest=topic.interest,
            learning_goal=topic.learning_goal,
            mode="quick",
            caller=caller,
        )
        return self._store(
            topic,
            candidates=candidates,
            result=result,
            ranking_mode=ranking_mode,
            prune_progress=True,
        )

    async def _run(
        self,
        *,
        interest: str,
        learning_goal: str,
        mode: CurationMode,
        caller: CallerContext,
    ) -> tuple[list[CandidateVideo], CurationResult]:
        context_tokens = bind_contextvars(curation_mode=mode, curation_interest=interest)
        started_at = perf_counter()
        try:
            if mode == "deep":
                depth_strategies = await self._strategies.generate_depth_dimensions(interest, caller)
                queries = depth_queries(depth_strategies)
            else:
                level_strategies = await self._strategies.generate_for_all_skill_levels(
                    interest, caller
                )
                queries = skill_level_queries(level_strategies)

            candidates = await self._fetcher.fetch(queries, caller)
            if not candidates:
                raise NoCandidatesError(NO_CANDIDATES_MESSAGE)

            if mode == "deep":
                result = await self._curator.curate_depth(
                    candidates,
                    interest=interest,
                    learning_goal=learning_goal,
                    caller=caller,
                )
            else:
                result = await self._curator.curate_multi_level(
                    candidates,
                    interest=interest,
                    learning_goal=learning_goal,
                    caller=caller,
                )
            LOGGER.info(
                "curation pipeline finished queries=%s candidates=%s selected=%s duration_ms=%s",
                len(queries),
                len(candidates),
                len(result.videos),
                int((perf_counter() - started_at) * 1000),
            )
            return candidates, result
        finally:
            reset_contextvars(**context_tokens)

    def _store(
        self,
        topic: TopicRecord,
        *,
        candidates: list[CandidateVideo],
        result: CurationResult,
        ranking_mode: RankingMode,
        prune_progress: bool,
    ) -> CurationOutcome:
        ranking = self._ranker.rank(result.videos, ranking_mode)
        self._repository.save_curated_list(topic.topic_id, ranking.videos)
        self._progress.initialize_topic(
            topic.topic_id,
            [video.external_id for video in ranking.videos],
            prune=prune_progress,
        )
        return CurationOutcome(
            topic=topic,
            videos=ranking.videos,
            ranking=ranking.metadata,
            summaries=result.summaries,
            candidate_count=len(candidates),
            total_batches=result.total_batches,
        )
