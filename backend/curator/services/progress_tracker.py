from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from backend.curator.repositories.common import utc_now_iso
from backend.curator.repositories.curation_repository import CurationRepository
from backend.curator.repositories.progress_repository import (
    ProgressRepository,
    ProgressVideo,
    TopicProgressRecord,
)
from backend.curator.services.video_formatting import display_duration_seconds

LOGGER = logging.getLogger("curator.progress")


@dataclass(frozen=True)
class TopicProgress:
    topic_id: str
    videos: tuple[ProgressVideo, ...]
    completed_count: int
    total_count: int
    is_completed: bool
    completed_at: str | None
    total_watch_minutes: int | None
    updated_at: str

    @property
    def completion_percentage(self) -> int:
        if self.total_count == 0:
            return 0
        return round(self.completed_count / self.total_count * 100)


def summarize(record: TopicProgressRecord) -> TopicProgress:
    # Counts are derived from the video list on every read, never stored.
    completed = sum(1 for video in record.videos if video.is_watched)
    total = len(record.videos)
    return TopicProgress(
        topic_id=record.topic_id,
        videos=record.videos,
        completed_count=completed,
        total_count=total,
        is_completed=total > 0 and completed == total,
        completed_at=record.completed_at,
        total_watch_minutes=record.total_watch_minutes,
        updated_at=record.updated_at,
    )


class ProgressTracker:
    def __init__(
        self,
        *,
        progress_repository: ProgressRepository,
        curation_repository: CurationRepository,
    ) -> None:
        self._progress = progress_repository
        self._curation = curation_repository

    def initialize_topic(
        self,
        topic_id: str,
        external_ids: Sequence[str],
        *,
        prune: bool = False,
    ) -> TopicProgress:
        """
        Start tracking a topic's videos, or add newly curated ones to existing progress.

        Watch state of already tracked videos is kept. With `prune`, videos that are
        no longer in `external_ids` stop being tracked (used after a refresh).
        """
        removed = self._progress.remove_videos_except(topic_id, external_ids) if prune else 0
        added = self._progress.add_videos(topic_id, external_ids)
        progress = self._require(topic_id)
        if progress.completed_at is not None and not progress.is_completed:
            self._progress.set_completion(topic_id, completed_at=None, total_watch_minutes=None)
            progress = self._require(topic_id)
        LOGGER.info(
            "progress initialized topic_id=%s added=%s removed=%s total=%s",
            topic_id,
            added,
            removed,
            progress.total_count,
        )
        return progress

    def get(self, topic_id: str) -> TopicProgress | None:
        record = self._progress.get(topic_id)
        if record is None:
            return None
        return summarize(record)

    def set_watched(self, topic_id: str, external_id: str, *, watched: bool) -> TopicProgress | None:
        before = self.get(topic_id)
        if before is None:
            return None
        updated = self._progress.set_watched(
            topic_id,
            external_id,
            is_watched=watched,
            watched_at=utc_now_iso() if watched else None,
        )
        if not updated:
            return None

        after = self._require(topic_id)
        if after.is_completed and after.completed_at is None:
            self._progress.set_completion(
                topic_id,
                completed_at=utc_now_iso(),
                total_watch_minutes=self._total_watch_minutes(topic_id),
            )
            LOGGER.info("topic completed topic_id=%s videos=%s", topic_id, after.total_count)
            after = self._require(topic_id)
        elif not after.is_completed and after.completed_at is not None:
            self._progress.set_completion(topic_id, completed_at=None, total_watch_minutes=None)
            after = self._require(topic_id)
        return after

    def incomplete_topics(self) -> list[TopicProgress]:
        incomplete: list[TopicProgress] = []
        for topic_id in self._progress.list_topic_ids():
            progress = self.get(topic_id)
            if progress is not None and progress.completed_count < progress.total_count:
                incomplete.append(progress)
        return incomplete

    def watch_state(self, topic_id: str) -> dict[str, bool]:
        progress = self.get(topic_id)
        if progress is None:
            return {}
        return {video.external_id: video.is_watched for video in progress.videos}

    def _total_watch_minutes(self, topic_id: str) -> int:
        total_seconds = sum(
            display_duration_seconds(video.duration)
            for video in self._curation.list_curated_videos(topic_id)
        )
        return round(total_seconds / 60)

    def _require(self, topic_id: str) -> TopicProgress:
        progress = self.get(topic_id)
        if progress is None:
            raise KeyError(topic_id)
        return progress
