from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass

from backend.curator.repositories.common import new_id, optional_text, utc_now_iso
from backend.curator.repositories.database import Database


@dataclass(frozen=True)
class CandidateVideo:
    external_id: str
    title: str
    description: str | None
    thumbnail_url: str | None
    duration_seconds: int | None
    channel_name: str | None
    view_count: int | None
    published_at: str | None
    source_tag: str | None


@dataclass(frozen=True)
class CuratedVideo:
    external_id: str
    title: str
    description: str | None
    thumbnail_url: str | None
    duration: str
    channel_name: str | None
    view_count: int | None
    published_at: str | None
    reason_selected: str
    sequence_order: int
    difficulty_level: str | None = None
    depth_dimension: str | None = None
    path_type: str | None = None
    source_tag: str | None = None
    transcript_quality: float | None = None


@dataclass(frozen=True)
class TopicRecord:
    topic_id: str
    caller_id: str
    interest: str
    learning_goal: str
    learning_mode: str
    created_at: str
    updated_at: str


class CurationRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_topic(
        self,
        *,
        caller_id: str,
        interest: str,
        learning_goal: str,
        learning_mode: str,
    ) -> TopicRecord:
        normalized_interest = interest.strip()
        if not normalized_interest:
            raise ValueError("interest must not be empty")

        topic_id = new_id("topic")
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO topics (
                    topic_id, caller_id, interest, learning_goal, learning_mode,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    topic_id,
                    caller_id,
                    normalized_interest,
                    learning_goal,
                    learning_mode,
                    now_iso,
                    now_iso,
                ),
            )
        return TopicRecord(
            topic_id=topic_id,
            caller_id=caller_id,
            interest=normalized_interest,
            learning_goal=learning_goal,
            learning_mode=learning_mode,
            created_at=now_iso,
            updated_at=now_iso,
        )

    def get_topic(self, topic_id: str) -> TopicRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT topic_id, caller_id, interest, learning_goal, learning_mode,
                       created_at, updated_at
                FROM topics
                WHERE topic_id = ?
                """,
                (topic_id,),
            ).fetchone()
        if row is None:
            return None
        return _topic_from_row(row)

    def list_topics(self, *, caller_id: str) -> list[TopicRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT topic_id, caller_id, interest, learning_goal, learning_mode,
                       created_at, updated_at
                FROM topics
                WHERE caller_id = ?
                ORDER BY created_at DESC
                """,
                (caller_id,),
            ).fetchall()
        return [_topic_from_row(row) for row in rows]

    def upsert_videos(self, videos: Sequence[CuratedVideo]) -> None:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            _upsert_videos(conn, videos, now_iso)

    def save_curated_list(self, topic_id: str, videos: Sequence[CuratedVideo]) -> int:
        """Replace the stored curated list of a topic, upserting canonical video rows first."""
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            _upsert_videos(conn, videos, now_iso)
            conn.execute("DELETE FROM curated_videos WHERE topic_id = ?", (topic_id,))
            conn.executemany(
                """
                INSERT INTO curated_videos (
                    topic_id, external_id, sequence_order, path_type, difficulty_level,
                    depth_dimension, source_tag, reason_selected, transcript_quality,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        topic_id,
                        video.external_id,
                        video.sequence_order,
                        video.path_type,
                        video.difficulty_level,
                        video.depth_dimension,
                        video.source_tag,
                        video.reason_selected,
                        video.transcript_quality,
                        now_iso,
                    )
                    for video in videos
                ],
            )
            conn.execute(
                "UPDATE topics SET updated_at = ? WHERE topic_id = ?",
                (now_iso, topic_id),
            )
        return len(videos)

    def list_curated_videos(self, topic_id: str) -> list[CuratedVideo]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT c.external_id, v.title, v.description, v.thumbnail_url, v.duration,
                       v.channel_name, v.view_count, v.published_at, c.reason_selected,
                       c.sequence_order, c.difficulty_level, c.depth_dimension,
                       c.path_type, c.source_tag, c.transcript_quality
                FROM curated_videos c
                JOIN videos v ON v.external_id = c.external_id
                WHERE c.topic_id = ?
                ORDER BY c.sequence_order ASC
                """,
                (topic_id,),
            ).fetchall()
        return [
            CuratedVideo(
                external_id=str(row["external_id"]),
                title=str(row["title"]),
                description=optional_text(row["description"]),
                thumbnail_url=optional_text(row["thumbnail_url"]),
                duration=str(row["duration"] or ""),
                channel_name=optional_text(row["channel_name"]),
                view_count=(int(row["view_count"]) if row["view_count"] is not None else None),
                published_at=optional_text(row["published_at"]),
                reason_selected=str(row["reason_selected"]),
                sequence_order=int(row["sequence_order"]),
                difficulty_level=optional_text(row["difficulty_level"]),
                depth_dimension=optional_text(row["depth_dimension"]),
                path_type=optional_text(row["path_type"]),
                source_tag=optional_text(row["source_tag"]),
                transcript_quality=(
                    float(row["transcript_quality"])
                    if row["transcript_quality"] is not None
                    else None
                ),
            )
            for row in rows
        ]


def _upsert_videos(
    conn: sqlite3.Connection,
    videos: Sequence[CuratedVideo],
    now_iso: str,
) -> None:
    conn.executemany(
        """
        INSERT INTO videos (
            external_id, title, description, thumbnail_url, duration,
            channel_name, view_count, published_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(external_id) DO UPDATE SET
            title = excluded.title,
            description = excluded.description,
            thumbnail_url = excluded.thumbnail_url,
            duration = excluded.duration,
            channel_name = excluded.channel_name,
            view_count = excluded.view_count,
            published_at = excluded.published_at,
            updated_at = excluded.updated_at
        """,
        [
            (
                video.external_id,
                video.title,
                video.description,
                video.thumbnail_url,
                video.duration,
                video.channel_name,
                video.view_count,
                video.published_at,
                now_iso,
            )
            for video in videos
        ],
    )


def _topic_from_row(row: sqlite3.Row) -> TopicRecord:
    return TopicRecord(
        topic_id=str(row["topic_id"]),
        caller_id=str(row["caller_id"]),
        interest=str(row["interest"]),
        learning_goal=str(row["learning_goal"]),
        learning_mode=str(row["learning_mode"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )
