from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from backend.curator.repositories.common import optional_text, utc_now_iso
from backend.curator.repositories.database import Database


@dataclass(frozen=True)
class ProgressVideo:
    external_id: str
    is_watched: bool
    watched_at: str | None


@dataclass(frozen=True)
class TopicProgressRecord:
    topic_id: str
    videos: tuple[ProgressVideo, ...]
    completed_at: str | None
    total_watch_minutes: int | None
    updated_at: str


class ProgressRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add_videos(self, topic_id: str, external_ids: Sequence[str]) -> int:
        """Track new videos for a topic; already tracked ids keep their watch state."""
        now_iso = utc_now_iso()
        added = 0
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO topic_progress (topic_id, completed_at, total_watch_minutes, updated_at)
                VALUES (?, NULL, NULL, ?)
                ON CONFLICT(topic_id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (topic_id, now_iso),
            )
            row = conn.execute(
                "SELECT COALESCE(MAX(position), 0) AS max_position "
                "FROM topic_progress_videos WHERE topic_id = ?",
                (topic_id,),
            ).fetchone()
            position = int(row["max_position"])
            for external_id in external_ids:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO topic_progress_videos (
                        topic_id, external_id, position, is_watched, watched_at
                    )
                    VALUES (?, ?, ?, 0, NULL)
                    """,
                    (topic_id, external_id, position + 1),
                )
                if cursor.rowcount > 0:
                    position += 1
                    added += 1
        return added

    def remove_videos_except(self, topic_id: str, keep_external_ids: Sequence[str]) -> int:
        keep = list(dict.fromkeys(keep_external_ids))
        with self._db.connection() as conn:
            if keep:
                placeholders = ",".join("?" for _ in keep)
                cursor = conn.execute(
                    f"DELETE FROM topic_progress_videos "
                    f"WHERE topic_id = ? AND external_id NOT IN ({placeholders})",
                    (topic_id, *keep),
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM topic_progress_videos WHERE topic_id = ?",
                    (topic_id,),
                )
        return cursor.rowcount

    def get(self, topic_id: str) -> TopicProgressRecord | None:
        with self._db.connection() as conn:
            summary = conn.execute(
                """
                SELECT topic_id, completed_at, total_watch_minutes, updated_at
                FROM topic_progress
                WHERE topic_id = ?
                """,
                (topic_id,),
            ).fetchone()
            if summary is None:
                return None
            rows = conn.execute(
                """
                SELECT external_id, is_watched, watched_at
                FROM topic_progress_videos
                WHERE topic_id = ?
                ORDER BY position ASC
                """,
                (topic_id,),
            ).fetchall()

        return TopicProgressRecord(
            topic_id=str(summary["topic_id"]),
            videos=tuple(
                ProgressVideo(
                    external_id=str(row["external_id"]),
                    is_watched=bool(row["is_watched"]),
                    watched_at=optional_text(row["watched_at"]),
                )
                for row in rows
            ),
            completed_at=optional_text(summary["completed_at"]),
            total_watch_minutes=(
                int(summary["total_watch_minutes"])
                if summary["total_watch_minutes"] is not None
                else None
            ),
            updated_at=str(summary["updated_at"]),
        )

    def set_watched(
        self,
        topic_id: str,
        external_id: str,
        *,
        is_watched: bool,
        watched_at: str | None,
    ) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE topic_progress_videos
                SET is_watched = ?, watched_at = ?
                WHERE topic_id = ? AND external_id = ?
                """,
                (1 if is_watched else 0, watched_at, topic_id, external_id),
            )
        return cursor.rowcount > 0

    def set_completion(
        self,
        topic_id: str,
        *,
        completed_at: str | None,
        total_watch_minutes: int | None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE topic_progress
                SET completed_at = ?, total_watch_minutes = ?, updated_at = ?
                WHERE topic_id = ?
                """,
                (completed_at, total_watch_minutes, utc_now_iso(), topic_id),
            )

    def list_topic_ids(self) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT topic_id FROM topic_progress ORDER BY updated_at DESC"
            ).fetchall()
        return [str(row["topic_id"]) for row in rows]
