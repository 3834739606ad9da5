from __future__ import annotations

from collections.abc import Iterable

from backend.curator.repositories.common import utc_now_iso
from backend.curator.repositories.database import Database


class QualityScoreRepository:
    """Transcript quality scores (TQS, 0..100) keyed by external video id."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_quality_score(self, external_id: str, tqs: float) -> None:
        if not 0.0 <= tqs <= 100.0:
            raise ValueError("tqs must be within 0..100")
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_quality_scores (external_id, tqs, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    tqs = excluded.tqs,
                    updated_at = excluded.updated_at
                """,
                (external_id, float(tqs), utc_now_iso()),
            )

    def get_quality_score(self, external_id: str) -> float | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT tqs FROM video_quality_scores WHERE external_id = ?",
                (external_id,),
            ).fetchone()
        if row is None:
            return None
        return float(row["tqs"])

    def get_quality_scores(self, external_ids: Iterable[str]) -> dict[str, float]:
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT external_id, tqs FROM video_quality_scores "
                f"WHERE external_id IN ({placeholders})",
                tuple(ids),
            ).fetchall()
        return {str(row["external_id"]): float(row["tqs"]) for row in rows}
