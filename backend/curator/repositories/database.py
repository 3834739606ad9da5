from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS caller_api_keys (
    key_id TEXT PRIMARY KEY,
    caller_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    secret_value TEXT NOT NULL,
    is_valid INTEGER NOT NULL DEFAULT 1,
    quota_status TEXT NULL,
    last_validated_at TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (caller_id, provider)
);

CREATE TABLE IF NOT EXISTS topics (
    topic_id TEXT PRIMARY KEY,
    caller_id TEXT NOT NULL,
    interest TEXT NOT NULL,
    learning_goal TEXT NOT NULL,
    learning_mode TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_topics_caller_created
ON topics(caller_id, created_at DESC);

CREATE TABLE IF NOT EXISTS videos (
    external_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NULL,
    thumbnail_url TEXT NULL,
    duration TEXT NULL,
    channel_name TEXT NULL,
    view_count INTEGER NULL,
    published_at TEXT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS curated_videos (
    topic_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    sequence_order INTEGER NOT NULL,
    path_type TEXT NULL,
    difficulty_level TEXT NULL,
    depth_dimension TEXT NULL,
    source_tag TEXT NULL,
    reason_selected TEXT NOT NULL,
    transcript_quality REAL NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (topic_id, external_id),
    FOREIGN KEY (topic_id) REFERENCES topics(topic_id) ON DELETE CASCADE,
    FOREIGN KEY (external_id) REFERENCES videos(external_id)
);

CREATE INDEX IF NOT EXISTS idx_curated_videos_topic_sequence
ON curated_videos(topic_id, sequence_order);

CREATE TABLE IF NOT EXISTS video_quality_scores (
    external_id TEXT PRIMARY KEY,
    tqs REAL NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS topic_progress (
    topic_id TEXT PRIMARY KEY,
    completed_at TEXT NULL,
    total_watch_minutes INTEGER NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (topic_id) REFERENCES topics(topic_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS topic_progress_videos (
    topic_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    is_watched INTEGER NOT NULL DEFAULT 0,
    watched_at TEXT NULL,
    PRIMARY KEY (topic_id, external_id),
    FOREIGN KEY (topic_id) REFERENCES topic_progress(topic_id) ON DELETE CASCADE
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
