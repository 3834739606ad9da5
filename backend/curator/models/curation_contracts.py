from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ProviderName = Literal["youtube", "claude"]
LearningMode = Literal["quick", "deep"]
TranscriptRanking = Literal["enabled", "disabled", "auto"]


class CurateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interest: str = Field(min_length=1, max_length=200)
    learning_goal: str = "Learn the essentials"
    learning_mode: LearningMode = "quick"
    transcript_ranking: TranscriptRanking | None = None


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transcript_ranking: TranscriptRanking | None = None


class CuratedVideoModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    title: str
    description: str | None = None
    thumbnail_url: str | None = None
    duration: str
    channel_name: str | None = None
    view_count: str
    upload_date: str
    published_at: str | None = None
    reason_selected: str
    sequence_order: int
    difficulty_level: str | None = None
    depth_dimension: str | None = None
    path_type: str | None = None
    transcript_quality: float | None = None
    is_watched: bool = False


class RankingMetadataModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transcript_intelligence_used: bool
    videos_with_transcripts: int
    total_videos: int
    average_tqs: int | None = None


class CurationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic_id: str
    interest: str
    learning_goal: str
    learning_mode: str
    candidate_count: int
    total_batches: int
    summary: str | None = None
    ranking: RankingMetadataModel
    videos: list[CuratedVideoModel]


class CuratedVideosResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic_id: str
    interest: str
    learning_goal: str
    learning_mode: str
    videos: list[CuratedVideoModel]


class ApiKeySaveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: ProviderName
    api_key: str = Field(min_length=1)
    validate_key: bool = True


class ApiKeyValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: ProviderName
    api_key: str = Field(min_length=1)


class ApiKeyValidateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: ProviderName
    valid: bool


class ApiKeyRecordModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key_id: str
    provider: str
    is_valid: bool
    quota_status: str | None = None
    last_validated_at: str | None = None
    created_at: str


class PoolKeyStatusModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credential_id: str
    is_available: bool
    quota_exceeded: bool
    error_count: int
    last_error: str | None = None
    last_used_at: str | None = None


class PoolStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: ProviderName
    keys: list[PoolKeyStatusModel]


class QuotaResetResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: ProviderName
    keys_reset: int


class ProgressVideoModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    is_watched: bool
    watched_at: str | None = None


class TopicProgressModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic_id: str
    completed_videos: int
    total_videos: int
    completion_percentage: int
    is_completed: bool
    completed_at: str | None = None
    total_watch_minutes: int | None = None
    updated_at: str
    videos: list[ProgressVideoModel]


class WatchToggleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    watched: bool


class QualityScoreModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(min_length=1)
    tqs: float = Field(ge=0.0, le=100.0)


class QualityScoresRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scores: list[QualityScoreModel] = Field(min_length=1)


class QualityScoresResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stored: int
