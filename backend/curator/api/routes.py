from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.curator.config import AppSettings
from backend.curator.dependencies import (
    get_caller_key_repository,
    get_curation_pipeline,
    get_curation_repository,
    get_key_pool,
    get_key_validator,
    get_progress_tracker,
    get_quality_score_repository,
    get_settings,
)
from backend.curator.models.curation_contracts import (
    ApiKeyRecordModel,
    ApiKeySaveRequest,
    ApiKeyValidateRequest,
    ApiKeyValidateResponse,
    CuratedVideoModel,
    CuratedVideosResponse,
    CurateRequest,
    CurationResponse,
    PoolKeyStatusModel,
    PoolStatusResponse,
    ProgressVideoModel,
    ProviderName,
    QualityScoresRequest,
    QualityScoresResponse,
    QuotaResetResponse,
    RankingMetadataModel,
    RefreshRequest,
    TopicProgressModel,
    WatchToggleRequest,
)
from backend.curator.repositories.caller_key_repository import (
    CallerKeyRecord,
    CallerKeyRepository,
    EncryptionNotConfiguredError,
)
from backend.curator.repositories.curation_repository import CurationRepository, CuratedVideo
from backend.curator.repositories.quality_score_repository import QualityScoreRepository
from backend.curator.services.curation_pipeline import CurationOutcome, CurationPipeline
from backend.curator.services.errors import (
    CredentialNotConfiguredError,
    CredentialRequiredError,
    CurationValidationError,
    CuratorError,
    MalformedLLMResponseError,
    NoCandidatesError,
    TopicNotFoundError,
    UpstreamServiceError,
)
from backend.curator.services.key_pool import KeyPool
from backend.curator.services.key_selector import CallerContext
from backend.curator.services.key_validation import KeyValidator
from backend.curator.services.progress_tracker import ProgressTracker, TopicProgress
from backend.curator.services.video_formatting import format_upload_date, format_view_count

router = APIRouter()


def get_caller(
    settings: Annotated[AppSettings, Depends(get_settings)],
    x_caller_id: Annotated[str | None, Header()] = None,
) -> CallerContext:
    caller_id = x_caller_id.strip() if isinstance(x_caller_id, str) else ""
    if not caller_id:
        raise HTTPException(status_code=401, detail="X-Caller-Id header is required.")
    return CallerContext(caller_id=caller_id, is_privileged=settings.is_privileged(caller_id))


def _require_privileged(
    caller: CallerContext,
    detail: str = "Shared key pool access is restricted.",
) -> None:
    if not caller.is_privileged:
        raise HTTPException(status_code=403, detail=detail)


def _to_http_exception(exc: CuratorError) -> HTTPException:
    if isinstance(exc, CredentialRequiredError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, CredentialNotConfiguredError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, TopicNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (NoCandidatesError, CurationValidationError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, MalformedLLMResponseError):
        return HTTPException(status_code=502, detail=f"{exc} Please try again.")
    if isinstance(exc, UpstreamServiceError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Failed to curate videos.")


def _video_model(video: CuratedVideo, *, is_watched: bool = False) -> CuratedVideoModel:
    return CuratedVideoModel(
        video_id=video.external_id,
        title=video.title,
        description=video.description,
        thumbnail_url=video.thumbnail_url,
        duration=video.duration,
        channel_name=video.channel_name,
        view_count=format_view_count(video.view_count),
        upload_date=format_upload_date(video.published_at),
        published_at=video.published_at,
        reason_selected=video.reason_selected,
        sequence_order=video.sequence_order,
        difficulty_level=video.difficulty_level,
        depth_dimension=video.depth_dimension,
        path_type=video.path_type,
        transcript_quality=video.transcript_quality,
        is_watched=is_watched,
    )


def _curation_response(outcome: CurationOutcome) -> CurationResponse:
    return CurationResponse(
        topic_id=outcome.topic.topic_id,
        interest=outcome.topic.interest,
        learning_goal=outcome.topic.learning_goal,
        learning_mode=outcome.topic.learning_mode,
        candidate_count=outcome.candidate_count,
        total_batches=outcome.total_batches,
        summary=" ".join(outcome.summaries) or None,
        ranking=RankingMetadataModel(
            transcript_intelligence_used=outcome.ranking.transcript_intelligence_used,
            videos_with_transcripts=outcome.ranking.videos_with_transcripts,
            total_videos=outcome.ranking.total_videos,
            average_tqs=outcome.ranking.average_tqs,
        ),
        videos=[_video_model(video) for video in outcome.videos],
    )


def _key_model(record: CallerKeyRecord) -> ApiKeyRecordModel:
    return ApiKeyRecordModel(
        key_id=record.key_id,
        provider=record.provider,
        is_valid=record.is_valid,
        quota_status=record.quota_status,
        last_validated_at=record.last_validated_at,
        created_at=record.created_at,
    )


def _progress_model(progress: TopicProgress) -> TopicProgressModel:
    return TopicProgressModel(
        topic_id=progress.topic_id,
        completed_videos=progress.completed_count,
        total_videos=progress.total_count,
        completion_percentage=progress.completion_percentage,
        is_completed=progress.is_completed,
        completed_at=progress.completed_at,
        total_watch_minutes=progress.total_watch_minutes,
        updated_at=progress.updated_at,
        videos=[
            ProgressVideoModel(
                video_id=video.external_id,
                is_watched=video.is_watched,
                watched_at=video.watched_at,
            )
            for video in progress.videos
        ],
    )


@router.post(
    "/curations",
    response_model=CurationResponse,
    tags=["curation"],
    operation_id="curate_videos",
)
async def curate_videos(
    request: CurateRequest,
    caller: Annotated[CallerContext, Depends(get_caller)],
    settings: Annotated[AppSettings, Depends(get_settings)],
    pipeline: Annotated[CurationPipeline, Depends(get_curation_pipeline)],
) -> CurationResponse:
    context_tokens = bind_contextvars(caller_id=caller.caller_id)
    try:
        outcome = await pipeline.curate(
            interest=request.interest,
            learning_goal=request.learning_goal,
            mode=request.learning_mode,
            caller=caller,
            ranking_mode=request.transcript_ranking or settings.default_transcript_ranking,
        )
    except CuratorError as exc:
        raise _to_http_exception(exc) from exc
    finally:
        reset_contextvars(**context_tokens)
    return _curation_response(outcome)


@router.post(
    "/curations/{topic_id}/refresh",
    response_model=CurationResponse,
    tags=["curation"],
    operation_id="refresh_curation",
)
async def refresh_curation(
    topic_id: str,
    caller: Annotated[CallerContext, Depends(get_caller)],
    pipeline: Annotated[CurationPipeline, Depends(get_curation_pipeline)],
    request: RefreshRequest | None = None,
) -> CurationResponse:
    context_tokens = bind_contextvars(caller_id=caller.caller_id, topic_id=topic_id)
    try:
        outcome = await pipeline.refresh(
            topic_id,
            caller=caller,
            ranking_mode=(request.transcript_ranking if request else None) or "auto",
        )
    except CuratorError as exc:
        raise _to_http_exception(exc) from exc
    finally:
        reset_contextvars(**context_tokens)
    return _curation_response(outcome)


@router.get(
    "/curations/{topic_id}/videos",
    response_model=CuratedVideosResponse,
    tags=["curation"],
    operation_id="list_curated_videos",
)
def list_curated_videos(
    topic_id: str,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CurationRepository, Depends(get_curation_repository)],
    tracker: Annotated[ProgressTracker, Depends(get_progress_tracker)],
) -> CuratedVideosResponse:
    topic = repository.get_topic(topic_id)
    if topic is None or topic.caller_id != caller.caller_id:
        raise HTTPException(status_code=404, detail=f"Topic not found: {topic_id}")
    watched = tracker.watch_state(topic_id)
    return CuratedVideosResponse(
        topic_id=topic.topic_id,
        interest=topic.interest,
        learning_goal=topic.learning_goal,
        learning_mode=topic.learning_mode,
        videos=[
            _video_model(video, is_watched=watched.get(video.external_id, False))
            for video in repository.list_curated_videos(topic_id)
        ],
    )


@router.post(
    "/keys/validate",
    response_model=ApiKeyValidateResponse,
    tags=["keys"],
    operation_id="validate_api_key",
)
async def validate_api_key(
    request: ApiKeyValidateRequest,
    _caller: Annotated[CallerContext, Depends(get_caller)],
    validator: Annotated[KeyValidator, Depends(get_key_validator)],
) -> ApiKeyValidateResponse:
    valid = await validator.validate(request.provider, request.api_key.strip())
    return ApiKeyValidateResponse(provider=request.provider, valid=valid)


@router.post(
    "/keys",
    response_model=ApiKeyRecordModel,
    tags=["keys"],
    operation_id="save_api_key",
)
async def save_api_key(
    request: ApiKeySaveRequest,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CallerKeyRepository, Depends(get_caller_key_repository)],
    validator: Annotated[KeyValidator, Depends(get_key_validator)],
) -> ApiKeyRecordModel:
    api_key = request.api_key.strip()
    if request.validate_key and not await validator.validate(request.provider, api_key):
        raise HTTPException(
            status_code=400,
            detail=f"The {request.provider} API key could not be validated.",
        )
    assert caller.caller_id is not None
    try:
        record = repository.put_key(
            caller_id=caller.caller_id,
            provider=request.provider,
            secret_value=api_key,
        )
    except EncryptionNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _key_model(record)


@router.get(
    "/keys",
    response_model=list[ApiKeyRecordModel],
    tags=["keys"],
    operation_id="list_api_keys",
)
def list_api_keys(
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CallerKeyRepository, Depends(get_caller_key_repository)],
) -> list[ApiKeyRecordModel]:
    return [_key_model(record) for record in repository.list_keys(caller_id=caller.caller_id)]


@router.delete(
    "/keys/{key_id}",
    tags=["keys"],
    operation_id="delete_api_key",
)
def delete_api_key(
    key_id: str,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CallerKeyRepository, Depends(get_caller_key_repository)],
) -> dict[str, bool]:
    assert caller.caller_id is not None
    if not repository.delete_key(caller_id=caller.caller_id, key_id=key_id):
        raise HTTPException(status_code=404, detail=f"API key not found: {key_id}")
    return {"deleted": True}


@router.get(
    "/pool/{provider}",
    response_model=PoolStatusResponse,
    tags=["pool"],
    operation_id="get_pool_status",
)
def get_pool_status(
    provider: ProviderName,
    caller: Annotated[CallerContext, Depends(get_caller)],
    key_pool: Annotated[KeyPool, Depends(get_key_pool)],
) -> PoolStatusResponse:
    _require_privileged(caller)
    return PoolStatusResponse(
        provider=provider,
        keys=[
            PoolKeyStatusModel(
                credential_id=status.credential_id,
                is_available=status.is_available,
                quota_exceeded=status.quota_exceeded,
                error_count=status.error_count,
                last_error=status.last_error,
                last_used_at=status.last_used_at,
            )
            for status in key_pool.pool_status(provider)
        ],
    )


@router.post(
    "/pool/{provider}/reset-quota",
    response_model=QuotaResetResponse,
    tags=["pool"],
    operation_id="reset_pool_quota",
)
def reset_pool_quota(
    provider: ProviderName,
    caller: Annotated[CallerContext, Depends(get_caller)],
    key_pool: Annotated[KeyPool, Depends(get_key_pool)],
) -> QuotaResetResponse:
    _require_privileged(caller)
    return QuotaResetResponse(provider=provider, keys_reset=key_pool.reset_quota_status(provider))


@router.put(
    "/quality-scores",
    response_model=QualityScoresResponse,
    tags=["ranking"],
    operation_id="load_quality_scores",
)
def load_quality_scores(
    request: QualityScoresRequest,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[QualityScoreRepository, Depends(get_quality_score_repository)],
) -> QualityScoresResponse:
    _require_privileged(caller, "Loading transcript quality scores is restricted.")
    for score in request.scores:
        repository.upsert_quality_score(score.video_id.strip(), score.tqs)
    return QualityScoresResponse(stored=len(request.scores))


@router.get(
    "/progress/{topic_id}",
    response_model=TopicProgressModel,
    tags=["progress"],
    operation_id="get_topic_progress",
)
def get_topic_progress(
    topic_id: str,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CurationRepository, Depends(get_curation_repository)],
    tracker: Annotated[ProgressTracker, Depends(get_progress_tracker)],
) -> TopicProgressModel:
    _require_topic_owner(repository, topic_id, caller)
    progress = tracker.get(topic_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"No progress tracked for topic: {topic_id}")
    return _progress_model(progress)


@router.post(
    "/progress/{topic_id}/videos/{video_id}",
    response_model=TopicProgressModel,
    tags=["progress"],
    operation_id="set_video_watched",
)
def set_video_watched(
    topic_id: str,
    video_id: str,
    request: WatchToggleRequest,
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CurationRepository, Depends(get_curation_repository)],
    tracker: Annotated[ProgressTracker, Depends(get_progress_tracker)],
) -> TopicProgressModel:
    _require_topic_owner(repository, topic_id, caller)
    progress = tracker.set_watched(topic_id, video_id, watched=request.watched)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Video {video_id} is not tracked for {topic_id}")
    return _progress_model(progress)


@router.get(
    "/progress",
    response_model=list[TopicProgressModel],
    tags=["progress"],
    operation_id="list_incomplete_topics",
)
def list_incomplete_topics(
    caller: Annotated[CallerContext, Depends(get_caller)],
    repository: Annotated[CurationRepository, Depends(get_curation_repository)],
    tracker: Annotated[ProgressTracker, Depends(get_progress_tracker)],
) -> list[TopicProgressModel]:
    assert caller.caller_id is not None
    owned = {topic.topic_id for topic in repository.list_topics(caller_id=caller.caller_id)}
    return [
        _progress_model(progress)
        for progress in tracker.incomplete_topics()
        if progress.topic_id in owned
    ]


def _require_topic_owner(
    repository: CurationRepository,
    topic_id: str,
    caller: CallerContext,
) -> None:
    topic = repository.get_topic(topic_id)
    if topic is None or topic.caller_id != caller.caller_id:
        raise HTTPException(status_code=404, detail=f"Topic not found: {topic_id}")
