from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".learning-curator"
TRANSCRIPT_RANKING_MODES: frozenset[str] = frozenset({"enabled", "disabled", "auto"})
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{CURATOR_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _split_csv(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        raw_items: list[str] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw_items = [str(item) for item in value]
    else:
        return ()
    return tuple(item.strip() for item in raw_items if item.strip())


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `CURATOR_*` environment variable (or `.env`).
    Shared-pool credentials are not listed here: their slot count is open-ended,
    so the key pool enumerates them straight from the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="CURATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Caller privileges.
    privileged_callers: str = Field(
        default="",
        description=(
            "Comma-separated caller ids allowed to fall back to the shared key pool "
            "when they have no usable key of their own."
        ),
    )

    # Caller key storage.
    encryption_secret: SecretStr | None = Field(
        default=None,
        description=(
            "Server secret that caller API keys are encrypted with at rest. "
            "Caller keys cannot be stored or used while it is unset."
        ),
    )

    # Credential rotation.
    credential_max_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per external call before the credential envelope gives up.",
    )
    key_error_threshold: int = Field(
        default=3,
        ge=1,
        description="Non-quota errors after which a pooled key is marked unavailable.",
    )
    quota_reset_after_seconds: int = Field(
        default=86_400,
        ge=0,
        description="Clear a pooled key's quota flag after this many seconds (0 disables).",
    )

    # YouTube Data API.
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API v3 base URL.",
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout for YouTube Data API requests.",
    )
    search_max_results: int = Field(
        default=150,
        ge=1,
        description="Candidate ceiling across all search queries of one curation.",
    )
    detail_batch_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Video ids per detail request (capped by the YouTube API).",
    )
    detail_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Pause between sequential detail requests.",
    )

    # LLM curation.
    anthropic_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Anthropic model used for query strategies and curation batches.",
    )
    anthropic_client_cache_size: int = Field(
        default=32,
        ge=1,
        description="Anthropic clients kept open at once, one per API key (least recently used evicted).",
    )
    curation_batch_size: int = Field(
        default=25,
        ge=1,
        description="Candidates sent to the LLM per curation batch.",
    )
    curation_max_tokens: int = Field(
        default=6_000,
        description="Max output tokens for one curation batch.",
    )
    core_target: int = Field(default=30, ge=1, description="Core videos selected in quick mode.")
    additional_target: int = Field(
        default=20,
        ge=0,
        description="Additional videos selected in quick mode.",
    )
    depth_target: int = Field(default=50, ge=1, description="Videos selected in deep mode.")
    default_transcript_ranking: Literal["enabled", "disabled", "auto"] = Field(
        default="auto",
        description="Transcript ranking mode used when a request does not set one.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator("privileged_callers", mode="before")
    @classmethod
    def _normalize_caller_ids(cls, value: Any) -> str:
        return ",".join(_split_csv(value))

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_youtube_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CURATOR_YOUTUBE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("CURATOR_YOUTUBE_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("default_transcript_ranking", mode="before")
    @classmethod
    def _normalize_ranking_mode(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CURATOR_DEFAULT_TRANSCRIPT_RANKING must be a string.")
        normalized = value.strip().lower()
        if normalized in TRANSCRIPT_RANKING_MODES:
            return normalized
        raise ValueError(
            "CURATOR_DEFAULT_TRANSCRIPT_RANKING must be set to: enabled, disabled, auto."
        )

    @property
    def privileged_caller_ids(self) -> tuple[str, ...]:
        return _split_csv(self.privileged_callers)

    def is_privileged(self, caller_id: str | None) -> bool:
        if caller_id is None:
            return False
        return caller_id.strip() in self.privileged_caller_ids


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
