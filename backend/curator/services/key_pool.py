from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

LOGGER = logging.getLogger("curator.key_pool")

Provider = Literal["youtube", "claude"]
PROVIDERS: tuple[Provider, ...] = ("youtube", "claude")
PROVIDER_LABELS: dict[str, str] = {"youtube": "YouTube", "claude": "Claude"}
PROVIDER_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "youtube": ("YOUTUBE_API_KEY", "GOOGLE_API_KEY"),
    "claude": ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
}
DEFAULT_ERROR_THRESHOLD = 3


@dataclass
class CredentialHealth:
    is_available: bool = True
    quota_exceeded: bool = False
    error_count: int = 0
    last_error: str | None = None
    last_used_at: datetime | None = None
    quota_exceeded_at: datetime | None = None


@dataclass
class Credential:
    credential_id: str
    provider: str
    secret_value: str
    health: CredentialHealth = field(default_factory=CredentialHealth)


@dataclass(frozen=True)
class CredentialStatus:
    credential_id: str
    provider: str
    is_available: bool
    quota_exceeded: bool
    error_count: int
    last_error: str | None
    last_used_at: str | None


@dataclass
class _ProviderPool:
    credentials: list[Credential] = field(default_factory=list)
    cursor: int = 0


def read_pool_secrets(provider: str, environ: Mapping[str, str]) -> list[tuple[str, str]]:
    """
    Resolve `(credential_id, secret)` pairs for a provider from environment variables.

    One default slot is taken from the first set base name (for example
    `YOUTUBE_API_KEY`, then `GOOGLE_API_KEY`), followed by numbered slots
    `<NAME>_1`, `<NAME>_2`, ... until the first index where no base name is set.
    """
    env_names = PROVIDER_ENV_NAMES.get(provider)
    if env_names is None:
        raise ValueError(f"Unsupported provider: {provider}")

    resolved: list[tuple[str, str]] = []
    for env_name in env_names:
        value = (environ.get(env_name) or "").strip()
        if value:
            resolved.append((f"{provider}_default", value))
            break

    index = 1
    while True:
        slot_value = None
        for env_name in env_names:
            candidate = (environ.get(f"{env_name}_{index}") or "").strip()
            if candidate:
                slot_value = candidate
                break
        if slot_value is None:
            break
        resolved.append((f"{provider}_{index}", slot_value))
        index += 1
    return resolved


class KeyPool:
    """
    Shared credentials per provider with round-robin rotation and per-key health.

    State lives in process memory only. All mutations are synchronous, so under a
    single asyncio event loop there is no interleaving between read and write of
    the cursor. Multiple worker processes each hold an independent pool.
    """

    def __init__(
        self,
        *,
        error_threshold: int = DEFAULT_ERROR_THRESHOLD,
        quota_reset_after_seconds: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._pools: dict[str, _ProviderPool] = {provider: _ProviderPool() for provider in PROVIDERS}
        self._error_threshold = max(1, error_threshold)
        self._quota_reset_after = (
            timedelta(seconds=quota_reset_after_seconds) if quota_reset_after_seconds > 0 else None
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    def initialize(self, provider: str, environ: Mapping[str, str] | None = None) -> int:
        secrets = read_pool_secrets(provider, os.environ if environ is None else environ)
        self._pools[provider] = _ProviderPool(
            credentials=[
                Credential(credential_id=credential_id, provider=provider, secret_value=secret)
                for credential_id, secret in secrets
            ]
        )
        LOGGER.info("key pool initialized provider=%s keys=%s", provider, len(secrets))
        return len(secrets)

    def initialize_all(self, environ: Mapping[str, str] | None = None) -> dict[str, int]:
        return {provider: self.initialize(provider, environ) for provider in PROVIDERS}

    def size(self, provider: str) -> int:
        return len(self._pool(provider).credentials)

    def get_next_key(self, provider: str) -> Credential | None:
        pool = self._pool(provider)
        credentials = pool.credentials
        if not credentials:
            LOGGER.error("key pool empty provider=%s", provider)
            return None

        self._reset_expired_quotas(credentials)
        now = self._clock()
        count = len(credentials)
        start = pool.cursor % count
        for offset in range(count):
            index = (start + offset) % count
            credential = credentials[index]
            if credential.health.is_available and not credential.health.quota_exceeded:
                pool.cursor = (index + 1) % count
                credential.health.last_used_at = now
                return credential

        # Nothing healthy: hand out the credential at the cursor and keep rotating.
        fallback = credentials[start]
        pool.cursor = (start + 1) % count
        fallback.health.last_used_at = now
        LOGGER.warning(
            "key pool exhausted provider=%s returning_fallback=%s",
            provider,
            fallback.credential_id,
        )
        return fallback

    def report_error(
        self,
        provider: str,
        secret_value: str,
        message: str,
        *,
        is_quota_error: bool = False,
    ) -> None:
        credential = self._find(provider, secret_value)
        if credential is None:
            return

        health = credential.health
        health.error_count += 1
        health.last_error = message
        if is_quota_error:
            health.quota_exceeded = True
            health.quota_exceeded_at = self._clock()
            LOGGER.warning(
                "key quota exceeded provider=%s credential_id=%s",
                provider,
                credential.credential_id,
            )
        elif health.error_count >= self._error_threshold:
            health.is_available = False
            LOGGER.warning(
                "key marked unavailable provider=%s credential_id=%s errors=%s",
                provider,
                credential.credential_id,
                health.error_count,
            )

    def report_success(self, provider: str, secret_value: str) -> None:
        credential = self._find(provider, secret_value)
        if credential is None:
            return
        health = credential.health
        health.error_count = 0
        health.last_error = None
        health.is_available = True

    def reset_quota_status(self, provider: str) -> int:
        reset = 0
        for credential in self._pool(provider).credentials:
            if credential.health.quota_exceeded:
                reset += 1
            credential.health.quota_exceeded = False
            credential.health.quota_exceeded_at = None
        LOGGER.info("key pool quota reset provider=%s keys_reset=%s", provider, reset)
        return reset

    def pool_status(self, provider: str) -> list[CredentialStatus]:
        return [
            CredentialStatus(
                credential_id=credential.credential_id,
                provider=credential.provider,
                is_available=credential.health.is_available,
                quota_exceeded=credential.health.quota_exceeded,
                error_count=credential.health.error_count,
                last_error=credential.health.last_error,
                last_used_at=(
                    credential.health.last_used_at.isoformat()
                    if credential.health.last_used_at is not None
                    else None
                ),
            )
            for credential in self._pool(provider).credentials
        ]

    def _reset_expired_quotas(self, credentials: list[Credential]) -> None:
        if self._quota_reset_after is None:
            return
        cutoff = self._clock() - self._quota_reset_after
        for credential in credentials:
            flagged_at = credential.health.quota_exceeded_at
            if credential.health.quota_exceeded and flagged_at is not None and flagged_at <= cutoff:
                credential.health.quota_exceeded = False
                credential.health.quota_exceeded_at = None
                LOGGER.info(
                    "key quota window elapsed provider=%s credential_id=%s",
                    credential.provider,
                    credential.credential_id,
                )

    def _find(self, provider: str, secret_value: str) -> Credential | None:
        for credential in self._pool(provider).credentials:
            if credential.secret_value == secret_value:
                return credential
        return None

    def _pool(self, provider: str) -> _ProviderPool:
        pool = self._pools.get(provider)
        if pool is None:
            raise ValueError(f"Unsupported provider: {provider}")
        return pool
