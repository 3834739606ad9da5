from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal, TypeVar

from backend.curator.repositories.caller_key_repository import CallerKeyRepository
from backend.curator.services.errors import (
    CredentialNotConfiguredError,
    CredentialRequiredError,
    MalformedLLMResponseError,
    UpstreamServiceError,
    is_quota_error,
    summarize_exception_message,
)
from backend.curator.services.key_pool import PROVIDER_ENV_NAMES, PROVIDER_LABELS, KeyPool

LOGGER = logging.getLogger("curator.key_selector")

T = TypeVar("T")
KeyOrigin = Literal["caller-owned", "shared-pool"]
DEFAULT_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class CallerContext:
    caller_id: str | None
    is_privileged: bool = False


@dataclass(frozen=True)
class KeySelection:
    provider: str
    secret_value: str
    origin: KeyOrigin
    caller_key_id: str | None = None


class KeySelector:
    """
    Picks the credential for one external call and owns the retry envelope around it.

    Policy: a valid caller-owned key always wins; privileged callers fall back to the
    shared pool; everyone else must bring a key. Caller-owned failures invalidate
    the caller's stored key, shared-pool failures feed the pool's health tracking.
    """

    def __init__(
        self,
        *,
        key_pool: KeyPool,
        caller_key_repository: CallerKeyRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._key_pool = key_pool
        self._caller_keys = caller_key_repository
        self._max_attempts = max(1, max_attempts)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def select(self, provider: str, caller: CallerContext) -> KeySelection:
        if caller.caller_id:
            active = self._caller_keys.get_active_key(
                caller_id=caller.caller_id,
                provider=provider,
            )
            if active is not None:
                record, secret_value = active
                return KeySelection(
                    provider=provider,
                    secret_value=secret_value,
                    origin="caller-owned",
                    caller_key_id=record.key_id,
                )

        if not caller.is_privileged:
            raise CredentialRequiredError(PROVIDER_LABELS.get(provider, provider))

        credential = self._key_pool.get_next_key(provider)
        if credential is None:
            env_name = PROVIDER_ENV_NAMES.get(provider, (provider.upper(),))[0]
            raise CredentialNotConfiguredError(
                f"{PROVIDER_LABELS.get(provider, provider)} API key not configured. "
                f"Set {env_name} in the environment or add your own key in Settings."
            )
        return KeySelection(
            provider=provider,
            secret_value=credential.secret_value,
            origin="shared-pool",
        )

    async def run(
        self,
        provider: str,
        caller: CallerContext,
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run `operation(secret)` with up to `max_attempts` credential selections.

        A failing caller-owned key is invalidated and the selection re-runs, which
        lands on the pool for privileged callers or raises `CredentialRequiredError`.
        A failing pool key is reported to the pool and the error propagates at once.
        """
        last_error: UpstreamServiceError | None = None
        for attempt in range(1, self._max_attempts + 1):
            selection = self.select(provider, caller)
            LOGGER.debug(
                "credential selected provider=%s origin=%s attempt=%s",
                provider,
                selection.origin,
                attempt,
            )
            try:
                result = await operation(selection.secret_value)
            except MalformedLLMResponseError:
                raise
            except UpstreamServiceError as exc:
                quota = is_quota_error(exc)
                message = summarize_exception_message(exc)
                if selection.origin == "caller-owned":
                    self._invalidate_caller_key(selection, quota=quota)
                    LOGGER.warning(
                        "caller key failed provider=%s attempt=%s quota=%s error=%s",
                        provider,
                        attempt,
                        quota,
                        message,
                    )
                    last_error = exc
                    continue
                self._key_pool.report_error(
                    provider,
                    selection.secret_value,
                    message,
                    is_quota_error=quota,
                )
                raise
            if selection.origin == "shared-pool":
                self._key_pool.report_success(provider, selection.secret_value)
            return result

        assert last_error is not None
        raise last_error

    def _invalidate_caller_key(self, selection: KeySelection, *, quota: bool) -> None:
        if selection.caller_key_id is None:
            return
        self._caller_keys.invalidate_key(
            selection.caller_key_id,
            quota_status="quota_exceeded" if quota else "invalid",
        )
