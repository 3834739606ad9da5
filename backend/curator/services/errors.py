from __future__ import annotations


class CuratorError(Exception):
    pass


class CredentialError(CuratorError):
    pass


class CredentialRequiredError(CredentialError):
    def __init__(self, provider_label: str) -> None:
        super().__init__(
            f"Please add your own {provider_label} API key in Settings to use this feature."
        )
        self.provider_label = provider_label


class CredentialNotConfiguredError(CredentialError):
    pass


class UpstreamServiceError(CuratorError):
    """An external call failed; `is_quota_error` marks quota or rate-limit failures."""

    def __init__(self, message: str, *, is_quota_error: bool = False) -> None:
        super().__init__(message)
        self.is_quota_error = is_quota_error


class YouTubeApiError(UpstreamServiceError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        is_quota_error: bool = False,
    ) -> None:
        super().__init__(message, is_quota_error=is_quota_error)
        self.status_code = status_code


class YouTubeApiNotEnabledError(YouTubeApiError):
    pass


class YouTubeQuotaExceededError(YouTubeApiError):
    pass


class YouTubeAccessDeniedError(YouTubeApiError):
    pass


class DetailFetchError(UpstreamServiceError):
    pass


class LLMProviderError(UpstreamServiceError):
    pass


class MalformedLLMResponseError(UpstreamServiceError):
    def __init__(
        self,
        message: str,
        *,
        response_length: int,
        head: str,
        tail: str,
    ) -> None:
        super().__init__(message)
        self.response_length = response_length
        self.head = head
        self.tail = tail


class NoCandidatesError(CuratorError):
    pass


class CurationValidationError(CuratorError):
    pass


class TopicNotFoundError(CuratorError):
    pass


QUOTA_MESSAGE_MARKERS: tuple[str, ...] = ("quota", "quotaexceeded", "rate_limit", "rate limit")


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamServiceError) and exc.is_quota_error:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in QUOTA_MESSAGE_MARKERS)


def summarize_exception_message(exc: BaseException, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."
