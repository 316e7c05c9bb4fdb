from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from tollgate.constants import (
    RETRY_INITIAL_WAIT,
    RETRY_JITTER,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_WAIT,
    RETRYABLE_STATUS,
)
from tollgate.errors import ProviderError, ProviderErrorKind
from tollgate.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = RETRY_MAX_ATTEMPTS
    initial_wait: float = RETRY_INITIAL_WAIT
    max_wait: float = RETRY_MAX_WAIT
    jitter: float = RETRY_JITTER


def kind_for_status(status: int) -> ProviderErrorKind:
    if status == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status in RETRYABLE_STATUS or status >= 500:
        return ProviderErrorKind.SERVER
    if status in (401, 403):
        return ProviderErrorKind.AUTH
    return ProviderErrorKind.INVALID_REQUEST


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(retry_state) -> None:
    _logger.warning(
        "LLM call failed (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        retry_state.retry_object.stop.max_attempt_number,
        retry_state.outcome.exception(),
    )


async def with_retry(fn, *args, policy: RetryPolicy | None = None, **kwargs):
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential_jitter(initial=policy.initial_wait, max=policy.max_wait, jitter=policy.jitter),
        reraise=True,
        before_sleep=_log_retry,
    )
    return await retrying(fn, *args, **kwargs)
