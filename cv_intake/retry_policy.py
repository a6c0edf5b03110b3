"""
Bounded retry loop shared by every external call.

Delays grow exponentially from ``initial_ms`` with additive random jitter and
are capped at ``max_ms``:

    delay(attempt) = min(max_ms, initial_ms * 2 ** (attempt - 1) + randint(0, jitter_ms))

Usage:
    from cv_intake.retry_policy import RetryConfig, call_with_retry

    config = RetryConfig(initial_ms=800, max_ms=8000, jitter_ms=250, max_attempts=4)
    body = call_with_retry(lambda: client.get(url), config, operation="crm.search")
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, TypeVar

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from .errors import ExternalServiceError, TransientExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 503})

TRANSIENT_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    initial_ms: int
    max_ms: int
    jitter_ms: int
    max_attempts: int = 3
    retryable_statuses: frozenset[int] = field(default=DEFAULT_RETRYABLE_STATUSES)


def compute_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """Return the delay in milliseconds before retry number ``attempt`` (1-based)."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    source = rng or random
    jitter = source.randint(0, config.jitter_ms) if config.jitter_ms > 0 else 0
    exponential = config.initial_ms * (2 ** (attempt - 1))
    return int(min(config.max_ms, exponential + jitter))


def is_retryable(status_code: int | None, retryable: Iterable[int] = DEFAULT_RETRYABLE_STATUSES) -> bool:
    if status_code is None:
        return False
    return status_code in set(retryable)


def _is_retryable_exception(exc: BaseException, retryable: frozenset[int]) -> bool:
    if isinstance(exc, ExternalServiceError):
        return is_retryable(exc.status_code, retryable)
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


def call_with_retry(
    fn: Callable[[], T],
    config: RetryConfig,
    *,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``fn`` until it succeeds, fails permanently or exhausts ``max_attempts``.

    Exhausted retryable failures surface as :class:`TransientExternalError`
    carrying the attempt count and the last status/body seen. Non-retryable
    failures propagate unchanged, with ``attempts`` stamped on
    :class:`ExternalServiceError` instances.
    """

    attempts = 0

    def _should_retry(exc: BaseException) -> bool:
        return _is_retryable_exception(exc, config.retryable_statuses)

    def _wait(retry_state: RetryCallState) -> float:
        return compute_delay(retry_state.attempt_number, config, rng) / 1000.0

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "[retry] %s attempt %d/%d failed (%s); retrying in %.0fms",
            operation,
            retry_state.attempt_number,
            config.max_attempts,
            exc,
            delay * 1000,
        )

    retryer = Retrying(
        stop=stop_after_attempt(max(1, config.max_attempts)),
        wait=_wait,
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        for attempt in retryer:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                return fn()
    except Exception as exc:
        if _should_retry(exc):
            status_code = exc.status_code if isinstance(exc, ExternalServiceError) else None
            body_preview = exc.body_preview if isinstance(exc, ExternalServiceError) else ""
            logger.error("[retry] %s gave up after %d attempts: %s", operation, attempts, exc)
            raise TransientExternalError(
                f"{operation} failed after {attempts} attempts: {exc}",
                operation=operation,
                status_code=status_code,
                body_preview=body_preview,
                attempts=attempts,
            ) from exc
        if isinstance(exc, ExternalServiceError):
            exc.attempts = attempts
        raise
    raise AssertionError("retry loop exited without a result")  # pragma: no cover


__all__ = [
    "DEFAULT_RETRYABLE_STATUSES",
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "call_with_retry",
    "compute_delay",
    "is_retryable",
]
