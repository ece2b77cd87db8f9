"""Bounded, classified retry around a single external call."""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import openai

from .errors import (
    CostGuardRejected,
    NonRetryableExternalError,
    NotAnalyzable,
    StageFailed,
    TransientExternalError,
    describe_error,
)
from .models import Job

T = TypeVar("T")
logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


ErrorClassifier = Callable[[BaseException], ErrorKind]

_TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Default classifier.

    Transient: timeouts, rate limits, connection failures and 5xx, whether
    they come from our own taxonomy, asyncio or the OpenAI SDK. Anything
    carrying an HTTP `status_code` of 429 or >= 500 counts too. Everything
    else (validation, auth, permission, skip conditions, unknown bugs) is
    non-retryable.
    """
    if isinstance(exc, (NotAnalyzable, CostGuardRejected, NonRetryableExternalError)):
        return ErrorKind.NON_RETRYABLE
    if isinstance(exc, TransientExternalError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, _TRANSIENT_OPENAI_ERRORS):
        return ErrorKind.TRANSIENT

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and (status_code == 429 or status_code >= 500):
        return ErrorKind.TRANSIENT
    return ErrorKind.NON_RETRYABLE


class RetryPolicy:
    """
    Runs one external call, retrying transient failures with exponential
    backoff.

    The retry budget belongs to the job: every retry increments
    `job.retry_count`, and once it reaches `max_retries` the next transient
    failure raises `StageFailed`. Non-retryable errors are re-raised as-is
    without touching the budget.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        classifier: ErrorClassifier = classify_error,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.classifier = classifier
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    async def run(
        self,
        job: Job,
        stage: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if self.classifier(exc) is not ErrorKind.TRANSIENT:
                    raise
                if job.retry_count >= self.max_retries:
                    logger.error(
                        "job %s: %s gave up after %d retries: %s",
                        job.id,
                        stage,
                        job.retry_count,
                        describe_error(exc),
                    )
                    raise StageFailed(stage, exc) from exc

                attempt += 1
                job.retry_count += 1
                delay = self.delay_for(attempt)
                logger.warning(
                    "job %s: %s transient error (retry %d/%d in %.1fs): %s",
                    job.id,
                    stage,
                    job.retry_count,
                    self.max_retries,
                    delay,
                    describe_error(exc),
                )
                await self._sleep(delay)
