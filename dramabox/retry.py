import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import (
    InvalidTokenResponse,
    MalformedResponse,
    TransportError,
    UpstreamRejected,
    UpstreamStatusError,
    describe_error,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryContext:
    """Attempt bookkeeping for one logical operation."""

    attempt: int = 0
    last_error: Optional[BaseException] = None


class RetryPolicy:
    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
    REAUTH_STATUS_CODES = frozenset({502, 503})

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        multiplier: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings, sleep: Sleep = asyncio.sleep) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay,
            max_delay=settings.max_retry_delay,
            multiplier=settings.retry_backoff_multiplier,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_retryable(self, error: BaseException) -> bool:
        # No usable upstream answer: network, timeout, garbled body, malformed bootstrap
        if isinstance(error, (TransportError, MalformedResponse, InvalidTokenResponse, httpx.TransportError)):
            return True
        if isinstance(error, UpstreamStatusError):
            return error.status_code in self.RETRYABLE_STATUS_CODES
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.RETRYABLE_STATUS_CODES
        return False

    def forces_reauth(self, error: BaseException) -> bool:
        if isinstance(error, UpstreamRejected):
            return True
        return isinstance(error, UpstreamStatusError) and error.status_code in self.REAUTH_STATUS_CODES

    def delay_for_attempt(self, attempt: int) -> float:
        """Seconds to wait after the zero-indexed ``attempt`` failed."""
        return min(self.initial_delay * self.multiplier ** attempt, self.max_delay)

    def retrying(
        self,
        context: RetryContext,
        label: str,
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        on_reauth: Optional[Callable[[], None]] = None,
    ) -> AsyncRetrying:
        """Build a bounded retry loop for one logical operation.

        ``should_retry`` defaults to :meth:`is_retryable`. ``on_reauth`` runs
        before the pause whenever the failure calls for a fresh token.
        """
        predicate = should_retry or self.is_retryable

        def before(state: RetryCallState) -> None:
            context.attempt = state.attempt_number - 1

        def wait(state: RetryCallState) -> float:
            if isinstance(state.outcome.exception(), UpstreamRejected):
                return 0
            return self.delay_for_attempt(state.attempt_number - 1)

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception()
            context.last_error = error
            if on_reauth is not None and self.forces_reauth(error):
                on_reauth()
            logger.warning(
                "[%s] ⚠️ %s - attempt %d/%d, retrying in %dms...",
                label,
                describe_error(error),
                state.attempt_number,
                self.max_retries,
                state.next_action.sleep * 1000,
            )

        return AsyncRetrying(
            retry=retry_if_exception(predicate),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            sleep=self.sleep,
            before=before,
            before_sleep=before_sleep,
            reraise=True,
        )
