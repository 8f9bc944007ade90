"""
Bounded retries with exponential backoff and jitter around one transport call.
"""

from __future__ import annotations

import asyncio
import math
import random
import typing as t

import structlog

from appendbatch.config import AppendRetryPolicy, RetryConfig
from appendbatch.exceptions import RateLimitedError, TransportError, is_retryable_error

log = structlog.get_logger(__name__)
R = t.TypeVar(name="R")


class RetryingRequestExecutor:
    """
    Execute an async operation with up to ``max_attempts`` tries.

    The delay before retry ``i`` is drawn uniformly from ``[d, 2d)`` with
    ``d = min(base, max_delay_seconds)``. ``base`` starts at
    ``min_delay_seconds`` and doubles after every failed attempt.

    Parameters
    ----------
    config : RetryConfig | None, optional
        Retry limits and append policy.
    sleep : typing.Callable[[float], typing.Awaitable[None]], optional
        Sleep function, replaceable in tests.
    rng : random.Random | None, optional
        Random source for jitter.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: t.Callable[[float], t.Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def next_delay(self, *, base: float) -> float:
        """
        Draw the jittered delay for the current backoff base.

        Parameters
        ----------
        base : float
            Current backoff base, in seconds.

        Returns
        -------
        float
            Delay in ``[min(base, max), 2 * min(base, max))``.
        """
        capped = min(base, self._config.max_delay_seconds)
        delay = capped + self._rng.random() * capped
        # Rounding can land on 2 * capped; keep the upper bound exclusive.
        return min(delay, math.nextafter(2 * capped, 0.0))

    def should_retry(self, *, error: BaseException, is_append: bool) -> bool:
        """
        Decide whether a failed attempt may be retried.

        Parameters
        ----------
        error : BaseException
            Exception raised by the attempt.
        is_append : bool
            Whether the operation appends records.

        Returns
        -------
        bool
            ``True`` if the error is retryable under the configured policy.
        """
        if not is_retryable_error(error=error):
            return False
        if is_append and self._config.append_retry_policy == AppendRetryPolicy.NO_SIDE_EFFECTS:
            return isinstance(error, TransportError) and error.side_effect_free
        return True

    async def execute_with_retry(
        self,
        operation: t.Callable[[], t.Awaitable[R]],
        *,
        is_append: bool = False,
    ) -> R:
        """
        Run ``operation`` until it succeeds or retrying is no longer allowed.

        Parameters
        ----------
        operation : typing.Callable[[], typing.Awaitable[R]]
            Factory producing a fresh awaitable for each attempt.
        is_append : bool, optional
            Apply the append retry policy to failures.

        Returns
        -------
        R
            Result of the first successful attempt.

        Raises
        ------
        Exception
            The last error, unchanged, once it is not retryable or attempts
            are exhausted.
        """
        base = self._config.min_delay_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as error:
                attempts_left = attempt < self._config.max_attempts
                if not attempts_left or not self.should_retry(error=error, is_append=is_append):
                    log.debug(
                        event="Giving up on request",
                        attempt=attempt,
                        max_attempts=self._config.max_attempts,
                        error=str(object=error),
                        error_type=type(error).__name__,
                    )
                    raise

                delay = self.next_delay(base=base)
                if isinstance(error, RateLimitedError) and error.retry_after:
                    delay = max(delay, error.retry_after)
                log.warning(
                    event="Retrying request",
                    attempt=attempt,
                    max_attempts=self._config.max_attempts,
                    delay_seconds=round(delay, 4),
                    error=str(object=error),
                    error_type=type(error).__name__,
                )
                await self._sleep(delay)
                base = min(base * 2, self._config.max_delay_seconds)
