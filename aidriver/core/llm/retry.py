"""Retry policy for transient provider failures.

Each ``ErrorKind`` maps to a ``RetryPolicy``. The executor re-runs an operation
only while the classified error is retryable and attempts remain, sleeping
in-task between attempts. There is no background queue.

Retry Strategy:
    - RATE_LIMIT_EXCEEDED: fixed delay, the backend's Retry-After hint wins
    - SERVER_ERROR / SERVICE_UNAVAILABLE: exponential backoff with jitter
    - TIMEOUT: short fixed delay
    - everything else: fail fast (one attempt)

Example:
    >>> config = RetryConfig.from_settings(settings)
    >>> executor = RetryExecutor(config, logger)
    >>> raw = await executor.run(
    ...     lambda: adapter.execute(payload),
    ...     lambda exc: adapter.classify_error(exc, model),
    ... )
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, TypeVar

from aidriver.core.errors import ErrorKind, ProviderError

if TYPE_CHECKING:
    from aidriver.core.config import Settings
    from aidriver.core.logging import LoggerProtocol

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How one error kind is retried.

    Attributes:
        max_attempts: Upstream calls allowed in total, including the first
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay
        exponential: Double the delay on each retry when True, else keep it fixed
        jitter: Random extra delay as a fraction of the computed delay
    """

    max_attempts: int = 1
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential: bool = True
    jitter: float = 0.1

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the ``attempt``-th failure (0-indexed).

        A fixed policy prefers the backend's retry hint over ``base_delay``.
        """
        if not self.exponential:
            delay = retry_after if retry_after is not None else self.base_delay
            return min(delay, self.max_delay)

        delay = self.base_delay * (2**attempt)
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return min(delay, self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1)

DEFAULT_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.RATE_LIMIT_EXCEEDED: RetryPolicy(
        max_attempts=5, base_delay=60.0, max_delay=300.0, exponential=False, jitter=0.0
    ),
    ErrorKind.SERVER_ERROR: RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
    ErrorKind.SERVICE_UNAVAILABLE: RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=60.0),
    ErrorKind.TIMEOUT: RetryPolicy(
        max_attempts=2, base_delay=2.0, max_delay=10.0, exponential=False, jitter=0.0
    ),
}


@dataclass
class RetryConfig:
    """Per-kind policies plus an optional global attempt cap.

    Attributes:
        policies: ErrorKind -> RetryPolicy; kinds not listed are not retried
        max_attempts: Caps every policy's ``max_attempts`` when set
    """

    policies: Mapping[ErrorKind, RetryPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))
    max_attempts: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        """Default policies with exponential delays scaled by ``retry_base_delay``."""
        policies = {
            kind: replace(policy, base_delay=policy.base_delay * settings.retry_base_delay)
            if policy.exponential
            else policy
            for kind, policy in DEFAULT_POLICIES.items()
        }
        return cls(policies=policies, max_attempts=settings.retry_attempts)

    def policy_for(self, kind: ErrorKind) -> RetryPolicy:
        policy = self.policies.get(kind, NO_RETRY)
        if self.max_attempts is not None and policy.max_attempts > self.max_attempts:
            return replace(policy, max_attempts=self.max_attempts)
        return policy


class RetryExecutor:
    """Runs an async operation under a ``RetryConfig``.

    Args:
        config: Policies to apply
        logger: Optional logger; each retry is logged as a warning
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        logger: LoggerProtocol | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self.logger = logger
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Callable[[BaseException], ProviderError],
    ) -> T:
        """Await ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument factory; called once per attempt
            classify: Maps a raised exception to a ``ProviderError``

        Returns:
            The operation's result

        Raises:
            ProviderError: The last classified error, unchanged apart from
                ``attempts`` recording how many upstream calls were made
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify(exc)
                error.attempts = attempt
                policy = self.config.policy_for(error.kind)

                if not error.retryable or attempt >= policy.max_attempts:
                    if attempt > 1 and self.logger is not None:
                        self.logger.error(
                            f"{error.kind.label} after {attempt} attempt(s), giving up",
                            kind=error.kind.value,
                            attempts=attempt,
                        )
                    if error is exc:
                        raise
                    raise error from exc

                delay = policy.delay_for(attempt - 1, error.info.backoff_seconds)
                if self.logger is not None:
                    self.logger.warning(
                        f"{error.kind.label} (attempt {attempt}/{policy.max_attempts}), "
                        f"retrying in {delay:.2f}s",
                        kind=error.kind.value,
                        attempt=attempt,
                        delay=delay,
                    )
                await self._sleep(delay)
