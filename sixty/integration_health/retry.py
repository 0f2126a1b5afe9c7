"""Retry remote calls on transport failures with linear backoff."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar, cast

from sixty.integration_health.backend.base import FunctionResponse, TransportError
from sixty.integration_health.models.settings import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERROR_MARKERS = (
    "Failed to send a request",
    "FunctionsFetchError",
    "Failed to fetch",
    "network",
    "timeout",
)


def is_transport_error_message(message: str) -> bool:
    """Whether an error message describes a transport failure."""
    return any(marker in message for marker in TRANSPORT_ERROR_MARKERS)


def transport_error_response(response: object) -> bool:
    """Retry predicate: a function response whose error is transport-level."""
    return isinstance(response, FunctionResponse) and is_transport_error_message(
        response.error_message
    )


def _never(_: object) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with linear backoff, for transport errors only.

    The delay before attempt k is k * backoff_seconds, so the default
    three attempts wait 2s and then 3s between them.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    is_retryable: Callable[[object], bool] = field(default=_never)
    retry_on: tuple[type[BaseException], ...] = (TransportError,)

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        is_retryable: Callable[[object], bool] = transport_error_response,
    ) -> "RetryPolicy":
        """Build a policy from retry settings."""
        return cls(
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            is_retryable=is_retryable,
        )

    def delay_before(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt."""
        if attempt <= 1:
            return 0.0
        return self.backoff_seconds * attempt


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call until a non-retryable outcome or the attempts run out.

    Args:
        call: Zero-argument coroutine factory performing one attempt
        policy: Retry policy to apply
        sleep: Sleep function, replaceable in tests

    Returns:
        The last response obtained

    Raises:
        Exception: The last exception when every attempt raised, or any
            exception the policy does not retry on

    """
    last_exc: BaseException | None = None
    last_response: T | None = None
    have_response = False

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            delay = policy.delay_before(attempt)
            logger.info(f"Retry {attempt}/{policy.max_attempts} after {delay:.1f}s")
            await sleep(delay)

        try:
            response = await call()
        except policy.retry_on as e:
            logger.warning(f"Attempt {attempt} failed: {e}")
            last_exc = e
            continue

        last_response, have_response = response, True
        if not policy.is_retryable(response):
            return response
        logger.warning(f"Attempt {attempt} returned a transient error, will retry")

    if not have_response and last_exc is not None:
        raise last_exc
    return cast(T, last_response)
