"""Tests for retry helper."""

from unittest.mock import AsyncMock

import pytest

from sixty.integration_health.backend.base import FunctionResponse, TransportError
from sixty.integration_health.models.settings import RetrySettings
from sixty.integration_health.retry import (
    RetryPolicy,
    call_with_retry,
    is_transport_error_message,
    transport_error_response,
)


@pytest.fixture
def policy() -> RetryPolicy:
    """Create the default retry policy."""
    return RetryPolicy.from_settings(RetrySettings())


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Failed to send a request to the Edge Function", True),
        ("FunctionsFetchError: boom", True),
        ("network unreachable", True),
        ("401 Unauthorized", False),
        ("", False),
    ],
)
def test_is_transport_error_message(message: str, expected: bool) -> None:
    """is_transport_error_message recognizes transport failures."""
    assert is_transport_error_message(message) is expected


def test_delay_schedule(policy: RetryPolicy) -> None:
    """Delays grow linearly: none, then 2s, then 3s."""
    assert [policy.delay_before(n) for n in (1, 2, 3)] == [0.0, 2.0, 3.0]


async def test_retries_transport_errors_then_succeeds(policy: RetryPolicy) -> None:
    """call_with_retry retries raised transport errors with backoff."""
    sleep = AsyncMock()
    call = AsyncMock(
        side_effect=[
            TransportError("Failed to send a request"),
            TransportError("Failed to send a request"),
            FunctionResponse(data={"ok": True}),
        ]
    )

    response = await call_with_retry(call, policy, sleep)

    assert response.data == {"ok": True}
    assert call.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [2.0, 3.0]


async def test_retries_transport_error_responses(policy: RetryPolicy) -> None:
    """A response carrying a transport error message is retried."""
    sleep = AsyncMock()
    transient = FunctionResponse(error={"message": "FunctionsFetchError: reset"})
    call = AsyncMock(side_effect=[transient, FunctionResponse(data=[])])

    response = await call_with_retry(call, policy, sleep)

    assert response.data == []
    assert sleep.await_count == 1


async def test_no_retry_on_business_error(policy: RetryPolicy) -> None:
    """A responded error that is not transport-level is returned at once."""
    sleep = AsyncMock()
    unauthorized = FunctionResponse(
        error={"message": "401 Unauthorized", "status": 401}
    )
    call = AsyncMock(return_value=unauthorized)

    response = await call_with_retry(call, policy, sleep)

    assert response is unauthorized
    assert call.await_count == 1
    sleep.assert_not_awaited()


async def test_reraises_after_last_attempt(policy: RetryPolicy) -> None:
    """The last transport error is raised once attempts run out."""
    sleep = AsyncMock()
    call = AsyncMock(side_effect=TransportError("Failed to send a request"))

    with pytest.raises(TransportError):
        await call_with_retry(call, policy, sleep)

    assert call.await_count == 3


async def test_returns_last_transient_response(policy: RetryPolicy) -> None:
    """When every attempt responds transiently the last response is returned."""
    sleep = AsyncMock()
    transient = FunctionResponse(error={"message": "network error"})
    call = AsyncMock(return_value=transient)

    response = await call_with_retry(call, policy, sleep)

    assert response is transient
    assert call.await_count == 3


async def test_other_exceptions_propagate(policy: RetryPolicy) -> None:
    """Exceptions outside retry_on are not retried."""
    call = AsyncMock(side_effect=KeyError("data"))

    with pytest.raises(KeyError):
        await call_with_retry(call, policy, AsyncMock())

    assert call.await_count == 1


def test_transport_error_response_ignores_other_values() -> None:
    """transport_error_response only inspects function responses."""
    assert not transport_error_response({"error": "network"})
    assert not transport_error_response(FunctionResponse(data={"ok": True}))
