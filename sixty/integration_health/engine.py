"""Execute a single test definition under a hard timeout."""

import asyncio
import logging
import time
import traceback

from sixty.integration_health.models.test_definition import (
    DEFAULT_TIMEOUT_MS,
    TestDefinition,
)
from sixty.integration_health.models.test_result import TestResult

logger = logging.getLogger(__name__)

# Probes abandoned after a timeout keep running; hold a reference until done.
_abandoned_probes: set[asyncio.Future[TestResult]] = set()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _discard_abandoned(future: asyncio.Future[TestResult]) -> None:
    _abandoned_probes.discard(future)
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug(f"Abandoned probe finished with {type(exc).__name__}: {exc}")


def error_result(
    test: TestDefinition, exc: BaseException, duration_ms: int
) -> TestResult:
    """Convert an exception raised by a probe into an error result."""
    return TestResult(
        test_id=test.id,
        test_name=test.name,
        status="error",
        message=str(exc) or type(exc).__name__,
        duration_ms=duration_ms,
        error_details={
            "name": type(exc).__name__,
            "message": str(exc),
            "stack": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        },
    )


async def run_with_timeout(
    test: TestDefinition,
    timeout_override: int | None = None,
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> TestResult:
    """Run a test, never raising.

    Args:
        test: Test definition to execute
        timeout_override: Timeout in ms taking precedence over the test's own
        default_timeout_ms: Timeout in ms when neither override is set

    Returns:
        The probe's result with the measured duration, or an error result
        when the probe raised or did not finish in time. A timed-out probe
        is abandoned, not cancelled: its side effects may still happen.

    """
    timeout_ms = (
        timeout_override
        if timeout_override is not None
        else test.effective_timeout_ms(default_timeout_ms)
    )
    start = time.monotonic()

    try:
        future = asyncio.ensure_future(test.run())
    except Exception as e:
        logger.warning(f"Test {test.id} raised before starting: {e}")
        return error_result(test, e, _elapsed_ms(start))

    done, _ = await asyncio.wait({future}, timeout=timeout_ms / 1000)

    if future not in done:
        _abandoned_probes.add(future)
        future.add_done_callback(_discard_abandoned)
        logger.warning(f"Test {test.id} timed out after {timeout_ms}ms")
        return TestResult(
            test_id=test.id,
            test_name=test.name,
            status="error",
            message=f"Test timed out after {timeout_ms}ms",
            duration_ms=max(_elapsed_ms(start), timeout_ms),
            error_details={"timeout_ms": timeout_ms},
        )

    duration_ms = _elapsed_ms(start)

    if future.cancelled():
        return TestResult(
            test_id=test.id,
            test_name=test.name,
            status="error",
            message="Test was cancelled",
            duration_ms=duration_ms,
        )

    exc = future.exception()
    if exc is not None:
        logger.warning(f"Test {test.id} raised {type(exc).__name__}: {exc}")
        return error_result(test, exc, duration_ms)

    result = future.result()
    if not isinstance(result, TestResult):
        return TestResult(
            test_id=test.id,
            test_name=test.name,
            status="error",
            message=f"Probe returned {type(result).__name__}, expected TestResult",
            duration_ms=duration_ms,
        )

    return result.model_copy(update={"duration_ms": duration_ms})
