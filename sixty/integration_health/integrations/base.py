"""Abstract base class for integration suites and shared probe helpers."""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, ClassVar

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    Filter,
    TransportError,
)
from sixty.integration_health.models.records import ConnectionStatus, SuiteInfo
from sixty.integration_health.models.settings import MonitorSettings, SyncThresholds
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import ProbeOutcome, TestResult
from sixty.integration_health.retry import RetryPolicy, is_transport_error_message

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[ProbeOutcome]]
Clock = Callable[[], datetime]

NOT_CONNECTED_MARKERS = ("No active", "not connected")


def passed(
    message: str, response_data: Mapping[str, Any] | None = None
) -> ProbeOutcome:
    """Outcome of a satisfied check."""
    return ProbeOutcome(
        status="passed",
        message=message,
        response_data=dict(response_data) if response_data is not None else None,
    )


def failed(
    message: str,
    error_details: Mapping[str, Any] | None = None,
    response_data: Mapping[str, Any] | None = None,
) -> ProbeOutcome:
    """Outcome of a check that found an unhealthy condition."""
    return ProbeOutcome(
        status="failed",
        message=message,
        error_details=dict(error_details) if error_details is not None else None,
        response_data=dict(response_data) if response_data is not None else None,
    )


def skipped(message: str) -> ProbeOutcome:
    """Outcome of a check whose preconditions were not met."""
    return ProbeOutcome(status="skipped", message=message)


def errored(
    message: str, error_details: Mapping[str, Any] | None = None
) -> ProbeOutcome:
    """Outcome of a check that could not be completed."""
    return ProbeOutcome(
        status="error",
        message=message,
        error_details=dict(error_details) if error_details is not None else None,
    )


def no_session() -> ProbeOutcome:
    """Outcome when no user session is available for edge function calls."""
    return errored("No active session")


def define_test(
    test_id: str,
    name: str,
    description: str,
    category: str,
    timeout_ms: int | None,
    check: Check,
) -> TestDefinition:
    """Build a test definition whose probe binds the check outcome to its id."""

    async def run() -> TestResult:
        outcome = await check()
        return TestResult(test_id=test_id, test_name=name, **outcome.model_dump())

    return TestDefinition(
        id=test_id,
        name=name,
        description=description,
        category=category,
        timeout_ms=timeout_ms,
        run=run,
    )


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp (or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def minutes_between(earlier: datetime, later: datetime) -> int:
    """Whole minutes from earlier to later, rounded."""
    return round((later - earlier).total_seconds() / 60)


def hours_between(earlier: datetime, later: datetime) -> int:
    """Whole hours from earlier to later, rounded."""
    return round((later - earlier).total_seconds() / 3600)


def elapsed_ms(start: float) -> int:
    """Milliseconds since a time.monotonic() reading."""
    return int((time.monotonic() - start) * 1000)


def describe_age(hours: int) -> str:
    """Render an age in hours as '5h' or '3 days'."""
    if hours < 24:
        return f"{hours}h"
    return f"{round(hours / 24)} days"


def has_scope(scopes: str | Sequence[str] | None, scope: str) -> bool:
    """Whether a granted scope string or list contains the scope."""
    if not scopes:
        return False
    if isinstance(scopes, str):
        return scope in scopes
    return any(scope in granted for granted in scopes)


async def fetch_connection_status(
    backend: Backend,
    table: str,
    filters: Sequence[Filter],
    describe: Callable[[Mapping[str, Any]], ConnectionStatus],
) -> ConnectionStatus:
    """Look up the active integration record and describe it."""
    try:
        row = await backend.select_one(table, filters=filters)
    except BackendError as e:
        return ConnectionStatus(is_connected=False, error=str(e))

    if row is None:
        return ConnectionStatus(is_connected=False)
    return describe(row)


def evaluate_oauth_token(
    row: Mapping[str, Any] | None,
    now: datetime,
    *,
    expiry_key: str,
    access_key: str = "access_token",
    refresh_key: str = "refresh_token",
) -> ProbeOutcome:
    """Check token presence and expiry; an expired token with a refresh token passes."""
    if not row:
        return failed("No active integration found")

    if not row.get(access_key):
        return failed("No access token stored")

    has_refresh = bool(row.get(refresh_key))
    expires_at = parse_timestamp(row.get(expiry_key))

    if expires_at is None:
        return passed(
            "Token present (no expiry info)", {"hasRefreshToken": has_refresh}
        )

    if expires_at <= now:
        if not has_refresh:
            return failed("Access token expired and no refresh token available")
        return passed(
            "Access token expired but refresh token available",
            {
                "tokenExpired": True,
                "hasRefreshToken": True,
                "expiresAt": row.get(expiry_key),
            },
        )

    minutes_left = minutes_between(now, expires_at)
    return passed(
        f"Token valid for {minutes_left} more minutes",
        {
            "tokenExpired": False,
            "hasRefreshToken": has_refresh,
            "expiresAt": row.get(expiry_key),
            "minutesUntilExpiry": minutes_left,
        },
    )


def classify_api_error(
    error_message: str,
    *,
    auth_markers: Iterable[str] = ("401", "unauthorized"),
    rate_limit_markers: Iterable[str] = ("429", "rate limit"),
    rules: Sequence[tuple[Iterable[str], ProbeOutcome]] = (),
    error_details: Mapping[str, Any] | None = None,
) -> ProbeOutcome:
    """Classify an error returned by an integration proxy call.

    Transport failures are errors, integration-specific rules come next,
    then authentication failures fail, rate limiting passes degraded, and
    anything else fails.
    """
    details = {"error": error_message, **(error_details or {})}

    if is_transport_error_message(error_message):
        return errored(
            "Edge function unreachable - may be experiencing cold start",
            {
                **details,
                "hint": "Try running tests again - cold start should be resolved",
            },
        )

    for markers, outcome in rules:
        if any(m in error_message for m in markers):
            return outcome

    if any(m in error_message for m in auth_markers):
        return failed("Authentication failed - token may be invalid", details)

    if any(m in error_message for m in rate_limit_markers):
        return passed("API reachable (rate limited)", {"rateLimited": True})

    return failed(f"API error: {error_message}", details)


def evaluate_sync_state(
    state: Mapping[str, Any] | None,
    now: datetime,
    thresholds: SyncThresholds,
    *,
    healthy_message: str,
    healthy_data: Mapping[str, Any] | None = None,
    status_key: str = "sync_status",
    started_key: str = "last_sync_started_at",
    completed_key: str = "last_sync_completed_at",
    error_key: str = "error_message",
) -> ProbeOutcome:
    """Flag stuck, errored or stale sync jobs; a never-run sync passes."""
    if not state:
        return passed("No sync state yet (new connection)")

    status = state.get(status_key)

    if status == "syncing":
        started_at = parse_timestamp(state.get(started_key))
        if started_at is not None:
            minutes_running = minutes_between(started_at, now)
            if minutes_running > thresholds.stuck_sync_minutes:
                return failed(
                    f"Sync appears stuck - running for {minutes_running} minutes",
                    {
                        "syncStatus": status,
                        "startedAt": state.get(started_key),
                        "minutesSinceStart": minutes_running,
                    },
                )
        return passed("Sync currently in progress", {"syncStatus": status})

    if status == "error":
        return failed(
            state.get(error_key) or "Sync is in error state",
            {"syncStatus": status, "errorMessage": state.get(error_key)},
        )

    completed_at = parse_timestamp(state.get(completed_key))
    if completed_at is not None:
        hours_since = hours_between(completed_at, now)
        if hours_since > thresholds.stale_sync_hours:
            return failed(
                f"Last sync was {hours_since} hours ago",
                {"lastSyncAt": state.get(completed_key), "hoursSinceSync": hours_since},
            )

    return passed(healthy_message, healthy_data)


async def probe_edge_function(
    backend: Backend, function_name: str, body: Mapping[str, Any]
) -> ProbeOutcome:
    """Measure responsiveness; any response, even an error, means it is alive."""
    token = await backend.get_access_token()
    if not token:
        return no_session()

    start = time.monotonic()
    try:
        response = await backend.invoke(
            function_name, body, headers={"Authorization": f"Bearer {token}"}
        )
    except TransportError as e:
        return errored(str(e) or "Edge function unreachable")
    duration = elapsed_ms(start)

    if response.error is not None:
        message = response.error_message
        if any(m in message for m in NOT_CONNECTED_MARKERS):
            return passed(
                f"Edge function responding ({duration}ms)", {"responseTime": duration}
            )
        return passed(
            f"Edge function responding with error ({duration}ms)",
            {"responseTime": duration, "errorType": message[:50]},
        )

    return passed(f"Edge function healthy ({duration}ms)", {"responseTime": duration})


async def probe_edge_functions(
    backend: Backend, functions: Sequence[tuple[str, Mapping[str, Any]]]
) -> ProbeOutcome:
    """Check several functions respond; fails when any is unreachable."""
    token = await backend.get_access_token()
    if not token:
        return no_session()

    results: dict[str, dict[str, Any]] = {}
    all_responding = True
    for function_name, body in functions:
        start = time.monotonic()
        try:
            await backend.invoke(
                function_name, body, headers={"Authorization": f"Bearer {token}"}
            )
        except TransportError as e:
            logger.warning(f"Edge function {function_name} unreachable: {e}")
            results[function_name] = {
                "responding": False,
                "duration": elapsed_ms(start),
            }
            all_responding = False
            continue
        results[function_name] = {"responding": True, "duration": elapsed_ms(start)}

    avg = round(sum(r["duration"] for r in results.values()) / len(functions))
    if all_responding:
        return passed(f"All functions responding (avg {avg}ms)", results)
    return failed("Some functions not responding", response_data=results)


async def probe_tables(
    backend: Backend, tables: Sequence[tuple[str, Sequence[Filter]]], label: str
) -> ProbeOutcome:
    """Check that each table can be read."""
    results: dict[str, bool] = {}
    for table, filters in tables:
        try:
            await backend.select(table, columns="id", filters=filters, limit=1)
            results[table] = True
        except BackendError as e:
            logger.warning(f"Table {table} inaccessible: {e}")
            results[table] = False

    if all(results.values()):
        return passed(f"All {label} tables accessible", results)
    return failed("Some tables inaccessible", response_data=results)


def enabled_summary(features: Mapping[str, bool], noun: str) -> str:
    """Render 'n/m <noun>' counting the truthy entries of a feature map."""
    enabled = sum(1 for v in features.values() if v)
    return f"{enabled}/{len(features)} {noun}"


class IntegrationSuite(ABC):
    """Abstract base for per-integration suite factories."""

    info: ClassVar[SuiteInfo]

    def __init__(
        self,
        backend: Backend,
        settings: MonitorSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize suite with a backend, settings and an optional clock."""
        self.backend = backend
        self.settings = settings or MonitorSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def integration_name(self) -> str:
        """Name under which results are recorded."""
        return self.info.integration_name

    @property
    def thresholds(self) -> SyncThresholds:
        """Thresholds configured for this integration."""
        return self.settings.thresholds_for(self.integration_name)

    @property
    def retry_policy(self) -> RetryPolicy:
        """Retry policy for transport failures of proxy calls."""
        return RetryPolicy.from_settings(self.settings.retry)

    def now(self) -> datetime:
        """Current time from the suite clock."""
        return self._clock()

    def webhook_url(self, path: str) -> str:
        """Public URL of a webhook endpoint."""
        return f"{self.settings.app_url.rstrip('/')}{path}"

    @abstractmethod
    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the ordered suite for a tenant without performing any I/O.

        Args:
            tenant_id: Organization id, or user id for user-scoped suites

        Returns:
            Fresh test definitions closing over the tenant

        """

    async def warmup(self) -> None:
        """Prepare remote dependencies before the first probe; no-op by default."""
