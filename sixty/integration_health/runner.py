"""Suite runner executing test definitions sequentially and raising alerts."""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone

from sixty.integration_health.backend.base import Backend
from sixty.integration_health.engine import run_with_timeout
from sixty.integration_health.integrations.registry import get_suite
from sixty.integration_health.models.records import IntegrationAlert
from sixty.integration_health.models.run_result import TestRunResult
from sixty.integration_health.models.settings import MonitorSettings
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import (
    TestResult,
    TestRunSummary,
    TriggeredBy,
)
from sixty.integration_health.store import ResultStore

logger = logging.getLogger(__name__)

Warmup = Callable[[], Awaitable[None]]


class SuiteRunner:
    """Runs suites one test at a time, persisting each result as it lands."""

    def __init__(
        self, store: ResultStore, settings: MonitorSettings | None = None
    ) -> None:
        """Initialize runner with a result store and settings."""
        self.store = store
        self.settings = settings or MonitorSettings()

    async def run_suite(
        self,
        integration_name: str,
        tests: Sequence[TestDefinition],
        triggered_by: TriggeredBy = "manual",
        org_id: str | None = None,
        user_id: str | None = None,
        warmup: Warmup | None = None,
    ) -> TestRunResult:
        """Run every test in order and summarize the run.

        Args:
            integration_name: Name the results are recorded under
            tests: Ordered test definitions
            triggered_by: What started the run
            org_id: Tenant scope recorded with each result
            user_id: User that triggered the run
            warmup: Optional step awaited before the first test

        Returns:
            Results in execution order, their summary and the raised alert

        """
        started_at = datetime.now(timezone.utc)
        logger.info(f"Running {len(tests)} {integration_name} tests ({triggered_by})")

        if warmup is not None:
            try:
                await warmup()
            except Exception as e:
                logger.warning(f"Warmup for {integration_name} failed: {e}")

        results: list[TestResult] = []
        for test in tests:
            result = await run_with_timeout(
                test, default_timeout_ms=self.settings.default_timeout_ms
            )
            logger.info(
                f"{integration_name}/{test.id}: {result.status} "
                f"({result.duration_ms}ms)"
            )
            results.append(result)
            await self.store.record_result(
                result,
                integration_name,
                category=test.category,
                triggered_by=triggered_by,
                user_id=user_id,
                org_id=org_id,
            )

        summary = TestRunSummary.from_results(results)
        logger.info(
            f"{integration_name}: {summary.passed}/{summary.total} passed, "
            f"{summary.failed} failed, {summary.error} errors, "
            f"{summary.skipped} skipped"
        )

        alert = await self._raise_alert(integration_name, results, summary, org_id)

        return TestRunResult(
            integration_name=integration_name,
            results=results,
            summary=summary,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            alert=alert,
        )

    async def run_integration(
        self,
        integration_name: str,
        tenant_id: str,
        backend: Backend | None = None,
        triggered_by: TriggeredBy = "manual",
        org_id: str | None = None,
        user_id: str | None = None,
    ) -> TestRunResult:
        """Build an integration's suite for a tenant and run it with its warmup.

        The suite queries the store's backend unless another one is given.
        """
        suite = get_suite(
            integration_name, backend or self.store.backend, self.settings
        )
        return await self.run_suite(
            suite.integration_name,
            suite.create_tests(tenant_id),
            triggered_by=triggered_by,
            org_id=org_id,
            user_id=user_id,
            warmup=suite.warmup,
        )

    async def _raise_alert(
        self,
        integration_name: str,
        results: list[TestResult],
        summary: TestRunSummary,
        org_id: str | None,
    ) -> IntegrationAlert | None:
        """Create the run's failure or recovery alert; never raises."""
        try:
            if summary.failure_count > 0:
                return await self._failure_alert(
                    integration_name, results, summary, org_id
                )
            return await self._recovery_alert(integration_name, summary, org_id)
        except Exception:
            logger.exception(f"Failed to create alert for {integration_name}")
            return None

    async def _failure_alert(
        self,
        integration_name: str,
        results: list[TestResult],
        summary: TestRunSummary,
        org_id: str | None,
    ) -> IntegrationAlert:
        failing = [r.test_name for r in results if r.is_failure]
        count = summary.failure_count
        return await self.store.create_alert(
            integration_name,
            alert_type="failure",
            severity=self.settings.alert_policy.severity_for(count),
            title=f"{integration_name} health check: {count} test(s) failing",
            message=f"Failing tests: {', '.join(failing)}",
            failed_tests=failing,
            org_id=org_id,
        )

    async def _recovery_alert(
        self, integration_name: str, summary: TestRunSummary, org_id: str | None
    ) -> IntegrationAlert | None:
        if summary.total == 0:
            return None
        open_failures = await self.store.list_active(
            integration_name, alert_type="failure", org_id=org_id
        )
        if not open_failures:
            return None
        # one recovery per outstanding failure episode
        recoveries = await self.store.list_active(
            integration_name, alert_type="recovery", org_id=org_id
        )
        if recoveries and recoveries[0].created_at >= open_failures[0].created_at:
            return None
        return await self.store.create_alert(
            integration_name,
            alert_type="recovery",
            severity="low",
            title=f"{integration_name} health check recovered",
            message=(
                f"All {summary.total} tests completed without failures; "
                f"{len(open_failures)} failure alert(s) still unresolved"
            ),
            org_id=org_id,
        )
