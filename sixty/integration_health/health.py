"""Cross-integration health rollup from the latest result of each test."""

import logging
from collections import defaultdict
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from sixty.integration_health.models.records import (
    HealthStatus,
    IntegrationHealthSummary,
    IntegrationTestRecord,
)
from sixty.integration_health.store import ResultStore

logger = logging.getLogger(__name__)


def _pass_rate(passed: int, total: int) -> float:
    if total == 0:
        return 0.0
    rate = Decimal(passed * 100) / Decimal(total)
    return float(rate.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def classify(passed: int, failed: int, error: int, total: int) -> HealthStatus:
    """Critical on any failure or error, warning when not everything passed."""
    if failed > 0 or error > 0:
        return "critical"
    if passed < total:
        return "warning"
    return "healthy"


def summarize_records(
    records: Iterable[IntegrationTestRecord],
) -> list[IntegrationHealthSummary]:
    """Group latest-per-test records by integration and summarize each group."""
    groups: dict[str, list[IntegrationTestRecord]] = defaultdict(list)
    for record in records:
        groups[record.integration_name].append(record)

    summaries = []
    for name in sorted(groups):
        group = groups[name]
        total = len(group)
        passed = sum(1 for r in group if r.status == "passed")
        failed = sum(1 for r in group if r.status == "failed")
        error = sum(1 for r in group if r.status == "error")
        summaries.append(
            IntegrationHealthSummary(
                integration_name=name,
                passed_count=passed,
                failed_count=failed,
                error_count=error,
                total_tests=total,
                pass_rate=_pass_rate(passed, total),
                last_test_at=max(r.created_at for r in group),
                health_status=classify(passed, failed, error, total),
            )
        )
    return summaries


class HealthAggregator:
    """Derives current health per integration from the result store."""

    def __init__(self, store: ResultStore) -> None:
        """Initialize aggregator with a result store."""
        self.store = store

    async def summarize_all(self) -> list[IntegrationHealthSummary]:
        """Summarize every integration from one read of the latest results."""
        records = await self.store.latest_per_test()
        summaries = summarize_records(records)
        logger.info(f"Summarized health for {len(summaries)} integrations")
        return summaries
