"""End-to-end test of a suite run, alert lifecycle and health rollup."""

import pytest

from sixty.integration_health.backend.memory import MemoryBackend
from sixty.integration_health.health import HealthAggregator
from sixty.integration_health.integrations.slack import (
    LIST_CHANNELS_FUNCTION,
    ORG_SETTINGS_TABLE,
)
from sixty.integration_health.models.settings import MonitorSettings
from sixty.integration_health.runner import SuiteRunner
from sixty.integration_health.store import ALERTS_TABLE, RESULTS_TABLE, ResultStore

ORG_ID = "org-e2e"


@pytest.fixture
def backend() -> MemoryBackend:
    """Create backend with a connected Slack workspace."""
    backend = MemoryBackend()
    backend.seed(
        ORG_SETTINGS_TABLE,
        [
            {
                "id": "ss-1",
                "org_id": ORG_ID,
                "is_connected": True,
                "slack_team_id": "T1",
                "slack_team_name": "Acme",
                "bot_user_id": "B1",
                "connected_at": "2026-01-01T00:00:00+00:00",
            }
        ],
    )
    return backend


@pytest.fixture
def store(backend: MemoryBackend) -> ResultStore:
    """Create result store over the backend."""
    return ResultStore(backend)


@pytest.fixture
def runner(store: ResultStore) -> SuiteRunner:
    """Create runner with default settings."""
    return SuiteRunner(store, MonitorSettings())


async def test_failure_recovery_and_health(
    runner: SuiteRunner, store: ResultStore, backend: MemoryBackend
) -> None:
    """A failing run alerts, a clean run recovers once, health reflects latest."""
    # the channel listing function is not deployed yet
    first = await runner.run_integration(
        "slack", ORG_ID, triggered_by="scheduled", org_id=ORG_ID
    )

    assert first.summary.total == 13
    assert first.summary.failed == 1
    failing = [r.test_id for r in first.results if r.is_failure]
    assert failing == ["slack-api-connectivity"]
    assert first.alert is not None
    assert first.alert.alert_type == "failure"
    assert first.alert.severity == "medium"
    assert first.alert.title == "slack health check: 1 test(s) failing"
    assert first.alert.message == "Failing tests: API Connectivity"
    assert len(backend.tables[RESULTS_TABLE]) == 13

    backend.register_function(
        LIST_CHANNELS_FUNCTION, lambda body: {"channels": [{"id": "C1"}]}
    )
    second = await runner.run_integration("slack", ORG_ID, org_id=ORG_ID)
    third = await runner.run_integration("slack", ORG_ID, org_id=ORG_ID)

    assert second.summary.failure_count == 0
    assert second.alert is not None
    assert second.alert.alert_type == "recovery"
    assert second.alert.severity == "low"
    assert third.alert is None
    assert len(backend.tables[ALERTS_TABLE]) == 2
    assert len(backend.tables[RESULTS_TABLE]) == 39

    [summary] = await HealthAggregator(store).summarize_all()
    assert summary.integration_name == "slack"
    assert summary.total_tests == 13
    assert summary.failed_count == 0
    assert summary.passed_count == 8
    assert summary.pass_rate == 61.5
    assert summary.health_status == "warning"

    acknowledged = await store.acknowledge(first.alert.id, "user-1")
    resolved = await store.resolve(first.alert.id, "user-1")

    assert acknowledged.acknowledged_by == "user-1"
    assert resolved.is_resolved
    active = await store.list_active("slack")
    assert [a.alert_type for a in active] == ["recovery"]
