"""Data models for test definitions, results, records and settings."""

from sixty.integration_health.models.records import (
    ConnectionStatus,
    IntegrationAlert,
    IntegrationHealthSummary,
    IntegrationTestRecord,
    SuiteInfo,
)
from sixty.integration_health.models.run_result import TestRunResult
from sixty.integration_health.models.settings import (
    AlertPolicy,
    BackendConfig,
    MonitorSettings,
    RetrySettings,
    SyncThresholds,
)
from sixty.integration_health.models.test_definition import (
    DEFAULT_TIMEOUT_MS,
    TestDefinition,
)
from sixty.integration_health.models.test_result import (
    ProbeOutcome,
    TestResult,
    TestRunSummary,
    TestStatus,
    TriggeredBy,
)

__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "AlertPolicy",
    "BackendConfig",
    "ConnectionStatus",
    "IntegrationAlert",
    "IntegrationHealthSummary",
    "IntegrationTestRecord",
    "MonitorSettings",
    "ProbeOutcome",
    "RetrySettings",
    "SuiteInfo",
    "SyncThresholds",
    "TestDefinition",
    "TestResult",
    "TestRunResult",
    "TestRunSummary",
    "TestStatus",
    "TriggeredBy",
]
