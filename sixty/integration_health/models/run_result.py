"""Model for the outcome of a whole suite run."""

from datetime import datetime

from pydantic import BaseModel, Field

from sixty.integration_health.models.records import IntegrationAlert
from sixty.integration_health.models.test_result import TestResult, TestRunSummary


class TestRunResult(BaseModel):
    """Result of running a whole suite for one integration."""

    __test__ = False

    integration_name: str = Field(..., description="Integration under test")
    results: list[TestResult] = Field(
        default_factory=list, description="Results in execution order"
    )
    summary: TestRunSummary = Field(..., description="Aggregated counts")
    started_at: datetime = Field(..., description="Run start time")
    completed_at: datetime = Field(..., description="Run completion time")
    alert: IntegrationAlert | None = Field(
        default=None, description="Alert raised for this run, if any"
    )
