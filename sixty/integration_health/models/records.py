"""Persisted and derived records: test history, alerts and health rollups."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from sixty.integration_health.models.test_result import TestStatus, TriggeredBy

AlertType = Literal["failure", "recovery", "degradation"]
AlertSeverity = Literal["critical", "high", "medium", "low"]
HealthStatus = Literal["healthy", "warning", "critical"]


class IntegrationTestRecord(BaseModel):
    """Append-only persisted form of a TestResult."""

    id: str = Field(..., description="Record identifier")
    created_at: datetime = Field(..., description="Insertion timestamp")
    integration_name: str = Field(..., description="Integration the test belongs to")
    test_name: str = Field(..., description="Test name")
    test_category: str = Field(default="", description="Test category")
    status: TestStatus = Field(..., description="Final test status")
    duration_ms: int = Field(default=0, description="Probe duration in ms")
    message: str | None = Field(default=None, description="Human summary")
    error_details: dict[str, Any] | None = Field(default=None)
    response_data: dict[str, Any] | None = Field(default=None)
    triggered_by: TriggeredBy = Field(default="manual", description="Run trigger")
    triggered_by_user_id: str | None = Field(default=None)
    org_id: str | None = Field(default=None, description="Tenant scope")


class IntegrationAlert(BaseModel):
    """Alert raised for a suite run, with its acknowledge/resolve lifecycle."""

    id: str = Field(..., description="Alert identifier")
    created_at: datetime = Field(..., description="Creation timestamp")
    integration_name: str = Field(..., description="Integration the alert is for")
    org_id: str | None = Field(default=None, description="Tenant scope")
    alert_type: AlertType = Field(..., description="Kind of alert")
    severity: AlertSeverity = Field(..., description="Alert severity")
    title: str = Field(..., description="Short alert title")
    message: str = Field(default="", description="Alert details")
    failed_tests: list[str] = Field(
        default_factory=list, description="Names of failing or erroring tests"
    )
    acknowledged_at: datetime | None = Field(default=None)
    acknowledged_by: str | None = Field(default=None)
    resolved_at: datetime | None = Field(default=None)
    resolved_by: str | None = Field(default=None)

    @property
    def is_acknowledged(self) -> bool:
        """Whether the alert has been acknowledged."""
        return self.acknowledged_at is not None

    @property
    def is_resolved(self) -> bool:
        """Whether the alert has been resolved."""
        return self.resolved_at is not None


class IntegrationHealthSummary(BaseModel):
    """Current health of one integration, derived from its latest results."""

    integration_name: str
    passed_count: int = 0
    failed_count: int = 0
    error_count: int = 0
    total_tests: int = 0
    pass_rate: float = Field(default=0.0, description="Passed percentage, 1 dp")
    last_test_at: datetime | None = None
    health_status: HealthStatus = "healthy"


class ConnectionStatus(BaseModel):
    """Connection state of an integration for a tenant."""

    is_connected: bool
    connected_at: str | None = None
    last_sync_at: str | None = None
    account_info: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class SuiteInfo(BaseModel):
    """Dashboard metadata describing a suite."""

    integration_name: str
    display_name: str
    description: str = ""
    categories: list[str] = Field(default_factory=list)
