"""Configuration models for the backend connection and monitor policies."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from sixty.integration_health.models.records import AlertSeverity


class BackendConfig(BaseModel):
    """Configuration for the backend-as-a-service connection."""

    url: str = Field(..., description="Project URL, e.g. https://xyz.supabase.co")
    api_key: str = Field(..., description="Project API key (anon or service role)")
    access_token: str | None = Field(
        default=None, description="User session token used for edge functions"
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="HTTP request timeout in seconds"
    )


class AlertPolicy(BaseModel):
    """Maps the number of failing tests in a run to an alert severity."""

    critical_above: int = Field(
        default=2, ge=1, description="More failing tests than this is critical"
    )
    high_at: int = Field(default=2, ge=1, description="Exactly this many is high")

    def severity_for(self, failure_count: int) -> AlertSeverity:
        """Return the severity of a run with failure_count failing tests."""
        if failure_count > self.critical_above:
            return "critical"
        if failure_count >= self.high_at:
            return "high"
        return "medium"


class SyncThresholds(BaseModel):
    """Staleness thresholds used by sync, queue and webhook probes."""

    stuck_sync_minutes: int = Field(
        default=30, gt=0, description="A sync running longer than this is stuck"
    )
    stale_sync_hours: int = Field(
        default=24, gt=0, description="Last successful sync older than this fails"
    )
    webhook_silence_hours: int = Field(
        default=168, gt=0, description="No webhook for longer than this fails"
    )
    failed_job_window_hours: int = Field(
        default=24, gt=0, description="Window for counting failed queue jobs"
    )
    recent_activity_days: int = Field(
        default=7, gt=0, description="Window for recent activity evidence"
    )


class RetrySettings(BaseModel):
    """Retry policy for transport failures of remote calls."""

    max_attempts: int = Field(default=3, ge=1, description="Total attempts")
    backoff_seconds: float = Field(
        default=1.0, ge=0, description="Linear backoff step between attempts"
    )


DEFAULT_THRESHOLDS: dict[str, SyncThresholds] = {
    "fathom": SyncThresholds(stale_sync_hours=24),
    "hubspot": SyncThresholds(stale_sync_hours=48),
}


class MonitorSettings(BaseModel):
    """Top-level settings for suites, runner and alerting."""

    app_url: str = Field(
        default="http://localhost:3000", description="Public application URL"
    )
    default_timeout_ms: int = Field(
        default=30000, gt=0, description="Timeout for tests without an override"
    )
    alert_policy: AlertPolicy = Field(default_factory=AlertPolicy)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    thresholds: dict[str, SyncThresholds] = Field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS),
        description="Per-integration thresholds",
    )

    @field_validator("thresholds", mode="before")
    @classmethod
    def _merge_default_thresholds(cls, value: Any) -> Any:
        """Keep built-in thresholds for integrations the input leaves out."""
        if value is None:
            return dict(DEFAULT_THRESHOLDS)
        if not isinstance(value, dict):
            return value
        merged: dict[str, Any] = dict(DEFAULT_THRESHOLDS)
        for name, overrides in value.items():
            if isinstance(overrides, dict) and name in DEFAULT_THRESHOLDS:
                overrides = {**DEFAULT_THRESHOLDS[name].model_dump(), **overrides}
            merged[name] = overrides
        return merged

    def thresholds_for(self, integration_name: str) -> SyncThresholds:
        """Return thresholds for an integration, falling back to defaults."""
        return self.thresholds.get(integration_name, SyncThresholds())
