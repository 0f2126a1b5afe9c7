"""Tests for settings models."""

import pytest
from pydantic import ValidationError

from sixty.integration_health.models.settings import (
    AlertPolicy,
    BackendConfig,
    MonitorSettings,
    SyncThresholds,
)


@pytest.mark.parametrize(
    ("failures", "expected"),
    [
        (1, "medium"),
        (2, "high"),
        (3, "critical"),
        (10, "critical"),
    ],
)
def test_alert_policy_default_severity(failures: int, expected: str) -> None:
    """severity_for follows the 1/2/more-than-2 rule by default."""
    assert AlertPolicy().severity_for(failures) == expected


def test_alert_policy_custom_thresholds() -> None:
    """severity_for honours configured thresholds."""
    policy = AlertPolicy(critical_above=4, high_at=3)
    assert policy.severity_for(2) == "medium"
    assert policy.severity_for(3) == "high"
    assert policy.severity_for(4) == "high"
    assert policy.severity_for(5) == "critical"


def test_backend_config_requires_url_and_key() -> None:
    """BackendConfig requires url and api_key."""
    with pytest.raises(ValidationError) as exc_info:
        BackendConfig(url="https://x.supabase.co")  # type: ignore[call-arg]
    assert "api_key" in str(exc_info.value)


def test_monitor_settings_defaults() -> None:
    """MonitorSettings has per-integration stale thresholds built in."""
    settings = MonitorSettings()
    assert settings.default_timeout_ms == 30000
    assert settings.thresholds_for("fathom").stale_sync_hours == 24
    assert settings.thresholds_for("hubspot").stale_sync_hours == 48
    assert settings.thresholds_for("slack") == SyncThresholds()


def test_monitor_settings_merges_partial_thresholds() -> None:
    """Partial overrides keep the built-in values for other fields and integrations."""
    settings = MonitorSettings.model_validate(
        {
            "thresholds": {
                "hubspot": {"stuck_sync_minutes": 10},
                "savvycal": {"webhook_silence_hours": 24},
            }
        }
    )

    hubspot = settings.thresholds_for("hubspot")
    assert hubspot.stuck_sync_minutes == 10
    assert hubspot.stale_sync_hours == 48
    assert settings.thresholds_for("fathom").stale_sync_hours == 24
    assert settings.thresholds_for("savvycal").webhook_silence_hours == 24


def test_monitor_settings_rejects_invalid_threshold() -> None:
    """Thresholds must be positive."""
    with pytest.raises(ValidationError):
        MonitorSettings.model_validate(
            {"thresholds": {"fathom": {"stale_sync_hours": 0}}}
        )
