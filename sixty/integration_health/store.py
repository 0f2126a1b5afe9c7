"""Persistence of test results and the alert lifecycle."""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sixty.integration_health.backend.base import Backend, eq, is_null
from sixty.integration_health.models.records import (
    AlertSeverity,
    AlertType,
    IntegrationAlert,
    IntegrationTestRecord,
)
from sixty.integration_health.models.test_result import TestResult, TriggeredBy

logger = logging.getLogger(__name__)

RESULTS_TABLE = "integration_test_results"
ALERTS_TABLE = "integration_alerts"
# newest row per (integration_name, test_name), via DISTINCT ON
LATEST_RESULTS_VIEW = "latest_integration_test_results"


class AlertNotFoundError(LookupError):
    """No alert exists with the given id."""


class AlertStateError(RuntimeError):
    """The alert cannot make the requested transition."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResultStore:
    """Append-only result history plus alerts, on top of a Backend."""

    def __init__(self, backend: Backend) -> None:
        """Initialize store with a backend."""
        self.backend = backend

    async def record_result(
        self,
        result: TestResult,
        integration_name: str,
        category: str = "",
        triggered_by: TriggeredBy = "manual",
        user_id: str | None = None,
        org_id: str | None = None,
    ) -> IntegrationTestRecord | None:
        """Persist one result; failures are logged and None is returned."""
        row = {
            "integration_name": integration_name,
            "test_name": result.test_name,
            "test_category": category,
            "status": result.status,
            "duration_ms": result.duration_ms,
            "message": result.message,
            "error_details": result.error_details,
            "response_data": result.response_data,
            "triggered_by": triggered_by,
            "triggered_by_user_id": user_id,
            "org_id": org_id,
        }
        try:
            stored = await self.backend.insert(RESULTS_TABLE, row)
            return IntegrationTestRecord.model_validate(stored)
        except Exception:
            logger.exception(
                f"Failed to record result for {integration_name}/{result.test_id}"
            )
            return None

    async def history(
        self, integration_name: str, limit: int = 50
    ) -> list[IntegrationTestRecord]:
        """Most recent records for an integration, newest first."""
        result = await self.backend.select(
            RESULTS_TABLE,
            filters=[eq("integration_name", integration_name)],
            order_by="created_at",
            limit=limit,
        )
        return [IntegrationTestRecord.model_validate(row) for row in result.rows]

    async def latest_per_test(
        self, integration_name: str | None = None
    ) -> list[IntegrationTestRecord]:
        """The most recent record per (integration_name, test_name).

        Reads the latest-results view, so the cost does not grow with history.
        """
        filters = [eq("integration_name", integration_name)] if integration_name else []
        result = await self.backend.select(
            LATEST_RESULTS_VIEW, filters=filters, order_by="created_at"
        )
        return [IntegrationTestRecord.model_validate(row) for row in result.rows]

    async def create_alert(
        self,
        integration_name: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str = "",
        failed_tests: Sequence[str] = (),
        org_id: str | None = None,
    ) -> IntegrationAlert:
        """Insert a new unacknowledged, unresolved alert."""
        stored = await self.backend.insert(
            ALERTS_TABLE,
            {
                "integration_name": integration_name,
                "org_id": org_id,
                "alert_type": alert_type,
                "severity": severity,
                "title": title,
                "message": message,
                "failed_tests": list(failed_tests),
                "acknowledged_at": None,
                "acknowledged_by": None,
                "resolved_at": None,
                "resolved_by": None,
            },
        )
        alert = IntegrationAlert.model_validate(stored)
        logger.info(f"Created {severity} {alert_type} alert for {integration_name}")
        return alert

    async def list_active(
        self,
        integration_name: str | None = None,
        alert_type: AlertType | None = None,
        org_id: str | None = None,
    ) -> list[IntegrationAlert]:
        """Unresolved alerts, newest first, optionally scoped to one tenant."""
        filters = [is_null("resolved_at")]
        if integration_name:
            filters.append(eq("integration_name", integration_name))
        if alert_type:
            filters.append(eq("alert_type", alert_type))
        if org_id:
            filters.append(eq("org_id", org_id))
        result = await self.backend.select(
            ALERTS_TABLE, filters=filters, order_by="created_at"
        )
        return [IntegrationAlert.model_validate(row) for row in result.rows]

    async def get_alert(self, alert_id: str) -> IntegrationAlert:
        """Fetch an alert by id.

        Raises:
            AlertNotFoundError: If no alert has this id

        """
        row = await self.backend.select_one(ALERTS_TABLE, filters=[eq("id", alert_id)])
        if row is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return IntegrationAlert.model_validate(row)

    async def acknowledge(self, alert_id: str, user_id: str) -> IntegrationAlert:
        """Mark an alert acknowledged; repeating keeps the first acknowledgement.

        Raises:
            AlertNotFoundError: If no alert has this id
            AlertStateError: If the alert is already resolved

        """
        alert = await self.get_alert(alert_id)
        if alert.is_resolved:
            raise AlertStateError(f"Alert {alert_id} is already resolved")
        if alert.is_acknowledged:
            return alert
        return await self._transition(
            alert_id, {"acknowledged_at": _now_iso(), "acknowledged_by": user_id}
        )

    async def resolve(self, alert_id: str, user_id: str) -> IntegrationAlert:
        """Mark an alert resolved; repeating keeps the first resolution.

        Raises:
            AlertNotFoundError: If no alert has this id

        """
        alert = await self.get_alert(alert_id)
        if alert.is_resolved:
            return alert
        return await self._transition(
            alert_id, {"resolved_at": _now_iso(), "resolved_by": user_id}
        )

    async def _transition(
        self, alert_id: str, values: dict[str, Any]
    ) -> IntegrationAlert:
        updated = await self.backend.update(ALERTS_TABLE, alert_id, values)
        if updated is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return IntegrationAlert.model_validate(updated)
