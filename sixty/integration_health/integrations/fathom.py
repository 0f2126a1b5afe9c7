"""Fathom meeting recorder suite (org scoped)."""

import logging
from collections.abc import Mapping
from datetime import timedelta
from functools import partial
from typing import Any

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    eq,
    gte,
    not_null,
)
from sixty.integration_health.integrations.base import (
    IntegrationSuite,
    classify_api_error,
    define_test,
    errored,
    evaluate_oauth_token,
    evaluate_sync_state,
    failed,
    fetch_connection_status,
    no_session,
    passed,
    probe_edge_function,
)
from sixty.integration_health.models.records import ConnectionStatus, SuiteInfo
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import ProbeOutcome

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "fathom_org_integrations"
SYNC_STATE_TABLE = "fathom_org_sync_state"
MEETINGS_TABLE = "meetings"
SYNC_FUNCTION = "fathom-sync"


def _describe(row: Mapping[str, Any]) -> ConnectionStatus:
    return ConnectionStatus(
        is_connected=True,
        connected_at=row.get("created_at"),
        last_sync_at=row.get("last_sync_at"),
        account_info={
            "email": row.get("fathom_user_email"),
            "id": row.get("fathom_user_id"),
        },
    )


async def get_fathom_connection_status(
    backend: Backend, org_id: str
) -> ConnectionStatus:
    """Return the Fathom connection status for an organization."""
    return await fetch_connection_status(
        backend,
        INTEGRATIONS_TABLE,
        [eq("org_id", org_id), eq("is_active", True)],
        _describe,
    )


async def get_fathom_sync_state(backend: Backend, org_id: str) -> dict[str, Any] | None:
    """Return the Fathom sync state row, or None when absent or unreadable."""
    try:
        return await backend.select_one(
            SYNC_STATE_TABLE, filters=[eq("org_id", org_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching Fathom sync state: {e}")
        return None


class FathomSuite(IntegrationSuite):
    """Health checks for the Fathom integration."""

    info = SuiteInfo(
        integration_name="fathom",
        display_name="Fathom",
        description="AI meeting recording and transcription",
        categories=[
            "authentication",
            "connectivity",
            "sync",
            "data",
            "webhook",
            "infrastructure",
        ],
    )

    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the Fathom suite for an organization."""
        org_id = tenant_id
        return [
            define_test(
                "fathom-connection-status",
                "Connection Status",
                "Verify Fathom is connected to the organization",
                "authentication",
                10000,
                partial(self.check_connection_status, org_id),
            ),
            define_test(
                "fathom-token-validation",
                "OAuth Token Validation",
                "Verify the stored OAuth tokens are valid and not expired",
                "authentication",
                15000,
                partial(self.check_token, org_id),
            ),
            define_test(
                "fathom-api-connectivity",
                "API Connectivity",
                "Test connection to the Fathom API using stored credentials",
                "connectivity",
                20000,
                partial(self.check_api_connectivity, org_id),
            ),
            define_test(
                "fathom-sync-state",
                "Sync State Health",
                "Verify sync state is healthy and not stuck",
                "sync",
                10000,
                partial(self.check_sync_state, org_id),
            ),
            define_test(
                "fathom-meeting-data",
                "Meeting Data Integrity",
                "Verify synced meetings have required data fields",
                "data",
                15000,
                partial(self.check_meeting_data, org_id),
            ),
            define_test(
                "fathom-webhook-config",
                "Webhook Configuration",
                "Verify webhook endpoint is configured correctly",
                "webhook",
                10000,
                partial(self.check_webhook, org_id),
            ),
            define_test(
                "fathom-edge-function-health",
                "Edge Function Health",
                "Verify Fathom edge functions are responding",
                "infrastructure",
                15000,
                partial(self.check_edge_function, org_id),
            ),
        ]

    async def check_connection_status(self, org_id: str) -> ProbeOutcome:
        status = await get_fathom_connection_status(self.backend, org_id)
        if not status.is_connected:
            return failed(
                status.error or "Fathom is not connected to this organization"
            )

        return passed(
            f"Connected as {status.account_info.get('email') or 'Unknown'}",
            {
                "connectedAt": status.connected_at,
                "lastSyncAt": status.last_sync_at,
                "accountInfo": status.account_info,
            },
        )

    async def check_token(self, org_id: str) -> ProbeOutcome:
        try:
            row = await self.backend.select_one(
                INTEGRATIONS_TABLE,
                columns="id, access_token, refresh_token, token_expires_at",
                filters=[eq("org_id", org_id), eq("is_active", True)],
            )
        except BackendError:
            row = None
        return evaluate_oauth_token(row, self.now(), expiry_key="token_expires_at")

    async def check_api_connectivity(self, org_id: str) -> ProbeOutcome:
        # dry run fetching a single meeting
        response = await self.backend.invoke_authenticated(
            SYNC_FUNCTION,
            {"org_id": org_id, "sync_type": "manual", "limit": 1, "dry_run": True},
        )
        if response is None:
            return no_session()

        if response.error is not None:
            return classify_api_error(response.error_message)

        data = (
            response.data
            if isinstance(response.data, dict)
            else {"data": response.data}
        )
        return passed("Successfully connected to Fathom API", data)

    async def check_sync_state(self, org_id: str) -> ProbeOutcome:
        state = await get_fathom_sync_state(self.backend, org_id)
        snapshot = state or {}
        return evaluate_sync_state(
            state,
            self.now(),
            self.thresholds,
            healthy_message=(
                f"Healthy - {snapshot.get('meetings_synced') or 0} meetings synced"
            ),
            healthy_data={
                "syncStatus": snapshot.get("sync_status"),
                "meetingsSynced": snapshot.get("meetings_synced"),
                "totalMeetingsFound": snapshot.get("total_meetings_found"),
                "lastSyncAt": snapshot.get("last_sync_completed_at"),
            },
        )

    async def check_meeting_data(self, org_id: str) -> ProbeOutcome:
        try:
            result = await self.backend.select(
                MEETINGS_TABLE,
                columns="id, title, start_time, external_id, transcript_text, summary",
                filters=[eq("org_id", org_id), not_null("fathom_recording_id")],
                order_by="created_at",
                limit=10,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        meetings = result.rows
        if not meetings:
            return passed("No synced meetings to validate")

        issues: list[str] = []
        for meeting in meetings:
            if not meeting.get("title"):
                issues.append(f"Meeting {meeting.get('id')} missing title")
            if not meeting.get("start_time"):
                issues.append(f"Meeting {meeting.get('id')} missing start_time")

        with_transcripts = sum(1 for m in meetings if m.get("transcript_text"))
        transcript_rate = round(with_transcripts / len(meetings) * 100)

        if issues:
            return failed(
                f"{len(issues)} data quality issues found",
                {"issues": issues[:5]},
                {
                    "totalMeetings": len(meetings),
                    "issueCount": len(issues),
                    "transcriptRate": f"{transcript_rate}%",
                },
            )

        return passed(
            f"{len(meetings)} meetings validated, {transcript_rate}% have transcripts",
            {
                "totalMeetings": len(meetings),
                "withTranscripts": with_transcripts,
                "transcriptRate": f"{transcript_rate}%",
            },
        )

    async def check_webhook(self, org_id: str) -> ProbeOutcome:
        # Webhooks cannot be triggered from here; recent meetings are the evidence.
        since = self.now() - timedelta(days=self.thresholds.recent_activity_days)
        try:
            result = await self.backend.select(
                MEETINGS_TABLE,
                columns="id, created_at",
                filters=[
                    eq("org_id", org_id),
                    not_null("fathom_recording_id"),
                    gte("created_at", since.isoformat()),
                ],
                order_by="created_at",
                limit=5,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        recent = len(result.rows)
        days = self.thresholds.recent_activity_days
        message = (
            f"Webhook active - {recent} meetings in last {days} days"
            if recent
            else "Webhook endpoint configured (no recent meetings)"
        )
        return passed(
            message,
            {
                "recentMeetingCount": recent,
                "webhookUrl": self.webhook_url("/api/webhooks/fathom"),
            },
        )

    async def check_edge_function(self, org_id: str) -> ProbeOutcome:
        return await probe_edge_function(
            self.backend, SYNC_FUNCTION, {"org_id": org_id, "health_check": True}
        )
