"""SavvyCal scheduling suite (org scoped, static API token)."""

import logging
import time
from collections.abc import Mapping
from datetime import timedelta
from functools import partial
from typing import Any

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    FunctionResponse,
    eq,
    ilike,
)
from sixty.integration_health.integrations.base import (
    IntegrationSuite,
    classify_api_error,
    define_test,
    describe_age,
    elapsed_ms,
    enabled_summary,
    failed,
    fetch_connection_status,
    hours_between,
    no_session,
    parse_timestamp,
    passed,
    probe_edge_functions,
    probe_tables,
    skipped,
)
from sixty.integration_health.models.records import ConnectionStatus, SuiteInfo
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import ProbeOutcome

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "savvycal_integrations"
SOURCE_MAPPINGS_TABLE = "savvycal_source_mappings"
LEADS_TABLE = "leads"
CONFIG_FUNCTION = "savvycal-config"
FETCH_LINK_FUNCTION = "fetch-savvycal-link"


def _describe(row: Mapping[str, Any]) -> ConnectionStatus:
    return ConnectionStatus(
        is_connected=True,
        connected_at=row.get("created_at"),
        last_sync_at=row.get("last_sync_at"),
        account_info={
            "webhookConfigured": bool(row.get("webhook_configured_at")),
            "webhookLastReceived": row.get("webhook_last_received_at"),
        },
    )


async def get_savvycal_connection_status(
    backend: Backend, org_id: str
) -> ConnectionStatus:
    """Return the SavvyCal connection status for an organization."""
    return await fetch_connection_status(
        backend,
        INTEGRATIONS_TABLE,
        [eq("org_id", org_id), eq("is_active", True)],
        _describe,
    )


async def get_savvycal_integration(
    backend: Backend, org_id: str
) -> dict[str, Any] | None:
    """Return the integration row with its webhook bookkeeping."""
    try:
        return await backend.select_one(
            INTEGRATIONS_TABLE,
            columns=(
                "id, org_id, is_active, webhook_token, webhook_configured_at, "
                "webhook_last_received_at, webhook_last_event_id, last_sync_at, "
                "created_at, updated_at"
            ),
            filters=[eq("org_id", org_id)],
        )
    except BackendError as e:
        logger.error(f"Error fetching SavvyCal integration: {e}")
        return None


async def get_source_mappings(
    backend: Backend, org_id: str
) -> tuple[list[dict[str, Any]], int]:
    """Return link-to-source mappings and their total count."""
    try:
        result = await backend.select(
            SOURCE_MAPPINGS_TABLE,
            columns="id, link_id, source, source_id, meeting_link",
            filters=[eq("org_id", org_id)],
            count=True,
        )
    except BackendError as e:
        logger.error(f"Error fetching source mappings: {e}")
        return [], 0
    return result.rows, result.count or 0


async def get_savvycal_leads(
    backend: Backend, org_id: str, limit: int = 10
) -> tuple[list[dict[str, Any]], int]:
    """Return the most recent SavvyCal-sourced leads and their total count."""
    try:
        result = await backend.select(
            LEADS_TABLE,
            columns=(
                "id, email, first_name, last_name, source, meeting_title, "
                "meeting_start_time, created_at"
            ),
            filters=[eq("org_id", org_id), ilike("source", "%savvycal%")],
            order_by="created_at",
            limit=limit,
            count=True,
        )
    except BackendError as e:
        logger.error(f"Error fetching leads: {e}")
        return [], 0
    return result.rows, result.count or 0


def _secret_flag(data: Mapping[str, Any], key: str, camel: str) -> bool:
    summary = data.get("secrets_summary") or {}
    return bool(summary.get(key) or data.get(camel) or data.get(key))


def lead_issues(leads: list[Mapping[str, Any]]) -> list[str]:
    """Data quality problems in a sample of leads."""
    issues = []
    for lead in leads:
        if not lead.get("email"):
            issues.append(f"Lead {lead.get('id')} missing email")
        if not lead.get("meeting_title") and not lead.get("first_name"):
            issues.append(f"Lead {lead.get('id')} missing meeting info and name")
    return issues


class SavvyCalSuite(IntegrationSuite):
    """Health checks for the SavvyCal integration."""

    info = SuiteInfo(
        integration_name="savvycal",
        display_name="SavvyCal",
        description="Scheduling and lead capture",
        categories=[
            "authentication",
            "connectivity",
            "webhook",
            "sync",
            "data",
            "configuration",
            "infrastructure",
            "summary",
        ],
    )

    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the SavvyCal suite for an organization."""
        org_id = tenant_id
        specs = [
            ("savvycal-connection-status", "Connection Status",
             "Verify SavvyCal is connected to the organization",
             "authentication", 10000, self.check_connection_status),
            ("savvycal-api-token-validation", "API Token Validation",
             "Verify the stored API token is valid",
             "authentication", 15000, self.check_api_token),
            ("savvycal-api-connectivity", "API Connectivity",
             "Test connection to the SavvyCal API",
             "connectivity", 20000, self.check_api_connectivity),
            ("savvycal-webhook-configuration", "Webhook Configuration",
             "Verify webhook URL is configured in SavvyCal",
             "webhook", 15000, self.check_webhook_configuration),
            ("savvycal-webhook-signing-secret", "Webhook Signing Secret",
             "Verify the webhook signing secret is configured",
             "webhook", 10000, self.check_signing_secret),
            ("savvycal-webhook-health", "Webhook Health",
             "Check if webhooks are being received",
             "webhook", 10000, self.check_webhook_health),
            ("savvycal-sync-state", "Sync State",
             "Check last sync status and timing",
             "sync", 10000, self.check_sync_state),
            ("savvycal-lead-data", "Lead Data Integrity",
             "Verify leads are being created from SavvyCal bookings",
             "data", 15000, self.check_lead_data),
            ("savvycal-source-mappings", "Source Mappings",
             "Check configured link-to-source mappings",
             "configuration", 10000, self.check_source_mappings),
            ("savvycal-database-health", "Database Health",
             "Verify SavvyCal-specific database tables are accessible",
             "infrastructure", 10000, self.check_database),
            ("savvycal-edge-function-health", "Edge Functions Health",
             "Verify SavvyCal edge functions are responding",
             "infrastructure", 20000, self.check_edge_functions),
            ("savvycal-integration-summary", "Integration Summary",
             "Overall status of SavvyCal integration",
             "summary", 10000, self.check_summary),
        ]  # fmt: skip
        return [
            define_test(
                test_id, name, description, category, timeout, partial(check, org_id)
            )
            for test_id, name, description, category, timeout, check in specs
        ]

    async def _config_status(self, org_id: str) -> FunctionResponse | None:
        return await self.backend.invoke_authenticated(
            CONFIG_FUNCTION, {"action": "status", "org_id": org_id}
        )

    async def check_connection_status(self, org_id: str) -> ProbeOutcome:
        status = await get_savvycal_connection_status(self.backend, org_id)
        if not status.is_connected:
            return failed(
                status.error or "SavvyCal is not connected to this organization"
            )

        return passed(
            "SavvyCal integration is active",
            {
                "connectedAt": status.connected_at,
                "lastSyncAt": status.last_sync_at,
                "webhookConfigured": status.account_info.get("webhookConfigured"),
            },
        )

    async def check_api_token(self, org_id: str) -> ProbeOutcome:
        response = await self._config_status(org_id)
        if response is None:
            return no_session()

        if response.error is not None:
            return failed(
                response.error_message or "Failed to check API token status",
                {"error": response.error.model_dump()},
            )

        data = response.data if isinstance(response.data, dict) else {}
        if not _secret_flag(data, "has_api_token", "hasApiToken"):
            return failed(
                "No API token configured", response_data={"rawResponse": response.data}
            )

        return passed(
            "API token is configured",
            {
                "hasToken": True,
                "hasWebhookSecret": _secret_flag(
                    data, "has_webhook_secret", "hasWebhookSecret"
                ),
            },
        )

    async def check_api_connectivity(self, org_id: str) -> ProbeOutcome:
        # an unknown link id is expected to 404, which proves the API answers
        start = time.monotonic()
        response = await self.backend.invoke_authenticated(
            FETCH_LINK_FUNCTION, {"org_id": org_id, "link_id": "test-connectivity"}
        )
        if response is None:
            return no_session()
        duration = elapsed_ms(start)

        if response.error is None:
            return passed(
                f"SavvyCal API connected ({duration}ms)",
                {"duration": duration, "apiReachable": True},
            )

        message = response.error_message
        return classify_api_error(
            message,
            rules=[
                (
                    ("404", "not found"),
                    passed(
                        f"SavvyCal API reachable ({duration}ms)",
                        {"duration": duration, "apiReachable": True},
                    ),
                ),
                (
                    ("401", "unauthorized"),
                    failed(
                        "API token is invalid or expired",
                        {"error": message, "duration": duration},
                    ),
                ),
                (
                    ("No API token", "not configured"),
                    skipped("API token not configured"),
                ),
            ],
            error_details={"duration": duration},
        )

    async def check_webhook_configuration(self, org_id: str) -> ProbeOutcome:
        integration = await get_savvycal_integration(self.backend, org_id)
        if not integration:
            return failed("No active integration found")

        if not integration.get("webhook_token"):
            return failed("Webhook token not generated")

        if not integration.get("webhook_configured_at"):
            return failed(
                "Webhook not yet verified in SavvyCal",
                response_data={"webhookToken": "Generated"},
            )

        return passed(
            "Webhook is configured and verified",
            {
                "configuredAt": integration.get("webhook_configured_at"),
                "hasToken": True,
            },
        )

    async def check_signing_secret(self, org_id: str) -> ProbeOutcome:
        response = await self._config_status(org_id)
        if response is None:
            return no_session()

        if response.error is not None:
            return failed(
                response.error_message or "Failed to check webhook secret status",
                {"error": response.error.model_dump()},
            )

        data = response.data if isinstance(response.data, dict) else {}
        if not (data.get("integration") or {}).get("webhook_configured_at"):
            return skipped("Webhook not configured yet")

        if not (data.get("secrets_summary") or {}).get("has_webhook_secret"):
            return failed(
                "Webhook signing secret not configured - webhooks are not verified",
                response_data={
                    "webhookConfigured": True,
                    "signingSecretConfigured": False,
                    "recommendation": (
                        "Add the signing secret from SavvyCal to enable HMAC "
                        "signature verification"
                    ),
                },
            )

        return passed(
            "Webhook signing secret configured - incoming webhooks are verified",
            {"webhookConfigured": True, "signingSecretConfigured": True},
        )

    async def check_webhook_health(self, org_id: str) -> ProbeOutcome:
        integration = await get_savvycal_integration(self.backend, org_id)
        if not integration:
            return failed("No active integration found")

        last_received = parse_timestamp(integration.get("webhook_last_received_at"))
        if last_received is None:
            if not integration.get("webhook_configured_at"):
                return skipped("Webhook not configured yet")
            return passed(
                "Webhook configured, no events received yet",
                {"webhookConfigured": True, "eventsReceived": False},
            )

        hours = hours_between(last_received, self.now())
        data = {
            "lastReceivedAt": integration.get("webhook_last_received_at"),
            "hoursSinceLastWebhook": hours,
            "lastEventId": integration.get("webhook_last_event_id"),
        }
        if hours > self.thresholds.webhook_silence_hours:
            return failed(
                f"No webhooks received in {round(hours / 24)} days", response_data=data
            )
        return passed(f"Last webhook {describe_age(hours)} ago", data)

    async def check_sync_state(self, org_id: str) -> ProbeOutcome:
        integration = await get_savvycal_integration(self.backend, org_id)
        if not integration:
            return failed("No active integration found")

        last_sync = parse_timestamp(integration.get("last_sync_at"))
        if last_sync is None:
            return passed("No manual sync performed yet (using webhooks)")

        hours = hours_between(last_sync, self.now())
        return passed(
            f"Last sync {describe_age(hours)} ago",
            {"lastSyncAt": integration.get("last_sync_at"), "hoursSinceSync": hours},
        )

    async def check_lead_data(self, org_id: str) -> ProbeOutcome:
        leads, count = await get_savvycal_leads(self.backend, org_id, 10)
        if count == 0:
            integration = await get_savvycal_integration(self.backend, org_id)
            if not (integration or {}).get("webhook_configured_at"):
                return skipped("Webhook not configured - no leads expected yet")
            return passed("No SavvyCal leads yet (waiting for first booking)")

        issues = lead_issues(leads)
        if issues:
            return failed(
                f"{len(issues)} data quality issues in {len(leads)} leads",
                {"issues": issues[:5]},
                {"totalLeads": count, "sampleSize": len(leads)},
            )

        days = self.thresholds.recent_activity_days
        cutoff = self.now() - timedelta(days=days)
        recent = [
            lead
            for lead in leads
            if (parse_timestamp(lead.get("created_at")) or cutoff) > cutoff
        ]
        sample = leads[0]
        return passed(
            f"{count} leads total, {len(recent)} in last {days} days",
            {
                "totalLeads": count,
                "recentLeads": len(recent),
                "sampleLead": {
                    "email": sample.get("email"),
                    "source": sample.get("source"),
                    "meetingTitle": sample.get("meeting_title"),
                },
            },
        )

    async def check_source_mappings(self, org_id: str) -> ProbeOutcome:
        mappings, count = await get_source_mappings(self.backend, org_id)
        if count == 0:
            return passed("No source mappings configured (using auto-detection)")

        missing = [
            m for m in mappings if not m.get("source") and not m.get("source_id")
        ]
        if missing:
            return failed(
                f"{len(missing)} mappings missing source configuration",
                {"linkIds": [m.get("link_id") for m in missing]},
                {"totalMappings": count},
            )

        return passed(
            f"{count} source mappings configured",
            {
                "totalMappings": count,
                "sampleMappings": [
                    {
                        "linkId": m.get("link_id"),
                        "source": m.get("source"),
                        "meetingLink": m.get("meeting_link"),
                    }
                    for m in mappings[:3]
                ],
            },
        )

    async def check_database(self, org_id: str) -> ProbeOutcome:
        return await probe_tables(
            self.backend,
            [
                (INTEGRATIONS_TABLE, [eq("org_id", org_id)]),
                (SOURCE_MAPPINGS_TABLE, [eq("org_id", org_id)]),
            ],
            "SavvyCal",
        )

    async def check_edge_functions(self, org_id: str) -> ProbeOutcome:
        return await probe_edge_functions(
            self.backend, [(CONFIG_FUNCTION, {"action": "status", "org_id": org_id})]
        )

    async def check_summary(self, org_id: str) -> ProbeOutcome:
        integration = await get_savvycal_integration(self.backend, org_id)
        if not integration or not integration.get("is_active"):
            return failed("SavvyCal not connected")

        _, mappings_count = await get_source_mappings(self.backend, org_id)
        _, leads_count = await get_savvycal_leads(self.backend, org_id, 1)
        features = {
            "apiConfigured": True,
            "webhookConfigured": bool(integration.get("webhook_configured_at")),
            "webhookReceiving": bool(integration.get("webhook_last_received_at")),
            "sourceMappings": mappings_count > 0,
            "leadsCreated": leads_count > 0,
        }
        return passed(
            enabled_summary(features, "features active"),
            {
                "features": features,
                "leadsCreated": leads_count,
                "sourceMappings": mappings_count,
                "connectedSince": integration.get("created_at"),
            },
        )
