"""HubSpot CRM suite (org scoped)."""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from functools import partial
from typing import Any

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    FunctionResponse,
    TransportError,
    eq,
    gte,
    lt,
)
from sixty.integration_health.integrations.base import (
    NOT_CONNECTED_MARKERS,
    Clock,
    IntegrationSuite,
    classify_api_error,
    define_test,
    errored,
    evaluate_sync_state,
    failed,
    fetch_connection_status,
    minutes_between,
    no_session,
    parse_timestamp,
    passed,
    probe_edge_function,
    skipped,
)
from sixty.integration_health.models.records import ConnectionStatus, SuiteInfo
from sixty.integration_health.models.settings import MonitorSettings
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import ProbeOutcome
from sixty.integration_health.retry import call_with_retry

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "hubspot_org_integrations"
CREDENTIALS_TABLE = "hubspot_org_credentials"
SYNC_STATE_TABLE = "hubspot_org_sync_state"
SETTINGS_TABLE = "hubspot_settings"
QUEUE_TABLE = "hubspot_sync_queue"
MAPPINGS_TABLE = "hubspot_object_mappings"
WEBHOOK_EVENTS_TABLE = "hubspot_webhook_events"
ADMIN_FUNCTION = "hubspot-admin"

REQUIRED_SCOPES = (
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.deals.read",
    "crm.objects.deals.write",
)
REQUIRED_STAGES = ("sql", "opportunity", "verbal", "signed")
WARMUP_PAUSE_SECONDS = 0.5

Sleep = Callable[[float], Awaitable[object]]


def _describe(row: Mapping[str, Any]) -> ConnectionStatus:
    return ConnectionStatus(
        is_connected=True,
        connected_at=row.get("created_at"),
        last_sync_at=row.get("last_sync_at"),
        account_info={
            "id": row.get("hubspot_portal_id"),
            "name": row.get("hubspot_portal_name"),
        },
    )


async def get_hubspot_connection_status(
    backend: Backend, org_id: str
) -> ConnectionStatus:
    """Return the HubSpot connection status for an organization."""
    return await fetch_connection_status(
        backend,
        INTEGRATIONS_TABLE,
        [eq("org_id", org_id), eq("is_active", True)],
        _describe,
    )


async def get_hubspot_sync_state(
    backend: Backend, org_id: str
) -> dict[str, Any] | None:
    """Return the HubSpot sync state row, or None when absent or unreadable."""
    try:
        return await backend.select_one(
            SYNC_STATE_TABLE, filters=[eq("org_id", org_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching HubSpot sync state: {e}")
        return None


async def get_hubspot_settings(backend: Backend, org_id: str) -> dict[str, Any]:
    """Return the organization's HubSpot feature settings, empty when unset."""
    try:
        row = await backend.select_one(
            SETTINGS_TABLE, columns="settings", filters=[eq("org_id", org_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching HubSpot settings: {e}")
        return {}
    return (row or {}).get("settings") or {}


def evaluate_stage_mapping(mapping: Mapping[str, Any]) -> ProbeOutcome:
    """Check that a configured pipeline maps every required stage."""
    if not mapping.get("hubspot_pipeline_id"):
        return skipped("Pipeline mapping enabled but not configured yet")

    stage_mappings = mapping.get("stage_mappings") or {}
    missing = [stage for stage in REQUIRED_STAGES if not stage_mappings.get(stage)]
    if missing:
        return failed(
            f"Missing mappings for {len(missing)} stages: {', '.join(missing)}",
            {"missingStages": missing, "configuredMappings": stage_mappings},
        )

    return passed(
        f"Pipeline mapping configured - {len(stage_mappings)} stages mapped "
        f"({mapping.get('sync_direction')})",
        {
            "pipelineId": mapping.get("hubspot_pipeline_id"),
            "syncDirection": mapping.get("sync_direction"),
            "stageMappings": stage_mappings,
        },
    )


class HubSpotSuite(IntegrationSuite):
    """Health checks for the HubSpot integration."""

    info = SuiteInfo(
        integration_name="hubspot",
        display_name="HubSpot",
        description="CRM sync and contact management",
        categories=[
            "authentication",
            "connectivity",
            "sync",
            "contacts",
            "deals",
            "tasks",
            "configuration",
            "webhook",
            "forms",
            "ai",
            "infrastructure",
            "data",
        ],
    )

    def __init__(
        self,
        backend: Backend,
        settings: MonitorSettings | None = None,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize suite; sleep drives retry backoff and the warmup pause."""
        super().__init__(backend, settings, clock)
        self._sleep = sleep
        self._warmup_calls: set[asyncio.Future[FunctionResponse]] = set()

    async def warmup(self) -> None:
        """Fire one status call at the admin function, then pause briefly.

        The call is not awaited and its failures are ignored.
        """
        try:
            token = await self.backend.get_access_token()
        except (BackendError, TransportError) as e:
            logger.info(f"Skipping HubSpot warmup: {e}")
            return
        if not token:
            return

        call = asyncio.ensure_future(
            self.backend.invoke(
                ADMIN_FUNCTION,
                {"action": "status", "org_id": "warmup"},
                headers={"Authorization": f"Bearer {token}"},
            )
        )
        self._warmup_calls.add(call)
        call.add_done_callback(self._finish_warmup)
        await self._sleep(WARMUP_PAUSE_SECONDS)

    def _finish_warmup(self, call: asyncio.Future[FunctionResponse]) -> None:
        self._warmup_calls.discard(call)
        if not call.cancelled() and call.exception() is not None:
            logger.debug(f"HubSpot warmup call failed: {call.exception()}")

    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the HubSpot suite for an organization."""
        org_id = tenant_id
        specs = [
            ("hubspot-connection-status", "Connection Status",
             "Verify HubSpot is connected to the organization",
             "authentication", 10000, self.check_connection_status),
            ("hubspot-token-validation", "OAuth Token Validation",
             "Verify the stored OAuth tokens are valid and not expired",
             "authentication", 15000, self.check_token),
            ("hubspot-scopes-verification", "OAuth Scopes Verification",
             "Verify all required OAuth scopes are granted",
             "authentication", 10000, self.check_scopes),
            ("hubspot-api-connectivity", "API Connectivity",
             "Test connection to the HubSpot API using stored credentials",
             "connectivity", 30000, self.check_api_connectivity),
            ("hubspot-sync-state", "Sync State Health",
             "Verify sync state is healthy and not stuck",
             "sync", 10000, self.check_sync_state),
            ("hubspot-queue-health", "Queue Processing Health",
             "Check if the sync queue is processing jobs correctly",
             "sync", 10000, self.check_queue),
            ("hubspot-contact-sync", "Contact Sync Status",
             "Verify contact synchronization is working correctly",
             "contacts", 15000, partial(self.check_object_sync, "contact")),
            ("hubspot-deal-sync", "Deal Sync Status",
             "Verify deal synchronization is working correctly",
             "deals", 15000, partial(self.check_object_sync, "deal")),
            ("hubspot-task-sync", "Task Sync Status",
             "Verify task synchronization is working correctly",
             "tasks", 15000, partial(self.check_object_sync, "task")),
            ("hubspot-pipeline-mapping", "Pipeline Mapping Configuration",
             "Verify pipeline stage mappings are configured correctly",
             "configuration", 10000, self.check_pipeline_mapping),
            ("hubspot-webhook-config", "Webhook Configuration",
             "Verify webhook endpoint is configured correctly",
             "webhook", 10000, self.check_webhook),
            ("hubspot-form-ingestion", "Form Ingestion Status",
             "Check if HubSpot form ingestion is working correctly",
             "forms", 10000, self.check_form_ingestion),
            ("hubspot-ai-writeback", "AI Note Writeback Status",
             "Check if AI note writeback is configured correctly",
             "ai", 10000, self.check_ai_writeback),
            ("hubspot-edge-function-health", "Edge Function Health",
             "Verify HubSpot edge functions are responding",
             "infrastructure", 15000, self.check_edge_function),
            ("hubspot-data-integrity", "Object Mapping Integrity",
             "Verify object mappings are consistent and valid",
             "data", 15000, self.check_data_integrity),
        ]  # fmt: skip
        return [
            define_test(
                test_id,
                name,
                description,
                category,
                timeout,
                partial(check, org_id=org_id),
            )
            for test_id, name, description, category, timeout, check in specs
        ]

    async def check_connection_status(self, org_id: str) -> ProbeOutcome:
        status = await get_hubspot_connection_status(self.backend, org_id)
        if not status.is_connected:
            return failed(
                status.error or "HubSpot is not connected to this organization"
            )

        info = status.account_info
        return passed(
            f"Connected to portal {info.get('name') or info.get('id') or 'Unknown'}",
            {
                "connectedAt": status.connected_at,
                "lastSyncAt": status.last_sync_at,
                "portalId": info.get("id"),
                "portalName": info.get("name"),
            },
        )

    async def check_token(self, org_id: str) -> ProbeOutcome:
        try:
            credentials = await self.backend.select_one(
                CREDENTIALS_TABLE,
                columns="id, token_expires_at, updated_at",
                filters=[eq("org_id", org_id)],
            )
        except BackendError as e:
            # credentials are service-role only; fall back to the integration row
            logger.info(f"Credentials unreadable, checking integration record: {e}")
            return await self._check_integration_record(org_id)

        if not credentials:
            return failed("No credentials found for this organization")

        expires_at = parse_timestamp(credentials.get("token_expires_at"))
        if expires_at is None:
            return passed("Credentials present")

        now = self.now()
        if expires_at <= now:
            return failed(
                "Access token has expired - refresh required",
                {
                    "expiresAt": credentials.get("token_expires_at"),
                    "expiredMinutesAgo": minutes_between(expires_at, now),
                },
            )

        minutes_left = minutes_between(now, expires_at)
        return passed(
            f"Token valid for {minutes_left} more minutes",
            {
                "expiresAt": credentials.get("token_expires_at"),
                "minutesUntilExpiry": minutes_left,
            },
        )

    async def _check_integration_record(self, org_id: str) -> ProbeOutcome:
        try:
            integration = await self.backend.select_one(
                INTEGRATIONS_TABLE,
                columns="id, is_active, updated_at, scopes",
                filters=[eq("org_id", org_id), eq("is_active", True)],
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        if not integration:
            return failed("No active HubSpot integration found")

        return passed(
            "Integration active (token validation requires service role)",
            {
                "isActive": integration.get("is_active"),
                "scopes": integration.get("scopes"),
                "updatedAt": integration.get("updated_at"),
            },
        )

    async def check_scopes(self, org_id: str) -> ProbeOutcome:
        try:
            integration = await self.backend.select_one(
                INTEGRATIONS_TABLE,
                columns="scopes",
                filters=[eq("org_id", org_id), eq("is_active", True)],
            )
        except BackendError:
            integration = None
        if not integration:
            return failed("No active integration found")

        granted = integration.get("scopes") or []
        missing = [scope for scope in REQUIRED_SCOPES if scope not in granted]
        if missing:
            return failed(
                f"Missing {len(missing)} required scopes",
                {"missingScopes": missing, "grantedScopes": granted},
            )

        return passed(
            f"All {len(REQUIRED_SCOPES)} required scopes granted",
            {"grantedScopes": granted, "totalScopes": len(granted)},
        )

    async def check_api_connectivity(self, org_id: str) -> ProbeOutcome:
        token = await self.backend.get_access_token()
        if not token:
            return no_session()

        async def get_pipelines() -> FunctionResponse:
            return await self.backend.invoke(
                ADMIN_FUNCTION,
                {"action": "get_pipelines", "org_id": org_id},
                headers={"Authorization": f"Bearer {token}"},
            )

        try:
            response = await call_with_retry(
                get_pipelines, self.retry_policy, self._sleep
            )
        except TransportError as e:
            attempts = self.retry_policy.max_attempts
            message = str(e)
            return errored(
                "Edge function unreachable: "
                f"{message or f'No response after {attempts} attempts'}",
                {
                    "error": message,
                    "hint": (
                        "This usually indicates a cold start timeout. "
                        "Try running the tests again."
                    ),
                },
            )

        if response.error is not None:
            return classify_api_error(
                response.error_message or "Unknown error",
                rules=[(NOT_CONNECTED_MARKERS, failed("HubSpot not connected"))],
                error_details={"name": response.error.name},
            )

        data = response.data if isinstance(response.data, dict) else {}
        pipeline_count = len(data.get("pipelines") or [])
        return passed(
            f"Connected successfully - {pipeline_count} pipelines found",
            {"pipelineCount": pipeline_count},
        )

    async def check_sync_state(self, org_id: str) -> ProbeOutcome:
        state = await get_hubspot_sync_state(self.backend, org_id)
        snapshot = state or {}
        total = sum(
            snapshot.get(key) or 0
            for key in ("contacts_synced", "deals_synced", "tasks_synced")
        )
        return evaluate_sync_state(
            state,
            self.now(),
            self.thresholds,
            healthy_message=f"Healthy - {total} total records synced",
            healthy_data={
                "syncStatus": snapshot.get("sync_status"),
                "contactsSynced": snapshot.get("contacts_synced"),
                "dealsSynced": snapshot.get("deals_synced"),
                "tasksSynced": snapshot.get("tasks_synced"),
                "lastSyncAt": snapshot.get("last_sync_completed_at"),
            },
        )

    async def check_queue(self, org_id: str) -> ProbeOutcome:
        now = self.now()
        stuck_before = now - timedelta(minutes=self.thresholds.stuck_sync_minutes)
        failed_since = now - timedelta(hours=self.thresholds.failed_job_window_hours)

        try:
            stuck = await self.backend.select(
                QUEUE_TABLE,
                columns="id, job_type, status, created_at, attempts",
                filters=[
                    eq("org_id", org_id),
                    eq("status", "processing"),
                    lt("created_at", stuck_before.isoformat()),
                ],
            )
        except BackendError as e:
            logger.info(f"Queue table unreadable: {e}")
            return passed("Queue health check requires elevated permissions")

        if stuck.rows:
            return failed(
                f"{len(stuck.rows)} jobs stuck in processing state",
                {
                    "stuckJobs": [
                        {
                            "id": job.get("id"),
                            "type": job.get("job_type"),
                            "createdAt": job.get("created_at"),
                            "attempts": job.get("attempts"),
                        }
                        for job in stuck.rows
                    ]
                },
            )

        try:
            failed_jobs = await self.backend.select(
                QUEUE_TABLE,
                columns="id, job_type, error_message, attempts",
                filters=[
                    eq("org_id", org_id),
                    eq("status", "failed"),
                    gte("created_at", failed_since.isoformat()),
                ],
                limit=5,
            )
            pending = await self.backend.select(
                QUEUE_TABLE,
                columns="id",
                filters=[eq("org_id", org_id), eq("status", "pending")],
                limit=1,
                count=True,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        window = self.thresholds.failed_job_window_hours
        if failed_jobs.rows:
            return failed(
                f"{len(failed_jobs.rows)} jobs failed in the last {window} hours",
                {
                    "failedJobs": [
                        {
                            "id": job.get("id"),
                            "type": job.get("job_type"),
                            "error": job.get("error_message"),
                            "attempts": job.get("attempts"),
                        }
                        for job in failed_jobs.rows
                    ]
                },
            )

        pending_count = pending.count or 0
        return passed(
            f"Queue healthy - {pending_count} pending jobs",
            {"pendingJobs": pending_count, "stuckJobs": 0, "failedJobs24h": 0},
        )

    async def check_object_sync(self, object_type: str, org_id: str) -> ProbeOutcome:
        """Report sync activity for contacts, deals or tasks."""
        label = object_type.capitalize()
        feature = (await get_hubspot_settings(self.backend, org_id)).get(
            f"{object_type}_sync"
        ) or {}
        if not feature.get("enabled"):
            return skipped(f"{label} sync is not enabled")

        try:
            mappings = await self.backend.select(
                MAPPINGS_TABLE,
                columns="id",
                filters=[eq("org_id", org_id), eq("object_type", object_type)],
                limit=1,
                count=True,
            )
        except BackendError:
            return passed(
                f"{label} sync enabled (mapping check requires elevated permissions)"
            )

        state = await get_hubspot_sync_state(self.backend, org_id) or {}
        mapping_count = mappings.count or 0
        synced = state.get(f"{object_type}s_synced") or 0

        data: dict[str, Any] = {"enabled": True}
        if "sync_direction" in feature:
            data["syncDirection"] = feature.get("sync_direction")
        if "create_missing" in feature:
            data["createMissing"] = feature.get("create_missing")
        data.update({"mappingCount": mapping_count, "totalSynced": synced})

        return passed(
            f"{label} sync active - {mapping_count} mappings, {synced} synced", data
        )

    async def check_pipeline_mapping(self, org_id: str) -> ProbeOutcome:
        mapping = (await get_hubspot_settings(self.backend, org_id)).get(
            "pipeline_mapping"
        ) or {}
        if not mapping.get("enabled"):
            return skipped("Pipeline mapping is not enabled")
        return evaluate_stage_mapping(mapping)

    async def check_webhook(self, org_id: str) -> ProbeOutcome:
        try:
            integration = await self.backend.select_one(
                INTEGRATIONS_TABLE,
                columns="webhook_token, is_active",
                filters=[eq("org_id", org_id), eq("is_active", True)],
            )
        except BackendError:
            integration = None
        if not integration:
            return failed("No active integration found")

        if not integration.get("webhook_token"):
            return failed("No webhook token configured")

        days = self.thresholds.recent_activity_days
        since = self.now() - timedelta(days=days)
        try:
            events = await self.backend.select(
                WEBHOOK_EVENTS_TABLE,
                columns="id",
                filters=[eq("org_id", org_id), gte("created_at", since.isoformat())],
                limit=1,
                count=True,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        recent = events.count or 0
        return passed(
            f"Webhook configured - {recent} events in last {days} days",
            {
                "hasWebhookToken": True,
                "recentEventCount": recent,
                "webhookUrl": self.webhook_url("/api/webhooks/hubspot?token=***"),
            },
        )

    async def check_form_ingestion(self, org_id: str) -> ProbeOutcome:
        forms = (await get_hubspot_settings(self.backend, org_id)).get(
            "form_ingestion"
        ) or {}
        if not forms.get("enabled"):
            return skipped("Form ingestion is not enabled")

        enabled_forms = forms.get("enabled_forms") or []
        if not enabled_forms:
            return skipped("Form ingestion enabled but no forms configured yet")

        state = await get_hubspot_sync_state(self.backend, org_id) or {}
        return passed(
            f"Form ingestion active - {len(enabled_forms)} forms configured",
            {
                "enabled": True,
                "enabledFormCount": len(enabled_forms),
                "hasCursor": bool(state.get("cursors")),
            },
        )

    async def check_ai_writeback(self, org_id: str) -> ProbeOutcome:
        writeback = (await get_hubspot_settings(self.backend, org_id)).get(
            "ai_note_writeback"
        ) or {}
        if not writeback.get("enabled"):
            return skipped("AI note writeback is not enabled")

        features = []
        if writeback.get("write_meeting_summaries"):
            features.append("meeting summaries")
        if writeback.get("write_action_items"):
            features.append("action items")

        if not features:
            return skipped("AI writeback enabled but no features configured yet")

        return passed(
            f"AI writeback active - {', '.join(features)}",
            {"enabled": True, "features": features},
        )

    async def check_edge_function(self, org_id: str) -> ProbeOutcome:
        return await probe_edge_function(
            self.backend,
            ADMIN_FUNCTION,
            {"action": "get_properties", "org_id": org_id, "object_type": "contact"},
        )

    async def check_data_integrity(self, org_id: str) -> ProbeOutcome:
        try:
            result = await self.backend.select(
                MAPPINGS_TABLE, columns="object_type", filters=[eq("org_id", org_id)]
            )
        except BackendError:
            return passed("Mapping check requires elevated permissions")

        if not result.rows:
            return passed("No object mappings yet (new integration)")

        counts = Counter(row.get("object_type") for row in result.rows)
        return passed(
            f"{len(result.rows)} total mappings across {len(counts)} object types",
            {"totalMappings": len(result.rows), "byType": dict(counts)},
        )
