"""Google Workspace suite (user scoped)."""

import logging
import time
from collections.abc import Mapping
from datetime import timedelta
from functools import partial
from typing import Any

from sixty.integration_health.backend.base import Backend, BackendError, eq
from sixty.integration_health.integrations.base import (
    IntegrationSuite,
    classify_api_error,
    define_test,
    elapsed_ms,
    enabled_summary,
    errored,
    evaluate_oauth_token,
    failed,
    fetch_connection_status,
    has_scope,
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

INTEGRATIONS_TABLE = "google_integrations"
CALENDAR_SYNC_TABLE = "calendar_sync_logs"
TASKS_SYNC_TABLE = "google_tasks_sync_status"

# service -> substring of the granted scope string
SERVICE_SCOPES = {
    "gmail": "gmail.readonly",
    "calendar": "calendar",
    "tasks": "tasks",
    "drive": "drive",
    "docs": "documents",
}
CRITICAL_SERVICES = frozenset({"calendar"})


def _describe(row: Mapping[str, Any]) -> ConnectionStatus:
    return ConnectionStatus(
        is_connected=True,
        connected_at=row.get("created_at"),
        last_sync_at=row.get("updated_at"),
        account_info={"email": row.get("email"), "id": row.get("id")},
    )


async def get_google_connection_status(
    backend: Backend, user_id: str
) -> ConnectionStatus:
    """Return the Google connection status for a user."""
    return await fetch_connection_status(
        backend,
        INTEGRATIONS_TABLE,
        [eq("user_id", user_id), eq("is_active", True)],
        _describe,
    )


async def get_google_integration_details(
    backend: Backend, user_id: str
) -> dict[str, Any] | None:
    """Return the active integration row including scopes and token fields."""
    try:
        return await backend.select_one(
            INTEGRATIONS_TABLE,
            columns=(
                "id, email, scopes, expires_at, access_token, refresh_token, "
                "is_active, created_at, updated_at"
            ),
            filters=[eq("user_id", user_id), eq("is_active", True)],
        )
    except BackendError as e:
        logger.error(f"Error fetching Google integration: {e}")
        return None


async def get_calendar_sync_status(
    backend: Backend, user_id: str
) -> dict[str, Any] | None:
    """Return the most recent calendar sync log."""
    try:
        result = await backend.select(
            CALENDAR_SYNC_TABLE,
            filters=[eq("user_id", user_id)],
            order_by="started_at",
            limit=1,
        )
    except BackendError as e:
        logger.error(f"Error fetching calendar sync status: {e}")
        return None
    return result.first()


async def get_tasks_sync_status(
    backend: Backend, user_id: str
) -> dict[str, Any] | None:
    """Return the tasks sync status row."""
    try:
        return await backend.select_one(
            TASKS_SYNC_TABLE, filters=[eq("user_id", user_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching tasks sync status: {e}")
        return None


def evaluate_google_scopes(scopes: str | None) -> ProbeOutcome:
    """Report granted services; only a missing critical service fails."""
    granted = {
        service: has_scope(scopes, scope) for service, scope in SERVICE_SCOPES.items()
    }
    missing_critical = sorted(s for s in CRITICAL_SERVICES if not granted[s])
    data = {"grantedScopes": granted, "rawScopes": scopes or ""}

    if missing_critical:
        return failed(
            "Calendar scope is required but not granted",
            {"missingCriticalScopes": missing_critical},
            data,
        )

    count = sum(1 for v in granted.values() if v)
    return passed(f"{count}/{len(SERVICE_SCOPES)} services authorized", data)


class GoogleSuite(IntegrationSuite):
    """Health checks for the Google Workspace integration."""

    info = SuiteInfo(
        integration_name="google",
        display_name="Google Workspace",
        description="Gmail, Calendar, Tasks, Drive integration",
        categories=[
            "authentication",
            "connectivity",
            "gmail",
            "calendar",
            "tasks",
            "drive",
            "data",
            "infrastructure",
            "summary",
        ],
    )

    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the Google suite for a user."""
        user_id = tenant_id
        specs = [
            ("google-connection-status", "Connection Status",
             "Verify Google is connected to the user account",
             "authentication", 10000, self.check_connection_status),
            ("google-token-validation", "OAuth Token Validation",
             "Verify the stored OAuth tokens are valid and not expired",
             "authentication", 15000, self.check_token),
            ("google-scopes-check", "OAuth Scopes Validation",
             "Verify all required OAuth scopes are granted",
             "authentication", 10000, self.check_scopes),
            ("google-api-connectivity", "Google API Connectivity",
             "Test connection to Google APIs using stored credentials",
             "connectivity", 20000, self.check_api_connectivity),
            ("google-gmail-labels", "Gmail Labels Access",
             "Verify Gmail labels can be retrieved",
             "gmail", 15000, self.check_gmail_labels),
            ("google-gmail-messages", "Gmail Messages Access",
             "Verify Gmail messages can be retrieved",
             "gmail", 15000, self.check_gmail_messages),
            ("google-calendar-list", "Calendar List Access",
             "Verify Google Calendars can be retrieved",
             "calendar", 15000, self.check_calendar_list),
            ("google-calendar-events", "Calendar Events Access",
             "Verify calendar events can be retrieved",
             "calendar", 15000, self.check_calendar_events),
            ("google-calendar-sync-state", "Calendar Sync State",
             "Check calendar sync health and last sync time",
             "calendar", 10000, self.check_calendar_sync),
            ("google-tasks-lists", "Tasks Lists Access",
             "Verify Google Tasks lists can be retrieved",
             "tasks", 15000, self.check_task_lists),
            ("google-tasks-sync-state", "Tasks Sync State",
             "Check tasks sync health and conflict status",
             "tasks", 10000, self.check_tasks_sync),
            ("google-drive-access", "Drive Access",
             "Verify Google Drive can be accessed",
             "drive", 15000, self.check_drive),
            ("google-database-health", "Database Health",
             "Verify Google-related database tables are accessible",
             "data", 10000, self.check_database),
            ("google-edge-function-health", "Edge Functions Health",
             "Verify Google edge functions are responding",
             "infrastructure", 20000, self.check_edge_functions),
            ("google-services-summary", "Services Summary",
             "Overall status of all Google services",
             "summary", 10000, self.check_summary),
        ]  # fmt: skip
        return [
            define_test(
                test_id, name, description, category, timeout, partial(check, user_id)
            )
            for test_id, name, description, category, timeout, check in specs
        ]

    async def check_connection_status(self, user_id: str) -> ProbeOutcome:
        status = await get_google_connection_status(self.backend, user_id)
        if not status.is_connected:
            return failed(status.error or "Google is not connected to this account")

        return passed(
            f"Connected as {status.account_info.get('email') or 'Unknown'}",
            {
                "connectedAt": status.connected_at,
                "lastSyncAt": status.last_sync_at,
                "accountInfo": status.account_info,
            },
        )

    async def check_token(self, user_id: str) -> ProbeOutcome:
        integration = await get_google_integration_details(self.backend, user_id)
        return evaluate_oauth_token(integration, self.now(), expiry_key="expires_at")

    async def check_scopes(self, user_id: str) -> ProbeOutcome:
        integration = await get_google_integration_details(self.backend, user_id)
        if not integration:
            return failed("No active integration found")
        return evaluate_google_scopes(integration.get("scopes"))

    async def check_api_connectivity(self, user_id: str) -> ProbeOutcome:
        start = time.monotonic()
        response = await self.backend.invoke_authenticated("google-test-connection", {})
        if response is None:
            return no_session()
        duration = elapsed_ms(start)

        if response.error is not None:
            not_found = failed(
                "Google integration not found",
                {"error": response.error_message, "duration": duration},
            )
            return classify_api_error(
                response.error_message,
                rules=[(("integration not found",), not_found)],
                error_details={"duration": duration},
            )

        data = response.data if isinstance(response.data, dict) else {}
        results = data.get("results") or {}
        all_passed = all(
            isinstance(r, dict) and r.get("success") for r in results.values()
        )
        payload = {"results": results, "duration": duration}
        if all_passed:
            return passed(f"All services connected ({duration}ms)", payload)
        return failed(f"Some services failed ({duration}ms)", response_data=payload)

    async def _scoped_call(
        self,
        user_id: str,
        scope: str,
        label: str,
        function_name: str,
        body: dict[str, Any],
    ) -> tuple[ProbeOutcome | None, Any]:
        """Skip when the scope is missing, otherwise call the function."""
        integration = await get_google_integration_details(self.backend, user_id)
        if not integration or not has_scope(integration.get("scopes"), scope):
            return skipped(f"{label} scope not granted"), None
        return await self._call(function_name, body, f"Failed to fetch {label}")

    async def _call(
        self, function_name: str, body: dict[str, Any], failure_message: str
    ) -> tuple[ProbeOutcome | None, Any]:
        response = await self.backend.invoke_authenticated(function_name, body)
        if response is None:
            return no_session(), None
        if response.error is not None:
            outcome = classify_api_error(
                response.error_message or failure_message,
                error_details={"response": response.error.model_dump()},
            )
            return outcome, None
        return None, response.data if isinstance(response.data, dict) else {}

    async def check_gmail_labels(self, user_id: str) -> ProbeOutcome:
        outcome, data = await self._scoped_call(
            user_id, "gmail", "Gmail", "google-gmail?action=labels", {}
        )
        if outcome:
            return outcome

        labels = data.get("labels") or []
        has_inbox = any(label.get("name") == "INBOX" for label in labels)
        return passed(
            f"{len(labels)} labels found{', INBOX present' if has_inbox else ''}",
            {
                "labelCount": len(labels),
                "hasInbox": has_inbox,
                "sampleLabels": [label.get("name") for label in labels[:5]],
            },
        )

    async def check_gmail_messages(self, user_id: str) -> ProbeOutcome:
        outcome, data = await self._scoped_call(
            user_id, "gmail", "Gmail", "google-gmail?action=list", {"maxResults": 5}
        )
        if outcome:
            return outcome

        messages = data.get("messages") or []
        estimate = data.get("resultSizeEstimate") or 0
        return passed(
            f"{len(messages)} messages retrieved, ~{estimate} total",
            {
                "messageCount": len(messages),
                "totalEstimate": estimate,
                "hasMessages": bool(messages),
            },
        )

    async def check_calendar_list(self, user_id: str) -> ProbeOutcome:
        outcome, data = await self._call(
            "google-calendar?action=list-calendars", {}, "Failed to fetch calendars"
        )
        if outcome:
            return outcome

        calendars = data.get("calendars") or []
        primary = next((c for c in calendars if c.get("primary")), None)
        return passed(
            f"{len(calendars)} calendars found{', primary set' if primary else ''}",
            {
                "calendarCount": len(calendars),
                "hasPrimary": primary is not None,
                "primaryEmail": primary.get("id") if primary else None,
            },
        )

    async def check_calendar_events(self, user_id: str) -> ProbeOutcome:
        now = self.now()
        outcome, data = await self._call(
            "google-calendar?action=list-events",
            {
                "timeMin": now.isoformat(),
                "timeMax": (now + timedelta(days=7)).isoformat(),
                "maxResults": 10,
            },
            "Failed to fetch events",
        )
        if outcome:
            return outcome

        events = data.get("events") or []
        return passed(
            f"{len(events)} events in next 7 days",
            {"eventCount": len(events), "hasEvents": bool(events)},
        )

    async def check_calendar_sync(self, user_id: str) -> ProbeOutcome:
        sync_status = await get_calendar_sync_status(self.backend, user_id)
        try:
            events = await self.backend.select(
                "calendar_events",
                columns="id, created_at",
                filters=[eq("user_id", user_id)],
                limit=1,
                count=True,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        event_count = events.count or 0
        if not sync_status and event_count == 0:
            return passed("No sync performed yet (new connection)")

        if sync_status and sync_status.get("sync_status") == "error":
            return failed(
                "Last sync failed",
                {
                    "syncStatus": sync_status.get("sync_status"),
                    "error": sync_status.get("error_message"),
                },
            )

        completed_at = parse_timestamp((sync_status or {}).get("completed_at"))
        if sync_status and completed_at is not None:
            hours = hours_between(completed_at, self.now())
            return passed(
                f"{event_count} events synced, last sync {hours}h ago",
                {
                    "eventCount": event_count,
                    "lastSyncAt": sync_status.get("completed_at"),
                    "eventsCreated": sync_status.get("events_created"),
                    "eventsUpdated": sync_status.get("events_updated"),
                },
            )

        return passed(f"{event_count} events in database", {"eventCount": event_count})

    async def check_task_lists(self, user_id: str) -> ProbeOutcome:
        outcome, data = await self._scoped_call(
            user_id, "tasks", "Tasks", "google-tasks", {"action": "list-tasklists"}
        )
        if outcome:
            return outcome

        lists = data.get("items") or []
        return passed(
            f"{len(lists)} task lists found",
            {"listCount": len(lists), "lists": [item.get("title") for item in lists]},
        )

    async def check_tasks_sync(self, user_id: str) -> ProbeOutcome:
        status = await get_tasks_sync_status(self.backend, user_id)
        if not status:
            return passed("No sync performed yet")

        state = status.get("sync_state")
        conflicts = status.get("conflicts_count") or 0

        if state == "error":
            return failed(
                status.get("error_message") or "Sync is in error state",
                {"syncState": state, "errorMessage": status.get("error_message")},
            )

        if state == "conflict" and conflicts > 0:
            return failed(
                f"{conflicts} unresolved conflicts",
                {"syncState": state, "conflictsCount": conflicts},
            )

        return passed(
            f"{status.get('tasks_synced_count') or 0} tasks synced",
            {
                "syncState": state,
                "tasksSynced": status.get("tasks_synced_count"),
                "lastFullSync": status.get("last_full_sync_at"),
                "conflictsCount": conflicts,
            },
        )

    async def check_drive(self, user_id: str) -> ProbeOutcome:
        outcome, data = await self._scoped_call(
            user_id,
            "drive",
            "Drive",
            "google-drive",
            {"action": "list", "maxResults": 5},
        )
        if outcome:
            return outcome

        files = data.get("files") or []
        return passed(
            f"Drive accessible, {len(files)} files found",
            {"fileCount": len(files), "hasFiles": bool(files)},
        )

    async def check_database(self, user_id: str) -> ProbeOutcome:
        return await probe_tables(
            self.backend,
            [
                (INTEGRATIONS_TABLE, [eq("user_id", user_id)]),
                ("calendar_events", [eq("user_id", user_id)]),
                ("google_task_lists", []),
            ],
            "Google",
        )

    async def check_edge_functions(self, user_id: str) -> ProbeOutcome:
        return await probe_edge_functions(
            self.backend,
            [
                ("google-calendar?action=list-calendars", {}),
                ("google-tasks?action=list-tasklists", {}),
            ],
        )

    async def check_summary(self, user_id: str) -> ProbeOutcome:
        integration = await get_google_integration_details(self.backend, user_id)
        if not integration:
            return failed("Google not connected")

        scopes = integration.get("scopes") or ""
        services = {
            "gmail": has_scope(scopes, "gmail"),
            "calendar": has_scope(scopes, "calendar"),
            "tasks": has_scope(scopes, "tasks"),
            "drive": has_scope(scopes, "drive"),
            "docs": has_scope(scopes, "documents"),
        }
        return passed(
            enabled_summary(services, "services enabled"),
            {
                "email": integration.get("email"),
                "services": services,
                "connectedSince": integration.get("created_at"),
            },
        )
