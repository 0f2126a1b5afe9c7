"""Slack workspace suite (org scoped)."""

import logging
import time
from collections import Counter
from collections.abc import Mapping
from datetime import timedelta
from functools import partial
from typing import Any

from sixty.integration_health.backend.base import Backend, BackendError, eq, gte
from sixty.integration_health.integrations.base import (
    NOT_CONNECTED_MARKERS,
    IntegrationSuite,
    classify_api_error,
    define_test,
    elapsed_ms,
    errored,
    failed,
    fetch_connection_status,
    no_session,
    passed,
    probe_edge_function,
    skipped,
)
from sixty.integration_health.models.records import ConnectionStatus, SuiteInfo
from sixty.integration_health.models.test_definition import TestDefinition
from sixty.integration_health.models.test_result import ProbeOutcome

logger = logging.getLogger(__name__)

ORG_SETTINGS_TABLE = "slack_org_settings"
NOTIFICATION_SETTINGS_TABLE = "slack_notification_settings"
USER_MAPPINGS_TABLE = "slack_user_mappings"
NOTIFICATIONS_SENT_TABLE = "slack_notifications_sent"
DEAL_ROOMS_TABLE = "slack_deal_rooms"
LIST_CHANNELS_FUNCTION = "slack-list-channels"

FEATURE_NAMES = {
    "meeting_debrief": "Meeting Debrief",
    "daily_digest": "Daily Digest",
    "meeting_prep": "Meeting Prep",
    "deal_rooms": "Deal Rooms",
}
MIN_MAPPING_RATE = 50


def _describe(row: Mapping[str, Any]) -> ConnectionStatus:
    return ConnectionStatus(
        is_connected=True,
        connected_at=row.get("connected_at"),
        account_info={
            "id": row.get("slack_team_id"),
            "name": row.get("slack_team_name"),
        },
    )


async def get_slack_connection_status(
    backend: Backend, org_id: str
) -> ConnectionStatus:
    """Return the Slack connection status for an organization."""
    return await fetch_connection_status(
        backend,
        ORG_SETTINGS_TABLE,
        [eq("org_id", org_id), eq("is_connected", True)],
        _describe,
    )


async def get_notification_settings(
    backend: Backend, org_id: str
) -> list[dict[str, Any]]:
    """Return per-feature notification settings, empty when unreadable."""
    try:
        result = await backend.select(
            NOTIFICATION_SETTINGS_TABLE, filters=[eq("org_id", org_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching notification settings: {e}")
        return []
    return result.rows


async def get_user_mappings(backend: Backend, org_id: str) -> list[dict[str, Any]]:
    """Return Slack user mappings, empty when unreadable."""
    try:
        result = await backend.select(
            USER_MAPPINGS_TABLE, filters=[eq("org_id", org_id)]
        )
    except BackendError as e:
        logger.error(f"Error fetching user mappings: {e}")
        return []
    return result.rows


def delivery_issues(feature: Mapping[str, Any]) -> list[str]:
    """Configuration problems with a feature's delivery target."""
    if feature.get("delivery_method") in ("channel", "both") and not feature.get(
        "channel_id"
    ):
        return ["No channel selected for channel delivery"]
    return []


def evaluate_user_mappings(mappings: list[Mapping[str, Any]]) -> ProbeOutcome:
    """Fail when fewer than half of the synced Slack users are mapped."""
    if not mappings:
        return passed("No Slack users synced yet")

    total = len(mappings)
    mapped = sum(1 for m in mappings if m.get("sixty_user_id") is not None)
    unmapped = total - mapped
    auto_matched = sum(1 for m in mappings if m.get("is_auto_matched"))
    rate = round(mapped / total * 100)

    if unmapped > 0 and rate < MIN_MAPPING_RATE:
        return failed(
            f"Low mapping rate: {mapped}/{total} users mapped ({rate}%)",
            {
                "totalUsers": total,
                "mappedCount": mapped,
                "unmappedCount": unmapped,
                "mappingRate": f"{rate}%",
            },
        )

    return passed(
        f"{mapped}/{total} Slack users mapped ({auto_matched} auto-matched)",
        {
            "totalUsers": total,
            "mappedCount": mapped,
            "unmappedCount": unmapped,
            "autoMatchedCount": auto_matched,
            "mappingRate": f"{rate}%",
        },
    )


class SlackSuite(IntegrationSuite):
    """Health checks for the Slack integration."""

    info = SuiteInfo(
        integration_name="slack",
        display_name="Slack",
        description="Team messaging and notifications",
        categories=[
            "authentication",
            "connectivity",
            "features",
            "mappings",
            "notifications",
            "deal_rooms",
            "infrastructure",
            "summary",
        ],
    )

    def create_tests(self, tenant_id: str) -> list[TestDefinition]:
        """Build the Slack suite for an organization."""
        org_id = tenant_id
        specs = [
            ("slack-connection-status", "Connection Status",
             "Verify Slack workspace is connected to the organization",
             "authentication", 10000, self.check_connection_status),
            ("slack-bot-token", "Bot Token Validation",
             "Verify the stored bot token is present and valid",
             "authentication", 10000, self.check_bot_token),
            ("slack-api-connectivity", "API Connectivity",
             "Test connection to Slack API using stored bot token",
             "connectivity", 20000, self.check_api_connectivity),
            ("slack-channel-access", "Channel Access",
             "Verify bot can access configured notification channels",
             "connectivity", 15000, self.check_channel_access),
            ("slack-meeting-debrief", "Meeting Debrief Configuration",
             "Verify Meeting Debrief feature is properly configured",
             "features", 10000, self.check_meeting_debrief),
            ("slack-daily-digest", "Daily Digest Configuration",
             "Verify Daily Digest feature is properly configured",
             "features", 10000, self.check_daily_digest),
            ("slack-meeting-prep", "Meeting Prep Configuration",
             "Verify Meeting Prep feature is properly configured",
             "features", 10000, self.check_meeting_prep),
            ("slack-deal-rooms", "Deal Rooms Configuration",
             "Verify Deal Rooms feature is properly configured",
             "features", 10000, self.check_deal_rooms),
            ("slack-user-mappings", "User Mappings Status",
             "Check Slack-to-Sixty user mapping coverage",
             "mappings", 10000, self.check_user_mappings),
            ("slack-notification-history", "Notification Delivery History",
             "Check recent notification delivery status",
             "notifications", 10000, self.check_notification_history),
            ("slack-deal-room-status", "Deal Room Health",
             "Check active deal rooms and their status",
             "deal_rooms", 10000, self.check_deal_room_status),
            ("slack-edge-function-health", "Edge Function Health",
             "Verify Slack edge functions are responding",
             "infrastructure", 15000, self.check_edge_function),
            ("slack-features-summary", "Features Summary",
             "Overview of all enabled Slack notification features",
             "summary", 10000, self.check_summary),
        ]  # fmt: skip
        return [
            define_test(
                test_id, name, description, category, timeout, partial(check, org_id)
            )
            for test_id, name, description, category, timeout, check in specs
        ]

    async def _enabled_feature(
        self, org_id: str, feature: str
    ) -> tuple[ProbeOutcome | None, dict[str, Any]]:
        """Find a feature's settings; a skip outcome when absent or disabled."""
        label = FEATURE_NAMES[feature]
        settings = await get_notification_settings(self.backend, org_id)
        row = next((s for s in settings if s.get("feature") == feature), None)
        if row is None:
            return skipped(f"{label} not configured"), {}
        if not row.get("is_enabled"):
            return skipped(f"{label} is disabled"), {}
        return None, row

    async def check_connection_status(self, org_id: str) -> ProbeOutcome:
        status = await get_slack_connection_status(self.backend, org_id)
        if not status.is_connected:
            return failed(
                status.error or "Slack is not connected to this organization"
            )

        return passed(
            f'Connected to workspace "{status.account_info.get("name")}"',
            {
                "connectedAt": status.connected_at,
                "teamId": status.account_info.get("id"),
                "teamName": status.account_info.get("name"),
            },
        )

    async def check_bot_token(self, org_id: str) -> ProbeOutcome:
        # the token itself is encrypted; api-connectivity exercises it
        try:
            settings = await self.backend.select_one(
                ORG_SETTINGS_TABLE,
                columns="id, is_connected, bot_user_id, connected_at",
                filters=[eq("org_id", org_id), eq("is_connected", True)],
            )
        except BackendError:
            settings = None
        if not settings:
            return failed("No active Slack connection found")

        if not settings.get("bot_user_id"):
            return failed("Bot user ID not configured")

        return passed(
            "Bot token configured",
            {
                "botUserId": settings.get("bot_user_id"),
                "connectedAt": settings.get("connected_at"),
            },
        )

    async def check_api_connectivity(self, org_id: str) -> ProbeOutcome:
        start = time.monotonic()
        response = await self.backend.invoke_authenticated(
            LIST_CHANNELS_FUNCTION, {"org_id": org_id}
        )
        if response is None:
            return no_session()
        duration = elapsed_ms(start)

        if response.error is not None:
            message = response.error_message or "Unknown error"
            return classify_api_error(
                message,
                rules=[
                    (NOT_CONNECTED_MARKERS, failed("Slack not connected")),
                    (
                        ("invalid_auth", "token"),
                        failed(
                            "Authentication failed - token may be invalid or revoked",
                            {"error": message},
                        ),
                    ),
                    (
                        ("ratelimited",),
                        passed(
                            f"API reachable but rate limited ({duration}ms)",
                            {"rateLimited": True, "responseTime": duration},
                        ),
                    ),
                ],
            )

        data = response.data if isinstance(response.data, dict) else {}
        channel_count = len(data.get("channels") or [])
        return passed(
            f"Connected successfully - {channel_count} channels accessible "
            f"({duration}ms)",
            {"channelCount": channel_count, "responseTime": duration},
        )

    async def check_channel_access(self, org_id: str) -> ProbeOutcome:
        settings = await get_notification_settings(self.backend, org_id)
        with_channel = [
            s for s in settings if s.get("is_enabled") and s.get("channel_id")
        ]
        if not with_channel:
            return passed("No channels configured for notifications")

        channels = {
            s["channel_id"]: s["channel_name"]
            for s in with_channel
            if s.get("channel_name")
        }
        return passed(
            f"{len(channels)} notification channel(s) configured",
            {
                "channels": [
                    {"id": cid, "name": name} for cid, name in channels.items()
                ],
                "featureCount": len(with_channel),
            },
        )

    async def check_meeting_debrief(self, org_id: str) -> ProbeOutcome:
        outcome, row = await self._enabled_feature(org_id, "meeting_debrief")
        if outcome:
            return outcome
        return self._delivery_outcome("Meeting Debrief", row)

    async def check_meeting_prep(self, org_id: str) -> ProbeOutcome:
        outcome, row = await self._enabled_feature(org_id, "meeting_prep")
        if outcome:
            return outcome
        return self._delivery_outcome("Meeting Prep", row)

    @staticmethod
    def _delivery_outcome(label: str, row: Mapping[str, Any]) -> ProbeOutcome:
        issues = delivery_issues(row)
        if issues:
            return failed(
                f"Configuration issues: {', '.join(issues)}", {"issues": issues}
            )
        return passed(
            f"{label} enabled ({row.get('delivery_method')})",
            {
                "deliveryMethod": row.get("delivery_method"),
                "channelName": row.get("channel_name"),
            },
        )

    async def check_daily_digest(self, org_id: str) -> ProbeOutcome:
        outcome, row = await self._enabled_feature(org_id, "daily_digest")
        if outcome:
            return outcome

        issues = []
        if not row.get("schedule_time"):
            issues.append("No schedule time configured")
        if not row.get("schedule_timezone"):
            issues.append("No timezone configured")
        issues.extend(delivery_issues(row))

        if issues:
            return failed(
                f"Configuration issues: {', '.join(issues)}", {"issues": issues}
            )

        return passed(
            f"Daily Digest enabled at {row.get('schedule_time')} "
            f"({row.get('schedule_timezone')})",
            {
                "deliveryMethod": row.get("delivery_method"),
                "scheduleTime": row.get("schedule_time"),
                "timezone": row.get("schedule_timezone"),
                "channelName": row.get("channel_name"),
            },
        )

    async def check_deal_rooms(self, org_id: str) -> ProbeOutcome:
        outcome, row = await self._enabled_feature(org_id, "deal_rooms")
        if outcome:
            return outcome

        if (
            row.get("deal_value_threshold") is None
            and row.get("deal_stage_threshold") is None
        ):
            return failed("No deal thresholds configured (value or stage required)")

        try:
            rooms = await self.backend.select(
                DEAL_ROOMS_TABLE,
                columns="id",
                filters=[eq("org_id", org_id), eq("is_archived", False)],
                limit=1,
                count=True,
            )
        except BackendError as e:
            return errored(f"Database error: {e}")

        active = rooms.count or 0
        return passed(
            f"Deal Rooms enabled - {active} active rooms",
            {
                "valueThreshold": row.get("deal_value_threshold"),
                "stageThreshold": row.get("deal_stage_threshold"),
                "activeRooms": active,
            },
        )

    async def check_user_mappings(self, org_id: str) -> ProbeOutcome:
        return evaluate_user_mappings(await get_user_mappings(self.backend, org_id))

    async def check_notification_history(self, org_id: str) -> ProbeOutcome:
        days = self.thresholds.recent_activity_days
        since = self.now() - timedelta(days=days)
        try:
            result = await self.backend.select(
                NOTIFICATIONS_SENT_TABLE,
                columns="id, feature, sent_at",
                filters=[eq("org_id", org_id), gte("sent_at", since.isoformat())],
                order_by="sent_at",
                limit=100,
            )
        except BackendError:
            return passed("Notification history check requires elevated permissions")

        sent = result.rows
        if not sent:
            return passed(f"No notifications sent in the last {days} days")

        return passed(
            f"{len(sent)} notifications sent in the last {days} days",
            {
                "total": len(sent),
                "byFeature": dict(Counter(n.get("feature") for n in sent)),
                "mostRecent": sent[0].get("sent_at"),
            },
        )

    async def check_deal_room_status(self, org_id: str) -> ProbeOutcome:
        settings = await get_notification_settings(self.backend, org_id)
        room_settings = next(
            (s for s in settings if s.get("feature") == "deal_rooms"), {}
        )
        if not room_settings.get("is_enabled"):
            return skipped("Deal Rooms feature is not enabled")

        try:
            result = await self.backend.select(
                DEAL_ROOMS_TABLE,
                columns="id, is_archived, created_at",
                filters=[eq("org_id", org_id)],
            )
        except BackendError:
            return passed("Deal room check requires elevated permissions")

        rooms = result.rows
        if not rooms:
            return passed("No deal rooms created yet")

        archived = sum(1 for r in rooms if r.get("is_archived"))
        active = len(rooms) - archived
        return passed(
            f"{active} active, {archived} archived deal rooms",
            {
                "totalRooms": len(rooms),
                "activeRooms": active,
                "archivedRooms": archived,
            },
        )

    async def check_edge_function(self, org_id: str) -> ProbeOutcome:
        return await probe_edge_function(
            self.backend, LIST_CHANNELS_FUNCTION, {"org_id": org_id}
        )

    async def check_summary(self, org_id: str) -> ProbeOutcome:
        settings = await get_notification_settings(self.backend, org_id)
        if not settings:
            return passed("No notification features configured")

        enabled = [
            FEATURE_NAMES.get(s.get("feature"), s.get("feature"))
            for s in settings
            if s.get("is_enabled")
        ]
        if not enabled:
            return passed(
                "No features enabled",
                {"totalConfigured": len(settings), "enabledCount": 0},
            )

        return passed(
            f"{len(enabled)} features enabled: {', '.join(enabled)}",
            {
                "totalConfigured": len(settings),
                "enabledCount": len(enabled),
                "enabledFeatures": enabled,
            },
        )
