"""Tests for Slack suite."""

from datetime import datetime, timezone

import pytest

from sixty.integration_health.backend.base import FunctionResponse
from sixty.integration_health.backend.memory import MemoryBackend
from sixty.integration_health.integrations.slack import (
    DEAL_ROOMS_TABLE,
    LIST_CHANNELS_FUNCTION,
    NOTIFICATION_SETTINGS_TABLE,
    NOTIFICATIONS_SENT_TABLE,
    ORG_SETTINGS_TABLE,
    USER_MAPPINGS_TABLE,
    SlackSuite,
    delivery_issues,
    evaluate_user_mappings,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
ORG_ID = "org-1"


@pytest.fixture
def backend() -> MemoryBackend:
    """Create backend with a connected Slack workspace."""
    backend = MemoryBackend()
    backend.seed(
        ORG_SETTINGS_TABLE,
        [
            {
                "id": "ss-1",
                "org_id": ORG_ID,
                "is_connected": True,
                "slack_team_id": "T1",
                "slack_team_name": "Acme",
                "bot_user_id": "B1",
                "connected_at": "2026-01-01T00:00:00+00:00",
            }
        ],
    )
    return backend


@pytest.fixture
def suite(backend: MemoryBackend) -> SlackSuite:
    """Create suite with a fixed clock."""
    return SlackSuite(backend, clock=lambda: NOW)


def _feature(backend: MemoryBackend, feature: str, **values: object) -> None:
    backend.seed(
        NOTIFICATION_SETTINGS_TABLE,
        [{"org_id": ORG_ID, "feature": feature, "is_enabled": True, **values}],
    )


def test_create_tests(suite: SlackSuite) -> None:
    """create_tests builds thirteen checks in order."""
    tests = suite.create_tests(ORG_ID)

    assert len(tests) == 13
    assert tests[0].id == "slack-connection-status"
    assert tests[-1].id == "slack-features-summary"
    assert len({t.id for t in tests}) == 13


async def test_connection_and_bot_token(suite: SlackSuite) -> None:
    """Connection and bot token checks read the org settings."""
    connection = await suite.check_connection_status(ORG_ID)
    token = await suite.check_bot_token(ORG_ID)

    assert connection.message == 'Connected to workspace "Acme"'
    assert token.message == "Bot token configured"


async def test_bot_token_missing_bot_user(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """A connection without a bot user fails."""
    backend.tables[ORG_SETTINGS_TABLE][0]["bot_user_id"] = None

    outcome = await suite.check_bot_token(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.message == "Bot user ID not configured"


async def test_api_connectivity(suite: SlackSuite, backend: MemoryBackend) -> None:
    """check_api_connectivity counts accessible channels."""
    backend.register_function(
        LIST_CHANNELS_FUNCTION, lambda body: {"channels": [{"id": "C1"}]}
    )

    outcome = await suite.check_api_connectivity(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message.startswith(
        "Connected successfully - 1 channels accessible"
    )
    assert backend.invocations == [(LIST_CHANNELS_FUNCTION, {"org_id": ORG_ID})]


@pytest.mark.parametrize(
    ("error", "status", "message"),
    [
        ("Slack not connected", "failed", "Slack not connected"),
        (
            "invalid_auth",
            "failed",
            "Authentication failed - token may be invalid or revoked",
        ),
        ("ratelimited", "passed", "API reachable but rate limited"),
        ("channel_not_found", "failed", "API error: channel_not_found"),
    ],
)
async def test_api_connectivity_errors(
    suite: SlackSuite,
    backend: MemoryBackend,
    error: str,
    status: str,
    message: str,
) -> None:
    """Proxy errors are classified by their message."""
    backend.register_function(
        LIST_CHANNELS_FUNCTION,
        lambda body: FunctionResponse(error={"message": error}),
    )

    outcome = await suite.check_api_connectivity(ORG_ID)

    assert outcome.status == status
    assert outcome.message.startswith(message)


async def test_channel_access(suite: SlackSuite, backend: MemoryBackend) -> None:
    """Distinct channels across enabled features are counted."""
    _feature(backend, "meeting_debrief", channel_id="C1", channel_name="#sales")
    _feature(backend, "daily_digest", channel_id="C1", channel_name="#sales")
    _feature(backend, "meeting_prep", channel_id="C2", channel_name="#prep")

    outcome = await suite.check_channel_access(ORG_ID)

    assert outcome.message == "2 notification channel(s) configured"
    assert outcome.response_data is not None
    assert outcome.response_data["featureCount"] == 3


def test_delivery_issues() -> None:
    """Channel delivery needs a channel."""
    assert delivery_issues({"delivery_method": "dm"}) == []
    assert delivery_issues({"delivery_method": "both", "channel_id": "C1"}) == []
    assert delivery_issues({"delivery_method": "channel"}) == [
        "No channel selected for channel delivery"
    ]


async def test_feature_not_configured(suite: SlackSuite) -> None:
    """An absent feature row is skipped."""
    outcome = await suite.check_meeting_debrief(ORG_ID)

    assert outcome.status == "skipped"
    assert outcome.message == "Meeting Debrief not configured"


async def test_feature_disabled(suite: SlackSuite, backend: MemoryBackend) -> None:
    """A disabled feature is skipped."""
    backend.seed(
        NOTIFICATION_SETTINGS_TABLE,
        [{"org_id": ORG_ID, "feature": "meeting_prep", "is_enabled": False}],
    )

    outcome = await suite.check_meeting_prep(ORG_ID)

    assert outcome.status == "skipped"
    assert outcome.message == "Meeting Prep is disabled"


async def test_meeting_debrief_missing_channel(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """Channel delivery without a channel fails."""
    _feature(backend, "meeting_debrief", delivery_method="channel")

    outcome = await suite.check_meeting_debrief(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.message == (
        "Configuration issues: No channel selected for channel delivery"
    )


async def test_daily_digest(suite: SlackSuite, backend: MemoryBackend) -> None:
    """A scheduled digest reports time and timezone."""
    _feature(
        backend,
        "daily_digest",
        delivery_method="dm",
        schedule_time="08:00",
        schedule_timezone="Europe/London",
    )

    outcome = await suite.check_daily_digest(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "Daily Digest enabled at 08:00 (Europe/London)"


async def test_daily_digest_missing_schedule(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """A digest without schedule or timezone fails."""
    _feature(backend, "daily_digest", delivery_method="dm")

    outcome = await suite.check_daily_digest(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.error_details == {
        "issues": ["No schedule time configured", "No timezone configured"]
    }


async def test_deal_rooms(suite: SlackSuite, backend: MemoryBackend) -> None:
    """Deal rooms need a threshold and report active rooms."""
    _feature(backend, "deal_rooms")
    assert (await suite.check_deal_rooms(ORG_ID)).message == (
        "No deal thresholds configured (value or stage required)"
    )

    backend.tables[NOTIFICATION_SETTINGS_TABLE][0]["deal_value_threshold"] = 10000
    backend.seed(
        DEAL_ROOMS_TABLE,
        [
            {"org_id": ORG_ID, "is_archived": False},
            {"org_id": ORG_ID, "is_archived": False},
            {"org_id": ORG_ID, "is_archived": True},
        ],
    )

    outcome = await suite.check_deal_rooms(ORG_ID)
    status = await suite.check_deal_room_status(ORG_ID)

    assert outcome.message == "Deal Rooms enabled - 2 active rooms"
    assert status.message == "2 active, 1 archived deal rooms"


async def test_deal_room_status_disabled(suite: SlackSuite) -> None:
    """Deal room status is skipped while the feature is off."""
    outcome = await suite.check_deal_room_status(ORG_ID)

    assert outcome.status == "skipped"
    assert outcome.message == "Deal Rooms feature is not enabled"


@pytest.mark.parametrize(
    ("mappings", "status", "message"),
    [
        ([], "passed", "No Slack users synced yet"),
        (
            [
                {"sixty_user_id": "u1", "is_auto_matched": True},
                {"sixty_user_id": None},
                {"sixty_user_id": None},
            ],
            "failed",
            "Low mapping rate: 1/3 users mapped (33%)",
        ),
        (
            [
                {"sixty_user_id": "u1", "is_auto_matched": True},
                {"sixty_user_id": None},
            ],
            "passed",
            "1/2 Slack users mapped (1 auto-matched)",
        ),
    ],
)
def test_evaluate_user_mappings(mappings: list, status: str, message: str) -> None:
    """Below half of users mapped fails."""
    outcome = evaluate_user_mappings(mappings)

    assert outcome.status == status
    assert outcome.message == message


async def test_user_mappings_reads_table(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """check_user_mappings reads the org's mappings."""
    backend.seed(
        USER_MAPPINGS_TABLE,
        [
            {"org_id": ORG_ID, "sixty_user_id": "u1"},
            {"org_id": "other-org", "sixty_user_id": None},
        ],
    )

    outcome = await suite.check_user_mappings(ORG_ID)

    assert outcome.message == "1/1 Slack users mapped (0 auto-matched)"


async def test_notification_history(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """Only notifications within the activity window are counted."""
    backend.seed(
        NOTIFICATIONS_SENT_TABLE,
        [
            {
                "org_id": ORG_ID,
                "feature": "daily_digest",
                "sent_at": "2026-01-14T08:00:00+00:00",
            },
            {
                "org_id": ORG_ID,
                "feature": "meeting_debrief",
                "sent_at": "2026-01-15T10:00:00+00:00",
            },
            {
                "org_id": ORG_ID,
                "feature": "daily_digest",
                "sent_at": "2025-12-01T08:00:00+00:00",
            },
        ],
    )

    outcome = await suite.check_notification_history(ORG_ID)

    assert outcome.message == "2 notifications sent in the last 7 days"
    assert outcome.response_data == {
        "total": 2,
        "byFeature": {"meeting_debrief": 1, "daily_digest": 1},
        "mostRecent": "2026-01-15T10:00:00+00:00",
    }


async def test_notification_history_unreadable(
    suite: SlackSuite, backend: MemoryBackend
) -> None:
    """An unreadable history passes with a permissions note."""
    backend.fail_table(NOTIFICATIONS_SENT_TABLE)

    outcome = await suite.check_notification_history(ORG_ID)

    assert outcome.status == "passed"


async def test_summary(suite: SlackSuite, backend: MemoryBackend) -> None:
    """check_summary lists enabled features by display name."""
    _feature(backend, "daily_digest")
    _feature(backend, "deal_rooms")
    backend.seed(
        NOTIFICATION_SETTINGS_TABLE,
        [{"org_id": ORG_ID, "feature": "meeting_prep", "is_enabled": False}],
    )

    outcome = await suite.check_summary(ORG_ID)

    assert outcome.message == "2 features enabled: Daily Digest, Deal Rooms"
