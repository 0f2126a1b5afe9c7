"""Tests for Fathom suite."""

from datetime import datetime, timezone

import pytest

from sixty.integration_health.backend.base import FunctionResponse
from sixty.integration_health.backend.memory import MemoryBackend
from sixty.integration_health.integrations.fathom import (
    INTEGRATIONS_TABLE,
    MEETINGS_TABLE,
    SYNC_FUNCTION,
    SYNC_STATE_TABLE,
    FathomSuite,
    get_fathom_connection_status,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
ORG_ID = "org-1"


@pytest.fixture
def backend() -> MemoryBackend:
    """Create backend with an active Fathom integration."""
    backend = MemoryBackend()
    backend.seed(
        INTEGRATIONS_TABLE,
        [
            {
                "id": "fi-1",
                "org_id": ORG_ID,
                "is_active": True,
                "created_at": "2026-01-01T00:00:00+00:00",
                "fathom_user_email": "rec@example.com",
                "fathom_user_id": "f-1",
                "access_token": "token",
                "refresh_token": "refresh",
                "token_expires_at": "2026-01-15T13:00:00+00:00",
            }
        ],
    )
    return backend


@pytest.fixture
def suite(backend: MemoryBackend) -> FathomSuite:
    """Create suite with a fixed clock."""
    return FathomSuite(backend, clock=lambda: NOW)


def test_create_tests(suite: FathomSuite) -> None:
    """create_tests builds the seven Fathom checks without I/O."""
    tests = suite.create_tests(ORG_ID)

    assert [t.id for t in tests] == [
        "fathom-connection-status",
        "fathom-token-validation",
        "fathom-api-connectivity",
        "fathom-sync-state",
        "fathom-meeting-data",
        "fathom-webhook-config",
        "fathom-edge-function-health",
    ]
    assert len({t.id for t in tests}) == len(tests)
    assert tests[2].timeout_ms == 20000
    assert suite.backend.invocations == []


async def test_connection_status(suite: FathomSuite) -> None:
    """check_connection_status reports the connected account."""
    outcome = await suite.check_connection_status(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "Connected as rec@example.com"


async def test_connection_status_missing(suite: FathomSuite) -> None:
    """check_connection_status fails for an unconnected org."""
    outcome = await suite.check_connection_status("other-org")

    assert outcome.status == "failed"
    assert outcome.message == "Fathom is not connected to this organization"


async def test_connection_status_backend_error(backend: MemoryBackend) -> None:
    """get_fathom_connection_status reports read errors as disconnected."""
    backend.fail_table(INTEGRATIONS_TABLE, "permission denied")

    status = await get_fathom_connection_status(backend, ORG_ID)

    assert not status.is_connected
    assert status.error is not None
    assert "permission denied" in status.error


async def test_token_valid(suite: FathomSuite) -> None:
    """check_token passes a token expiring in an hour."""
    outcome = await suite.check_token(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "Token valid for 60 more minutes"


async def test_api_connectivity(suite: FathomSuite, backend: MemoryBackend) -> None:
    """check_api_connectivity dry-runs the sync function."""
    backend.register_function(SYNC_FUNCTION, lambda body: {"meetings": 1})

    outcome = await suite.check_api_connectivity(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.response_data == {"meetings": 1}
    name, body = backend.invocations[0]
    assert name == SYNC_FUNCTION
    assert body["dry_run"] is True
    assert body["limit"] == 1


async def test_api_connectivity_unauthorized(
    suite: FathomSuite, backend: MemoryBackend
) -> None:
    """check_api_connectivity fails on an auth error."""
    backend.register_function(
        SYNC_FUNCTION,
        lambda body: FunctionResponse(
            error={"message": "401 Unauthorized", "status": 401}
        ),
    )

    outcome = await suite.check_api_connectivity(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.message.startswith("Authentication failed")


async def test_api_connectivity_no_session(backend: MemoryBackend) -> None:
    """Without a session the API check errors and nothing is invoked."""
    backend.access_token = None
    suite = FathomSuite(backend, clock=lambda: NOW)

    outcome = await suite.check_api_connectivity(ORG_ID)

    assert outcome.status == "error"
    assert outcome.message == "No active session"
    assert backend.invocations == []


async def test_sync_state_healthy(suite: FathomSuite, backend: MemoryBackend) -> None:
    """check_sync_state reports the synced meeting count."""
    backend.seed(
        SYNC_STATE_TABLE,
        [
            {
                "org_id": ORG_ID,
                "sync_status": "idle",
                "meetings_synced": 12,
                "last_sync_completed_at": "2026-01-15T06:00:00+00:00",
            }
        ],
    )

    outcome = await suite.check_sync_state(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "Healthy - 12 meetings synced"


async def test_sync_state_stale(suite: FathomSuite, backend: MemoryBackend) -> None:
    """A sync older than a day is stale for Fathom."""
    backend.seed(
        SYNC_STATE_TABLE,
        [
            {
                "org_id": ORG_ID,
                "sync_status": "idle",
                "last_sync_completed_at": "2026-01-14T10:00:00+00:00",
            }
        ],
    )

    outcome = await suite.check_sync_state(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.message == "Last sync was 26 hours ago"


async def test_sync_state_missing(suite: FathomSuite, backend: MemoryBackend) -> None:
    """An unreadable sync state counts as a new connection."""
    backend.fail_table(SYNC_STATE_TABLE)

    outcome = await suite.check_sync_state(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "No sync state yet (new connection)"


async def test_meeting_data(suite: FathomSuite, backend: MemoryBackend) -> None:
    """check_meeting_data validates titles and transcript coverage."""
    backend.seed(
        MEETINGS_TABLE,
        [
            {
                "id": "m1",
                "org_id": ORG_ID,
                "fathom_recording_id": "r1",
                "title": "Kickoff",
                "start_time": "2026-01-14T10:00:00+00:00",
                "transcript_text": "hello",
                "created_at": "2026-01-14T11:00:00+00:00",
            },
            {
                "id": "m2",
                "org_id": ORG_ID,
                "fathom_recording_id": "r2",
                "title": "Review",
                "start_time": "2026-01-13T10:00:00+00:00",
                "created_at": "2026-01-13T11:00:00+00:00",
            },
        ],
    )

    outcome = await suite.check_meeting_data(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "2 meetings validated, 50% have transcripts"


async def test_meeting_data_issues(suite: FathomSuite, backend: MemoryBackend) -> None:
    """Meetings missing required fields fail the data check."""
    backend.seed(
        MEETINGS_TABLE,
        [{"id": "m1", "org_id": ORG_ID, "fathom_recording_id": "r1"}],
    )

    outcome = await suite.check_meeting_data(ORG_ID)

    assert outcome.status == "failed"
    assert outcome.message == "2 data quality issues found"
    assert outcome.error_details == {
        "issues": ["Meeting m1 missing title", "Meeting m1 missing start_time"]
    }


async def test_meeting_data_empty(suite: FathomSuite) -> None:
    """No synced meetings passes."""
    outcome = await suite.check_meeting_data(ORG_ID)

    assert outcome.message == "No synced meetings to validate"


async def test_webhook_recent_activity(
    suite: FathomSuite, backend: MemoryBackend
) -> None:
    """Recent meetings are evidence of a working webhook."""
    backend.seed(
        MEETINGS_TABLE,
        [
            {
                "id": "m1",
                "org_id": ORG_ID,
                "fathom_recording_id": "r1",
                "created_at": "2026-01-14T11:00:00+00:00",
            },
            {
                "id": "m0",
                "org_id": ORG_ID,
                "fathom_recording_id": "r0",
                "created_at": "2025-12-01T11:00:00+00:00",
            },
        ],
    )

    outcome = await suite.check_webhook(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message == "Webhook active - 1 meetings in last 7 days"
    assert outcome.response_data is not None
    assert outcome.response_data["webhookUrl"] == (
        "http://localhost:3000/api/webhooks/fathom"
    )


async def test_edge_function_health(suite: FathomSuite, backend: MemoryBackend) -> None:
    """check_edge_function passes when the sync function responds."""
    backend.register_function(SYNC_FUNCTION, lambda body: {"ok": True})

    outcome = await suite.check_edge_function(ORG_ID)

    assert outcome.status == "passed"
    assert outcome.message.startswith("Edge function healthy")
    assert backend.invocations == [
        (SYNC_FUNCTION, {"org_id": ORG_ID, "health_check": True})
    ]


async def test_probe_results_carry_test_identity(
    suite: FathomSuite, backend: MemoryBackend
) -> None:
    """Running a definition stamps its id and name on the result."""
    test = suite.create_tests(ORG_ID)[0]

    result = await test.run()

    assert result.test_id == "fathom-connection-status"
    assert result.test_name == "Connection Status"
    assert result.status == "passed"
