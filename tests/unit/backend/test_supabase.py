"""Tests for Supabase backend."""

import re

import aiohttp
import pytest
from aioresponses import aioresponses

from sixty.integration_health.backend.base import (
    BackendError,
    Filter,
    TransportError,
    eq,
    gte,
    ilike,
    is_null,
    not_null,
)
from sixty.integration_health.backend.supabase import (
    SupabaseBackend,
    encode_filter,
    parse_content_range,
)
from sixty.integration_health.models.settings import BackendConfig

BASE_URL = "https://project.supabase.co"


@pytest.fixture
def backend_config() -> BackendConfig:
    """Create test backend configuration."""
    return BackendConfig(
        url=f"{BASE_URL}/",
        api_key="anon-key",
        access_token="user-jwt",
    )


@pytest.fixture
def backend(backend_config: BackendConfig) -> SupabaseBackend:
    """Create backend under test."""
    return SupabaseBackend(backend_config)


@pytest.mark.parametrize(
    ("flt", "expected"),
    [
        (eq("user_id", "u1"), ("user_id", "eq.u1")),
        (eq("is_active", True), ("is_active", "eq.true")),
        (gte("created_at", "2026-01-01"), ("created_at", "gte.2026-01-01")),
        (is_null("resolved_at"), ("resolved_at", "is.null")),
        (not_null("bot_access_token"), ("bot_access_token", "not.is.null")),
        (ilike("source", "%savvycal%"), ("source", "ilike.%savvycal%")),
    ],
)
def test_encode_filter(flt: Filter, expected: tuple[str, str]) -> None:
    """encode_filter renders PostgREST operators."""
    assert encode_filter(flt) == expected


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("0-9/42", 42),
        ("*/0", 0),
        ("0-9/*", None),
        (None, None),
        ("", None),
    ],
)
def test_parse_content_range(header: str | None, expected: int | None) -> None:
    """parse_content_range extracts the total when known."""
    assert parse_content_range(header) == expected


async def test_select_success(backend: SupabaseBackend) -> None:
    """select sends filters, order and limit and returns the count."""
    with aioresponses() as m:
        m.get(
            re.compile(rf"{BASE_URL}/rest/v1/fathom_integrations.*"),
            payload=[{"id": "i1", "is_active": True}],
            headers={"Content-Range": "0-0/3"},
        )

        result = await backend.select(
            "fathom_integrations",
            filters=[eq("user_id", "u1")],
            order_by="created_at",
            limit=1,
            count=True,
        )

        ((method, url), calls), *_ = m.requests.items()

    assert result.rows == [{"id": "i1", "is_active": True}]
    assert result.count == 3
    assert method == "GET"
    assert url.path == "/rest/v1/fathom_integrations"
    assert url.query["user_id"] == "eq.u1"
    assert url.query["order"] == "created_at.desc"
    assert url.query["limit"] == "1"
    headers = calls[0].kwargs["headers"]
    assert headers["apikey"] == "anon-key"
    assert headers["Authorization"] == "Bearer user-jwt"
    assert headers["Prefer"] == "count=exact"


async def test_select_without_count(backend: SupabaseBackend) -> None:
    """select leaves count unset unless requested."""
    with aioresponses() as m:
        m.get(
            re.compile(rf"{BASE_URL}/rest/v1/leads.*"),
            payload=[],
            headers={"Content-Range": "*/0"},
        )

        result = await backend.select("leads")

    assert result.rows == []
    assert result.count is None


async def test_select_http_error(backend: SupabaseBackend) -> None:
    """select raises BackendError on a non-2xx response."""
    with aioresponses() as m:
        m.get(
            re.compile(rf"{BASE_URL}/rest/v1/hubspot_org_credentials.*"),
            status=401,
            body="permission denied for table",
        )

        with pytest.raises(BackendError, match="401 permission denied"):
            await backend.select("hubspot_org_credentials")


async def test_select_connection_error(backend: SupabaseBackend) -> None:
    """select wraps client errors in BackendError."""
    with aioresponses() as m:
        m.get(
            re.compile(rf"{BASE_URL}/rest/v1/leads.*"),
            exception=aiohttp.ClientConnectionError("connection refused"),
        )

        with pytest.raises(BackendError, match="connection refused"):
            await backend.select("leads")


async def test_insert_returns_representation(backend: SupabaseBackend) -> None:
    """insert returns the row as stored."""
    with aioresponses() as m:
        m.post(
            f"{BASE_URL}/rest/v1/integration_test_results",
            status=201,
            payload=[{"id": "r1", "test_name": "Connection Status"}],
        )

        row = await backend.insert(
            "integration_test_results", {"test_name": "Connection Status"}
        )

        (_, calls), *_ = m.requests.items()

    assert row == {"id": "r1", "test_name": "Connection Status"}
    assert calls[0].kwargs["headers"]["Prefer"] == "return=representation"


async def test_insert_failure(backend: SupabaseBackend) -> None:
    """insert raises BackendError on a rejected row."""
    with aioresponses() as m:
        m.post(
            f"{BASE_URL}/rest/v1/integration_alerts",
            status=400,
            body="invalid input",
        )

        with pytest.raises(
            BackendError, match="Failed to insert into integration_alerts"
        ):
            await backend.insert("integration_alerts", {"severity": "bogus"})


async def test_update_returns_row(backend: SupabaseBackend) -> None:
    """update patches by id and returns the updated row."""
    with aioresponses() as m:
        m.patch(
            re.compile(rf"{BASE_URL}/rest/v1/integration_alerts.*"),
            payload=[{"id": "a1", "resolved_by": "u1"}],
        )

        row = await backend.update("integration_alerts", "a1", {"resolved_by": "u1"})

        ((_, url), _), *_ = m.requests.items()

    assert row == {"id": "a1", "resolved_by": "u1"}
    assert url.query["id"] == "eq.a1"


async def test_update_missing_row(backend: SupabaseBackend) -> None:
    """update returns None when nothing matched."""
    with aioresponses() as m:
        m.patch(re.compile(rf"{BASE_URL}/rest/v1/integration_alerts.*"), payload=[])

        assert await backend.update("integration_alerts", "nope", {"x": 1}) is None


async def test_invoke_success(backend: SupabaseBackend) -> None:
    """invoke posts the body and returns parsed JSON data."""
    with aioresponses() as m:
        m.post(
            f"{BASE_URL}/functions/v1/hubspot-admin",
            payload={"pipelines": [{"id": "p1"}]},
        )

        response = await backend.invoke(
            "hubspot-admin",
            {"action": "get_pipelines", "org_id": "o1"},
            headers={"Authorization": "Bearer session"},
        )

        (_, calls), *_ = m.requests.items()

    assert response.error is None
    assert response.data == {"pipelines": [{"id": "p1"}]}
    assert calls[0].kwargs["json"] == {"action": "get_pipelines", "org_id": "o1"}
    assert calls[0].kwargs["headers"]["Authorization"] == "Bearer session"


async def test_invoke_error_status(backend: SupabaseBackend) -> None:
    """invoke returns an error response on a 4xx from the function."""
    with aioresponses() as m:
        m.post(
            f"{BASE_URL}/functions/v1/slack-list-channels",
            status=401,
            payload={"error": "invalid_auth"},
        )

        response = await backend.invoke("slack-list-channels", {"orgId": "o1"})

    assert response.data is None
    assert response.error is not None
    assert response.error.status == 401
    assert response.error_message == "401 invalid_auth"


async def test_invoke_transport_error(backend: SupabaseBackend) -> None:
    """invoke raises TransportError when the function is unreachable."""
    with aioresponses() as m:
        m.post(
            f"{BASE_URL}/functions/v1/google-drive",
            exception=aiohttp.ClientConnectionError("dns failure"),
        )

        with pytest.raises(TransportError, match="Failed to send a request"):
            await backend.invoke("google-drive", {})


async def test_get_access_token(backend: SupabaseBackend) -> None:
    """get_access_token returns the configured session token."""
    assert await backend.get_access_token() == "user-jwt"
    anonymous = SupabaseBackend(BackendConfig(url=BASE_URL, api_key="k"))
    assert await anonymous.get_access_token() is None
