"""Supabase backend: PostgREST tables and edge functions over HTTP."""

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    Filter,
    FunctionError,
    FunctionResponse,
    SelectResult,
    TransportError,
)
from sixty.integration_health.models.settings import BackendConfig

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_filter(flt: Filter) -> tuple[str, str]:
    """Encode a filter as a PostgREST query parameter."""
    if flt.op == "is":
        return flt.column, f"is.{_format_value(flt.value)}"
    if flt.op == "not_is":
        return flt.column, f"not.is.{_format_value(flt.value)}"
    if flt.op == "ilike":
        return flt.column, f"ilike.{flt.value}"
    if flt.op == "in":
        values = ",".join(_format_value(v) for v in flt.value)
        return flt.column, f"in.({values})"
    return flt.column, f"{flt.op}.{_format_value(flt.value)}"


def parse_content_range(header: str | None) -> int | None:
    """Extract the total from a Content-Range header such as '0-9/42'."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class SupabaseBackend(Backend):
    """Backend talking to a Supabase project."""

    def __init__(self, config: BackendConfig) -> None:
        """Initialize Supabase backend with configuration."""
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self) -> dict[str, str]:
        bearer = self.config.access_token or self.config.api_key
        return {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
        count: bool = False,
    ) -> SelectResult:
        """Select rows through PostgREST."""
        params: list[tuple[str, str]] = [("select", columns)]
        params.extend(encode_filter(f) for f in filters)
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))

        headers = self._headers()
        if count:
            headers["Prefer"] = "count=exact"

        url = f"{self.base_url}/rest/v1/{table}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers=headers, params=params) as response:
                    if response.status not in (200, 206):
                        text = await response.text()
                        raise BackendError(
                            f"Failed to select from {table}: {response.status} {text}"
                        )
                    rows = await response.json()
                    total = parse_content_range(response.headers.get("Content-Range"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendError(f"Failed to select from {table}: {e}") from e

        return SelectResult(
            rows=rows if isinstance(rows, list) else [],
            count=total if count else None,
        )

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a row and return the stored representation."""
        headers = self._headers()
        headers["Prefer"] = "return=representation"

        url = f"{self.base_url}/rest/v1/{table}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url, headers=headers, data=json.dumps(dict(row), default=str)
                ) as response:
                    if response.status not in (200, 201):
                        text = await response.text()
                        raise BackendError(
                            f"Failed to insert into {table}: {response.status} {text}"
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendError(f"Failed to insert into {table}: {e}") from e

        if isinstance(data, list) and data:
            return dict(data[0])
        return dict(row)

    async def update(
        self, table: str, row_id: str, values: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Update a row by id and return the stored representation."""
        headers = self._headers()
        headers["Prefer"] = "return=representation"

        url = f"{self.base_url}/rest/v1/{table}"
        params = {"id": f"eq.{row_id}"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.patch(
                    url,
                    headers=headers,
                    params=params,
                    data=json.dumps(dict(values), default=str),
                ) as response:
                    if response.status not in (200, 204):
                        text = await response.text()
                        raise BackendError(
                            f"Failed to update {table}: {response.status} {text}"
                        )
                    data = await response.json() if response.status == 200 else []
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendError(f"Failed to update {table}: {e}") from e

        if isinstance(data, list) and data:
            return dict(data[0])
        return None

    async def invoke(
        self,
        function_name: str,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> FunctionResponse:
        """Invoke an edge function."""
        request_headers = self._headers()
        request_headers.update(headers or {})

        url = f"{self.base_url}/functions/v1/{function_name}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url, headers=request_headers, json=dict(body or {})
                ) as response:
                    text = await response.text()
                    if response.status >= 400:
                        logger.debug(
                            f"Edge function {function_name} returned {response.status}"
                        )
                        return FunctionResponse(
                            error=FunctionError(
                                message=f"{response.status} {_error_text(text)}",
                                status=response.status,
                                name="FunctionsHttpError",
                            )
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Failed to send a request to the Edge Function: {e}"
            ) from e

        if not text:
            return FunctionResponse(data=None)
        try:
            return FunctionResponse(data=json.loads(text))
        except json.JSONDecodeError:
            return FunctionResponse(data=text)

    async def get_access_token(self) -> str | None:
        """Return the configured user session token."""
        return self.config.access_token


def _error_text(text: str) -> str:
    """Prefer the 'error' or 'message' field of a JSON error body."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
    return text
