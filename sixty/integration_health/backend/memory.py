"""In-process backend keeping tables in memory."""

import re
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sixty.integration_health.backend.base import (
    Backend,
    BackendError,
    Filter,
    FunctionResponse,
    SelectResult,
)
from sixty.integration_health.store import LATEST_RESULTS_VIEW, RESULTS_TABLE

FunctionHandler = Callable[[dict[str, Any]], Any]


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _comparable(value: Any) -> Any:
    """Parse ISO timestamps so that they compare chronologically."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _ilike(value: Any, pattern: str) -> bool:
    if value is None:
        return False
    regex = ".*".join(re.escape(part) for part in pattern.split("%"))
    return re.fullmatch(regex, str(value), flags=re.IGNORECASE | re.DOTALL) is not None


def _matches(row: Mapping[str, Any], flt: Filter) -> bool:  # noqa: C901
    value = row.get(flt.column)
    if flt.op == "is":
        return value is None if flt.value is None else value == flt.value
    if flt.op == "not_is":
        return value is not flt.value
    if flt.op == "ilike":
        return _ilike(value, str(flt.value))
    if flt.op == "in":
        return value in flt.value
    if flt.op == "eq":
        return value == flt.value
    if flt.op == "neq":
        return value != flt.value
    if value is None:
        return False

    left, right = _comparable(value), _comparable(flt.value)
    try:
        if flt.op == "gt":
            return left > right
        if flt.op == "gte":
            return left >= right
        if flt.op == "lt":
            return left < right
        if flt.op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _order(
    rows: Sequence[dict[str, Any]], column: str, descending: bool
) -> list[dict[str, Any]]:
    # ties keep insertion order, so descending puts later writes first
    present = [(i, r) for i, r in enumerate(rows) if r.get(column) is not None]
    missing = [r for r in rows if r.get(column) is None]
    present.sort(
        key=lambda item: (_comparable(item[1][column]), item[0]), reverse=descending
    )
    return [r for _, r in present] + missing


@dataclass(frozen=True)
class DistinctOnView:
    """Read-only view keeping the newest source row per key."""

    source: str
    distinct_on: tuple[str, ...]
    order_by: str = "created_at"

    def rows(self, source_rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return the first row per key in descending order_by order."""
        latest: dict[tuple[Any, ...], dict[str, Any]] = {}
        for row in _order(source_rows, self.order_by, descending=True):
            latest.setdefault(tuple(row.get(c) for c in self.distinct_on), row)
        return list(latest.values())


def _project(row: Mapping[str, Any], columns: str) -> dict[str, Any]:
    if columns.strip() == "*":
        return dict(row)
    names = [c.strip() for c in columns.split(",") if c.strip()]
    return {name: row.get(name) for name in names}


class MemoryBackend(Backend):
    """Backend keeping rows in dictionaries, with registered edge functions."""

    def __init__(self, access_token: str | None = "memory-session") -> None:
        """Initialize an empty backend."""
        self.access_token = access_token
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.functions: dict[str, FunctionHandler] = {}
        self.invocations: list[tuple[str, dict[str, Any]]] = []
        self._failing_tables: dict[str, str] = {}
        self.views: dict[str, DistinctOnView] = {
            LATEST_RESULTS_VIEW: DistinctOnView(
                RESULTS_TABLE, ("integration_name", "test_name")
            )
        }

    def seed(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        """Append rows to a table without touching ids or timestamps."""
        self.tables.setdefault(table, []).extend(dict(r) for r in rows)

    def fail_table(self, table: str, message: str = "permission denied") -> None:
        """Make every operation on a table raise BackendError."""
        self._failing_tables[table] = message

    def register_function(self, name: str, handler: FunctionHandler) -> None:
        """Register an edge function handler.

        The handler receives the request body and may return a
        FunctionResponse, plain data, or an awaitable of either. Raising
        from the handler simulates a transport failure.
        """
        self.functions[name] = handler

    def _check_table(self, table: str) -> None:
        if table in self._failing_tables:
            raise BackendError(f"{table}: {self._failing_tables[table]}")

    def _rows(self, table: str) -> list[dict[str, Any]]:
        self._check_table(table)
        view = self.views.get(table)
        if view is None:
            return self.tables.get(table, [])
        self._check_table(view.source)
        return view.rows(self.tables.get(view.source, []))

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
        """Select rows from an in-memory table."""
        rows = [r for r in self._rows(table) if all(_matches(r, f) for f in filters)]
        total = len(rows)

        if order_by:
            rows = _order(rows, order_by, descending)

        if limit is not None:
            rows = rows[:limit]

        return SelectResult(
            rows=[_project(r, columns) for r in rows],
            count=total if count else None,
        )

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a row, filling id and created_at when absent."""
        self._check_table(table)
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", utc_now_iso())
        self.tables.setdefault(table, []).append(stored)
        return dict(stored)

    async def update(
        self, table: str, row_id: str, values: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Update a row by id."""
        self._check_table(table)
        for row in self.tables.get(table, []):
            if row.get("id") == row_id:
                row.update(values)
                return dict(row)
        return None

    async def invoke(
        self,
        function_name: str,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> FunctionResponse:
        """Invoke a registered function handler."""
        payload = dict(body or {})
        self.invocations.append((function_name, payload))

        handler = self.functions.get(function_name)
        if handler is None:
            return FunctionResponse(
                error={
                    "message": f"404 Function not found: {function_name}",
                    "status": 404,
                }
            )

        result = handler(payload)
        if isinstance(result, Awaitable):
            result = await result
        if isinstance(result, FunctionResponse):
            return result
        return FunctionResponse(data=result)

    async def get_access_token(self) -> str | None:
        """Return the configured session token."""
        return self.access_token
