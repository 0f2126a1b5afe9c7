"""Abstract base class for the persistence and edge function backend."""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field

FilterOp = Literal["eq", "neq", "gt", "gte", "lt", "lte", "is", "not_is", "ilike", "in"]


class BackendError(RuntimeError):
    """A query against the backend could not be completed."""


class TransportError(RuntimeError):
    """A remote call failed before any response was received."""


class Filter(BaseModel):
    """A single column filter applied to a select."""

    column: str
    op: FilterOp
    value: Any = None


def eq(column: str, value: Any) -> Filter:
    """Column equals value."""
    return Filter(column=column, op="eq", value=value)


def neq(column: str, value: Any) -> Filter:
    """Column differs from value."""
    return Filter(column=column, op="neq", value=value)


def gte(column: str, value: Any) -> Filter:
    """Column is greater than or equal to value."""
    return Filter(column=column, op="gte", value=value)


def lt(column: str, value: Any) -> Filter:
    """Column is less than value."""
    return Filter(column=column, op="lt", value=value)


def is_null(column: str) -> Filter:
    """Column is null."""
    return Filter(column=column, op="is", value=None)


def not_null(column: str) -> Filter:
    """Column is not null."""
    return Filter(column=column, op="not_is", value=None)


def ilike(column: str, pattern: str) -> Filter:
    """Case-insensitive match with % wildcards."""
    return Filter(column=column, op="ilike", value=pattern)


class SelectResult(BaseModel):
    """Rows returned by a select, plus the exact count when requested."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    count: int | None = None

    def first(self) -> dict[str, Any] | None:
        """Return the first row, or None when empty."""
        return self.rows[0] if self.rows else None


class FunctionError(BaseModel):
    """Error returned by an edge function that did respond."""

    message: str = ""
    status: int | None = None
    name: str | None = None


class FunctionResponse(BaseModel):
    """Edge function response: data on success, error otherwise."""

    data: Any = None
    error: FunctionError | None = None

    @property
    def error_message(self) -> str:
        """Return the error message, or an empty string."""
        return self.error.message if self.error else ""


class Backend(ABC):
    """Abstract backend offering filtered select, insert, update and invoke."""

    @abstractmethod
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
        """Select rows from a table.

        Args:
            table: Table or view name
            columns: Comma separated column list
            filters: Filters combined with AND
            order_by: Column to order by
            descending: Order direction when order_by is set
            limit: Maximum number of rows
            count: Whether to compute the exact number of matching rows

        Returns:
            Matching rows and, when requested, their count

        Raises:
            BackendError: If the query fails

        """

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored.

        Raises:
            BackendError: If the insert fails

        """

    @abstractmethod
    async def update(
        self, table: str, row_id: str, values: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Update the row with the given id and return it, or None if absent.

        Raises:
            BackendError: If the update fails

        """

    @abstractmethod
    async def invoke(
        self,
        function_name: str,
        body: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> FunctionResponse:
        """Invoke an edge function.

        Returns:
            Response carrying data, or an error when the function responded
            with a failure

        Raises:
            TransportError: If the function could not be reached

        """

    @abstractmethod
    async def get_access_token(self) -> str | None:
        """Return the current session access token, or None without a session."""

    async def select_one(
        self, table: str, *, columns: str = "*", filters: Sequence[Filter] = ()
    ) -> dict[str, Any] | None:
        """Select at most one row."""
        result = await self.select(table, columns=columns, filters=filters, limit=1)
        return result.first()

    async def invoke_authenticated(
        self, function_name: str, body: Mapping[str, Any] | None = None
    ) -> FunctionResponse | None:
        """Invoke a function with the session bearer token.

        Returns:
            The function response, or None when there is no active session

        """
        token = await self.get_access_token()
        if not token:
            return None
        return await self.invoke(
            function_name, body, headers={"Authorization": f"Bearer {token}"}
        )
