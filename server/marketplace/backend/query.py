"""Structured query builder for backend platform tables.

A ``Query`` records what to do against one table (action, filters, ordering,
limit and expected cardinality) without knowing how it is transported. The
owning backend decides how to run it: ``BackendClient`` translates it to
PostgREST parameters, test fakes evaluate it over in-memory rows.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .client import Backend


FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "is", "ilike")


@dataclass(frozen=True)
class Filter:
    """One column predicate. ``negate`` wraps the operator in ``not.``."""

    column: str
    operator: str
    value: Any
    negate: bool = False


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


@dataclass
class Query:
    """Builder for a single table operation.

    Builder methods return ``self`` so calls chain the way platform client
    libraries read::

        await backend.table("refunds").select().eq("booking_id", booking_id).maybe_single().execute()
    """

    table: str
    backend: Optional["Backend"] = None
    action: str = "select"
    columns: str = "*"
    payload: Any = None
    filters: list[Filter] = field(default_factory=list)
    orders: list[Order] = field(default_factory=list)
    limit_count: Optional[int] = None
    cardinality: Optional[str] = None
    returning: bool = True

    # Actions

    def select(self, columns: str = "*") -> "Query":
        self.columns = columns
        if self.action != "select":
            # insert/update/delete followed by select() asks for the affected rows back
            self.returning = True
        return self

    def insert(self, rows: dict[str, Any] | list[dict[str, Any]]) -> "Query":
        self.action = "insert"
        self.payload = rows
        return self

    def update(self, values: dict[str, Any]) -> "Query":
        self.action = "update"
        self.payload = values
        return self

    def delete(self) -> "Query":
        self.action = "delete"
        return self

    # Filters

    def _filter(self, column: str, operator: str, value: Any, negate: bool = False) -> "Query":
        if operator not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {operator}")
        self.filters.append(Filter(column, operator, value, negate))
        return self

    def eq(self, column: str, value: Any) -> "Query":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "Query":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "Query":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "Query":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "Query":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "Query":
        return self._filter(column, "lte", value)

    def in_(self, column: str, values: list[Any]) -> "Query":
        return self._filter(column, "in", list(values))

    def is_(self, column: str, value: Optional[bool]) -> "Query":
        return self._filter(column, "is", value)

    def ilike(self, column: str, pattern: str) -> "Query":
        return self._filter(column, "ilike", pattern)

    def not_(self, column: str, operator: str, value: Any) -> "Query":
        return self._filter(column, operator, value, negate=True)

    # Modifiers

    def order(self, column: str, ascending: bool = True) -> "Query":
        self.orders.append(Order(column, ascending))
        return self

    def limit(self, count: int) -> "Query":
        self.limit_count = count
        return self

    def single(self) -> "Query":
        """Expect exactly one row; anything else is a cardinality error."""
        self.cardinality = "single"
        return self

    def maybe_single(self) -> "Query":
        """Expect zero or one row; zero yields ``None``."""
        self.cardinality = "maybe_single"
        return self

    async def execute(self) -> Any:
        """Run the query through the owning backend and return its data."""
        if self.backend is None:
            raise RuntimeError(f"Query on '{self.table}' is not bound to a backend")
        return await self.backend.execute_query(self)

    @property
    def operation(self) -> str:
        """Short label used for logging and metrics."""
        return f"{self.action}:{self.table}"
