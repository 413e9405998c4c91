"""Access to the backend platform (tables, stored procedures, functions)."""

from .client import Backend, BackendClient
from .query import Query

__all__ = ["Backend", "BackendClient", "Query"]
