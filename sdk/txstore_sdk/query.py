"""
Structured queries for TxStore SDK.

This module provides:
- PropertyFilter: Predicate on a single property (=, <, <=, >, >=)
- Query / QueryBuilder: Kind, ancestor, filters, order and limit
- QueryResults: Lazy, batched, non-restartable async result sequence

Filters are combined with AND. Queries are evaluated by the server
against a snapshot; results are pulled one batch at a time using an
opaque cursor.

Example:
    >>> query = (
    ...     Query.builder()
    ...     .kind("MyKind")
    ...     .filter(PropertyFilter.has_ancestor(parent_key))
    ...     .filter(PropertyFilter.gt("priority", 2))
    ...     .build()
    ... )
    >>> async for entity in txn.run(query):
    ...     print(entity.key)
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .entity import Entity, _check_value, encode_value
from .errors import ValidationError
from .keys import Key

logger = logging.getLogger(__name__)


class Operator(Enum):
    """Property filter operators."""

    EQUAL = "="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="


@dataclass(frozen=True)
class PropertyFilter:
    """Predicate on one property.

    Attributes:
        property: Property name
        operator: Comparison operator
        value: Value compared against
    """

    property: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.property:
            raise ValidationError("Filter property name is required")
        object.__setattr__(self, "value", _check_value(self.property, self.value))

    @classmethod
    def eq(cls, property: str, value: Any) -> PropertyFilter:
        return cls(property, Operator.EQUAL, value)

    @classmethod
    def lt(cls, property: str, value: Any) -> PropertyFilter:
        return cls(property, Operator.LESS_THAN, value)

    @classmethod
    def le(cls, property: str, value: Any) -> PropertyFilter:
        return cls(property, Operator.LESS_THAN_OR_EQUAL, value)

    @classmethod
    def gt(cls, property: str, value: Any) -> PropertyFilter:
        return cls(property, Operator.GREATER_THAN, value)

    @classmethod
    def ge(cls, property: str, value: Any) -> PropertyFilter:
        return cls(property, Operator.GREATER_THAN_OR_EQUAL, value)

    @staticmethod
    def has_ancestor(key: Key) -> AncestorFilter:
        return AncestorFilter(key)

    def to_wire(self) -> dict[str, Any]:
        return {
            "property": self.property,
            "op": self.operator.value,
            "value": encode_value(self.value),
        }


@dataclass(frozen=True)
class AncestorFilter:
    """Restricts results to descendants of a key (inclusive)."""

    ancestor: Key

    def __post_init__(self) -> None:
        if not self.ancestor.is_complete:
            raise ValidationError(f"Ancestor key {self.ancestor} must be complete")


@dataclass(frozen=True)
class OrderBy:
    """Sort order on one property."""

    property: str
    descending: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {"property": self.property, "direction": "DESC" if self.descending else "ASC"}


@dataclass(frozen=True)
class Query:
    """Immutable structured entity query.

    Attributes:
        kind: Entity kind to scan (required)
        ancestor: Optional ancestor restriction
        filters: Property predicates, ANDed
        orders: Sort orders; key order is the final tie-breaker
        limit: Maximum number of results, None for unlimited
        namespace: Namespace to query, None for the client default
    """

    kind: str
    ancestor: Key | None = None
    filters: tuple[PropertyFilter, ...] = ()
    orders: tuple[OrderBy, ...] = ()
    limit: int | None = None
    namespace: str | None = None

    def __post_init__(self) -> None:
        if not self.kind:
            raise ValidationError("Query kind is required", field_name="kind")
        if self.limit is not None and self.limit < 0:
            raise ValidationError(f"Query limit must be >= 0, got {self.limit}", field_name="limit")

    @staticmethod
    def builder() -> QueryBuilder:
        return QueryBuilder()

    def to_wire(self, default_namespace: str = "") -> dict[str, Any]:
        """Convert to wire dictionary."""
        namespace = self.namespace if self.namespace is not None else default_namespace
        if self.ancestor is not None:
            namespace = self.ancestor.namespace
        result: dict[str, Any] = {
            "kind": self.kind,
            "namespace": namespace,
            "filters": [f.to_wire() for f in self.filters],
            "orders": [o.to_wire() for o in self.orders],
        }
        if self.ancestor is not None:
            result["ancestor"] = self.ancestor.to_wire()
        if self.limit is not None:
            result["limit"] = str(self.limit)
        return result


class QueryBuilder:
    """Builder for Query."""

    def __init__(self) -> None:
        self._kind: str | None = None
        self._ancestor: Key | None = None
        self._filters: list[PropertyFilter] = []
        self._orders: list[OrderBy] = []
        self._limit: int | None = None
        self._namespace: str | None = None

    def kind(self, kind: str) -> QueryBuilder:
        self._kind = kind
        return self

    def namespace(self, namespace: str) -> QueryBuilder:
        self._namespace = namespace
        return self

    def filter(self, *filters: PropertyFilter | AncestorFilter) -> QueryBuilder:
        """Add filters; an AncestorFilter sets the ancestor restriction."""
        for f in filters:
            if isinstance(f, AncestorFilter):
                if self._ancestor is not None:
                    raise ValidationError("Query can have at most one ancestor filter")
                self._ancestor = f.ancestor
            elif isinstance(f, PropertyFilter):
                self._filters.append(f)
            else:
                raise ValidationError(f"Unsupported filter type {type(f).__name__}")
        return self

    def order_by(self, property: str, descending: bool = False) -> QueryBuilder:
        self._orders.append(OrderBy(property, descending))
        return self

    def limit(self, limit: int | None) -> QueryBuilder:
        self._limit = limit
        return self

    def build(self) -> Query:
        if self._kind is None:
            raise ValidationError("Query kind is required", field_name="kind")
        return Query(
            kind=self._kind,
            ancestor=self._ancestor,
            filters=tuple(self._filters),
            orders=tuple(self._orders),
            limit=self._limit,
            namespace=self._namespace,
        )


BatchFetcher = Callable[[str | None], Awaitable[dict[str, Any]]]


class QueryResults:
    """Lazy async sequence of query results.

    Entities are requested from the server one batch at a time as the
    caller iterates. The sequence is finite and cannot be restarted:
    iterating again after exhaustion yields nothing.

    Example:
        >>> results = txn.run(query)
        >>> async for entity in results:
        ...     handle(entity)
        >>> cursor = results.cursor_after()
    """

    def __init__(self, fetch_batch: BatchFetcher, start_cursor: str | None = None) -> None:
        """Initialize results.

        Args:
            fetch_batch: Coroutine function taking a cursor and returning a
                RunQuery response dict
            start_cursor: Cursor to resume from
        """
        self._fetch_batch = fetch_batch
        self._buffer: deque[tuple[Entity, str | None]] = deque()
        self._next_cursor = start_cursor
        self._cursor_after = start_cursor
        self._more_results = True
        self._batches = 0

    def __aiter__(self) -> QueryResults:
        return self

    async def __anext__(self) -> Entity:
        while not self._buffer:
            if not self._more_results:
                raise StopAsyncIteration
            await self._load_batch()
        entity, cursor = self._buffer.popleft()
        if cursor is not None:
            self._cursor_after = cursor
        return entity

    async def _load_batch(self) -> None:
        response = await self._fetch_batch(self._next_cursor)
        self._batches += 1
        entities = [Entity.from_wire(e) for e in response.get("entities", [])]
        end_cursor = response.get("end_cursor") or None
        self._more_results = bool(response.get("more_results")) and bool(entities)
        for index, entity in enumerate(entities):
            # Only the last entity of a batch carries a resumable cursor
            cursor = end_cursor if index == len(entities) - 1 else None
            self._buffer.append((entity, cursor))
        if not entities:
            self._cursor_after = end_cursor or self._cursor_after
        self._next_cursor = end_cursor
        logger.debug(
            "Loaded query batch",
            extra={"batch": self._batches, "size": len(entities), "more": self._more_results},
        )

    async def to_list(self) -> list[Entity]:
        """Drain the remaining results into a list."""
        return [entity async for entity in self]

    def cursor_after(self) -> str | None:
        """Cursor positioned after the last fully consumed batch."""
        return self._cursor_after
