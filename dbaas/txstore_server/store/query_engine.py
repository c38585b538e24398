"""
In-process evaluation of structured queries.

The store narrows candidates by kind, namespace, ancestor and snapshot
version in SQL; property filters and sort orders are applied here on
wire-encoded property values.

Value ordering across types (lowest first):
    null, numbers (integer and double), timestamp, boolean, string,
    blob, key

Semantics:
    - Entities missing a filtered or ordered property never match
    - Equality matches across integer/double; inequalities only match
      values of the same type class
    - Array properties match if any element matches; ordering uses the
      smallest element ascending and the largest descending
    - Key order is the final tie-breaker
"""

from __future__ import annotations

import base64
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ..errors import InvalidRequestError
from .keys import StoreKey

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": lambda a, b: a == b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def comparable(value: dict[str, Any]) -> tuple[int, Any]:
    """Convert a wire value into an orderable (rank, value) pair."""
    if "null_value" in value:
        return (0, 0)
    if "integer_value" in value:
        return (1, int(value["integer_value"]))
    if "double_value" in value:
        return (1, float(value["double_value"]))
    if "timestamp_value" in value:
        return (2, datetime.fromisoformat(value["timestamp_value"]))
    if "boolean_value" in value:
        return (3, bool(value["boolean_value"]))
    if "string_value" in value:
        return (4, value["string_value"])
    if "blob_value" in value:
        return (5, base64.b64decode(value["blob_value"]))
    if "key_value" in value:
        return (6, StoreKey.from_wire(value["key_value"]).encoded_path)
    raise InvalidRequestError(f"Unsupported value in query: {sorted(value)}")


def _elements(value: dict[str, Any]) -> list[tuple[int, Any]]:
    if "array_value" in value:
        return [comparable(v) for v in (value["array_value"] or {}).get("values", [])]
    return [comparable(value)]


@dataclass(frozen=True)
class PropertyPredicate:
    property: str
    op: str
    value: tuple[int, Any]

    def matches(self, properties: dict[str, Any]) -> bool:
        if self.property not in properties:
            return False
        compare = _OPERATORS[self.op]
        for rank, item in _elements(properties[self.property]):
            if rank != self.value[0]:
                continue
            if compare(item, self.value[1]):
                return True
        return False


@dataclass(frozen=True)
class SortOrder:
    property: str
    descending: bool


@dataclass
class Candidate:
    """One entity visible at the snapshot."""

    key_path: str
    key: dict[str, Any]
    properties: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {"key": self.key, "properties": self.properties}


@dataclass(frozen=True)
class QueryPlan:
    """Validated query.

    Attributes:
        kind: Kind to scan
        namespace: Namespace to scan
        ancestor: Optional ancestor key
        predicates: Property predicates, ANDed
        orders: Sort orders
        limit: Max results, None for unlimited
    """

    kind: str
    namespace: str
    ancestor: StoreKey | None
    predicates: tuple[PropertyPredicate, ...]
    orders: tuple[SortOrder, ...]
    limit: int | None

    @classmethod
    def from_wire(cls, data: Any, project_id: str) -> QueryPlan:
        """Validate a wire query.

        Raises:
            InvalidRequestError: If the query is malformed
        """
        if not isinstance(data, dict) or not data.get("kind"):
            raise InvalidRequestError("Query kind is required")

        ancestor = None
        if data.get("ancestor"):
            ancestor = StoreKey.from_wire(data["ancestor"], project_id)
            if not ancestor.is_complete:
                raise InvalidRequestError("Ancestor key must be complete")

        predicates = []
        for f in data.get("filters") or []:
            op = f.get("op")
            if op not in _OPERATORS:
                raise InvalidRequestError(f"Unsupported filter operator {op!r}")
            if not f.get("property") or not isinstance(f.get("value"), dict):
                raise InvalidRequestError("Filter property and value are required")
            predicates.append(PropertyPredicate(f["property"], op, comparable(f["value"])))

        orders = []
        for o in data.get("orders") or []:
            if not o.get("property"):
                raise InvalidRequestError("Order property is required")
            direction = o.get("direction", "ASC")
            if direction not in ("ASC", "DESC"):
                raise InvalidRequestError(f"Invalid order direction {direction!r}")
            orders.append(SortOrder(o["property"], direction == "DESC"))

        limit = None
        if data.get("limit") not in (None, ""):
            limit = int(data["limit"])
            if limit < 0:
                raise InvalidRequestError("Query limit must be >= 0")

        namespace = data.get("namespace") or ""
        if ancestor is not None:
            namespace = ancestor.namespace

        return cls(
            kind=data["kind"],
            namespace=namespace,
            ancestor=ancestor,
            predicates=tuple(predicates),
            orders=tuple(orders),
            limit=limit,
        )

    def evaluate(self, candidates: list[Candidate]) -> list[Candidate]:
        """Filter and sort candidates; the limit is applied by the caller."""
        matched = [c for c in candidates if all(p.matches(c.properties) for p in self.predicates)]
        if not self.orders:
            return sorted(matched, key=lambda c: c.key_path)
        ordered = [c for c in matched if all(o.property in c.properties for o in self.orders)]
        return sorted(ordered, key=functools.cmp_to_key(self._compare))

    def _compare(self, a: Candidate, b: Candidate) -> int:
        for order in self.orders:
            left = _sort_value(a.properties[order.property], order.descending)
            right = _sort_value(b.properties[order.property], order.descending)
            if left != right:
                result = -1 if left < right else 1
                return -result if order.descending else result
        if a.key_path == b.key_path:
            return 0
        return -1 if a.key_path < b.key_path else 1


def _sort_value(value: dict[str, Any], descending: bool) -> tuple[int, Any]:
    elements = _elements(value)
    if not elements:
        return (0, 0)
    return max(elements) if descending else min(elements)
