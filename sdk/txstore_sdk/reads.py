"""
Read operations for TxStore SDK.

This module provides the read surface shared by transactions and the
client's non-transactional API:
- Reader.get: Single key lookup
- Reader.get_many: Lazy batched lookup, found entities only, server order
- Reader.fetch: Batched lookup, input order, None for missing keys
- Reader.run: Lazy batched query

get_many and fetch differ on purpose:
    get_many yields only found entities, in the order the server
    returns them, which is NOT the request order. fetch returns a list
    aligned with its arguments, with None where a key was not found.

Invariants:
    - Lookups only accept complete keys from the reader's project
    - Deferred keys are re-requested until every key is resolved
    - Every RPC goes through _before_read, so subclasses can refuse reads
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .entity import Entity
from .errors import ValidationError
from .keys import Key, keys_from_wire
from .query import Query, QueryResults
from .transport import LOOKUP, RUN_QUERY, Transport

logger = logging.getLogger(__name__)

LookupFn = Callable[[list[Key]], Awaitable[dict[str, Any]]]


class LookupResults:
    """Lazy async sequence of entities found by a batched lookup.

    Nothing is requested until iteration starts. Missing keys are
    skipped; deferred keys are requested again once the current batch
    is drained. Order follows the server, not the request.
    """

    def __init__(self, lookup: LookupFn, keys: Sequence[Key]) -> None:
        self._lookup = lookup
        self._pending: list[Key] = list(dict.fromkeys(keys))
        self._buffer: deque[Entity] = deque()
        self._missing: list[Key] = []

    def __aiter__(self) -> LookupResults:
        return self

    async def __anext__(self) -> Entity:
        while not self._buffer:
            if not self._pending:
                raise StopAsyncIteration
            response = await self._lookup(self._pending)
            self._buffer.extend(Entity.from_wire(e) for e in response.get("found", []))
            self._missing.extend(keys_from_wire(response.get("missing", [])))
            self._pending = keys_from_wire(response.get("deferred", []))
        return self._buffer.popleft()

    @property
    def missing(self) -> list[Key]:
        """Keys reported missing so far."""
        return list(self._missing)

    async def to_list(self) -> list[Entity]:
        return [entity async for entity in self]


class Reader:
    """Read operations against one project.

    Subclasses add a transaction id to requests via _read_options and
    may refuse reads via _before_read.
    """

    def __init__(self, transport: Transport, project_id: str, namespace: str = "") -> None:
        self._transport = transport
        self._project_id = project_id
        self._namespace = namespace

    @property
    def project_id(self) -> str:
        return self._project_id

    def _read_options(self) -> dict[str, Any]:
        return {}

    def _before_read(self, operation: str) -> None:
        """Hook run before every read RPC."""

    def _check_keys(self, keys: Sequence[Key]) -> None:
        if not keys:
            raise ValidationError("At least one key is required")
        for key in keys:
            if not isinstance(key, Key):
                raise ValidationError(f"Expected Key, got {type(key).__name__}")
            if not key.is_complete:
                raise ValidationError(f"Cannot look up incomplete key {key}")
            if key.project_id != self._project_id:
                raise ValidationError(
                    f"Key {key} belongs to project '{key.project_id}', "
                    f"expected '{self._project_id}'"
                )

    async def _lookup(self, keys: list[Key]) -> dict[str, Any]:
        self._before_read("lookup")
        request = {
            "project_id": self._project_id,
            "keys": [key.to_wire() for key in keys],
            **self._read_options(),
        }
        response = await self._transport.call(LOOKUP, request)
        logger.debug(
            "Lookup completed",
            extra={
                "requested": len(keys),
                "found": len(response.get("found", [])),
                "deferred": len(response.get("deferred", [])),
            },
        )
        return response

    async def get(self, key: Key) -> Entity | None:
        """Get one entity.

        Args:
            key: Complete key

        Returns:
            Entity if found, None otherwise
        """
        results = await self.fetch(key)
        return results[0]

    def get_many(self, *keys: Key) -> LookupResults:
        """Get several entities lazily.

        Missing keys are omitted and order is not the request order.
        Use fetch() when positions matter.

        Returns:
            Async iterator over found entities
        """
        self._before_read("get_many")
        self._check_keys(keys)
        return LookupResults(self._lookup, keys)

    async def fetch(self, *keys: Key) -> list[Entity | None]:
        """Get several entities, aligned with the arguments.

        Returns:
            List with one slot per key, None where not found
        """
        self._before_read("fetch")
        self._check_keys(keys)
        found: dict[Key, Entity] = {}
        async for entity in LookupResults(self._lookup, keys):
            found[entity.key] = entity
        return [found.get(key) for key in keys]

    def run(
        self,
        query: Query,
        *,
        start_cursor: str | None = None,
        batch_size: int | None = None,
    ) -> QueryResults:
        """Run a structured query.

        Args:
            query: Query to evaluate
            start_cursor: Cursor from a previous QueryResults.cursor_after()
            batch_size: Entities per RunQuery call, server default if None

        Returns:
            Lazy, non-restartable async sequence of entities
        """
        self._before_read("run")
        if not isinstance(query, Query):
            raise ValidationError(f"Expected Query, got {type(query).__name__}")
        if query.ancestor is not None and query.ancestor.project_id != self._project_id:
            raise ValidationError(f"Ancestor {query.ancestor} belongs to another project")
        wire_query = query.to_wire(self._namespace)

        async def fetch_batch(cursor: str | None) -> dict[str, Any]:
            self._before_read("run")
            request: dict[str, Any] = {
                "project_id": self._project_id,
                "query": wire_query,
                **self._read_options(),
            }
            if cursor:
                request["start_cursor"] = cursor
            if batch_size:
                request["batch_size"] = str(batch_size)
            return await self._transport.call(RUN_QUERY, request)

        return QueryResults(fetch_batch, start_cursor=start_cursor)
