"""
TxStore Client for Python SDK.

This module provides the main client interface:
- TxStoreClient: Connection to a TxStore server
- transaction(): Scoped transaction that always releases on exit
- run_in_transaction(): Re-run a unit of work on commit conflicts

Example:
    >>> async with TxStoreClient("localhost:50051", "my-project") as db:
    ...     key = db.key_factory().kind("MyKind").new_key("my_key_name")
    ...     async with db.transaction() as txn:
    ...         entity = await txn.get(key)
    ...         txn.put(Entity.builder(key).set("count", 1).build())
    ...         await txn.commit()

Invariants:
    - A transaction leaving transaction() is never left ACTIVE
    - Only ConflictError triggers a retry in run_in_transaction()
    - Non-transactional put/delete commit as one atomic batch each
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from ._grpc_client import GrpcClient
from .entity import Entity
from .errors import ConflictError, ConnectionError, ValidationError
from .keys import Key, KeyFactory, keys_from_wire
from .query import Query, QueryResults
from .reads import LookupResults, Reader
from .settings import ClientSettings
from .transaction import (
    CommitResponse,
    Transaction,
    commit_response_from_wire,
    mutations_to_wire,
)
from .transport import ALLOCATE_IDS, BEGIN_TRANSACTION, COMMIT, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TxStoreClient:
    """Client for connecting to a TxStore server.

    Provides a clean Python API for transactional entity storage.
    Handles connection management and exposes high-level operations.

    Example:
        >>> async with TxStoreClient("localhost:50051", "demo") as db:
        ...     txn = await db.new_transaction()
    """

    def __init__(
        self,
        address: str = "localhost:50051",
        project_id: str = "default",
        *,
        namespace: str = "",
        transport: Transport | None = None,
        secure: bool = False,
        timeout: float | None = 30.0,
    ) -> None:
        """Initialize client.

        Args:
            address: Server address (host:port or just host)
            project_id: Project every key belongs to
            namespace: Default namespace for keys and queries
            transport: Custom transport (tests); gRPC is used if None
            secure: Whether to use TLS
            timeout: Per-RPC deadline in seconds
        """
        if not project_id:
            raise ValidationError("project_id is required", field_name="project_id")

        if transport is None:
            if ":" in address:
                host, port_str = address.rsplit(":", 1)
                port = int(port_str)
            else:
                host = address
                port = 50051  # Default gRPC port
            transport = GrpcClient(host=host, port=port, secure=secure, timeout=timeout)

        self._address = address
        self._transport = transport
        self._project_id = project_id
        self._namespace = namespace
        self._reader = Reader(transport, project_id, namespace)
        self._connected = False

    @classmethod
    def from_settings(cls, settings: ClientSettings | None = None) -> TxStoreClient:
        """Create a client from ClientSettings (TXSTORE_* env vars)."""
        settings = settings or ClientSettings()
        return cls(
            settings.address,
            settings.project_id,
            namespace=settings.namespace,
            secure=settings.secure,
            timeout=settings.timeout_seconds,
        )

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def namespace(self) -> str:
        return self._namespace

    async def connect(self) -> None:
        """Connect to the server."""
        if self._connected:
            return

        try:
            await self._transport.connect()
            self._connected = True
        except Exception as e:
            raise ConnectionError(f"Failed to connect: {e}", address=self._address) from e

    async def close(self) -> None:
        """Close the connection."""
        if self._connected:
            await self._transport.close()
            self._connected = False

    async def __aenter__(self) -> TxStoreClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def key_factory(self) -> KeyFactory:
        """Key factory bound to this client's project and namespace."""
        return KeyFactory(self._project_id, self._namespace)

    # Transactions

    async def new_transaction(self) -> Transaction:
        """Begin a transaction.

        The read snapshot is fixed by the server at the first read.

        Returns:
            ACTIVE Transaction handle
        """
        response = await self._transport.call(
            BEGIN_TRANSACTION, {"project_id": self._project_id}
        )
        transaction_id = response["transaction"]
        logger.debug("Transaction started", extra={"transaction_id": transaction_id})
        return Transaction(self._transport, self._project_id, transaction_id, self._namespace)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Scoped transaction.

        The body must call commit() itself. On every exit path, a
        transaction that is still ACTIVE is rolled back.

        Example:
            >>> async with db.transaction() as txn:
            ...     txn.put(entity)
            ...     await txn.commit()
        """
        txn = await self.new_transaction()
        async with txn:
            yield txn

    async def run_in_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 3,
    ) -> T:
        """Run fn in a fresh transaction, retrying on commit conflicts.

        fn receives the transaction and should do its reads and writes;
        the transaction is committed after fn returns unless fn already
        finished it. TransportError is never retried because the commit
        may have been applied.

        Args:
            fn: Coroutine function taking a Transaction
            max_attempts: Total attempts before the conflict is re-raised

        Returns:
            fn's return value from the successful attempt

        Raises:
            ConflictError: If every attempt conflicted
        """
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1", field_name="max_attempts")

        for attempt in range(1, max_attempts + 1):
            try:
                async with self.transaction() as txn:
                    result = await fn(txn)
                    if txn.active():
                        await txn.commit()
                    return result
            except ConflictError:
                if attempt == max_attempts:
                    logger.warning(
                        "Transaction conflicted on every attempt",
                        extra={"attempts": attempt},
                    )
                    raise
                logger.info(
                    "Transaction conflicted, retrying",
                    extra={"attempt": attempt, "max_attempts": max_attempts},
                )
        raise AssertionError("unreachable")

    # Non-transactional reads

    async def get(self, key: Key) -> Entity | None:
        """Get the latest committed entity at key."""
        return await self._reader.get(key)

    def get_many(self, *keys: Key) -> LookupResults:
        """Lazy batched get; found entities only, order not preserved."""
        return self._reader.get_many(*keys)

    async def fetch(self, *keys: Key) -> list[Entity | None]:
        """Batched get aligned with the arguments, None where missing."""
        return await self._reader.fetch(*keys)

    def run(
        self,
        query: Query,
        *,
        start_cursor: str | None = None,
        batch_size: int | None = None,
    ) -> QueryResults:
        """Run a query against the latest committed state."""
        return self._reader.run(query, start_cursor=start_cursor, batch_size=batch_size)

    # Non-transactional writes

    async def put(self, *entities: Entity) -> CommitResponse:
        """Upsert entities in one atomic batch.

        Returns:
            CommitResponse; keys holds the completed keys
        """
        for entity in entities:
            if not isinstance(entity, Entity):
                raise ValidationError(f"Expected Entity, got {type(entity).__name__}")
        return await self._commit_batch([("upsert", entity) for entity in entities])

    async def delete(self, *keys: Key) -> CommitResponse:
        """Delete entities in one atomic batch."""
        self._reader._check_keys(keys)
        return await self._commit_batch([("delete", key) for key in keys])

    async def _commit_batch(self, mutations: list[tuple[str, Entity | Key]]) -> CommitResponse:
        if not mutations:
            raise ValidationError("At least one mutation is required")
        response = await self._transport.call(
            COMMIT,
            {"project_id": self._project_id, "mutations": mutations_to_wire(mutations)},
        )
        return commit_response_from_wire(response)

    # Id allocation

    async def allocate_ids(self, *keys: Key) -> list[Key]:
        """Complete incomplete keys with server-allocated ids.

        Args:
            *keys: Incomplete keys

        Returns:
            Complete keys in the same order
        """
        if not keys:
            raise ValidationError("At least one key is required")
        for key in keys:
            if key.is_complete:
                raise ValidationError(f"Key {key} is already complete")
        response = await self._transport.call(
            ALLOCATE_IDS,
            {"project_id": self._project_id, "keys": [key.to_wire() for key in keys]},
        )
        return keys_from_wire(response.get("keys", []))

    async def allocate_id(self, key: Key) -> Key:
        """Complete one incomplete key."""
        allocated = await self.allocate_ids(key)
        return allocated[0]
