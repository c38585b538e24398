"""
gRPC server implementation for TxStore.

This module provides the Datastore service: optimistic transactions,
snapshot reads, structured queries and id allocation over a multi-version
EntityStore. Messages are google.protobuf.Struct, registered through
generic method handlers so no generated stubs are needed.

Invariants:
    - Every RPC requires a valid project_id
    - Transactional reads see the snapshot fixed by the first read
    - Commit validates read set plus write set before writing anything
    - Domain errors map to status codes, never to INTERNAL

How to change safely:
    - Add new RPCs without modifying existing ones
    - Add request fields as optional with defaults
    - Keep integers on the wire as strings
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from typing import Any, Awaitable, Callable

import grpc
from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct
from grpc import aio as grpc_aio

from ..config import TransactionConfig
from ..errors import (
    InvalidRequestError,
    TransactionNotFoundError,
    TxStoreServerError,
    WriteConflictError,
)
from ..store import EntityStore, Mutation, QueryPlan, StoreKey
from ..transactions import ServerTransaction, TransactionRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "txstore.v1.Datastore"
CONFLICTING_KEYS_METADATA = "txstore-conflicting-keys"

_VALUE_TAGS = frozenset(
    {
        "null_value",
        "boolean_value",
        "integer_value",
        "double_value",
        "string_value",
        "blob_value",
        "timestamp_value",
        "key_value",
        "array_value",
    }
)


def encode_message(message: dict[str, Any]) -> bytes:
    return json_format.ParseDict(message, Struct()).SerializeToString()


def decode_message(data: bytes) -> dict[str, Any]:
    return json_format.MessageToDict(Struct.FromString(data))


def encode_cursor(offset: int, read_version: int) -> str:
    payload = json.dumps({"offset": offset, "read_version": read_version})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[int, int]:
    """Parse a query cursor into (offset, read_version).

    Raises:
        InvalidRequestError: If the cursor is malformed
    """
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        return int(data["offset"]), int(data["read_version"])
    except (binascii.Error, ValueError, KeyError, TypeError):
        raise InvalidRequestError(f"Invalid query cursor {cursor!r}") from None


def _check_value(name: str, value: Any, nested: bool = False) -> None:
    if not isinstance(value, dict) or len(value) != 1 or next(iter(value)) not in _VALUE_TAGS:
        raise InvalidRequestError(f"Property '{name}' has an invalid value")
    if "array_value" in value:
        if nested:
            raise InvalidRequestError(f"Property '{name}' has a nested array")
        for item in (value["array_value"] or {}).get("values", []):
            _check_value(name, item, nested=True)
    elif "key_value" in value:
        StoreKey.from_wire(value["key_value"])


class DatastoreServicer:
    """Datastore service implementation.

    Each RPC method takes and returns wire dictionaries and raises
    TxStoreServerError subclasses; GrpcServer turns those into status
    codes.

    Attributes:
        store: Multi-version entity store
        registry: Open transactions
        config: Batch limits
    """

    def __init__(
        self,
        store: EntityStore,
        registry: TransactionRegistry,
        config: TransactionConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config or TransactionConfig()
        self._started_at = time.time()

    # Request helpers

    @staticmethod
    def _project_id(request: dict[str, Any]) -> str:
        project_id = request.get("project_id")
        if not project_id or not isinstance(project_id, str):
            raise InvalidRequestError("project_id is required")
        if not all(c.isalnum() or c in "-_" for c in project_id):
            raise InvalidRequestError(f"Invalid project_id {project_id!r}")
        return project_id

    def _transaction(self, project_id: str, request: dict[str, Any]) -> ServerTransaction | None:
        transaction_id = request.get("transaction")
        if not transaction_id:
            return None
        return self.registry.get(project_id, transaction_id)

    async def _read_version(self, project_id: str, txn: ServerTransaction | None) -> int:
        if txn is None:
            return await self.store.head_version(project_id)
        if txn.read_version is None:
            txn.assign_read_version(await self.store.head_version(project_id))
        return txn.read_version

    def _parse_mutations(self, project_id: str, raw: Any) -> list[Mutation]:
        if not isinstance(raw, list):
            raise InvalidRequestError("mutations must be a list")
        mutations = []
        for item in raw:
            if not isinstance(item, dict) or len(item) != 1:
                raise InvalidRequestError("Each mutation must have exactly one operation")
            if "upsert" in item:
                entity = item["upsert"] or {}
                key = StoreKey.from_wire(entity.get("key"), project_id)
                properties = entity.get("properties") or {}
                if not isinstance(properties, dict):
                    raise InvalidRequestError("Entity properties must be an object")
                for name, value in properties.items():
                    _check_value(name, value)
                mutations.append(Mutation("upsert", key, properties))
            elif "delete" in item:
                key = StoreKey.from_wire(item["delete"], project_id)
                if not key.is_complete:
                    raise InvalidRequestError("Cannot delete an incomplete key")
                mutations.append(Mutation("delete", key))
            else:
                raise InvalidRequestError(f"Unknown mutation {sorted(item)}")
        return mutations

    # RPCs

    async def begin_transaction(self, request: dict[str, Any]) -> dict[str, Any]:
        project_id = self._project_id(request)
        head = await self.store.head_version(project_id)
        txn = self.registry.begin(project_id, head)
        return {"transaction": txn.transaction_id}

    async def lookup(self, request: dict[str, Any]) -> dict[str, Any]:
        """Resolve keys at the read snapshot.

        At most max_lookup_batch distinct keys are resolved; the rest are
        returned as deferred for the client to request again.
        """
        project_id = self._project_id(request)
        raw_keys = request.get("keys") or []
        if not raw_keys:
            raise InvalidRequestError("At least one key is required")
        keys = list(dict.fromkeys(StoreKey.from_wire(k, project_id) for k in raw_keys))
        for key in keys:
            if not key.is_complete:
                raise InvalidRequestError("Cannot look up an incomplete key")

        txn = self._transaction(project_id, request)
        read_version = await self._read_version(project_id, txn)

        batch = keys[: self.config.max_lookup_batch]
        deferred = keys[self.config.max_lookup_batch :]
        found = await self.store.lookup(project_id, batch, read_version)
        if txn is not None:
            txn.record_reads(batch)

        # Results come back in key order, not request order
        ordered = sorted(batch, key=lambda k: (k.namespace, k.encoded_path))
        return {
            "found": [found[k].to_wire() for k in ordered if k in found],
            "missing": [k.to_wire() for k in ordered if k not in found],
            "deferred": [k.to_wire() for k in deferred],
            "read_version": str(read_version),
        }

    async def run_query(self, request: dict[str, Any]) -> dict[str, Any]:
        """Evaluate a query one batch at a time.

        Cursors carry the offset and snapshot version, so paging a
        non-transactional query keeps reading the same snapshot. A cursor
        older than the last compaction is rejected rather than read.
        """
        project_id = self._project_id(request)
        plan = QueryPlan.from_wire(request.get("query"), project_id)

        offset, cursor_version = 0, None
        if request.get("start_cursor"):
            offset, cursor_version = decode_cursor(request["start_cursor"])

        txn = self._transaction(project_id, request)
        if txn is None and cursor_version is not None:
            if cursor_version < await self.store.compaction_watermark(project_id):
                raise InvalidRequestError(
                    f"Query cursor expired: version {cursor_version} has been compacted"
                )
            read_version = cursor_version
        else:
            read_version = await self._read_version(project_id, txn)

        batch_size = self.config.default_query_batch
        if request.get("batch_size") not in (None, ""):
            batch_size = int(request["batch_size"])
            if batch_size < 1:
                raise InvalidRequestError("batch_size must be >= 1")
            batch_size = min(batch_size, self.config.max_query_batch)

        candidates = await self.store.scan_kind(
            project_id, plan.namespace, plan.kind, read_version, ancestor=plan.ancestor
        )
        results = plan.evaluate(candidates)
        if plan.limit is not None:
            results = results[: plan.limit]

        page = results[offset : offset + batch_size]
        end = offset + len(page)
        if txn is not None:
            txn.record_reads(StoreKey.from_wire(c.key) for c in page)

        return {
            "entities": [c.to_wire() for c in page],
            "end_cursor": encode_cursor(end, read_version),
            "more_results": end < len(results),
        }

    async def commit(self, request: dict[str, Any]) -> dict[str, Any]:
        """Apply mutations, validating the transaction's conflict set.

        A conflict ends the transaction. An invalid request leaves it
        open so the client can still roll back.
        """
        project_id = self._project_id(request)
        txn = self._transaction(project_id, request)
        mutations = self._parse_mutations(project_id, request.get("mutations") or [])

        if txn is None:
            record = await self.store.apply_commit(project_id, mutations)
        else:
            written = {m.key for m in mutations if m.key.is_complete}
            try:
                record = await self.store.apply_commit(
                    project_id,
                    mutations,
                    conflict_keys=txn.read_keys | written,
                    baseline_version=txn.baseline_version,
                )
            except WriteConflictError:
                self.registry.remove(txn.transaction_id)
                logger.info(
                    "Commit conflict",
                    extra={
                        "project_id": project_id,
                        "transaction_id": txn.transaction_id,
                        "baseline_version": txn.baseline_version,
                    },
                )
                raise
            self.registry.remove(txn.transaction_id)

        return {
            "commit_version": str(record.version),
            "keys": [k.to_wire() for k in record.keys],
        }

    async def rollback(self, request: dict[str, Any]) -> dict[str, Any]:
        project_id = self._project_id(request)
        if not request.get("transaction"):
            raise InvalidRequestError("transaction is required")
        txn = self.registry.get(project_id, request["transaction"])
        self.registry.remove(txn.transaction_id)
        return {}

    async def allocate_ids(self, request: dict[str, Any]) -> dict[str, Any]:
        project_id = self._project_id(request)
        keys = [StoreKey.from_wire(k, project_id) for k in request.get("keys") or []]
        if not keys:
            raise InvalidRequestError("At least one key is required")
        if any(k.is_complete for k in keys):
            raise InvalidRequestError("AllocateIds only accepts incomplete keys")
        allocated = await self.store.allocate_ids(project_id, keys)
        return {"keys": [k.to_wire() for k in allocated]}

    # Admin and maintenance

    async def health_check(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "version": "1.0.0",
            "uptime_seconds": round(time.time() - self._started_at, 3),
            "open_transactions": len(self.registry),
        }

    async def stats(self, project_id: str) -> dict[str, Any]:
        self._project_id({"project_id": project_id})
        stats = await self.store.stats(project_id)
        stats["open_transactions"] = self.registry.count(project_id)
        return stats

    async def list_entities(
        self,
        project_id: str,
        kind: str,
        namespace: str = "",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Latest committed entities of a kind, in key order."""
        self._project_id({"project_id": project_id})
        head = await self.store.head_version(project_id)
        candidates = await self.store.scan_kind(project_id, namespace, kind, head)
        return [c.to_wire() for c in candidates[:limit]]

    def expire_idle_transactions(self) -> list[str]:
        return self.registry.expire_idle()

    async def compact(self) -> int:
        """Compact every project down to what open transactions still need."""
        removed = 0
        for project_id in self.store.list_projects():
            keep = self.registry.min_active_version(project_id)
            if keep is None:
                keep = await self.store.head_version(project_id)
            removed += await self.store.compact(project_id, keep)
        return removed


class GrpcServer:
    """gRPC server wrapper for TxStore.

    This class manages the gRPC server lifecycle including:
    - Server initialization
    - Service registration
    - Graceful shutdown

    Example:
        >>> server = GrpcServer(servicer, port=50051)
        >>> await server.start()
        >>> # Server is now running
        >>> await server.stop()
    """

    def __init__(
        self,
        servicer: DatastoreServicer,
        host: str = "0.0.0.0",
        port: int = 50051,
        max_message_size: int = 64 * 1024 * 1024,
        max_concurrent_rpcs: int | None = None,
    ) -> None:
        """Initialize the gRPC server.

        Args:
            servicer: DatastoreServicer instance
            host: Host to bind to
            port: Port to listen on, 0 for an ephemeral port
            max_message_size: Maximum request/response size in bytes
            max_concurrent_rpcs: RPCs served at once, None for no limit
        """
        self.servicer = servicer
        self.host = host
        self.port = port
        self.max_message_size = max_message_size
        self.max_concurrent_rpcs = max_concurrent_rpcs
        self._server: grpc_aio.Server | None = None
        self._running = False

    def _wrap(
        self,
        method: str,
        handler: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]],
    ) -> Callable[[dict[str, Any], grpc_aio.ServicerContext], Awaitable[dict[str, Any]]]:
        async def behavior(
            request: dict[str, Any], context: grpc_aio.ServicerContext
        ) -> dict[str, Any]:
            try:
                return await handler(request)
            except WriteConflictError as e:
                await context.abort(
                    grpc.StatusCode.ABORTED,
                    str(e),
                    trailing_metadata=(
                        (CONFLICTING_KEYS_METADATA, json.dumps(e.conflicting_keys)),
                    ),
                )
            except TransactionNotFoundError as e:
                await context.abort(grpc.StatusCode.NOT_FOUND, str(e))
            except (TxStoreServerError, ValueError) as e:
                await context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(e))
            except Exception as e:
                logger.error(f"{method} failed: {e}", exc_info=True)
                await context.abort(grpc.StatusCode.INTERNAL, "Internal error")

        return behavior

    def _generic_handler(self) -> grpc.GenericRpcHandler:
        methods = {
            "BeginTransaction": self.servicer.begin_transaction,
            "Lookup": self.servicer.lookup,
            "RunQuery": self.servicer.run_query,
            "Commit": self.servicer.commit,
            "Rollback": self.servicer.rollback,
            "AllocateIds": self.servicer.allocate_ids,
        }
        return grpc.method_handlers_generic_handler(
            SERVICE_NAME,
            {
                name: grpc.unary_unary_rpc_method_handler(
                    self._wrap(name, handler),
                    request_deserializer=decode_message,
                    response_serializer=encode_message,
                )
                for name, handler in methods.items()
            },
        )

    async def start(self) -> None:
        """Start the gRPC server."""
        if self._running:
            logger.warning("Server already running")
            return

        self._server = grpc_aio.server(
            options=[
                ("grpc.max_send_message_length", self.max_message_size),
                ("grpc.max_receive_message_length", self.max_message_size),
            ],
            maximum_concurrent_rpcs=self.max_concurrent_rpcs,
        )
        self._server.add_generic_rpc_handlers((self._generic_handler(),))
        bound = self._server.add_insecure_port(f"{self.host}:{self.port}")
        if bound == 0:
            raise RuntimeError(f"Could not bind gRPC server to {self.host}:{self.port}")
        self.port = bound
        await self._server.start()
        self._running = True

        logger.info(
            f"gRPC server started on {self.host}:{self.port}",
            extra={"host": self.host, "port": self.port},
        )

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop the gRPC server gracefully.

        Args:
            grace_period: Time to wait for pending RPCs to complete
        """
        if not self._running:
            return

        logger.info("Stopping gRPC server")
        self._running = False

        if self._server:
            await self._server.stop(grace_period)
            self._server = None

    @property
    def is_running(self) -> bool:
        """Whether the server is running."""
        return self._running
