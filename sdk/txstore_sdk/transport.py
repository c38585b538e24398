"""
Transport protocol for TxStore SDK.

The client talks to the server through a Transport: an object with a
single async `call(method, request)` entry point that sends a wire
dictionary and returns the response dictionary.

Implementations:
- GrpcClient (_grpc_client.py): production gRPC transport
- MockDatastoreService (testing.py): in-process transport for tests

Invariants:
    - Method names are the RPC names of the txstore.v1.Datastore service
    - Transports raise TxStoreError subclasses, never raw RPC errors
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

SERVICE_NAME = "txstore.v1.Datastore"

BEGIN_TRANSACTION = "BeginTransaction"
LOOKUP = "Lookup"
RUN_QUERY = "RunQuery"
COMMIT = "Commit"
ROLLBACK = "Rollback"
ALLOCATE_IDS = "AllocateIds"

METHODS = (BEGIN_TRANSACTION, LOOKUP, RUN_QUERY, COMMIT, ROLLBACK, ALLOCATE_IDS)

# Trailing metadata key carrying the JSON list of keys a commit conflicted on
CONFLICTING_KEYS_METADATA = "txstore-conflicting-keys"


@runtime_checkable
class Transport(Protocol):
    """Protocol for request/response transports."""

    async def connect(self) -> None:
        """Open the underlying connection."""
        ...

    async def close(self) -> None:
        """Close the underlying connection."""
        ...

    async def call(self, method: str, request: dict[str, Any]) -> dict[str, Any]:
        """Invoke one RPC.

        Args:
            method: RPC name, one of METHODS
            request: Wire request dictionary

        Returns:
            Wire response dictionary

        Raises:
            ConflictError: Commit aborted by a concurrent write
            ValidationError: Server rejected the request
            NotFoundError: Unknown or expired transaction
            TransportError: Any other RPC failure
        """
        ...
