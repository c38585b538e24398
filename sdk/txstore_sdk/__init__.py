"""
TxStore Python SDK - Client library for the TxStore entity service.

This SDK provides optimistic transactions over a remote entity store:
- Keys, key factories and immutable entities
- Structured queries with lazy, batched results
- Transaction coordinator with buffered writes and atomic commit
- TxStoreClient for connecting to the server

Example:
    >>> from txstore_sdk import Entity, TxStoreClient
    >>>
    >>> async with TxStoreClient("localhost:50051", "demo") as db:
    ...     key = db.key_factory().kind("MyKind").new_key("my_key_name")
    ...     async with db.transaction() as txn:
    ...         txn.put(Entity.builder(key).set("description", "commit()").build())
    ...         await txn.commit()

Invariants:
    - Reads in a transaction see one snapshot
    - Writes are atomic per commit()
    - commit() and rollback() are single-use

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import TxStoreClient
from .entity import Entity, EntityBuilder
from .errors import (
    ConflictError,
    ConnectionError,
    InvalidStateError,
    NotFoundError,
    TransportError,
    TxStoreError,
    ValidationError,
)
from .keys import Key, KeyFactory, PathElement
from .query import AncestorFilter, Operator, OrderBy, PropertyFilter, Query, QueryResults
from .reads import LookupResults
from .settings import ClientSettings
from .transaction import (
    CommitOutcome,
    CommitResponse,
    CommitResult,
    Transaction,
    TransactionState,
)

__all__ = [
    # Version
    "__version__",
    # Data model
    "Key",
    "KeyFactory",
    "PathElement",
    "Entity",
    "EntityBuilder",
    # Queries
    "Query",
    "PropertyFilter",
    "AncestorFilter",
    "Operator",
    "OrderBy",
    "QueryResults",
    "LookupResults",
    # Client
    "TxStoreClient",
    "ClientSettings",
    "Transaction",
    "TransactionState",
    "CommitOutcome",
    "CommitResponse",
    "CommitResult",
    # Errors
    "TxStoreError",
    "InvalidStateError",
    "ConflictError",
    "TransportError",
    "ValidationError",
    "ConnectionError",
    "NotFoundError",
]
