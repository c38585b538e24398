"""
Error types for TxStore SDK.

This module defines all exception types raised by the SDK:
- TxStoreError: Base exception
- InvalidStateError: Operation on a finished transaction
- ConflictError: Commit rejected because the snapshot is stale
- TransportError: RPC failed, outcome may be unknown
- ValidationError: Bad key, entity or query argument
- ConnectionError: Server connection issues
- NotFoundError: Server does not know the transaction

Invariants:
    - All errors inherit from TxStoreError
    - Errors include context for debugging
    - ConflictError and TransportError are never retried by the SDK itself
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class TxStoreError(Exception):
    """Base exception for all TxStore SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TXSTORE_ERROR"
        self.details = details or {}


class InvalidStateError(TxStoreError):
    """Operation attempted on a transaction that can no longer accept it.

    Raised when:
    - Reading or writing after commit or rollback
    - Committing twice
    - Rolling back a committed transaction
    - Using a transaction whose commit outcome is unknown
    """

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_STATE",
            details={"transaction_id": transaction_id, "state": state},
        )
        self.transaction_id = transaction_id
        self.state = state


class ConflictError(TxStoreError):
    """Commit detected a concurrent conflicting write.

    The transaction snapshot is invalid. Callers must restart the
    whole transaction: new reads, new writes.
    """

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        conflicting_keys: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={
                "transaction_id": transaction_id,
                "conflicting_keys": conflicting_keys or [],
            },
        )
        self.transaction_id = transaction_id
        self.conflicting_keys = conflicting_keys or []


class TransportError(TxStoreError):
    """RPC to the server failed.

    On commit the outcome is ambiguous: the mutations may or may not
    have been applied.
    """

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"method": method, "status": status},
        )
        self.method = method
        self.status = status


class ValidationError(TxStoreError):
    """Argument validation failed.

    Raised when:
    - Property value has an unsupported type
    - Key belongs to another project
    - Incomplete key used where a complete one is required
    - Server rejected the request as malformed
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class ConnectionError(TxStoreError):
    """Failed to connect to TxStore server."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"address": address},
        )
        self.address = address


class NotFoundError(TxStoreError):
    """Server-side resource not found.

    Raised when:
    - Transaction id is unknown to the server
    - Transaction expired after being idle
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
