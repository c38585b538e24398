"""
Server-side error types for TxStore.

The gRPC servicer maps these onto status codes:
- WriteConflictError -> ABORTED
- TransactionNotFoundError -> NOT_FOUND
- InvalidRequestError -> INVALID_ARGUMENT
"""

from __future__ import annotations


class TxStoreServerError(Exception):
    """Base exception for server errors."""

    pass


class WriteConflictError(TxStoreServerError):
    """Commit validation found keys written after the transaction's snapshot."""

    def __init__(self, message: str, conflicting_keys: list[str] | None = None) -> None:
        super().__init__(message)
        self.conflicting_keys = conflicting_keys or []


class TransactionNotFoundError(TxStoreServerError):
    """Transaction id is unknown, finished or expired."""

    pass


class InvalidRequestError(TxStoreServerError):
    """Request is malformed."""

    pass
