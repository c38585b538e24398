"""
Transaction coordinator for TxStore SDK.

A Transaction is a handle on one optimistic server transaction:
- Reads (get, get_many, fetch, run) observe a snapshot fixed at the
  first read
- Writes (put, delete) are buffered locally, in order
- commit() sends the whole buffer as one atomic batch
- rollback() discards the buffer and releases the server transaction

State machine:
    ACTIVE → COMMITTED
    ACTIVE → ROLLED_BACK   (rollback(), or commit() conflict)

Invariants:
    - Reads and writes fail with InvalidStateError unless ACTIVE
    - commit() and rollback() are single-use and mutually exclusive
    - Reads never see the transaction's own buffered writes
    - The SDK never retries commit; ConflictError and TransportError are
      surfaced to the caller
    - After a TransportError on commit the outcome is unknown: the
      transaction stays ACTIVE so cleanup rolls it back, but it refuses
      further reads, writes and commits

Not safe for concurrent use: drive one transaction from one task.

Example:
    >>> txn = await client.new_transaction()
    >>> try:
    ...     txn.put(entity)
    ...     await txn.commit()
    ... finally:
    ...     if txn.active():
    ...         await txn.rollback()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .entity import Entity
from .errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    TransportError,
    TxStoreError,
    ValidationError,
)
from .keys import Key, keys_from_wire
from .reads import Reader
from .transport import COMMIT, ROLLBACK, Transport

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Transaction lifecycle states."""

    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"

    def is_terminal(self) -> bool:
        return self is not TransactionState.ACTIVE


class CommitOutcome(Enum):
    """Outcome of try_commit()."""

    SUCCESS = "SUCCESS"
    CONFLICT = "CONFLICT"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


@dataclass
class CommitResponse:
    """Result of a successful commit.

    Attributes:
        commit_version: Store version at which the mutations became visible
        keys: Final keys of upserted entities, in mutation order;
            incomplete keys are completed by the server
    """

    commit_version: int
    keys: list[Key] = field(default_factory=list)


@dataclass
class CommitResult:
    """Explicit commit outcome returned by try_commit().

    Attributes:
        outcome: SUCCESS, CONFLICT or TRANSPORT_ERROR
        response: Commit response when outcome is SUCCESS
        error: The underlying error otherwise
    """

    outcome: CommitOutcome
    response: CommitResponse | None = None
    error: TxStoreError | None = None

    @property
    def success(self) -> bool:
        return self.outcome is CommitOutcome.SUCCESS


def mutations_to_wire(mutations: list[tuple[str, Entity | Key]]) -> list[dict[str, Any]]:
    return [{op: target.to_wire()} for op, target in mutations]


def commit_response_from_wire(response: dict[str, Any]) -> CommitResponse:
    return CommitResponse(
        commit_version=int(response.get("commit_version", 0)),
        keys=keys_from_wire(response.get("keys", [])),
    )


class Transaction(Reader):
    """Handle on one optimistic transaction.

    Created by TxStoreClient.new_transaction(); do not construct
    directly.

    Attributes:
        transaction_id: Server-assigned transaction id
        state: Current lifecycle state
    """

    def __init__(
        self,
        transport: Transport,
        project_id: str,
        transaction_id: str,
        namespace: str = "",
    ) -> None:
        """Initialize a transaction handle.

        Args:
            transport: Transport used for every RPC
            project_id: Project all keys must belong to
            transaction_id: Id returned by BeginTransaction
            namespace: Default namespace for queries
        """
        super().__init__(transport, project_id, namespace)
        self._transaction_id = transaction_id
        self._state = TransactionState.ACTIVE
        self._mutations: list[tuple[str, Entity | Key]] = []
        self._outcome_unknown = False

    @property
    def transaction_id(self) -> str:
        return self._transaction_id

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def pending_mutations(self) -> int:
        """Number of buffered writes."""
        return len(self._mutations)

    def active(self) -> bool:
        """Whether the transaction is still ACTIVE."""
        return self._state is TransactionState.ACTIVE

    def _check_usable(self, operation: str) -> None:
        if self._state is not TransactionState.ACTIVE:
            raise InvalidStateError(
                f"Cannot {operation}: transaction is {self._state.value}",
                transaction_id=self._transaction_id,
                state=self._state.value,
            )
        if self._outcome_unknown:
            raise InvalidStateError(
                f"Cannot {operation}: commit outcome is unknown, roll back and "
                "restart the transaction",
                transaction_id=self._transaction_id,
                state=self._state.value,
            )

    # Reader hooks

    def _read_options(self) -> dict[str, Any]:
        return {"transaction": self._transaction_id}

    def _before_read(self, operation: str) -> None:
        self._check_usable(operation)

    # Writes

    def put(self, *entities: Entity) -> None:
        """Buffer insert-or-replace writes.

        Nothing is sent until commit(). Later reads in this transaction
        do not observe these writes.

        Raises:
            InvalidStateError: If not ACTIVE
            ValidationError: If an argument is not an Entity of this project
        """
        self._check_usable("put")
        if not entities:
            raise ValidationError("At least one entity is required")
        for entity in entities:
            if not isinstance(entity, Entity):
                raise ValidationError(f"Expected Entity, got {type(entity).__name__}")
            if entity.key.project_id != self._project_id:
                raise ValidationError(
                    f"Entity key {entity.key} belongs to another project"
                )
        self._mutations.extend(("upsert", entity) for entity in entities)

    def delete(self, *keys: Key) -> None:
        """Buffer deletes.

        Raises:
            InvalidStateError: If not ACTIVE
            ValidationError: If a key is incomplete or from another project
        """
        self._check_usable("delete")
        self._check_keys(keys)
        self._mutations.extend(("delete", key) for key in keys)

    # Terminal operations

    async def commit(self) -> CommitResponse:
        """Atomically apply every buffered write.

        Returns:
            CommitResponse with commit version and final keys

        Raises:
            InvalidStateError: If not ACTIVE, or a previous commit's
                outcome is unknown
            ConflictError: Snapshot was stale; transaction is now ROLLED_BACK
            NotFoundError: Server no longer knows the transaction; it is
                now ROLLED_BACK
            TransportError: Outcome unknown; restart the whole transaction
        """
        self._check_usable("commit")
        request = {
            "project_id": self._project_id,
            "transaction": self._transaction_id,
            "mutations": mutations_to_wire(self._mutations),
        }

        try:
            response = await self._transport.call(COMMIT, request)
        except ConflictError as e:
            self._finish(TransactionState.ROLLED_BACK)
            logger.info(
                "Transaction commit conflicted",
                extra={"transaction_id": self._transaction_id},
            )
            raise ConflictError(
                e.message,
                transaction_id=self._transaction_id,
                conflicting_keys=e.conflicting_keys,
            ) from e
        except NotFoundError:
            self._finish(TransactionState.ROLLED_BACK)
            raise
        except TransportError:
            self._outcome_unknown = True
            logger.warning(
                "Transaction commit outcome unknown",
                extra={"transaction_id": self._transaction_id},
            )
            raise

        result = commit_response_from_wire(response)
        mutation_count = len(self._mutations)
        self._finish(TransactionState.COMMITTED)
        logger.debug(
            "Transaction committed",
            extra={
                "transaction_id": self._transaction_id,
                "commit_version": result.commit_version,
                "mutations": mutation_count,
            },
        )
        return result

    async def try_commit(self) -> CommitResult:
        """Commit, reporting conflict and transport failure as values.

        Raises:
            InvalidStateError: If not ACTIVE
        """
        try:
            response = await self.commit()
        except ConflictError as e:
            return CommitResult(outcome=CommitOutcome.CONFLICT, error=e)
        except TransportError as e:
            return CommitResult(outcome=CommitOutcome.TRANSPORT_ERROR, error=e)
        return CommitResult(outcome=CommitOutcome.SUCCESS, response=response)

    async def rollback(self) -> None:
        """Discard buffered writes and release the server transaction.

        A no-op when the transaction is already ROLLED_BACK (for
        example after a commit conflict).

        Raises:
            InvalidStateError: If the transaction was committed
            TransportError: If the Rollback RPC failed; the transaction is
                ROLLED_BACK locally regardless
        """
        if self._state is TransactionState.ROLLED_BACK:
            logger.debug(
                "Rollback on rolled back transaction ignored",
                extra={"transaction_id": self._transaction_id},
            )
            return
        if self._state is TransactionState.COMMITTED:
            raise InvalidStateError(
                "Cannot rollback: transaction is COMMITTED",
                transaction_id=self._transaction_id,
                state=self._state.value,
            )

        self._finish(TransactionState.ROLLED_BACK)
        request = {"project_id": self._project_id, "transaction": self._transaction_id}
        try:
            await self._transport.call(ROLLBACK, request)
        except NotFoundError:
            # Server already discarded it (expired, or an ambiguous commit landed)
            logger.debug(
                "Rollback of unknown server transaction",
                extra={"transaction_id": self._transaction_id},
            )
        except TransportError:
            logger.warning(
                "Rollback RPC failed",
                extra={"transaction_id": self._transaction_id},
                exc_info=True,
            )
            raise
        else:
            logger.debug(
                "Transaction rolled back",
                extra={"transaction_id": self._transaction_id},
            )

    def _finish(self, state: TransactionState) -> None:
        self._state = state
        self._mutations.clear()

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if not self.active():
            return
        if exc is None:
            await self.rollback()
            return
        try:
            await self.rollback()
        except TxStoreError:
            logger.warning(
                "Rollback during exception cleanup failed",
                extra={"transaction_id": self._transaction_id},
                exc_info=True,
            )

    def __repr__(self) -> str:
        return (
            f"Transaction(id={self._transaction_id!r}, state={self._state.value}, "
            f"pending={len(self._mutations)})"
        )
