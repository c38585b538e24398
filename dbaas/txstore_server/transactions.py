"""
Server-side transaction registry.

Each open transaction records the head version at begin, a read version
assigned by its first read, and the keys it has read. Commit validates
read set plus write set against the baseline: the read version, or the
begin version when nothing was read.

Invariants:
    - A transaction id is usable only with the project it was begun in
    - Once assigned, a read version never changes
    - Transactions idle past the timeout are dropped by expire_idle()
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .errors import TransactionNotFoundError
from .store import StoreKey

logger = logging.getLogger(__name__)


@dataclass
class ServerTransaction:
    """State of one open transaction."""

    transaction_id: str
    project_id: str
    begin_version: int
    last_used: float
    read_version: int | None = None
    read_keys: set[StoreKey] = field(default_factory=set)

    @property
    def baseline_version(self) -> int:
        return self.read_version if self.read_version is not None else self.begin_version

    def assign_read_version(self, head_version: int) -> int:
        """Fix the snapshot on first read and return it."""
        if self.read_version is None:
            self.read_version = head_version
        return self.read_version

    def record_reads(self, keys: Iterable[StoreKey]) -> None:
        self.read_keys.update(keys)


class TransactionRegistry:
    """In-memory registry of open transactions.

    Example:
        >>> registry = TransactionRegistry(idle_timeout_seconds=60)
        >>> txn = registry.begin("demo", head_version=12)
        >>> registry.get("demo", txn.transaction_id) is txn
        True
    """

    def __init__(
        self,
        idle_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_seconds = idle_timeout_seconds
        self._clock = clock
        self._transactions: dict[str, ServerTransaction] = {}

    def __len__(self) -> int:
        return len(self._transactions)

    def begin(self, project_id: str, head_version: int) -> ServerTransaction:
        txn = ServerTransaction(
            transaction_id=uuid.uuid4().hex,
            project_id=project_id,
            begin_version=head_version,
            last_used=self._clock(),
        )
        self._transactions[txn.transaction_id] = txn
        logger.debug(
            "Transaction begun",
            extra={
                "project_id": project_id,
                "transaction_id": txn.transaction_id,
                "begin_version": head_version,
            },
        )
        return txn

    def get(self, project_id: str, transaction_id: str) -> ServerTransaction:
        """Look up an open transaction and mark it used.

        Raises:
            TransactionNotFoundError: If unknown, expired or from another project
        """
        txn = self._transactions.get(transaction_id)
        if txn is None or txn.project_id != project_id:
            raise TransactionNotFoundError(f"Transaction {transaction_id!r} not found")
        now = self._clock()
        if now - txn.last_used > self.idle_timeout_seconds:
            del self._transactions[transaction_id]
            raise TransactionNotFoundError(f"Transaction {transaction_id!r} expired")
        txn.last_used = now
        return txn

    def remove(self, transaction_id: str) -> ServerTransaction | None:
        return self._transactions.pop(transaction_id, None)

    def expire_idle(self) -> list[str]:
        """Drop idle transactions; returns their ids."""
        cutoff = self._clock() - self.idle_timeout_seconds
        expired = [tid for tid, txn in self._transactions.items() if txn.last_used < cutoff]
        for tid in expired:
            del self._transactions[tid]
        if expired:
            logger.info("Expired idle transactions", extra={"count": len(expired)})
        return expired

    def count(self, project_id: str) -> int:
        return sum(1 for txn in self._transactions.values() if txn.project_id == project_id)

    def min_active_version(self, project_id: str) -> int | None:
        """Oldest baseline among open transactions of a project."""
        baselines = [
            txn.baseline_version
            for txn in self._transactions.values()
            if txn.project_id == project_id
        ]
        return min(baselines) if baselines else None
