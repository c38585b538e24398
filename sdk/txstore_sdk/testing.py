"""
Test helpers for code built on TxStore SDK.

MockDatastoreService is an in-process Transport. Queue responses (or
exceptions) with add_response / add_exception; every call pops the
next queued item and records the request. When the queue is empty the
call goes to `delegate` if one is set, otherwise it fails.

Example:
    >>> service = MockDatastoreService()
    >>> service.add_response({"transaction": "tx-1"})
    >>> client = TxStoreClient(project_id="demo", transport=service)
    >>> txn = await client.new_transaction()
    >>> service.requests[0]
    ('BeginTransaction', {'project_id': 'demo'})
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from typing import Any

from .transport import METHODS, Transport

logger = logging.getLogger(__name__)


class MockDatastoreService:
    """Scriptable Transport for unit tests.

    Attributes:
        requests: (method, request) pairs in call order
        delegate: Optional transport used when nothing is queued
        connected: Whether connect() was called and close() was not
    """

    def __init__(self, delegate: Transport | None = None) -> None:
        self.delegate = delegate
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.connected = False
        self._responses: deque[tuple[str | None, Any]] = deque()

    async def connect(self) -> None:
        self.connected = True
        if self.delegate is not None:
            await self.delegate.connect()

    async def close(self) -> None:
        self.connected = False
        if self.delegate is not None:
            await self.delegate.close()

    def add_response(self, response: dict[str, Any], method: str | None = None) -> None:
        """Queue a response, optionally only for one method."""
        self._check_method(method)
        self._responses.append((method, response))

    def add_exception(self, error: Exception, method: str | None = None) -> None:
        """Queue an exception to raise, optionally only for one method."""
        self._check_method(method)
        self._responses.append((method, error))

    def set_responses(self, responses: list[dict[str, Any] | Exception]) -> None:
        """Replace the queue with responses for any method."""
        self._responses = deque((None, r) for r in responses)

    def methods_called(self) -> list[str]:
        return [method for method, _ in self.requests]

    def reset(self) -> None:
        """Forget recorded requests and queued responses."""
        self.requests.clear()
        self._responses.clear()

    async def call(self, method: str, request: dict[str, Any]) -> dict[str, Any]:
        self.requests.append((method, copy.deepcopy(request)))

        for index, (expected, item) in enumerate(self._responses):
            if expected is None or expected == method:
                del self._responses[index]
                if isinstance(item, Exception):
                    logger.debug("Mock raising", extra={"method": method, "error": repr(item)})
                    raise item
                return copy.deepcopy(item)

        if self.delegate is not None:
            return await self.delegate.call(method, request)
        raise AssertionError(f"No response queued for {method}")

    @staticmethod
    def _check_method(method: str | None) -> None:
        if method is not None and method not in METHODS:
            raise ValueError(f"Unknown method: {method}")
