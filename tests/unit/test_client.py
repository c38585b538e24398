"""
Unit tests for TxStoreClient.

Tests cover:
- Scoped transactions and run_in_transaction retries
- Non-transactional writes and id allocation
- Settings and connection handling
- gRPC status translation
"""

import json

import grpc
import pytest

from txstore_sdk import (
    ClientSettings,
    ConflictError,
    ConnectionError,
    Entity,
    Key,
    NotFoundError,
    TransactionState,
    TransportError,
    TxStoreClient,
    ValidationError,
)
from txstore_sdk._grpc_client import GrpcClient, decode_message, encode_message, translate_rpc_error
from txstore_sdk.testing import MockDatastoreService
from txstore_sdk.transport import (
    ALLOCATE_IDS,
    BEGIN_TRANSACTION,
    COMMIT,
    CONFLICTING_KEYS_METADATA,
    ROLLBACK,
)

PROJECT = "demo"


class FakeRpcError(grpc.RpcError):
    def __init__(self, code, details="", trailing_metadata=()):
        self._code = code
        self._details = details
        self._trailing_metadata = trailing_metadata

    def code(self):
        return self._code

    def details(self):
        return self._details

    def trailing_metadata(self):
        return self._trailing_metadata


@pytest.fixture
def service():
    return MockDatastoreService()


@pytest.fixture
def client(service):
    return TxStoreClient(project_id=PROJECT, transport=service)


def begin(service, transaction_id="tx-1"):
    service.add_response({"transaction": transaction_id}, BEGIN_TRANSACTION)


class TestScopedTransaction:
    """Tests for client.transaction()."""

    @pytest.mark.asyncio
    async def test_uncommitted_body_rolls_back(self, client, service):
        """Leaving the block without commit rolls back."""
        begin(service)
        service.add_response({}, ROLLBACK)
        async with client.transaction() as txn:
            txn.put(Entity(Key.of(PROJECT, ("Task", "a")), {"n": 1}))
        assert txn.state is TransactionState.ROLLED_BACK
        assert service.methods_called() == [BEGIN_TRANSACTION, ROLLBACK]

    @pytest.mark.asyncio
    async def test_error_in_body_rolls_back_and_propagates(self, client, service):
        begin(service)
        service.add_response({}, ROLLBACK)
        with pytest.raises(RuntimeError):
            async with client.transaction() as txn:
                raise RuntimeError("boom")
        assert txn.state is TransactionState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_committed_body_not_rolled_back(self, client, service):
        begin(service)
        service.add_response({"commit_version": "1", "keys": []}, COMMIT)
        async with client.transaction() as txn:
            await txn.commit()
        assert ROLLBACK not in service.methods_called()


class TestRunInTransaction:
    """Tests for run_in_transaction retries."""

    @pytest.mark.asyncio
    async def test_commits_after_fn(self, client, service):
        """fn's result is returned after commit."""
        begin(service)
        service.add_response({"commit_version": "4", "keys": []}, COMMIT)

        async def work(txn):
            txn.put(Entity(Key.of(PROJECT, ("Task", "a")), {"n": 1}))
            return "done"

        assert await client.run_in_transaction(work) == "done"
        assert service.methods_called() == [BEGIN_TRANSACTION, COMMIT]

    @pytest.mark.asyncio
    async def test_retries_on_conflict(self, client, service):
        """A conflict restarts fn in a fresh transaction."""
        begin(service, "tx-1")
        service.add_exception(ConflictError("stale"), COMMIT)
        begin(service, "tx-2")
        service.add_response({"commit_version": "5", "keys": []}, COMMIT)
        seen = []

        async def work(txn):
            seen.append(txn.transaction_id)

        await client.run_in_transaction(work)
        assert seen == ["tx-1", "tx-2"]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, client, service):
        for n in range(2):
            begin(service, f"tx-{n}")
            service.add_exception(ConflictError("stale"), COMMIT)

        async def work(txn):
            pass

        with pytest.raises(ConflictError):
            await client.run_in_transaction(work, max_attempts=2)
        assert service.methods_called().count(BEGIN_TRANSACTION) == 2

    @pytest.mark.asyncio
    async def test_transport_error_not_retried(self, client, service):
        """An ambiguous commit is never retried."""
        begin(service)
        service.add_exception(TransportError("deadline"), COMMIT)
        service.add_response({}, ROLLBACK)

        async def work(txn):
            pass

        with pytest.raises(TransportError):
            await client.run_in_transaction(work)
        assert service.methods_called() == [BEGIN_TRANSACTION, COMMIT, ROLLBACK]

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self, client):
        async def work(txn):
            pass

        with pytest.raises(ValidationError):
            await client.run_in_transaction(work, max_attempts=0)


class TestNonTransactional:
    """Tests for non-transactional client calls."""

    @pytest.mark.asyncio
    async def test_put_commits_without_transaction(self, client, service):
        """put() sends one Commit without a transaction id."""
        key = Key.of(PROJECT, ("Task", None))
        completed = key.with_id(11)
        service.add_response({"commit_version": "2", "keys": [completed.to_wire()]}, COMMIT)

        response = await client.put(Entity(key, {"n": 1}))

        _, request = service.requests[-1]
        assert "transaction" not in request
        assert response.keys == [completed]

    @pytest.mark.asyncio
    async def test_put_requires_entities(self, client):
        with pytest.raises(ValidationError):
            await client.put()

    @pytest.mark.asyncio
    async def test_delete(self, client, service):
        key = Key.of(PROJECT, ("Task", "a"))
        service.add_response({"commit_version": "3", "keys": []}, COMMIT)
        await client.delete(key)
        _, request = service.requests[-1]
        assert request["mutations"] == [{"delete": key.to_wire()}]

    @pytest.mark.asyncio
    async def test_allocate_ids(self, client, service):
        """allocate_ids only accepts incomplete keys and keeps order."""
        incomplete = Key.of(PROJECT, ("Task", None))
        service.add_response(
            {"keys": [incomplete.with_id(1).to_wire(), incomplete.with_id(2).to_wire()]},
            ALLOCATE_IDS,
        )
        keys = await client.allocate_ids(incomplete, incomplete)
        assert [k.id for k in keys] == [1, 2]

        with pytest.raises(ValidationError):
            await client.allocate_ids(incomplete.with_id(3))


class TestClientSetup:
    """Tests for client construction and connection."""

    def test_requires_project(self, service):
        with pytest.raises(ValidationError):
            TxStoreClient(project_id="", transport=service)

    def test_key_factory_uses_project_and_namespace(self, service):
        client = TxStoreClient(project_id=PROJECT, namespace="ns", transport=service)
        key = client.key_factory().kind("Task").new_key("a")
        assert key == Key.of(PROJECT, ("Task", "a"), namespace="ns")

    @pytest.mark.asyncio
    async def test_context_manager_connects(self, service):
        async with TxStoreClient(project_id=PROJECT, transport=service):
            assert service.connected
        assert not service.connected

    @pytest.mark.asyncio
    async def test_connect_failure_wrapped(self):
        class BrokenTransport(MockDatastoreService):
            async def connect(self):
                raise OSError("refused")

        client = TxStoreClient("db:1", PROJECT, transport=BrokenTransport())
        with pytest.raises(ConnectionError) as exc_info:
            await client.connect()
        assert exc_info.value.address == "db:1"

    def test_settings_from_env(self, monkeypatch):
        """ClientSettings reads TXSTORE_* variables."""
        monkeypatch.setenv("TXSTORE_HOST", "db.internal")
        monkeypatch.setenv("TXSTORE_PORT", "6000")
        monkeypatch.setenv("TXSTORE_PROJECT_ID", "prod")
        monkeypatch.setenv("TXSTORE_SECURE", "true")
        settings = ClientSettings()
        assert settings.address == "db.internal:6000"
        assert settings.project_id == "prod"
        assert settings.secure is True

        client = TxStoreClient.from_settings(settings)
        assert client.project_id == "prod"

    @pytest.mark.asyncio
    async def test_grpc_call_requires_connect(self):
        with pytest.raises(RuntimeError):
            await GrpcClient().call(BEGIN_TRANSACTION, {"project_id": PROJECT})


class TestGrpcTranslation:
    """Tests for gRPC status to SDK error mapping."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            (grpc.StatusCode.ABORTED, ConflictError),
            (grpc.StatusCode.INVALID_ARGUMENT, ValidationError),
            (grpc.StatusCode.NOT_FOUND, NotFoundError),
            (grpc.StatusCode.FAILED_PRECONDITION, NotFoundError),
            (grpc.StatusCode.UNAVAILABLE, TransportError),
            (grpc.StatusCode.DEADLINE_EXCEEDED, TransportError),
        ],
    )
    def test_status_mapping(self, code, expected):
        error = translate_rpc_error(COMMIT, FakeRpcError(code, "details"))
        assert isinstance(error, expected)

    def test_conflict_carries_keys(self):
        """Conflicting keys travel in trailing metadata."""
        metadata = ((CONFLICTING_KEYS_METADATA, json.dumps(["Task:a", "Task:b"])),)
        error = translate_rpc_error(
            COMMIT, FakeRpcError(grpc.StatusCode.ABORTED, "conflict", metadata)
        )
        assert isinstance(error, ConflictError)
        assert error.conflicting_keys == ["Task:a", "Task:b"]

    def test_conflict_without_metadata(self):
        error = translate_rpc_error(COMMIT, FakeRpcError(grpc.StatusCode.ABORTED, "conflict"))
        assert error.conflicting_keys == []

    def test_transport_error_carries_status(self):
        error = translate_rpc_error(COMMIT, FakeRpcError(grpc.StatusCode.UNAVAILABLE, "down"))
        assert error.method == COMMIT
        assert error.status == "UNAVAILABLE"

    def test_struct_codec(self):
        """Messages survive the Struct encoding; integers stay strings."""
        message = {"project_id": PROJECT, "keys": [{"path": [{"kind": "Task", "id": "9"}]}]}
        assert decode_message(encode_message(message)) == message
