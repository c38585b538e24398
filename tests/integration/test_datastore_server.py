"""
Integration tests for the SDK against a real gRPC Datastore server.

A grpc.aio server is started on an ephemeral port, backed by a
temporary SQLite EntityStore. Lookup and query batch limits are small
so deferral and paging are exercised with a handful of entities.

Tests cover:
- Transaction lifecycle properties end to end
- Snapshot reads and optimistic conflicts
- get_many / fetch semantics including deferred keys
- Queries: filters, ancestors, ordering, paging and cursors
- Id allocation and non-transactional writes
- Server-side validation and unknown transactions
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from txstore_sdk import (
    ConflictError,
    Entity,
    InvalidStateError,
    Key,
    NotFoundError,
    PropertyFilter,
    Query,
    TransactionState,
    TxStoreClient,
    ValidationError,
)
from txstore_sdk._grpc_client import GrpcClient
from txstore_sdk.transport import LOOKUP
from txstore_server.api import DatastoreServicer, GrpcServer
from txstore_server.config import TransactionConfig
from txstore_server.store import EntityStore, StoreKey
from txstore_server.transactions import TransactionRegistry

PROJECT = "integration"


def task_key(name: str) -> Key:
    return Key.of(PROJECT, ("Task", name))


def task(name: str, **props) -> Entity:
    return Entity(task_key(name), props)


@pytest_asyncio.fixture
async def server(tmp_path):
    """Start a Datastore server on an ephemeral port."""
    store = EntityStore(str(tmp_path), wal_mode=False)
    servicer = DatastoreServicer(
        store=store,
        registry=TransactionRegistry(idle_timeout_seconds=60),
        config=TransactionConfig(max_lookup_batch=2, default_query_batch=2, max_query_batch=10),
    )
    grpc_server = GrpcServer(servicer, host="127.0.0.1", port=0)
    await grpc_server.start()
    yield grpc_server
    await grpc_server.stop(0)


@pytest_asyncio.fixture
async def client(server):
    async with TxStoreClient(f"127.0.0.1:{server.port}", PROJECT, timeout=10) as client:
        yield client


class TestTransactionProperties:
    """End-to-end checks of the coordinator contract."""

    @pytest.mark.asyncio
    async def test_active_until_commit_or_rollback(self, client):
        first = await client.new_transaction()
        assert first.active()
        await first.commit()
        assert not first.active()

        second = await client.new_transaction()
        assert second.active()
        await second.rollback()
        assert not second.active()

    @pytest.mark.asyncio
    async def test_put_visible_after_commit_only(self, client):
        """Buffered writes are invisible inside the transaction."""
        txn = await client.new_transaction()
        txn.put(task("a", n=1))
        assert await txn.get(task_key("a")) is None
        await txn.commit()

        assert await client.get(task_key("a")) == task("a", n=1)

    @pytest.mark.asyncio
    async def test_rollback_leaves_store_unchanged(self, client):
        await client.put(task("a", n=1))

        txn = await client.new_transaction()
        txn.put(task("a", n=2))
        await txn.rollback()

        assert await client.get(task_key("a")) == task("a", n=1)

    @pytest.mark.asyncio
    async def test_second_commit_and_late_rollback_fail(self, client):
        txn = await client.new_transaction()
        txn.put(task("a", n=1))
        await txn.commit()
        with pytest.raises(InvalidStateError):
            await txn.commit()
        with pytest.raises(InvalidStateError):
            await txn.rollback()

    @pytest.mark.asyncio
    async def test_concurrent_read_write_conflict(self, client):
        """A and B read and write k; A commits first, B conflicts."""
        await client.put(task("k", n=0))

        a = await client.new_transaction()
        b = await client.new_transaction()
        entity_a = await a.get(task_key("k"))
        entity_b = await b.get(task_key("k"))

        a.put(entity_a.to_builder().set("n", entity_a["n"] + 1).build())
        b.put(entity_b.to_builder().set("n", entity_b["n"] + 10).build())

        await a.commit()
        with pytest.raises(ConflictError):
            await b.commit()

        assert b.state is TransactionState.ROLLED_BACK
        await b.rollback()
        assert (await client.get(task_key("k")))["n"] == 1

    @pytest.mark.asyncio
    async def test_blind_writes_conflict(self, client):
        """Two transactions writing the same key without reading it conflict."""
        a = await client.new_transaction()
        b = await client.new_transaction()
        a.put(task("k", n=1))
        b.put(task("k", n=2))
        await a.commit()
        with pytest.raises(ConflictError) as exc_info:
            await b.commit()

        expected = StoreKey(PROJECT, "", (("Task", None, "k"),)).encoded_path
        assert exc_info.value.conflicting_keys == [expected]
        assert exc_info.value.transaction_id == b.transaction_id

    @pytest.mark.asyncio
    async def test_disjoint_transactions_both_commit(self, client):
        a = await client.new_transaction()
        b = await client.new_transaction()
        await a.get(task_key("x"))
        await b.get(task_key("y"))
        a.put(task("x", n=1))
        b.put(task("y", n=1))
        await a.commit()
        await b.commit()
        assert await client.fetch(task_key("x"), task_key("y")) == [
            task("x", n=1),
            task("y", n=1),
        ]

    @pytest.mark.asyncio
    async def test_snapshot_is_stable(self, client):
        """Reads after another commit still see the first snapshot."""
        await client.put(task("a", n=1), task("b", n=1))

        txn = await client.new_transaction()
        assert (await txn.get(task_key("a")))["n"] == 1
        await client.put(task("b", n=2))
        assert (await txn.get(task_key("b")))["n"] == 1
        await txn.rollback()

    @pytest.mark.asyncio
    async def test_fetch_and_get_many(self, client):
        """fetch keeps positions; get_many yields found entities only."""
        await client.put(task("k1", n=1))

        txn = await client.new_transaction()
        assert await txn.fetch(task_key("k1"), task_key("k2")) == [task("k1", n=1), None]
        found = [e async for e in txn.get_many(task_key("k1"), task_key("k2"))]
        assert found == [task("k1", n=1)]
        await txn.rollback()

    @pytest.mark.asyncio
    async def test_scoped_transaction_releases_server_state(self, client, server):
        async with client.transaction() as txn:
            await txn.get(task_key("a"))
        assert txn.state is TransactionState.ROLLED_BACK
        assert len(server.servicer.registry) == 0

    @pytest.mark.asyncio
    async def test_run_in_transaction_retries_conflict(self, client):
        await client.put(task("counter", n=0))
        interfered = False

        async def increment(txn):
            nonlocal interfered
            entity = await txn.get(task_key("counter"))
            if not interfered:
                interfered = True
                await client.put(task("counter", n=100))
            txn.put(entity.to_builder().set("n", entity["n"] + 1).build())

        await client.run_in_transaction(increment)
        assert (await client.get(task_key("counter")))["n"] == 101


class TestReads:
    """Tests for lookups against the server."""

    @pytest.mark.asyncio
    async def test_deferred_keys_are_followed(self, client):
        """More keys than max_lookup_batch are resolved over several calls."""
        await client.put(*(task(f"t{i}", n=i) for i in range(5)))
        keys = [task_key(f"t{i}") for i in range(5)]

        fetched = await client.fetch(*keys)
        assert [e["n"] for e in fetched] == [0, 1, 2, 3, 4]

        results = client.get_many(*keys, task_key("missing"))
        found = await results.to_list()
        assert sorted(e["n"] for e in found) == [0, 1, 2, 3, 4]
        assert results.missing == [task_key("missing")]

    @pytest.mark.asyncio
    async def test_all_value_types_roundtrip(self, client):
        key = task_key("typed")
        entity = (
            Entity.builder(key)
            .set("none", None)
            .set("flag", True)
            .set("big", 2**60 + 1)
            .set("ratio", 0.5)
            .set("text", "hello")
            .set("raw", b"\x00\x01")
            .set("at", datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc))
            .set("owner", Key.of(PROJECT, ("User", 5)))
            .set("tags", ["a", "b"])
            .set("empty", [])
            .build()
        )
        await client.put(entity)
        assert await client.get(key) == entity

    @pytest.mark.asyncio
    async def test_delete(self, client):
        await client.put(task("a", n=1))
        await client.delete(task_key("a"))
        assert await client.get(task_key("a")) is None


class TestQueries:
    """Tests for RunQuery."""

    @pytest.mark.asyncio
    async def test_filter_and_order(self, client):
        await client.put(*(task(f"t{i}", priority=i % 3, n=i) for i in range(6)))
        query = (
            Query.builder()
            .kind("Task")
            .filter(PropertyFilter.ge("priority", 1))
            .order_by("priority", descending=True)
            .build()
        )
        results = await client.run(query).to_list()
        assert [e["n"] for e in results] == [2, 5, 1, 4]

    @pytest.mark.asyncio
    async def test_paging_and_cursor(self, client):
        """Batches are pulled lazily; a cursor resumes after consumed batches."""
        await client.put(*(task(f"t{i}", n=i) for i in range(5)))
        query = Query(kind="Task")

        results = client.run(query)
        first = [await results.__anext__(), await results.__anext__()]
        cursor = results.cursor_after()
        assert [e["n"] for e in first] == [0, 1]

        rest = await client.run(query, start_cursor=cursor).to_list()
        assert [e["n"] for e in rest] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_cursor_expires_after_compaction(self, client, server):
        """A cursor whose snapshot was compacted away is refused, not misread."""
        await client.put(*(task(f"t{i}", n=i) for i in range(4)))
        query = Query(kind="Task")

        results = client.run(query, batch_size=2)
        first = [await results.__anext__(), await results.__anext__()]
        cursor = results.cursor_after()
        assert [e["n"] for e in first] == [0, 1]

        await client.put(task("t2", n=20), task("t3", n=30))
        assert await server.servicer.compact() == 2

        with pytest.raises(ValidationError, match="expired"):
            await client.run(query, start_cursor=cursor).to_list()

        # A fresh query after compaction pages normally
        fresh = await client.run(query, batch_size=2).to_list()
        assert [e["n"] for e in fresh] == [0, 1, 20, 30]

    @pytest.mark.asyncio
    async def test_limit(self, client):
        await client.put(*(task(f"t{i}", n=i) for i in range(5)))
        results = await client.run(Query(kind="Task", limit=3), batch_size=2).to_list()
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_ancestor_query(self, client):
        factory = client.key_factory()
        list_a = factory.kind("List").new_key("a")
        list_b = factory.reset().kind("List").new_key("b")
        items = factory.reset().parent(list_a).kind("Item")
        await client.put(
            Entity(items.new_key("i1"), {"n": 1}),
            Entity(items.new_key("i2"), {"n": 2}),
            Entity(client.key_factory().parent(list_b).kind("Item").new_key("i3"), {"n": 3}),
        )

        query = Query.builder().kind("Item").filter(PropertyFilter.has_ancestor(list_a)).build()
        results = await client.run(query).to_list()
        assert [e["n"] for e in results] == [1, 2]

    @pytest.mark.asyncio
    async def test_query_results_join_read_set(self, client):
        """A transaction conflicts if a queried entity changes before commit."""
        await client.put(task("a", n=1))

        txn = await client.new_transaction()
        found = await txn.run(Query(kind="Task")).to_list()
        assert len(found) == 1
        await client.put(task("a", n=2))
        txn.put(task("summary", total=1))
        with pytest.raises(ConflictError):
            await txn.commit()

    @pytest.mark.asyncio
    async def test_namespaces_are_separate(self, server):
        async with TxStoreClient(
            f"127.0.0.1:{server.port}", PROJECT, namespace="tenant-a"
        ) as scoped:
            key = scoped.key_factory().kind("Task").new_key("a")
            await scoped.put(Entity(key, {"n": 1}))
            assert len(await scoped.run(Query(kind="Task")).to_list()) == 1

        async with TxStoreClient(f"127.0.0.1:{server.port}", PROJECT) as default:
            assert await default.run(Query(kind="Task")).to_list() == []


class TestIdsAndErrors:
    """Tests for id allocation and error mapping."""

    @pytest.mark.asyncio
    async def test_allocate_ids(self, client):
        incomplete = client.key_factory().kind("Task").new_key()
        keys = await client.allocate_ids(incomplete, incomplete)
        assert [k.id for k in keys] == [1, 2]
        assert (await client.allocate_id(incomplete)).id == 3

    @pytest.mark.asyncio
    async def test_commit_completes_incomplete_keys(self, client):
        incomplete = client.key_factory().kind("Task").new_key()
        txn = await client.new_transaction()
        txn.put(Entity(incomplete, {"n": 1}))
        response = await txn.commit()
        assert response.keys[0].is_complete
        assert (await client.get(response.keys[0]))["n"] == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client, server):
        """A transaction the server dropped ends locally with NotFoundError."""
        txn = await client.new_transaction()
        server.servicer.registry.remove(txn.transaction_id)
        with pytest.raises(NotFoundError):
            await txn.commit()
        assert txn.state is TransactionState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_invalid_request(self, server):
        async with GrpcClient("127.0.0.1", server.port) as raw:
            with pytest.raises(ValidationError):
                await raw.call(LOOKUP, {"project_id": "bad/project", "keys": []})

    @pytest.mark.asyncio
    async def test_concurrency_limited_server_serves(self, server):
        """A server started with an RPC limit still handles sequential calls."""
        limited = GrpcServer(
            server.servicer, host="127.0.0.1", port=0, max_concurrent_rpcs=2
        )
        await limited.start()
        try:
            assert limited.max_concurrent_rpcs == 2
            async with TxStoreClient(f"127.0.0.1:{limited.port}", PROJECT, timeout=10) as client:
                await client.put(task("a", n=1))
                assert (await client.get(task_key("a")))["n"] == 1
        finally:
            await limited.stop(0)
