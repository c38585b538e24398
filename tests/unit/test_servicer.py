"""
Unit tests for DatastoreServicer request handling.

The servicer is called directly with wire dictionaries, without gRPC.

Tests cover:
- Request validation
- Lookup deferral and de-duplication
- Query batching and cursors
- Commit and rollback bookkeeping in the registry
- Maintenance: expiry and compaction
"""

import pytest

from txstore_server.api.grpc_server import DatastoreServicer, decode_cursor, encode_cursor
from txstore_server.config import TransactionConfig
from txstore_server.errors import (
    InvalidRequestError,
    TransactionNotFoundError,
    WriteConflictError,
)
from txstore_server.store import EntityStore
from txstore_server.transactions import TransactionRegistry

PROJECT = "unit"


def key_wire(name, kind="Task"):
    return {"partition": {"project_id": PROJECT, "namespace": ""}, "path": [{"kind": kind, "name": name}]}


def upsert(name, n):
    return {"upsert": {"key": key_wire(name), "properties": {"n": {"integer_value": str(n)}}}}


@pytest.fixture
def servicer(tmp_path):
    return DatastoreServicer(
        store=EntityStore(str(tmp_path), wal_mode=False),
        registry=TransactionRegistry(),
        config=TransactionConfig(max_lookup_batch=2, default_query_batch=2, max_query_batch=3),
    )


async def put(servicer, *mutations):
    return await servicer.commit({"project_id": PROJECT, "mutations": list(mutations)})


class TestValidation:
    """Tests for request validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("project_id", [None, "", "a.b", "x/y"])
    async def test_project_id(self, servicer, project_id):
        with pytest.raises(InvalidRequestError):
            await servicer.begin_transaction({"project_id": project_id})

    @pytest.mark.asyncio
    async def test_lookup_rejects_incomplete_keys(self, servicer):
        incomplete = {"partition": {"project_id": PROJECT}, "path": [{"kind": "Task"}]}
        with pytest.raises(InvalidRequestError):
            await servicer.lookup({"project_id": PROJECT, "keys": [incomplete]})

    @pytest.mark.asyncio
    async def test_lookup_rejects_foreign_keys(self, servicer):
        foreign = {"partition": {"project_id": "other"}, "path": [{"kind": "Task", "name": "a"}]}
        with pytest.raises(InvalidRequestError):
            await servicer.lookup({"project_id": PROJECT, "keys": [foreign]})

    @pytest.mark.asyncio
    async def test_commit_rejects_bad_values(self, servicer):
        bad = {"upsert": {"key": key_wire("a"), "properties": {"n": {"weird_value": 1}}}}
        with pytest.raises(InvalidRequestError):
            await put(servicer, bad)

    @pytest.mark.asyncio
    async def test_commit_rejects_nested_arrays(self, servicer):
        nested = {"array_value": {"values": [{"array_value": {"values": []}}]}}
        bad = {"upsert": {"key": key_wire("a"), "properties": {"n": nested}}}
        with pytest.raises(InvalidRequestError):
            await put(servicer, bad)

    @pytest.mark.asyncio
    async def test_commit_rejects_incomplete_delete(self, servicer):
        incomplete = {"partition": {"project_id": PROJECT}, "path": [{"kind": "Task"}]}
        with pytest.raises(InvalidRequestError):
            await put(servicer, {"delete": incomplete})

    @pytest.mark.asyncio
    async def test_invalid_cursor(self, servicer):
        with pytest.raises(InvalidRequestError):
            await servicer.run_query(
                {"project_id": PROJECT, "query": {"kind": "Task"}, "start_cursor": "%%%"}
            )

    @pytest.mark.asyncio
    async def test_allocate_rejects_complete_keys(self, servicer):
        with pytest.raises(InvalidRequestError):
            await servicer.allocate_ids({"project_id": PROJECT, "keys": [key_wire("a")]})


class TestLookup:
    """Tests for Lookup."""

    @pytest.mark.asyncio
    async def test_defers_beyond_batch_limit(self, servicer):
        await put(servicer, upsert("a", 1), upsert("b", 2))
        keys = [key_wire("c"), key_wire("a"), key_wire("b")]

        response = await servicer.lookup({"project_id": PROJECT, "keys": keys})

        assert [e["key"]["path"][0]["name"] for e in response["found"]] == ["a"]
        assert [k["path"][0]["name"] for k in response["missing"]] == ["c"]
        assert response["deferred"] == [key_wire("b")]

    @pytest.mark.asyncio
    async def test_duplicate_keys_resolved_once(self, servicer):
        await put(servicer, upsert("a", 1))
        response = await servicer.lookup(
            {"project_id": PROJECT, "keys": [key_wire("a"), key_wire("a")]}
        )
        assert len(response["found"]) == 1
        assert response["deferred"] == []

    @pytest.mark.asyncio
    async def test_transactional_lookup_records_reads(self, servicer):
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        await servicer.lookup(
            {"project_id": PROJECT, "transaction": txn_id, "keys": [key_wire("a")]}
        )
        txn = servicer.registry.get(PROJECT, txn_id)
        assert txn.read_version == 0
        assert len(txn.read_keys) == 1


class TestRunQuery:
    """Tests for RunQuery batching."""

    @pytest.mark.asyncio
    async def test_batches_with_cursor(self, servicer):
        await put(servicer, *(upsert(f"t{i}", i) for i in range(3)))
        request = {"project_id": PROJECT, "query": {"kind": "Task"}}

        first = await servicer.run_query(request)
        assert len(first["entities"]) == 2
        assert first["more_results"] is True
        assert decode_cursor(first["end_cursor"]) == (2, 1)

        second = await servicer.run_query({**request, "start_cursor": first["end_cursor"]})
        assert len(second["entities"]) == 1
        assert second["more_results"] is False

    @pytest.mark.asyncio
    async def test_batch_size_capped(self, servicer):
        await put(servicer, *(upsert(f"t{i}", i) for i in range(5)))
        response = await servicer.run_query(
            {"project_id": PROJECT, "query": {"kind": "Task"}, "batch_size": "50"}
        )
        assert len(response["entities"]) == 3

    @pytest.mark.asyncio
    async def test_cursor_pins_snapshot(self, servicer):
        """Non-transactional paging keeps reading the cursor's version."""
        await put(servicer, *(upsert(f"t{i}", i) for i in range(3)))
        first = await servicer.run_query({"project_id": PROJECT, "query": {"kind": "Task"}})
        await put(servicer, upsert("t0a", 99))

        second = await servicer.run_query(
            {"project_id": PROJECT, "query": {"kind": "Task"}, "start_cursor": first["end_cursor"]}
        )
        assert [e["key"]["path"][0]["name"] for e in second["entities"]] == ["t2"]

    def test_cursor_encoding(self):
        assert decode_cursor(encode_cursor(10, 4)) == (10, 4)


class TestCommitAndRollback:
    """Tests for registry bookkeeping."""

    @pytest.mark.asyncio
    async def test_commit_removes_transaction(self, servicer):
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        response = await servicer.commit(
            {"project_id": PROJECT, "transaction": txn_id, "mutations": [upsert("a", 1)]}
        )
        assert response["commit_version"] == "1"
        assert len(servicer.registry) == 0

    @pytest.mark.asyncio
    async def test_conflict_removes_transaction(self, servicer):
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        await put(servicer, upsert("a", 1))
        with pytest.raises(WriteConflictError):
            await servicer.commit(
                {"project_id": PROJECT, "transaction": txn_id, "mutations": [upsert("a", 2)]}
            )
        assert len(servicer.registry) == 0

    @pytest.mark.asyncio
    async def test_invalid_commit_keeps_transaction(self, servicer):
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        with pytest.raises(InvalidRequestError):
            await servicer.commit(
                {"project_id": PROJECT, "transaction": txn_id, "mutations": [{"bogus": {}}]}
            )
        assert len(servicer.registry) == 1

    @pytest.mark.asyncio
    async def test_empty_commit(self, servicer):
        """A transaction with no mutations commits without a new version."""
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        response = await servicer.commit({"project_id": PROJECT, "transaction": txn_id})
        assert response == {"commit_version": "0", "keys": []}

    @pytest.mark.asyncio
    async def test_rollback(self, servicer):
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        assert await servicer.rollback({"project_id": PROJECT, "transaction": txn_id}) == {}
        with pytest.raises(TransactionNotFoundError):
            await servicer.rollback({"project_id": PROJECT, "transaction": txn_id})

    @pytest.mark.asyncio
    async def test_rollback_requires_transaction(self, servicer):
        with pytest.raises(InvalidRequestError):
            await servicer.rollback({"project_id": PROJECT})


class TestMaintenance:
    """Tests for expiry and compaction."""

    @pytest.mark.asyncio
    async def test_compaction_respects_open_snapshots(self, servicer):
        await put(servicer, upsert("a", 1))
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        await servicer.lookup({"project_id": PROJECT, "transaction": txn_id, "keys": [key_wire("a")]})
        await put(servicer, upsert("a", 2))
        await put(servicer, upsert("a", 3))

        # Snapshot 1 is still open, so every version stays
        assert await servicer.compact() == 0
        found = await servicer.lookup(
            {"project_id": PROJECT, "transaction": txn_id, "keys": [key_wire("a")]}
        )
        assert found["found"][0]["properties"]["n"] == {"integer_value": "1"}

        await servicer.rollback({"project_id": PROJECT, "transaction": txn_id})
        assert await servicer.compact() == 2

    @pytest.mark.asyncio
    async def test_expire_idle(self, tmp_path):
        now = [0.0]
        servicer = DatastoreServicer(
            store=EntityStore(str(tmp_path), wal_mode=False),
            registry=TransactionRegistry(idle_timeout_seconds=10, clock=lambda: now[0]),
        )
        txn_id = (await servicer.begin_transaction({"project_id": PROJECT}))["transaction"]
        now[0] = 11.0
        assert servicer.expire_idle_transactions() == [txn_id]

    @pytest.mark.asyncio
    async def test_compaction_expires_older_cursors(self, servicer):
        await put(servicer, *(upsert(f"t{i}", i) for i in range(3)))
        request = {"project_id": PROJECT, "query": {"kind": "Task"}}
        stale = await servicer.run_query(request)
        await put(servicer, upsert("t2", 9))

        await servicer.compact()

        with pytest.raises(InvalidRequestError, match="expired"):
            await servicer.run_query({**request, "start_cursor": stale["end_cursor"]})

    @pytest.mark.asyncio
    async def test_cursor_at_compaction_point_still_pages(self, servicer):
        await put(servicer, *(upsert(f"t{i}", i) for i in range(3)))
        await servicer.compact()
        request = {"project_id": PROJECT, "query": {"kind": "Task"}}
        first = await servicer.run_query(request)
        await servicer.compact()

        second = await servicer.run_query({**request, "start_cursor": first["end_cursor"]})
        assert [e["key"]["path"][0]["name"] for e in second["entities"]] == ["t2"]
