"""
Storage layer for TxStore.

Exports:
    EntityStore: Multi-version SQLite store, one database per project
    StoreKey: Validated wire key with its sortable encoded path
    QueryPlan: Validated query evaluated against store candidates
"""

from .entity_store import CommitRecord, EntityStore, Mutation, StoredEntity
from .keys import StoreKey, encode_path
from .query_engine import Candidate, QueryPlan, comparable

__all__ = [
    "Candidate",
    "CommitRecord",
    "EntityStore",
    "Mutation",
    "QueryPlan",
    "StoreKey",
    "StoredEntity",
    "comparable",
    "encode_path",
]
