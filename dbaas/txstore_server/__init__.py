"""
TxStore Server - transactional entity store with optimistic concurrency.

This package implements the server side of TxStore:
- Entities addressed by hierarchical keys, grouped per project
- Multi-version SQLite storage, one database per project
- Snapshot reads and optimistic commits validated at commit time

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌─────────────────────┐
    │   Client    │────▶│  gRPC Datastore  │────▶│ TransactionRegistry │
    │   (SDK)     │     │    Servicer      │     │  (snapshots, reads) │
    └─────────────┘     └────────┬─────────┘     └─────────────────────┘
                                 │
                                 ▼
                        ┌──────────────────┐
                        │   EntityStore    │
                        │ (SQLite, MVCC)   │
                        └──────────────────┘

Invariants:
    - Commits are all-or-nothing and get strictly increasing versions
    - A transaction reads one snapshot for its whole lifetime
    - A commit fails if any key it read or writes changed after its snapshot
    - All operations require project_id

How to change safely:
    - Wire fields are only ever added
    - Integers stay strings on the wire
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
