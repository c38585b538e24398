"""
Multi-version SQLite entity store for TxStore.

This module manages one SQLite database per project holding every
committed version of every entity. Readers pick a snapshot version and
see, for each key, the newest row at or below it; writers append rows
at a new version inside one SQLite transaction.

Invariants:
    - One SQLite file per project
    - Versions are assigned by commit, strictly increasing, starting at 1
    - A commit validates its conflict set and writes its mutations in the
      same BEGIN IMMEDIATE transaction, so it is all-or-nothing
    - Deletes are tombstone rows until compaction removes them
    - Snapshots at or above the compaction watermark read complete data

How to change safely:
    - Schema migrations must be backward compatible
    - Never rewrite rows at or above the oldest open snapshot

Table schema:
    entity_versions:
        - namespace TEXT
        - key_path TEXT (encoded, see store.keys)
        - kind TEXT
        - version INTEGER
        - key_json TEXT (wire key)
        - properties_json TEXT (wire properties, insertion ordered)
        - deleted INTEGER
        - PRIMARY KEY (namespace, key_path, version)

    commits:
        - version INTEGER PRIMARY KEY
        - committed_at INTEGER (Unix ms)
        - mutation_count INTEGER

    id_sequences:
        - namespace TEXT
        - kind TEXT
        - next_id INTEGER
        - PRIMARY KEY (namespace, kind)

    compactions:
        - keep_after_version INTEGER (snapshots below it are incomplete)
        - compacted_at INTEGER (Unix ms)
        - removed INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import WriteConflictError
from .keys import StoreKey
from .query_engine import Candidate

logger = logging.getLogger(__name__)


@dataclass
class Mutation:
    """One write of a commit.

    Attributes:
        op: "upsert" or "delete"
        key: Target key; upserts may carry an incomplete key
        properties: Wire properties for upserts
    """

    op: str
    key: StoreKey
    properties: dict[str, Any] | None = None


@dataclass
class StoredEntity:
    """Entity row visible at some version."""

    key: dict[str, Any]
    properties: dict[str, Any]
    version: int

    def to_wire(self) -> dict[str, Any]:
        return {"key": self.key, "properties": self.properties}


@dataclass
class CommitRecord:
    """Result of an applied commit.

    Attributes:
        version: Version assigned to the commit (head if nothing was written)
        keys: Final keys of upserted entities, in mutation order
    """

    version: int
    keys: list[StoreKey]


class EntityStore:
    """Per-project SQLite store of versioned entities.

    Thread safety:
        Each operation opens its own connection; an asyncio lock
        serializes operations within the process.

    Example:
        >>> store = EntityStore("/var/lib/txstore")
        >>> head = await store.head_version("demo")
        >>> found = await store.lookup("demo", [key], head)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the entity store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized: set[str] = set()
        self._lock = asyncio.Lock()

    def _get_db_path(self, project_id: str) -> Path:
        """Get database file path for a project."""
        # Sanitize project_id to prevent path traversal
        safe_id = "".join(c for c in project_id if c.isalnum() or c in "-_")
        return self.data_dir / f"project_{safe_id}.db"

    @contextmanager
    def _get_connection(self, project_id: str) -> Iterator[sqlite3.Connection]:
        """Open a connection, creating the database and schema on first use."""
        db_path = self._get_db_path(project_id)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if project_id not in self._initialized:
                self._create_schema(conn)
                self._initialized.add(project_id)
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entity_versions (
                namespace TEXT NOT NULL,
                key_path TEXT NOT NULL,
                kind TEXT NOT NULL,
                version INTEGER NOT NULL,
                key_json TEXT NOT NULL,
                properties_json TEXT NOT NULL DEFAULT '{}',
                deleted INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (namespace, key_path, version)
            );

            CREATE INDEX IF NOT EXISTS idx_versions_kind
                ON entity_versions(namespace, kind, key_path, version);

            CREATE TABLE IF NOT EXISTS commits (
                version INTEGER PRIMARY KEY,
                committed_at INTEGER NOT NULL,
                mutation_count INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS id_sequences (
                namespace TEXT NOT NULL,
                kind TEXT NOT NULL,
                next_id INTEGER NOT NULL,
                PRIMARY KEY (namespace, kind)
            );

            CREATE TABLE IF NOT EXISTS compactions (
                keep_after_version INTEGER NOT NULL,
                compacted_at INTEGER NOT NULL,
                removed INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    @staticmethod
    def _head(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(version), 0) AS head FROM commits").fetchone()
        return int(row["head"])

    async def head_version(self, project_id: str) -> int:
        """Latest committed version, 0 for an empty project."""
        async with self._lock:
            with self._get_connection(project_id) as conn:
                return self._head(conn)

    async def compaction_watermark(self, project_id: str) -> int:
        """Oldest version still readable in full, 0 if never compacted.

        Snapshots below this version may be missing rows that compaction
        removed.
        """
        async with self._lock:
            with self._get_connection(project_id) as conn:
                row = conn.execute(
                    "SELECT COALESCE(MAX(keep_after_version), 0) AS mark FROM compactions"
                ).fetchone()
                return int(row["mark"])

    # Reads

    async def lookup(
        self,
        project_id: str,
        keys: Iterable[StoreKey],
        read_version: int,
    ) -> dict[StoreKey, StoredEntity]:
        """Read keys as of a version.

        Args:
            project_id: Project identifier
            keys: Complete keys to read
            read_version: Snapshot version

        Returns:
            Mapping of found keys to entities; missing keys are absent
        """
        found: dict[StoreKey, StoredEntity] = {}
        async with self._lock:
            with self._get_connection(project_id) as conn:
                for key in keys:
                    row = conn.execute(
                        """
                        SELECT key_json, properties_json, deleted, version
                        FROM entity_versions
                        WHERE namespace = ? AND key_path = ? AND version <= ?
                        ORDER BY version DESC LIMIT 1
                        """,
                        (key.namespace, key.encoded_path, read_version),
                    ).fetchone()
                    if row is not None and not row["deleted"]:
                        found[key] = StoredEntity(
                            key=json.loads(row["key_json"]),
                            properties=json.loads(row["properties_json"]),
                            version=int(row["version"]),
                        )
        return found

    async def scan_kind(
        self,
        project_id: str,
        namespace: str,
        kind: str,
        read_version: int,
        ancestor: StoreKey | None = None,
    ) -> list[Candidate]:
        """List live entities of a kind as of a version, in key order.

        Args:
            project_id: Project identifier
            namespace: Namespace to scan
            kind: Entity kind (kind of the last path element)
            read_version: Snapshot version
            ancestor: Restrict to the ancestor and its descendants
        """
        params: list[Any] = [namespace, kind, read_version]
        ancestor_clause = ""
        if ancestor is not None:
            prefix = ancestor.encoded_path
            ancestor_clause = "AND (key_path = ? OR substr(key_path, 1, ?) = ?)"
            params.extend([prefix, len(prefix) + 1, prefix + "/"])

        async with self._lock:
            with self._get_connection(project_id) as conn:
                rows = conn.execute(
                    f"""
                    SELECT ev.key_path, ev.key_json, ev.properties_json
                    FROM entity_versions ev
                    JOIN (
                        SELECT key_path, MAX(version) AS latest
                        FROM entity_versions
                        WHERE namespace = ? AND kind = ? AND version <= ?
                        {ancestor_clause}
                        GROUP BY key_path
                    ) l ON ev.key_path = l.key_path AND ev.version = l.latest
                    WHERE ev.namespace = ? AND ev.deleted = 0
                    ORDER BY ev.key_path
                    """,
                    (*params, namespace),
                ).fetchall()

        return [
            Candidate(
                key_path=row["key_path"],
                key=json.loads(row["key_json"]),
                properties=json.loads(row["properties_json"]),
            )
            for row in rows
        ]

    # Writes

    async def apply_commit(
        self,
        project_id: str,
        mutations: list[Mutation],
        conflict_keys: Iterable[StoreKey] = (),
        baseline_version: int | None = None,
    ) -> CommitRecord:
        """Validate and apply a batch of mutations atomically.

        Args:
            project_id: Project identifier
            mutations: Ordered writes; later writes to a key win
            conflict_keys: Keys that must not have changed since baseline
            baseline_version: Snapshot the transaction read from; None skips
                validation (non-transactional commit)

        Returns:
            CommitRecord with new version and completed keys

        Raises:
            WriteConflictError: If any conflict key has a version above baseline
        """
        async with self._lock:
            with self._get_connection(project_id) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    record = self._apply_locked(
                        conn, mutations, list(conflict_keys), baseline_version
                    )
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

        if mutations:
            logger.debug(
                "Commit applied",
                extra={
                    "project_id": project_id,
                    "version": record.version,
                    "mutations": len(mutations),
                },
            )
        return record

    def _apply_locked(
        self,
        conn: sqlite3.Connection,
        mutations: list[Mutation],
        conflict_keys: list[StoreKey],
        baseline_version: int | None,
    ) -> CommitRecord:
        head = self._head(conn)
        if not mutations:
            return CommitRecord(version=head, keys=[])

        if baseline_version is not None:
            conflicts = []
            for key in conflict_keys:
                row = conn.execute(
                    """
                    SELECT MAX(version) AS latest FROM entity_versions
                    WHERE namespace = ? AND key_path = ?
                    """,
                    (key.namespace, key.encoded_path),
                ).fetchone()
                if row["latest"] is not None and row["latest"] > baseline_version:
                    conflicts.append(key.encoded_path)
            if conflicts:
                raise WriteConflictError(
                    f"{len(conflicts)} key(s) changed since snapshot version {baseline_version}",
                    conflicting_keys=conflicts,
                )

        version = head + 1
        completed: list[StoreKey] = []
        for mutation in mutations:
            key = mutation.key
            if not key.is_complete:
                key = key.with_id(self._next_ids(conn, key.namespace, key.kind, 1)[0])
            deleted = mutation.op == "delete"
            conn.execute(
                """
                INSERT OR REPLACE INTO entity_versions
                    (namespace, key_path, kind, version, key_json, properties_json, deleted)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    key.namespace,
                    key.encoded_path,
                    key.kind,
                    version,
                    json.dumps(key.to_wire()),
                    json.dumps({} if deleted else (mutation.properties or {})),
                    1 if deleted else 0,
                ),
            )
            if not deleted:
                completed.append(key)

        conn.execute(
            "INSERT INTO commits (version, committed_at, mutation_count) VALUES (?, ?, ?)",
            (version, int(time.time() * 1000), len(mutations)),
        )
        return CommitRecord(version=version, keys=completed)

    @staticmethod
    def _next_ids(conn: sqlite3.Connection, namespace: str, kind: str, count: int) -> list[int]:
        row = conn.execute(
            "SELECT next_id FROM id_sequences WHERE namespace = ? AND kind = ?",
            (namespace, kind),
        ).fetchone()
        start = int(row["next_id"]) if row else 1
        conn.execute(
            """
            INSERT INTO id_sequences (namespace, kind, next_id) VALUES (?, ?, ?)
            ON CONFLICT (namespace, kind) DO UPDATE SET next_id = excluded.next_id
            """,
            (namespace, kind, start + count),
        )
        return list(range(start, start + count))

    async def allocate_ids(self, project_id: str, keys: list[StoreKey]) -> list[StoreKey]:
        """Complete incomplete keys with fresh ids, preserving order."""
        async with self._lock:
            with self._get_connection(project_id) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    allocated = [
                        key.with_id(self._next_ids(conn, key.namespace, key.kind, 1)[0])
                        for key in keys
                    ]
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        return allocated

    # Maintenance

    async def compact(self, project_id: str, keep_after_version: int) -> int:
        """Remove versions no snapshot at or after keep_after_version can see.

        For every key, rows older than its newest row at or below
        keep_after_version are dropped, then tombstones at or below it.

        Returns:
            Number of rows removed
        """
        async with self._lock:
            with self._get_connection(project_id) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    superseded = conn.execute(
                        """
                        DELETE FROM entity_versions
                        WHERE version < (
                            SELECT MAX(e2.version) FROM entity_versions e2
                            WHERE e2.namespace = entity_versions.namespace
                              AND e2.key_path = entity_versions.key_path
                              AND e2.version <= ?
                        )
                        """,
                        (keep_after_version,),
                    ).rowcount
                    tombstones = conn.execute(
                        "DELETE FROM entity_versions WHERE deleted = 1 AND version <= ?",
                        (keep_after_version,),
                    ).rowcount
                    conn.execute(
                        "INSERT INTO compactions (keep_after_version, compacted_at, removed) "
                        "VALUES (?, ?, ?)",
                        (keep_after_version, int(time.time() * 1000), superseded + tombstones),
                    )
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

        removed = superseded + tombstones
        if removed:
            logger.info(
                "Compacted entity versions",
                extra={
                    "project_id": project_id,
                    "keep_after_version": keep_after_version,
                    "removed": removed,
                },
            )
        return removed

    async def stats(self, project_id: str) -> dict[str, Any]:
        """Basic counters for monitoring."""
        async with self._lock:
            with self._get_connection(project_id) as conn:
                head = self._head(conn)
                live = conn.execute(
                    """
                    SELECT COUNT(*) AS n FROM entity_versions ev
                    WHERE ev.deleted = 0 AND ev.version = (
                        SELECT MAX(e2.version) FROM entity_versions e2
                        WHERE e2.namespace = ev.namespace AND e2.key_path = ev.key_path
                    )
                    """
                ).fetchone()["n"]
                rows = conn.execute("SELECT COUNT(*) AS n FROM entity_versions").fetchone()["n"]
        return {
            "project_id": project_id,
            "head_version": head,
            "live_entities": int(live),
            "version_rows": int(rows),
        }

    def list_projects(self) -> list[str]:
        """Projects with a database file in data_dir."""
        if not self.data_dir.exists():
            return []
        return sorted(p.stem[len("project_"):] for p in self.data_dir.glob("project_*.db"))
