"""
Configuration management for TxStore Server.

Settings come from TXSTORE_* environment variables (plus LOG_LEVEL and
LOG_FORMAT) and are grouped into frozen sections, one per component.

Invariants:
    - Every setting has a default that works for a single local node
    - Lookup and query batch limits are positive, and the default query
      batch never exceeds the maximum
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class GrpcConfig:
    """gRPC server configuration.

    Attributes:
        bind_address: Address to bind gRPC server (host:port)
        max_concurrent_rpcs: RPCs served at once before new ones are rejected
        max_message_size: Maximum message size in bytes
        shutdown_grace_seconds: Time allowed for in-flight RPCs on stop
    """

    bind_address: str = "0.0.0.0:50051"
    max_concurrent_rpcs: int = 100
    max_message_size: int = 64 * 1024 * 1024  # 64MB
    shutdown_grace_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> GrpcConfig:
        """Load configuration from environment variables."""
        return cls(
            bind_address=os.getenv("TXSTORE_GRPC_BIND", "0.0.0.0:50051"),
            max_concurrent_rpcs=int(os.getenv("TXSTORE_GRPC_MAX_CONCURRENT_RPCS", "100")),
            max_message_size=int(
                os.getenv("TXSTORE_GRPC_MAX_MESSAGE_SIZE", str(64 * 1024 * 1024))
            ),
            shutdown_grace_seconds=float(os.getenv("TXSTORE_GRPC_SHUTDOWN_GRACE", "5")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Admin HTTP server configuration.

    Attributes:
        enabled: Whether to serve the admin API
        host: Bind host
        port: Bind port
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("TXSTORE_HTTP_ENABLED", "true"),
            host=os.getenv("TXSTORE_HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("TXSTORE_HTTP_PORT", "8081")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        compaction_interval_seconds: Interval between version compactions, 0 disables
    """

    data_dir: str = "/var/lib/txstore"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    compaction_interval_seconds: int = 300

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("TXSTORE_DATA_DIR", "/var/lib/txstore"),
            wal_mode=_env_bool("TXSTORE_SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("TXSTORE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            compaction_interval_seconds=int(
                os.getenv("TXSTORE_COMPACTION_INTERVAL_SECONDS", "300")
            ),
        )


@dataclass(frozen=True)
class TransactionConfig:
    """Server-side transaction configuration.

    Attributes:
        idle_timeout_seconds: Transactions idle longer than this are discarded
        max_lookup_batch: Keys resolved per Lookup; the rest are deferred
        default_query_batch: Entities per RunQuery call when unspecified
        max_query_batch: Upper bound on requested RunQuery batch size
    """

    idle_timeout_seconds: float = 60.0
    max_lookup_batch: int = 1000
    default_query_batch: int = 300
    max_query_batch: int = 1000

    @classmethod
    def from_env(cls) -> TransactionConfig:
        """Load configuration from environment variables."""
        return cls(
            idle_timeout_seconds=float(os.getenv("TXSTORE_TXN_IDLE_TIMEOUT_SECONDS", "60")),
            max_lookup_batch=int(os.getenv("TXSTORE_MAX_LOOKUP_BATCH", "1000")),
            default_query_batch=int(os.getenv("TXSTORE_DEFAULT_QUERY_BATCH", "300")),
            max_query_batch=int(os.getenv("TXSTORE_MAX_QUERY_BATCH", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        grpc: gRPC server configuration
        http: Admin HTTP configuration
        storage: Local storage configuration
        transactions: Server-side transaction configuration
        observability: Logging configuration
    """

    grpc: GrpcConfig = field(default_factory=GrpcConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    transactions: TransactionConfig = field(default_factory=TransactionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            grpc=GrpcConfig.from_env(),
            http=HttpConfig.from_env(),
            storage=StorageConfig.from_env(),
            transactions=TransactionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.grpc.bind_address:
            raise ValueError("TXSTORE_GRPC_BIND is required")
        if self.grpc.max_concurrent_rpcs < 1:
            raise ValueError("TXSTORE_GRPC_MAX_CONCURRENT_RPCS must be >= 1")
        if self.transactions.idle_timeout_seconds <= 0:
            raise ValueError("TXSTORE_TXN_IDLE_TIMEOUT_SECONDS must be > 0")
        if self.transactions.max_lookup_batch < 1:
            raise ValueError("TXSTORE_MAX_LOOKUP_BATCH must be >= 1")
        if not 1 <= self.transactions.default_query_batch <= self.transactions.max_query_batch:
            raise ValueError(
                "TXSTORE_DEFAULT_QUERY_BATCH must be between 1 and TXSTORE_MAX_QUERY_BATCH"
            )
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log effective configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "grpc_bind": self.grpc.bind_address,
                "http_enabled": self.http.enabled,
                "http_port": self.http.port,
                "data_dir": self.storage.data_dir,
                "txn_idle_timeout_seconds": self.transactions.idle_timeout_seconds,
                "max_lookup_batch": self.transactions.max_lookup_batch,
                "log_level": self.observability.log_level,
            },
        )
