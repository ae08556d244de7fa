"""
Configuration management for kvledger.

All configuration is done via environment variables - no config files.
Typed, environment-driven configuration for the ledger and its store.

Invariants:
    - Defaults run an in-memory store with no environment at all
    - Transaction capture prefixes always cover every area a workflow writes

How to change safely:
    - New settings need a default so existing deployments keep starting
    - Keep DEFAULT_CAPTURE_PREFIXES in sync with the key layout in keys.py
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .keys import (
    ARCHIVE_PREFIX,
    DATA_PREFIX,
    EFFECTS_PREFIX,
    INDEX_PREFIX,
    LINKS_PREFIX,
    LOGS_PREFIX,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_PREFIXES = (
    DATA_PREFIX,
    INDEX_PREFIX,
    LOGS_PREFIX,
    LINKS_PREFIX,
    EFFECTS_PREFIX,
    ARCHIVE_PREFIX,
)


class StoreBackend(Enum):
    """Supported store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class StorageConfig:
    """Store configuration.

    Attributes:
        data_dir: Directory holding the SQLite database file
        db_name: SQLite database file name
        wal_mode: Enable SQLite WAL journal mode
        busy_timeout_ms: SQLite busy timeout
        cache_size_pages: SQLite cache size (negative = KB)
    """

    data_dir: str = "./data"
    db_name: str = "kvledger.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_name=os.getenv("SQLITE_DB_NAME", "kvledger.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class TransactionConfig:
    """Transaction manager configuration.

    Attributes:
        capture_batch_size: Keys read per mget while capturing a snapshot
        capture_prefixes: Key prefixes captured and restored by rollback
    """

    capture_batch_size: int = 200
    capture_prefixes: tuple[str, ...] = DEFAULT_CAPTURE_PREFIXES

    @classmethod
    def from_env(cls) -> TransactionConfig:
        """Load configuration from environment variables."""
        raw_prefixes = os.getenv("TX_CAPTURE_PREFIXES")
        prefixes = (
            tuple(p.strip() for p in raw_prefixes.split(",") if p.strip())
            if raw_prefixes
            else DEFAULT_CAPTURE_PREFIXES
        )
        return cls(
            capture_batch_size=int(os.getenv("TX_CAPTURE_BATCH_SIZE", "200")),
            capture_prefixes=prefixes,
        )


@dataclass(frozen=True)
class WorkflowConfig:
    """Workflow orchestrator configuration.

    Attributes:
        timeout_seconds: Time budget of one workflow run; exceeding it rolls back
        reset_batch_size: Entities deleted per batch during a reset
        seed_sites: Site names created by a reset in "defaults" mode
    """

    timeout_seconds: float = 240.0
    reset_batch_size: int = 100
    seed_sites: tuple[str, ...] = ("HQ", "Drive", "World")

    @classmethod
    def from_env(cls) -> WorkflowConfig:
        """Load configuration from environment variables."""
        raw_sites = os.getenv("RESET_SEED_SITES")
        sites = (
            tuple(s.strip() for s in raw_sites.split(",") if s.strip())
            if raw_sites is not None
            else cls.seed_sites
        )
        return cls(
            timeout_seconds=float(os.getenv("WORKFLOW_TIMEOUT_SECONDS", "240")),
            reset_batch_size=int(os.getenv("RESET_BATCH_SIZE", "100")),
            seed_sites=sites,
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
class LedgerConfig:
    """Complete kvledger configuration.

    Attributes:
        store_backend: Which store backend to use
        storage: Store configuration
        transaction: Transaction manager configuration
        workflow: Workflow orchestrator configuration
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.MEMORY
    storage: StorageConfig = field(default_factory=StorageConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load complete configuration from environment variables.

        Returns:
            LedgerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        backend_str = os.getenv("STORE_BACKEND", "memory").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )

        config = cls(
            store_backend=store_backend,
            storage=StorageConfig.from_env(),
            transaction=TransactionConfig.from_env(),
            workflow=WorkflowConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend == StoreBackend.SQLITE and not self.storage.db_name:
            raise ValueError("SQLITE_DB_NAME is required when STORE_BACKEND=sqlite")

        if self.transaction.capture_batch_size <= 0:
            raise ValueError("TX_CAPTURE_BATCH_SIZE must be positive")
        if not self.transaction.capture_prefixes:
            raise ValueError("TX_CAPTURE_PREFIXES must name at least one prefix")

        if self.workflow.timeout_seconds <= 0:
            raise ValueError("WORKFLOW_TIMEOUT_SECONDS must be positive")
        if self.workflow.reset_batch_size <= 0:
            raise ValueError("RESET_BATCH_SIZE must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if self.store_backend == StoreBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first connect."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Ledger configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "data_dir": self.storage.data_dir
                if self.store_backend == StoreBackend.SQLITE
                else None,
                "capture_prefixes": list(self.transaction.capture_prefixes),
                "workflow_timeout_seconds": self.workflow.timeout_seconds,
                "reset_batch_size": self.workflow.reset_batch_size,
                "log_level": self.observability.log_level,
            },
        )
