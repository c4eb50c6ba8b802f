"""
Configuration management for docdb.

Configuration is read from environment variables by default; every setting
can also be passed explicitly when building a World in code or in tests.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Sections are immutable once built
    - The retry bound of the version-archive loop is always finite

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable, add aliases instead of renaming
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Storage driver configuration.

    Attributes:
        default_url: Driver URL used by collections declared without one
        versions_url: Driver URL of the version-history collection
        versions_collection: Name of the version-history collection
        counters_url: Driver URL of the counters collection
        counters_collection: Name of the counters collection
        attachment_dir: Base directory for file attachments (None disables)
    """

    default_url: str = "memory://default"
    versions_url: str = "memory://versions"
    versions_collection: str = "versions"
    counters_url: str = "memory://counters"
    counters_collection: str = "counters"
    attachment_dir: str | None = None

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            default_url=os.getenv("DOCDB_DEFAULT_URL", "memory://default"),
            versions_url=os.getenv("DOCDB_VERSIONS_URL", "memory://versions"),
            versions_collection=os.getenv("DOCDB_VERSIONS_COLLECTION", "versions"),
            counters_url=os.getenv("DOCDB_COUNTERS_URL", "memory://counters"),
            counters_collection=os.getenv("DOCDB_COUNTERS_COLLECTION", "counters"),
            attachment_dir=os.getenv("DOCDB_ATTACHMENT_DIR"),
        )


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Locking and optimistic versioning configuration.

    Attributes:
        lock_timeout_ms: Lock validity window for collections that do not
            declare their own
        max_version_retries: How many times a version archive write is
            retried with the next version number after a race
        repair_dangling_links: Whether population saves hosts whose links
            pointed to missing records
    """

    lock_timeout_ms: int = 1000
    max_version_retries: int = 10
    repair_dangling_links: bool = True

    @classmethod
    def from_env(cls) -> ConcurrencyConfig:
        """Load configuration from environment variables."""
        return cls(
            lock_timeout_ms=int(os.getenv("DOCDB_LOCK_TIMEOUT_MS", "1000")),
            max_version_retries=int(os.getenv("DOCDB_MAX_VERSION_RETRIES", "10")),
            repair_dangling_links=os.getenv("DOCDB_REPAIR_DANGLING_LINKS", "true").lower()
            == "true",
        )


@dataclass(frozen=True)
class PopulationConfig:
    """Population engine configuration.

    Attributes:
        max_depth: Maximum number of fetch rounds in one population session
    """

    max_depth: int = 32

    @classmethod
    def from_env(cls) -> PopulationConfig:
        """Load configuration from environment variables."""
        return cls(max_depth=int(os.getenv("DOCDB_POPULATE_MAX_DEPTH", "32")))


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
class DocDbConfig:
    """Complete docdb configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Storage driver configuration
        concurrency: Locking and versioning configuration
        population: Population engine configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    population: PopulationConfig = field(default_factory=PopulationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DocDbConfig:
        """Load complete configuration from environment variables.

        Returns:
            Fully populated DocDbConfig
        """
        return cls(
            storage=StorageConfig.from_env(),
            concurrency=ConcurrencyConfig.from_env(),
            population=PopulationConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.concurrency.lock_timeout_ms <= 0:
            raise ValueError("DOCDB_LOCK_TIMEOUT_MS must be positive")
        if self.concurrency.max_version_retries < 0:
            raise ValueError("DOCDB_MAX_VERSION_RETRIES cannot be negative")
        if self.population.max_depth <= 0:
            raise ValueError("DOCDB_POPULATE_MAX_DEPTH must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"LOG_FORMAT must be 'json' or 'text', got '{self.observability.log_format}'"
            )
        if not self.storage.versions_collection:
            raise ValueError("DOCDB_VERSIONS_COLLECTION cannot be empty")
        if not self.storage.counters_collection:
            raise ValueError("DOCDB_COUNTERS_COLLECTION cannot be empty")
        if self.storage.counters_collection == self.storage.versions_collection:
            raise ValueError("DOCDB_COUNTERS_COLLECTION and DOCDB_VERSIONS_COLLECTION must differ")

        if self.storage.attachment_dir and not os.path.exists(self.storage.attachment_dir):
            logger.warning(
                f"Attachment directory does not exist: {self.storage.attachment_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "docdb configuration loaded",
            extra={
                "default_url": self.storage.default_url,
                "versions_url": self.storage.versions_url,
                "versions_collection": self.storage.versions_collection,
                "counters_url": self.storage.counters_url,
                "counters_collection": self.storage.counters_collection,
                "attachment_dir": self.storage.attachment_dir,
                "lock_timeout_ms": self.concurrency.lock_timeout_ms,
                "max_version_retries": self.concurrency.max_version_retries,
                "populate_max_depth": self.population.max_depth,
                "log_level": self.observability.log_level,
            },
        )
