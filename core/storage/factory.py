"""
Storage factory for creating storage backend instances.

This module provides factory functions to create the appropriate
storage implementations based on configuration. The backend is chosen
once at startup; callers only ever see the EventRepository and
MetricsReader interfaces.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from core.logging import get_logger
from core.storage.base import EventRepository, MetricsReader


if TYPE_CHECKING:
    from core.config import Settings
    from core.storage.clickhouse import ClickHouseDatabase
    from core.storage.migrations import ClickHouseMigrator
    from core.storage.postgres import PostgresDatabase


logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Supported storage backends."""
    POSTGRES = "postgres"
    CLICKHOUSE = "clickhouse"


@dataclass
class Storage:
    """Repository and metrics reader for one backend, sharing one database."""
    backend: StorageBackend
    database: Union["PostgresDatabase", "ClickHouseDatabase"]
    repository: EventRepository
    metrics_reader: MetricsReader

    async def check_connection(self) -> None:
        await self.database.check_connection()

    async def close(self) -> None:
        await self.repository.close()

    def create_migrator(self, settings: "Settings") -> Optional["ClickHouseMigrator"]:
        """Migration runner for backends that version their schema, else None."""
        if self.backend != StorageBackend.CLICKHOUSE:
            return None

        from core.storage.migrations import ClickHouseMigrator

        return ClickHouseMigrator(self.database, settings.clickhouse_migrations_dir)


def get_storage_backend(settings: "Settings") -> StorageBackend:
    """
    Determine which storage backend to use based on settings.

    Args:
        settings: Application settings

    Returns:
        The configured storage backend
    """
    backend_str = settings.storage_backend.lower()

    try:
        return StorageBackend(backend_str)
    except ValueError:
        raise ValueError(
            f"Unsupported storage backend: {backend_str}. "
            f"Supported backends: {[b.value for b in StorageBackend]}"
        )


def create_clickhouse_database(settings: "Settings") -> "ClickHouseDatabase":
    from core.storage.clickhouse import ClickHouseDatabase

    return ClickHouseDatabase(
        host=settings.clickhouse_host,
        port=settings.clickhouse_port,
        username=settings.clickhouse_username,
        password=settings.clickhouse_password,
        database=settings.clickhouse_database,
        pool_size=settings.clickhouse_pool_size,
    )


def create_storage(settings: "Settings") -> Storage:
    """
    Create the repository/reader pair based on settings.

    Args:
        settings: Application settings

    Returns:
        Configured storage (not yet initialized; call repository.setup())
    """
    backend = get_storage_backend(settings)

    if backend == StorageBackend.POSTGRES:
        from core.storage.postgres import (
            PostgresDatabase,
            PostgresEventRepository,
            PostgresMetricsReader,
        )

        logger.info("Creating PostgreSQL event store")
        database = PostgresDatabase(
            settings.postgres_url,
            pool_size=settings.postgres_pool_size,
            max_overflow=settings.postgres_max_overflow,
            pool_recycle=settings.postgres_pool_recycle_seconds,
            echo=settings.debug,
        )
        return Storage(
            backend=backend,
            database=database,
            repository=PostgresEventRepository(database),
            metrics_reader=PostgresMetricsReader(database),
        )

    elif backend == StorageBackend.CLICKHOUSE:
        from core.storage.clickhouse import ClickHouseEventRepository, ClickHouseMetricsReader

        logger.info(
            "Creating ClickHouse event store",
            database=settings.clickhouse_database,
        )
        database = create_clickhouse_database(settings)
        return Storage(
            backend=backend,
            database=database,
            repository=ClickHouseEventRepository(
                database,
                insert_batch_size=settings.clickhouse_insert_batch_size,
            ),
            metrics_reader=ClickHouseMetricsReader(database),
        )

    else:
        raise ValueError(f"Unsupported backend: {backend}")
