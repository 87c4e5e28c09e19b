"""
Application context.

Everything the process needs is built once here, at startup, and passed
by reference to whoever needs it. There are no module-level singletons.

Usage:
    context = await build_context(load_settings())
    event_id = await context.service.create_event(command)
    ...
    await context.close()
"""

from dataclasses import dataclass
from typing import Optional

from core.config import Settings
from core.exceptions import EventStoreError, StoreConnectionError
from core.logging import configure_logging, get_logger
from core.storage import Storage, create_storage
from manager.event_service import EventService


logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    storage: Storage
    service: EventService

    async def close(self) -> None:
        await self.storage.close()
        logger.info("Application context closed")


async def build_context(
    settings: Settings,
    storage: Optional[Storage] = None,
) -> AppContext:
    """
    Wire logging, storage and the event service.

    Startup is fail-fast: an unreachable store raises StoreConnectionError
    and the caller is expected to exit.

    Args:
        settings: Process settings
        storage: Pre-built storage (default from settings)
    """
    configure_logging(settings)

    if storage is None:
        storage = create_storage(settings)

    logger.info("Initializing event store", storage_backend=storage.backend.value)

    try:
        await storage.check_connection()
        await storage.repository.setup()

        migrator = storage.create_migrator(settings)
        if migrator is not None and settings.clickhouse_auto_migrate:
            applied = await migrator.up()
            logger.info("Schema migrations applied", count=len(applied))
    except StoreConnectionError:
        logger.error("Event store unreachable", storage_backend=storage.backend.value)
        await storage.close()
        raise
    except EventStoreError:
        await storage.close()
        raise

    service = EventService(storage.repository, storage.metrics_reader)
    logger.info("Event store ready", storage_backend=storage.backend.value)
    return AppContext(settings=settings, storage=storage, service=service)
