"""
Storage abstraction layer.

Provides pluggable storage backends for:
- Event persistence (append-only writes)
- Metrics reads (totals and grouped breakdowns)

Supported backends:
- PostgreSQL (row store, JSONB children, transactional batches)
- ClickHouse (column store, parallel arrays, versioned migrations)
"""

from core.storage.base import (
    EventRepository,
    MetricsReader,
)
from core.storage.factory import (
    create_storage,
    get_storage_backend,
    Storage,
    StorageBackend,
)

__all__ = [
    # Abstract interfaces
    "EventRepository",
    "MetricsReader",
    # Factory functions
    "create_storage",
    "get_storage_backend",
    "Storage",
    "StorageBackend",
]
