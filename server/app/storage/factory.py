"""Storage backend factory.

Creates metering store instances based on configuration.
Supports SQLite and Memory backends.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from server.app.exceptions import StorageBackendError

if TYPE_CHECKING:
    from server.app.settings import Settings
    from server.app.storage.backend import MeteringStore


def create_metering_store(settings: Settings) -> MeteringStore:
    """Create a metering store based on settings.

    Args:
        settings: Application settings containing persistence configuration.

    Returns:
        Configured MeteringStore instance.

    Raises:
        StorageBackendError: If the backend type is unknown.

    Example:
        >>> settings = get_settings()
        >>> store = create_metering_store(settings)
        >>> await store.initialize()
    """
    backend_type = getattr(settings, "persistence_backend", "sqlite")
    uri = getattr(settings, "persistence_uri", ".forgebench/metering.db")

    if backend_type == "sqlite":
        from server.app.storage.sqlite import SqliteMeteringStore

        return SqliteMeteringStore(connection_string=uri)

    elif backend_type == "memory":
        from server.app.storage.memory import MemoryMeteringStore

        return MemoryMeteringStore()

    else:
        # Raise error for unknown backend types - NO silent fallback
        raise StorageBackendError(
            f"Unknown storage backend type: '{backend_type}'. Supported types: sqlite, memory",
            backend_type=backend_type,
        )
