"""
Storage abstraction layer for ShieldRoute.

Pluggable snapshot backends for the request ledger, settlement totals and
access-control state:

- JSON file (default)
- Memory (for testing)

Usage:
    from storage import get_storage_backend

    storage = get_storage_backend()
    storage.save_state(service.snapshot())
    data = storage.load_state()
"""

import os

from storage.base import StorageBackend, StorageError, StorageReadError, StorageWriteError
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

__all__ = [
    "JSONFileStorage",
    "MemoryStorage",
    "StorageBackend",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend() -> StorageBackend:
    """
    Get the storage backend selected by the environment.

    Environment variables:
        STORAGE_BACKEND: Backend type ("json", "memory")
        STATE_DATA_FILE: Path for JSON file storage (default: shieldroute_state.json)

    Raises:
        StorageError: For an unknown backend type
    """
    backend_type = os.getenv("STORAGE_BACKEND", "json").lower()

    if backend_type == "json":
        return JSONFileStorage(os.getenv("STATE_DATA_FILE", "shieldroute_state.json"))

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
