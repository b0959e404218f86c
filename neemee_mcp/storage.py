"""Public storage interface backed by LanceDB."""

from .storage_lancedb import Storage, StorageError

__all__ = ["Storage", "StorageError"]
