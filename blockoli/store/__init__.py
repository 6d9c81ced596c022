"""
Storage for blockoli.

- StorageBackend: capability protocol implemented by each persistence engine
- MemoryBackend, SQLiteBackend, LanceBackend: the shipped engines
- ProjectStore: match-key upserts, generations and snapshots over a backend
"""

from .base import StorageBackend, storage_errors
from .memory import MemoryBackend
from .sqlite import SQLiteBackend
from .project_store import EmbeddingSnapshot, ProjectStore
from .factory import BACKENDS, create_backend

__all__ = [
    "StorageBackend",
    "storage_errors",
    "MemoryBackend",
    "SQLiteBackend",
    "ProjectStore",
    "EmbeddingSnapshot",
    "create_backend",
    "BACKENDS",
]
