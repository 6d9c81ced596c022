"""
Backend selection from configuration.
"""

import logging

from ..config import Config
from .base import StorageBackend
from .memory import MemoryBackend
from .sqlite import SQLiteBackend

logger = logging.getLogger(__name__)

BACKENDS = ("memory", "sqlite", "lance")


def create_backend(config: Config) -> StorageBackend:
    """
    Build the backend named by ``storage.backend``.

    Raises:
        ValueError: If the backend name is unknown
    """
    name = config.get("storage", "backend", default="sqlite")
    logger.debug(f"Creating {name} storage backend")

    if name == "memory":
        return MemoryBackend()
    if name == "sqlite":
        return SQLiteBackend(config.resolve_path("storage", "sqlite_path"))
    if name == "lance":
        # lancedb pulls in pyarrow; only import it when selected
        from .lance import LanceBackend

        return LanceBackend(
            config.resolve_path("storage", "lance_path"),
            dimension=config.get("embeddings", "dimension", default=384),
        )

    raise ValueError(f"Unknown storage backend {name!r}, expected one of {', '.join(BACKENDS)}")
