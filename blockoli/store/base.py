"""
Storage backend capability interface.

A backend persists projects and their blocks. It knows nothing about
generations, match keys or locking; ProjectStore layers those on top.
"""

import contextlib
import logging
from typing import Iterator, Protocol, runtime_checkable

from ..errors import StorageFailure
from ..models import CodeBlock

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageBackend(Protocol):
    """Operations every persistence backend provides."""

    name: str

    def create_project(self, project: str) -> None:
        """Register an empty project."""
        ...

    def drop_project(self, project: str) -> None:
        """Remove a project and all of its blocks."""
        ...

    def project_exists(self, project: str) -> bool:
        ...

    def project_names(self) -> list[str]:
        ...

    def load_blocks(self, project: str) -> list[CodeBlock]:
        """All blocks of a project, ordered by id."""
        ...

    def find_by_name(self, project: str, name: str) -> list[CodeBlock]:
        """Blocks whose name equals ``name`` exactly, ordered by id."""
        ...

    def load_next_id(self, project: str) -> int:
        """Lowest block id never handed out in the project; 1 for a new project."""
        ...

    def write_blocks(self, project: str, upserts: list[CodeBlock], deletes: list[int], next_id: int) -> None:
        """Insert or replace ``upserts`` by id, delete the ``deletes`` ids and record ``next_id``."""
        ...

    def close(self) -> None:
        ...


@contextlib.contextmanager
def storage_errors(backend: str, operation: str, *error_types: type[BaseException]) -> Iterator[None]:
    """Re-raise backend exceptions as StorageFailure, chained to the original."""
    try:
        yield
    except StorageFailure:
        raise
    except error_types as e:
        logger.error(f"{backend} backend failed during {operation}: {e}")
        raise StorageFailure(f"{backend} backend failed during {operation}: {e}") from e
