"""
Project store for blockoli.

Keeps the blocks of each project consistent on top of a StorageBackend:
match-key upserts, a generation counter per project, a fixed embedding
dimension per project, and consistent snapshots for the similarity index.
"""

import contextlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional
import numpy as np

from ..errors import AlreadyExists, DimensionMismatch, NotFound
from ..models import CodeBlock, ProjectInfo, UpsertResult, validate_project_name
from .base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingSnapshot:
    """Embedded blocks of a project as of one generation."""
    project: str
    generation: int
    ids: list[int]
    vectors: np.ndarray
    dimension: Optional[int]
    blocks: dict[int, CodeBlock] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.ids)


class ProjectStore:
    """
    Durable per-project collection of code blocks.

    Each project has an exclusive write lock. Reads take the same lock only
    long enough to copy what they need. The generation counter starts at 0
    and increments once per upsert_blocks call; it lives in memory and
    restarts at 0 with the process, together with every cached index.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._generations: dict[str, int] = {}
        self._dimensions: dict[str, int] = {}
        self._delete_listeners: list[Callable[[str], None]] = []

    @contextlib.contextmanager
    def _lock(self, project: str) -> Iterator[None]:
        """
        Hold the project's lock.

        The name is validated before a lock entry is made. delete_project drops
        the entry, so a waiter that wakes up holding a dropped lock retries
        with the current one.
        """
        validate_project_name(project)
        while True:
            with self._locks_guard:
                lock = self._locks.setdefault(project, threading.RLock())
            with lock:
                with self._locks_guard:
                    current = self._locks.get(project) is lock
                if current:
                    yield
                    return

    def _require(self, project: str) -> None:
        """Caller holds the project's lock."""
        if not self.backend.project_exists(project):
            with self._locks_guard:
                self._locks.pop(project, None)
            raise NotFound(project)

    def add_delete_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(project)`` after a project is deleted."""
        self._delete_listeners.append(listener)

    # ===== Projects =====

    def create_project(self, name: str) -> None:
        """
        Raises:
            AlreadyExists: If the name is taken
        """
        validate_project_name(name)
        with self._lock(name):
            if self.backend.project_exists(name):
                raise AlreadyExists(name)
            self.backend.create_project(name)
            self._generations[name] = 0
        logger.info(f"Created project {name}")

    def ensure_project(self, name: str) -> bool:
        """Create the project if missing. Returns True when it was created."""
        validate_project_name(name)
        with self._lock(name):
            if self.backend.project_exists(name):
                return False
            self.backend.create_project(name)
            self._generations[name] = 0
        logger.info(f"Created project {name} on first index")
        return True

    def get_project(self, name: str) -> ProjectInfo:
        with self._lock(name):
            self._require(name)
            blocks = self.backend.load_blocks(name)
            generation = self._generations.get(name, 0)

        embedded = [b for b in blocks if b.embedding is not None]
        return ProjectInfo(
            name=name,
            total_code_blocks=len(blocks),
            embedded_blocks=len(embedded),
            dimension=len(embedded[0].embedding) if embedded else None,
            generation=generation,
        )

    def delete_project(self, name: str) -> None:
        """
        Remove the project and all its blocks.

        Raises:
            NotFound: If the project does not exist
        """
        with self._lock(name):
            self._require(name)
            self.backend.drop_project(name)
            self._generations.pop(name, None)
            self._dimensions.pop(name, None)
            with self._locks_guard:
                self._locks.pop(name, None)
        logger.info(f"Deleted project {name}")

        for listener in self._delete_listeners:
            listener(name)

    def project_exists(self, name: str) -> bool:
        validate_project_name(name)
        return self.backend.project_exists(name)

    def list_projects(self) -> list[str]:
        return self.backend.project_names()

    # ===== Blocks =====

    def upsert_blocks(
        self,
        project: str,
        blocks: Iterable[CodeBlock],
        files: Optional[Iterable[str]] = None,
    ) -> UpsertResult:
        """
        Replace the blocks of the given files with a new batch.

        The replaced files are ``files`` plus every path in ``blocks``.
        Incoming blocks whose match key is already stored keep that block's
        id; stored blocks of replaced files that are not in the batch are
        deleted; blocks of other files are left alone. The generation
        increments exactly once, even for an empty batch.

        Raises:
            NotFound: If the project does not exist
            DimensionMismatch: If an embedding's dimension differs from the project's
        """
        incoming: dict[tuple, CodeBlock] = {}
        for block in blocks:
            if block.match_key in incoming:
                logger.warning(f"Duplicate block {block.match_key} in batch, keeping the last one")
            incoming[block.match_key] = block

        replaced_files = set(files or ()) | {b.path for b in incoming.values()}

        with self._lock(project):
            self._require(project)
            existing = self.backend.load_blocks(project)
            self._check_dimensions(project, existing, incoming.values())

            stored_by_key = {b.match_key: b for b in existing}
            next_id = max(
                self.backend.load_next_id(project),
                max((b.id for b in existing), default=0) + 1,
            )

            upserts: list[CodeBlock] = []
            inserted = updated = 0
            for key, block in incoming.items():
                stored = stored_by_key.get(key)
                if stored is not None:
                    block_id = stored.id
                    updated += 1
                else:
                    block_id = next_id
                    next_id += 1
                    inserted += 1
                upserts.append(block.model_copy(update={"id": block_id, "project": project}))

            deletes = [
                b.id for b in existing
                if b.path in replaced_files and b.match_key not in incoming
            ]

            self.backend.write_blocks(project, upserts, deletes, next_id)
            self._dimensions.pop(project, None)
            generation = self._generations.get(project, 0) + 1
            self._generations[project] = generation

        logger.info(
            f"Upserted {project}: {inserted} inserted, {updated} updated, "
            f"{len(deletes)} deleted across {len(replaced_files)} files (generation {generation})"
        )
        return UpsertResult(
            inserted=inserted,
            updated=updated,
            deleted=len(deletes),
            generation=generation,
        )

    def _check_dimensions(
        self,
        project: str,
        existing: list[CodeBlock],
        incoming: Iterable[CodeBlock],
    ) -> None:
        expected = next((len(b.embedding) for b in existing if b.embedding is not None), None)
        for block in incoming:
            if block.embedding is None:
                continue
            if expected is None:
                expected = len(block.embedding)
            elif len(block.embedding) != expected:
                raise DimensionMismatch(expected, len(block.embedding), context=f"{project}: {block}")

    def list_blocks(self, project: str) -> Iterator[CodeBlock]:
        """
        All blocks in insertion order.

        Raises:
            NotFound: Immediately, not on first iteration
        """
        with self._lock(project):
            self._require(project)
            blocks = self.backend.load_blocks(project)
        return self._iterate(blocks)

    @staticmethod
    def _iterate(blocks: list[CodeBlock]) -> Iterator[CodeBlock]:
        yield from blocks

    def find_by_function_name(self, project: str, name: str) -> list[CodeBlock]:
        """Blocks whose name equals ``name`` exactly, in id order."""
        with self._lock(project):
            self._require(project)
            return self.backend.find_by_name(project, name)

    def list_function_blocks(self, project: str) -> list[CodeBlock]:
        """Function and method blocks, in insertion order."""
        return [b for b in self.list_blocks(project) if b.is_function]

    def search_function_blocks(self, project: str, text: str) -> list[CodeBlock]:
        """Function and method blocks whose source contains ``text`` (case-sensitive)."""
        return [b for b in self.list_function_blocks(project) if text in b.text]

    # ===== Index support =====

    def generation(self, project: str) -> int:
        with self._lock(project):
            self._require(project)
            return self._generations.get(project, 0)

    def dimension(self, project: str) -> Optional[int]:
        """Dimension of the project's embeddings, None when nothing is embedded."""
        with self._lock(project):
            self._require(project)
            if project not in self._dimensions:
                blocks = self.backend.load_blocks(project)
                dimension = next((len(b.embedding) for b in blocks if b.embedding is not None), None)
                if dimension is None:
                    return None
                self._dimensions[project] = dimension
            return self._dimensions[project]

    def embedded_snapshot(self, project: str) -> EmbeddingSnapshot:
        """Ids, vectors and blocks of all embedded blocks, consistent with one generation."""
        with self._lock(project):
            self._require(project)
            blocks = self.backend.load_blocks(project)
            generation = self._generations.get(project, 0)

        embedded = [b for b in blocks if b.embedding is not None]
        dimension = len(embedded[0].embedding) if embedded else None
        if embedded:
            vectors = np.asarray([b.embedding for b in embedded], dtype=np.float64)
        else:
            vectors = np.empty((0, 0), dtype=np.float64)
        return EmbeddingSnapshot(
            project=project,
            generation=generation,
            ids=[b.id for b in embedded],
            vectors=vectors,
            dimension=dimension,
            blocks={b.id: b for b in embedded},
        )

    def close(self) -> None:
        self.backend.close()

    def __repr__(self) -> str:
        return f"ProjectStore(backend={self.backend!r})"
