"""
Similarity search for blockoli.

An exact k-d tree over block embeddings, a brute-force reference scan that
shares its distance function, and a per-project cache that rebuilds trees
lazily when the project's generation moves.
"""

import heapq
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence
import numpy as np

from .errors import DimensionMismatch, EmptyIndex
from .models import CodeBlock, SearchHit
from .store.project_store import EmbeddingSnapshot, ProjectStore

logger = logging.getLogger(__name__)

# Relative slack on the hyperplane bound; exploring extra branches is always safe
_BOUND_SLACK = 1e-12


def euclidean(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.sqrt(np.sum((a - b) ** 2)))


def manhattan(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.sum(np.abs(a - b)))


METRICS: dict[str, Callable[[np.ndarray, np.ndarray], float]] = {
    "euclidean": euclidean,
    "manhattan": manhattan,
}


def get_metric(name: str) -> Callable[[np.ndarray, np.ndarray], float]:
    """
    Raises:
        ValueError: If the metric is unknown
    """
    try:
        return METRICS[name]
    except KeyError:
        raise ValueError(f"Unknown metric {name!r}, expected one of {', '.join(METRICS)}") from None


def _check_k(k: int) -> None:
    if k < 1:
        raise ValueError(f"k must be at least 1, got {k}")


def _as_query(query: Sequence[float], dimension: int) -> np.ndarray:
    q = np.asarray(query, dtype=np.float64)
    if q.ndim != 1 or q.shape[0] != dimension:
        actual = q.shape[0] if q.ndim == 1 else q.size
        raise DimensionMismatch(dimension, actual, context="query")
    _check_finite(q)
    return q


def _check_finite(q: np.ndarray) -> None:
    """NaN or infinite components would defeat the hyperplane bound."""
    if not np.all(np.isfinite(q)):
        raise ValueError("Query vector contains NaN or infinite values")


def linear_scan(
    ids: Sequence[int],
    vectors: Sequence[Sequence[float]],
    query: Sequence[float],
    k: int,
    metric: str = "euclidean",
) -> list[tuple[int, float]]:
    """
    Brute-force k nearest neighbours.

    Uses the same distance function as KDTree, so both return identical
    results for the same input.

    Returns:
        Up to k (id, distance) pairs sorted by (distance, id)
    """
    _check_k(k)
    distance = get_metric(metric)
    if len(ids) == 0:
        raise EmptyIndex()

    points = np.asarray(vectors, dtype=np.float64)
    q = _as_query(query, points.shape[1])
    scored = [(distance(points[i], q), ids[i]) for i in range(len(ids))]
    scored.sort()
    return [(block_id, dist) for dist, block_id in scored[:k]]


class KDTree:
    """
    Exact k-d tree stored in an arena of parallel lists.

    Node ``n`` holds point ``point[n]`` (a row of ``vectors``), splits on
    ``split_dim[n]`` and has children ``left[n]`` and ``right[n]``, with -1
    for no child. Points ordered before the median by (coordinate, id) go
    left, so the left subtree holds coordinates <= the split value and the
    right subtree holds coordinates >= it.
    """

    def __init__(self, ids: Sequence[int], vectors: np.ndarray, metric: str = "euclidean"):
        self.ids = list(ids)
        self.vectors = vectors
        self.metric = metric
        self._distance = get_metric(metric)
        self.dimension = vectors.shape[1] if len(self.ids) else 0

        self.point: list[int] = []
        self.split_dim: list[int] = []
        self.left: list[int] = []
        self.right: list[int] = []
        self.root = -1

    @classmethod
    def build(
        cls,
        ids: Sequence[int],
        vectors: Sequence[Sequence[float]],
        metric: str = "euclidean",
    ) -> "KDTree":
        """
        Build a balanced tree.

        Raises:
            ValueError: If ids and vectors differ in length, or vectors are
                ragged or zero-dimensional
        """
        ids = list(ids)
        if len(ids) == 0:
            return cls(ids, np.empty((0, 0), dtype=np.float64), metric)

        points = np.asarray(vectors, dtype=np.float64)
        if points.ndim != 2 or points.shape[0] != len(ids):
            raise ValueError(f"Expected {len(ids)} vectors of equal dimension, got shape {points.shape}")
        if points.shape[1] == 0:
            raise ValueError("Vectors must have at least one dimension")

        tree = cls(ids, points, metric)
        tree.root = tree._build(list(range(len(ids))))
        logger.debug(f"Built k-d tree over {len(ids)} points in {tree.dimension} dimensions")
        return tree

    def _new_node(self, point: int, dim: int) -> int:
        self.point.append(point)
        self.split_dim.append(dim)
        self.left.append(-1)
        self.right.append(-1)
        return len(self.point) - 1

    def _build(self, indices: list[int]) -> int:
        if not indices:
            return -1

        subset = self.vectors[indices]
        spread = subset.max(axis=0) - subset.min(axis=0)
        # argmax returns the first maximum, i.e. the lowest dimension on ties
        dim = int(np.argmax(spread))

        indices.sort(key=lambda i: (self.vectors[i, dim], self.ids[i]))
        mid = len(indices) // 2

        node = self._new_node(indices[mid], dim)
        left = self._build(indices[:mid])
        right = self._build(indices[mid + 1:])
        self.left[node] = left
        self.right[node] = right
        return node

    def __len__(self) -> int:
        return len(self.point)

    def k_nearest(self, query: Sequence[float], k: int) -> list[tuple[int, float]]:
        """
        Find the k nearest points to ``query``.

        Returns:
            Up to k (id, distance) pairs sorted by (distance, id)

        Raises:
            ValueError: If k < 1 or the query has NaN or infinite components
            EmptyIndex: If the tree has no points
            DimensionMismatch: If the query dimension differs from the tree's
        """
        _check_k(k)
        if self.root == -1:
            raise EmptyIndex()
        q = _as_query(query, self.dimension)

        # Max-heap on (distance, id) via negated entries
        heap: list[tuple[float, int]] = []
        self._search(self.root, q, k, heap)

        results = sorted((-neg_dist, -neg_id) for neg_dist, neg_id in heap)
        return [(block_id, dist) for dist, block_id in results]

    def _offer(self, heap: list[tuple[float, int]], k: int, dist: float, block_id: int) -> None:
        entry = (-dist, -block_id)
        if len(heap) < k:
            heapq.heappush(heap, entry)
        elif (dist, block_id) < (-heap[0][0], -heap[0][1]):
            heapq.heapreplace(heap, entry)

    def _search(self, node: int, q: np.ndarray, k: int, heap: list[tuple[float, int]]) -> None:
        if node == -1:
            return

        p = self.point[node]
        self._offer(heap, k, self._distance(self.vectors[p], q), self.ids[p])

        dim = self.split_dim[node]
        diff = q[dim] - self.vectors[p, dim]
        if diff <= 0:
            near, far = self.left[node], self.right[node]
        else:
            near, far = self.right[node], self.left[node]

        self._search(near, q, k, heap)

        if len(heap) < k:
            self._search(far, q, k, heap)
            return
        worst = -heap[0][0]
        if abs(diff) <= worst + _BOUND_SLACK * max(1.0, worst):
            self._search(far, q, k, heap)


@dataclass
class SimilarityIndex:
    """A k-d tree plus the project generation and blocks it was built from."""
    project: str
    generation: int
    tree: KDTree
    blocks: dict[int, CodeBlock] = field(default_factory=dict)
    stale: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: EmbeddingSnapshot, metric: str = "euclidean") -> "SimilarityIndex":
        tree = KDTree.build(snapshot.ids, snapshot.vectors, metric)
        return cls(
            project=snapshot.project,
            generation=snapshot.generation,
            tree=tree,
            blocks=snapshot.blocks,
        )

    def search(self, query: Sequence[float], k: int) -> list[SearchHit]:
        return [
            SearchHit(block=self.blocks[block_id], distance=dist)
            for block_id, dist in self.tree.k_nearest(query, k)
        ]


class IndexCache:
    """
    Per-project similarity indexes, rebuilt lazily.

    An entry is used only while its generation equals the project's current
    generation. A stale entry is rebuilt by exactly one searcher while the
    others wait up to ``lock_timeout`` seconds; a searcher that cannot get
    the rebuild lock in time answers with an exact linear scan instead.
    """

    def __init__(self, store: ProjectStore, metric: str = "euclidean", lock_timeout: float = 0.5):
        get_metric(metric)
        self.store = store
        self.metric = metric
        self.lock_timeout = lock_timeout

        self._entries: dict[str, SimilarityIndex] = {}
        self._rebuild_locks: dict[str, threading.Lock] = {}
        # Bumped on every evict so an in-flight rebuild of a deleted project is discarded
        self._epoch = 0
        self._guard = threading.Lock()
        self.rebuilds: dict[str, int] = {}
        self.fallbacks: dict[str, int] = {}

        store.add_delete_listener(self.evict)

    def _rebuild_lock(self, project: str) -> threading.Lock:
        with self._guard:
            if project not in self._rebuild_locks:
                self._rebuild_locks[project] = threading.Lock()
            return self._rebuild_locks[project]

    def _fresh(self, project: str, generation: int) -> Optional[SimilarityIndex]:
        with self._guard:
            entry = self._entries.get(project)
        if entry is not None and not entry.stale and entry.generation == generation:
            return entry
        return None

    def search(self, project: str, vector: Sequence[float], k: int) -> list[SearchHit]:
        """
        k nearest embedded blocks of ``project`` to ``vector``.

        Raises:
            ValueError: If k < 1
            NotFound: If the project does not exist
            EmptyIndex: If the project has no embedded blocks
            DimensionMismatch: If the vector dimension differs from the project's
            ValueError: If the vector has NaN or infinite components
        """
        _check_k(k)
        generation = self.store.generation(project)
        dimension = self.store.dimension(project)
        if dimension is None:
            raise EmptyIndex(project)
        if len(vector) != dimension:
            raise DimensionMismatch(dimension, len(vector), context=f"query for {project}")
        _check_finite(np.asarray(vector, dtype=np.float64))

        index = self._fresh(project, generation)
        if index is not None:
            return index.search(vector, k)

        lock = self._rebuild_lock(project)
        if not lock.acquire(timeout=self.lock_timeout):
            logger.debug(f"Rebuild of {project} in progress, falling back to linear scan")
            return self._scan(project, vector, k)
        try:
            index = self._rebuild(project)
        finally:
            lock.release()
        return index.search(vector, k)

    def _rebuild(self, project: str) -> SimilarityIndex:
        """Build and cache a fresh index. Caller holds the project's rebuild lock."""
        index = self._fresh(project, self.store.generation(project))
        if index is not None:
            return index

        with self._guard:
            epoch = self._epoch

        snapshot = self.store.embedded_snapshot(project)
        if len(snapshot) == 0:
            raise EmptyIndex(project)
        index = SimilarityIndex.from_snapshot(snapshot, self.metric)

        with self._guard:
            # Any evict since the snapshot may have been this project's; do not cache
            if self._epoch == epoch:
                self._entries[project] = index
                self.rebuilds[project] = self.rebuilds.get(project, 0) + 1

        logger.info(f"Rebuilt similarity index for {project}: {len(snapshot)} blocks at generation {snapshot.generation}")
        return index

    def _scan(self, project: str, vector: Sequence[float], k: int) -> list[SearchHit]:
        snapshot = self.store.embedded_snapshot(project)
        if len(snapshot) == 0:
            raise EmptyIndex(project)
        with self._guard:
            self.fallbacks[project] = self.fallbacks.get(project, 0) + 1

        hits = linear_scan(snapshot.ids, snapshot.vectors, vector, k, self.metric)
        return [SearchHit(block=snapshot.blocks[block_id], distance=dist) for block_id, dist in hits]

    def invalidate(self, project: str) -> None:
        """Mark the project's index stale; the next search rebuilds it."""
        with self._guard:
            entry = self._entries.get(project)
            if entry is not None:
                entry.stale = True
        logger.debug(f"Invalidated similarity index for {project}")

    def evict(self, project: str) -> None:
        """Drop the project's index, rebuild lock and counters."""
        with self._guard:
            self._entries.pop(project, None)
            self._rebuild_locks.pop(project, None)
            self.rebuilds.pop(project, None)
            self.fallbacks.pop(project, None)
            self._epoch += 1
        logger.debug(f"Evicted similarity index for {project}")

    def cached_generation(self, project: str) -> Optional[int]:
        """Generation of the cached index, None when nothing is cached."""
        with self._guard:
            entry = self._entries.get(project)
        return entry.generation if entry is not None else None

    def is_stale(self, project: str) -> bool:
        with self._guard:
            entry = self._entries.get(project)
        if entry is None or entry.stale:
            return True
        return entry.generation != self.store.generation(project)
