"""
Engine facade for blockoli.

Wires extraction, embedding, storage and similarity search together and
exposes the operations a transport (CLI, HTTP server) calls.
"""

import logging
from typing import Iterable, Iterator, Optional, Sequence, Union

from .config import Config
from .embeddings import EmbedFn, EmbeddingModel, EmbeddingPipeline
from .errors import NotFound
from .extractors import ExtractorRegistry
from .indexer import Indexer, IndexState
from .models import CodeBlock, IndexReport, NearestBlocks, ProjectInfo, SearchHit
from .progress import ProgressCallback
from .similarity import IndexCache
from .store import ProjectStore, create_backend

logger = logging.getLogger(__name__)

Query = Union[str, Sequence[float]]


class Engine:
    """
    Operation surface over one project store.

    Example:
        with Engine.from_config(Config(root)) as engine:
            engine.reindex("demo", [("a.py", source)])
            hits = engine.search("demo", "parse a config file", k=3)
    """

    def __init__(
        self,
        store: ProjectStore,
        indexer: Indexer,
        cache: IndexCache,
        pipeline: EmbeddingPipeline,
        default_limit: int = 5,
    ):
        self.store = store
        self.indexer = indexer
        self.cache = cache
        self.pipeline = pipeline
        self.default_limit = default_limit

    @classmethod
    def from_config(cls, config: Config, embed_fn: Optional[EmbedFn] = None) -> "Engine":
        """
        Build an engine from configuration.

        Args:
            config: Loaded configuration; ``storage.backend`` picks the backend
            embed_fn: Embedding capability (defaults to the configured
                sentence-transformers model, loaded on first use)
        """
        if embed_fn is None:
            embed_fn = EmbeddingModel(
                model_name=config.get("embeddings", "model"),
                device=config.get("embeddings", "device") or None,
                normalize=config.get("embeddings", "normalize", default=True),
            )

        max_workers = config.get("indexer", "max_workers", default=4)
        store = ProjectStore(create_backend(config))
        pipeline = EmbeddingPipeline(
            embed_fn,
            max_attempts=config.get("embeddings", "max_attempts", default=3),
            retry_wait=config.get("embeddings", "retry_wait", default=0.5),
            retry_max_wait=config.get("embeddings", "retry_max_wait", default=4.0),
            timeout=config.get("embeddings", "timeout_seconds", default=30.0),
            max_chars=config.get("embeddings", "max_chars") or None,
            max_workers=max_workers,
        )
        cache = IndexCache(
            store,
            metric=config.get("search", "metric", default="euclidean"),
            lock_timeout=config.get("search", "rebuild_lock_timeout", default=0.5),
        )
        extractors = ExtractorRegistry(strict=config.get("indexer", "strict_parse", default=True))
        indexer = Indexer(store, pipeline, extractors, cache=cache, max_workers=max_workers)

        logger.info(f"Engine ready with {store.backend.name} backend")
        return cls(
            store,
            indexer,
            cache,
            pipeline,
            default_limit=config.get("search", "default_limit", default=5),
        )

    # ===== Projects =====

    def create_project(self, name: str) -> None:
        self.store.create_project(name)

    def delete_project(self, name: str) -> None:
        """Delete a project; its similarity index is evicted."""
        self.store.delete_project(name)

    def get_project(self, name: str) -> ProjectInfo:
        return self.store.get_project(name)

    def list_projects(self) -> list[str]:
        return self.store.list_projects()

    def index_state(self, name: str) -> IndexState:
        return self.indexer.state(name)

    # ===== Indexing =====

    def reindex(
        self,
        project: str,
        files: Iterable[tuple[str, str]],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexReport:
        return self.indexer.reindex(project, files, progress_callback=progress_callback)

    # ===== Lookup =====

    def list_blocks(self, project: str) -> Iterator[CodeBlock]:
        return self.store.list_blocks(project)

    def list_function_blocks(self, project: str) -> list[CodeBlock]:
        return self.store.list_function_blocks(project)

    def find_by_function_name(self, project: str, name: str) -> list[CodeBlock]:
        return self.store.find_by_function_name(project, name)

    def search_function_blocks(self, project: str, text: str) -> list[CodeBlock]:
        return self.store.search_function_blocks(project, text)

    # ===== Similarity =====

    def search(self, project: str, query: Query, k: Optional[int] = None) -> list[SearchHit]:
        """
        Nearest embedded blocks to a query.

        Args:
            project: Project to search
            query: Text (embedded through the pipeline) or a vector
            k: Number of results (defaults to ``search.default_limit``)

        Raises:
            NotFound, EmptyIndex, DimensionMismatch: See IndexCache.search
            EmbeddingFailure: If a text query cannot be embedded
            ValueError: If k < 1
        """
        k = self.default_limit if k is None else k
        if isinstance(query, str):
            if not self.store.project_exists(project):
                raise NotFound(project)
            vector = self.pipeline.embed(query)
        else:
            vector = [float(x) for x in query]
        hits = self.cache.search(project, vector, k)
        logger.debug(f"Search in {project} returned {len(hits)} hits")
        return hits

    def nearest(self, project: str, query: Query, k: Optional[int] = None) -> NearestBlocks:
        """Search, shaped as the closest block plus the ranked list."""
        hits = self.search(project, query, k)
        return NearestBlocks(nearest=hits[0].block, k_nearest=[hit.block for hit in hits])

    def close(self) -> None:
        self.pipeline.close()
        self.store.close()
        logger.debug("Engine closed")

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Engine(store={self.store!r}, default_limit={self.default_limit})"
