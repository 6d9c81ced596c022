"""
blockoli - Code block indexing and similarity search for retrieval-augmented LLM workflows.

This package provides:
- Tree-sitter extraction of functions, methods and classes as code blocks
- Embedding with timeouts and bounded retry
- Per-project block storage over memory, SQLite or LanceDB backends
- Exact k-d tree nearest-neighbour search with lazy, single-flight rebuilds
"""

__version__ = "0.1.0"

from .models import CodeBlock, IndexReport, FileReport, NearestBlocks, ProjectInfo, SearchHit
from .config import Config
from .embeddings import EmbeddingModel, EmbeddingPipeline
from .extractors import ExtractorRegistry, TreeSitterExtractor
from .store import ProjectStore, create_backend
from .similarity import IndexCache, KDTree, linear_scan
from .indexer import Indexer, IndexState
from .engine import Engine

__all__ = [
    # Models
    "CodeBlock",
    "IndexReport",
    "FileReport",
    "NearestBlocks",
    "ProjectInfo",
    "SearchHit",
    # Core components
    "Config",
    "EmbeddingModel",
    "EmbeddingPipeline",
    "ExtractorRegistry",
    "TreeSitterExtractor",
    "ProjectStore",
    "create_backend",
    "IndexCache",
    "KDTree",
    "linear_scan",
    "Indexer",
    "IndexState",
    "Engine",
]
