"""
Pytest fixtures for blockoli tests.

Provides temporary directories, a deterministic keyword embedder (no model
download), project stores over each backend, and a wired engine.
"""

import math
import shutil
import tempfile
import threading
from pathlib import Path
import pytest

from blockoli.config import Config
from blockoli.embeddings import EmbeddingPipeline
from blockoli.engine import Engine
from blockoli.models import CodeBlock
from blockoli.store import MemoryBackend, ProjectStore, SQLiteBackend

KEYWORDS = ("foo", "bar", "baz", "print", "return", "class", "self", "add")

DEMO_SOURCE = '''def foo():
    print("foo")
    return bar()


def bar():
    return 42
'''


class KeywordEmbedder:
    """
    Embeds text as normalized keyword counts over KEYWORDS.

    Texts containing any ``fail_on`` marker raise ValueError, which the
    pipeline treats as a permanent failure.
    """

    def __init__(self, fail_on=()):
        self.fail_on = tuple(fail_on)
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return len(KEYWORDS)

    def __call__(self, text: str) -> list[float]:
        with self._lock:
            self.calls += 1
        for marker in self.fail_on:
            if marker in text:
                raise ValueError(f"cannot embed text containing {marker!r}")

        counts = [float(text.count(word)) for word in KEYWORDS]
        norm = math.sqrt(sum(c * c for c in counts))
        return [c / norm for c in counts] if norm else counts


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_path)


@pytest.fixture
def demo_source():
    return DEMO_SOURCE


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def pipeline(embedder):
    """Embedding pipeline without backoff delays."""
    pipeline = EmbeddingPipeline(embedder, max_attempts=2, retry_wait=0, retry_max_wait=0, timeout=5)
    yield pipeline
    pipeline.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, temp_dir):
    """Project store over each backend that needs no vector width up front."""
    if request.param == "memory":
        backend = MemoryBackend()
    else:
        backend = SQLiteBackend(temp_dir / "blockoli.sqlite")
    store = ProjectStore(backend)
    yield store
    store.close()


@pytest.fixture
def memory_store():
    return ProjectStore(MemoryBackend())


@pytest.fixture
def config(temp_dir):
    """Test configuration on the memory backend without retry delays."""
    config = Config(project_root=temp_dir)
    config.set("storage", "backend", value="memory")
    config.set("embeddings", "retry_wait", value=0.0)
    config.set("embeddings", "retry_max_wait", value=0.0)
    config.set("embeddings", "timeout_seconds", value=5.0)
    return config


@pytest.fixture
def engine(config, embedder):
    engine = Engine.from_config(config, embed_fn=embedder)
    yield engine
    engine.close()


@pytest.fixture
def make_block():
    """Factory for stored-block candidates with an explicit embedding."""

    def _make(name, path="a.py", embedding=None, scope=None, occurrence=0, block_type="function", text=None):
        text = text if text is not None else f"def {name}():\n    pass"
        return CodeBlock(
            path=path,
            language="python",
            block_type=block_type,
            name=name,
            scope=scope,
            occurrence=occurrence,
            start_byte=0,
            end_byte=len(text.encode("utf8")),
            start_line=1,
            end_line=text.count("\n") + 1,
            text=text,
            embedding=embedding,
        )

    return _make


@pytest.fixture
def embedder_factory():
    """KeywordEmbedder class, for tests that need failure markers."""
    return KeywordEmbedder
