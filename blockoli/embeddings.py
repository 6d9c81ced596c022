"""
Embedding model and pipeline for blockoli.

EmbeddingModel wraps sentence-transformers with lazy loading. EmbeddingPipeline
puts any ``embed(text) -> vector`` callable behind a timeout and a bounded
retry on transient failures, and validates what comes back.
"""

import concurrent.futures
import logging
import math
import threading
from typing import Callable, Optional, Sequence
from sentence_transformers import SentenceTransformer
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import EmbeddingFailure
from .models import CodeBlock

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Sequence[float]]

DEFAULT_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
    RuntimeError,
)


class EmbeddingModel:
    """
    Wrapper around sentence-transformers for generating embeddings.

    Features:
    - Lazy model loading (only loads when first needed)
    - Automatic GPU detection with CPU fallback
    - Optional L2 normalization
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: Optional[str] = None,
        normalize: bool = True,
    ):
        """
        Initialize the embedding model.

        Args:
            model_name: Name of the sentence-transformers model to use
            device: Device to use ('cuda', 'cpu', or None for auto-detect)
            normalize: Normalize embeddings to unit length
        """
        self.model_name = model_name
        self.device = device or None
        self.normalize = normalize
        self._model: Optional[SentenceTransformer] = None
        self._dimension: Optional[int] = None
        self._model_lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the model on first access (thread-safe)."""
        if self._model is None:
            with self._model_lock:
                # Another thread might have loaded it while we waited
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = SentenceTransformer(self.model_name, device=self.device)
                    logger.info(f"Model loaded on device: {self._model.device}")
        return self._model

    @property
    def dimension(self) -> int:
        """Get the embedding dimension."""
        if self._dimension is None:
            dimension = self.model.get_sentence_embedding_dimension()
            if dimension is None:
                dimension = len(self.embed_text("test"))
            self._dimension = int(dimension)
            logger.info(f"Embedding dimension: {self._dimension}")
        return self._dimension

    def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats
        """
        embedding = self.model.encode(
            text,
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=self.normalize,
        )
        return embedding.tolist()

    def __call__(self, text: str) -> list[float]:
        return self.embed_text(text)

    def __repr__(self) -> str:
        loaded = "loaded" if self._model is not None else "not loaded"
        return f"EmbeddingModel(model={self.model_name}, {loaded})"


class _TransientError(Exception):
    """One attempt failed in a way worth retrying."""


class EmbeddingPipeline:
    """
    Feeds text to an embedding capability and validates the result.

    Each attempt runs on the pipeline's worker pool and is abandoned after
    ``timeout`` seconds. Timeouts and ``transient_errors`` are retried with
    exponential backoff up to ``max_attempts``. Anything else fails at once.
    """

    def __init__(
        self,
        embed_fn: EmbedFn,
        dimension: Optional[int] = None,
        max_attempts: int = 3,
        retry_wait: float = 0.5,
        retry_max_wait: float = 4.0,
        timeout: Optional[float] = 30.0,
        max_chars: Optional[int] = None,
        transient_errors: tuple[type[BaseException], ...] = DEFAULT_TRANSIENT_ERRORS,
        max_workers: int = 4,
    ):
        """
        Initialize the pipeline.

        Args:
            embed_fn: The embedding capability, text -> vector
            dimension: Expected output dimension (learned from the first vector if None)
            max_attempts: Attempts per text, including the first
            retry_wait: Backoff multiplier in seconds
            retry_max_wait: Upper bound on a single backoff
            timeout: Seconds to wait for one attempt (None waits forever)
            max_chars: Texts longer than this fail without calling the capability
            transient_errors: Exception types that are retried
            max_workers: Worker threads running embedding calls
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.embed_fn = embed_fn
        self.dimension = dimension
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.retry_max_wait = retry_max_wait
        self.timeout = timeout
        self.max_chars = max_chars
        self.transient_errors = transient_errors
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="blockoli-embed"
        )
        self._dimension_lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        """
        Embed one text.

        Raises:
            EmbeddingFailure: ``transient=True`` when retries ran out,
                ``transient=False`` for permanent failures
        """
        if not text or not text.strip():
            raise EmbeddingFailure("cannot embed empty text")
        if self.max_chars and len(text) > self.max_chars:
            raise EmbeddingFailure(f"text too long: {len(text)} > {self.max_chars} characters")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=self.retry_max_wait),
            retry=retry_if_exception_type(_TransientError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        try:
            vector = retrying(self._attempt, text)
        except _TransientError as e:
            attempts = retrying.statistics.get("attempt_number", self.max_attempts)
            raise EmbeddingFailure(
                f"embedding failed after {attempts} attempts: {e}",
                transient=True,
                attempts=attempts,
            ) from e
        except EmbeddingFailure:
            raise
        except Exception as e:
            raise EmbeddingFailure(f"embedding failed: {type(e).__name__}: {e}") from e

        return self._validate(vector)

    def embed_block(self, block: CodeBlock) -> CodeBlock:
        """Return a copy of the block with its embedding set."""
        return block.model_copy(update={"embedding": self.embed(block.text)})

    def _attempt(self, text: str) -> Sequence[float]:
        future = self._executor.submit(self.embed_fn, text)
        try:
            return future.result(timeout=self.timeout)
        except TimeoutError as e:
            future.cancel()
            raise _TransientError(f"timed out after {self.timeout}s") from e
        except EmbeddingFailure as e:
            if e.transient:
                raise _TransientError(e.message) from e
            raise
        except self.transient_errors as e:
            logger.debug(f"Transient embedding error: {type(e).__name__}: {e}")
            raise _TransientError(f"{type(e).__name__}: {e}") from e

    def _validate(self, vector: Sequence[float]) -> list[float]:
        try:
            values = [float(x) for x in vector]
        except (TypeError, ValueError) as e:
            raise EmbeddingFailure(f"embedding is not a float vector: {e}") from e

        if not values:
            raise EmbeddingFailure("embedding is empty")
        if not all(math.isfinite(x) for x in values):
            raise EmbeddingFailure("embedding contains non-finite values")

        with self._dimension_lock:
            if self.dimension is None:
                self.dimension = len(values)
                logger.info(f"Embedding dimension set to {self.dimension}")
        if len(values) != self.dimension:
            raise EmbeddingFailure(
                f"embedding has dimension {len(values)}, expected {self.dimension}"
            )
        return values

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __repr__(self) -> str:
        return (
            f"EmbeddingPipeline(dimension={self.dimension}, "
            f"max_attempts={self.max_attempts}, timeout={self.timeout})"
        )
