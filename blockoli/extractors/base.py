"""
Base block extractor interface for blockoli.

Defines the abstract base class that all block extractors implement and
the restartable sequence of block candidates they return.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterator

from ..models import CodeBlock


class BlockCandidates:
    """
    Lazy, finite, restartable sequence of extracted blocks.

    The source is parsed once, up front. Every call to ``iter()`` walks the
    syntax tree again and yields fresh CodeBlock candidates in document
    order, without ids or embeddings.
    """

    def __init__(self, path: str, walk: Callable[[], Iterator[CodeBlock]]):
        self.path = path
        self._walk = walk

    def __iter__(self) -> Iterator[CodeBlock]:
        return self._walk()

    def __repr__(self) -> str:
        return f"BlockCandidates(path={self.path!r})"


class BlockExtractor(ABC):
    """
    Abstract base class for block extractors.

    An extractor turns the source text of one file into code blocks
    (functions, methods, classes) with name, enclosing scope, span and
    raw text.
    """

    @abstractmethod
    def extract(self, source: str, path: str) -> BlockCandidates:
        """
        Parse source and return its block candidates.

        Args:
            source: The file content
            path: File path, recorded on every block and in failures

        Returns:
            Restartable sequence of CodeBlock candidates

        Raises:
            ParseFailure: If the source cannot be parsed
        """
