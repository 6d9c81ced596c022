"""
Language detection and extractor lookup.
"""

import logging
import threading
from pathlib import PurePath
from typing import Optional

from ..errors import ParseFailure
from .base import BlockCandidates
from .treesitter import TreeSitterExtractor

logger = logging.getLogger(__name__)

EXTENSION_MAP = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
}


class ExtractorRegistry:
    """
    Picks an extractor for a file by extension.

    Extractors are created on first use and cached per language.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict
        self._extractors: dict[str, TreeSitterExtractor] = {}
        self._lock = threading.Lock()

    @staticmethod
    def detect_language(path: str) -> Optional[str]:
        """Language name for a file path, or None when unsupported."""
        return EXTENSION_MAP.get(PurePath(path).suffix.lower())

    def supports(self, path: str) -> bool:
        return self.detect_language(path) is not None

    def get(self, language: str) -> TreeSitterExtractor:
        with self._lock:
            if language not in self._extractors:
                logger.debug(f"Creating extractor for language: {language}")
                self._extractors[language] = TreeSitterExtractor(language, strict=self.strict)
            return self._extractors[language]

    def extract(self, path: str, source: str) -> BlockCandidates:
        """
        Extract block candidates from one file.

        Raises:
            ParseFailure: If the language is unsupported or the source does not parse
        """
        language = self.detect_language(path)
        if language is None:
            raise ParseFailure(path, f"unsupported file type {PurePath(path).suffix or '(none)'}")
        return self.get(language).extract(source, path)

    def __repr__(self) -> str:
        return f"ExtractorRegistry(strict={self.strict}, loaded={sorted(self._extractors)})"
