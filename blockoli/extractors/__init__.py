"""
Block extraction for blockoli.

- BlockExtractor: interface for turning one file into code blocks
- TreeSitterExtractor: AST-based extraction for Python, JS/TS, Go, Rust, C
- ExtractorRegistry: language detection and per-language extractor cache
"""

from .base import BlockCandidates, BlockExtractor
from .treesitter import TreeSitterExtractor
from .registry import EXTENSION_MAP, ExtractorRegistry

__all__ = [
    "BlockCandidates",
    "BlockExtractor",
    "TreeSitterExtractor",
    "ExtractorRegistry",
    "EXTENSION_MAP",
]
