"""
Data models for blockoli.

Defines Pydantic models for code blocks, project info, indexing reports
and search results.
"""

import re
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from .errors import InvalidProjectName

PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

FUNCTION_BLOCK_TYPES = ("function", "method")


def validate_project_name(name: str) -> str:
    """
    Check that a project name is usable as a storage key.

    Raises:
        InvalidProjectName: If the name is empty or has characters other
            than letters, digits or underscore
    """
    if not isinstance(name, str) or not PROJECT_NAME_PATTERN.match(name):
        raise InvalidProjectName(str(name))
    return name


class CodeBlock(BaseModel):
    """
    One indexed unit of source: a function, method or class.

    Candidates produced by an extractor have no ``id``. The project store
    assigns one when the block is first stored and keeps it across reindexes
    of the same match key.
    """
    id: Optional[int] = Field(default=None, description="Project-scoped identifier")
    project: Optional[str] = Field(default=None, description="Owning project name")
    path: str = Field(description="Source file path as given to reindex")
    language: str = Field(description="Language of the source file")
    block_type: str = Field(description="Type: function, method or class")
    name: str = Field(description="Function/method/class name")
    scope: Optional[str] = Field(default=None, description="Enclosing definition name, None at top level")
    occurrence: int = Field(default=0, ge=0, description="Ordinal among same path/scope/name blocks")
    start_byte: int = Field(ge=0)
    end_byte: int = Field(ge=0)
    start_line: int = Field(ge=1, description="First line, 1-indexed")
    end_line: int = Field(ge=1, description="Last line, 1-indexed, inclusive")
    text: str = Field(description="Raw source text of the block")
    outgoing_calls: list[str] = Field(default_factory=list, description="Callees referenced in the block")
    embedding: Optional[list[float]] = Field(default=None, description="Embedding vector, None until embedded")

    @property
    def match_key(self) -> tuple[str, Optional[str], str, int]:
        """Key used to match a re-extracted block against the stored one."""
        return (self.path, self.scope, self.name, self.occurrence)

    @property
    def qualified_name(self) -> str:
        """Name prefixed with its scope, e.g. ``Calculator.add``."""
        return f"{self.scope}.{self.name}" if self.scope else self.name

    @property
    def is_embedded(self) -> bool:
        return self.embedding is not None

    @property
    def is_function(self) -> bool:
        return self.block_type in FUNCTION_BLOCK_TYPES

    def __str__(self) -> str:
        return f"{self.path}:{self.start_line}-{self.end_line} {self.block_type} {self.qualified_name}"


class ProjectInfo(BaseModel):
    """Summary of a stored project."""
    name: str
    total_code_blocks: int = 0
    embedded_blocks: int = 0
    dimension: Optional[int] = None
    generation: int = 0

    def __str__(self) -> str:
        lines = [
            f"Project: {self.name}",
            f"Code blocks: {self.total_code_blocks}",
            f"Embedded blocks: {self.embedded_blocks}",
            f"Generation: {self.generation}",
        ]
        if self.dimension:
            lines.append(f"Embedding dimension: {self.dimension}")
        return "\n".join(lines)


class FileStatus(str, Enum):
    INDEXED = "indexed"
    FAILED = "failed"


class FailureDetail(BaseModel):
    """Why a file failed; ``kind`` is the error class name."""
    kind: str
    message: str

    @classmethod
    def from_exception(cls, error: Exception) -> "FailureDetail":
        return cls(kind=type(error).__name__, message=str(error))


class BlockFailure(BaseModel):
    """A block that was stored without an embedding."""
    name: str
    scope: Optional[str] = None
    kind: str
    message: str


class FileReport(BaseModel):
    """Outcome of indexing one file."""
    path: str
    status: FileStatus
    language: Optional[str] = None
    blocks: int = 0
    embedded: int = 0
    error: Optional[FailureDetail] = None
    embedding_failures: list[BlockFailure] = Field(default_factory=list)


class IndexReport(BaseModel):
    """Per-file outcome of a reindex run."""
    project: str
    generation: int
    files: list[FileReport] = Field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> list[FileReport]:
        return [f for f in self.files if f.status == FileStatus.INDEXED]

    @property
    def failed(self) -> list[FileReport]:
        return [f for f in self.files if f.status == FileStatus.FAILED]

    @property
    def total_blocks(self) -> int:
        return sum(f.blocks for f in self.files)

    @property
    def embedded_blocks(self) -> int:
        return sum(f.embedded for f in self.files)

    def __str__(self) -> str:
        """Format report for display."""
        lines = [
            f"Project: {self.project} (generation {self.generation})",
            f"Files indexed: {len(self.succeeded)}",
            f"Files failed: {len(self.failed)}",
            f"Blocks: {self.total_blocks} ({self.embedded_blocks} embedded)",
            f"Inserted: {self.inserted}, updated: {self.updated}, deleted: {self.deleted}",
        ]
        return "\n".join(lines)


class UpsertResult(BaseModel):
    """Counts from one upsert batch and the generation it produced."""
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    generation: int


class SearchHit(BaseModel):
    """A block and its distance to the query vector."""
    block: CodeBlock
    distance: float = Field(ge=0)

    def __str__(self) -> str:
        return f"{self.block} ({self.distance:.4f})"


class NearestBlocks(BaseModel):
    """Closest block plus the full ranked list."""
    nearest: CodeBlock
    k_nearest: list[CodeBlock]
