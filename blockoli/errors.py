"""
Error taxonomy for blockoli.

Every failure the engine can produce has its own type so callers can tell
them apart. Per-item failures (parse, embedding) are recorded in the
IndexReport during a reindex; everything else is raised to the caller.
"""

from typing import Optional


class BlockoliError(Exception):
    """Base class for all blockoli errors."""


class InvalidProjectName(BlockoliError, ValueError):
    """Project name contains characters other than letters, digits or underscore."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Invalid project name {name!r}: only alphanumeric and underscore characters are allowed"
        )


class NotFound(BlockoliError):
    """A project does not exist."""

    def __init__(self, project: str):
        self.project = project
        super().__init__(f"Project {project} not found")


class StateConflict(BlockoliError):
    """The request conflicts with the current state. Never retried automatically."""


class AlreadyExists(StateConflict):
    """A project with this name already exists."""

    def __init__(self, project: str):
        self.project = project
        super().__init__(f"Project {project} already exists")


class AlreadyIndexing(StateConflict):
    """A reindex of this project is already in flight."""

    def __init__(self, project: str):
        self.project = project
        super().__init__(f"Project {project} is already being indexed")


class ItemFailure(BlockoliError):
    """A single file or block failed. Recorded in the report, never aborts a batch."""


class ParseFailure(ItemFailure):
    """Source for one file could not be parsed into blocks."""

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class EmbeddingFailure(ItemFailure):
    """
    The embedding capability could not produce a vector for a text.

    Attributes:
        transient: True when retries were exhausted on a transient error
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, transient: bool = False, attempts: int = 1):
        self.message = message
        self.transient = transient
        self.attempts = attempts
        super().__init__(message)


class SearchError(BlockoliError):
    """Query-time failure. Always surfaced, never degraded silently."""


class DimensionMismatch(SearchError):
    """A vector's dimension disagrees with the dimension in use."""

    def __init__(self, expected: int, actual: int, context: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        where = f" ({context})" if context else ""
        super().__init__(f"Dimension mismatch{where}: expected {expected}, got {actual}")


class EmptyIndex(SearchError):
    """The project has no embedded blocks to search."""

    def __init__(self, project: Optional[str] = None):
        self.project = project
        if project:
            super().__init__(f"Project {project} has no embedded blocks")
        else:
            super().__init__("Index is empty")


class StorageFailure(BlockoliError):
    """
    The persistence backend failed.

    Always raised from the backend's own exception, which stays available
    as ``__cause__``.
    """


# Errors a reindex can raise to its caller
OrchestratorError = (NotFound, InvalidProjectName, AlreadyIndexing, DimensionMismatch, StorageFailure)
