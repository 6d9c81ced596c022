"""
Source file discovery for blockoli.

Walks a directory honouring nested .gitignore files, configured exclude
patterns and a file size limit, and reads the files for reindexing.
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, Optional
import pathspec

logger = logging.getLogger(__name__)


def load_nested_gitignore(root_path: Path) -> Optional[pathspec.PathSpec]:
    """
    Load and merge all .gitignore files in a directory tree.

    Patterns from a nested .gitignore are scoped to its directory.

    Returns:
        PathSpec with merged patterns, or None if no .gitignore files found
    """
    gitignore_files = sorted(p for p in root_path.rglob(".gitignore") if p.is_file())
    if not gitignore_files:
        logger.debug("No .gitignore files found")
        return None

    all_patterns: list[str] = []
    for gitignore_path in gitignore_files:
        try:
            patterns = gitignore_path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read {gitignore_path}: {e}")
            continue

        gitignore_dir = gitignore_path.parent.relative_to(root_path).as_posix()
        if gitignore_dir == ".":
            all_patterns.extend(patterns)
            continue

        for pattern in patterns:
            stripped = pattern.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if stripped.startswith("!"):
                all_patterns.append(f"!{gitignore_dir}/{stripped[1:].lstrip('/')}")
            else:
                all_patterns.append(f"{gitignore_dir}/{stripped.lstrip('/')}")

        logger.debug(f"Loaded {len(patterns)} patterns from {gitignore_path}")

    if not all_patterns:
        return None

    logger.info(f"Loaded {len(all_patterns)} patterns from {len(gitignore_files)} .gitignore files")
    return pathspec.PathSpec.from_lines("gitwildmatch", all_patterns)


class FileDiscovery:
    """
    Finds indexable source files under a root directory.

    Features:
    - Nested .gitignore support
    - gitwildmatch exclude patterns from configuration
    - Extension filter (only languages an extractor supports)
    - File size limit
    """

    def __init__(
        self,
        exclude: Iterable[str] = (),
        max_file_size: int = 1048576,
        extensions: Optional[Iterable[str]] = None,
    ):
        """
        Args:
            exclude: gitwildmatch patterns relative to the root
            max_file_size: Larger files are skipped, in bytes
            extensions: Lower-case suffixes to keep, e.g. ".py" (None keeps all)
        """
        self.exclude_spec = pathspec.PathSpec.from_lines("gitwildmatch", list(exclude))
        self.max_file_size = max_file_size
        self.extensions = {e.lower() for e in extensions} if extensions is not None else None

    def discover(self, root_path: Path) -> list[Path]:
        """
        List indexable files under ``root_path`` in sorted order.

        A file path is returned as a single-element list when it is allowed.

        Raises:
            ValueError: If the path does not exist
        """
        root_path = Path(root_path)
        if root_path.is_file():
            return [root_path] if self.should_index_file(root_path) else []
        if not root_path.is_dir():
            raise ValueError(f"Path does not exist: {root_path}")

        gitignore_spec = load_nested_gitignore(root_path)
        files = []
        for file_path in sorted(root_path.rglob("*")):
            if not file_path.is_file():
                continue

            rel_path = file_path.relative_to(root_path).as_posix()
            if gitignore_spec and gitignore_spec.match_file(rel_path):
                continue
            if self.exclude_spec.match_file(rel_path):
                continue
            if not self.should_index_file(file_path):
                continue

            files.append(file_path)

        logger.info(f"Found {len(files)} files to index under {root_path}")
        return files

    def should_index_file(self, file_path: Path) -> bool:
        if self.extensions is not None and file_path.suffix.lower() not in self.extensions:
            return False

        try:
            file_size = file_path.stat().st_size
        except OSError as e:
            logger.debug(f"Cannot stat file {file_path}: {e}")
            return False

        if file_size > self.max_file_size:
            logger.warning(
                f"Skipping large file: {file_path} "
                f"({file_size / 1024 / 1024:.1f}MB > {self.max_file_size / 1024 / 1024:.1f}MB limit)"
            )
            return False
        return True

    def read_files(self, root_path: Path) -> Iterator[tuple[str, str]]:
        """
        Yield (relative path, source text) for each discovered file.

        Paths are relative to ``root_path`` (or to its parent for a single
        file). Files that are not valid UTF-8 are skipped with a warning.
        """
        root_path = Path(root_path)
        base_path = root_path.parent if root_path.is_file() else root_path

        for file_path in self.discover(root_path):
            try:
                source = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable file {file_path}: {e}")
                continue
            yield file_path.relative_to(base_path).as_posix(), source
