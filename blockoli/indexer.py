"""
Indexing orchestration for blockoli.

Runs extraction and embedding for a batch of files, stores the result as
one upsert and marks the project's similarity index stale.
"""

import concurrent.futures
import logging
import time
from collections import Counter
from enum import Enum
from threading import Lock
from typing import Iterable, Optional

from .embeddings import EmbeddingPipeline
from .errors import AlreadyIndexing, EmbeddingFailure, ParseFailure
from .extractors import ExtractorRegistry
from .models import (
    BlockFailure,
    CodeBlock,
    FailureDetail,
    FileReport,
    FileStatus,
    IndexReport,
    validate_project_name,
)
from .progress import ProgressCallback, ProgressReporter
from .similarity import IndexCache
from .store import ProjectStore

logger = logging.getLogger(__name__)


class IndexState(str, Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    FAILED = "failed"


class Indexer:
    """
    Turns (path, source) pairs into stored, embedded code blocks.

    Features:
    - At most one reindex in flight per project
    - Files extracted and embedded in parallel
    - Per-file parse failures and per-block embedding failures are recorded
      in the report without aborting the run
    - One upsert per run, so the project generation moves once
    """

    def __init__(
        self,
        store: ProjectStore,
        pipeline: EmbeddingPipeline,
        extractors: ExtractorRegistry,
        cache: Optional[IndexCache] = None,
        max_workers: int = 4,
    ):
        """
        Initialize the indexer.

        Args:
            store: Project store receiving the blocks
            pipeline: Embedding pipeline for block vectors
            extractors: Language registry producing block candidates
            cache: Similarity index cache to invalidate after each run
            max_workers: Files processed concurrently
        """
        self.store = store
        self.pipeline = pipeline
        self.extractors = extractors
        self.cache = cache
        self.max_workers = max(1, max_workers)

        self._states: dict[str, IndexState] = {}
        self._state_lock = Lock()

    def state(self, project: str) -> IndexState:
        with self._state_lock:
            return self._states.get(project, IndexState.IDLE)

    def _begin(self, project: str) -> None:
        with self._state_lock:
            current = self._states.get(project, IndexState.IDLE)
            if current == IndexState.INDEXING:
                raise AlreadyIndexing(project)
            if current == IndexState.FAILED:
                logger.info(f"Retrying {project} after a failed reindex")
            self._states[project] = IndexState.INDEXING

    def _finish(self, project: str, state: IndexState) -> None:
        with self._state_lock:
            self._states[project] = state

    def reindex(
        self,
        project: str,
        files: Iterable[tuple[str, str]],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexReport:
        """
        Index a batch of files into a project.

        Args:
            project: Project name, created if missing
            files: (path, source_text) pairs; paths must be unique
            progress_callback: Optional callback(ProgressEvent) per finished file

        Returns:
            IndexReport with one FileReport per input file, in input order

        Raises:
            ValueError: If a path appears twice
            InvalidProjectName: If the project name is invalid
            AlreadyIndexing: If a reindex of this project is in flight
            StorageFailure, DimensionMismatch: The run is aborted and the
                project's state becomes FAILED
        """
        files = list(files)
        duplicates = [path for path, count in Counter(path for path, _ in files).items() if count > 1]
        if duplicates:
            raise ValueError(f"Duplicate paths in reindex batch: {', '.join(sorted(duplicates))}")
        validate_project_name(project)

        self._begin(project)
        try:
            report = self._run(project, files, progress_callback)
        except Exception as e:
            self._finish(project, IndexState.FAILED)
            logger.error(f"Reindex of {project} failed: {type(e).__name__}: {e}")
            raise
        self._finish(project, IndexState.IDLE)
        return report

    def _run(
        self,
        project: str,
        files: list[tuple[str, str]],
        progress_callback: Optional[ProgressCallback],
    ) -> IndexReport:
        start_time = time.time()
        if self.store.ensure_project(project):
            logger.info(f"Project {project} did not exist and was created")

        reporter = ProgressReporter(len(files), callback=progress_callback) if progress_callback else None
        logger.info(f"Indexing {len(files)} files into {project} with {self.max_workers} workers")

        results = self._process_files(files, reporter)
        file_reports = [file_report for file_report, _ in results]
        succeeded = [file_report.path for file_report in file_reports if file_report.status == FileStatus.INDEXED]
        blocks = [block for _, file_blocks in results for block in file_blocks]

        report = IndexReport(project=project, generation=0, files=file_reports)
        if succeeded:
            upsert = self.store.upsert_blocks(project, blocks, files=succeeded)
            report.generation = upsert.generation
            report.inserted = upsert.inserted
            report.updated = upsert.updated
            report.deleted = upsert.deleted
            if self.cache is not None:
                self.cache.invalidate(project)
        else:
            report.generation = self.store.generation(project)
            logger.warning(f"No file of {project} indexed successfully, nothing stored")

        report.elapsed_seconds = time.time() - start_time
        logger.info(
            f"Indexing complete for {project}: {len(report.succeeded)} files indexed, "
            f"{len(report.failed)} failed, {report.total_blocks} blocks "
            f"({report.embedded_blocks} embedded) in {report.elapsed_seconds:.2f}s"
        )
        return report

    def _process_files(
        self,
        files: list[tuple[str, str]],
        reporter: Optional[ProgressReporter],
    ) -> list[tuple[FileReport, list[CodeBlock]]]:
        """Process files in parallel; results come back in input order."""
        if not files:
            return []

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="blockoli-index"
        ) as executor:
            futures = [executor.submit(self._process_file, path, source) for path, source in files]

            for future in concurrent.futures.as_completed(futures):
                file_report, _ = future.result()
                if reporter:
                    reporter.update(file_report.path, file_report.status.value, file_report.blocks)

            return [future.result() for future in futures]

    def _extract(self, path: str, source: str) -> list[CodeBlock]:
        """
        Extract all candidates of one file.

        Raises:
            ParseFailure: Also for unexpected extractor errors, so one bad
                file is reported failed instead of aborting the run
        """
        try:
            return list(self.extractors.extract(path, source))
        except ParseFailure:
            raise
        except Exception as e:
            logger.error(f"Extractor error on {path}: {type(e).__name__}: {e}")
            raise ParseFailure(path, f"extraction failed: {type(e).__name__}: {e}") from e

    def _process_file(self, path: str, source: str) -> tuple[FileReport, list[CodeBlock]]:
        """
        Extract and embed one file.

        Returns:
            The file's report and its blocks (empty when the file failed)
        """
        language = self.extractors.detect_language(path)
        try:
            candidates = self._extract(path, source)
        except ParseFailure as e:
            logger.warning(f"Failed to parse {path}: {e.message}")
            file_report = FileReport(
                path=path,
                status=FileStatus.FAILED,
                language=language,
                error=FailureDetail.from_exception(e),
            )
            return file_report, []

        blocks: list[CodeBlock] = []
        failures: list[BlockFailure] = []
        for candidate in candidates:
            try:
                blocks.append(self.pipeline.embed_block(candidate))
            except EmbeddingFailure as e:
                logger.warning(f"Storing {path}:{candidate.qualified_name} without embedding: {e}")
                failures.append(BlockFailure(
                    name=candidate.name,
                    scope=candidate.scope,
                    kind=type(e).__name__,
                    message=str(e),
                ))
                blocks.append(candidate)

        logger.debug(f"Processed {path}: {len(blocks)} blocks, {len(failures)} embedding failures")
        file_report = FileReport(
            path=path,
            status=FileStatus.INDEXED,
            language=language,
            blocks=len(blocks),
            embedded=len(blocks) - len(failures),
            embedding_failures=failures,
        )
        return file_report, blocks

    def __repr__(self) -> str:
        return f"Indexer(store={self.store!r}, max_workers={self.max_workers})"
