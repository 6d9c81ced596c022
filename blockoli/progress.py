"""
Progress reporting for blockoli.

Tracks per-file progress of a reindex with rate and ETA.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class ProgressEvent:
    """
    Event emitted when a file finishes.

    Attributes:
        current: Number of files finished so far
        total: Total number of files in the run
        path: File that just finished
        status: "indexed" or "failed"
        blocks: Blocks extracted from the file
        elapsed_seconds: Time elapsed since start
        eta_seconds: Estimated time remaining (None if unknown)
        files_per_second: Processing rate
    """
    current: int
    total: int
    path: str
    status: str
    blocks: int
    elapsed_seconds: float
    eta_seconds: Optional[float] = None
    files_per_second: float = 0.0


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """
    Tracks and reports indexing progress with ETA calculation.

    update() may be called from worker threads; events are numbered in the
    order files finish.
    """

    def __init__(self, total_files: int, callback: Optional[ProgressCallback] = None):
        self.total_files = total_files
        self.current_file = 0
        self.start_time = time.time()
        self.callback = callback
        self._lock = threading.Lock()

    def update(self, path: str, status: str = "indexed", blocks: int = 0) -> ProgressEvent:
        """Record one finished file and emit its event."""
        with self._lock:
            self.current_file += 1
            current = self.current_file

        elapsed = time.time() - self.start_time
        files_per_second = current / elapsed if elapsed > 0 else 0.0

        remaining_files = self.total_files - current
        eta = remaining_files / files_per_second if files_per_second > 0 else None

        event = ProgressEvent(
            current=current,
            total=self.total_files,
            path=path,
            status=status,
            blocks=blocks,
            elapsed_seconds=elapsed,
            eta_seconds=eta,
            files_per_second=files_per_second,
        )

        if self.callback:
            self.callback(event)

        return event

    @staticmethod
    def format_eta(seconds: Optional[float]) -> str:
        """
        Format ETA in human-readable form.

        Returns:
            Formatted string like "2m 30s", "1h 15m", or "unknown"
        """
        if seconds is None:
            return "unknown"

        minutes, secs = divmod(int(seconds), 60)
        hours, minutes = divmod(minutes, 60)

        if hours > 0:
            return f"{hours}h {minutes}m"
        elif minutes > 0:
            return f"{minutes}m {secs}s"
        else:
            return f"{secs}s"

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration like "2.5s", "1m 30s" or "1h 15m"."""
        if seconds < 60:
            return f"{seconds:.1f}s"

        minutes, secs = divmod(int(seconds), 60)
        hours, minutes = divmod(minutes, 60)

        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m {secs}s"

    def get_summary(self) -> str:
        elapsed = time.time() - self.start_time
        files_per_second = self.current_file / elapsed if elapsed > 0 else 0

        return (
            f"Processed {self.current_file}/{self.total_files} files "
            f"in {self.format_duration(elapsed)} "
            f"({files_per_second:.1f} files/sec)"
        )
