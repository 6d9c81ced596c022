"""
Tests for progress reporting.
"""

import threading
import time

from blockoli.progress import ProgressEvent, ProgressReporter


class TestProgressReporter:
    """Test suite for ProgressReporter class."""

    def test_progress_reporter_initialization(self):
        reporter = ProgressReporter(total_files=100)

        assert reporter.total_files == 100
        assert reporter.current_file == 0
        assert reporter.callback is None

    def test_progress_reporter_update(self):
        reporter = ProgressReporter(total_files=10)

        event = reporter.update("file1.py", status="indexed", blocks=3)

        assert event.current == 1
        assert event.total == 10
        assert event.path == "file1.py"
        assert event.status == "indexed"
        assert event.blocks == 3
        assert event.elapsed_seconds >= 0

    def test_progress_reporter_eta_calculation(self):
        reporter = ProgressReporter(total_files=100)

        for i in range(10):
            reporter.update(f"file{i}.py")
            time.sleep(0.01)

        event = reporter.update("file10.py")
        assert event.eta_seconds is not None
        assert event.eta_seconds > 0
        assert event.files_per_second > 0

    def test_progress_reporter_eta_at_completion(self):
        reporter = ProgressReporter(total_files=2)
        reporter.update("a.py")
        time.sleep(0.01)

        event = reporter.update("b.py")

        assert event.eta_seconds == 0

    def test_callback_receives_events(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter(total_files=2, callback=events.append)

        reporter.update("a.py")
        reporter.update("b.py", status="failed")

        assert [(e.current, e.path, e.status) for e in events] == [
            (1, "a.py", "indexed"),
            (2, "b.py", "failed"),
        ]

    def test_concurrent_updates_are_numbered_uniquely(self):
        events: list[ProgressEvent] = []
        reporter = ProgressReporter(total_files=50, callback=events.append)

        threads = [threading.Thread(target=reporter.update, args=(f"f{i}.py",)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(e.current for e in events) == list(range(1, 51))


class TestFormatting:
    """Tests for ETA and duration formatting."""

    def test_format_eta(self):
        assert ProgressReporter.format_eta(None) == "unknown"
        assert ProgressReporter.format_eta(45) == "45s"
        assert ProgressReporter.format_eta(150) == "2m 30s"
        assert ProgressReporter.format_eta(4500) == "1h 15m"

    def test_format_duration(self):
        assert ProgressReporter.format_duration(2.5) == "2.5s"
        assert ProgressReporter.format_duration(90) == "1m 30s"
        assert ProgressReporter.format_duration(4500) == "1h 15m"

    def test_get_summary(self):
        reporter = ProgressReporter(total_files=3)
        reporter.update("a.py")

        assert reporter.get_summary().startswith("Processed 1/3 files in ")
