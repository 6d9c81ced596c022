"""
In-process storage backend. Nothing survives the process; used for tests and
for short-lived engines.
"""

import threading

from ..models import CodeBlock


class MemoryBackend:
    """Dict-backed storage; blocks of a project are kept in id order."""

    name = "memory"

    def __init__(self):
        self._projects: dict[str, dict[int, CodeBlock]] = {}
        self._next_ids: dict[str, int] = {}
        self._lock = threading.Lock()

    def create_project(self, project: str) -> None:
        with self._lock:
            self._projects.setdefault(project, {})

    def drop_project(self, project: str) -> None:
        with self._lock:
            self._projects.pop(project, None)
            self._next_ids.pop(project, None)

    def project_exists(self, project: str) -> bool:
        with self._lock:
            return project in self._projects

    def project_names(self) -> list[str]:
        with self._lock:
            return sorted(self._projects)

    def load_blocks(self, project: str) -> list[CodeBlock]:
        with self._lock:
            blocks = self._projects.get(project, {})
            return [b.model_copy(deep=True) for b in sorted(blocks.values(), key=lambda b: b.id)]

    def find_by_name(self, project: str, name: str) -> list[CodeBlock]:
        return [b for b in self.load_blocks(project) if b.name == name]

    def load_next_id(self, project: str) -> int:
        with self._lock:
            return self._next_ids.get(project, 1)

    def write_blocks(self, project: str, upserts: list[CodeBlock], deletes: list[int], next_id: int) -> None:
        with self._lock:
            blocks = self._projects.setdefault(project, {})
            self._next_ids[project] = next_id
            for block_id in deletes:
                blocks.pop(block_id, None)
            for block in upserts:
                blocks[block.id] = block.model_copy(deep=True)

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"MemoryBackend(projects={len(self._projects)})"
