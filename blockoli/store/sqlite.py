"""
SQLite storage backend.

Blocks of all projects live in one ``blocks`` table keyed by (project, id).
Embeddings and outgoing calls are stored as JSON text, which round-trips
floats exactly.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Union

from ..models import CodeBlock
from .base import storage_errors

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    name TEXT PRIMARY KEY,
    created_at REAL NOT NULL,
    next_id INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS blocks (
    project TEXT NOT NULL REFERENCES projects(name) ON DELETE CASCADE,
    id INTEGER NOT NULL,
    path TEXT NOT NULL,
    language TEXT NOT NULL,
    block_type TEXT NOT NULL,
    name TEXT NOT NULL,
    scope TEXT,
    occurrence INTEGER NOT NULL DEFAULT 0,
    start_byte INTEGER NOT NULL,
    end_byte INTEGER NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    text TEXT NOT NULL,
    outgoing_calls TEXT NOT NULL,
    embedding TEXT,
    PRIMARY KEY (project, id)
);
CREATE INDEX IF NOT EXISTS idx_blocks_name ON blocks(project, name);
CREATE INDEX IF NOT EXISTS idx_blocks_path ON blocks(project, path);
"""

COLUMNS = (
    "project", "id", "path", "language", "block_type", "name", "scope", "occurrence",
    "start_byte", "end_byte", "start_line", "end_line", "text", "outgoing_calls", "embedding",
)


class SQLiteBackend:
    """
    Relational backend over the standard library sqlite3 module.

    One connection is shared by all threads and guarded by a lock; every
    write_blocks call runs in a single transaction.
    """

    name = "sqlite"

    def __init__(self, db_path: Union[Path, str]):
        """
        Args:
            db_path: Database file, or ":memory:"
        """
        self.db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        with storage_errors(self.name, "connect", sqlite3.Error):
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
            self._migrate()
        logger.info(f"Connected to SQLite at {db_path}")

    def _migrate(self) -> None:
        """Add columns missing from databases created by older releases."""
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(projects)")}
        if "next_id" not in columns:
            with self._conn:
                self._conn.execute("ALTER TABLE projects ADD COLUMN next_id INTEGER NOT NULL DEFAULT 1")
            logger.info("Added next_id column to projects table")

    def create_project(self, project: str) -> None:
        with self._lock, storage_errors(self.name, "create_project", sqlite3.Error):
            with self._conn:
                self._conn.execute(
                    "INSERT OR IGNORE INTO projects (name, created_at) VALUES (?, ?)",
                    (project, time.time()),
                )

    def drop_project(self, project: str) -> None:
        with self._lock, storage_errors(self.name, "drop_project", sqlite3.Error):
            with self._conn:
                self._conn.execute("DELETE FROM blocks WHERE project = ?", (project,))
                self._conn.execute("DELETE FROM projects WHERE name = ?", (project,))

    def project_exists(self, project: str) -> bool:
        with self._lock, storage_errors(self.name, "project_exists", sqlite3.Error):
            row = self._conn.execute(
                "SELECT 1 FROM projects WHERE name = ?", (project,)
            ).fetchone()
        return row is not None

    def project_names(self) -> list[str]:
        with self._lock, storage_errors(self.name, "project_names", sqlite3.Error):
            rows = self._conn.execute("SELECT name FROM projects ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    def load_blocks(self, project: str) -> list[CodeBlock]:
        with self._lock, storage_errors(self.name, "load_blocks", sqlite3.Error):
            rows = self._conn.execute(
                "SELECT * FROM blocks WHERE project = ? ORDER BY id", (project,)
            ).fetchall()
        return [self._row_to_block(row) for row in rows]

    def find_by_name(self, project: str, name: str) -> list[CodeBlock]:
        with self._lock, storage_errors(self.name, "find_by_name", sqlite3.Error):
            rows = self._conn.execute(
                "SELECT * FROM blocks WHERE project = ? AND name = ? ORDER BY id",
                (project, name),
            ).fetchall()
        return [self._row_to_block(row) for row in rows]

    def load_next_id(self, project: str) -> int:
        with self._lock, storage_errors(self.name, "load_next_id", sqlite3.Error):
            row = self._conn.execute(
                "SELECT next_id FROM projects WHERE name = ?", (project,)
            ).fetchone()
        return row["next_id"] if row is not None else 1

    def write_blocks(self, project: str, upserts: list[CodeBlock], deletes: list[int], next_id: int) -> None:
        placeholders = ", ".join("?" for _ in COLUMNS)
        insert = f"INSERT OR REPLACE INTO blocks ({', '.join(COLUMNS)}) VALUES ({placeholders})"

        with self._lock, storage_errors(self.name, "write_blocks", sqlite3.Error):
            with self._conn:
                if deletes:
                    self._conn.executemany(
                        "DELETE FROM blocks WHERE project = ? AND id = ?",
                        [(project, block_id) for block_id in deletes],
                    )
                if upserts:
                    self._conn.executemany(insert, [self._block_to_row(project, b) for b in upserts])
                self._conn.execute(
                    "UPDATE projects SET next_id = ? WHERE name = ?", (next_id, project)
                )
        logger.debug(f"Wrote {len(upserts)} blocks and deleted {len(deletes)} in {project}")

    @staticmethod
    def _block_to_row(project: str, block: CodeBlock) -> tuple:
        return (
            project,
            block.id,
            block.path,
            block.language,
            block.block_type,
            block.name,
            block.scope,
            block.occurrence,
            block.start_byte,
            block.end_byte,
            block.start_line,
            block.end_line,
            block.text,
            json.dumps(block.outgoing_calls),
            json.dumps(block.embedding) if block.embedding is not None else None,
        )

    @staticmethod
    def _row_to_block(row: sqlite3.Row) -> CodeBlock:
        data = dict(row)
        data["outgoing_calls"] = json.loads(data["outgoing_calls"])
        if data["embedding"] is not None:
            data["embedding"] = json.loads(data["embedding"])
        return CodeBlock(**data)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __repr__(self) -> str:
        return f"SQLiteBackend(db_path={self.db_path})"
