"""
LanceDB storage backend.

Vector-native storage for blocks. The vector column has a fixed width, so
blocks without an embedding are stored with a zero vector and
``has_embedding = False``. Vectors are stored as float32.
"""

import logging
import time
from pathlib import Path
from typing import Optional
import lancedb
from lancedb.pydantic import LanceModel, Vector
from lancedb.table import Table

from ..models import CodeBlock
from .base import storage_errors

logger = logging.getLogger(__name__)


class ProjectRow(LanceModel):
    name: str
    created_at: float
    next_id: int = 1


def block_row_model(dimension: int) -> type[LanceModel]:
    """LanceDB schema for blocks with a ``dimension``-wide vector column."""

    class BlockRow(LanceModel):
        project: str
        id: int
        path: str
        language: str
        block_type: str
        name: str
        scope: Optional[str] = None
        occurrence: int = 0
        start_byte: int
        end_byte: int
        start_line: int
        end_line: int
        text: str
        outgoing_calls: list[str]
        has_embedding: bool
        vector: Vector(dimension)

    return BlockRow


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class LanceBackend:
    """
    Storage over a LanceDB database directory.

    Features:
    - Lazy connection and table creation
    - One ``projects`` table and one ``blocks`` table shared by all projects
    - write_blocks deletes then appends; LanceDB has no multi-statement transactions
    """

    name = "lance"

    PROJECTS_TABLE = "projects"
    BLOCKS_TABLE = "blocks"

    def __init__(self, db_path: Path, dimension: int):
        """
        Args:
            db_path: Path to the LanceDB database directory
            dimension: Width of the vector column
        """
        self.db_path = Path(db_path)
        self.dimension = dimension
        self._db: Optional[lancedb.DBConnection] = None
        self._tables: dict[str, Table] = {}
        self._block_model = block_row_model(dimension)

    @property
    def db(self) -> lancedb.DBConnection:
        """Lazy-load the database connection."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with storage_errors(self.name, "connect", Exception):
                self._db = lancedb.connect(str(self.db_path))
            logger.info(f"Connected to LanceDB at {self.db_path}")
        return self._db

    def _table(self, table_name: str, schema: type[LanceModel]) -> Table:
        """Get or create a table."""
        if table_name not in self._tables:
            if table_name in self.db.table_names():
                self._tables[table_name] = self.db.open_table(table_name)
                logger.debug(f"Opened existing table: {table_name}")
            else:
                try:
                    self._tables[table_name] = self.db.create_table(table_name, schema=schema, mode="create")
                    logger.info(f"Created new table: {table_name}")
                except Exception as e:
                    # Another worker created it first
                    if "already exists" not in str(e):
                        raise
                    self._tables[table_name] = self.db.open_table(table_name)
        return self._tables[table_name]

    @property
    def projects(self) -> Table:
        return self._table(self.PROJECTS_TABLE, ProjectRow)

    @property
    def blocks(self) -> Table:
        return self._table(self.BLOCKS_TABLE, self._block_model)

    def create_project(self, project: str) -> None:
        with storage_errors(self.name, "create_project", Exception):
            if not self.project_exists(project):
                self.projects.add([{"name": project, "created_at": time.time(), "next_id": 1}])

    def drop_project(self, project: str) -> None:
        with storage_errors(self.name, "drop_project", Exception):
            self.blocks.delete(f"project = {_quote(project)}")
            self.projects.delete(f"name = {_quote(project)}")

    def project_exists(self, project: str) -> bool:
        with storage_errors(self.name, "project_exists", Exception):
            return self.projects.count_rows(f"name = {_quote(project)}") > 0

    def project_names(self) -> list[str]:
        with storage_errors(self.name, "project_names", Exception):
            rows = self.projects.to_arrow().to_pylist()
        return sorted(row["name"] for row in rows)

    def load_blocks(self, project: str) -> list[CodeBlock]:
        return self._query_blocks(f"project = {_quote(project)}")

    def find_by_name(self, project: str, name: str) -> list[CodeBlock]:
        return self._query_blocks(f"project = {_quote(project)} AND name = {_quote(name)}")

    def _query_blocks(self, where: str) -> list[CodeBlock]:
        with storage_errors(self.name, "query", Exception):
            count = self.blocks.count_rows(where)
            if count == 0:
                return []
            rows = self.blocks.search().where(where).limit(count).to_list()
        blocks = [self._row_to_block(row) for row in rows]
        return sorted(blocks, key=lambda b: b.id)

    def load_next_id(self, project: str) -> int:
        with storage_errors(self.name, "load_next_id", Exception):
            rows = self.projects.to_arrow().to_pylist()
        return next((row["next_id"] for row in rows if row["name"] == project), 1)

    def write_blocks(self, project: str, upserts: list[CodeBlock], deletes: list[int], next_id: int) -> None:
        ids = [b.id for b in upserts] + list(deletes)
        with storage_errors(self.name, "write_blocks", Exception):
            if ids:
                id_list = ", ".join(str(int(i)) for i in ids)
                self.blocks.delete(f"project = {_quote(project)} AND id IN ({id_list})")
            if upserts:
                self.blocks.add([self._block_to_row(project, b) for b in upserts])
            self.projects.update(where=f"name = {_quote(project)}", values={"next_id": next_id})
        logger.debug(f"Wrote {len(upserts)} blocks and deleted {len(deletes)} in {project}")

    def _block_to_row(self, project: str, block: CodeBlock) -> dict:
        row = block.model_dump(exclude={"embedding", "project"})
        row["project"] = project
        row["has_embedding"] = block.embedding is not None
        row["vector"] = block.embedding if block.embedding is not None else [0.0] * self.dimension
        return row

    @staticmethod
    def _row_to_block(row: dict) -> CodeBlock:
        data = {k: v for k, v in row.items() if not k.startswith("_")}
        vector = data.pop("vector")
        has_embedding = data.pop("has_embedding")
        data["embedding"] = [float(x) for x in vector] if has_embedding else None
        data["outgoing_calls"] = list(data.get("outgoing_calls") or [])
        return CodeBlock(**data)

    def close(self) -> None:
        self._tables.clear()
        self._db = None

    def __repr__(self) -> str:
        return f"LanceBackend(db_path={self.db_path}, dimension={self.dimension})"
