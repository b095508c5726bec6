"""
SQLite-backed storage for code graph nodes and edges.

Nodes and edges are keyed by their deterministic ids, so every write is
an idempotent upsert.  Metadata is stored as JSON.

Storage: ``.codekb/graph.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .models import CodeEdge, CodeNode

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id          TEXT PRIMARY KEY,
    type        TEXT NOT NULL,
    name        TEXT NOT NULL,
    file_path   TEXT NOT NULL,
    start_line  INTEGER NOT NULL DEFAULT 0,
    end_line    INTEGER NOT NULL DEFAULT 0,
    signature   TEXT NOT NULL DEFAULT '',
    summary     TEXT NOT NULL DEFAULT '',
    metadata    TEXT NOT NULL DEFAULT '{}',
    created_at  REAL NOT NULL DEFAULT 0.0,
    updated_at  REAL NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS edges (
    id          TEXT PRIMARY KEY,
    from_node   TEXT NOT NULL,
    to_node     TEXT NOT NULL,
    edge_type   TEXT NOT NULL,
    metadata    TEXT NOT NULL DEFAULT '{}',
    created_at  REAL NOT NULL DEFAULT 0.0
);

CREATE INDEX IF NOT EXISTS idx_nodes_path ON nodes(file_path);
CREATE INDEX IF NOT EXISTS idx_nodes_name ON nodes(name);
CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type);
CREATE INDEX IF NOT EXISTS idx_edges_from ON edges(from_node);
CREATE INDEX IF NOT EXISTS idx_edges_to   ON edges(to_node);
"""

_NODE_COLUMNS = "id, type, name, file_path, start_line, end_line, signature, summary, metadata"
_EDGE_COLUMNS = "id, from_node, to_node, edge_type, metadata"


def _row_to_node(row: sqlite3.Row) -> CodeNode:
    return CodeNode(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        file_path=row["file_path"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        signature=row["signature"],
        summary=row["summary"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_edge(row: sqlite3.Row) -> CodeEdge:
    return CodeEdge(
        id=row["id"],
        from_node=row["from_node"],
        to_node=row["to_node"],
        edge_type=row["edge_type"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


class CodeGraphStorage:
    """
    Persistent node/edge store.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connected SQLite connection with WAL mode for concurrency."""
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def upsert_node(self, node: CodeNode) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO nodes (id, type, name, file_path, start_line, end_line,
                                   signature, summary, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type       = excluded.type,
                    name       = excluded.name,
                    file_path  = excluded.file_path,
                    start_line = excluded.start_line,
                    end_line   = excluded.end_line,
                    signature  = excluded.signature,
                    summary    = excluded.summary,
                    metadata   = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    node.id, node.type, node.name, node.file_path,
                    node.start_line, node.end_line, node.signature, node.summary,
                    json.dumps(node.metadata, default=str), now, now,
                ),
            )

    def get_node(self, node_id: str) -> Optional[CodeNode]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM nodes WHERE id = ?", (node_id,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def get_nodes_by_path(self, file_path: str) -> list[CodeNode]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM nodes WHERE file_path = ? "
                "ORDER BY start_line, id",
                (file_path,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def get_nodes_by_type(self, node_type: str) -> list[CodeNode]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM nodes WHERE type = ? ORDER BY id",
                (node_type,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def find_nodes_by_name(self, name: str, node_type: Optional[str] = None) -> list[CodeNode]:
        query = f"SELECT {_NODE_COLUMNS} FROM nodes WHERE name = ?"
        params: tuple = (name,)
        if node_type:
            query += " AND type = ?"
            params += (node_type,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_node(r) for r in rows]

    def delete_node(self, node_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            return cur.rowcount > 0

    def all_nodes(self) -> list[CodeNode]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {_NODE_COLUMNS} FROM nodes ORDER BY id").fetchall()
        return [_row_to_node(r) for r in rows]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def upsert_edge(self, edge: CodeEdge) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO edges (id, from_node, to_node, edge_type, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    metadata = excluded.metadata
                """,
                (
                    edge.id, edge.from_node, edge.to_node, edge.edge_type,
                    json.dumps(edge.metadata, default=str), time.time(),
                ),
            )

    def get_edge(self, edge_id: str) -> Optional[CodeEdge]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_EDGE_COLUMNS} FROM edges WHERE id = ?", (edge_id,)
            ).fetchone()
        return _row_to_edge(row) if row else None

    def get_edges_from(self, node_id: str, edge_type: Optional[str] = None) -> list[CodeEdge]:
        return self._edges_where("from_node = ?", (node_id,), edge_type)

    def get_edges_to(self, node_id: str, edge_type: Optional[str] = None) -> list[CodeEdge]:
        return self._edges_where("to_node = ?", (node_id,), edge_type)

    def get_connected_edges(self, node_id: str) -> list[CodeEdge]:
        return self._edges_where("from_node = ? OR to_node = ?", (node_id, node_id), None)

    def _edges_where(self, clause: str, params: tuple, edge_type: Optional[str]) -> list[CodeEdge]:
        query = f"SELECT {_EDGE_COLUMNS} FROM edges WHERE ({clause})"
        if edge_type:
            query += " AND edge_type = ?"
            params += (edge_type,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_edge(r) for r in rows]

    def delete_edges_by_node(self, node_id: str, outgoing_only: bool = False) -> int:
        """
        Delete every edge touching *node_id*; return how many were removed.

        With *outgoing_only* the edges pointing at the node are kept.
        """
        with self._connect() as conn:
            if outgoing_only:
                cur = conn.execute("DELETE FROM edges WHERE from_node = ?", (node_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM edges WHERE from_node = ? OR to_node = ?",
                    (node_id, node_id),
                )
            return cur.rowcount

    def all_edges(self) -> list[CodeEdge]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {_EDGE_COLUMNS} FROM edges ORDER BY id").fetchall()
        return [_row_to_edge(r) for r in rows]

    # ------------------------------------------------------------------
    # Stats / maintenance
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        with self._connect() as conn:
            node_rows = conn.execute(
                "SELECT type, COUNT(*) AS c FROM nodes GROUP BY type"
            ).fetchall()
            edge_rows = conn.execute(
                "SELECT edge_type, COUNT(*) AS c FROM edges GROUP BY edge_type"
            ).fetchall()
        nodes_by_type = {r["type"]: r["c"] for r in node_rows}
        edges_by_type = {r["edge_type"]: r["c"] for r in edge_rows}
        return {
            "node_count": sum(nodes_by_type.values()),
            "edge_count": sum(edges_by_type.values()),
            "nodes_by_type": nodes_by_type,
            "edges_by_type": edges_by_type,
        }

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM edges")
            conn.execute("DELETE FROM nodes")
