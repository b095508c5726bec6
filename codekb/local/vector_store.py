"""
SQLite-backed vector store for code embeddings.

Vectors are addressed by their deterministic vector id
(``code_<sha256 prefix>``), so re-indexing a declaration replaces its
vector instead of adding a second one.  Cosine similarity is computed
with numpy over the stored rows.

Storage: ``.codekb/vectors.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from typing import Any, Optional

import numpy as np

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS vectors (
    point_id   TEXT PRIMARY KEY,
    vector     BLOB NOT NULL,
    payload    TEXT NOT NULL DEFAULT '{}'
);
"""

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: list[float]) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32).copy()


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def _matches(payload: dict, filters: Optional[dict]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        value = payload.get(key)
        if isinstance(value, list):
            if expected not in value:
                return False
        elif value != expected:
            return False
    return True


# ---------------------------------------------------------------------------
# SQLiteVectorStore
# ---------------------------------------------------------------------------

class SQLiteVectorStore:
    """Vector store backed by SQLite + numpy cosine similarity.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        conn = self._get_conn()
        conn.executescript(_CREATE_TABLE)
        conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Lazy connection shared across threads; guarded by ``_lock``."""
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]) -> None:
        """Store *vector* under *point_id*, replacing any existing vector."""
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT OR REPLACE INTO vectors (point_id, vector, payload) "
                "VALUES (?, ?, ?)",
                (point_id, _vec_to_bytes(vector), json.dumps(payload, default=str)),
            )
            conn.commit()

    def delete(self, point_id: str) -> bool:
        """Delete the vector at *point_id*; True if one existed."""
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute("DELETE FROM vectors WHERE point_id = ?", (point_id,))
            conn.commit()
            return cur.rowcount > 0

    def get(self, point_id: str) -> Optional[dict]:
        """Return ``{"id", "vector", "payload"}`` for *point_id*, or None."""
        with self._lock:
            row = self._get_conn().execute(
                "SELECT point_id, vector, payload FROM vectors WHERE point_id = ?",
                (point_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "id": row[0],
            "vector": _bytes_to_vec(row[1]).tolist(),
            "payload": json.loads(row[2]),
        }

    def ids(self) -> list[str]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT point_id FROM vectors ORDER BY point_id"
            ).fetchall()
        return [r[0] for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._get_conn().execute("SELECT COUNT(*) FROM vectors").fetchone()
        return row[0] if row else 0

    def search(
        self,
        query_vector: list[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
    ) -> list[dict]:
        """Cosine-similarity search.

        Parameters
        ----------
        query_vector:
            The query embedding vector.
        top_k:
            Number of results to return.
        filters:
            Optional exact-match payload filters, e.g. ``{"type": "function"}``.
            List-valued payload fields match when they contain the value.

        Returns
        -------
        list[dict]
            Each dict has ``id``, ``score`` (float) and ``payload`` (dict),
            best match first.
        """
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT point_id, vector, payload FROM vectors"
            ).fetchall()

        candidates: list[tuple[str, bytes, dict]] = []
        for pid, vec_bytes, payload_json in rows:
            try:
                payload = json.loads(payload_json)
            except (json.JSONDecodeError, TypeError):
                payload = {}
            if _matches(payload, filters):
                candidates.append((pid, vec_bytes, payload))
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.stack([_bytes_to_vec(c[1]) for c in candidates])
        if matrix.shape[1] != query.shape[0]:
            logger.warning(
                "[vectors] Query dimension %d does not match stored dimension %d",
                query.shape[0], matrix.shape[1],
            )
            return []
        scores = _cosine_similarity_batch(query, matrix)

        if len(scores) <= top_k:
            top = np.argsort(scores)[::-1]
        else:
            top = np.argpartition(scores, -top_k)[-top_k:]
            top = top[np.argsort(scores[top])[::-1]]

        return [
            {"id": candidates[i][0], "score": float(scores[i]), "payload": candidates[i][2]}
            for i in top
        ]

    def clear(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute("DELETE FROM vectors")
            conn.commit()
