"""
SQLite-backed file manifest and change detector.

Tracks the content hash of every indexed file and, while a file is being
replaced in the graph and vector stores, a structured in-progress marker.
A marker that outlives its scan means the file's stores may be out of
step with each other; :meth:`IncrementalScanner.repair` replays it.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import ChangeType, FileChange

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS file_hashes (
    path        TEXT PRIMARY KEY,
    hash        TEXT NOT NULL,
    updated_at  REAL NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS pending_replacements (
    path        TEXT PRIMARY KEY,
    kind        TEXT NOT NULL,
    old_hash    TEXT DEFAULT NULL,
    new_hash    TEXT DEFAULT NULL,
    started_at  REAL NOT NULL DEFAULT 0.0
);
"""


@dataclass
class PendingReplacement:
    """A file whose store mutations started but never committed."""
    path: str
    kind: str
    old_hash: Optional[str]
    new_hash: Optional[str]
    started_at: float


def hash_content(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoding of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Manifest:
    """
    Persistent path -> hash table plus in-progress replacement markers.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Will be created if absent.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
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

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def get_hash(self, path: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT hash FROM file_hashes WHERE path = ?", (path,)
            ).fetchone()
        return row["hash"] if row else None

    def all_hashes(self) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT path, hash FROM file_hashes").fetchall()
        return {r["path"]: r["hash"] for r in rows}

    def set_hash(self, path: str, hash_: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO file_hashes (path, hash, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    hash       = excluded.hash,
                    updated_at = excluded.updated_at
                """,
                (path, hash_, time.time()),
            )

    def remove_hash(self, path: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM file_hashes WHERE path = ?", (path,))

    # ------------------------------------------------------------------
    # Replacement markers
    # ------------------------------------------------------------------

    def mark_pending(self, change: FileChange) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_replacements (path, kind, old_hash, new_hash, started_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    kind       = excluded.kind,
                    old_hash   = excluded.old_hash,
                    new_hash   = excluded.new_hash,
                    started_at = excluded.started_at
                """,
                (change.path, change.kind, change.old_hash, change.new_hash, time.time()),
            )

    def clear_pending(self, path: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_replacements WHERE path = ?", (path,))

    def pending(self) -> list[PendingReplacement]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT path, kind, old_hash, new_hash, started_at "
                "FROM pending_replacements ORDER BY started_at, path"
            ).fetchall()
        return [
            PendingReplacement(
                path=r["path"],
                kind=r["kind"],
                old_hash=r["old_hash"],
                new_hash=r["new_hash"],
                started_at=r["started_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Stats / maintenance
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        with self._connect() as conn:
            files = conn.execute("SELECT COUNT(*) AS c FROM file_hashes").fetchone()["c"]
            pending = conn.execute(
                "SELECT COUNT(*) AS c FROM pending_replacements"
            ).fetchone()["c"]
        return {"file_count": files, "pending_replacements": pending}

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM file_hashes")
            conn.execute("DELETE FROM pending_replacements")


class ChangeDetector:
    """
    Classify files as added, modified or deleted against the stored hashes.

    Parameters
    ----------
    manifest:
        Hash store.  Hashes are only written through :meth:`update_hashes`,
        which callers invoke after the file's store mutations succeeded.
    """

    def __init__(self, manifest: Manifest) -> None:
        self.manifest = manifest

    hash_content = staticmethod(hash_content)

    def detect_changes(
        self,
        files: dict[str, str],
        detect_deleted: bool = True,
        removed_paths: Optional[Iterable[str]] = None,
    ) -> list[FileChange]:
        """
        Compare *files* against the stored hashes.

        Parameters
        ----------
        files:
            Mapping of path -> current content.
        detect_deleted:
            Report every stored path missing from *files* as deleted.
        removed_paths:
            When given, only these stored paths are reported as deleted
            (partial batches such as watcher events).

        Returns
        -------
        list[FileChange]
            Added and modified files in input order, then deleted files
            in path order.  Unchanged files are omitted.
        """
        stored = self.manifest.all_hashes()
        changes: list[FileChange] = []

        for path, content in files.items():
            new_hash = hash_content(content)
            old_hash = stored.get(path)
            if old_hash is None:
                changes.append(FileChange(path, ChangeType.ADDED, None, new_hash, content))
            elif old_hash != new_hash:
                changes.append(FileChange(path, ChangeType.MODIFIED, old_hash, new_hash, content))

        if removed_paths is not None:
            candidates = sorted(set(removed_paths) - set(files))
        elif detect_deleted:
            candidates = sorted(set(stored) - set(files))
        else:
            candidates = []
        for path in candidates:
            if path in stored:
                changes.append(FileChange(path, ChangeType.DELETED, stored[path], None))

        logger.debug(
            "[changes] %d added, %d modified, %d deleted",
            sum(1 for c in changes if c.kind == ChangeType.ADDED),
            sum(1 for c in changes if c.kind == ChangeType.MODIFIED),
            sum(1 for c in changes if c.kind == ChangeType.DELETED),
        )
        return changes

    def update_hashes(self, changes: Iterable[FileChange]) -> None:
        """Record new hashes for added/modified files; forget deleted ones."""
        for change in changes:
            if change.kind == ChangeType.DELETED:
                self.manifest.remove_hash(change.path)
            elif change.new_hash is not None:
                self.manifest.set_hash(change.path, change.new_hash)

    # Replacement markers -------------------------------------------------

    def begin_replace(self, change: FileChange) -> None:
        self.manifest.mark_pending(change)

    def end_replace(self, path: str) -> None:
        self.manifest.clear_pending(path)

    def stale_replacements(self) -> list[PendingReplacement]:
        return self.manifest.pending()
