"""
Indexer: project-level facade over the incremental scanner.

Layout under ``<project_root>/.codekb/``:

  graph.db    code nodes and edges        (CodeGraphStorage)
  index.db    file hashes and markers     (Manifest)
  vectors.db  node embeddings             (SQLiteVectorStore)
  meta.json   statistics of the last scan

A scan walks the project (respecting .gitignore patterns and the
configured excludes), reads every supported file and hands the complete
file set to :class:`IncrementalScanner`, which only touches what changed.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import time
from typing import Iterable, Optional

from .embedder import EmbeddingClient, create_embedding_client
from .extractor import is_package_manifest
from .graph import CodeGraph
from .graph_store import CodeGraphStorage
from .manifest import ChangeDetector, Manifest
from .models import IncrementalScanResult
from .parser import ParserPool, detect_language
from .scanner import IncrementalScanner, ProgressCallback
from .summarizer import CodeSummarizer
from .tokens import TokenCounter
from .vector_store import SQLiteVectorStore

logger = logging.getLogger(__name__)

KB_VERSION = "1.0.0"
KB_DIRNAME = ".codekb"

# ---------------------------------------------------------------------------
# Directory / file exclusion rules
# ---------------------------------------------------------------------------

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", KB_DIRNAME,
    ".venv", "venv", "env", ".env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",           # Rust build output
    "coverage",
    ".next", ".nuxt",   # JS frameworks
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})


def _load_gitignore_patterns(project_root: str) -> list[str]:
    """Read .gitignore from *project_root* and return glob patterns."""
    gi_path = os.path.join(project_root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith(("#", "!")):
                patterns.append(line.rstrip("/"))
    return patterns


def _is_ignored(path: str, patterns: list[str]) -> bool:
    """Return True if *path* (POSIX, relative) matches any pattern."""
    name = path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern):
            return True
        if fnmatch.fnmatch(path, pattern.lstrip("/")):
            return True
    return False


def is_source_file(path: str, overrides: Optional[dict[str, str]] = None) -> bool:
    """True for files the scanner can index."""
    return detect_language(path, overrides) is not None or is_package_manifest(path)


def walk_source_files(
    project_root: str,
    overrides: Optional[dict[str, str]] = None,
    exclude: Optional[list[str]] = None,
) -> list[str]:
    """
    Walk *project_root* and return paths of all indexable files.

    Skips build/vendor/VCS directories, hidden directories and paths
    matching .gitignore or *exclude* patterns.  Paths are returned sorted,
    relative to *project_root*, with ``/`` separators.
    """
    patterns = _load_gitignore_patterns(project_root) + list(exclude or [])
    results: list[str] = []

    for dirpath, dirnames, filenames in os.walk(project_root, topdown=True):
        rel_dir = os.path.relpath(dirpath, project_root).replace(os.sep, "/")
        rel_dir = "" if rel_dir == "." else rel_dir + "/"
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = [
            d for d in dirnames
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and not _is_ignored(rel_dir + d, patterns)
        ]

        for fname in filenames:
            rel_path = rel_dir + fname
            if not is_source_file(fname, overrides):
                continue
            if _is_ignored(rel_path, patterns):
                continue
            results.append(rel_path)

    return sorted(results)


# ---------------------------------------------------------------------------
# Storage paths
# ---------------------------------------------------------------------------

def kb_dir(project_root: str) -> str:
    return os.path.join(project_root, KB_DIRNAME)


def _graph_path(project_root: str) -> str:
    return os.path.join(kb_dir(project_root), "graph.db")


def _manifest_path(project_root: str) -> str:
    return os.path.join(kb_dir(project_root), "index.db")


def _vectors_path(project_root: str) -> str:
    return os.path.join(kb_dir(project_root), "vectors.db")


def _meta_path(project_root: str) -> str:
    return os.path.join(kb_dir(project_root), "meta.json")


def read_meta(project_root: str) -> Optional[dict]:
    """Read and return meta.json, or None if it does not exist."""
    p = _meta_path(project_root)
    if not os.path.exists(p):
        return None
    try:
        with open(p, encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read %s: %s", p, exc)
        return None


# ---------------------------------------------------------------------------
# Public indexing API
# ---------------------------------------------------------------------------

class Indexer:
    """
    Wires the stores, summarizer, embedding client and scanner for a project.

    Parameters
    ----------
    project_root:
        Project root directory.
    config:
        :class:`codekb.config.Config`; loaded from the project when omitted.
    embeddings:
        Embedding client override.  When omitted the configured provider is
        used (``none`` disables vectors).
    token_counter:
        Token counter override for chunking.
    """

    def __init__(
        self,
        project_root: str,
        config=None,
        embeddings: Optional[EmbeddingClient] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        from ..config import Config

        self.project_root = os.path.abspath(project_root)
        self.config = config or Config.load(project_root=self.project_root)
        os.makedirs(kb_dir(self.project_root), exist_ok=True)

        self.graph_store = CodeGraphStorage(_graph_path(self.project_root))
        self.manifest = Manifest(_manifest_path(self.project_root))
        self.vector_store = SQLiteVectorStore(_vectors_path(self.project_root))
        self.embeddings = embeddings if embeddings is not None else create_embedding_client(self.config)
        self.pool = ParserPool()
        self.scanner = IncrementalScanner(
            ChangeDetector(self.manifest),
            self.graph_store,
            summarizer=CodeSummarizer(self.config.summary_config()),
            vector_store=self.vector_store,
            embeddings=self.embeddings,
            pool=self.pool,
            token_counter=token_counter,
        )

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def source_files(self) -> list[str]:
        return walk_source_files(
            self.project_root,
            overrides=self.config.EXTENSION_OVERRIDES,
            exclude=self.config.EXCLUDE,
        )

    def scan(self, progress_callback: Optional[ProgressCallback] = None) -> IncrementalScanResult:
        """
        Bring the index in line with the project on disk.

        Files that are new or changed since the last scan are (re)indexed,
        files that disappeared are removed; everything else is untouched.
        """
        start = time.time()
        files = self._read_files(self.source_files())
        result = self.scanner.scan_incremental(
            files, self.config.scan_options(), progress_callback=progress_callback,
        )
        self._write_meta(result, time.time() - start)
        return result

    def scan_paths(
        self,
        changed: Iterable[str],
        removed: Iterable[str] = (),
    ) -> IncrementalScanResult:
        """
        Scan a partial batch of project-relative paths (watcher events).

        Changed paths that no longer exist are treated as removed.
        """
        start = time.time()
        overrides = self.config.EXTENSION_OVERRIDES
        patterns = self.config.EXCLUDE
        removed_set = {_posix(p) for p in removed}
        present: list[str] = []
        for path in {_posix(p) for p in changed}:
            if not is_source_file(path, overrides) or _is_ignored(path, patterns):
                continue
            if os.path.isfile(os.path.join(self.project_root, path)):
                present.append(path)
            else:
                removed_set.add(path)

        files = self._read_files(sorted(present))
        result = self.scanner.scan_incremental(
            files, self.config.scan_options(), removed_paths=sorted(removed_set - set(files)),
        )
        if result.changes:
            self._write_meta(result, time.time() - start)
        return result

    def repair(self) -> IncrementalScanResult:
        """Replay file replacements that an interrupted scan left behind."""
        files = self._read_files(self.source_files())
        return self.scanner.repair(files, self.config.scan_options())

    def _read_files(self, rel_paths: list[str]) -> dict[str, str]:
        files: dict[str, str] = {}
        for rel_path in rel_paths:
            abs_path = os.path.join(self.project_root, rel_path)
            try:
                with open(abs_path, encoding="utf-8", errors="replace") as fh:
                    files[rel_path] = fh.read()
            except OSError as exc:
                logger.warning("Could not read %s: %s", rel_path, exc)
        return files

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load_graph(self) -> CodeGraph:
        """Load the stored nodes and edges into a :class:`CodeGraph`."""
        return CodeGraph.from_storage(self.graph_store)

    def search(self, query: str, top_k: int = 10, filters: Optional[dict] = None) -> list[dict]:
        """
        Semantic search over the embedded nodes.

        Raises
        ------
        RuntimeError
            If no embedding provider is configured.
        """
        if self.embeddings is None:
            raise RuntimeError(
                "No embedding provider configured (set embedding_provider "
                "to 'ollama' or 'openai')."
            )
        vector = self.embeddings.embed(query)
        return self.vector_store.search(vector, top_k=top_k, filters=filters)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_indexed(self) -> bool:
        """Return True if the project has been scanned at least once."""
        return os.path.exists(_meta_path(self.project_root))

    def status(self) -> dict:
        manifest_stats = self.manifest.stats()
        return {
            "project_root": self.project_root,
            "last_scan": read_meta(self.project_root),
            "graph": self.graph_store.stats(),
            "files": manifest_stats["file_count"],
            "pending_replacements": manifest_stats["pending_replacements"],
            "vectors": self.vector_store.count(),
            "embedding_provider": self.config.EMBEDDING_PROVIDER,
            "languages_loaded": self.pool.loaded_languages(),
        }

    def reset(self) -> None:
        """Delete every stored node, edge, vector, hash and marker."""
        self.graph_store.clear()
        self.vector_store.clear()
        self.manifest.clear()
        meta = _meta_path(self.project_root)
        if os.path.exists(meta):
            os.remove(meta)
        logger.info("Index reset: %s", kb_dir(self.project_root))

    def close(self) -> None:
        self.vector_store.close()

    def _write_meta(self, result: IncrementalScanResult, elapsed: float) -> None:
        meta = {
            "last_scan": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "elapsed_seconds": round(elapsed, 2),
            "changes": len(result.changes),
            "stats": result.stats.to_dict(),
            "failures": result.failures,
            "kb_version": KB_VERSION,
        }
        with open(_meta_path(self.project_root), "w", encoding="utf-8") as fh:
            json.dump(meta, fh, indent=2)


def _posix(path: str) -> str:
    return path.replace(os.sep, "/")
