"""
Incremental scanner: keeps the graph store and the vector store in step
with the files on disk.

Every file goes through one of three states:

* **Added**    -- chunk, extract, summarize, upsert nodes and edges, then
  embed function/class/interface nodes under their vector ids.
* **Modified** -- delete everything the file owned, then Added.
* **Deleted**  -- delete everything the file owned.

Deleting a file's data removes, for each of its nodes, the node's vector,
every edge touching the node and finally the node itself, so no vector
or edge outlives its node.  Package nodes are shared by every importer,
so only their outgoing edges go with them.  A file's hash is committed
only after all of its store mutations succeeded; a failed file is retried
on the next scan.
An in-progress marker is written before the first mutation and cleared
after the hash commit, so interrupted replacements can be replayed with
:meth:`IncrementalScanner.repair`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .chunker import DEFAULT_MAX_TOKENS, StructuralChunker
from .embedder import SNIPPET_CHARS, build_embedding_text
from .extractor import (
    GraphExtractor,
    extract_package_nodes,
    is_package_manifest,
)
from .manifest import ChangeDetector
from .models import (
    INDEXABLE_NODE_TYPES,
    ChangeType,
    Chunk,
    CodeNode,
    FileChange,
    IncrementalScanResult,
    NodeType,
    ScanStats,
)
from .parser import ParserPool, detect_language
from .tokens import TokenCounter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

EMBEDDING_BATCH_SIZE = 32

_CHANGE_ORDER = {ChangeType.ADDED: 0, ChangeType.MODIFIED: 1, ChangeType.DELETED: 2}


@dataclass
class ScanOptions:
    max_tokens: int = DEFAULT_MAX_TOKENS
    batch_size: int = EMBEDDING_BATCH_SIZE
    include_imports: bool = False
    split_large: bool = True
    extension_overrides: dict[str, str] = field(default_factory=dict)
    path_aliases: dict[str, str] = field(default_factory=dict)
    snippet_chars: int = SNIPPET_CHARS


class IncrementalScanner:
    """
    Drive change detection and store synchronization for a batch of files.

    Parameters
    ----------
    change_detector:
        Hash store and change classification.
    graph_store:
        Node/edge store (``upsert_node``, ``upsert_edge``,
        ``get_nodes_by_path``, ``delete_edges_by_node``, ``delete_node``).
    summarizer:
        Optional :class:`CodeSummarizer`; failures only drop the summary.
    vector_store:
        Optional store with ``upsert(id, vector, payload)`` and
        ``delete(id) -> bool``.
    embeddings:
        Optional client with ``embed_batch(texts)``.  Without both a
        vector store and a client only the structural graph is maintained.
    pool:
        Parser pool shared by the chunker and the extractor.
    token_counter:
        Token counter for the chunk budget; tiktoken when omitted.
    """

    def __init__(
        self,
        change_detector: ChangeDetector,
        graph_store,
        summarizer=None,
        vector_store=None,
        embeddings=None,
        pool: Optional[ParserPool] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        self.change_detector = change_detector
        self.graph_store = graph_store
        self.summarizer = summarizer
        self.vector_store = vector_store
        self.embeddings = embeddings
        self.pool = pool or ParserPool()
        self.chunker = StructuralChunker(self.pool, token_counter)
        self.extractor = GraphExtractor(self.pool)

    @property
    def vectors_enabled(self) -> bool:
        return self.vector_store is not None and self.embeddings is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan_incremental(
        self,
        files: dict[str, str],
        options: Optional[ScanOptions] = None,
        removed_paths: Optional[list[str]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IncrementalScanResult:
        """
        Bring both stores in line with *files*.

        Parameters
        ----------
        files:
            Mapping of path -> current content.  Without *removed_paths*
            this is the complete file set: every indexed path missing from
            it is treated as deleted.
        options:
            Chunking, batching and resolution options.
        removed_paths:
            Treat *files* as a partial batch and delete only these paths.
        progress_callback:
            Called with ``(current, total, path)`` after each change.

        Returns
        -------
        IncrementalScanResult
            The detected changes, exact stats and per-file failures.
        """
        options = options or ScanOptions()
        changes = self.change_detector.detect_changes(files, removed_paths=removed_paths)
        changes.sort(key=lambda c: _CHANGE_ORDER[c.kind])
        result = IncrementalScanResult(changes=changes)
        if not changes:
            logger.debug("[scan] No changes detected")
            return result

        deleted = {c.path for c in changes if c.kind == ChangeType.DELETED}
        known = (set(files) | set(self.change_detector.manifest.all_hashes())) - deleted

        total = len(changes)
        for idx, change in enumerate(changes, 1):
            try:
                self._apply(change, options, result.stats, known)
            except Exception as exc:
                result.stats.files_failed += 1
                result.failures[change.path] = str(exc)
                logger.error("[scan] Failed to process %s (%s): %s",
                             change.path, change.kind, exc)
            if progress_callback:
                progress_callback(idx, total, change.path)

        stats = result.stats
        logger.info(
            "[scan] %d files scanned. Nodes: +%d ~%d -%d. Edges: +%d -%d. "
            "Embeddings: %d/%d",
            stats.files_scanned, stats.nodes_added, stats.nodes_updated,
            stats.nodes_deleted, stats.edges_added, stats.edges_deleted,
            stats.embeddings_regenerated, stats.documents_updated,
        )
        return result

    def repair(
        self,
        files: dict[str, str],
        options: Optional[ScanOptions] = None,
    ) -> IncrementalScanResult:
        """
        Replay replacements that were interrupted after their first mutation.

        Paths present in *files* are rebuilt from scratch (delete, then
        Added); paths absent from it are deleted.  Markers and hashes are
        committed as in a normal scan.
        """
        options = options or ScanOptions()
        result = IncrementalScanResult()
        known = set(files) | set(self.change_detector.manifest.all_hashes())

        for pending in self.change_detector.stale_replacements():
            content = files.get(pending.path)
            if content is None:
                change = FileChange(pending.path, ChangeType.DELETED, pending.old_hash, None)
            else:
                change = FileChange(
                    pending.path, ChangeType.MODIFIED, pending.old_hash,
                    self.change_detector.hash_content(content), content,
                )
            result.changes.append(change)
            try:
                self._apply(change, options, result.stats, known)
            except Exception as exc:
                result.stats.files_failed += 1
                result.failures[change.path] = str(exc)
                logger.error("[scan] Repair of %s failed: %s", change.path, exc)

        if result.changes:
            logger.info("[scan] Repaired %d interrupted file(s)",
                        len(result.changes) - len(result.failures))
        return result

    def delete_file_data(self, file_path: str, stats: Optional[ScanStats] = None) -> set[str]:
        """
        Remove every node *file_path* owns, with its vector and its edges.

        Returns
        -------
        set[str]
            Ids of the nodes that were deleted.
        """
        stats = stats if stats is not None else ScanStats()
        removed: set[str] = set()
        for node in self.graph_store.get_nodes_by_path(file_path):
            if self.vector_store is not None and node.type in INDEXABLE_NODE_TYPES:
                try:
                    if self.vector_store.delete(node.vector_id):
                        stats.embeddings_deleted += 1
                except Exception as exc:
                    logger.warning("[scan] Could not delete vector for %s: %s", node.id, exc)
            if node.type == NodeType.PACKAGE:
                # depends_on edges pointing here belong to the importing files
                deleted = self.graph_store.delete_edges_by_node(node.id, outgoing_only=True)
            else:
                deleted = self.graph_store.delete_edges_by_node(node.id)
            stats.edges_deleted += deleted
            self.graph_store.delete_node(node.id)
            stats.nodes_deleted += 1
            removed.add(node.id)
        return removed

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _apply(
        self,
        change: FileChange,
        options: ScanOptions,
        stats: ScanStats,
        known: set[str],
    ) -> None:
        if change.kind != ChangeType.DELETED and not self._is_indexable(change.path, options):
            logger.warning("[scan] Skipping %s: unsupported language", change.path)
            if change.kind == ChangeType.MODIFIED:
                # No longer indexable: drop what an earlier scan stored.
                change = FileChange(change.path, ChangeType.DELETED, change.old_hash, None)
            else:
                return

        self.change_detector.begin_replace(change)
        if change.kind == ChangeType.ADDED:
            self._process_added(change.path, change.content or "", options, stats, known)
        elif change.kind == ChangeType.MODIFIED:
            self._process_modified(change.path, change.content or "", options, stats, known)
        else:
            self.delete_file_data(change.path, stats)
        self.change_detector.update_hashes([change])
        self.change_detector.end_replace(change.path)

    @staticmethod
    def _is_indexable(path: str, options: ScanOptions) -> bool:
        return (
            detect_language(path, options.extension_overrides) is not None
            or is_package_manifest(path)
        )

    def _process_modified(
        self,
        path: str,
        content: str,
        options: ScanOptions,
        stats: ScanStats,
        known: set[str],
    ) -> None:
        previous = self.delete_file_data(path, stats)
        self._process_added(path, content, options, stats, known, previous)

    def _process_added(
        self,
        path: str,
        content: str,
        options: ScanOptions,
        stats: ScanStats,
        known: set[str],
        previous: Optional[set[str]] = None,
    ) -> None:
        if is_package_manifest(path):
            for node in extract_package_nodes(path, content):
                self._upsert_node(node, stats, previous)
            stats.files_scanned += 1
            return

        chunks = self.chunker.chunk_file(
            content, path,
            max_tokens=options.max_tokens,
            include_imports=options.include_imports,
            split_large=options.split_large,
            extension_overrides=options.extension_overrides,
        )
        extraction = self.extractor.extract_from_file(
            path, chunks,
            file_content=content,
            known_paths=known,
            path_aliases=options.path_aliases,
        )

        if self.summarizer is not None:
            for node in extraction.nodes:
                chunk = extraction.chunk_by_node.get(node.id)
                if chunk is not None:
                    self._summarize(node, chunk, content)

        for node in extraction.nodes:
            self._upsert_node(node, stats, previous)
        for edge in extraction.edges:
            self.graph_store.upsert_edge(edge)
            stats.edges_added += 1

        if self.vectors_enabled:
            pending = [
                (node, extraction.chunk_by_node[node.id])
                for node in extraction.nodes
                if node.type in INDEXABLE_NODE_TYPES and node.id in extraction.chunk_by_node
            ]
            stats.documents_updated += len(pending)
            self._embed(pending, options, stats)

        stats.files_scanned += 1

    def _upsert_node(self, node: CodeNode, stats: ScanStats, previous: Optional[set[str]]) -> None:
        self.graph_store.upsert_node(node)
        stats.nodes_added += 1
        if previous and node.id in previous:
            stats.nodes_updated += 1

    def _summarize(self, node: CodeNode, chunk: Chunk, content: str) -> None:
        try:
            result = self.summarizer.summarize(chunk, content)
        except Exception as exc:
            logger.warning("[scan] Summarizer failed for %s: %s", node.id, exc)
            return
        node.summary = result.summary
        node.metadata["summary_source"] = result.generated_by
        node.metadata["summary_confidence"] = result.confidence
        if result.needs_ai_summary:
            node.metadata["needs_ai_summary"] = True

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    def _embed(
        self,
        pending: list[tuple[CodeNode, Chunk]],
        options: ScanOptions,
        stats: ScanStats,
    ) -> None:
        size = max(1, options.batch_size)
        for start in range(0, len(pending), size):
            batch = pending[start:start + size]
            texts = [build_embedding_text(n, c, options.snippet_chars) for n, c in batch]
            try:
                vectors = self.embeddings.embed_batch(texts)
            except Exception as exc:
                logger.warning(
                    "[scan] Batch embedding failed (%s), embedding %d node(s) one by one",
                    exc, len(batch),
                )
                vectors = [self._embed_one(n, text) for (n, _), text in zip(batch, texts)]

            for (node, chunk), vector in zip(batch, vectors):
                if vector is None:
                    continue
                try:
                    self.vector_store.upsert(node.vector_id, vector, _payload(node, chunk))
                except Exception as exc:
                    logger.warning("[scan] Vector upsert failed for %s: %s", node.id, exc)
                    continue
                stats.embeddings_regenerated += 1

    def _embed_one(self, node: CodeNode, text: str) -> Optional[list[float]]:
        try:
            return self.embeddings.embed_batch([text])[0]
        except Exception as exc:
            logger.warning("[scan] Embedding failed for %s: %s", node.id, exc)
            return None


def _payload(node: CodeNode, chunk: Chunk) -> dict:
    tags = [chunk.language or "unknown"]
    if node.metadata.get("is_exported"):
        tags.append("exported")
    return {
        "node_id": node.id,
        "type": node.type,
        "title": node.name,
        "tags": tags,
        "related_files": [node.file_path],
        "file": node.file_path,
        "language": chunk.language,
        "importance": 0.7 if node.type in INDEXABLE_NODE_TYPES else 0.5,
        "signature": node.signature,
        "summary": node.summary,
        "start_line": node.start_line,
        "end_line": node.end_line,
    }
