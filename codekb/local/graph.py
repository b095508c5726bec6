"""
NetworkX view over the stored code graph.

:class:`CodeGraph` loads every node and edge from :class:`CodeGraphStorage`
into a directed multi-graph and answers structural questions: who calls
what, who imports a module, which classes implement an interface and
which files are affected by a change.  Edge targets that were never
extracted (speculative ids) appear as placeholder nodes flagged
``speculative``.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable, Optional

import networkx as nx  # type: ignore

from .graph_store import CodeGraphStorage
from .models import CodeEdge, CodeNode, EdgeType, NodeType, module_id

logger = logging.getLogger(__name__)


class CodeGraph:
    """In-memory multi-graph of code nodes and typed edges."""

    def __init__(self) -> None:
        self._g: nx.MultiDiGraph = nx.MultiDiGraph()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_storage(cls, storage: CodeGraphStorage) -> "CodeGraph":
        graph = cls()
        graph.add_nodes(storage.all_nodes())
        graph.add_edges(storage.all_edges())
        logger.debug("Loaded graph (%d nodes, %d edges)",
                     graph._g.number_of_nodes(), graph._g.number_of_edges())
        return graph

    def add_nodes(self, nodes: Iterable[CodeNode]) -> None:
        for node in nodes:
            self._g.add_node(
                node.id,
                node_type=node.type,
                name=node.name,
                file_path=node.file_path,
                line_start=node.start_line,
                line_end=node.end_line,
                signature=node.signature,
                summary=node.summary,
                parent_name=node.metadata.get("parent_name"),
                speculative=False,
            )

    def add_edges(self, edges: Iterable[CodeEdge]) -> None:
        for edge in edges:
            for nid in (edge.from_node, edge.to_node):
                if not self._g.has_node(nid):
                    self._g.add_node(nid, **_placeholder_attrs(nid))
            self._g.add_edge(edge.from_node, edge.to_node, key=edge.edge_type,
                             type=edge.edge_type, **edge.metadata)

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def find_callers(self, function_name: str) -> list[dict]:
        """
        Return all functions that call *function_name*.

        Parameters
        ----------
        function_name:
            Bare function or method name.
        """
        results: list[dict] = []
        seen: set[str] = set()
        for tid in self._find_nodes(function_name, NodeType.FUNCTION):
            for pred in self._neighbours(tid, EdgeType.CALLS, reverse=True):
                if pred not in seen:
                    seen.add(pred)
                    results.append(self._node_summary(pred))
        return results

    def find_callees(self, function_name: str) -> list[dict]:
        """
        Return all functions called by *function_name*.

        Parameters
        ----------
        function_name:
            Bare function or method name.
        """
        results: list[dict] = []
        seen: set[str] = set()
        for sid in self._find_nodes(function_name, NodeType.FUNCTION):
            for succ in self._neighbours(sid, EdgeType.CALLS):
                if succ not in seen:
                    seen.add(succ)
                    results.append(self._node_summary(succ))
        return results

    def call_graph(self, node_id: str, depth: int = 2) -> dict[str, list[str]]:
        """
        Return the outgoing call tree of *node_id* up to *depth* hops.

        Returns
        -------
        dict
            Caller id -> sorted list of callee ids, for every caller reached.
        """
        return self._expand(node_id, EdgeType.CALLS, depth)

    def dependency_tree(self, file_path: str, depth: int = 3) -> dict[str, list[str]]:
        """Module-level import tree of *file_path* up to *depth* hops."""
        return self._expand(module_id(file_path), EdgeType.IMPORTS, depth)

    def who_imports(self, file_path: str) -> list[str]:
        """File paths that directly import *file_path*."""
        mid = module_id(file_path)
        if not self._g.has_node(mid):
            return []
        return sorted({
            self._g.nodes[pred].get("file_path", "")
            for pred in self._neighbours(mid, EdgeType.IMPORTS, reverse=True)
        } - {""})

    def find_implementations(self, interface_name: str) -> list[dict]:
        """Classes with an ``implements`` edge to an interface named *interface_name*."""
        targets = [
            nid for nid, attrs in self._g.nodes(data=True)
            if attrs.get("name") == interface_name
            and attrs.get("node_type") == NodeType.INTERFACE
        ]
        results: list[dict] = []
        seen: set[str] = set()
        for tid in targets:
            for pred in self._neighbours(tid, EdgeType.IMPLEMENTS, reverse=True):
                if pred not in seen:
                    seen.add(pred)
                    results.append(self._node_summary(pred))
        return results

    def impact_analysis(self, file_path: str) -> list[str]:
        """
        Return all files that may be affected if *file_path* changes.

        Performs a reverse traversal of ``imports`` edges starting from the
        file's module node.
        """
        mid = module_id(file_path)
        if not self._g.has_node(mid):
            return []
        affected: set[str] = set()
        queue = deque([mid])
        while queue:
            current = queue.popleft()
            for pred in self._neighbours(current, EdgeType.IMPORTS, reverse=True):
                fp = self._g.nodes[pred].get("file_path", "")
                if fp and fp != file_path and fp not in affected:
                    affected.add(fp)
                    queue.append(pred)
        return sorted(affected)

    def find_symbol(self, name: str, node_type: Optional[str] = None) -> list[dict]:
        """Locate any extracted symbol by name across the whole graph."""
        return [
            self._node_summary(nid)
            for nid in self._find_nodes(name, node_type)
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """
        Return aggregate statistics about the graph.

        Returns
        -------
        dict
            Keys: node_count, edge_count, speculative_count,
            by_node_type (dict), by_edge_type (dict).
        """
        by_node: dict[str, int] = {}
        speculative = 0
        for _, attrs in self._g.nodes(data=True):
            if attrs.get("speculative"):
                speculative += 1
                continue
            nt = attrs.get("node_type", "unknown")
            by_node[nt] = by_node.get(nt, 0) + 1

        by_edge: dict[str, int] = {}
        for _, _, attrs in self._g.edges(data=True):
            et = attrs.get("type", "unknown")
            by_edge[et] = by_edge.get(et, 0) + 1

        return {
            "node_count": self._g.number_of_nodes() - speculative,
            "edge_count": self._g.number_of_edges(),
            "speculative_count": speculative,
            "by_node_type": by_node,
            "by_edge_type": by_edge,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _neighbours(self, node_id: str, edge_type: str, reverse: bool = False) -> list[str]:
        if reverse:
            edges = self._g.in_edges(node_id, keys=True)
            return [src for src, _, key in edges if key == edge_type]
        edges = self._g.out_edges(node_id, keys=True)
        return [dst for _, dst, key in edges if key == edge_type]

    def _expand(self, start: str, edge_type: str, depth: int) -> dict[str, list[str]]:
        if not self._g.has_node(start):
            return {}
        tree: dict[str, list[str]] = {}
        frontier = [start]
        visited = {start}
        for _ in range(depth):
            next_frontier: list[str] = []
            for nid in frontier:
                children = sorted(set(self._neighbours(nid, edge_type)))
                if not children:
                    continue
                tree[nid] = children
                for child in children:
                    if child not in visited:
                        visited.add(child)
                        next_frontier.append(child)
            frontier = next_frontier
        return tree

    def _find_nodes(self, name: str, node_type: Optional[str] = None) -> list[str]:
        return [
            nid for nid, attrs in self._g.nodes(data=True)
            if not attrs.get("speculative")
            and attrs.get("name") == name
            and (node_type is None or attrs.get("node_type") == node_type)
        ]

    def _node_summary(self, node_id: str) -> dict:
        """Return a compact, serialisable summary of a node."""
        attrs = self._g.nodes[node_id]
        return {
            "id": node_id,
            "node_type": attrs.get("node_type", ""),
            "name": attrs.get("name", ""),
            "file_path": attrs.get("file_path", ""),
            "line_start": attrs.get("line_start", 0),
            "line_end": attrs.get("line_end", 0),
            "parent_name": attrs.get("parent_name"),
            "signature": attrs.get("signature", ""),
            "speculative": attrs.get("speculative", False),
        }


def _placeholder_attrs(node_id: str) -> dict[str, Any]:
    """Attributes for an edge endpoint that was never extracted."""
    if node_id.startswith("pkg:"):
        return {
            "node_type": NodeType.PACKAGE,
            "name": node_id[len("pkg:"):],
            "file_path": "",
            "speculative": True,
        }
    path, _, rest = node_id.rpartition(":")
    if rest == NodeType.MODULE:
        return {"node_type": NodeType.MODULE, "name": path.rsplit("/", 1)[-1],
                "file_path": path, "speculative": True}
    for node_type in (NodeType.FUNCTION, NodeType.CLASS, NodeType.INTERFACE):
        marker = f":{node_type}:"
        if marker in node_id:
            file_path, _, name = node_id.partition(marker)
            return {"node_type": node_type, "name": name.rsplit(".", 1)[-1],
                    "file_path": file_path, "speculative": True}
    return {"node_type": "unknown", "name": node_id, "file_path": "", "speculative": True}
