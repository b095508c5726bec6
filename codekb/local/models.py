"""
Data model shared by the chunker, the graph extractor and the scanner.

Identity rules:

* node id   -- ``<file_path>:<type>:<name>`` (``<file_path>:module`` for the
  file itself, ``pkg:<name>`` for external packages)
* edge id   -- ``<from>:<edge_type>:<to>``
* vector id -- ``code_`` + first 16 hex chars of sha256(``<file_path>:<name>``)

None of them depend on chunk order or on how the token budget split a
declaration, so re-running extraction on unchanged input is a no-op.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Type constants
# ---------------------------------------------------------------------------

class NodeType:
    MODULE = "module"
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    PACKAGE = "package"


class EdgeType:
    IMPORTS = "imports"
    DEPENDS_ON = "depends_on"
    CALLS = "calls"
    EXTENDS = "extends"
    IMPLEMENTS = "implements"


class ChangeType:
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


# Node types that get a semantic vector.
INDEXABLE_NODE_TYPES: frozenset[str] = frozenset(
    {NodeType.FUNCTION, NodeType.CLASS, NodeType.INTERFACE}
)

PACKAGE_PREFIX = "pkg:"


# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------

def make_node_id(file_path: str, node_type: str, name: str) -> str:
    return f"{file_path}:{node_type}:{name}"


def module_id(file_path: str) -> str:
    return f"{file_path}:{NodeType.MODULE}"


def package_id(name: str) -> str:
    return f"{PACKAGE_PREFIX}{name}"


def make_edge_id(from_node: str, edge_type: str, to_node: str) -> str:
    return f"{from_node}:{edge_type}:{to_node}"


def make_vector_id(file_path: str, name: str) -> str:
    """
    Return the deterministic vector-store id for a declaration.

    Parameters
    ----------
    file_path:
        Path of the file declaring the symbol.
    name:
        Identity name of the symbol (``Parent.method`` for split methods).
    """
    digest = hashlib.sha256(f"{file_path}:{name}".encode("utf-8")).hexdigest()
    return f"code_{digest[:16]}"


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

@dataclass
class Chunk:
    """A contiguous, token-bounded slice of a source file."""
    content: str
    token_count: int
    start_line: int             # 1-based, inclusive
    end_line: int               # 1-based, inclusive
    start_byte: int
    end_byte: int
    language: Optional[str]
    node_type: str
    name: Optional[str] = None
    parent_name: Optional[str] = None
    is_import: bool = False
    is_function: bool = False
    is_class: bool = False
    is_exported: bool = False
    context: str = ""           # import block inlined in front of the source

    @property
    def source(self) -> str:
        """The chunk text without any inlined import context."""
        if self.context and self.content.startswith(self.context):
            return self.content[len(self.context):]
        return self.content

    @property
    def base_kind(self) -> str:
        """``node_type`` without the ``_partial`` suffix of line-split chunks."""
        if self.node_type.endswith("_partial"):
            return self.node_type[: -len("_partial")]
        return self.node_type

    @property
    def qualified_name(self) -> Optional[str]:
        if self.name and self.parent_name:
            return f"{self.parent_name}.{self.name}"
        return self.name


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------

@dataclass
class CodeNode:
    """A declaration, module or external package in the code graph."""
    id: str
    type: str
    name: str
    file_path: str
    start_line: int = 0
    end_line: int = 0
    signature: str = ""
    summary: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def identity_name(self) -> str:
        """Name used for the vector id; methods are qualified by their parent."""
        parent = self.metadata.get("parent_name")
        return f"{parent}.{self.name}" if parent else self.name

    @property
    def vector_id(self) -> str:
        return make_vector_id(self.file_path, self.identity_name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CodeEdge:
    """A typed, directed relationship between two nodes."""
    id: str
    from_node: str
    to_node: str
    edge_type: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        from_node: str,
        edge_type: str,
        to_node: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "CodeEdge":
        return cls(
            id=make_edge_id(from_node, edge_type, to_node),
            from_node=from_node,
            to_node=to_node,
            edge_type=edge_type,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ParsedImport:
    """One import statement, as understood by the per-language parsers."""
    source: str
    symbols: list[str] = field(default_factory=list)
    is_default: bool = False
    is_namespace: bool = False
    line: int = 0


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

@dataclass
class FileChange:
    path: str
    kind: str
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None
    content: Optional[str] = field(default=None, repr=False, compare=False)


@dataclass
class ScanStats:
    """Exact counters; every field is incremented at a successful operation."""
    files_scanned: int = 0
    files_failed: int = 0
    nodes_added: int = 0
    nodes_updated: int = 0
    nodes_deleted: int = 0
    edges_added: int = 0
    edges_deleted: int = 0
    documents_updated: int = 0
    embeddings_regenerated: int = 0
    embeddings_deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class IncrementalScanResult:
    changes: list[FileChange] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures
