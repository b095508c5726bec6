"""
Graph extractor: turns chunks into typed nodes and relationship edges.

One node per function/class chunk (``<file>:<type>:<name>``), one module
node per file (``<file>:module``), and edges for calls, inheritance and
imports.  Relationship detection walks each chunk's syntax tree once and
dispatches on node kind through a per-language table.

Call and inheritance targets are named, not resolved: they point at the
id the target *would* have in the same file.  Edges carry
``metadata["resolved"]`` so consumers can tell speculative targets apart.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .imports import (
    extract_package_name,
    is_external_package,
    parse_import_statements,
    resolve_import_path,
)
from .models import (
    Chunk,
    CodeEdge,
    CodeNode,
    EdgeType,
    NodeType,
    make_node_id,
    module_id,
    package_id,
)
from .parser import (
    IDENTIFIER_KINDS,
    LanguageSpec,
    ParserPool,
    default_pool,
    detect_language,
    get_spec,
    has_export_keyword,
    identifier_in,
    node_text,
)

logger = logging.getLogger(__name__)

# (edge type, target name, 1-based line inside the chunk)
Relation = tuple[str, str, int]
Detector = Callable[[object, LanguageSpec], list[Relation]]

_COMMENT_PREFIXES = ("//", "/*", "*", "#")
_IGNORED_PACKAGES = frozenset({"__future__"})


@dataclass
class FileExtraction:
    nodes: list[CodeNode] = field(default_factory=list)
    edges: list[CodeEdge] = field(default_factory=list)
    chunk_by_node: dict[str, Chunk] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Line-level helpers
# ---------------------------------------------------------------------------

def extract_signature(source: str) -> str:
    """First line that is not blank, a comment or a decorator."""
    for line in source.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith(_COMMENT_PREFIXES) or stripped.startswith("@"):
            continue
        return stripped
    return ""


_EXPORT_CONVENTIONS: dict[str, Callable[[str], bool]] = {
    "go": lambda name: name[:1].isupper(),
    "python": lambda name: not name.startswith("_"),
}


def _is_exported(chunk: Chunk, signature: str, name: str) -> bool:
    if chunk.is_exported or has_export_keyword(signature):
        return True
    convention = _EXPORT_CONVENTIONS.get(chunk.language or "")
    return bool(convention and name and convention(name))


# ---------------------------------------------------------------------------
# Relationship detectors
# ---------------------------------------------------------------------------

def _line(node) -> int:
    return node.start_point[0] + 1


def _type_name(node, spec: LanguageSpec) -> Optional[str]:
    """Trailing identifier of a type reference (``a.b.Base<T>`` -> ``Base``)."""
    if node is None:
        return None
    if node.type in IDENTIFIER_KINDS:
        return node_text(node)
    member_field = spec.members.get(node.type)
    if member_field:
        prop = node.child_by_field_name(member_field)
        if prop is not None:
            return node_text(prop)
    for field_name in ("name", "type", "value"):
        inner = node.child_by_field_name(field_name)
        if inner is not None:
            return _type_name(inner, spec)
    return identifier_in(node)


def callee_name(node, spec: LanguageSpec) -> Optional[str]:
    """Name of the function called at a call-site's function expression."""
    while node is not None:
        if node.type in IDENTIFIER_KINDS:
            return node_text(node)
        member_field = spec.members.get(node.type)
        if member_field:
            prop = node.child_by_field_name(member_field)
            return node_text(prop) if prop is not None else None
        node = node.children[0] if node.children else None
    return None


def _detect_call(node, spec: LanguageSpec) -> list[Relation]:
    target = node.child_by_field_name("function")
    if target is None and node.children:
        target = node.children[0]
    name = callee_name(target, spec)
    return [(EdgeType.CALLS, name, _line(node))] if name else []


def _detect_ecma_heritage(node, spec: LanguageSpec) -> list[Relation]:
    found: list[Relation] = []
    for child in node.named_children:
        if child.type == "extends_clause":
            value = child.child_by_field_name("value")
            if value is None and child.named_children:
                value = child.named_children[0]
            name = _type_name(value, spec)
            if name:
                found.append((EdgeType.EXTENDS, name, _line(child)))
        elif child.type == "implements_clause":
            for iface in child.named_children:
                name = _type_name(iface, spec)
                if name:
                    found.append((EdgeType.IMPLEMENTS, name, _line(iface)))
        else:
            # JavaScript: class_heritage wraps the base expression directly
            name = _type_name(child, spec)
            if name:
                found.append((EdgeType.EXTENDS, name, _line(child)))
    return found


def _detect_interface_extends(node, spec: LanguageSpec) -> list[Relation]:
    found = []
    for child in node.named_children:
        name = _type_name(child, spec)
        if name:
            found.append((EdgeType.EXTENDS, name, _line(child)))
    return found


def _detect_python_bases(node, spec: LanguageSpec) -> list[Relation]:
    supers = node.child_by_field_name("superclasses")
    if supers is None:
        return []
    found = []
    for base in supers.named_children:
        if base.type == "identifier":
            found.append((EdgeType.EXTENDS, node_text(base), _line(base)))
        elif base.type == "attribute":
            attr = base.child_by_field_name("attribute")
            if attr is not None:
                found.append((EdgeType.EXTENDS, node_text(attr), _line(base)))
    return found


def _detect_rust_impl(node, spec: LanguageSpec) -> list[Relation]:
    trait = node.child_by_field_name("trait")
    name = _type_name(trait, spec)
    return [(EdgeType.IMPLEMENTS, name, _line(trait))] if name else []


_ECMA_HERITAGE: dict[str, Detector] = {"class_heritage": _detect_ecma_heritage}
_TS_HERITAGE: dict[str, Detector] = {
    "class_heritage": _detect_ecma_heritage,
    "extends_type_clause": _detect_interface_extends,
}

HERITAGE_DETECTORS: dict[str, dict[str, Detector]] = {
    "typescript": _TS_HERITAGE,
    "tsx": _TS_HERITAGE,
    "javascript": _ECMA_HERITAGE,
    "jsx": _ECMA_HERITAGE,
    "python": {"class_definition": _detect_python_bases},
    "rust": {"impl_item": _detect_rust_impl},
    "go": {},
}


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class GraphExtractor:
    """
    Extract nodes and edges from chunks.

    Parameters
    ----------
    pool:
        Parser pool used to re-parse chunk sources; the process-wide pool
        when omitted.
    """

    def __init__(self, pool: Optional[ParserPool] = None) -> None:
        self._pool = pool or default_pool()

    # ------------------------------------------------------------------
    # Per chunk
    # ------------------------------------------------------------------

    def extract_from_chunk(
        self, chunk: Chunk, file_path: str,
    ) -> tuple[list[CodeNode], list[CodeEdge]]:
        """
        Return the node declared by *chunk* and its outgoing edges.

        Chunks that are neither function- nor class-like yield nothing, and
        so do chunks whose source cannot be parsed.
        """
        spec = get_spec(chunk.language)
        if spec is None or not (chunk.is_function or chunk.is_class):
            return [], []

        relations = self._relationships(chunk, spec)
        if relations is None:
            return [], []

        source = chunk.source
        signature = extract_signature(source)
        name = chunk.name or "anonymous"
        node_type = self._node_type(chunk, spec, signature)
        identity = f"{chunk.parent_name}.{name}" if chunk.parent_name else name

        node = CodeNode(
            id=make_node_id(file_path, node_type, identity),
            type=node_type,
            name=name,
            file_path=file_path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            signature=signature,
            metadata={
                "language": chunk.language,
                "node_type": chunk.node_type,
                "parent_name": chunk.parent_name,
                "is_exported": _is_exported(chunk, signature, name),
                "is_async": "async " in signature,
            },
        )

        edges: list[CodeEdge] = []
        seen: set[str] = set()
        for edge_type, target_name, line in relations:
            if edge_type == EdgeType.CALLS:
                if line == 1 and target_name == name and chunk.parent_name:
                    # method header re-parsed out of its class reads as a call
                    continue
                target = make_node_id(file_path, NodeType.FUNCTION, target_name)
            elif edge_type == EdgeType.IMPLEMENTS:
                target = make_node_id(file_path, NodeType.INTERFACE, target_name)
            else:
                base_type = NodeType.INTERFACE if node_type == NodeType.INTERFACE else NodeType.CLASS
                target = make_node_id(file_path, base_type, target_name)
            edge = CodeEdge.create(node.id, edge_type, target, {
                "target_name": target_name,
                "line": chunk.start_line + line - 1,
            })
            if edge.id not in seen:
                seen.add(edge.id)
                edges.append(edge)
        return [node], edges

    @staticmethod
    def _node_type(chunk: Chunk, spec: LanguageSpec, signature: str) -> str:
        if not chunk.is_class:
            return NodeType.FUNCTION
        if chunk.base_kind in spec.interfaces:
            return NodeType.INTERFACE
        if spec.interface_hint and re.search(spec.interface_hint, signature):
            return NodeType.INTERFACE
        return NodeType.CLASS

    def _relationships(self, chunk: Chunk, spec: LanguageSpec) -> Optional[list[Relation]]:
        try:
            tree = self._pool.parse(chunk.source, spec.name)
        except Exception as exc:
            logger.warning("Could not parse chunk %s (%s): %s", chunk.name, spec.name, exc)
            return None

        heritage = HERITAGE_DETECTORS.get(spec.name, {}) if chunk.is_class else {}
        heritage_done = False
        found: list[Relation] = []

        stack = [tree.root_node]
        while stack:
            node = stack.pop()
            if node.type in spec.calls:
                found.extend(_detect_call(node, spec))
            elif not heritage_done and node.type in heritage:
                found.extend(heritage[node.type](node, spec))
                heritage_done = True
            stack.extend(reversed(node.children))
        return found

    # ------------------------------------------------------------------
    # Per file
    # ------------------------------------------------------------------

    def extract_from_file(
        self,
        file_path: str,
        chunks: list[Chunk],
        file_content: Optional[str] = None,
        known_paths: Optional[Iterable[str]] = None,
        path_aliases: Optional[dict[str, str]] = None,
    ) -> FileExtraction:
        """
        Extract the module node, declaration nodes and all edges of a file.

        Parameters
        ----------
        file_path:
            Path recorded on every node; also the base for relative imports.
        chunks:
            Output of the chunker for this file.
        file_content:
            Raw file text, parsed for imports when no import chunk exists.
        known_paths:
            Project file paths used to pick among candidate import targets.
        path_aliases:
            Import alias prefix -> directory mapping.
        """
        language = next((c.language for c in chunks if c.language), None)
        if language is None:
            language = detect_language(file_path)
        spec = get_spec(language)
        known = set(known_paths or ())

        result = FileExtraction()
        nodes: dict[str, CodeNode] = {}
        edges: dict[str, CodeEdge] = {}

        mod_id = module_id(file_path)
        last_line = max((c.end_line for c in chunks), default=0)
        if file_content is not None:
            last_line = max(last_line, file_content.count("\n") + 1)
        nodes[mod_id] = CodeNode(
            id=mod_id,
            type=NodeType.MODULE,
            name=os.path.basename(file_path),
            file_path=file_path,
            start_line=1,
            end_line=last_line,
            metadata={
                "language": language,
                "extension": os.path.splitext(file_path)[1],
                "exported_symbols": [],
            },
        )

        for chunk in chunks:
            chunk_nodes, chunk_edges = self.extract_from_chunk(chunk, file_path)
            for node in chunk_nodes:
                existing = nodes.get(node.id)
                if existing is None:
                    nodes[node.id] = node
                    result.chunk_by_node[node.id] = chunk
                else:
                    existing.start_line = min(existing.start_line, node.start_line)
                    existing.end_line = max(existing.end_line, node.end_line)
            for edge in chunk_edges:
                edges.setdefault(edge.id, edge)

        edges = self._retarget_calls(nodes, edges)

        if spec is not None:
            for text, first_line in self._import_sources(chunks, file_content):
                for edge in self._import_edges(
                    file_path, text, first_line, spec, known, path_aliases,
                ):
                    existing = edges.get(edge.id)
                    if existing is None:
                        edges[edge.id] = edge
                    else:
                        symbols = existing.metadata.setdefault("imported_symbols", [])
                        for sym in edge.metadata.get("imported_symbols", []):
                            if sym not in symbols:
                                symbols.append(sym)

        for edge in edges.values():
            if edge.edge_type != EdgeType.IMPORTS:
                edge.metadata["resolved"] = edge.to_node in nodes

        nodes[mod_id].metadata["exported_symbols"] = sorted({
            n.name for n in nodes.values()
            if n.type != NodeType.MODULE
            and n.metadata.get("is_exported")
            and not n.metadata.get("parent_name")
        })

        result.nodes = list(nodes.values())
        result.edges = list(edges.values())
        return result

    @staticmethod
    def _retarget_calls(
        nodes: dict[str, CodeNode], edges: dict[str, CodeEdge],
    ) -> dict[str, CodeEdge]:
        """Point bare-name calls at the one same-file function with that name."""
        by_name: dict[str, list[str]] = {}
        for node in nodes.values():
            if node.type == NodeType.FUNCTION:
                by_name.setdefault(node.name, []).append(node.id)

        retargeted: dict[str, CodeEdge] = {}
        for edge in edges.values():
            if edge.edge_type == EdgeType.CALLS and edge.to_node not in nodes:
                candidates = by_name.get(edge.metadata.get("target_name", ""), [])
                if len(candidates) == 1:
                    edge = CodeEdge.create(edge.from_node, edge.edge_type, candidates[0], edge.metadata)
            retargeted.setdefault(edge.id, edge)
        return retargeted

    @staticmethod
    def _import_sources(
        chunks: list[Chunk], file_content: Optional[str],
    ) -> list[tuple[str, int]]:
        """
        Text to scan for import statements, each with the file line it starts on.

        Import chunks are re-read from *file_content* over their line range
        so statement lines match the file; without the file text the chunk
        content is used as is.
        """
        import_chunks = [c for c in chunks if c.is_import]
        if not import_chunks:
            return [(file_content or "", 1)]
        lines = file_content.split("\n") if file_content is not None else None
        sources = []
        for chunk in import_chunks:
            if lines is not None:
                text = "\n".join(lines[chunk.start_line - 1:chunk.end_line])
            else:
                text = chunk.content
            sources.append((text, chunk.start_line))
        return sources

    @staticmethod
    def _import_edges(
        file_path: str,
        text: str,
        first_line: int,
        spec: LanguageSpec,
        known: set[str],
        path_aliases: Optional[dict[str, str]],
    ) -> list[CodeEdge]:
        family = spec.import_family
        mod_id = module_id(file_path)
        edges: list[CodeEdge] = []
        for imp in parse_import_statements(text, family):
            meta = {
                "imported_symbols": list(imp.symbols),
                "line": imp.line + first_line - 1,
                "is_default": imp.is_default,
                "is_namespace": imp.is_namespace,
            }
            if is_external_package(imp.source, family, path_aliases):
                name = extract_package_name(imp.source, family)
                if name in _IGNORED_PACKAGES:
                    continue
                meta.update(package_name=name, import_path=imp.source, resolved=False)
                edges.append(CodeEdge.create(mod_id, EdgeType.DEPENDS_ON, package_id(name), meta))
                continue

            symbols_in_path = bool(imp.symbols) and imp.source.endswith("::" + imp.symbols[0])
            path, resolved = resolve_import_path(
                file_path, imp.source, family,
                known_paths=known, aliases=path_aliases,
                symbols_in_path=symbols_in_path,
            )
            meta.update(import_path=path, source=imp.source, resolved=resolved)
            edges.append(CodeEdge.create(mod_id, EdgeType.IMPORTS, module_id(path), meta))
        return edges


# ---------------------------------------------------------------------------
# Package manifests
# ---------------------------------------------------------------------------

PACKAGE_MANIFESTS = frozenset({"package.json"})


def is_package_manifest(file_path: str) -> bool:
    return os.path.basename(file_path) in PACKAGE_MANIFESTS


def extract_package_nodes(file_path: str, content: str) -> list[CodeNode]:
    """
    Return one ``package`` node per dependency declared in a package.json.

    Invalid JSON yields an empty list.
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Invalid package manifest %s: %s", file_path, exc)
        return []
    if not isinstance(data, dict):
        return []

    nodes: dict[str, CodeNode] = {}
    for section, flag in (
        ("dependencies", None),
        ("devDependencies", "is_dev_dependency"),
        ("peerDependencies", "is_peer_dependency"),
    ):
        deps = data.get(section)
        if not isinstance(deps, dict):
            continue
        for name, version in deps.items():
            if name in nodes:
                continue
            metadata = {
                "version": str(version),
                "manifest": file_path,
                "is_dev_dependency": flag == "is_dev_dependency",
                "is_peer_dependency": flag == "is_peer_dependency",
            }
            nodes[name] = CodeNode(
                id=package_id(name),
                type=NodeType.PACKAGE,
                name=name,
                file_path=file_path,
                signature=f"{name}@{version}",
                metadata=metadata,
            )
    return list(nodes.values())
