"""
Grammar registry and parser pool.

Every supported language has one static :class:`LanguageSpec` describing
which tree-sitter node kinds are top-level units, function-like,
class-like, import-like, call sites and member accesses.  The chunker and
the graph extractor are driven entirely by these tables.

Supports: TypeScript, TSX, JavaScript, JSX, Python, Go, Rust

Uses tree-sitter >= 0.22 API with individual language packages.
"""

from __future__ import annotations

import importlib
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


class UnsupportedLanguageError(ValueError):
    """Raised when no grammar is configured or installed for a language."""


# ---------------------------------------------------------------------------
# Language specifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LanguageSpec:
    name: str
    grammar: tuple[str, str]                    # (module, language function)
    extensions: tuple[str, ...]
    top_level: frozenset[str]
    functions: frozenset[str]
    classes: frozenset[str]
    imports: frozenset[str]
    import_family: str
    interfaces: frozenset[str] = frozenset()
    calls: frozenset[str] = frozenset()
    # member access kind -> field holding the trailing property name
    members: dict[str, str] = field(default_factory=dict)
    # wrapper kind -> fields that may hold the wrapped declaration
    wrappers: dict[str, tuple[str, ...]] = field(default_factory=dict)
    # kind -> (field, present): import-like only when the field is present/absent
    conditional_imports: dict[str, tuple[str, bool]] = field(default_factory=dict)
    # kinds that hold the name of a declaration one level down
    name_holders: frozenset[str] = frozenset()
    name_fields: tuple[str, ...] = ("name", "identifier", "property_identifier")
    # regex on the signature line marking a class-like unit as an interface
    interface_hint: Optional[str] = None


_TS_TOP_LEVEL = frozenset({
    "import_statement",
    "export_statement",
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "abstract_class_declaration",
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
    "lexical_declaration",
    "variable_declaration",
    "internal_module",
    "module",
})

_TS_FUNCTIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "function_expression",
    "arrow_function",
    "method_definition",
})

_JS_TOP_LEVEL = frozenset({
    "import_statement",
    "export_statement",
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "lexical_declaration",
    "variable_declaration",
})

_JS_FUNCTIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "function_expression",
    "function",
    "arrow_function",
    "method_definition",
})

_ECMA_WRAPPERS = {"export_statement": ("declaration", "value")}
_ECMA_CONDITIONAL = {"export_statement": ("source", True)}
_ECMA_MEMBERS = {"member_expression": "property"}


def _typescript(name: str, grammar: str, extensions: tuple[str, ...]) -> LanguageSpec:
    return LanguageSpec(
        name=name,
        grammar=("tree_sitter_typescript", grammar),
        extensions=extensions,
        top_level=_TS_TOP_LEVEL,
        functions=_TS_FUNCTIONS,
        classes=frozenset({
            "class_declaration",
            "abstract_class_declaration",
            "class",
            "interface_declaration",
        }),
        interfaces=frozenset({"interface_declaration"}),
        imports=frozenset({"import_statement"}),
        import_family="ecmascript",
        calls=frozenset({"call_expression"}),
        members=_ECMA_MEMBERS,
        wrappers=_ECMA_WRAPPERS,
        conditional_imports=_ECMA_CONDITIONAL,
        name_holders=frozenset({"variable_declarator"}),
    )


def _javascript(name: str, extensions: tuple[str, ...]) -> LanguageSpec:
    return LanguageSpec(
        name=name,
        grammar=("tree_sitter_javascript", "language"),
        extensions=extensions,
        top_level=_JS_TOP_LEVEL,
        functions=_JS_FUNCTIONS,
        classes=frozenset({"class_declaration", "class"}),
        imports=frozenset({"import_statement"}),
        import_family="ecmascript",
        calls=frozenset({"call_expression"}),
        members=_ECMA_MEMBERS,
        wrappers=_ECMA_WRAPPERS,
        conditional_imports=_ECMA_CONDITIONAL,
        name_holders=frozenset({"variable_declarator"}),
    )


LANGUAGE_SPECS: dict[str, LanguageSpec] = {
    "typescript": _typescript("typescript", "language_typescript", (".ts", ".mts", ".cts")),
    "tsx": _typescript("tsx", "language_tsx", (".tsx",)),
    "javascript": _javascript("javascript", (".js", ".mjs", ".cjs")),
    "jsx": _javascript("jsx", (".jsx",)),
    "python": LanguageSpec(
        name="python",
        grammar=("tree_sitter_python", "language"),
        extensions=(".py", ".pyi"),
        top_level=frozenset({
            "import_statement",
            "import_from_statement",
            "future_import_statement",
            "function_definition",
            "class_definition",
            "decorated_definition",
        }),
        functions=frozenset({"function_definition"}),
        classes=frozenset({"class_definition"}),
        imports=frozenset({
            "import_statement",
            "import_from_statement",
            "future_import_statement",
        }),
        import_family="python",
        calls=frozenset({"call"}),
        members={"attribute": "attribute"},
        wrappers={"decorated_definition": ("definition",)},
    ),
    "go": LanguageSpec(
        name="go",
        grammar=("tree_sitter_go", "language"),
        extensions=(".go",),
        top_level=frozenset({
            "import_declaration",
            "function_declaration",
            "method_declaration",
            "type_declaration",
            "const_declaration",
            "var_declaration",
        }),
        functions=frozenset({"function_declaration", "method_declaration"}),
        classes=frozenset({"type_declaration"}),
        imports=frozenset({"import_declaration"}),
        import_family="go",
        calls=frozenset({"call_expression"}),
        members={"selector_expression": "field"},
        name_holders=frozenset({"type_spec", "type_alias"}),
        interface_hint=r"\binterface\s*\{",
    ),
    "rust": LanguageSpec(
        name="rust",
        grammar=("tree_sitter_rust", "language"),
        extensions=(".rs",),
        top_level=frozenset({
            "use_declaration",
            "extern_crate_declaration",
            "mod_item",
            "function_item",
            "struct_item",
            "enum_item",
            "trait_item",
            "impl_item",
            "type_item",
            "const_item",
            "static_item",
            "macro_definition",
        }),
        functions=frozenset({"function_item", "function_signature_item"}),
        classes=frozenset({"struct_item", "enum_item", "trait_item", "impl_item"}),
        interfaces=frozenset({"trait_item"}),
        imports=frozenset({"use_declaration", "extern_crate_declaration"}),
        import_family="rust",
        calls=frozenset({"call_expression"}),
        members={"field_expression": "field", "scoped_identifier": "name"},
        conditional_imports={"mod_item": ("body", False)},
        name_fields=("name", "type"),
    ),
}

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ext: spec.name
    for spec in LANGUAGE_SPECS.values()
    for ext in spec.extensions
}


def detect_language(
    file_path: str,
    overrides: Optional[dict[str, str]] = None,
) -> Optional[str]:
    """
    Return the language name for *file_path*, or None if unsupported.

    Parameters
    ----------
    file_path:
        Any file path; only the extension is examined.
    overrides:
        Optional extension -> language mapping consulted first,
        e.g. ``{".mjs": "javascript"}``.
    """
    ext = os.path.splitext(file_path)[1].lower()
    if overrides:
        lang = overrides.get(ext)
        if lang is not None:
            return lang if lang in LANGUAGE_SPECS else None
    return EXTENSION_TO_LANGUAGE.get(ext)


def get_spec(language: Optional[str]) -> Optional[LanguageSpec]:
    if language is None:
        return None
    return LANGUAGE_SPECS.get(language)


# ---------------------------------------------------------------------------
# Parser pool
# ---------------------------------------------------------------------------

class ParserPool:
    """
    Lazily creates one tree-sitter parser per language.

    Creation of a language's parser happens at most once: callers racing
    on the first request for the same language wait on that language's
    lock and then share the cached parser.  Parsing itself also runs under
    the language lock because a tree-sitter ``Parser`` is not re-entrant.
    """

    def __init__(self) -> None:
        self._parsers: dict[str, Any] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, language: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(language)
            if lock is None:
                lock = threading.Lock()
                self._locks[language] = lock
            return lock

    def get(self, language: str):
        """Return the parser for *language*, creating it on first use."""
        parser = self._parsers.get(language)
        if parser is not None:
            return parser
        with self._lock_for(language):
            parser = self._parsers.get(language)
            if parser is None:
                parser = self._create(language)
                self._parsers[language] = parser
        return parser

    def parse(self, text: str, language: str):
        """Parse *text* and return the tree-sitter ``Tree``."""
        parser = self.get(language)
        with self._lock_for(language):
            return parser.parse(text.encode("utf-8"))

    def loaded_languages(self) -> list[str]:
        return sorted(self._parsers)

    @staticmethod
    def _create(language: str):
        spec = LANGUAGE_SPECS.get(language)
        if spec is None:
            raise UnsupportedLanguageError(f"No grammar configured for {language!r}")
        module_name, func_name = spec.grammar
        try:
            import tree_sitter as ts  # type: ignore
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise UnsupportedLanguageError(
                f"Grammar package {module_name!r} for {language!r} is not installed"
            ) from exc
        lang_obj = ts.Language(getattr(module, func_name)())
        logger.debug("Loaded tree-sitter grammar for %s", language)
        return ts.Parser(lang_obj)


_default_pool: Optional[ParserPool] = None
_default_pool_lock = threading.Lock()


def default_pool() -> ParserPool:
    """Return a process-wide pool for callers that do not own one."""
    global _default_pool
    with _default_pool_lock:
        if _default_pool is None:
            _default_pool = ParserPool()
        return _default_pool


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------

IDENTIFIER_KINDS = frozenset({
    "identifier",
    "type_identifier",
    "property_identifier",
    "field_identifier",
    "private_property_identifier",
})


EXPORT_KEYWORDS = ("export ", "public ", "pub ", "pub(")

# may precede a visibility keyword (``static public``, ``declare export``)
_LEADING_MODIFIERS = ("static ", "abstract ", "declare ", "override ", "readonly ")


def has_export_keyword(line: str) -> bool:
    """True when *line* starts with an export or visibility keyword."""
    text = line.lstrip()
    while not text.startswith(EXPORT_KEYWORDS):
        modifier = next((m for m in _LEADING_MODIFIERS if text.startswith(m)), None)
        if modifier is None:
            return False
        text = text[len(modifier):].lstrip()
    return True


def node_text(node) -> str:
    """Return the UTF-8 text of a tree-sitter node."""
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def unwrap(node, spec: LanguageSpec):
    """
    Return the declaration wrapped by decorators or ``export``.

    Returns *node* itself when it is not a wrapper or wraps nothing.
    """
    seen = 0
    while node.type in spec.wrappers and seen < 4:
        inner = None
        for field_name in spec.wrappers[node.type]:
            inner = node.child_by_field_name(field_name)
            if inner is not None:
                break
        if inner is None:
            return node
        node = inner
        seen += 1
    return node


def is_import_node(node, spec: LanguageSpec) -> bool:
    if node.type in spec.imports:
        return True
    rule = spec.conditional_imports.get(node.type)
    if rule is None:
        return False
    field_name, present = rule
    return (node.child_by_field_name(field_name) is not None) == present


def identifier_in(node, depth: int = 0) -> Optional[str]:
    """Best-effort identifier text for *node* or its first named descendants."""
    if node is None or depth > 3:
        return None
    if node.type in IDENTIFIER_KINDS:
        return node_text(node)
    inner = node.child_by_field_name("name") or node.child_by_field_name("type")
    if inner is not None and inner is not node:
        found = identifier_in(inner, depth + 1)
        if found:
            return found
    for child in node.children:
        if child.type in IDENTIFIER_KINDS:
            return node_text(child)
    return None


def node_name(node, spec: LanguageSpec) -> Optional[str]:
    """
    Best-effort declaration name for *node*.

    Tries the spec's name fields, then the first identifier child, then a
    name-holding child (Go ``type_spec``, JS ``variable_declarator``), and
    for anonymous functions the enclosing declarator or field.
    """
    for field_name in spec.name_fields:
        child = node.child_by_field_name(field_name)
        if child is not None:
            found = identifier_in(child)
            if found:
                return found

    for child in node.children:
        if child.type in IDENTIFIER_KINDS:
            return node_text(child)

    for child in node.named_children:
        if child.type in spec.name_holders:
            found = identifier_in(child.child_by_field_name("name") or child)
            if found:
                return found

    if node.type in spec.functions and node.parent is not None:
        parent = node.parent
        for field_name in ("name", "key", "property", "left"):
            holder = parent.child_by_field_name(field_name)
            if holder is not None and holder is not node:
                found = identifier_in(holder)
                if found:
                    return found
    return None


def declared_function(node, spec: LanguageSpec):
    """
    For ``const f = () => ...`` style declarations return the function node.

    Returns None unless *node* is a variable declaration whose first
    declarator is initialised with a function-like value.
    """
    if node.type not in ("lexical_declaration", "variable_declaration"):
        return None
    for child in node.named_children:
        if child.type in spec.name_holders:
            value = child.child_by_field_name("value")
            if value is not None and value.type in spec.functions:
                return value
            return None
    return None
