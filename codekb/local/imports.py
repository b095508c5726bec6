"""
Import-statement parsing, classification and resolution.

Each language family has a single combined pattern.  ``finditer`` consumes
every statement exactly once and the branch that matched tells which form
it is (named, default, namespace, side-effect, require, re-export, ...),
so a statement written in one style is never reported again by another.
"""

from __future__ import annotations

import posixpath
import re
from typing import Iterable, Optional

from .models import ParsedImport

# Alias prefixes that always point into the project.
DEFAULT_ALIAS_PREFIXES = ("@/", "~/", "src/")

RELATIVE_MODULE_ROOTS = ("self", "super", "crate")

FAMILY_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "ecmascript": (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts"),
    "python": (".py", ".pyi"),
    "go": (".go",),
    "rust": (".rs",),
}

INDEX_FILES: dict[str, tuple[str, ...]] = {
    "ecmascript": ("index.ts", "index.tsx", "index.js", "index.jsx"),
    "python": ("__init__.py",),
    "go": (),
    "rust": ("mod.rs",),
}


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_ECMA_PATTERN = re.compile(
    r"""
    (?<![\w$.])
    (?:
        import\s+(?:type\s+)?(?P<clause>[^'";]+?)\s+from\s*['"](?P<from_src>[^'"]+)['"]
      | import\s*['"](?P<side_src>[^'"]+)['"]
      | (?:const|let|var)\s+(?:\{(?P<req_named>[^}]*)\}|(?P<req_default>[\w$]+))
            \s*=\s*require\s*\(\s*['"](?P<req_src>[^'"]+)['"]\s*\)
      | export\s+(?:type\s+)?(?:\*(?:\s+as\s+(?P<reexport_ns>[\w$]+))?|\{(?P<reexport_named>[^}]*)\})
            \s*from\s*['"](?P<reexport_src>[^'"]+)['"]
    )
    """,
    re.VERBOSE,
)

_PYTHON_PATTERN = re.compile(
    r"""
    ^[ \t]*
    (?:
        from\s+(?P<from_src>\.+[\w.]*|[\w.]+)\s+import\s+
            (?:\((?P<grouped>[^)]*)\)|(?P<names>[^\n#;]+))
      | import\s+(?P<modules>[^\n#;]+)
    )
    """,
    re.VERBOSE | re.MULTILINE,
)

_GO_PATTERN = re.compile(
    r"""
    (?<![\w.])import\s*
    (?:
        \((?P<block>[^)]*)\)
      | (?:(?P<alias>[\w.]+)\s+)?"(?P<src>[^"]+)"
    )
    """,
    re.VERBOSE,
)

_GO_SPEC = re.compile(r'^[ \t]*(?:(?P<alias>[\w.]+)[ \t]+)?"(?P<src>[^"]+)"', re.MULTILINE)

_RUST_PATTERN = re.compile(
    r"""
    (?<![\w:])
    (?:
        (?:pub(?:\([^)]*\))?\s+)?use\s+(?P<path>[^;]+);
      | (?:pub(?:\([^)]*\))?\s+)?mod\s+(?P<mod>\w+)\s*;
      | extern\s+crate\s+(?P<crate>\w+)(?:\s+as\s+\w+)?\s*;
    )
    """,
    re.VERBOSE,
)

_COMMENT_LINE = re.compile(r"^\s*(//|#|\*|/\*)")


def _line_at(code: str, offset: int) -> int:
    return code.count("\n", 0, offset) + 1


def _split_names(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _original_name(item: str) -> str:
    """``a as b`` -> ``a``; strips inline ``type`` modifiers."""
    item = item.strip()
    if item.startswith("type "):
        item = item[5:].strip()
    return re.split(r"\s+as\s+", item, maxsplit=1)[0].strip()


def _in_comment(code: str, offset: int) -> bool:
    line_start = code.rfind("\n", 0, offset) + 1
    return bool(_COMMENT_LINE.match(code[line_start:offset + 2]))


# ---------------------------------------------------------------------------
# Per-family parsers
# ---------------------------------------------------------------------------

def _parse_ecmascript(code: str) -> list[ParsedImport]:
    results: list[ParsedImport] = []
    for m in _ECMA_PATTERN.finditer(code):
        if _in_comment(code, m.start()):
            continue
        line = _line_at(code, m.start())

        if m.group("from_src") is not None:
            clause = m.group("clause").strip()
            symbols: list[str] = []
            is_default = False
            is_namespace = False
            brace = re.search(r"\{([^}]*)\}", clause)
            if brace:
                symbols.extend(_original_name(s) for s in _split_names(brace.group(1)))
                clause = (clause[:brace.start()] + clause[brace.end():]).strip()
            for part in _split_names(clause):
                ns = re.match(r"\*\s+as\s+([\w$]+)", part)
                if ns:
                    is_namespace = True
                    symbols.append(ns.group(1))
                elif re.fullmatch(r"[\w$]+", part):
                    is_default = True
                    symbols.insert(0, part)
            results.append(ParsedImport(
                source=m.group("from_src"), symbols=symbols,
                is_default=is_default, is_namespace=is_namespace, line=line,
            ))

        elif m.group("side_src") is not None:
            results.append(ParsedImport(source=m.group("side_src"), line=line))

        elif m.group("req_src") is not None:
            if m.group("req_named") is not None:
                names = [
                    re.split(r"\s*:\s*", s, maxsplit=1)[0]
                    for s in _split_names(m.group("req_named"))
                ]
                results.append(ParsedImport(source=m.group("req_src"), symbols=names, line=line))
            else:
                results.append(ParsedImport(
                    source=m.group("req_src"), symbols=[m.group("req_default")],
                    is_default=True, line=line,
                ))

        else:
            named = m.group("reexport_named")
            symbols = [_original_name(s) for s in _split_names(named)] if named else []
            if m.group("reexport_ns"):
                symbols.append(m.group("reexport_ns"))
            results.append(ParsedImport(
                source=m.group("reexport_src"), symbols=symbols,
                is_namespace=named is None, line=line,
            ))
    return results


def _parse_python(code: str) -> list[ParsedImport]:
    results: list[ParsedImport] = []
    for m in _PYTHON_PATTERN.finditer(code):
        line = _line_at(code, m.start())
        if m.group("from_src") is not None:
            raw = m.group("grouped") if m.group("grouped") is not None else m.group("names")
            raw = raw.replace("\\", " ")
            names = [_original_name(s) for s in _split_names(raw)]
            results.append(ParsedImport(
                source=m.group("from_src"),
                symbols=[n for n in names if n != "*"],
                is_namespace="*" in names,
                line=line,
            ))
        else:
            for module in _split_names(m.group("modules")):
                name = _original_name(module)
                results.append(ParsedImport(
                    source=name, symbols=[name], is_namespace=True, line=line,
                ))
    return results


def _parse_go(code: str) -> list[ParsedImport]:
    results: list[ParsedImport] = []
    for m in _GO_PATTERN.finditer(code):
        if _in_comment(code, m.start()):
            continue
        if m.group("block") is not None:
            block_offset = m.start("block")
            for spec in _GO_SPEC.finditer(m.group("block")):
                results.append(_go_import(
                    spec.group("src"), spec.group("alias"),
                    _line_at(code, block_offset + spec.start("src")),
                ))
        else:
            results.append(_go_import(m.group("src"), m.group("alias"), _line_at(code, m.start())))
    return results


def _go_import(source: str, alias: Optional[str], line: int) -> ParsedImport:
    default_name = source.rstrip("/").rsplit("/", 1)[-1]
    return ParsedImport(
        source=source,
        symbols=[alias if alias and alias not in (".", "_") else default_name],
        is_namespace=alias == ".",
        line=line,
    )


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested inside braces."""
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [p for p in parts if p]


def _parse_rust(code: str) -> list[ParsedImport]:
    results: list[ParsedImport] = []
    for m in _RUST_PATTERN.finditer(code):
        if _in_comment(code, m.start()):
            continue
        line = _line_at(code, m.start())

        if m.group("mod") is not None:
            results.append(ParsedImport(
                source=f"self::{m.group('mod')}", is_namespace=True, line=line,
            ))
            continue
        if m.group("crate") is not None:
            name = m.group("crate")
            results.append(ParsedImport(source=name, symbols=[name], is_namespace=True, line=line))
            continue

        path = " ".join(m.group("path").split())
        path = re.sub(r"\s*(::|\{|\}|,)\s*", r"\1", path)
        if "{" in path:
            prefix, _, group = path.partition("{")
            group = group[:group.rfind("}")] if "}" in group else group
            symbols = []
            for item in _split_top_level(group):
                if "{" in item:
                    head = item.split("{", 1)[0].rstrip(":")
                else:
                    head = re.split(r"\s+as\s+", item, maxsplit=1)[0]
                symbols.append(head.rsplit("::", 1)[-1])
            results.append(ParsedImport(source=prefix.rstrip(":"), symbols=symbols, line=line))
        else:
            target = re.split(r"\s+as\s+", path, maxsplit=1)[0]
            if target.endswith("::*"):
                results.append(ParsedImport(source=target[:-3], is_namespace=True, line=line))
            else:
                results.append(ParsedImport(
                    source=target, symbols=[target.rsplit("::", 1)[-1]], line=line,
                ))
    return results


_PARSERS = {
    "ecmascript": _parse_ecmascript,
    "python": _parse_python,
    "go": _parse_go,
    "rust": _parse_rust,
}


def parse_import_statements(code: str, family: str) -> list[ParsedImport]:
    """
    Parse every import statement in *code*.

    Parameters
    ----------
    code:
        Import chunk text or a whole file.
    family:
        ``ecmascript``, ``python``, ``go`` or ``rust``.  Unknown families
        yield an empty list.
    """
    parser = _PARSERS.get(family)
    if parser is None:
        return []
    return sorted(parser(code), key=lambda imp: imp.line)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_relative(source: str, family: str) -> bool:
    if family == "rust":
        return source.split("::", 1)[0] in RELATIVE_MODULE_ROOTS
    return source.startswith(".")


def _alias_prefixes(aliases: Optional[dict[str, str]]) -> tuple[str, ...]:
    return tuple(aliases or {}) + DEFAULT_ALIAS_PREFIXES


def is_alias(source: str, family: str, aliases: Optional[dict[str, str]] = None) -> bool:
    if family != "ecmascript" and not aliases:
        return False
    return source.startswith(_alias_prefixes(aliases))


def is_external_package(
    source: str,
    family: str = "ecmascript",
    aliases: Optional[dict[str, str]] = None,
) -> bool:
    """
    True for bare specifiers: not relative, not absolute, not an alias.

    ``@scope/pkg`` is a package; ``@/x`` is a project alias.
    """
    if not source or source.startswith("/"):
        return False
    if is_relative(source, family):
        return False
    return not is_alias(source, family, aliases)


def extract_package_name(source: str, family: str = "ecmascript") -> str:
    """
    Package name of a bare specifier.

    ``lodash/fp`` -> ``lodash``; ``@scope/sdk/client`` -> ``@scope/sdk``;
    ``os.path`` -> ``os``; ``std::collections`` -> ``std``;
    ``github.com/org/repo/sub`` -> ``github.com/org/repo``.
    """
    if family == "python":
        return source.split(".", 1)[0]
    if family == "rust":
        return source.split("::", 1)[0]
    parts = source.split("/")
    if family == "ecmascript" and source.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    if family == "go" and "." in parts[0] and len(parts) >= 3:
        return "/".join(parts[:3])
    return parts[0]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _candidates(base: str, family: str, own_ext: str) -> list[str]:
    if posixpath.splitext(base)[1] in FAMILY_EXTENSIONS.get(family, ()):
        return [base]
    exts = list(FAMILY_EXTENSIONS.get(family, ()))
    if own_ext in exts:
        exts.remove(own_ext)
        exts.insert(0, own_ext)
    found = [base + ext for ext in exts]
    found.extend(posixpath.join(base, index) for index in INDEX_FILES.get(family, ()))
    return found


def _pick(candidates: list[str], known_paths: Optional[Iterable[str]]) -> tuple[str, bool]:
    if known_paths:
        known = known_paths if isinstance(known_paths, (set, frozenset)) else set(known_paths)
        for candidate in candidates:
            if candidate in known:
                return candidate, True
    return candidates[0], False


def _python_base(from_file: str, source: str) -> str:
    dots = len(source) - len(source.lstrip("."))
    base = posixpath.dirname(from_file)
    for _ in range(dots - 1):
        base = posixpath.dirname(base)
    rest = source[dots:]
    if rest:
        base = posixpath.join(base, *rest.split("."))
    return base


_RUST_ROOT_FILES = ("mod.rs", "lib.rs", "main.rs")


def _rust_base(from_file: str, source: str, symbols_in_path: bool) -> str:
    head, _, rest = source.partition("::")
    file_dir = posixpath.dirname(from_file)
    if posixpath.basename(from_file) in _RUST_ROOT_FILES:
        module_dir = file_dir
    else:
        module_dir = posixpath.join(file_dir, posixpath.splitext(posixpath.basename(from_file))[0])

    if head == "crate":
        base = file_dir
        probe = file_dir
        while probe and probe not in ("/", "."):
            if posixpath.basename(probe) == "src":
                base = probe
                break
            probe = posixpath.dirname(probe)
    elif head == "super":
        base = posixpath.dirname(module_dir)
    else:
        base = module_dir
    segments = [s for s in rest.split("::") if s]
    if symbols_in_path and segments:
        segments = segments[:-1]
    if not segments:
        return posixpath.join(base, "lib") if head == "crate" else base
    return posixpath.join(base, *segments)


def resolve_import_path(
    from_file: str,
    source: str,
    family: str = "ecmascript",
    known_paths: Optional[Iterable[str]] = None,
    aliases: Optional[dict[str, str]] = None,
    symbols_in_path: bool = False,
) -> tuple[str, bool]:
    """
    Resolve a project-internal import to a file path.

    Parameters
    ----------
    from_file:
        Path of the importing file.
    source:
        Import specifier as written.
    family:
        Import-parser family of the importing file.
    known_paths:
        Paths that exist in the project; the first matching candidate wins.
    aliases:
        Prefix -> directory mapping for path aliases (``{"@/": "src/"}``).
    symbols_in_path:
        Rust ``use`` paths that end in an item rather than a module.

    Returns
    -------
    (path, resolved):
        ``resolved`` is True when the path is one of *known_paths*.  An alias
        without a configured target returns ``(source, False)`` unchanged.
    """
    own_ext = posixpath.splitext(from_file)[1]

    if family == "rust" and is_relative(source, family):
        base = _rust_base(from_file, source, symbols_in_path)
    elif family == "python" and source.startswith("."):
        base = _python_base(from_file, source)
        if not source.strip("."):
            return _pick([posixpath.join(base, "__init__.py")], known_paths)
    elif source.startswith("."):
        base = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), source))
    elif source.startswith("/"):
        base = posixpath.normpath(source)
    else:
        for prefix, target in (aliases or {}).items():
            if source.startswith(prefix):
                base = posixpath.normpath(posixpath.join(target, source[len(prefix):]))
                break
        else:
            return source, False

    return _pick(_candidates(base, family, own_ext), known_paths)
