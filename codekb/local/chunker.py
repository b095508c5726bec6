"""
Structural chunker: splits a source file into token-bounded chunks that
follow declaration boundaries.

Top-level declarations become one chunk each.  A declaration over the
token budget is split: class-like units into one chunk per method,
everything else into contiguous line windows (``<kind>_partial``).  Files
without a grammar fall back to plain line windows (``lines``).
"""

from __future__ import annotations

import logging
from typing import Optional

from .models import Chunk
from .parser import (
    LanguageSpec,
    ParserPool,
    declared_function,
    default_pool,
    detect_language,
    get_spec,
    has_export_keyword,
    is_import_node,
    node_name,
    node_text,
    unwrap,
)
from .tokens import TokenCounter, count_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 512


class StructuralChunker:
    """
    Chunk source text along its syntax tree.

    Parameters
    ----------
    pool:
        Parser pool to parse with; the process-wide pool when omitted.
    token_counter:
        Callable returning the token count of a string; tiktoken when
        omitted.
    """

    def __init__(
        self,
        pool: Optional[ParserPool] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        self._pool = pool or default_pool()
        self._count = token_counter or count_tokens

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk_file(
        self,
        code: str,
        file_path: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        include_imports: bool = False,
        split_large: bool = True,
        extension_overrides: Optional[dict[str, str]] = None,
    ) -> list[Chunk]:
        """Detect the language from *file_path* and chunk *code*."""
        language = detect_language(file_path, extension_overrides)
        return self.chunk(
            code, language,
            max_tokens=max_tokens,
            include_imports=include_imports,
            split_large=split_large,
        )

    def chunk(
        self,
        code: str,
        language: Optional[str],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        include_imports: bool = False,
        split_large: bool = True,
    ) -> list[Chunk]:
        """
        Return the chunks of *code*.

        Parameters
        ----------
        code:
            Full file text.
        language:
            Language name from :func:`detect_language`; None chunks by lines.
        max_tokens:
            Token budget per chunk.
        include_imports:
            Inline the import block in front of every chunk instead of
            emitting a separate ``imports`` chunk.
        split_large:
            Split declarations that exceed *max_tokens*.
        """
        spec = get_spec(language)
        if spec is None:
            return self.chunk_lines(code, max_tokens)

        try:
            tree = self._pool.parse(code, spec.name)
        except Exception as exc:
            logger.warning("Parsing as %s failed, chunking by lines: %s", language, exc)
            return self.chunk_lines(code, max_tokens)

        top_level = [n for n in tree.root_node.children if n.type in spec.top_level]
        imports = [n for n in top_level if is_import_node(n, spec)]
        import_block = "\n".join(node_text(n) for n in imports)

        chunks: list[Chunk] = []
        context = ""
        if imports:
            if include_imports:
                context = import_block + "\n\n"
            else:
                chunks.append(self._imports_chunk(imports, import_block, spec.name))

        for node in top_level:
            if is_import_node(node, spec):
                continue
            chunks.extend(self._chunk_node(node, spec, max_tokens, split_large, context))
        return chunks

    def chunk_lines(
        self,
        code: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        language: Optional[str] = None,
    ) -> list[Chunk]:
        """Chunk *code* into contiguous line windows of at most *max_tokens*."""
        if not code.strip():
            return []
        return self._line_windows(
            code, first_line=1, first_byte=0, budget=max_tokens,
            language=language, node_type="lines",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _imports_chunk(self, imports: list, block: str, language: str) -> Chunk:
        first, last = imports[0], imports[-1]
        return Chunk(
            content=block,
            token_count=self._count(block),
            start_line=first.start_point[0] + 1,
            end_line=last.end_point[0] + 1,
            start_byte=first.start_byte,
            end_byte=last.end_byte,
            language=language,
            node_type="imports",
            is_import=True,
        )

    def _chunk_node(
        self,
        node,
        spec: LanguageSpec,
        max_tokens: int,
        split_large: bool,
        context: str,
    ) -> list[Chunk]:
        target = unwrap(node, spec)
        kind = target.type
        text = node_text(node)
        first_line = text.split("\n", 1)[0]
        is_function = kind in spec.functions or declared_function(target, spec) is not None
        is_class = kind in spec.classes
        is_exported = node.type == "export_statement" or has_export_keyword(first_line)
        name = node_name(target, spec)

        attrs = dict(
            language=spec.name,
            name=name,
            is_function=is_function,
            is_class=is_class,
            is_exported=is_exported,
        )

        if not split_large or self._count(context + text) <= max_tokens:
            return [self._node_chunk(node, text, kind, context, **attrs)]

        if is_class:
            methods = _collect(target, spec.functions)
            if methods:
                chunks: list[Chunk] = []
                for method in methods:
                    chunks.extend(self._method_chunks(method, spec, name, max_tokens, context))
                return chunks

        return self._line_windows(
            text,
            first_line=node.start_point[0] + 1,
            first_byte=node.start_byte,
            budget=max_tokens,
            node_type=f"{kind}_partial",
            context=context,
            **attrs,
        )

    def _method_chunks(
        self,
        method,
        spec: LanguageSpec,
        parent_name: Optional[str],
        max_tokens: int,
        context: str,
    ) -> list[Chunk]:
        text = node_text(method)
        attrs = dict(
            language=spec.name,
            name=node_name(method, spec) or "anonymous",
            parent_name=parent_name,
            is_function=True,
            is_exported=has_export_keyword(text.split("\n", 1)[0]),
        )
        if self._count(context + text) <= max_tokens:
            return [self._node_chunk(method, text, method.type, context, **attrs)]
        return self._line_windows(
            text,
            first_line=method.start_point[0] + 1,
            first_byte=method.start_byte,
            budget=max_tokens,
            node_type=f"{method.type}_partial",
            context=context,
            **attrs,
        )

    def _node_chunk(self, node, text: str, kind: str, context: str, **attrs) -> Chunk:
        content = context + text
        return Chunk(
            content=content,
            token_count=self._count(content),
            start_line=node.start_point[0] + 1,
            end_line=node.end_point[0] + 1,
            start_byte=node.start_byte,
            end_byte=node.end_byte,
            node_type=kind,
            context=context,
            **attrs,
        )

    def _line_windows(
        self,
        text: str,
        first_line: int,
        first_byte: int,
        budget: int,
        node_type: str,
        context: str = "",
        **attrs,
    ) -> list[Chunk]:
        """
        Split *text* into windows of whole lines.

        Windows are contiguous and non-overlapping and together cover every
        line of *text*; a single line over budget becomes its own window.
        """
        budget = max(1, budget - self._count(context))
        lines = text.split("\n")
        chunks: list[Chunk] = []

        window: list[str] = []
        window_tokens = 0
        window_line = first_line
        window_byte = first_byte
        line_no = first_line
        byte_pos = first_byte

        def flush() -> None:
            body = "\n".join(window)
            content = context + body
            chunks.append(Chunk(
                content=content,
                token_count=self._count(content),
                start_line=window_line,
                end_line=window_line + len(window) - 1,
                start_byte=window_byte,
                end_byte=window_byte + len(body.encode("utf-8")),
                node_type=node_type,
                context=context,
                **attrs,
            ))

        for line in lines:
            line_tokens = self._count(line)
            if window and window_tokens + line_tokens > budget:
                flush()
                window = []
                window_tokens = 0
                window_line = line_no
                window_byte = byte_pos
            window.append(line)
            window_tokens += line_tokens
            line_no += 1
            byte_pos += len(line.encode("utf-8")) + 1

        if window:
            flush()
        return chunks


def _collect(node, kinds: frozenset[str]) -> list:
    """Outermost descendants of *node* whose kind is in *kinds*."""
    found = []
    stack = list(reversed(node.children))
    while stack:
        current = stack.pop()
        if current.type in kinds:
            found.append(current)
            continue
        stack.extend(reversed(current.children))
    return found
