"""
Unit tests for codekb.local.chunker

Token budgets are counted in whitespace-separated words so the expected
window boundaries can be worked out by hand.
"""

from __future__ import annotations

import textwrap

import pytest


def _words(text: str) -> int:
    return len(text.split())


@pytest.fixture()
def chunker():
    from codekb.local.chunker import StructuralChunker
    return StructuralChunker(token_counter=_words)


TS_HANDLER = textwrap.dedent("""\
    import { Request } from "express";

    export function handler(req: Request) {
      return req.body;
    }
""")

PY_BIG = textwrap.dedent("""\
    def big(a, b):
        x = a + b
        y = x * 2
        z = y - 1
        w = z / 3
        return w
""")

PY_CLASS = textwrap.dedent("""\
    class Greeter:
        def hello(self):
            return "hi"

        def bye(self):
            return "bye"
""")


# ---------------------------------------------------------------------------
# Declaration chunks
# ---------------------------------------------------------------------------

class TestDeclarations:
    def test_imports_and_exported_function(self, chunker):
        chunks = chunker.chunk_file(TS_HANDLER, "src/handler.ts")
        assert [c.node_type for c in chunks] == ["imports", "function_declaration"]

        imports, func = chunks
        assert imports.is_import
        assert imports.start_line == 1
        assert func.name == "handler"
        assert func.is_function
        assert func.is_exported
        assert func.language == "typescript"
        assert func.start_line == 3
        assert func.end_line == 5

    def test_include_imports_inlines_context(self, chunker):
        chunks = chunker.chunk_file(TS_HANDLER, "src/handler.ts", include_imports=True)
        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.content.startswith('import { Request } from "express";')
        assert chunk.source.startswith("export function handler")
        assert not chunk.is_import

    def test_arrow_function_declaration(self, chunker):
        code = "export const add = (a: number, b: number) => a + b;\n"
        chunks = chunker.chunk_file(code, "src/math.ts")
        assert len(chunks) == 1
        assert chunks[0].name == "add"
        assert chunks[0].is_function
        assert chunks[0].is_exported

    def test_decorated_python_function_starts_at_decorator(self, chunker):
        code = '@app.route("/")\ndef index():\n    return 1\n'
        chunks = chunker.chunk_file(code, "app.py")
        assert len(chunks) == 1
        assert chunks[0].name == "index"
        assert chunks[0].is_function
        assert chunks[0].start_line == 1

    def test_go_function(self, chunker):
        code = 'package main\n\nimport "fmt"\n\nfunc Hello() {\n\tfmt.Println("hi")\n}\n'
        chunks = chunker.chunk_file(code, "main.go")
        assert [c.node_type for c in chunks] == ["imports", "function_declaration"]
        assert chunks[1].name == "Hello"

    def test_extension_override(self, chunker):
        chunks = chunker.chunk_file("function f() {}\n", "lib/f.es6",
                                    extension_overrides={".es6": "javascript"})
        assert chunks[0].language == "javascript"
        assert chunks[0].name == "f"


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

class TestSplitting:
    def test_large_function_becomes_line_windows(self, chunker):
        chunks = chunker.chunk_file(PY_BIG, "calc.py", max_tokens=10)

        assert len(chunks) == 3
        assert {c.node_type for c in chunks} == {"function_definition_partial"}
        assert {c.name for c in chunks} == {"big"}
        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 2), (3, 4), (5, 6)]
        for chunk in chunks:
            assert chunk.token_count <= 10

    def test_windows_are_contiguous_and_cover_the_source(self, chunker):
        chunks = chunker.chunk_file(PY_BIG, "calc.py", max_tokens=10)
        data = PY_BIG.encode("utf-8")
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_line == prev.end_line + 1
        for chunk in chunks:
            assert data[chunk.start_byte:chunk.end_byte].decode("utf-8") == chunk.content
        assert "\n".join(c.content for c in chunks) == PY_BIG.rstrip("\n")

    def test_large_class_splits_by_method(self, chunker):
        chunks = chunker.chunk_file(PY_CLASS, "greeter.py", max_tokens=6)
        assert [c.name for c in chunks] == ["hello", "bye"]
        assert {c.parent_name for c in chunks} == {"Greeter"}
        assert all(c.is_function for c in chunks)
        assert chunks[0].qualified_name == "Greeter.hello"

    def test_split_large_disabled(self, chunker):
        chunks = chunker.chunk_file(PY_BIG, "calc.py", max_tokens=10, split_large=False)
        assert len(chunks) == 1
        assert chunks[0].node_type == "function_definition"
        assert chunks[0].token_count > 10

    def test_base_kind_strips_partial_suffix(self, chunker):
        chunks = chunker.chunk_file(PY_BIG, "calc.py", max_tokens=10)
        assert chunks[0].base_kind == "function_definition"


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------

class TestFallbacks:
    def test_unknown_language_chunks_by_lines(self, chunker):
        chunks = chunker.chunk_file("alpha beta\ngamma\n", "notes.txt")
        assert len(chunks) == 1
        assert chunks[0].node_type == "lines"
        assert chunks[0].language is None
        assert chunks[0].start_line == 1

    def test_line_windows_respect_budget(self, chunker):
        text = "\n".join(f"word{i} word" for i in range(6))
        chunks = chunker.chunk_lines(text, max_tokens=4)
        assert [c.token_count for c in chunks] == [4, 4, 4]
        assert [c.start_line for c in chunks] == [1, 3, 5]

    def test_empty_input(self, chunker):
        assert chunker.chunk_file("", "empty.ts") == []
        assert chunker.chunk_file("   \n", "notes.txt") == []

    def test_parse_failure_falls_back_to_lines(self):
        from unittest.mock import MagicMock
        from codekb.local.chunker import StructuralChunker

        pool = MagicMock()
        pool.parse.side_effect = RuntimeError("grammar missing")
        chunks = StructuralChunker(pool, token_counter=_words).chunk_file(
            "const a = 1;\n", "a.ts")
        assert [c.node_type for c in chunks] == ["lines"]
