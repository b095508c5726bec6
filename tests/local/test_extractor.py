"""
Unit tests for codekb.local.extractor

Chunks are produced by the real chunker (whitespace token counting) and
then handed to the extractor, the same way the scanner wires them.
"""

from __future__ import annotations

import textwrap
from unittest.mock import MagicMock

import pytest


def _words(text: str) -> int:
    return len(text.split())


def _extract(code, path, max_tokens=512, known_paths=None, path_aliases=None):
    from codekb.local.chunker import StructuralChunker
    from codekb.local.extractor import GraphExtractor

    chunks = StructuralChunker(token_counter=_words).chunk_file(
        textwrap.dedent(code), path, max_tokens=max_tokens)
    return GraphExtractor().extract_from_file(
        path, chunks,
        file_content=textwrap.dedent(code),
        known_paths=known_paths,
        path_aliases=path_aliases,
    )


def _edges(result, edge_type):
    return sorted((e.from_node, e.to_node) for e in result.edges if e.edge_type == edge_type)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class TestNodes:
    def test_module_and_function_nodes(self):
        result = _extract("""\
            export function a() {
              return b();
            }

            function b() {
              return 1;
            }
        """, "src/f.ts")

        by_id = {n.id: n for n in result.nodes}
        assert set(by_id) == {"src/f.ts:module", "src/f.ts:function:a", "src/f.ts:function:b"}

        module = by_id["src/f.ts:module"]
        assert module.type == "module"
        assert module.name == "f.ts"
        assert module.metadata["exported_symbols"] == ["a"]

        a = by_id["src/f.ts:function:a"]
        assert a.signature == "export function a() {"
        assert a.start_line == 1 and a.end_line == 3
        assert a.metadata["is_exported"] is True
        assert by_id["src/f.ts:function:b"].metadata["is_exported"] is False
        assert set(result.chunk_by_node) == {"src/f.ts:function:a", "src/f.ts:function:b"}

    def test_vector_ids_follow_identity_name(self):
        from codekb.local.models import make_vector_id
        result = _extract("function a() {}\n", "src/f.ts")
        node = next(n for n in result.nodes if n.name == "a")
        assert node.vector_id == make_vector_id("src/f.ts", "a")

    def test_interface_node(self):
        result = _extract("""\
            export interface Pet {
              name: string;
            }
        """, "src/pet.ts")
        assert "src/pet.ts:interface:Pet" in {n.id for n in result.nodes}

    def test_go_interface_hint_and_export_convention(self):
        result = _extract("""\
            package io

            type Reader interface {
            \tRead() error
            }

            func helper() {}
        """, "io/reader.go")
        by_id = {n.id: n for n in result.nodes}
        assert by_id["io/reader.go:interface:Reader"].metadata["is_exported"] is True
        assert by_id["io/reader.go:function:helper"].metadata["is_exported"] is False

    def test_keyword_inside_string_is_not_an_export(self):
        result = _extract('function label() { return "export public"; }\n', "src/f.ts")
        node = next(n for n in result.nodes if n.type == "function")
        assert node.metadata["is_exported"] is False

    def test_python_private_names_are_not_exported(self):
        result = _extract("""\
            def public():
                pass

            def _private():
                pass
        """, "mod.py")
        exported = {n.name: n.metadata["is_exported"] for n in result.nodes if n.type == "function"}
        assert exported == {"public": True, "_private": False}

    def test_split_methods_are_qualified_by_class(self):
        result = _extract("""\
            class Dog {
              speak() {
                return this.bark();
              }
              bark() {
                return "woof";
              }
            }
        """, "src/dog.ts", max_tokens=8)

        ids = {n.id for n in result.nodes}
        assert "src/dog.ts:function:Dog.speak" in ids
        assert "src/dog.ts:function:Dog.bark" in ids
        speak = next(n for n in result.nodes if n.id == "src/dog.ts:function:Dog.speak")
        assert speak.name == "speak"
        assert speak.metadata["parent_name"] == "Dog"
        # the method header is not a call to itself
        targets = {e.to_node for e in result.edges if e.from_node == speak.id}
        assert not any(t.endswith(":speak") or t.endswith(".speak") for t in targets)

    def test_non_declaration_chunks_yield_nothing(self):
        from codekb.local.extractor import GraphExtractor
        from codekb.local.models import Chunk
        chunk = Chunk(content="x = 1", token_count=3, start_line=1, end_line=1,
                      start_byte=0, end_byte=5, language="python", node_type="lines")
        assert GraphExtractor().extract_from_chunk(chunk, "a.py") == ([], [])

    def test_parse_failure_yields_nothing(self):
        from codekb.local.extractor import GraphExtractor
        from codekb.local.models import Chunk
        pool = MagicMock()
        pool.parse.side_effect = RuntimeError("boom")
        chunk = Chunk(content="function a() {}", token_count=3, start_line=1, end_line=1,
                      start_byte=0, end_byte=15, language="typescript",
                      node_type="function_declaration", name="a", is_function=True)
        assert GraphExtractor(pool).extract_from_chunk(chunk, "a.ts") == ([], [])


# ---------------------------------------------------------------------------
# Relationship edges
# ---------------------------------------------------------------------------

class TestRelationships:
    def test_call_edge_is_resolved_within_file(self):
        from codekb.local.models import make_edge_id
        result = _extract("""\
            function a() {
              return b();
            }

            function b() {
              return 1;
            }
        """, "src/f.ts")

        calls = [e for e in result.edges if e.edge_type == "calls"]
        assert len(calls) == 1
        edge = calls[0]
        assert edge.id == make_edge_id("src/f.ts:function:a", "calls", "src/f.ts:function:b")
        assert edge.metadata["resolved"] is True
        assert edge.metadata["target_name"] == "b"
        assert edge.metadata["line"] == 2

    def test_unknown_callee_is_speculative(self):
        result = _extract("function a() {\n  return log.info(x);\n}\n", "src/f.ts")
        (edge,) = [e for e in result.edges if e.edge_type == "calls"]
        assert edge.to_node == "src/f.ts:function:info"
        assert edge.metadata["resolved"] is False

    def test_repeated_calls_produce_one_edge(self):
        result = _extract("function a() {\n  b();\n  b();\n}\nfunction b() {}\n", "src/f.ts")
        assert _edges(result, "calls") == [("src/f.ts:function:a", "src/f.ts:function:b")]

    def test_typescript_heritage(self):
        result = _extract("""\
            export class Dog extends Animal implements Pet {
              speak() {
                return this.bark();
              }
            }
        """, "src/dog.ts")

        dog = "src/dog.ts:class:Dog"
        assert _edges(result, "extends") == [(dog, "src/dog.ts:class:Animal")]
        assert _edges(result, "implements") == [(dog, "src/dog.ts:interface:Pet")]
        assert (dog, "src/dog.ts:function:bark") in _edges(result, "calls")

    def test_interface_extends_interface(self):
        result = _extract("interface B extends A {\n  x: number;\n}\n", "src/t.ts")
        assert _edges(result, "extends") == [("src/t.ts:interface:B", "src/t.ts:interface:A")]

    def test_python_bases(self):
        result = _extract("""\
            class Foo(Base, mixins.Loggable):
                def run(self):
                    helper()
        """, "pkg/foo.py")
        assert _edges(result, "extends") == [
            ("pkg/foo.py:class:Foo", "pkg/foo.py:class:Base"),
            ("pkg/foo.py:class:Foo", "pkg/foo.py:class:Loggable"),
        ]
        assert ("pkg/foo.py:class:Foo", "pkg/foo.py:function:helper") in _edges(result, "calls")

    def test_rust_trait_impl(self):
        result = _extract("""\
            impl Display for Point {
                fn fmt(&self) {}
            }
        """, "src/point.rs")
        assert _edges(result, "implements") == [
            ("src/point.rs:class:Point", "src/point.rs:interface:Display"),
        ]


# ---------------------------------------------------------------------------
# Import edges
# ---------------------------------------------------------------------------

class TestImportEdges:
    def test_external_packages_become_depends_on(self):
        result = _extract("""\
            import express from "express";
            import { Client } from "@scope/sdk/client";

            export function start() {}
        """, "src/app.ts")

        deps = {e.to_node: e for e in result.edges if e.edge_type == "depends_on"}
        assert set(deps) == {"pkg:express", "pkg:@scope/sdk"}
        assert deps["pkg:express"].from_node == "src/app.ts:module"
        assert deps["pkg:@scope/sdk"].metadata["imported_symbols"] == ["Client"]
        assert deps["pkg:@scope/sdk"].metadata["import_path"] == "@scope/sdk/client"

    def test_relative_import_targets_module_id(self):
        result = _extract('import { helper } from "./utils";\nhelper();\n', "/p/src/app.ts")
        (edge,) = [e for e in result.edges if e.edge_type == "imports"]
        assert edge.from_node == "/p/src/app.ts:module"
        assert edge.to_node == "/p/src/utils.ts:module"
        assert edge.metadata["resolved"] is False
        assert edge.metadata["imported_symbols"] == ["helper"]

    def test_known_paths_resolve_import(self):
        result = _extract('import x from "./lib";\n', "src/app.ts",
                          known_paths={"src/lib/index.ts"})
        (edge,) = [e for e in result.edges if e.edge_type == "imports"]
        assert edge.to_node == "src/lib/index.ts:module"
        assert edge.metadata["resolved"] is True

    def test_same_source_imports_merge_symbols(self):
        result = _extract('import { a } from "./m";\nimport { b } from "./m";\n', "src/x.ts")
        (edge,) = [e for e in result.edges if e.edge_type == "imports"]
        assert edge.metadata["imported_symbols"] == ["a", "b"]

    def test_python_imports(self):
        result = _extract("""\
            from __future__ import annotations
            import os
            from .models import Node

            def run():
                pass
        """, "pkg/run.py")
        assert _edges(result, "depends_on") == [("pkg/run.py:module", "pkg:os")]
        assert _edges(result, "imports") == [("pkg/run.py:module", "pkg/models.py:module")]

    def test_import_lines_are_file_lines(self):
        result = _extract("""\
            // entry point
            import lodash from "lodash";

            const limit = 10;

            import { helper } from "./utils";

            export function start() {}
        """, "src/app.ts")
        lines = {e.to_node: e.metadata["line"] for e in result.edges
                 if e.edge_type in ("imports", "depends_on")}
        assert lines == {"pkg:lodash": 2, "src/utils.ts:module": 6}

    def test_import_lines_without_file_content(self):
        from codekb.local.chunker import StructuralChunker
        from codekb.local.extractor import GraphExtractor
        code = '\n\nimport os\nimport sys\n\ndef run():\n    pass\n'
        chunks = StructuralChunker(token_counter=_words).chunk_file(code, "pkg/run.py")
        result = GraphExtractor().extract_from_file("pkg/run.py", chunks)
        lines = {e.to_node: e.metadata["line"] for e in result.edges if e.edge_type == "depends_on"}
        assert lines == {"pkg:os": 3, "pkg:sys": 4}

    def test_rust_root_imports_are_internal(self):
        result = _extract("""\
            use super::{Alpha, Beta};
            use crate::*;

            fn run() {}
        """, "src/a/b.rs")
        assert _edges(result, "depends_on") == []
        assert _edges(result, "imports") == [
            ("src/a/b.rs:module", "src/a.rs:module"),
            ("src/a/b.rs:module", "src/lib.rs:module"),
        ]


# ---------------------------------------------------------------------------
# Package manifests
# ---------------------------------------------------------------------------

class TestPackageManifest:
    def test_dependencies(self):
        from codekb.local.extractor import extract_package_nodes, is_package_manifest
        content = """{
            "dependencies": {"express": "^4.18.0"},
            "devDependencies": {"jest": "29.0.0", "express": "5"},
            "peerDependencies": {"react": ">=18"}
        }"""
        assert is_package_manifest("web/package.json")
        nodes = {n.id: n for n in extract_package_nodes("web/package.json", content)}
        assert set(nodes) == {"pkg:express", "pkg:jest", "pkg:react"}
        assert nodes["pkg:express"].signature == "express@^4.18.0"
        assert nodes["pkg:express"].metadata["is_dev_dependency"] is False
        assert nodes["pkg:jest"].metadata["is_dev_dependency"] is True
        assert nodes["pkg:react"].metadata["is_peer_dependency"] is True
        assert nodes["pkg:react"].type == "package"

    def test_invalid_json(self):
        from codekb.local.extractor import extract_package_nodes
        assert extract_package_nodes("package.json", "{not json") == []
        assert extract_package_nodes("package.json", "[]") == []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestSignature:
    @pytest.mark.parametrize("source, expected", [
        ("// comment\nfunction a() {}", "function a() {}"),
        ("@decorator\ndef f():\n    pass", "def f():"),
        ("\n\n  class A:", "class A:"),
        ("# only a comment", ""),
    ])
    def test_extract_signature(self, source, expected):
        from codekb.local.extractor import extract_signature
        assert extract_signature(source) == expected
