"""
Unit tests for codekb.local.models
"""

from __future__ import annotations

import hashlib


class TestIdentity:
    def test_vector_id_format(self):
        from codekb.local.models import make_vector_id
        expected = "code_" + hashlib.sha256(b"src/app.ts:start").hexdigest()[:16]
        assert make_vector_id("src/app.ts", "start") == expected

    def test_vector_id_is_stable_and_distinct(self):
        from codekb.local.models import make_vector_id
        assert make_vector_id("a.ts", "f") == make_vector_id("a.ts", "f")
        assert make_vector_id("a.ts", "f") != make_vector_id("b.ts", "f")
        assert make_vector_id("a.ts", "f") != make_vector_id("a.ts", "g")

    def test_node_and_edge_ids(self):
        from codekb.local.models import make_edge_id, make_node_id, module_id, package_id
        assert make_node_id("a.ts", "function", "f") == "a.ts:function:f"
        assert module_id("a.ts") == "a.ts:module"
        assert package_id("@scope/sdk") == "pkg:@scope/sdk"
        assert make_edge_id("x", "calls", "y") == "x:calls:y"

    def test_method_identity_uses_parent(self):
        from codekb.local.models import CodeNode, make_vector_id
        node = CodeNode(id="a.ts:function:Dog.bark", type="function", name="bark",
                        file_path="a.ts", metadata={"parent_name": "Dog"})
        assert node.identity_name == "Dog.bark"
        assert node.vector_id == make_vector_id("a.ts", "Dog.bark")

    def test_edge_create_copies_metadata(self):
        from codekb.local.models import CodeEdge
        meta = {"line": 3}
        edge = CodeEdge.create("a", "calls", "b", meta)
        meta["line"] = 99
        assert edge.id == "a:calls:b"
        assert edge.metadata == {"line": 3}


class TestChunk:
    def _chunk(self, **kwargs):
        from codekb.local.models import Chunk
        defaults = dict(content="def f(): pass", token_count=3, start_line=1, end_line=1,
                        start_byte=0, end_byte=13, language="python",
                        node_type="function_definition", name="f")
        defaults.update(kwargs)
        return Chunk(**defaults)

    def test_source_strips_context(self):
        chunk = self._chunk(content="import os\n\ndef f(): pass", context="import os\n\n")
        assert chunk.source == "def f(): pass"

    def test_source_without_context(self):
        assert self._chunk().source == "def f(): pass"

    def test_qualified_name(self):
        assert self._chunk(parent_name="A").qualified_name == "A.f"
        assert self._chunk().qualified_name == "f"

    def test_base_kind(self):
        assert self._chunk(node_type="function_definition_partial").base_kind == "function_definition"


class TestResults:
    def test_scan_result_ok(self):
        from codekb.local.models import IncrementalScanResult
        result = IncrementalScanResult()
        assert result.ok
        result.failures["a.ts"] = "boom"
        assert not result.ok

    def test_stats_to_dict(self):
        from codekb.local.models import ScanStats
        stats = ScanStats(nodes_added=2)
        data = stats.to_dict()
        assert data["nodes_added"] == 2
        assert data["embeddings_deleted"] == 0
