"""
Unit tests for codekb.local.graph_store
"""

from __future__ import annotations

import pytest


@pytest.fixture()
def store(tmp_path):
    from codekb.local.graph_store import CodeGraphStorage
    return CodeGraphStorage(str(tmp_path / "kb" / "graph.db"))


def _node(node_id, node_type="function", name=None, file_path="a.ts", **kwargs):
    from codekb.local.models import CodeNode
    return CodeNode(id=node_id, type=node_type, name=name or node_id.rsplit(":", 1)[-1],
                    file_path=file_path, **kwargs)


def _edge(src, edge_type, dst, **meta):
    from codekb.local.models import CodeEdge
    return CodeEdge.create(src, edge_type, dst, meta)


class TestNodes:
    def test_upsert_and_get(self, store):
        store.upsert_node(_node("a.ts:function:f", start_line=3, metadata={"is_exported": True}))
        node = store.get_node("a.ts:function:f")
        assert node is not None
        assert node.name == "f"
        assert node.start_line == 3
        assert node.metadata == {"is_exported": True}

    def test_upsert_is_idempotent(self, store):
        store.upsert_node(_node("a.ts:function:f", summary="old"))
        store.upsert_node(_node("a.ts:function:f", summary="new"))
        assert [n.summary for n in store.all_nodes()] == ["new"]

    def test_get_missing(self, store):
        assert store.get_node("nope") is None

    def test_by_path_type_and_name(self, store):
        store.upsert_node(_node("a.ts:module", "module", "a.ts", start_line=1))
        store.upsert_node(_node("a.ts:function:g", start_line=9))
        store.upsert_node(_node("a.ts:function:f", start_line=2))
        store.upsert_node(_node("b.ts:function:f", file_path="b.ts"))

        assert [n.id for n in store.get_nodes_by_path("a.ts")] == [
            "a.ts:module", "a.ts:function:f", "a.ts:function:g",
        ]
        assert [n.id for n in store.get_nodes_by_type("module")] == ["a.ts:module"]
        assert [n.id for n in store.find_nodes_by_name("f")] == ["a.ts:function:f", "b.ts:function:f"]
        assert store.find_nodes_by_name("f", "class") == []

    def test_delete_node(self, store):
        store.upsert_node(_node("a.ts:function:f"))
        assert store.delete_node("a.ts:function:f") is True
        assert store.delete_node("a.ts:function:f") is False


class TestEdges:
    def test_upsert_and_query(self, store):
        store.upsert_edge(_edge("a", "calls", "b", line=4))
        store.upsert_edge(_edge("a", "imports", "c"))
        store.upsert_edge(_edge("d", "calls", "b"))

        assert [e.to_node for e in store.get_edges_from("a")] == ["b", "c"]
        assert [e.to_node for e in store.get_edges_from("a", "calls")] == ["b"]
        assert [e.from_node for e in store.get_edges_to("b", "calls")] == ["a", "d"]
        assert store.get_edge("a:calls:b").metadata == {"line": 4}
        assert {e.id for e in store.get_connected_edges("b")} == {"a:calls:b", "d:calls:b"}

    def test_edge_upsert_keeps_one_row(self, store):
        store.upsert_edge(_edge("a", "calls", "b", line=1))
        store.upsert_edge(_edge("a", "calls", "b", line=2))
        edges = store.all_edges()
        assert len(edges) == 1
        assert edges[0].metadata == {"line": 2}

    def test_delete_edges_by_node_counts_both_directions(self, store):
        store.upsert_edge(_edge("a", "calls", "b"))
        store.upsert_edge(_edge("b", "calls", "c"))
        store.upsert_edge(_edge("c", "calls", "d"))
        assert store.delete_edges_by_node("b") == 2
        assert [e.id for e in store.all_edges()] == ["c:calls:d"]
        assert store.delete_edges_by_node("b") == 0

    def test_delete_outgoing_edges_only(self, store):
        store.upsert_edge(_edge("a.ts:module", "depends_on", "pkg:x"))
        store.upsert_edge(_edge("pkg:x", "calls", "c"))
        assert store.delete_edges_by_node("pkg:x", outgoing_only=True) == 1
        assert [e.id for e in store.all_edges()] == ["a.ts:module:depends_on:pkg:x"]


class TestMaintenance:
    def test_stats(self, store):
        store.upsert_node(_node("a.ts:module", "module"))
        store.upsert_node(_node("a.ts:function:f"))
        store.upsert_edge(_edge("a.ts:module", "depends_on", "pkg:x"))
        stats = store.stats()
        assert stats["node_count"] == 2
        assert stats["edge_count"] == 1
        assert stats["nodes_by_type"] == {"module": 1, "function": 1}
        assert stats["edges_by_type"] == {"depends_on": 1}

    def test_clear(self, store):
        store.upsert_node(_node("a.ts:function:f"))
        store.upsert_edge(_edge("a", "calls", "b"))
        store.clear()
        assert store.all_nodes() == []
        assert store.all_edges() == []
