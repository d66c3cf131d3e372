"""Tests for NodeStore snapshots and the AX -> main correlation index."""

import pytest

from layout_inspector.tree.store import CorrelationMapping, NodeStore
from layout_inspector.tree.views import Node, NodeNotLoadedError, TreeKind
from tests.inspector_helpers import make_node


@pytest.fixture
def store():
    return NodeStore(TreeKind.MAIN, CorrelationMapping())


class TestNodeStoreUpdate:
    def test_update_publishes_new_snapshot(self, store):
        before = store.snapshot
        after = store.update([make_node("a")])

        assert after is store.snapshot
        assert after is not before
        assert "a" not in before
        assert "a" in after

    def test_old_snapshot_is_unchanged_by_later_merges(self, store):
        store.update([make_node("a", ["b"])])
        held = store.snapshot

        store.update([{"id": "a", "expanded": True}])

        assert held.get("a").expanded is False
        assert store.get("a").expanded is True

    def test_empty_update_keeps_snapshot(self, store):
        snapshot = store.snapshot
        assert store.update([]) is snapshot

    def test_later_record_in_batch_wins(self, store):
        store.update([make_node("a", name="First"), {"id": "a", "name": "Second"}])
        assert store.require("a").name == "Second"

    def test_published_nodes_cannot_be_mutated(self, store):
        store.update([make_node("a")])
        with pytest.raises(TypeError):
            store.snapshot.nodes["b"] = Node(id="b")

    def test_expand_all_marks_each_node(self, store):
        store.update([make_node("a"), make_node("b")])
        store.expand_all(["a", "b"])
        assert store.require("a").expanded and store.require("b").expanded

    def test_set_expanded_keeps_children(self, store):
        store.update([make_node("a", ["b"])])
        store.set_expanded("a", True)
        store.set_expanded("a", False)
        node = store.require("a")
        assert node.expanded is False
        assert node.children == ("b",)


class TestNodeStoreAccess:
    def test_require_raises_for_unloaded_node(self, store):
        with pytest.raises(NodeNotLoadedError) as exc_info:
            store.require("ghost")
        assert exc_info.value.node_id == "ghost"

    def test_iteration_and_loaded_ids(self, store):
        store.update([make_node("a"), make_node("b")])
        assert list(store) == ["a", "b"]
        assert store.loaded_ids() == ["a", "b"]
        assert len(store) == 2

    def test_root_is_set_once(self, store):
        store.set_root("root")
        store.set_root("other")
        assert store.root == "root"

    def test_set_root_keeps_loaded_nodes(self, store):
        store.update([make_node("root")])
        store.set_root("root")
        assert "root" in store


class TestCorrelationMapping:
    def test_main_store_records_links(self, store):
        store.update([make_node("m1", linkedAXNode="a1")])
        assert store.correlation.get("a1") == "m1"

    def test_first_writer_wins(self):
        mapping = CorrelationMapping()
        assert mapping.observe(Node.from_payload(make_node("m1", linkedAXNode="a1"))) is True
        assert mapping.observe(Node.from_payload(make_node("m2", linkedAXNode="a1"))) is False
        assert mapping.get("a1") == "m1"
        assert mapping.as_dict() == {"a1": "m1"}

    def test_unlinked_nodes_are_ignored(self):
        mapping = CorrelationMapping()
        assert mapping.observe(Node(id="m1")) is False
        assert len(mapping) == 0
        assert "m1" not in mapping

    def test_ax_store_has_no_mapping(self):
        store = NodeStore(TreeKind.AX)
        store.update([make_node("a1", linkedAXNode="x")])
        assert store.correlation is None
