"""
Test dimension hierarchies.

Covers the three definition routes (explicit, adjacency list, parent/child
table), the error taxonomy for malformed trees and the read-only queries.
"""

import pytest

from core.errors import DuplicateNameError, HierarchyError, HierarchyFrozenError, UnknownNodeError
from schema.hierarchy import HierarchyTree


def galway_explicit():
    tree = HierarchyTree.create_root("Connaught", ["Galway Total", "Mayo", "Leitrim"], name="County")
    tree.attach_children("Galway Total", ["Galway City", "Galway County"])
    return tree


def test_create_root_rejects_duplicates():
    with pytest.raises(DuplicateNameError):
        HierarchyTree.create_root("Connaught", ["Galway", "Mayo", "Galway"])

    with pytest.raises(DuplicateNameError):
        HierarchyTree.create_root("Connaught", ["Connaught"])


def test_attach_children_errors_leave_tree_unchanged():
    tree = HierarchyTree.create_root("Connaught", ["Galway", "Mayo"])

    with pytest.raises(UnknownNodeError):
        tree.attach_children("Munster", ["Cork"])

    with pytest.raises(DuplicateNameError):
        tree.attach_children("Galway", ["Galway City", "Mayo"])

    # Atomic: the valid child before the duplicate was not added
    assert "Galway City" not in tree
    assert len(tree) == 3


def test_three_definition_routes_agree(tmp_path):
    explicit = galway_explicit()
    adjacency = HierarchyTree.from_adjacency({
        "Connaught": ["Galway Total", "Mayo", "Leitrim"],
        "Galway Total": ["Galway City", "Galway County"],
    }, name="County")
    pairs = HierarchyTree.from_pairs([
        ("", "Connaught"),
        ("Connaught", "Galway Total"),
        ("Connaught", "Mayo"),
        ("Connaught", "Leitrim"),
        ("Galway Total", "Galway City"),
        ("Galway Total", "Galway County"),
    ], name="County")

    csv_path = tmp_path / "county.csv"
    csv_path.write_text(
        "parent,child\n"
        ",Connaught\n"
        "Connaught,Galway Total\n"
        "Connaught,Mayo\n"
        "Connaught,Leitrim\n"
        "Galway Total,Galway City\n"
        "Galway Total,Galway County\n",
        encoding="utf-8",
    )
    from_csv = HierarchyTree.from_csv(str(csv_path), name="County")

    for tree in (adjacency, pairs, from_csv):
        assert tree.to_adjacency() == explicit.to_adjacency()
        assert list(tree.display()) == list(explicit.display())
        assert tree.root_name == "Connaught"


def test_adjacency_requires_single_root():
    with pytest.raises(HierarchyError):
        HierarchyTree.from_adjacency({"A": ["x"], "B": ["y"]})


def test_adjacency_rejects_cycles():
    with pytest.raises(HierarchyError):
        HierarchyTree.from_adjacency({"Root": ["A"], "B": ["C"], "C": ["B"]})


def test_single_node_hierarchy_from_pairs():
    tree = HierarchyTree.from_pairs([("", "Total")])
    assert len(tree) == 1
    assert tree.is_leaf(tree.ROOT)
    assert tree.interior() == []


def test_display_is_restartable_preorder():
    tree = galway_explicit()
    view = tree.display()

    first = list(view)
    second = list(view)

    assert first == second
    assert first == [
        (0, "Connaught"),
        (1, "Galway Total"),
        (2, "Galway City"),
        (2, "Galway County"),
        (1, "Mayo"),
        (1, "Leitrim"),
    ]
    assert len(view) == 6


def test_is_ancestor():
    tree = galway_explicit()

    assert tree.is_ancestor("Connaught", "Galway City")
    assert tree.is_ancestor("Galway Total", "Galway County")
    assert not tree.is_ancestor("Galway City", "Galway Total")
    assert not tree.is_ancestor("Mayo", "Galway City")
    assert not tree.is_ancestor("Mayo", "Mayo")

    with pytest.raises(UnknownNodeError):
        tree.is_ancestor("Connaught", "Cork")


def test_traversal_orders():
    tree = galway_explicit()
    names = [tree.name_of(i) for i in tree.postorder()]

    # Children always precede their parent
    assert names.index("Galway City") < names.index("Galway Total")
    assert names.index("Galway Total") < names.index("Connaught")
    assert names[-1] == "Connaught"

    assert [tree.name_of(i) for i in tree.leaves()] == ["Galway City", "Galway County", "Mayo", "Leitrim"]
    assert [tree.name_of(i) for i in tree.interior()] == ["Connaught", "Galway Total"]

    node = tree.node("Galway Total")
    assert node.parent == "Connaught"
    assert node.children == ("Galway City", "Galway County")
    assert node.depth == 1
    assert not node.is_leaf


def test_frozen_tree_rejects_changes():
    tree = galway_explicit().freeze()

    assert tree.frozen
    with pytest.raises(HierarchyFrozenError):
        tree.attach_children("Mayo", ["Castlebar"])
