"""Tests for hierarchy reconstruction."""

import pytest

from result_stream.builder import HierarchyBuilder
from result_stream.errors import CycleError, LateAttachError, NotFound, ValidationError
from result_stream.models.diagnostics import RejectedEdge
from result_stream.models.node import Status
from result_stream.testing.factories import make_node


@pytest.fixture
def builder() -> HierarchyBuilder:
    """Create an empty builder."""
    return HierarchyBuilder()


def test_attaches_children_in_arrival_order(builder: HierarchyBuilder) -> None:
    """Wires children under their parent in the order they arrive."""
    for node in (make_node("a"), make_node("b", "a"), make_node("c", "a")):
        builder.add(node)

    assert builder.roots() == ("a",)
    assert builder.children_ids("a") == ("b", "c")
    assert builder.parent_id("c") == "a"
    assert list(builder.reachable()) == ["a", "b", "c"]


def test_child_waits_for_parent(builder: HierarchyBuilder) -> None:
    """Holds a child until its parent arrives, then attaches it."""
    builder.add(make_node("c", "p"))

    assert builder.pending_count() == 1
    assert builder.is_awaited("p")
    assert not builder.is_attached("c")
    assert builder.orphans().missing_parents == {"p": ("c",)}

    builder.add(make_node("p"))

    assert builder.pending_count() == 0
    assert builder.is_attached("c")
    assert builder.children_ids("p") == ("c",)
    assert not builder.orphans()


def test_pending_children_keep_arrival_order(builder: HierarchyBuilder) -> None:
    """Attaches waiting children in arrival order, ahead of later ones."""
    builder.add(make_node("c2", "p"))
    builder.add(make_node("c1", "p"))
    builder.add(make_node("p"))
    builder.add(make_node("c3", "p"))

    assert builder.children_ids("p") == ("c2", "c1", "c3")


def test_unresolved_parent_reports_orphan(builder: HierarchyBuilder) -> None:
    """Reports nodes whose parent never arrived, with their descendants."""
    builder.add(make_node("a"))
    builder.add(make_node("y", "z"))
    builder.add(make_node("y1", "y"))

    orphans = builder.orphans()

    assert orphans.missing_parents == {"z": ("y",)}
    assert orphans.node_ids == ["y"]
    assert orphans.detached == ("y1",)
    assert list(builder.reachable()) == ["a"]


def test_duplicate_id_is_rejected(builder: HierarchyBuilder) -> None:
    """Refuses a second record with the same id."""
    builder.add(make_node("a"))

    with pytest.raises(ValidationError, match="duplicate node id 'a'"):
        builder.add(make_node("a", node_type="other"))

    assert builder.get("a").type == "test"


def test_self_parent_is_a_cycle(builder: HierarchyBuilder) -> None:
    """Refuses a node that declares itself as parent."""
    with pytest.raises(CycleError) as exc_info:
        builder.add(make_node("x", "x"))

    assert exc_info.value.node_id == "x"
    assert builder.rejected_edges() == (
        RejectedEdge(node_id="x", parent_id="x", reason="cycle"),
    )
    assert builder.orphans().rejected == ("x",)


def test_mutual_parents_are_a_cycle(builder: HierarchyBuilder) -> None:
    """Refuses the edge that would close a two-node cycle."""
    builder.add(make_node("a", "b"))

    with pytest.raises(CycleError) as exc_info:
        builder.add(make_node("b", "a"))

    assert (exc_info.value.node_id, exc_info.value.parent_id) == ("a", "b")
    assert builder.parent_id("b") == "a"
    assert not builder.is_attached("a")
    orphans = builder.orphans()
    assert orphans.rejected == ("a",)
    assert orphans.detached == ("b",)
    assert list(builder.reachable()) == []


def test_late_attach_is_rejected(builder: HierarchyBuilder) -> None:
    """Refuses children of a released parent."""
    builder.add(make_node("a"))
    builder.release({"a": Status.PASSED})

    with pytest.raises(LateAttachError):
        builder.add(make_node("b", "a"))

    assert builder.rejected_edges()[0].reason == "late-attach"
    assert "b" in builder
    assert not builder.is_attached("b")


def test_release_keeps_ids_and_statuses(builder: HierarchyBuilder) -> None:
    """Drops node storage but remembers finalized ids."""
    builder.add(make_node("a"))
    builder.add(make_node("b", "a"))

    builder.release({"b": Status.FAILED})

    assert "b" not in builder
    assert builder.is_finalized("b")
    assert builder.frozen_status("b") is Status.FAILED
    assert builder.children_ids("a") == ("b",)
    with pytest.raises(NotFound):
        builder.get("b")
    with pytest.raises(ValidationError, match="duplicate"):
        builder.add(make_node("b", "a"))


def test_abandon_orphans_waiting_children(builder: HierarchyBuilder) -> None:
    """Closes an unseen parent id and reports its waiting children."""
    builder.add(make_node("c", "ghost"))

    assert builder.abandon("ghost") == ("c",)

    assert not builder.is_awaited("ghost")
    assert builder.orphans().missing_parents == {"ghost": ("c",)}
    with pytest.raises(LateAttachError):
        builder.add(make_node("d", "ghost"))


def test_iter_subtree_is_pre_order(builder: HierarchyBuilder) -> None:
    """Yields a node before its children, children in arrival order."""
    for node in (
        make_node("r"),
        make_node("x", "r"),
        make_node("x1", "x"),
        make_node("y", "r"),
    ):
        builder.add(node)

    assert list(builder.iter_subtree("r")) == ["r", "x", "x1", "y"]


def test_on_attach_reports_parents() -> None:
    """Calls the attach hook with the parent of every new edge."""
    attached: list[str] = []
    builder = HierarchyBuilder(on_attach=attached.append)

    builder.add(make_node("c", "p"))
    builder.add(make_node("p"))
    builder.add(make_node("d", "p"))

    assert attached == ["p", "p"]


def test_parent_after_finalized_child_lists_it_without_wiring() -> None:
    """Lists a child finalized while pending, but records no edge for it."""
    attached: list[str] = []
    builder = HierarchyBuilder(on_attach=attached.append)
    builder.add(make_node("c", "p"))
    builder.release({"c": Status.PASSED})

    builder.add(make_node("p"))

    assert builder.children_ids("p") == ("c",)
    assert builder.parent_id("c") is None
    assert not builder.is_attached("c")
    assert builder.pending_count() == 0
    assert attached == []

    builder.release({"p": Status.PASSED})

    assert builder.parent_id("c") is None
    assert builder.frozen_status("c") is Status.PASSED


def test_unknown_node_raises_not_found(builder: HierarchyBuilder) -> None:
    """Raises NotFound, which is also a KeyError, for unknown ids."""
    with pytest.raises(NotFound, match="'missing'"):
        builder.get("missing")
    with pytest.raises(KeyError):
        builder.children_ids("missing")
