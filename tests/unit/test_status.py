"""Tests for effective status roll-up."""

import itertools

import pytest

from result_stream.builder import HierarchyBuilder
from result_stream.models.node import Status, TestNode
from result_stream.status import (
    DEFAULT_SEVERITY,
    StatusAggregator,
    check_severity_order,
    worst_status,
)
from result_stream.testing.factories import make_node


def _build(
    nodes: list[TestNode], aggregator: StatusAggregator | None = None
) -> tuple[HierarchyBuilder, StatusAggregator]:
    aggregator = aggregator or StatusAggregator()
    builder = HierarchyBuilder()
    builder.on_attach = lambda parent_id: aggregator.invalidate(parent_id, builder)
    for node in nodes:
        builder.add(node)
    return builder, aggregator


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([Status.PASSED, Status.FAILED, Status.SKIPPED], Status.FAILED),
        ([Status.PASSED, Status.ERRORED, Status.FAILED], Status.ERRORED),
        ([Status.UNKNOWN, Status.PASSED], Status.PASSED),
        ([Status.PENDING, Status.AMBIGUOUS], Status.AMBIGUOUS),
        ([], Status.UNDEFINED),
    ],
)
def test_worst_status(statuses: list[Status], expected: Status) -> None:
    """Picks the most severe status under the default ordering."""
    assert worst_status(statuses) is expected


def test_default_severity_ranks_every_status() -> None:
    """Ranks every status exactly once."""
    assert check_severity_order(DEFAULT_SEVERITY) == DEFAULT_SEVERITY


@pytest.mark.parametrize(
    "order",
    [
        DEFAULT_SEVERITY[:-1],
        DEFAULT_SEVERITY + (Status.PASSED,),
    ],
)
def test_incomplete_severity_order_is_rejected(order: tuple[Status, ...]) -> None:
    """Rejects orderings that omit or repeat a status."""
    with pytest.raises(ValueError, match="every status exactly once"):
        StatusAggregator(severity=order)


def test_container_takes_worst_child() -> None:
    """Rolls children up to their parent."""
    builder, aggregator = _build(
        [
            make_node("a", node_type="dir"),
            make_node("b", "a", result=Status.PASSED),
            make_node("c", "a", result=Status.FAILED),
        ]
    )

    assert aggregator.effective_status("a", builder) is Status.FAILED
    assert aggregator.effective_status("b", builder) is Status.PASSED


def test_explicit_result_overrides_children() -> None:
    """Uses a node's own result even when its children are worse."""
    builder, aggregator = _build(
        [
            make_node("s", result=Status.SKIPPED),
            make_node("t", "s", result=Status.ERRORED),
        ]
    )

    assert aggregator.effective_status("s", builder) is Status.SKIPPED


def test_childless_container_is_undefined() -> None:
    """Reports UNDEFINED for nodes without result or children."""
    builder, aggregator = _build([make_node("empty")])

    assert aggregator.effective_status("empty", builder) is Status.UNDEFINED


def test_new_child_invalidates_cached_ancestors() -> None:
    """Recomputes ancestors after a worse child arrives."""
    builder, aggregator = _build(
        [
            make_node("r"),
            make_node("d", "r"),
            make_node("ok", "d", result=Status.PASSED),
        ]
    )
    assert aggregator.effective_status("r", builder) is Status.PASSED

    builder.add(make_node("bad", "d", result=Status.FAILED))

    assert aggregator.effective_status("r", builder) is Status.FAILED


def test_frozen_children_use_their_frozen_status() -> None:
    """Reads the frozen status of released children."""
    builder, aggregator = _build([make_node("r"), make_node("c", "r")])
    builder.release({"c": Status.PENDING})
    aggregator.forget(["c"])

    assert aggregator.effective_status("r", builder) is Status.PENDING
    assert aggregator.effective_status("c", builder) is Status.PENDING


def test_custom_severity_order() -> None:
    """Ranks statuses by the configured ordering."""
    rest = tuple(status for status in DEFAULT_SEVERITY if status is not Status.SKIPPED)
    order = (Status.SKIPPED, *rest)
    builder, aggregator = _build(
        [
            make_node("a"),
            make_node("b", "a", result=Status.FAILED),
            make_node("c", "a", result=Status.SKIPPED),
        ],
        StatusAggregator(severity=order),
    )

    assert aggregator.effective_status("a", builder) is Status.SKIPPED
    assert aggregator.rank(Status.SKIPPED) == 0


def test_deep_hierarchy_does_not_recurse() -> None:
    """Evaluates hierarchies deeper than the recursion limit."""
    depth = 2000
    nodes = [make_node("n0")]
    nodes.extend(make_node(f"n{i}", f"n{i - 1}") for i in range(1, depth))
    nodes.append(make_node("leaf", f"n{depth - 1}", result=Status.AMBIGUOUS))
    builder, aggregator = _build(nodes)

    assert aggregator.effective_status("n0", builder) is Status.AMBIGUOUS


def test_status_is_independent_of_arrival_order() -> None:
    """Produces the same statuses for every arrival order."""
    nodes = [
        make_node("root"),
        make_node("f1", "root"),
        make_node("f2", "root"),
        make_node("t1", "f1", result=Status.PASSED),
        make_node("t2", "f2", result=Status.SKIPPED),
    ]
    expected = {"root": Status.SKIPPED, "f1": Status.PASSED, "f2": Status.SKIPPED}

    for order in itertools.permutations(nodes):
        builder, aggregator = _build(list(order))
        statuses = {
            node_id: aggregator.effective_status(node_id, builder) for node_id in expected
        }
        assert statuses == expected
