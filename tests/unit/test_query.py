"""Tests for the read-only query view."""

import pytest

from result_stream.builder import HierarchyBuilder
from result_stream.errors import NotFound
from result_stream.finalizer import Finalizer
from result_stream.models.node import Attachment, ContentEncoding, Status
from result_stream.query import QueryView
from result_stream.status import StatusAggregator
from result_stream.testing.factories import AttachmentFactory, make_node


@pytest.fixture
def aggregator() -> StatusAggregator:
    """Create an aggregator with the default ordering."""
    return StatusAggregator()


@pytest.fixture
def builder(aggregator: StatusAggregator) -> HierarchyBuilder:
    """Create a builder holding a small feature hierarchy."""
    builder = HierarchyBuilder()
    builder.on_attach = lambda parent_id: aggregator.invalidate(parent_id, builder)
    for node in (
        make_node("feature", node_type="feature", tags=("@checkout",)),
        make_node("s1", "feature", node_type="scenario", tags=("@smoke",)),
        make_node(
            "step1",
            "s1",
            result=Status.PASSED,
            node_type="step",
            attachments=(
                Attachment(
                    body="aGVsbG8=",
                    content_encoding=ContentEncoding.BASE64,
                    media_type="text/plain",
                ),
            ),
        ),
        make_node("s2", "feature", node_type="scenario", tags=("@smoke", "@slow")),
        make_node("step2", "s2", result=Status.FAILED, node_type="step"),
    ):
        builder.add(node)
    return builder


@pytest.fixture
def view(builder: HierarchyBuilder, aggregator: StatusAggregator) -> QueryView:
    """Create a view over the builder."""
    return QueryView(builder=builder, aggregator=aggregator)


def test_navigation(view: QueryView) -> None:
    """Navigates roots, children and ancestors."""
    assert [node.id for node in view.roots()] == ["feature"]
    assert [node.id for node in view.children("feature")] == ["s1", "s2"]
    assert [node.id for node in view.ancestors("step2")] == ["feature", "s2"]
    assert view.ancestors("feature") == []
    assert view.get("s1").type == "scenario"
    assert "step1" in view
    assert "nope" not in view


def test_unknown_node_raises_not_found(view: QueryView) -> None:
    """Raises NotFound for ids that were never materialized."""
    with pytest.raises(NotFound):
        view.get("nope")
    with pytest.raises(NotFound):
        view.effective_status("nope")


def test_effective_status_is_live(view: QueryView, builder: HierarchyBuilder) -> None:
    """Reflects children that arrive after an earlier query."""
    assert view.effective_status("s1") is Status.PASSED

    builder.add(make_node("step3", "s1", result=Status.ERRORED, node_type="step"))

    assert view.effective_status("s1") is Status.ERRORED
    assert view.effective_status("feature") is Status.ERRORED


def test_by_tag_resolves_ancestry(view: QueryView) -> None:
    """Finds tagged nodes and exposes their path for display."""
    matches = list(view.by_tag("@smoke"))

    assert [match.node.id for match in matches] == ["s1", "s2"]
    assert matches[1].path() == ["FEATURE", "S2"]
    assert [node.id for node in matches[0].ancestors()] == ["feature"]


def test_by_type(view: QueryView) -> None:
    """Finds nodes of a given type."""
    assert [match.node.id for match in view.by_type("step")] == ["step1", "step2"]
    assert list(view.by_type("hook")) == []


def test_filters_are_lazy(view: QueryView, builder: HierarchyBuilder) -> None:
    """Skips nodes released while a filter is being consumed."""
    matches = view.by_type("scenario")
    first = next(matches)
    Finalizer(builder=builder, aggregator=view.aggregator).finalize("s2")

    assert first.node.id == "s1"
    assert list(matches) == []


def test_finalized_nodes_keep_their_status(
    view: QueryView, builder: HierarchyBuilder
) -> None:
    """Releases finalized nodes but keeps their frozen status."""
    Finalizer(builder=builder, aggregator=view.aggregator).finalize("s1")

    assert view.effective_status("s1") is Status.PASSED
    assert view.effective_status("step1") is Status.PASSED
    assert [node.id for node in view.children("feature")] == ["s2"]
    assert view.children_ids("feature") == ("s1", "s2")
    with pytest.raises(NotFound):
        view.get("s1")


def test_attachment_bytes(view: QueryView, builder: HierarchyBuilder) -> None:
    """Decodes attachments of materialized nodes."""
    builder.add(make_node("log", "s2", attachments=(AttachmentFactory.build(),)))

    assert view.attachment_bytes("step1") == b"hello"
    assert view.attachment_bytes("log") == b"log output"
    with pytest.raises(IndexError):
        view.attachment_bytes("step2")
