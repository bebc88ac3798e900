"""Read-only access to materialized nodes."""

import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field

from result_stream.builder import HierarchyBuilder
from result_stream.codec import AttachmentCodec
from result_stream.errors import NotFound
from result_stream.models.node import Status, TestNode
from result_stream.status import StatusAggregator


@dataclass(frozen=True, kw_only=True)
class Match:
    """A node found by a filter; its ancestry is resolved on demand."""

    node: TestNode
    view: "QueryView" = field(repr=False, compare=False)

    def ancestors(self) -> Sequence[TestNode]:
        """Return the root-to-parent chain for display."""
        return self.view.ancestors(self.node.id)

    def path(self) -> Sequence[str]:
        """Return node names from the root down to this node."""
        return [ancestor.name for ancestor in self.ancestors()] + [self.node.name]


@dataclass(frozen=True, kw_only=True)
class QueryView:
    """Query and filter nodes that are currently materialized.

    Nodes in subtrees that are not finalized yet are live: their children and
    effective status may still change. Finalized subtrees are released from
    storage; only their effective status remains queryable here.
    """

    builder: HierarchyBuilder
    aggregator: StatusAggregator
    lock: threading.RLock = field(default_factory=threading.RLock)
    codec: AttachmentCodec = field(default_factory=AttachmentCodec)

    def get(self, node_id: str) -> TestNode:
        """Return a node by id.

        Raises:
            NotFound: If the node is absent, not yet materialized or released

        """
        with self.lock:
            return self.builder.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        with self.lock:
            return node_id in self.builder

    def roots(self) -> Sequence[TestNode]:
        """Return open roots in arrival order."""
        with self.lock:
            return [self.builder.get(root) for root in self.builder.roots()]

    def children(self, node_id: str) -> Sequence[TestNode]:
        """Return materialized children of a node in arrival order.

        Children that were finalized are released and left out; use
        :meth:`children_ids` to list them and :meth:`effective_status` to read
        their frozen status.
        """
        with self.lock:
            return [
                self.builder.get(child)
                for child in self.builder.children_ids(node_id)
                if child in self.builder
            ]

    def children_ids(self, node_id: str) -> Sequence[str]:
        """Return ids of all children in arrival order, finalized ones included."""
        with self.lock:
            return self.builder.children_ids(node_id)

    def ancestors(self, node_id: str) -> Sequence[TestNode]:
        """Return attached ancestors ordered from the root down to the parent."""
        with self.lock:
            self.builder.get(node_id)
            chain: list[TestNode] = []
            current = self.builder.parent_id(node_id)
            while current is not None:
                chain.append(self.builder.get(current))
                current = self.builder.parent_id(current)
        chain.reverse()
        return chain

    def effective_status(self, node_id: str) -> Status:
        """Return the effective status, frozen once the node is finalized."""
        with self.lock:
            if (frozen := self.builder.frozen_status(node_id)) is not None:
                return frozen
            if node_id not in self.builder:
                raise NotFound(node_id)
            return self.aggregator.effective_status(node_id, self.builder)

    def by_tag(self, tag: str) -> Iterator[Match]:
        """Lazily yield nodes carrying ``tag``."""
        return self._filter(lambda node: tag in node.tag_set)

    def by_type(self, node_type: str) -> Iterator[Match]:
        """Lazily yield nodes of ``node_type``."""
        return self._filter(lambda node: node.type == node_type)

    def _filter(self, predicate: Callable[[TestNode], bool]) -> Iterator[Match]:
        with self.lock:
            node_ids = self.builder.node_ids()
        for node_id in node_ids:
            with self.lock:
                if node_id not in self.builder:
                    continue
                node = self.builder.get(node_id)
            if predicate(node):
                yield Match(node=node, view=self)

    def attachment_bytes(self, node_id: str, index: int = 0) -> bytes:
        """Decode one attachment of a node.

        Raises:
            NotFound: If the node is not materialized
            IndexError: If the node has no attachment at ``index``
            CodecError: If the payload cannot be decoded

        """
        attachment = self.get(node_id).attachments[index]
        return self.codec.decode(attachment)
