"""Reconstruction of the node hierarchy from an unordered record stream."""

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from result_stream.errors import CycleError, LateAttachError, NotFound, ValidationError
from result_stream.models.diagnostics import OrphanNodes, RejectedEdge
from result_stream.models.node import Status, TestNode

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class HierarchyBuilder:
    """Wires nodes to their declared parents as records arrive.

    Children are kept in arrival order. A node whose parent has not been seen
    yet waits in the pending map and is attached the moment the parent
    arrives. No attempt is made to repair a surprising hierarchy: edges are
    taken exactly as declared, and edges that would close a cycle or reopen a
    finalized subtree are refused.

    ``on_attach`` is called with the parent id after every new edge.

    Finalized ids and rejected edges are remembered for the life of the
    builder so that duplicates and late attaches keep being refused; memory
    therefore grows by one entry per finalized node and per rejected edge.
    """

    on_attach: Callable[[str], None] | None = None

    _nodes: dict[str, TestNode] = field(default_factory=dict, init=False, repr=False)
    _children: dict[str, list[str]] = field(default_factory=dict, init=False, repr=False)
    _parents: dict[str, str] = field(default_factory=dict, init=False, repr=False)
    _roots: dict[str, None] = field(default_factory=dict, init=False, repr=False)
    _pending: dict[str, list[str]] = field(default_factory=dict, init=False, repr=False)
    _abandoned: dict[str, list[str]] = field(default_factory=dict, init=False, repr=False)
    _rejected: dict[str, RejectedEdge] = field(default_factory=dict, init=False, repr=False)
    _finalized: dict[str, Status | None] = field(
        default_factory=dict, init=False, repr=False
    )

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def add(self, node: TestNode) -> None:
        """Register a node and wire every edge it completes.

        Raises:
            ValidationError: If the id was already seen in this stream
            LateAttachError: If the declared parent is already finalized
            CycleError: If an edge completed by this node would close a cycle

        All bookkeeping is done before an error is raised; the offending node
        stays registered but unattached.

        """
        if node.id in self._nodes or node.id in self._finalized:
            raise ValidationError(f"duplicate node id {node.id!r}")

        self._nodes[node.id] = node
        self._children[node.id] = []
        errors: list[CycleError | LateAttachError] = []

        parent_id = node.parent_id
        if parent_id is None:
            self._roots[node.id] = None
            log.debug("Registered root %s", node.id)
        elif parent_id in self._finalized:
            self._reject(node.id, parent_id, "late-attach")
            errors.append(LateAttachError(node.id, parent_id))
        elif parent_id in self._nodes:
            if error := self._attach(node.id, parent_id):
                errors.append(error)
        else:
            self._pending.setdefault(parent_id, []).append(node.id)
            log.debug("Holding %s until parent %s arrives", node.id, parent_id)

        waiting = self._pending.pop(node.id, ())
        for child_id in waiting:
            if child_id in self._finalized:
                # Listed for SubtreeRef lookups; storage is already released.
                self._children[node.id].append(child_id)
            elif error := self._attach(child_id, node.id):
                errors.append(error)
        if waiting:
            log.debug("Attached %d pending child(ren) to %s", len(waiting), node.id)

        if errors:
            raise errors[0]

    def _attach(self, child_id: str, parent_id: str) -> CycleError | None:
        if self._is_ancestor(child_id, parent_id):
            self._reject(child_id, parent_id, "cycle")
            return CycleError(child_id, parent_id)
        self._children[parent_id].append(child_id)
        self._parents[child_id] = parent_id
        if self.on_attach is not None:
            self.on_attach(parent_id)
        return None

    def _is_ancestor(self, candidate: str, node_id: str) -> bool:
        """Return True if ``candidate`` is ``node_id`` or one of its attached ancestors."""
        current: str | None = node_id
        while current is not None:
            if current == candidate:
                return True
            current = self._parents.get(current)
        return False

    def _reject(
        self, node_id: str, parent_id: str, reason: Literal["cycle", "late-attach"]
    ) -> None:
        self._rejected[node_id] = RejectedEdge(
            node_id=node_id, parent_id=parent_id, reason=reason
        )
        log.warning("Rejected edge %s -> %s (%s)", node_id, parent_id, reason)

    def get(self, node_id: str) -> TestNode:
        """Return a materialized node."""
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFound(node_id) from None

    def children_ids(self, node_id: str) -> Sequence[str]:
        """Return ids of attached children in arrival order, finalized ones included."""
        try:
            return tuple(self._children[node_id])
        except KeyError:
            raise NotFound(node_id) from None

    def parent_id(self, node_id: str) -> str | None:
        """Return the attached parent of a node, if any."""
        return self._parents.get(node_id)

    def roots(self) -> Sequence[str]:
        """Return ids of open roots in arrival order."""
        return tuple(self._roots)

    def node_ids(self) -> Sequence[str]:
        """Return ids of all materialized nodes in arrival order."""
        return tuple(self._nodes)

    def is_attached(self, node_id: str) -> bool:
        """Return True if the node is a root or wired to its parent."""
        return node_id in self._roots or node_id in self._parents

    def is_finalized(self, node_id: str) -> bool:
        return node_id in self._finalized

    def is_awaited(self, node_id: str) -> bool:
        """Return True if unseen ``node_id`` has children waiting for it."""
        return node_id in self._pending

    def frozen_status(self, node_id: str) -> Status | None:
        """Return the frozen status of a finalized node."""
        return self._finalized.get(node_id)

    def iter_subtree(self, node_id: str) -> Iterator[str]:
        """Yield ids of materialized nodes under ``node_id`` in pre-order."""
        if node_id not in self._nodes:
            raise NotFound(node_id)
        stack = [node_id]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(
                child for child in reversed(self._children[current]) if child in self._nodes
            )

    def release(self, statuses: Mapping[str, Status]) -> None:
        """Drop storage for a finalized subtree, keeping its ids and statuses."""
        for node_id, status in statuses.items():
            self._finalized[node_id] = status
            self._nodes.pop(node_id, None)
            self._children.pop(node_id, None)
            self._parents.pop(node_id, None)
            self._roots.pop(node_id, None)

    def abandon(self, node_id: str) -> Sequence[str]:
        """Close an unseen parent id; children waiting on it become orphans."""
        waiting = self._pending.pop(node_id, [])
        self._abandoned.setdefault(node_id, []).extend(waiting)
        self._finalized[node_id] = None
        return tuple(waiting)

    def pending_count(self) -> int:
        """Return the number of nodes still waiting for a parent."""
        return sum(len(children) for children in self._pending.values())

    def rejected_edges(self) -> Sequence[RejectedEdge]:
        return tuple(self._rejected.values())

    def orphans(self) -> OrphanNodes:
        """Snapshot of nodes that are not wired to their declared parent."""
        missing: dict[str, list[str]] = {
            parent: list(children) for parent, children in self._abandoned.items()
        }
        for parent, children in self._pending.items():
            missing.setdefault(parent, []).extend(children)
        tops = [child for children in missing.values() for child in children]
        tops.extend(self._rejected)
        detached = [
            descendant
            for top in tops
            if top in self._nodes and not self.is_attached(top)
            for descendant in list(self.iter_subtree(top))[1:]
        ]
        return OrphanNodes(
            missing_parents={parent: tuple(ids) for parent, ids in missing.items()},
            rejected=tuple(self._rejected),
            detached=tuple(detached),
        )

    def reachable(self) -> Iterator[str]:
        """Yield ids of open nodes reachable from the open roots."""
        for root in self.roots():
            yield from self.iter_subtree(root)
